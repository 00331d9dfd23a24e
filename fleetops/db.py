from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from .models import Base
from .config import DATABASE_URL

def make_engine(database_url: str):
    """Create an engine; SQLite connections are shared across the server's threads."""
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    return create_engine(database_url, future=True, connect_args=connect_args)

engine = make_engine(DATABASE_URL)
SessionLocal = sessionmaker(bind=engine)

def init_db(bind=None):
    """Initialize the database by creating all tables."""
    Base.metadata.create_all(bind=bind or engine)

def get_db():
    """Dependency to get database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
