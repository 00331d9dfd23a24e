import os
import logging
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

# Database configuration
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///fleetops.db")

# Attendance configuration
LOCAL_TIMEZONE = os.getenv("LOCAL_TIMEZONE", "UTC")
ATTENDANCE_DATE_FORMAT = os.getenv("ATTENDANCE_DATE_FORMAT", "%Y-%m-%d")
LEDGER_CONFLICT_RETRIES = int(os.getenv("LEDGER_CONFLICT_RETRIES", "5"))

# Geofence corridor
CORRIDOR_TOLERANCE_M = float(os.getenv("CORRIDOR_TOLERANCE_M", "100"))
EARTH_RADIUS_M = float(os.getenv("EARTH_RADIUS_M", "6371000"))
CORRIDOR_CLOSE_FINAL_POINT = os.getenv("CORRIDOR_CLOSE_FINAL_POINT", "false").lower() == "true"

# Trip feed
FEED_POLL_INTERVAL_SECONDS = float(os.getenv("FEED_POLL_INTERVAL_SECONDS", "2.0"))

# WebSocket configuration
WS_MAX_CONNECTIONS = int(os.getenv("WS_MAX_CONNECTIONS", "100"))

# API configuration
API_DEFAULT_LIMIT = int(os.getenv("API_DEFAULT_LIMIT", "100"))
API_MAX_LIMIT = int(os.getenv("API_MAX_LIMIT", "1000"))

# Logging configuration
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = os.getenv("LOG_FORMAT", "%(asctime)s - %(name)s - %(levelname)s - %(message)s")
LOG_FILE = os.getenv("LOG_FILE", "fleetops.log")

# Development configuration
DEBUG = os.getenv("DEBUG", "false").lower() == "true"
ENABLE_CORS = os.getenv("ENABLE_CORS", "true").lower() == "true"

class Config:
    """Configuration class with runtime overrides."""

    def __init__(self):
        self.database_url = DATABASE_URL

        # Attendance
        self.local_timezone = LOCAL_TIMEZONE
        self.attendance_date_format = ATTENDANCE_DATE_FORMAT
        self.ledger_conflict_retries = LEDGER_CONFLICT_RETRIES

        # Corridor
        self.corridor_tolerance_m = CORRIDOR_TOLERANCE_M
        self.earth_radius_m = EARTH_RADIUS_M
        self.corridor_close_final_point = CORRIDOR_CLOSE_FINAL_POINT

        # Trip feed
        self.feed_poll_interval_seconds = FEED_POLL_INTERVAL_SECONDS

        # WebSocket settings
        self.ws_max_connections = WS_MAX_CONNECTIONS

        # API settings
        self.api_default_limit = API_DEFAULT_LIMIT
        self.api_max_limit = API_MAX_LIMIT

        # Logging
        self.log_level = LOG_LEVEL
        self.log_format = LOG_FORMAT
        self.log_file = LOG_FILE

        # Development
        self.debug = DEBUG
        self.enable_cors = ENABLE_CORS

    def get_corridor_config(self) -> dict:
        """Get corridor configuration as dictionary."""
        return {
            "tolerance_m": self.corridor_tolerance_m,
            "earth_radius_m": self.earth_radius_m,
            "close_final_point": self.corridor_close_final_point
        }

    def get_attendance_config(self) -> dict:
        """Get attendance configuration as dictionary."""
        return {
            "local_timezone": self.local_timezone,
            "date_format": self.attendance_date_format,
            "conflict_retries": self.ledger_conflict_retries
        }

# Global configuration instance
config = Config()

def setup_logging():
    """Setup logging configuration."""
    handlers = [logging.StreamHandler()]
    if config.log_file:
        handlers.append(logging.FileHandler(config.log_file))

    logging.basicConfig(
        level=getattr(logging, config.log_level),
        format=config.log_format,
        handlers=handlers
    )

    # Set specific logger levels
    logging.getLogger("uvicorn").setLevel(logging.INFO)
    logging.getLogger("fastapi").setLevel(logging.INFO)

    return logging.getLogger(__name__)

# Initialize logger
logger = setup_logging()
