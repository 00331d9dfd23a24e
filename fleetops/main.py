import logging
from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from .config import config
from .db import init_db, SessionLocal
from .api.endpoints import router as api_router
from .errors import SubscriptionError
from .notifications import WebSocketNotifier
from .trip_feed import TripFeedSubscription
from .wsmanager import ConnectionManager

logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title="Fleet Operations Service",
    description="Driver attendance ledger, live trip feed and route corridors",
    version="1.0.0",
    debug=config.debug
)

if config.enable_cors:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

# Create connection manager
manager = ConnectionManager()

# Session factory used by trip feed subscriptions; tests may replace it
feed_session_factory = SessionLocal

# Include API routes
app.include_router(api_router, prefix="/api")

@app.on_event("startup")
async def startup():
    """Initialize database on startup."""
    init_db()

@app.get("/")
async def root():
    """Root endpoint."""
    return {"message": "Fleet Operations Service", "docs": "/docs"}

@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}

@app.websocket("/ws/drivers/{driver_id}/trips")
async def trip_feed_endpoint(websocket: WebSocket, driver_id: str):
    """Live feed of a driver's assigned trips with new-trip notifications."""
    if not await manager.connect(driver_id, websocket):
        return

    async def push_trips(trips):
        await manager.send_personal_message(
            {"type": "trips", "payload": [trip.to_document() for trip in trips]},
            websocket,
            driver_id
        )

    async def report_error(error):
        await manager.send_personal_message(
            {"type": "error", "payload": {"message": str(error)}},
            websocket,
            driver_id
        )
        await websocket.close(code=1011)

    subscription = TripFeedSubscription(
        feed_session_factory,
        driver_id,
        notifier=WebSocketNotifier(manager, driver_id, websocket),
        on_update=push_trips,
        on_error=report_error
    )
    try:
        await subscription.start()
    except SubscriptionError as e:
        await report_error(e)
        manager.disconnect(driver_id, websocket)
        return

    try:
        while True:
            # Keep connection alive - wait for messages
            await websocket.receive_text()
    except (WebSocketDisconnect, RuntimeError):
        # Client went away, or the socket was closed after a feed error
        pass
    finally:
        subscription.stop()
        manager.disconnect(driver_id, websocket)
