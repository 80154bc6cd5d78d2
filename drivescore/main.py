import asyncio
import logging
from typing import Optional
from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from pydantic import BaseModel
from .api.endpoints import router as api_router
from .config import Config, setup_logging
from .db import engine as default_engine, get_db, init_db, make_session_factory
from .notifications import TripNotification
from .persistence import SqlDriverScoreStore, SqlTripSink
from .session import SessionRegistry
from .simulator import Simulator, generate_trip_frame
from .wsmanager import ConnectionManager

logger = logging.getLogger(__name__)

class SimulationRequest(BaseModel):
    driver_id: str = "driver_1"
    duration_s: int = 300
    interval: Optional[float] = None

def notification_message(driver_id: str, kind: TripNotification, payload) -> dict:
    """WebSocket message for a trip notification (payload is a Trip or TripOutcome)."""
    return {
        "type": kind.value,
        "driver_id": driver_id,
        "payload": payload.to_dict()
    }

def create_app(config: Optional[Config] = None, engine=None, speed_limit_provider=None,
               lookup_workers: int = 4) -> FastAPI:
    """Build the service with its own registry, database and WebSocket manager."""
    config = config or Config()
    engine = engine or default_engine
    session_factory = make_session_factory(engine)

    app = FastAPI(
        title="DriveScore",
        description="Trip lifecycle tracking and driver safety scoring",
        version="1.0.0"
    )

    registry = SessionRegistry(
        config,
        speed_limit_provider=speed_limit_provider,
        sink=SqlTripSink(session_factory),
        score_store=SqlDriverScoreStore(session_factory),
        lookup_workers=lookup_workers
    )
    manager = ConnectionManager(config.ws_max_connections)
    simulator = Simulator(registry, config.emit_interval_seconds)

    app.state.config = config
    app.state.registry = registry
    app.state.manager = manager
    app.state.simulator = simulator

    def _get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = _get_db

    # Include API routes
    app.include_router(api_router, prefix="/api")

    @app.on_event("startup")
    async def startup():
        """Initialize logging, database and live notifications on startup."""
        setup_logging(config)
        init_db(engine)
        loop = asyncio.get_running_loop()

        def broadcast(driver_id: str, kind: TripNotification, payload):
            if not manager.active_connections:
                return
            message = notification_message(driver_id, kind, payload)
            # Sessions may publish from worker threads
            loop.call_soon_threadsafe(lambda: loop.create_task(manager.broadcast(message)))

        registry.add_listener(broadcast)
        logger.info("DriveScore service started")

    @app.on_event("shutdown")
    async def shutdown():
        simulator.stop()
        registry.shutdown()

    @app.get("/")
    async def root():
        return {"message": "DriveScore", "docs": "/docs"}

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy", "sessions": len(registry.driver_ids())}

    @app.websocket("/ws/trips")
    async def websocket_endpoint(websocket: WebSocket):
        """Live trip_started / trip_updated / trip_ended notifications."""
        if not await manager.connect(websocket):
            return
        try:
            while True:
                # Keep connection alive - wait for messages
                await websocket.receive_text()
        except WebSocketDisconnect:
            manager.disconnect(websocket)

    @app.post("/api/start_simulation")
    async def api_start_simulation(request: SimulationRequest):
        """Replay a synthetic trip for a driver."""
        frame = generate_trip_frame(request.duration_s, idle_tail_s=0)
        if not simulator.start(request.driver_id, frame, request.interval):
            return {"message": "Simulation already running", "driver_id": request.driver_id}
        return {"message": "simulation started", "driver_id": request.driver_id}

    @app.post("/api/stop_simulation")
    async def api_stop_simulation(driver_id: Optional[str] = None):
        """Stop the running simulations."""
        return {"message": "simulation stopped", "drivers": simulator.stop(driver_id)}

    @app.get("/api/simulation_status")
    async def api_simulation_status():
        """Get current simulation status."""
        return {"is_running": simulator.running, "drivers": simulator.running_drivers()}

    return app

app = create_app()
