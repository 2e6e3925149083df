# FastAPI Web Server for the Operator Console
# File: api_server.py

"""
Run with: uvicorn api_server:app --port 8000
      or: python api_server.py

Serves Console State to the presentation collaborators (map, readouts,
command buttons) and accepts route text and command intents from them.
"""

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel
from typing import List, Dict, Optional
import asyncio
import logging
from datetime import datetime

from operator_console import (
    CommandIntent,
    ConsoleConfig,
    ConsoleEngine,
    MalformedRoute,
)
from monitoring import ConsoleMetrics

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

API_VERSION = "1.0.0"

# ============================================================================
# RESPONSE MODELS
# ============================================================================

class TelemetryModel(BaseModel):
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    relative_altitude_m: Optional[float] = None
    sea_level_altitude_m: Optional[float] = None
    heading_deg: Optional[float] = None
    remaining_percent: Optional[float] = None
    voltage_v: Optional[float] = None
    current: Optional[int] = None
    total: Optional[int] = None
    updated_at: Dict[str, Optional[str]] = {}

class DispatchOutcomeModel(BaseModel):
    intent: str
    success: bool
    error: Optional[str] = None
    message: str = ""
    status_code: Optional[int] = None
    timestamp: str

class ConsoleStateModel(BaseModel):
    telemetry: TelemetryModel
    route: List[List[float]]
    route_loaded: bool
    last_outcome: Optional[DispatchOutcomeModel] = None
    stale: List[str]
    map_center: Optional[List[float]] = None

class RouteModel(BaseModel):
    count: int
    waypoints: List[List[float]]

class RouteLoadResponse(BaseModel):
    message: str
    waypoint_count: int

# ============================================================================
# WEBSOCKET CONNECTIONS
# ============================================================================

class ConnectionManager:
    def __init__(self):
        self.active_connections: List[WebSocket] = []

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.active_connections.append(websocket)

    def disconnect(self, websocket: WebSocket):
        if websocket in self.active_connections:
            self.active_connections.remove(websocket)

# ============================================================================
# APPLICATION FACTORY
# ============================================================================

OUTCOME_STATUS = {
    None: 200,
    'NoRouteLoaded': 409,
    'DispatchTransportFailure': 502,
}

def create_app(engine: Optional[ConsoleEngine] = None, start_polling: bool = True) -> FastAPI:
    """Build the API around one console engine"""
    engine = engine or ConsoleEngine(ConsoleConfig.from_env())
    metrics = ConsoleMetrics(engine)
    manager = ConnectionManager()

    app = FastAPI(
        title=f"{engine.config.title} Operator Console API",
        description="Console state, route upload and mission commands for a single vehicle",
        version=API_VERSION
    )
    app.state.engine = engine
    app.state.metrics = metrics

    # CORS configuration
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ------------------------------------------------------------------
    # Lifecycle events
    # ------------------------------------------------------------------

    @app.on_event("startup")
    async def startup_event():
        if start_polling:
            engine.start()
        logger.info("✅ Operator Console API Server Started")

    @app.on_event("shutdown")
    async def shutdown_event():
        await engine.close()
        logger.info("🛑 Operator Console API Server Stopped")

    # ------------------------------------------------------------------
    # Console endpoints
    # ------------------------------------------------------------------

    @app.get("/api/console/state", response_model=ConsoleStateModel)
    async def get_state():
        """Full console view for the map, readouts and controls"""
        return engine.state_view()

    @app.get("/api/console/telemetry", response_model=TelemetryModel)
    async def get_telemetry():
        return engine.state.snapshot.to_dict()

    @app.get("/api/console/route", response_model=RouteModel)
    async def get_route():
        route = engine.state.route
        return {
            "count": len(route),
            "waypoints": [list(c.as_pair()) for c in route]
        }

    @app.post("/api/console/route", response_model=RouteLoadResponse)
    async def upload_route(request: Request):
        """Ingest raw route text (one 'latitude,longitude' per line)"""
        body = await request.body()
        try:
            text = body.decode('utf-8')
        except UnicodeDecodeError:
            raise HTTPException(status_code=422, detail="Route file must be UTF-8 text")

        try:
            route = engine.load_route(text)
        except MalformedRoute as e:
            raise HTTPException(status_code=422, detail=f"Malformed route: {e}")

        return {"message": "Route loaded", "waypoint_count": len(route)}

    @app.post("/api/console/commands/{intent}", response_model=DispatchOutcomeModel)
    async def send_command(intent: str):
        """Dispatch one command intent to the vehicle backend"""
        try:
            command = CommandIntent(intent)
        except ValueError:
            raise HTTPException(status_code=404, detail=f"Unknown command: {intent}")

        outcome = await engine.dispatch(command)
        return JSONResponse(
            status_code=OUTCOME_STATUS.get(outcome.error, 500),
            content=outcome.to_dict()
        )

    @app.get("/api/console/outcomes")
    async def get_outcomes(limit: int = 20):
        """Recent dispatch outcomes, newest last"""
        outcomes = list(engine.state.outcome_history)[-limit:] if limit > 0 else []
        return {
            "count": len(outcomes),
            "outcomes": [o.to_dict() for o in outcomes]
        }

    @app.get("/api/console/status")
    async def get_status():
        return engine.get_status()

    # ------------------------------------------------------------------
    # WebSocket endpoint
    # ------------------------------------------------------------------

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        """Push the console view once per poll interval"""
        await manager.connect(websocket)

        try:
            while True:
                await websocket.send_json({
                    "type": "console_update",
                    "timestamp": datetime.now().isoformat(),
                    "state": engine.state_view()
                })
                await asyncio.sleep(engine.config.poll_interval)

        except WebSocketDisconnect:
            manager.disconnect(websocket)

    # ------------------------------------------------------------------
    # Health & metrics
    # ------------------------------------------------------------------

    @app.get("/")
    async def root():
        """API root endpoint"""
        return {
            "name": app.title,
            "version": API_VERSION,
            "console": engine.status,
            "polling": engine.aggregator.running,
            "websocket_clients": len(manager.active_connections),
            "docs": "/docs"
        }

    @app.get("/health")
    async def health_check():
        return metrics.health_monitor.get_health_status()

    @app.get("/api/console/dashboard")
    async def get_dashboard():
        """Health, metrics and console status in one payload"""
        return metrics.get_dashboard_data()

    @app.get("/metrics", response_class=PlainTextResponse)
    async def export_metrics():
        return metrics.export_prometheus()

    return app

app = create_app()

if __name__ == "__main__":
    import uvicorn
    config = app.state.engine.config
    uvicorn.run(app, host=config.api_host, port=config.api_port)
