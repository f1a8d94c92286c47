import asyncio
import logging
import os
from datetime import datetime
from pathlib import Path
import sys
from typing import Any, Dict, List, Optional, Set

sys.path.append(str(Path(__file__).resolve().parents[3]))

from fastapi import Body, FastAPI, HTTPException, Query, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from simulators.machine_sim.app import build_engine
from simulators.machine_sim.lib.configparsers import DEFAULT_CONFIG, SimConfig
from simulators.machine_sim.lib.engine import TelemetryEngine
from simulators.machine_sim.lib.enums import Metric
from simulators.machine_sim.lib.metrics import TelemetryValidationError, round3
from simulators.machine_sim.lib.mqtt_bridge import MqttTransport
from simulators.machine_sim.lib.publisher import now_iso, to_iso
from simulators.machine_sim.lib.store import MachineNotFoundError, MachineStore

LOG = logging.getLogger("hmi.backend")

CONFIG_FILE = Path(os.getenv("MACHINE_SIM_CONFIG", DEFAULT_CONFIG))
ALLOWED_ORIGINS = [o.strip() for o in os.getenv("ALLOWED_ORIGINS", "").split(",") if o.strip()]
SEND_TIMEOUT_S = 1.0
MAX_HISTORY = 2000

METRICS = [
    {"key": "temperatur", "label": "Temperatur", "unit": "°C", "description": "Aktuelle Temperatur der Maschine"},
    {"key": "aktuelleLeistung", "label": "Aktuelle Leistung", "unit": "%", "description": "Prozentuale Auslastung"},
    {"key": "betriebsminutenGesamt", "label": "Betriebsminuten gesamt", "unit": "min", "description": "Gesamte Betriebszeit"},
    {"key": "geschwindigkeit", "label": "Geschwindigkeit", "unit": "m/s", "description": "Aktuelle Geschwindigkeit"},
]

app = FastAPI(title="Machine telemetry")
app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS or ["*"],
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)


class WebSocketHub:
    """Telemetry transport for websocket subscribers.

    broadcast() is called from engine job threads; it only schedules the send
    on the event loop and returns immediately. Sockets that fail or are slower
    than SEND_TIMEOUT_S are dropped.
    """

    def __init__(self) -> None:
        self.sockets: Set[WebSocket] = set()
        self.loop: Optional[asyncio.AbstractEventLoop] = None

    def bind(self, loop: asyncio.AbstractEventLoop) -> None:
        self.loop = loop

    def broadcast(self, topic: str, payload: Dict[str, Any]) -> None:
        if self.loop is None or not self.sockets or self.loop.is_closed():
            return
        asyncio.run_coroutine_threadsafe(self.send_all(payload), self.loop)

    async def send_all(self, payload: Dict[str, Any]) -> None:
        sockets = list(self.sockets)
        if not sockets:
            return
        # Send concurrently to avoid one slow client blocking others
        results = await asyncio.gather(
            *(asyncio.wait_for(ws.send_json(payload), SEND_TIMEOUT_S) for ws in sockets),
            return_exceptions=True,
        )
        for ws, res in zip(sockets, results):
            if isinstance(res, Exception):
                self.sockets.discard(ws)


HUB = WebSocketHub()
ENGINE: Optional[TelemetryEngine] = None
MQTT: Optional[MqttTransport] = None


def _store() -> MachineStore:
    if ENGINE is None:
        raise HTTPException(status_code=503, detail="engine not ready")
    return ENGINE.store


def _parse_since(since: Optional[str]) -> Optional[datetime]:
    if not since:
        return None
    s = since[:-1] + "+00:00" if since.endswith("Z") else since
    try:
        return datetime.fromisoformat(s)
    except ValueError:
        raise HTTPException(status_code=400, detail="invalid 'since' timestamp, expected ISO 8601")


@app.on_event("startup")
async def startup_event():
    global ENGINE, MQTT
    HUB.bind(asyncio.get_running_loop())
    if ENGINE is not None:
        ENGINE.publisher.add_transport(HUB)
        return
    config = SimConfig.from_file(CONFIG_FILE)
    transports = [HUB]
    if config.mqtt_enabled:
        MQTT = MqttTransport(config.mqtt_host, config.mqtt_port, config.mqtt_client_id,
                             qos=config.mqtt_qos, topic_prefix=config.mqtt_topic_prefix)
        transports.append(MQTT)
    # seed or storage failures propagate and abort application startup
    ENGINE = build_engine(config, transports)
    LOG.info("Engine ready, %d job(s) scheduled", len(ENGINE.jobs()))
    if MQTT is not None:
        MQTT.start()
    ENGINE.start()


@app.on_event("shutdown")
async def shutdown_event():
    if ENGINE is not None:
        await asyncio.get_running_loop().run_in_executor(None, ENGINE.stop)
    if MQTT:
        MQTT.stop()


@app.websocket("/ws")
async def websocket_endpoint(ws: WebSocket):
    await ws.accept()
    HUB.sockets.add(ws)
    try:
        while True:
            await ws.receive_text()
    except WebSocketDisconnect:
        HUB.sockets.discard(ws)


@app.get("/health")
async def health() -> Dict[str, bool]:
    return {"ok": True}


@app.get("/readyz")
async def readyz():
    if ENGINE is not None and ENGINE.store.ping():
        return {"ok": True}
    return JSONResponse(status_code=503, content={"ok": False})


@app.get("/api/machines/basic")
def machines_basic() -> Dict[str, Any]:
    return {"machines": [
        {
            "name": m.name,
            "identifikation": m.identification,
            "letzteWartung": m.last_maintenance,
            "durchgängigeLaufzeit": round3(m.runtime_minutes or 0.0),
        }
        for m in _store().find_all()
    ]}


@app.get("/api/machines/names")
def machine_names() -> Dict[str, List[str]]:
    return {"names": [m.name for m in _store().find_all()]}


@app.get("/api/machines/{name}")
def machine_detail(name: str) -> Dict[str, Any]:
    m = _store().find_by_name(name)
    if m is None:
        raise HTTPException(status_code=404, detail="not found")
    return {
        "identifikation": m.identification,
        "temperatur": f"{round3(m.temperature or 0.0)}°",
        "durchgängigeLaufzeit": f"{round3(m.runtime_minutes or 0.0)} Minuten",
        "Motor": {
            "aktuelleLeistung": f"{round3(m.power or 0.0)}%",
            "betriebsminutenGesamt": f"{round3(m.uptime_minutes or 0.0)} Minuten",
            "letzteWartung": m.last_maintenance,
        },
        "geschwindigkeit": f"{round3(m.speed or 0.0)} m/s",
    }


@app.get("/api/machines/{name}/telemetry")
def machine_telemetry(name: str, since: Optional[str] = None,
                      limit: int = Query(500, ge=1)) -> List[Dict[str, Any]]:
    try:
        records = _store().records_for(name, _parse_since(since), min(limit, MAX_HISTORY))
    except MachineNotFoundError:
        raise HTTPException(status_code=404, detail="not found")
    return [
        {
            "temperatur": r.temperature,
            "aktuelleLeistung": r.power,
            "betriebsminutenGesamt": r.uptime_minutes,
            "geschwindigkeit": r.speed,
            "createdAt": to_iso(r.created_at),
        }
        for r in records
    ]


@app.post("/api/machines/{name}/telemetry")
def write_telemetry(name: str, body: Dict[str, Any] = Body(...)) -> Dict[str, Any]:
    # values are checked as sent; the engine rejects booleans, strings and unknown keys
    if ENGINE is None:
        raise HTTPException(status_code=503, detail="engine not ready")
    try:
        machine, record = ENGINE.write_telemetry(name, body)
    except MachineNotFoundError:
        raise HTTPException(status_code=404, detail="not found")
    except TelemetryValidationError as e:
        raise HTTPException(status_code=400, detail={"field": e.field, "error": e.reason})
    return {"ok": True, "createdAt": to_iso(record.created_at)}


@app.get("/api/meta/metrics")
async def meta_metrics() -> Dict[str, Any]:
    return {"metrics": METRICS}


@app.get("/api/meta/formats/datetime")
async def meta_datetime() -> Dict[str, Any]:
    return {
        "format": "ISO 8601 (RFC 3339)",
        "examples": ["2025-08-29T12:34:56Z", "2025-08-29T12:34:56+02:00"],
        "note": "UTC 'Z' empfohlen.",
        "now": now_iso(),
    }


@app.get("/api/machines/{name}/metrics/{key}")
def machine_metric(name: str, key: str, since: Optional[str] = None,
                   limit: int = Query(50, ge=1)) -> List[Dict[str, Any]]:
    if key not in {m["key"] for m in METRICS}:
        raise HTTPException(status_code=400, detail="invalid_metric")
    metric = Metric.from_wire_key(key)
    try:
        records = _store().records_for(name, _parse_since(since), min(limit, MAX_HISTORY))
    except MachineNotFoundError:
        raise HTTPException(status_code=404, detail="not found")
    return [{"createdAt": to_iso(r.created_at), "value": getattr(r, metric.value)} for r in records]


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("hmi.backend.app.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8080")))
