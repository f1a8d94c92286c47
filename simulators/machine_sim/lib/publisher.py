import json
import logging

from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Protocol

from jsonschema import Draft7Validator
from jsonschema.exceptions import ValidationError
from pydantic import BaseModel, ConfigDict, Field

from simulators.machine_sim.lib.models import Machine

LOG = logging.getLogger("machine_sim.publisher")

TELEMETRY_TOPIC = "telemetry"


def now_iso() -> str:
    """Return ISO-8601 UTC timestamp with milliseconds and trailing 'Z'."""
    return to_iso(datetime.now(timezone.utc))


def to_iso(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class TelemetryEvent(BaseModel):
    """Telemetry broadcast for one machine, keyed with the dashboard's field names."""

    model_config = ConfigDict(populate_by_name=True)

    name: str
    temperature: Optional[float] = Field(default=None, alias="temperatur")
    power: Optional[float] = Field(default=None, alias="aktuelleLeistung")
    uptime_minutes: Optional[float] = Field(default=None, alias="betriebsminutenGesamt")
    speed: Optional[float] = Field(default=None, alias="geschwindigkeit")
    timestamp: str

    @classmethod
    def from_machine(cls, machine: Machine, timestamp: Optional[datetime] = None) -> "TelemetryEvent":
        return cls(
            name=machine.name,
            temperature=machine.temperature,
            power=machine.power,
            uptime_minutes=machine.uptime_minutes,
            speed=machine.speed,
            timestamp=to_iso(timestamp) if timestamp is not None else now_iso(),
        )

    def payload(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class Transport(Protocol):
    def broadcast(self, topic: str, payload: Dict[str, Any]) -> None:
        ...


def load_topic_schema(schema_path: str | Path, topic: str = TELEMETRY_TOPIC) -> Optional[Draft7Validator]:
    """Build a validator from a topics file: {"topics": {<topic>: {"schema": {...}}}}."""
    try:
        with Path(schema_path).open("r", encoding="utf-8") as fh:
            top_spec = json.load(fh)
    except (OSError, json.JSONDecodeError) as e:
        LOG.error("Failed to open schema file '%s': %s. Disabling schema validation.", schema_path, e)
        return None

    tinfo = top_spec.get("topics", {}).get(topic)
    if not tinfo or not tinfo.get("schema"):
        LOG.error("Schema file does not contain topic %s. Disabling validation.", topic)
        return None
    LOG.info("Loaded schema for topic %s from %s", topic, schema_path)
    return Draft7Validator(tinfo["schema"])


class Publisher:
    """
    Fans telemetry events out to every transport.

    Delivery is best-effort: a failing transport is logged and skipped so it
    never stalls the job that published.
    """

    def __init__(self, transports: Iterable[Transport] = (), topic: str = TELEMETRY_TOPIC,
                 validator: Optional[Draft7Validator] = None, log_messages: bool = False):
        self.transports: List[Transport] = list(transports)
        self.topic = topic
        self.validator = validator
        self.log_messages = log_messages
        self.published = 0

    def add_transport(self, transport: Transport) -> None:
        if transport not in self.transports:
            self.transports.append(transport)

    def publish(self, machine: Machine, timestamp: Optional[datetime] = None) -> Optional[TelemetryEvent]:
        event = TelemetryEvent.from_machine(machine, timestamp)
        payload = event.payload()

        if self.validator is not None:
            try:
                self.validator.validate(payload)
            except ValidationError as ve:
                LOG.warning("Outgoing telemetry for %s failed schema validation: %s",
                            machine.name, ve.message)
                return None

        if self.log_messages:
            log_msg = {"topic": self.topic, "ts_local": now_iso(), "payload": payload}
            LOG.info(json.dumps(log_msg, separators=(",", ":"), ensure_ascii=False))

        for transport in self.transports:
            try:
                transport.broadcast(self.topic, payload)
            except Exception as e:
                LOG.warning("Transport %s failed to publish telemetry for %s: %s",
                            type(transport).__name__, machine.name, e)
        self.published += 1
        return event
