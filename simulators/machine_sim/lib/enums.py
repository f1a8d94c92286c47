from enum import Enum


class Metric(Enum):
    TEMPERATURE = "temperature"
    POWER       = "power"
    SPEED       = "speed"
    UPTIME      = "uptime_minutes"
    RUNTIME     = "runtime_minutes"

    def wire_key(self) -> str:
        return {
            "temperature": "temperatur",
            "power": "aktuelleLeistung",
            "speed": "geschwindigkeit",
            "uptime_minutes": "betriebsminutenGesamt",
            "runtime_minutes": "durchgängigeLaufzeit",
        }[self.value]

    @classmethod
    def from_wire_key(cls, key: str) -> "Metric":
        for m in cls:
            if m.wire_key() == key or m.value == key:
                return m
        raise ValueError(f"Unknown metric {key!r}")


class JobState(Enum):
    IDLE    = 1
    RUNNING = 2
