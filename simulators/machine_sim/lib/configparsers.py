import configparser
import os

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

DEFAULT_CONFIG = Path(__file__).resolve().parent.parent / "config.ini"


class MachineSimParser:
    def __init__(self, filename: str = "config.ini"):
        self.config = configparser.ConfigParser(inline_comment_prefixes=(";",))
        self.config.read(Path(filename))

    def _sec(self, name: str) -> Optional[configparser.SectionProxy]:
        if self.config.has_section(name):
            return self.config[name]
        return None

    def _getfloat(self, section: str, key: str, fallback: float) -> float:
        sec = self._sec(section)
        if sec is None:
            return fallback
        return sec.getfloat(key, fallback=fallback)

    def _getint(self, section: str, key: str, fallback: int) -> int:
        sec = self._sec(section)
        if sec is None:
            return fallback
        return sec.getint(key, fallback=fallback)

    def _getbool(self, section: str, key: str, fallback: bool) -> bool:
        sec = self._sec(section)
        if sec is None:
            return fallback
        return sec.getboolean(key, fallback=fallback)

    def _get(self, section: str, key: str, fallback: Optional[str]) -> Optional[str]:
        sec = self._sec(section)
        if sec is None:
            return fallback
        return sec.get(key, fallback=fallback)

    #  Engine
    def parse_persist_interval_ms(self) -> int:
        return self._getint("engine", "persist_interval_ms", 5000)

    def parse_shutdown_grace_s(self) -> float:
        return self._getfloat("engine", "shutdown_grace_s", 10.0)

    def parse_seed(self) -> Optional[int]:
        raw = self._get("engine", "seed", None)
        if raw is None or not raw.strip():
            return None
        return int(raw)

    #  Jobs
    def parse_job_periods(self) -> Dict[str, float]:
        return {
            "power_speed": self._getfloat("jobs", "power_speed_period_s", 1.0),
            "temperature": self._getfloat("jobs", "temperature_period_s", 60.0),
            "runtime": self._getfloat("jobs", "runtime_period_s", 20.0),
            "uptime": self._getfloat("jobs", "uptime_period_s", 60.0),
            "maintenance": self._getfloat("jobs", "maintenance_period_s", 86400.0),
        }

    #  Storage
    def parse_database_url(self) -> str:
        return self._get("storage", "database_url", "sqlite:///machines.db")

    def parse_seed_path(self) -> str:
        return self._get("storage", "seed_path", "seeds/initial-data.json")

    #  MQTT
    def parse_mqtt_enabled(self) -> bool:
        return self._getbool("mqtt", "enabled", False)

    def parse_mqtt_host(self) -> str:
        return self._get("mqtt", "host", "localhost")

    def parse_mqtt_port(self) -> int:
        return self._getint("mqtt", "port", 1883)

    def parse_client_id(self) -> str:
        return self._get("mqtt", "client_id", "machine_sim")

    def parse_topic(self) -> str:
        return self._get("mqtt", "topic", "telemetry")

    def parse_topic_prefix(self) -> str:
        return self._get("mqtt", "topic_prefix", "")

    def parse_qos(self) -> int:
        return self._getint("mqtt", "qos", 0)

    def parse_validate_schema(self) -> bool:
        return self._getbool("mqtt", "validate_schema", False)

    def parse_schema_path(self) -> str:
        return self._get("mqtt", "schema_path", "mqtt_topics.json")

    def parse_log_messages(self) -> bool:
        return self._getbool("mqtt", "log_messages", False)


@dataclass
class SimConfig:
    persist_interval_ms: int = 5000
    shutdown_grace_s: float = 10.0
    seed: Optional[int] = None
    power_speed_period_s: float = 1.0
    temperature_period_s: float = 60.0
    runtime_period_s: float = 20.0
    uptime_period_s: float = 60.0
    maintenance_period_s: float = 86400.0
    database_url: str = "sqlite:///machines.db"
    seed_path: str = "seeds/initial-data.json"
    mqtt_enabled: bool = False
    mqtt_host: str = "localhost"
    mqtt_port: int = 1883
    mqtt_client_id: str = "machine_sim"
    mqtt_topic: str = "telemetry"
    mqtt_topic_prefix: str = ""
    mqtt_qos: int = 0
    validate_schema: bool = False
    schema_path: str = "mqtt_topics.json"
    log_messages: bool = False

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        """
        Raises:
            TypeError: if a value has the wrong type.
            ValueError: if a value is out of range.
        """
        if isinstance(self.persist_interval_ms, bool) or not isinstance(self.persist_interval_ms, int):
            raise TypeError("persist_interval_ms must be an integer")
        if self.persist_interval_ms < 0:
            raise ValueError("persist_interval_ms must be non-negative")
        if not isinstance(self.shutdown_grace_s, (int, float)) or self.shutdown_grace_s < 0:
            raise ValueError("shutdown_grace_s must be a non-negative number")
        for name, period in self.job_periods().items():
            if not isinstance(period, (int, float)) or period <= 0:
                raise ValueError(f"period of job {name} must be positive")
        if not isinstance(self.mqtt_port, int) or self.mqtt_port <= 0:
            raise TypeError("mqtt_port must be a positive integer")
        if not isinstance(self.mqtt_qos, int) or self.mqtt_qos not in (0, 1, 2):
            raise ValueError("mqtt_qos must be 0, 1 or 2")
        if not isinstance(self.database_url, str) or not self.database_url:
            raise TypeError("database_url must be a non-empty string")

    def job_periods(self) -> Dict[str, float]:
        return {
            "power_speed": self.power_speed_period_s,
            "temperature": self.temperature_period_s,
            "runtime": self.runtime_period_s,
            "uptime": self.uptime_period_s,
            "maintenance": self.maintenance_period_s,
        }

    @classmethod
    def from_file(cls, filename: str | Path = DEFAULT_CONFIG,
                  environ: Optional[Dict[str, str]] = None) -> "SimConfig":
        """Read the INI file, then apply environment overrides."""
        env = os.environ if environ is None else environ
        filename = Path(filename)
        parser = MachineSimParser(str(filename))
        periods = parser.parse_job_periods()

        base_dir = filename.resolve().parent
        seed_path = Path(env.get("SEED_PATH", parser.parse_seed_path()))
        if not seed_path.is_absolute():
            seed_path = base_dir / seed_path
        schema_path = Path(parser.parse_schema_path())
        if not schema_path.is_absolute():
            schema_path = base_dir / schema_path

        persist_ms = env.get("TELEMETRY_DB_SAVE_MS")
        port = env.get("MQTT_PORT")
        return cls(
            persist_interval_ms=int(persist_ms) if persist_ms else parser.parse_persist_interval_ms(),
            shutdown_grace_s=parser.parse_shutdown_grace_s(),
            seed=parser.parse_seed(),
            power_speed_period_s=periods["power_speed"],
            temperature_period_s=periods["temperature"],
            runtime_period_s=periods["runtime"],
            uptime_period_s=periods["uptime"],
            maintenance_period_s=periods["maintenance"],
            database_url=env.get("DATABASE_URL", parser.parse_database_url()),
            seed_path=str(seed_path),
            mqtt_enabled=parser.parse_mqtt_enabled(),
            mqtt_host=env.get("MQTT_HOST", parser.parse_mqtt_host()),
            mqtt_port=int(port) if port else parser.parse_mqtt_port(),
            mqtt_client_id=parser.parse_client_id(),
            mqtt_topic=parser.parse_topic(),
            mqtt_topic_prefix=parser.parse_topic_prefix(),
            mqtt_qos=parser.parse_qos(),
            validate_schema=parser.parse_validate_schema(),
            schema_path=str(schema_path),
            log_messages=parser.parse_log_messages(),
        )
