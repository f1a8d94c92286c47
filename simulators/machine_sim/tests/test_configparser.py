import pytest

from pathlib import Path

from simulators.machine_sim.lib.configparsers import MachineSimParser, SimConfig


VALID_CONFIG = """
[engine]
persist_interval_ms = 2500   ; coalescing window
shutdown_grace_s = 3.5
seed = 42

[jobs]
power_speed_period_s = 0.5
temperature_period_s = 30
runtime_period_s = 10
uptime_period_s = 45
maintenance_period_s = 3600

[storage]
database_url = sqlite:///test.db
seed_path = data/machines.json

[mqtt]
enabled = true
host = broker.local
port = 1884
client_id = sim-test
topic = telemetry
topic_prefix = plant1
qos = 1
validate_schema = true
schema_path = topics.json
log_messages = true
"""


def write_cfg(tmp_path, content: str) -> Path:
    p = tmp_path / "machine_sim.ini"
    p.write_text(content, encoding="utf-8")
    return p


def test_parser_reads_all_sections(tmp_path):
    parser = MachineSimParser(str(write_cfg(tmp_path, VALID_CONFIG)))

    assert parser.parse_persist_interval_ms() == 2500
    assert parser.parse_shutdown_grace_s() == 3.5
    assert parser.parse_seed() == 42
    assert parser.parse_job_periods() == {
        "power_speed": 0.5,
        "temperature": 30.0,
        "runtime": 10.0,
        "uptime": 45.0,
        "maintenance": 3600.0,
    }
    assert parser.parse_database_url() == "sqlite:///test.db"
    assert parser.parse_mqtt_enabled() is True
    assert parser.parse_mqtt_host() == "broker.local"
    assert parser.parse_mqtt_port() == 1884
    assert parser.parse_topic_prefix() == "plant1"
    assert parser.parse_qos() == 1


def test_parser_falls_back_to_defaults_without_sections(tmp_path):
    parser = MachineSimParser(str(write_cfg(tmp_path, "")))

    assert parser.parse_persist_interval_ms() == 5000
    assert parser.parse_seed() is None
    assert parser.parse_job_periods()["power_speed"] == 1.0
    assert parser.parse_job_periods()["maintenance"] == 86400.0
    assert parser.parse_mqtt_enabled() is False


def test_empty_seed_means_random(tmp_path):
    parser = MachineSimParser(str(write_cfg(tmp_path, "[engine]\nseed =\n")))
    assert parser.parse_seed() is None


def test_from_file_resolves_paths_against_config_dir(tmp_path):
    cfg = SimConfig.from_file(write_cfg(tmp_path, VALID_CONFIG), environ={})

    assert cfg.persist_interval_ms == 2500
    assert cfg.seed == 42
    assert cfg.power_speed_period_s == 0.5
    assert Path(cfg.seed_path) == tmp_path.resolve() / "data" / "machines.json"
    assert Path(cfg.schema_path) == tmp_path.resolve() / "topics.json"
    assert cfg.mqtt_client_id == "sim-test"
    assert cfg.validate_schema is True


def test_environment_overrides_file(tmp_path):
    env = {
        "TELEMETRY_DB_SAVE_MS": "750",
        "DATABASE_URL": "sqlite:///other.db",
        "MQTT_HOST": "mqtt",
        "MQTT_PORT": "2883",
        "SEED_PATH": "/srv/seed.json",
    }
    cfg = SimConfig.from_file(write_cfg(tmp_path, VALID_CONFIG), environ=env)

    assert cfg.persist_interval_ms == 750
    assert cfg.database_url == "sqlite:///other.db"
    assert cfg.mqtt_host == "mqtt"
    assert cfg.mqtt_port == 2883
    assert cfg.seed_path == str(Path("/srv/seed.json"))


def test_zero_interval_is_allowed():
    assert SimConfig(persist_interval_ms=0).persist_interval_ms == 0


def test_negative_interval_raises_value_error(tmp_path):
    bad = VALID_CONFIG.replace("persist_interval_ms = 2500", "persist_interval_ms = -1", 1)
    with pytest.raises(ValueError):
        SimConfig.from_file(write_cfg(tmp_path, bad), environ={})


def test_non_numeric_interval_raises_value_error(tmp_path):
    bad = VALID_CONFIG.replace("persist_interval_ms = 2500", "persist_interval_ms = soon", 1)
    with pytest.raises(ValueError):
        SimConfig.from_file(write_cfg(tmp_path, bad), environ={})


def test_bool_interval_raises_type_error():
    with pytest.raises(TypeError):
        SimConfig(persist_interval_ms=True)


def test_non_positive_period_raises_value_error(tmp_path):
    bad = VALID_CONFIG.replace("runtime_period_s = 10", "runtime_period_s = 0", 1)
    with pytest.raises(ValueError):
        SimConfig.from_file(write_cfg(tmp_path, bad), environ={})


def test_invalid_qos_raises_value_error():
    with pytest.raises(ValueError):
        SimConfig(mqtt_qos=3)
