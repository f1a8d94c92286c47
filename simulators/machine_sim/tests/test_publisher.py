import json
import pytest

from datetime import datetime, timedelta, timezone
from pathlib import Path

from simulators.machine_sim.lib.models import Machine
from simulators.machine_sim.lib.mqtt_bridge import MqttTransport
from simulators.machine_sim.lib.publisher import (Publisher, TelemetryEvent, load_topic_schema,
                                                  now_iso, to_iso)

TOPICS_FILE = Path(__file__).resolve().parents[1] / "mqtt_topics.json"


def machine(**overrides) -> Machine:
    m = Machine(name="Fräse B2", identification="FR-B2", last_maintenance="02.06.2025",
                temperature=51.0, power=81.0, speed=2.0, uptime_minutes=73410.0,
                runtime_minutes=92.0, id=1)
    return m.with_values(overrides)


class FailingTransport:
    def broadcast(self, topic, payload):
        raise ConnectionError("socket closed")


def test_iso_timestamps_are_utc_with_millis():
    ts = datetime(2025, 8, 29, 12, 34, 56, 789123, tzinfo=timezone.utc)
    assert to_iso(ts) == "2025-08-29T12:34:56.789Z"
    local = ts.astimezone(timezone(timedelta(hours=2)))
    assert to_iso(local) == "2025-08-29T12:34:56.789Z"
    assert now_iso().endswith("Z")


def test_event_payload_uses_wire_keys():
    ts = datetime(2025, 1, 1, tzinfo=timezone.utc)
    payload = TelemetryEvent.from_machine(machine(), ts).payload()

    assert payload == {
        "name": "Fräse B2",
        "temperatur": 51.0,
        "aktuelleLeistung": 81.0,
        "betriebsminutenGesamt": 73410.0,
        "geschwindigkeit": 2.0,
        "timestamp": "2025-01-01T00:00:00.000Z",
    }


def test_publish_fans_out_to_all_transports(transport):
    second = type(transport)()
    pub = Publisher([transport, second])

    event = pub.publish(machine(power=12.5))

    assert event is not None
    assert transport.messages[0][0] == "telemetry"
    assert transport.messages[0][1]["aktuelleLeistung"] == 12.5
    assert second.messages == transport.messages
    assert pub.published == 1


def test_failing_transport_does_not_block_others(transport):
    pub = Publisher([FailingTransport(), transport])
    assert pub.publish(machine()) is not None
    assert len(transport.messages) == 1


def test_add_transport_ignores_duplicates(transport):
    pub = Publisher()
    pub.add_transport(transport)
    pub.add_transport(transport)
    pub.publish(machine())
    assert len(transport.messages) == 1


def test_bundled_schema_accepts_events(transport):
    validator = load_topic_schema(TOPICS_FILE, "telemetry")
    assert validator is not None

    pub = Publisher([transport], validator=validator)
    assert pub.publish(machine()) is not None
    assert len(transport.messages) == 1


def test_invalid_event_is_dropped(transport):
    pub = Publisher([transport], validator=load_topic_schema(TOPICS_FILE, "telemetry"))
    assert pub.publish(machine(temperature=None)) is None
    assert transport.messages == []
    assert pub.published == 0


def test_missing_schema_disables_validation(tmp_path):
    assert load_topic_schema(tmp_path / "missing.json") is None
    p = tmp_path / "topics.json"
    p.write_text(json.dumps({"topics": {"other": {"schema": {"type": "object"}}}}), encoding="utf-8")
    assert load_topic_schema(p, "telemetry") is None


def test_mqtt_topic_prefix():
    assert MqttTransport(topic_prefix="plant1").topic("telemetry") == "plant1/telemetry"
    assert MqttTransport().topic("telemetry") == "telemetry"


def test_mqtt_broadcast_requires_start():
    with pytest.raises(RuntimeError):
        MqttTransport().broadcast("telemetry", {"name": "x"})


def test_mqtt_broadcast_publishes_json(monkeypatch):
    published = []

    class FakeClient:
        def __init__(self, *args, **kwargs):
            self.will = None

        def will_set(self, topic, payload=None, qos=0, retain=False):
            self.will = (topic, payload)

        def connect_async(self, host, port, keepalive=60):
            pass

        def loop_start(self):
            pass

        def loop_stop(self):
            pass

        def disconnect(self):
            pass

        def publish(self, topic, payload, qos=0, retain=False):
            published.append((topic, json.loads(payload), retain))

    monkeypatch.setattr("simulators.machine_sim.lib.mqtt_bridge.mqtt.Client", FakeClient)
    t = MqttTransport(topic_prefix="plant1")
    t.start()
    assert t.client.will[0] == "machine_sim/status"

    t.broadcast("telemetry", {"name": "Fräse B2"})
    t.stop()

    assert published[0] == ("plant1/telemetry", {"name": "Fräse B2"}, False)
    assert published[1][0] == "machine_sim/status"
    assert published[1][1]["status"] == "offline"
