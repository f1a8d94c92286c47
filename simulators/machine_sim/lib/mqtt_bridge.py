import json
import logging

from typing import Any, Dict, Optional

import paho.mqtt.client as mqtt

from simulators.machine_sim.lib.publisher import now_iso

LOG = logging.getLogger("machine_sim.bridge")


class MqttTransport:
    """Fire-and-forget telemetry publishing over MQTT.

    The network loop runs on paho's own thread and the broker connection is
    established asynchronously, so a missing broker never blocks the engine.
    """

    def __init__(self, host: str = "localhost", port: int = 1883, client_id: str = "machine_sim",
                 qos: int = 0, topic_prefix: str = "", status_topic: Optional[str] = "machine_sim/status"):
        self.host = host
        self.port = port
        self.client_id = client_id
        self.qos = qos
        self.topic_prefix = topic_prefix
        self.status_topic = status_topic
        self.client: Optional[mqtt.Client] = None

    def _setup_client(self) -> None:
        self.client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, client_id=self.client_id)
        if self.status_topic:
            lwt_payload = json.dumps({"status": "offline", "ts": now_iso()})
            self.client.will_set(self.status_topic, payload=lwt_payload, qos=1, retain=True)
        self.client.on_connect = self._on_connect
        self.client.on_disconnect = self._on_disconnect

    def _on_connect(self, client, userdata, flags, reason_code, properties):
        if reason_code.is_failure:
            LOG.error("MQTT connect failed with rc=%s", reason_code)
            return
        LOG.info("Connected to broker %s:%s", self.host, self.port)
        if self.status_topic:
            client.publish(self.status_topic, json.dumps({"status": "online", "ts": now_iso()}),
                           qos=1, retain=True)

    def _on_disconnect(self, client, userdata, flags, reason_code, properties):
        LOG.warning("Disconnected from broker (rc=%s)", reason_code)

    def start(self) -> None:
        self._setup_client()
        LOG.info("Connecting to MQTT broker %s:%d", self.host, self.port)
        self.client.connect_async(self.host, self.port, keepalive=60)
        self.client.loop_start()

    def topic(self, topic: str) -> str:
        return f"{self.topic_prefix}/{topic}" if self.topic_prefix else topic

    def broadcast(self, topic: str, payload: Dict[str, Any]) -> None:
        if self.client is None:
            raise RuntimeError("Call start() before broadcast()")
        self.client.publish(self.topic(topic), json.dumps(payload, separators=(",", ":")),
                            qos=self.qos, retain=False)

    def stop(self) -> None:
        LOG.info("Stopping MQTT transport")
        if self.client is None:
            return
        try:
            if self.status_topic:
                self.client.publish(self.status_topic, json.dumps({"status": "offline", "ts": now_iso()}),
                                    qos=1, retain=True)
            self.client.loop_stop()
            self.client.disconnect()
        except Exception as e:
            LOG.debug("Exception while disconnecting MQTT client: %s", e)
