import logging
import os
import signal
import sys
import threading
from pathlib import Path
from typing import List, Optional

sys.path.append(str(Path(__file__).resolve().parents[2]))

from sqlalchemy.exc import SQLAlchemyError

from simulators.machine_sim.lib.configparsers import DEFAULT_CONFIG, SimConfig
from simulators.machine_sim.lib.engine import TelemetryEngine
from simulators.machine_sim.lib.metric_synth import MetricSynth
from simulators.machine_sim.lib.mqtt_bridge import MqttTransport
from simulators.machine_sim.lib.publisher import Publisher, Transport, load_topic_schema
from simulators.machine_sim.lib.seed import SeedError, load_seed
from simulators.machine_sim.lib.store import MachineStore

LOG = logging.getLogger("machine_sim.app")

CONFIG_FILE = Path(os.getenv("MACHINE_SIM_CONFIG", DEFAULT_CONFIG))


def build_engine(config: SimConfig, transports: Optional[List[Transport]] = None) -> TelemetryEngine:
    """
    Load seed data, open storage and prepare the engine (jobs not started).

    Raises:
        SeedError: the seed dataset cannot be read or parsed.
        SQLAlchemyError: storage is unreachable.
    """
    synth = MetricSynth(config.seed)
    seeds = load_seed(config.seed_path, rng=synth.rng)
    store = MachineStore(config.database_url)

    validator = load_topic_schema(config.schema_path, config.mqtt_topic) if config.validate_schema else None
    publisher = Publisher(transports or [], topic=config.mqtt_topic, validator=validator,
                          log_messages=config.log_messages)
    engine = TelemetryEngine(store, publisher, config, synth=synth)
    repaired = engine.startup(seeds)
    LOG.info("Startup complete: %d machine(s), %d repaired", store.count(), repaired)
    return engine


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")

    config = SimConfig.from_file(CONFIG_FILE)
    LOG.info("startup: loading seed and init db (seed=%s)", config.seed_path)

    mqtt_transport = None
    transports: List[Transport] = []
    if config.mqtt_enabled:
        mqtt_transport = MqttTransport(config.mqtt_host, config.mqtt_port, config.mqtt_client_id,
                                       qos=config.mqtt_qos, topic_prefix=config.mqtt_topic_prefix)
        transports.append(mqtt_transport)

    try:
        engine = build_engine(config, transports)
    except SeedError as e:
        LOG.error("startup: failed to read seed: %s", e)
        sys.exit(1)
    except SQLAlchemyError as e:
        LOG.error("startup: storage initialisation failed: %s", e)
        sys.exit(1)

    if mqtt_transport is not None:
        mqtt_transport.start()

    stop = threading.Event()

    def _sig(sig, frame):
        LOG.info("Signal %s received, shutting down", sig)
        stop.set()

    signal.signal(signal.SIGINT, _sig)
    signal.signal(signal.SIGTERM, _sig)

    engine.start()
    stop.wait()

    engine.stop()
    if mqtt_transport is not None:
        mqtt_transport.stop()
    engine.store.dispose()


if __name__ == "__main__":
    main()
