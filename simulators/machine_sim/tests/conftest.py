import pytest

from simulators.machine_sim.lib.models import MachineSeed
from simulators.machine_sim.lib.store import MachineStore


class ManualClock:
    def __init__(self, start: float = 1000.0):
        self.t = start

    def __call__(self) -> float:
        return self.t

    def advance(self, seconds: float) -> None:
        self.t += seconds


class RecordingTransport:
    def __init__(self):
        self.messages = []

    def broadcast(self, topic, payload):
        self.messages.append((topic, payload))

    def for_machine(self, name):
        return [p for _, p in self.messages if p["name"] == name]


def make_seeds():
    return [
        MachineSeed("Drehmaschine A1", "DM-A1", "14.03.2025", 42.5, 68.0, 2.5, 184230.5, 315.0),
        MachineSeed("Presse C3", "PR-C3", "unknown", 38.2, 55.0, 1.5, 402118.3, 1440.0),
    ]


@pytest.fixture
def seeds():
    return make_seeds()


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def store(tmp_path):
    s = MachineStore(f"sqlite:///{tmp_path / 'machines.db'}")
    yield s
    s.dispose()


@pytest.fixture
def seeded_store(store):
    store.seed_if_empty(make_seeds())
    return store
