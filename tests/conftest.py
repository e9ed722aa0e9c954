import time
from datetime import datetime

import pytest

from loadharness.config import MODE_CPU, MODE_DISK, DatabaseLocator, IOType, RunConfiguration
from loadharness.errors import TelemetryUnavailable
from loadharness.monitor import LoadLevel, RunStatus


def wait_for(predicate, timeout=5.0, interval=0.01):
    """Espera até predicate() ser verdadeiro ou estourar o timeout."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


class FakeClock:
    """Relógio controlado pelo teste; sleep() avança o tempo e dispara os hooks."""

    def __init__(self, start=0.0):
        self.now = start
        self.hooks = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.now += seconds
        for hook in list(self.hooks):
            hook(self.now)
        return False


class FakeProvisioner:
    def __init__(self, error=None, release_error=None):
        self.error = error
        self.release_error = release_error
        self.prepared = 0
        self.released = 0

    def prepare(self, context, cancel=None):
        self.prepared += 1
        if self.error is not None:
            raise self.error

    def release(self, context):
        self.released += 1
        if self.release_error is not None:
            raise self.release_error
        return 0


class FakeMonitor:
    metric = 'CPU'
    target_label = '70%'

    def __init__(self, unavailable=False):
        self.unavailable = unavailable
        self.samples = []
        self.started = 0
        self.closed = 0

    def start(self):
        self.started += 1

    def sample(self, elapsed, remaining):
        self.samples.append((elapsed, remaining))
        if self.unavailable:
            raise TelemetryUnavailable("sem telemetria")
        return RunStatus(datetime.now(), 'CPU', 68.0, '70%', elapsed, remaining, LoadLevel.NOMINAL)

    def close(self):
        self.closed += 1


class IdleUnit:
    retry_delay = 0.001

    def __call__(self, worker):
        time.sleep(0.001)


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def stop_file(tmp_path):
    return str(tmp_path / 'stop.signal')


@pytest.fixture
def cpu_config(stop_file):
    return RunConfiguration(
        mode=MODE_CPU,
        duration_minutes=1,
        stop_file=stop_file,
        target_percent=70,
        database=DatabaseLocator(),
        stop_grace=1.0,
    ).validate()


@pytest.fixture
def disk_config(tmp_path, stop_file):
    return RunConfiguration(
        mode=MODE_DISK,
        duration_minutes=1,
        stop_file=stop_file,
        io_type=IOType.MIXED,
        thread_count=2,
        directory=str(tmp_path / 'scratch'),
        file_size_gb=0.1,
        block_size_kb=4,
        stop_grace=1.0,
    ).validate()
