"""
Test doubles shared by the fixtures and the test modules.
"""

from vigil.alerts.channels import AlertChannel
from vigil.errors import ChannelDeliveryError
from vigil.models.alert import Alert
from vigil.models.metrics import SystemMetrics


class FakeClock:
    """Monotonic clock advanced by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingChannel(AlertChannel):
    """Channel that keeps every alert it is given."""

    def __init__(self, name: str, fail: bool = False):
        self.name = name
        self.fail = fail
        self.sent: list[Alert] = []

    async def send(self, alert: Alert) -> None:
        if self.fail:
            raise ChannelDeliveryError(self.name, "transport down")
        self.sent.append(alert)


class StubSampler:
    """Host metrics with fixed values."""

    def __init__(self, cpu: float = 10.0, memory: float = 20.0, disk: float = 30.0, cpus: int = 4):
        self.metrics = SystemMetrics(
            cpu_usage=cpu, memory_usage=memory, disk_usage=disk, load_average=[0.5, 0.4, 0.3]
        )
        self.cpus = cpus

    def cpu_count(self) -> int:
        return self.cpus

    def sample(self) -> SystemMetrics:
        return SystemMetrics(**vars(self.metrics))
