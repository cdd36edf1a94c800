"""Pytest configuration and shared fixtures."""
from __future__ import annotations

import time

import pytest

from gpu_counters.errors import TelemetryError
from gpu_counters.facility import InMemoryFacility
from gpu_counters.telemetry import DeviceIdentity, DeviceReading

MIB = 1024 * 1024


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "nvml: mark test as exercising the NVML binding (mocked)"
    )
    config.addinivalue_line(
        "markers", "timing: mark test as depending on wall-clock timing"
    )
    config.addinivalue_line(
        "markers", "integration: mark test as integration test"
    )


def make_reading(
    *,
    util: int = 50,
    mem_util: int = 20,
    total_mib: int = 16384,
    used_mib: int = 4096,
    fan: int = 40,
    power_w: int = 150,
    clock: int = 1500,
    temp: int = 65,
) -> DeviceReading:
    return DeviceReading(
        utilization_pct=util,
        mem_utilization_pct=mem_util,
        mem_total_bytes=total_mib * MIB,
        mem_used_bytes=used_mib * MIB,
        fan_speed_pct=fan,
        power_milliwatts=power_w * 1000,
        sm_clock_mhz=clock,
        temperature_c=temp,
    )


class FakeTelemetrySource:
    """Telemetry source driven entirely by test data."""

    def __init__(
        self,
        identities: list[DeviceIdentity] | None = None,
        readings: dict[int, DeviceReading] | None = None,
        fail_enumerate: bool = False,
    ) -> None:
        self.identities = identities or []
        self.readings = readings or {}
        self.fail_enumerate = fail_enumerate
        self.failing: set[int] = set()
        self.read_calls: list[int] = []
        self.enumerate_calls = 0
        self.shutdown_calls = 0
        self.read_delay = 0.0

    def enumerate(self) -> list[DeviceIdentity]:
        self.enumerate_calls += 1
        if self.fail_enumerate:
            raise TelemetryError("driver not loaded")
        return list(self.identities)

    def read(self, index: int) -> DeviceReading:
        self.read_calls.append(index)
        if self.read_delay:
            time.sleep(self.read_delay)
        if index in self.failing:
            raise TelemetryError(f"GPU {index} is lost")
        return self.readings.get(index, make_reading())

    def shutdown(self) -> None:
        self.shutdown_calls += 1


def wait_for(predicate, timeout: float = 3.0, interval: float = 0.005) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def two_gpu_source():
    """Two GPUs enumerated out of name order."""
    return FakeTelemetrySource(
        identities=[
            DeviceIdentity(index=0, name="Tesla V100", uuid="GPU-aaaa", location_tag="3B:00"),
            DeviceIdentity(index=1, name="GeForce GTX 1080", uuid="GPU-bbbb", location_tag="AF:00"),
        ],
        readings={
            0: make_reading(total_mib=1000, used_mib=500, util=80, power_w=250),
            1: make_reading(total_mib=4000, used_mib=400, util=20, power_w=150),
        },
    )


@pytest.fixture
def facility():
    return InMemoryFacility()
