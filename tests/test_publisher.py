"""Tests for binding counters and writing device and total values."""
from __future__ import annotations

import pytest

from gpu_counters.devices import DeviceRegistry
from gpu_counters.errors import CounterWriteError, PublisherStateError
from gpu_counters.facility import InMemoryFacility
from gpu_counters.publisher import TOTAL_INSTANCE, CounterPublisher
from gpu_counters.telemetry import DeviceIdentity

from conftest import FakeTelemetrySource, make_reading

CATEGORY = "GPU"


class FlakyFacility(InMemoryFacility):
    """Fails every write to the named counters."""

    def __init__(self, failing_counters: set[str]) -> None:
        super().__init__()
        self.failing_counters = failing_counters

    def write(self, handle, value):
        if handle.counter in self.failing_counters:
            raise CounterWriteError("broker unavailable")
        super().write(handle, value)


def bind(source, facility):
    registry = DeviceRegistry(source)
    devices = registry.enumerate()
    publisher = CounterPublisher(facility, CATEGORY)
    publisher.ensure_category()
    publisher.bind_all(devices)
    return registry, publisher, devices


def gpu_source(count: int) -> FakeTelemetrySource:
    return FakeTelemetrySource(
        identities=[DeviceIdentity(index=i, name=f"Tesla T4 #{i}") for i in range(count)]
    )


class TestBinding:
    def test_ensure_category_creates_once(self, facility):
        publisher = CounterPublisher(facility, CATEGORY)

        assert publisher.ensure_category() is True
        assert publisher.ensure_category() is False
        assert len(facility.categories[CATEGORY]) == 13

    def test_handles_for_devices_and_total(self, two_gpu_source, facility):
        bind(two_gpu_source, facility)

        assert facility.instances(CATEGORY) == sorted(
            ["GeForce GTX 1080(0)", "Tesla V100(1)", TOTAL_INSTANCE]
        )
        assert len(facility.handles) == 3 * 13

    def test_bind_twice_is_an_error(self, two_gpu_source, facility):
        _, publisher, devices = bind(two_gpu_source, facility)

        with pytest.raises(PublisherStateError):
            publisher.bind_all(devices)

    def test_publish_before_bind_is_an_error(self, two_gpu_source, facility):
        devices = DeviceRegistry(two_gpu_source).enumerate()
        publisher = CounterPublisher(facility, CATEGORY)

        with pytest.raises(PublisherStateError):
            publisher.publish_device(devices[0])
        with pytest.raises(PublisherStateError):
            publisher.publish_aggregate(devices)

    @pytest.mark.parametrize("count", [0, 1, 3, 24])
    def test_total_percent_base_scales_with_device_count(self, count, facility):
        bind(gpu_source(count), facility)

        for name in ("% GPU Fan Speed", "% GPU Time", "% GPU Memory Reads/Writes"):
            assert facility.value(CATEGORY, f"{name}-Base", TOTAL_INSTANCE) == 100 * count

    def test_device_percent_base_is_100(self, two_gpu_source, facility):
        bind(two_gpu_source, facility)

        assert facility.value(CATEGORY, "% GPU Time-Base", "Tesla V100(1)") == 100

    def test_memory_base_set_at_bind(self, two_gpu_source, facility):
        bind(two_gpu_source, facility)

        assert facility.value(CATEGORY, "% GPU Memory Used-Base", "Tesla V100(1)") == 1000
        assert facility.value(CATEGORY, "% GPU Memory Used-Base", "GeForce GTX 1080(0)") == 4000
        assert facility.value(CATEGORY, "% GPU Memory Used-Base", TOTAL_INSTANCE) == 5000

    def test_teardown_allows_rebind(self, two_gpu_source, facility):
        _, publisher, devices = bind(two_gpu_source, facility)

        publisher.teardown()
        assert facility.handles == set()
        assert not publisher.bound

        publisher.bind_all(devices)
        assert publisher.bound


class TestPublishDevice:
    def test_absolute_values(self, two_gpu_source, facility):
        _, publisher, devices = bind(two_gpu_source, facility)

        publisher.publish_device(devices[1])

        instance = "Tesla V100(1)"
        assert facility.value(CATEGORY, "GPU Power Usage (Watts)", instance) == 250
        assert facility.value(CATEGORY, "GPU Memory Total (MiB)", instance) == 1000
        assert facility.value(CATEGORY, "GPU Memory Used (MiB)", instance) == 500
        assert facility.rendered(CATEGORY, "% GPU Time", instance) == pytest.approx(80.0)
        assert facility.rendered(CATEGORY, "% GPU Memory Used", instance) == pytest.approx(50.0)

    def test_memory_base_follows_device_total(self, two_gpu_source, facility):
        registry, publisher, devices = bind(two_gpu_source, facility)
        device = devices[1]

        two_gpu_source.readings[device.index] = make_reading(total_mib=2000, used_mib=500)
        registry.refresh(device)
        publisher.publish_device(device)

        instance = device.instance_name
        assert facility.value(CATEGORY, "% GPU Memory Used-Base", instance) == 2000
        assert facility.rendered(CATEGORY, "% GPU Memory Used", instance) == pytest.approx(25.0)

    def test_read_failure_publishes_zero(self, two_gpu_source, facility):
        registry, publisher, devices = bind(two_gpu_source, facility)
        device = devices[1]
        publisher.publish_device(device)
        assert facility.value(CATEGORY, "GPU Power Usage (Watts)", device.instance_name) == 250

        two_gpu_source.failing.add(device.index)
        registry.refresh(device)
        publisher.publish_device(device)

        instance = device.instance_name
        for counter in (
            "GPU Power Usage (Watts)",
            "GPU Memory Total (MiB)",
            "GPU Memory Used (MiB)",
            "GPU SM Clock (MHz)",
            "GPU Temperature (in degrees C)",
            "% GPU Time",
            "% GPU Memory Used",
        ):
            assert facility.value(CATEGORY, counter, instance) == 0
        # The last valid total stays as the base.
        assert facility.value(CATEGORY, "% GPU Memory Used-Base", instance) == 1000

    def test_write_failures_do_not_stop_other_counters(self, two_gpu_source):
        facility = FlakyFacility({"GPU Power Usage (Watts)"})
        _, publisher, devices = bind(two_gpu_source, facility)

        publisher.publish_device(devices[1])

        instance = devices[1].instance_name
        assert facility.value(CATEGORY, "GPU Power Usage (Watts)", instance) == 0
        assert facility.value(CATEGORY, "GPU SM Clock (MHz)", instance) == 1500

    def test_unexpected_facility_error_is_contained(self, two_gpu_source):
        class BrokenSocketFacility(InMemoryFacility):
            def write(self, handle, value):
                if handle.counter == "GPU Power Usage (Watts)":
                    raise OSError("connection reset")
                super().write(handle, value)

        facility = BrokenSocketFacility()
        _, publisher, devices = bind(two_gpu_source, facility)

        publisher.publish_all(devices)

        assert facility.value(CATEGORY, "GPU SM Clock (MHz)", devices[1].instance_name) == 1500
        assert facility.value(CATEGORY, "GPU Power Usage (Watts)", TOTAL_INSTANCE) == 0
        assert facility.rendered(
            CATEGORY, "% GPU Memory Used", TOTAL_INSTANCE
        ) == pytest.approx(18.0)

    def test_repeated_write_failure_warns_once(self, two_gpu_source, caplog):
        facility = FlakyFacility({"GPU SM Clock (MHz)"})
        _, publisher, devices = bind(two_gpu_source, facility)

        with caplog.at_level("WARNING"):
            for _ in range(3):
                publisher.publish_device(devices[0])

        warnings = [r for r in caplog.records if r.levelname == "WARNING"]
        assert len(warnings) == 1


class TestPublishAggregate:
    def test_memory_used_is_weighted(self, two_gpu_source, facility):
        _, publisher, devices = bind(two_gpu_source, facility)

        publisher.publish_all(devices)

        assert facility.value(CATEGORY, "% GPU Memory Used", TOTAL_INSTANCE) == 900
        assert facility.value(CATEGORY, "% GPU Memory Used-Base", TOTAL_INSTANCE) == 5000
        # 900/5000, not the mean of 50% and 10%.
        assert facility.rendered(CATEGORY, "% GPU Memory Used", TOTAL_INSTANCE) == pytest.approx(18.0)

    def test_absolute_values_are_summed(self, two_gpu_source, facility):
        _, publisher, devices = bind(two_gpu_source, facility)

        publisher.publish_aggregate(devices)

        assert facility.value(CATEGORY, "GPU Power Usage (Watts)", TOTAL_INSTANCE) == 400
        assert facility.value(CATEGORY, "GPU Memory Total (MiB)", TOTAL_INSTANCE) == 5000
        assert facility.value(CATEGORY, "GPU SM Clock (MHz)", TOTAL_INSTANCE) == 3000

    def test_percent_ratio_is_fleet_average(self, two_gpu_source, facility):
        _, publisher, devices = bind(two_gpu_source, facility)

        publisher.publish_aggregate(devices)

        assert facility.value(CATEGORY, "% GPU Time", TOTAL_INSTANCE) == 100
        assert facility.value(CATEGORY, "% GPU Time-Base", TOTAL_INSTANCE) == 200
        assert facility.rendered(CATEGORY, "% GPU Time", TOTAL_INSTANCE) == pytest.approx(50.0)

    def test_failed_device_counts_as_zero(self, two_gpu_source, facility):
        registry, publisher, devices = bind(two_gpu_source, facility)

        two_gpu_source.failing.add(devices[1].index)
        registry.refresh_all()
        publisher.publish_aggregate(devices)

        assert facility.value(CATEGORY, "GPU Power Usage (Watts)", TOTAL_INSTANCE) == 150
        assert facility.value(CATEGORY, "% GPU Memory Used-Base", TOTAL_INSTANCE) == 4000
        assert facility.value(CATEGORY, "% GPU Time-Base", TOTAL_INSTANCE) == 200

    def test_no_devices(self, facility):
        _, publisher, devices = bind(gpu_source(0), facility)

        publisher.publish_all(devices)

        assert facility.instances(CATEGORY) == [TOTAL_INSTANCE]
        assert facility.value(CATEGORY, "GPU Power Usage (Watts)", TOTAL_INSTANCE) == 0
        assert facility.rendered(CATEGORY, "% GPU Time", TOTAL_INSTANCE) == 0.0
