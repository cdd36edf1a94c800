"""Tests for GPU enumeration, naming and snapshot refresh."""
from __future__ import annotations

import pytest

from gpu_counters.devices import FAILED_DEVICE_NAME, DeviceRegistry
from gpu_counters.telemetry import DeviceIdentity, DeviceReading

from conftest import FakeTelemetrySource, make_reading


class TestEnumeration:
    """Logical ids and instance names."""

    def test_ids_follow_name_order(self, two_gpu_source):
        devices = DeviceRegistry(two_gpu_source).enumerate()

        assert [d.logical_id for d in devices] == [0, 1]
        assert [d.name for d in devices] == ["GeForce GTX 1080", "Tesla V100"]
        assert [d.index for d in devices] == [1, 0]
        assert devices[0].instance_name == "GeForce GTX 1080(0)"
        assert devices[1].instance_name == "Tesla V100(1)"

    @pytest.mark.parametrize("count", [0, 1, 4, 8])
    def test_ids_are_dense(self, count):
        names = [f"GPU model {chr(ord('Z') - i)}" for i in range(count)]
        source = FakeTelemetrySource(
            identities=[DeviceIdentity(index=i, name=n) for i, n in enumerate(names)]
        )

        devices = DeviceRegistry(source).enumerate()

        assert [d.logical_id for d in devices] == list(range(count))
        assert [d.name for d in devices] == sorted(names)

    def test_repeated_enumeration_is_stable(self, two_gpu_source):
        registry = DeviceRegistry(two_gpu_source)
        first = [(d.logical_id, d.index, d.instance_name) for d in registry.enumerate()]
        second = [(d.logical_id, d.index, d.instance_name) for d in registry.enumerate()]

        assert first == second

    def test_identical_models_get_distinct_names(self):
        source = FakeTelemetrySource(
            identities=[
                DeviceIdentity(index=i, name="Tesla K80", location_tag="00:00") for i in range(4)
            ]
        )

        devices = DeviceRegistry(source).enumerate()

        names = [d.instance_name for d in devices]
        assert names == ["Tesla K80(0)", "Tesla K80(1)", "Tesla K80(2)", "Tesla K80(3)"]

    def test_location_naming(self, two_gpu_source):
        devices = DeviceRegistry(two_gpu_source, use_location_names=True).enumerate()

        assert devices[0].instance_name == "GeForce GTX 1080(AF:00)"
        assert devices[1].instance_name == "Tesla V100(3B:00)"

    def test_source_failure_yields_no_devices(self):
        source = FakeTelemetrySource(
            identities=[DeviceIdentity(index=0, name="Tesla V100")], fail_enumerate=True
        )
        registry = DeviceRegistry(source)

        assert registry.enumerate() == ()
        assert registry.devices == ()

    def test_failed_device_is_kept_with_sentinel_name(self):
        source = FakeTelemetrySource(
            identities=[
                DeviceIdentity(index=0, name="Tesla V100"),
                DeviceIdentity(index=1, name=None),
            ]
        )

        devices = DeviceRegistry(source).enumerate()

        failed = [d for d in devices if d.failed]
        assert len(failed) == 1
        assert failed[0].name == FAILED_DEVICE_NAME
        assert failed[0].instance_name == f"{FAILED_DEVICE_NAME}({failed[0].logical_id})"
        assert failed[0].snapshot == DeviceReading.invalid()
        assert 1 not in source.read_calls

    def test_enumeration_takes_initial_sample(self, two_gpu_source):
        devices = DeviceRegistry(two_gpu_source).enumerate()

        assert devices[0].snapshot.mem_total_bytes == 4000 * 1024 * 1024
        assert devices[1].snapshot.utilization_pct == 80


class TestRefresh:
    """Per-tick reads."""

    def test_read_failure_invalidates_snapshot(self, two_gpu_source):
        registry = DeviceRegistry(two_gpu_source)
        device = registry.enumerate()[0]
        assert device.snapshot.any_valid

        two_gpu_source.failing.add(device.index)
        reading = registry.refresh(device)

        assert reading == DeviceReading.invalid()
        assert device.snapshot.power_milliwatts is None
        assert not device.snapshot.any_valid

    def test_recovery_after_failure(self, two_gpu_source):
        registry = DeviceRegistry(two_gpu_source)
        device = registry.enumerate()[0]

        two_gpu_source.failing.add(device.index)
        registry.refresh(device)
        two_gpu_source.failing.clear()
        two_gpu_source.readings[device.index] = make_reading(power_w=99)
        registry.refresh(device)

        assert device.snapshot.power_milliwatts == 99_000

    def test_failure_warning_logged_once(self, two_gpu_source, caplog):
        registry = DeviceRegistry(two_gpu_source)
        device = registry.enumerate()[0]
        two_gpu_source.failing.add(device.index)

        with caplog.at_level("WARNING"):
            for _ in range(3):
                registry.refresh(device)

        warnings = [r for r in caplog.records if "failed" in r.getMessage()]
        assert len(warnings) == 1

    def test_failed_device_never_read(self):
        source = FakeTelemetrySource(identities=[DeviceIdentity(index=0, name=None)])
        registry = DeviceRegistry(source)
        registry.enumerate()

        registry.refresh_all()
        registry.refresh_all()

        assert source.read_calls == []

    def test_refresh_all_reads_each_device(self, two_gpu_source):
        registry = DeviceRegistry(two_gpu_source)
        registry.enumerate()
        two_gpu_source.read_calls.clear()

        registry.refresh_all()

        assert sorted(two_gpu_source.read_calls) == [0, 1]
