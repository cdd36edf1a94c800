"""Wires the telemetry source, registry, publisher and loop into one service."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone
import logging
from typing import Any

from gpu_counters.collection import CollectionLoop, LoopState
from gpu_counters.config import CounterConfig
from gpu_counters.devices import DeviceRegistry
from gpu_counters.errors import LoopStateError
from gpu_counters.facility import InMemoryFacility, MonitoringFacility
from gpu_counters.publisher import CounterPublisher
from gpu_counters.schema import SCHEMA_NAME, SCHEMA_VERSION
from gpu_counters.telemetry import TelemetrySource


class GpuCounterService:
    def __init__(
        self,
        source: TelemetrySource,
        facility: MonitoringFacility,
        config: CounterConfig | None = None,
        on_tick: Callable[[], None] | None = None,
        snapshot_facility: InMemoryFacility | None = None,
    ) -> None:
        self.config = config or CounterConfig()
        self.source = source
        self.facility = facility
        if snapshot_facility is None and isinstance(facility, InMemoryFacility):
            snapshot_facility = facility
        self.snapshot_facility = snapshot_facility
        self.registry = DeviceRegistry(source, self.config.use_pcie_id_in_device_name)
        self.publisher = CounterPublisher(facility, self.config.category)
        self.loop = CollectionLoop(
            self.registry,
            self.publisher,
            interval_ms=self.config.update_interval_msec,
            on_tick=on_tick,
        )
        self.logger = logging.getLogger(self.__class__.__name__)

    def _bind(self) -> None:
        self.publisher.ensure_category()
        devices = self.registry.enumerate()
        self.publisher.bind_all(devices)

    def start(self) -> None:
        # The loop owns the registry once running; check before touching it.
        if self.loop.state is not LoopState.IDLE:
            raise LoopStateError(f"Cannot start service while {self.loop.state.value}")
        self.logger.info("Starting GPU counter service")
        try:
            self._bind()
            self.loop.start()
        except Exception:
            self._release()
            raise

    def run_once(self) -> None:
        """Bind, publish a single sample and release everything."""
        self._bind()
        try:
            self.loop.run_once()
        finally:
            self._release()

    def pause(self) -> None:
        self.loop.pause()

    def resume(self) -> None:
        self.loop.resume()

    def stop(self) -> None:
        # Join the loop before the source goes away so no read is in flight.
        self.loop.stop()
        self._release()
        self.logger.info("GPU counter service stopped")

    def _release(self) -> None:
        self.publisher.teardown()
        self.source.shutdown()

    def remove_category(self) -> None:
        """Bind once so every counter instance is known, then delete the category."""
        if self.loop.state is LoopState.RUNNING:
            raise RuntimeError("Stop the service before removing its category")
        self._bind()
        try:
            self.facility.delete_category(self.config.category)
        finally:
            self._release()

    def snapshot(self) -> dict[str, Any]:
        """JSON-ready view of the counters, available with an in-memory facility."""
        if self.snapshot_facility is None:
            raise TypeError("Snapshots need an InMemoryFacility")
        return {
            "schema": {"name": SCHEMA_NAME, "version": SCHEMA_VERSION},
            "ts": datetime.now(timezone.utc).isoformat(),
            "category": self.config.category,
            "instances": self.snapshot_facility.snapshot(self.config.category),
        }
