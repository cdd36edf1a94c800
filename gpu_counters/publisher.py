"""Binds catalog metrics to facility counters and writes sampled values."""

from __future__ import annotations

from collections.abc import Sequence
import logging

from gpu_counters.catalog import (
    CATEGORY_HELP,
    METRICS,
    PERCENT_BASE,
    BaseKind,
    MetricDefinition,
    MetricKey,
    MetricKind,
    counter_definitions,
    memory_total_mib,
    metric_value,
)
from gpu_counters.devices import Device
from gpu_counters.errors import PublisherStateError
from gpu_counters.facility import CounterHandle, MonitoringFacility
from gpu_counters.logging_utils import TRACE_LEVEL

TOTAL_INSTANCE = "_Total"


class CounterPublisher:
    def __init__(self, facility: MonitoringFacility, category: str = "GPU") -> None:
        self.facility = facility
        self.category = category
        self.logger = logging.getLogger(self.__class__.__name__)
        self._handles: dict[tuple[str, MetricKey], CounterHandle] = {}
        self._base_handles: dict[tuple[str, MetricKey], CounterHandle] = {}
        self._failing: set[CounterHandle] = set()
        self._bound = False

    @property
    def bound(self) -> bool:
        return self._bound

    def ensure_category(self) -> bool:
        """Create the counter category unless it already exists.

        Returns True when the category was created by this call.
        """
        if self.facility.category_exists(self.category):
            self.logger.debug("Counter category %s already exists", self.category)
            return False
        self.logger.info("Creating counter category %s", self.category)
        self.facility.create_category(self.category, CATEGORY_HELP, counter_definitions())
        return True

    def bind_all(self, devices: Sequence[Device]) -> None:
        if self._bound:
            raise PublisherStateError("Counters are already bound")

        for device in devices:
            self._bind_instance(device.instance_name)
            for metric in METRICS:
                if metric.base is BaseKind.PERCENT:
                    self._write_base(device.instance_name, metric, PERCENT_BASE)
                elif metric.base is BaseKind.MEMORY_TOTAL:
                    self._write_base(
                        device.instance_name, metric, memory_total_mib(device.snapshot) or 0
                    )

        self._bind_instance(TOTAL_INSTANCE)
        self._write_aggregate_bases(devices)
        self._bound = True
        self.logger.info(
            "Bound %s counters for %s GPU instance(s) plus %s",
            len(self._handles) + len(self._base_handles),
            len(devices),
            TOTAL_INSTANCE,
        )

    def _bind_instance(self, instance: str) -> None:
        for metric in METRICS:
            key = (instance, metric.key)
            self._handles[key] = self.facility.create_handle(
                self.category, metric.display_name, instance
            )
            if metric.kind is MetricKind.RATIO:
                self._base_handles[key] = self.facility.create_handle(
                    self.category, metric.base_name, instance
                )

    def publish_device(self, device: Device) -> None:
        self._require_bound()
        snapshot = device.snapshot
        for metric in METRICS:
            if metric.base is BaseKind.MEMORY_TOTAL:
                total = memory_total_mib(snapshot)
                if total is not None:
                    self._write_base(device.instance_name, metric, total)
            value = metric_value(metric.key, snapshot)
            self._write(self._handles[(device.instance_name, metric.key)], value or 0)

    def publish_aggregate(self, devices: Sequence[Device]) -> None:
        self._require_bound()
        self._write_aggregate_bases(devices)
        for metric in METRICS:
            total = sum(metric_value(metric.key, d.snapshot) or 0 for d in devices)
            self._write(self._handles[(TOTAL_INSTANCE, metric.key)], total)

    def publish_all(self, devices: Sequence[Device]) -> None:
        for device in devices:
            self.publish_device(device)
        self.publish_aggregate(devices)

    def _write_aggregate_bases(self, devices: Sequence[Device]) -> None:
        for metric in METRICS:
            if metric.base is BaseKind.PERCENT:
                self._write_base(TOTAL_INSTANCE, metric, PERCENT_BASE * len(devices))
            elif metric.base is BaseKind.MEMORY_TOTAL:
                # Fleet-weighted: sum used / sum total, not a mean of percentages.
                self._write_base(
                    TOTAL_INSTANCE,
                    metric,
                    sum(memory_total_mib(d.snapshot) or 0 for d in devices),
                )

    def _write_base(self, instance: str, metric: MetricDefinition, value: int) -> None:
        self._write(self._base_handles[(instance, metric.key)], value)

    def _write(self, handle: CounterHandle, value: int) -> None:
        try:
            self.facility.write(handle, value)
        except Exception as exc:
            # A failing counter never aborts the rest of the tick.
            if handle not in self._failing:
                self.logger.warning(
                    "Writing %s/%s failed: %s", handle.instance, handle.counter, exc
                )
                self._failing.add(handle)
            else:
                self.logger.debug(
                    "Writing %s/%s failed again: %s", handle.instance, handle.counter, exc
                )
            return
        self._failing.discard(handle)
        self.logger.log(TRACE_LEVEL, "%s/%s = %s", handle.instance, handle.counter, value)

    def _require_bound(self) -> None:
        if not self._bound:
            raise PublisherStateError("Counters are not bound")

    def teardown(self) -> None:
        for handle in [*self._handles.values(), *self._base_handles.values()]:
            self.facility.close_handle(handle)
        self._handles.clear()
        self._base_handles.clear()
        self._failing.clear()
        self._bound = False
