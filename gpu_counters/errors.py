from __future__ import annotations


class GpuCountersError(Exception):
    """Base class for errors raised by gpu_counters."""


class TelemetryError(GpuCountersError):
    """The telemetry source could not answer a query."""


class CounterWriteError(GpuCountersError):
    """A value could not be written to a monitoring facility counter."""


class PublisherStateError(GpuCountersError):
    """Counters were bound twice, or written before being bound."""


class LoopStateError(GpuCountersError):
    """A lifecycle call was made in a state that does not allow it."""
