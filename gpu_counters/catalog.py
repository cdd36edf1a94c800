"""The fixed set of counters published for every GPU and for the total."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from gpu_counters.facility import CounterDefinition, CounterType
from gpu_counters.telemetry import DeviceReading

CATEGORY_HELP = "GPU Counters"
BASE_SUFFIX = "-Base"
PERCENT_BASE = 100

_MIB = 1024 * 1024


class MetricKind(Enum):
    ABSOLUTE = "absolute"
    RATIO = "ratio"


class BaseKind(Enum):
    """Denominator of a ratio metric."""

    PERCENT = "percent"
    MEMORY_TOTAL = "memory_total"


class MetricKey(Enum):
    FAN_SPEED = "fan_speed"
    GPU_TIME = "gpu_time"
    MEMORY_READS_WRITES = "memory_reads_writes"
    MEMORY_USED_PCT = "memory_used_pct"
    MEMORY_TOTAL = "memory_total"
    MEMORY_USED = "memory_used"
    POWER = "power"
    SM_CLOCK = "sm_clock"
    TEMPERATURE = "temperature"


@dataclass(frozen=True)
class MetricDefinition:
    key: MetricKey
    display_name: str
    help_text: str
    kind: MetricKind
    base: BaseKind | None = None

    @property
    def base_name(self) -> str:
        if self.kind is not MetricKind.RATIO:
            raise ValueError(f"{self.display_name} has no base counter")
        return self.display_name + BASE_SUFFIX


METRICS: tuple[MetricDefinition, ...] = (
    MetricDefinition(
        MetricKey.FAN_SPEED,
        "% GPU Fan Speed",
        "The intended operating speed of the device's fan, as a percent. "
        "Not applicable for passively-cooled GPUs",
        MetricKind.RATIO,
        BaseKind.PERCENT,
    ),
    MetricDefinition(
        MetricKey.GPU_TIME,
        "% GPU Time",
        "Percent of time over the past sample period during which one or more "
        "kernels was executing on the GPU",
        MetricKind.RATIO,
        BaseKind.PERCENT,
    ),
    MetricDefinition(
        MetricKey.MEMORY_READS_WRITES,
        "% GPU Memory Reads/Writes",
        "Percent of time over the past sample period during which global (device) "
        "memory was being read or written",
        MetricKind.RATIO,
        BaseKind.PERCENT,
    ),
    MetricDefinition(
        MetricKey.MEMORY_USED_PCT,
        "% GPU Memory Used",
        "Percent of used GPU memory",
        MetricKind.RATIO,
        BaseKind.MEMORY_TOTAL,
    ),
    MetricDefinition(
        MetricKey.MEMORY_TOTAL,
        "GPU Memory Total (MiB)",
        "Total installed memory (in MiBs)",
        MetricKind.ABSOLUTE,
    ),
    MetricDefinition(
        MetricKey.MEMORY_USED,
        "GPU Memory Used (MiB)",
        "Allocated memory (in MiBs). Note that the driver/GPU always sets aside "
        "a small amount of memory for bookkeeping",
        MetricKind.ABSOLUTE,
    ),
    MetricDefinition(
        MetricKey.POWER,
        "GPU Power Usage (Watts)",
        "Power usage for this GPU in Watts and its associated circuitry (e.g. memory)",
        MetricKind.ABSOLUTE,
    ),
    MetricDefinition(
        MetricKey.SM_CLOCK,
        "GPU SM Clock (MHz)",
        "The current SM clock speed for the device, in MHz",
        MetricKind.ABSOLUTE,
    ),
    MetricDefinition(
        MetricKey.TEMPERATURE,
        "GPU Temperature (in degrees C)",
        "The current temperature readings for the device, in degrees C",
        MetricKind.ABSOLUTE,
    ),
)


def counter_definitions() -> list[CounterDefinition]:
    """Facility counters for the category, each base right after its fraction."""
    counters: list[CounterDefinition] = []
    for metric in METRICS:
        if metric.kind is MetricKind.RATIO:
            counters.append(
                CounterDefinition(metric.display_name, metric.help_text, CounterType.RAW_FRACTION)
            )
            counters.append(CounterDefinition(metric.base_name, "", CounterType.RAW_BASE))
        else:
            counters.append(
                CounterDefinition(
                    metric.display_name, metric.help_text, CounterType.NUMBER_OF_ITEMS
                )
            )
    return counters


def memory_total_mib(snapshot: DeviceReading) -> int | None:
    if snapshot.mem_total_bytes is None:
        return None
    return snapshot.mem_total_bytes // _MIB


def metric_value(key: MetricKey, snapshot: DeviceReading) -> int | None:
    """Read one metric off a snapshot in published units. None when invalid."""
    if key is MetricKey.FAN_SPEED:
        return snapshot.fan_speed_pct
    if key is MetricKey.GPU_TIME:
        return snapshot.utilization_pct
    if key is MetricKey.MEMORY_READS_WRITES:
        return snapshot.mem_utilization_pct
    if key is MetricKey.MEMORY_USED_PCT or key is MetricKey.MEMORY_USED:
        if snapshot.mem_used_bytes is None:
            return None
        return snapshot.mem_used_bytes // _MIB
    if key is MetricKey.MEMORY_TOTAL:
        return memory_total_mib(snapshot)
    if key is MetricKey.POWER:
        if snapshot.power_milliwatts is None:
            return None
        return snapshot.power_milliwatts // 1000
    if key is MetricKey.SM_CLOCK:
        return snapshot.sm_clock_mhz
    if key is MetricKey.TEMPERATURE:
        return snapshot.temperature_c
    raise ValueError(f"Unhandled metric: {key!r}")
