"""Telemetry source protocol and the NVML-backed implementation."""

from __future__ import annotations

from dataclasses import dataclass, fields
import logging
from typing import Any, Callable, Protocol, runtime_checkable

import pynvml

from gpu_counters.errors import TelemetryError
from gpu_counters.logging_utils import TRACE_LEVEL


@dataclass(frozen=True)
class DeviceIdentity:
    """What the source knows about a device at enumeration time.

    ``name`` is None when the device could not be initialized; such a device
    is still reported so that it keeps its slot in the instance list.
    """

    index: int
    name: str | None
    uuid: str | None = None
    location_tag: str = ""


@dataclass(frozen=True)
class DeviceReading:
    """One read of every metric for a device. None marks an invalid field."""

    utilization_pct: int | None = None
    mem_utilization_pct: int | None = None
    mem_total_bytes: int | None = None
    mem_used_bytes: int | None = None
    fan_speed_pct: int | None = None
    power_milliwatts: int | None = None
    sm_clock_mhz: int | None = None
    temperature_c: int | None = None

    @classmethod
    def invalid(cls) -> DeviceReading:
        return cls()

    @property
    def any_valid(self) -> bool:
        return any(getattr(self, f.name) is not None for f in fields(self))


@runtime_checkable
class TelemetrySource(Protocol):
    """Structural protocol for hardware telemetry backends."""

    def enumerate(self) -> list[DeviceIdentity]: ...

    def read(self, index: int) -> DeviceReading: ...

    def shutdown(self) -> None: ...


def _text(value: str | bytes) -> str:
    # Older pynvml releases return bytes for string queries.
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


class NvmlTelemetrySource:
    """NVIDIA GPUs through NVML (``pynvml``)."""

    def __init__(self) -> None:
        self.logger = logging.getLogger(self.__class__.__name__)
        self._initialized = False
        self._handles: dict[int, Any] = {}

    def _ensure_initialized(self) -> None:
        if self._initialized:
            return
        try:
            pynvml.nvmlInit()
        except pynvml.NVMLError as exc:
            raise TelemetryError(f"NVML initialization failed: {exc}") from exc
        self._initialized = True
        self.logger.debug("NVML initialized, driver %s", self._driver_version())

    def _driver_version(self) -> str:
        try:
            return _text(pynvml.nvmlSystemGetDriverVersion())
        except pynvml.NVMLError:
            return "unknown"

    def enumerate(self) -> list[DeviceIdentity]:
        self._ensure_initialized()
        try:
            count = pynvml.nvmlDeviceGetCount()
        except pynvml.NVMLError as exc:
            raise TelemetryError(f"NVML device count failed: {exc}") from exc

        self._handles.clear()
        devices: list[DeviceIdentity] = []
        for index in range(count):
            devices.append(self._identify(index))
        return devices

    def _identify(self, index: int) -> DeviceIdentity:
        try:
            handle = pynvml.nvmlDeviceGetHandleByIndex(index)
            name = _text(pynvml.nvmlDeviceGetName(handle))
            pci = pynvml.nvmlDeviceGetPciInfo(handle)
            uuid = _text(pynvml.nvmlDeviceGetUUID(handle))
        except pynvml.NVMLError as exc:
            self.logger.warning("GPU %s failed to initialize: %s", index, exc)
            return DeviceIdentity(index=index, name=None)
        self._handles[index] = handle
        return DeviceIdentity(
            index=index,
            name=name,
            uuid=uuid,
            location_tag=f"{pci.bus:02X}:{pci.device:02X}",
        )

    def read(self, index: int) -> DeviceReading:
        handle = self._handles.get(index)
        if handle is None:
            raise TelemetryError(f"GPU {index} has no NVML handle")

        utilization = self._query(index, pynvml.nvmlDeviceGetUtilizationRates, handle)
        memory = self._query(index, pynvml.nvmlDeviceGetMemoryInfo, handle)
        return DeviceReading(
            utilization_pct=utilization.gpu if utilization is not None else None,
            mem_utilization_pct=utilization.memory if utilization is not None else None,
            mem_total_bytes=memory.total if memory is not None else None,
            mem_used_bytes=memory.used if memory is not None else None,
            fan_speed_pct=self._query(index, pynvml.nvmlDeviceGetFanSpeed, handle),
            power_milliwatts=self._query(index, pynvml.nvmlDeviceGetPowerUsage, handle),
            sm_clock_mhz=self._query(
                index, pynvml.nvmlDeviceGetClockInfo, handle, pynvml.NVML_CLOCK_SM
            ),
            temperature_c=self._query(
                index, pynvml.nvmlDeviceGetTemperature, handle, pynvml.NVML_TEMPERATURE_GPU
            ),
        )

    def _query(self, index: int, func: Callable[..., Any], *args: Any) -> Any:
        try:
            return func(*args)
        except pynvml.NVMLError as exc:
            if exc.value == pynvml.NVML_ERROR_GPU_IS_LOST:
                raise TelemetryError(f"GPU {index} is lost") from exc
            # Not supported is routine, e.g. no fan on passively-cooled boards.
            self.logger.log(
                TRACE_LEVEL, "GPU %s %s failed: %s", index, getattr(func, "__name__", func), exc
            )
            return None

    def shutdown(self) -> None:
        if not self._initialized:
            return
        self._handles.clear()
        self._initialized = False
        try:
            pynvml.nvmlShutdown()
        except pynvml.NVMLError as exc:
            self.logger.debug("NVML shutdown failed: %s", exc)
