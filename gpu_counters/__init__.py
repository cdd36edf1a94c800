"""GPU counters: NVIDIA GPU telemetry republished as instanced counters."""

from gpu_counters.collection import CollectionLoop, LoopState
from gpu_counters.config import AppConfig, CounterConfig, load_config
from gpu_counters.devices import Device, DeviceRegistry
from gpu_counters.facility import InMemoryFacility, MonitoringFacility
from gpu_counters.mqtt_client import MqttFacility
from gpu_counters.publisher import TOTAL_INSTANCE, CounterPublisher
from gpu_counters.service import GpuCounterService
from gpu_counters.telemetry import NvmlTelemetrySource, TelemetrySource

__all__ = [
    "AppConfig",
    "CollectionLoop",
    "CounterConfig",
    "CounterPublisher",
    "Device",
    "DeviceRegistry",
    "GpuCounterService",
    "InMemoryFacility",
    "LoopState",
    "MonitoringFacility",
    "MqttFacility",
    "NvmlTelemetrySource",
    "TOTAL_INSTANCE",
    "TelemetrySource",
    "load_config",
]
