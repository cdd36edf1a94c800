from __future__ import annotations

from dataclasses import dataclass, field
import logging

from gpu_counters.errors import TelemetryError
from gpu_counters.telemetry import DeviceIdentity, DeviceReading, TelemetrySource

FAILED_DEVICE_NAME = "<FailedToInitialize>"


@dataclass
class Device:
    logical_id: int
    index: int
    name: str
    instance_name: str
    uuid: str | None = None
    location_tag: str = ""
    failed: bool = False
    snapshot: DeviceReading = field(default_factory=DeviceReading.invalid)


def instance_name_for(identity: DeviceIdentity, name: str, logical_id: int, use_location: bool) -> str:
    # Location tags are only unique on machines with one GPU of each model.
    if use_location and identity.location_tag:
        return f"{name}({identity.location_tag})"
    return f"{name}({logical_id})"


class DeviceRegistry:
    """Owns the GPU list and is the only writer of device snapshots."""

    def __init__(self, source: TelemetrySource, use_location_names: bool = False) -> None:
        self.source = source
        self.use_location_names = use_location_names
        self.logger = logging.getLogger(self.__class__.__name__)
        self._devices: tuple[Device, ...] = ()
        self._degraded: set[int] = set()

    @property
    def devices(self) -> tuple[Device, ...]:
        return self._devices

    def enumerate(self) -> tuple[Device, ...]:
        try:
            identities = self.source.enumerate()
        except TelemetryError as exc:
            self.logger.warning("GPU enumeration failed, publishing no devices: %s", exc)
            identities = []

        named = [
            (identity.name if identity.name is not None else FAILED_DEVICE_NAME, identity)
            for identity in identities
        ]
        # Bus ids are not stable across identical cards, so ids follow name order.
        named.sort(key=lambda item: item[0])

        devices: list[Device] = []
        for logical_id, (name, identity) in enumerate(named):
            device = Device(
                logical_id=logical_id,
                index=identity.index,
                name=name,
                instance_name=instance_name_for(
                    identity, name, logical_id, self.use_location_names
                ),
                uuid=identity.uuid,
                location_tag=identity.location_tag,
                failed=identity.name is None,
            )
            self.logger.info(
                "GPU %s: %s uuid=%s location=%s",
                logical_id,
                device.instance_name,
                device.uuid or "-",
                device.location_tag or "-",
            )
            devices.append(device)

        self._devices = tuple(devices)
        self._degraded.clear()
        self.refresh_all()
        return self._devices

    def refresh(self, device: Device) -> DeviceReading:
        if device.failed:
            device.snapshot = DeviceReading.invalid()
            return device.snapshot
        try:
            reading = self.source.read(device.index)
        except TelemetryError as exc:
            if device.logical_id not in self._degraded:
                self.logger.warning("Reading %s failed: %s", device.instance_name, exc)
                self._degraded.add(device.logical_id)
            reading = DeviceReading.invalid()
        else:
            if device.logical_id in self._degraded:
                self.logger.info("Reading %s recovered", device.instance_name)
                self._degraded.discard(device.logical_id)
        device.snapshot = reading
        return reading

    def refresh_all(self) -> None:
        for device in self._devices:
            self.refresh(device)
