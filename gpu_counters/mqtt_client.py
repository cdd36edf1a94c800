from __future__ import annotations

import json
import logging
import re
import ssl
from typing import Any

import paho.mqtt.client as mqtt

from gpu_counters.config import MqttConfig
from gpu_counters.errors import CounterWriteError
from gpu_counters.facility import (
    CounterDefinition,
    CounterHandle,
    CounterType,
    base_counter_for,
    render_fraction,
)

_UNITS = {
    "MiB": "MiB",
    "Watts": "W",
    "MHz": "MHz",
    "degrees C": "°C",
}


def slugify(value: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "_", value.lower()).strip("_")
    return slug or "_"


def unit_for(counter: CounterDefinition) -> str | None:
    if counter.counter_type is CounterType.RAW_FRACTION:
        return "%"
    for marker, unit in _UNITS.items():
        if marker in counter.name:
            return unit
    return None


class MqttFacility:
    """Publishes counters to an MQTT broker with Home Assistant discovery.

    Every counter instance gets its own state topic under
    ``{base_topic}/{category}/{instance}/{counter}``. Fraction counters are
    published as JSON carrying the raw value, its base and the rendered
    percentage; base counters also get a plain state topic so the raw pair
    stays observable.
    """

    def __init__(self, config: MqttConfig) -> None:
        self.config = config
        self.client = mqtt.Client(client_id=config.client_id, protocol=mqtt.MQTTv311)
        self.logger = logging.getLogger(self.__class__.__name__)
        self._connected = False
        self._categories: dict[str, list[CounterDefinition]] = {}
        self._handles: set[CounterHandle] = set()
        self._raw: dict[CounterHandle, int] = {}

        self.client.on_connect = self._on_connect
        self.client.on_disconnect = self._on_disconnect

        if config.username:
            self.client.username_pw_set(config.username, config.password)
        if config.tls_enabled:
            self.client.tls_set(
                ca_certs=config.ca_cert,
                cert_reqs=ssl.CERT_REQUIRED,
            )

        self.client.will_set(
            self._availability_topic,
            payload="offline",
            qos=1,
            retain=True,
        )
        self.client.reconnect_delay_set(min_delay=1, max_delay=120)

    @property
    def _availability_topic(self) -> str:
        return f"{self.config.base_topic}/status"

    @property
    def connected(self) -> bool:
        return self._connected

    def _on_connect(
        self,
        client: mqtt.Client,
        userdata: Any,
        flags: dict[str, Any],
        rc: int,
    ) -> None:
        if rc == 0:
            self._connected = True
            self.logger.info(
                "Connected to MQTT broker %s:%s", self.config.host, self.config.port
            )
            self.client.publish(
                self._availability_topic,
                payload="online",
                qos=1,
                retain=True,
            )
        else:
            self._connected = False
            self.logger.error("Failed to connect to MQTT broker, return code: %s", rc)

    def _on_disconnect(
        self,
        client: mqtt.Client,
        userdata: Any,
        rc: int,
    ) -> None:
        self._connected = False
        if rc == 0:
            self.logger.info("Disconnected from MQTT broker (clean)")
        else:
            self.logger.warning(
                "Unexpectedly disconnected from MQTT broker, return code: %s. "
                "Will attempt to reconnect.",
                rc,
            )

    def connect(self) -> None:
        self.logger.info("Connecting to MQTT broker %s:%s", self.config.host, self.config.port)
        self.client.connect(
            self.config.host,
            self.config.port,
            keepalive=self.config.keepalive,
        )
        self.client.loop_start()

    def disconnect(self) -> None:
        if self._connected:
            self.client.publish(
                self._availability_topic,
                payload="offline",
                qos=1,
                retain=True,
            )
        self.client.loop_stop()
        self.client.disconnect()
        self.logger.info("Disconnected from MQTT broker")

    def publish_status(self, status: str) -> bool:
        """Publish a status such as "online" or "paused" to the availability topic."""
        self.logger.info("Publishing status '%s' to %s", status, self._availability_topic)
        result = self.client.publish(
            self._availability_topic,
            payload=status,
            qos=1,
            retain=True,
        )
        if result.rc != mqtt.MQTT_ERR_SUCCESS:
            self.logger.error("Failed to publish status, error code: %s", result.rc)
            return False
        return True

    # Topics

    def _category_topic(self, category: str) -> str:
        return f"{self.config.base_topic}/{slugify(category)}"

    def _meta_topic(self, category: str) -> str:
        return f"{self._category_topic(category)}/$meta"

    def state_topic(self, handle: CounterHandle) -> str:
        return (
            f"{self._category_topic(handle.category)}/"
            f"{slugify(handle.instance)}/{slugify(handle.counter)}"
        )

    def _unique_id(self, handle: CounterHandle) -> str:
        return "_".join(
            (
                slugify(self.config.client_id),
                slugify(handle.category),
                slugify(handle.instance),
                slugify(handle.counter),
            )
        )

    def _discovery_topic(self, handle: CounterHandle) -> str:
        return f"{self.config.discovery_topic}/sensor/{self._unique_id(handle)}/config"

    # Facility interface

    def category_exists(self, name: str) -> bool:
        return name in self._categories

    def create_category(
        self, name: str, help_text: str, counters: list[CounterDefinition]
    ) -> None:
        if name in self._categories:
            raise ValueError(f"Category already exists: {name}")
        self._categories[name] = list(counters)
        meta = {
            "name": name,
            "help": help_text,
            "counters": [
                {"name": c.name, "help": c.help_text, "type": c.counter_type.value}
                for c in counters
            ],
        }
        self.logger.debug("Publishing category metadata to %s", self._meta_topic(name))
        self.client.publish(
            self._meta_topic(name), payload=json.dumps(meta), qos=self.config.qos, retain=True
        )

    def delete_category(self, name: str) -> None:
        # Retained messages are cleared by publishing an empty retained payload.
        counters = self._categories.pop(name, None)
        self.client.publish(self._meta_topic(name), payload=b"", qos=self.config.qos, retain=True)
        base_names = {c.name for c in counters or [] if c.counter_type is CounterType.RAW_BASE}
        for handle in [h for h in self._handles if h.category == name]:
            if handle.counter not in base_names:
                self.client.publish(
                    self._discovery_topic(handle), payload=b"", qos=self.config.qos, retain=True
                )
            if self.config.retain:
                self.client.publish(
                    self.state_topic(handle), payload=b"", qos=self.config.qos, retain=True
                )
            self._handles.discard(handle)
            self._raw.pop(handle, None)
        self.logger.info(
            "Deleted category %s (%s counters)", name, len(counters) if counters else 0
        )

    def create_handle(self, category: str, counter: str, instance: str) -> CounterHandle:
        counters = self._categories.get(category)
        if counters is None:
            raise KeyError(f"Unknown category: {category}")
        definition = next((c for c in counters if c.name == counter), None)
        if definition is None:
            raise KeyError(f"Unknown counter {counter!r} in category {category}")
        handle = CounterHandle(category, counter, instance)
        self._handles.add(handle)
        self._raw.setdefault(handle, 0)
        if definition.counter_type is not CounterType.RAW_BASE:
            self._publish_discovery(handle, definition)
        return handle

    def _publish_discovery(self, handle: CounterHandle, definition: CounterDefinition) -> None:
        payload: dict[str, Any] = {
            "name": f"{handle.instance} {handle.counter}",
            "unique_id": self._unique_id(handle),
            "state_topic": self.state_topic(handle),
            "availability_topic": self._availability_topic,
            "payload_available": "online",
            "payload_not_available": "offline",
            "state_class": "measurement",
            "device": {
                "identifiers": [f"{self.config.client_id}_{slugify(handle.instance)}"],
                "name": handle.instance,
                "model": handle.category,
            },
        }
        unit = unit_for(definition)
        if unit:
            payload["unit_of_measurement"] = unit
        if definition.counter_type is CounterType.RAW_FRACTION:
            payload["value_template"] = "{{ value_json.value }}"
            payload["json_attributes_topic"] = self.state_topic(handle)
        self.client.publish(
            self._discovery_topic(handle),
            payload=json.dumps(payload),
            qos=self.config.qos,
            retain=True,
        )

    def write(self, handle: CounterHandle, value: int) -> None:
        if handle not in self._handles:
            raise CounterWriteError(f"Handle is not open: {handle}")
        self._raw[handle] = int(value)
        counters = self._categories[handle.category]
        base_name = base_counter_for(counters, handle.counter)
        if base_name is None:
            payload: str = str(int(value))
        else:
            base = self._raw.get(CounterHandle(handle.category, base_name, handle.instance), 0)
            payload = json.dumps(
                {"raw": int(value), "base": base, "value": round(render_fraction(value, base), 2)}
            )
        result = self.client.publish(
            self.state_topic(handle),
            payload=payload,
            qos=self.config.qos,
            retain=self.config.retain,
        )
        if result.rc != mqtt.MQTT_ERR_SUCCESS:
            raise CounterWriteError(
                f"Publishing {self.state_topic(handle)} failed, error code: {result.rc}"
            )

    def close_handle(self, handle: CounterHandle) -> None:
        self._handles.discard(handle)
        self._raw.pop(handle, None)
