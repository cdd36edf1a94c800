from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import configparser

DEFAULT_UPDATE_INTERVAL_MSEC = 1000
MIN_UPDATE_INTERVAL_MSEC = 1
DEFAULT_CATEGORY = "GPU"


@dataclass(frozen=True)
class MqttConfig:
    host: str
    port: int
    base_topic: str
    discovery_topic: str
    client_id: str
    username: str | None
    password: str | None
    qos: int
    retain: bool
    tls_enabled: bool
    ca_cert: str | None
    keepalive: int = 60


@dataclass(frozen=True)
class CounterConfig:
    update_interval_msec: int = DEFAULT_UPDATE_INTERVAL_MSEC
    use_pcie_id_in_device_name: bool = False
    category: str = DEFAULT_CATEGORY


@dataclass(frozen=True)
class AppConfig:
    mqtt: MqttConfig
    counters: CounterConfig


def _get_optional(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value if value else None


def _get_int(parser: configparser.ConfigParser, section: str, option: str, default: int) -> int:
    # Unparseable values fall back to the default instead of aborting startup.
    try:
        return parser.getint(section, option, fallback=default)
    except ValueError:
        return default


def _get_bool(parser: configparser.ConfigParser, section: str, option: str, default: bool) -> bool:
    try:
        return parser.getboolean(section, option, fallback=default)
    except ValueError:
        return default


def load_counter_config(parser: configparser.ConfigParser) -> CounterConfig:
    interval = _get_int(
        parser, "counters", "update_interval_msec", DEFAULT_UPDATE_INTERVAL_MSEC
    )
    return CounterConfig(
        update_interval_msec=max(MIN_UPDATE_INTERVAL_MSEC, interval),
        use_pcie_id_in_device_name=_get_bool(
            parser, "counters", "use_pcie_id_in_device_name", False
        ),
        category=parser.get("counters", "category", fallback=DEFAULT_CATEGORY).strip()
        or DEFAULT_CATEGORY,
    )


def load_mqtt_config(parser: configparser.ConfigParser) -> MqttConfig:
    return MqttConfig(
        host=parser.get("mqtt", "host", fallback="localhost"),
        port=_get_int(parser, "mqtt", "port", 1883),
        base_topic=parser.get("mqtt", "base_topic", fallback="telemetry/gpu"),
        discovery_topic=parser.get("mqtt", "discovery_topic", fallback="homeassistant"),
        client_id=parser.get("mqtt", "client_id", fallback="gpu-counters"),
        username=_get_optional(parser.get("mqtt", "username", fallback=None)),
        password=_get_optional(parser.get("mqtt", "password", fallback=None)),
        qos=_get_int(parser, "mqtt", "qos", 0),
        retain=_get_bool(parser, "mqtt", "retain", False),
        tls_enabled=_get_bool(parser, "mqtt", "tls", False),
        ca_cert=_get_optional(parser.get("mqtt", "ca_cert", fallback=None)),
        keepalive=_get_int(parser, "mqtt", "keepalive", 60),
    )


def load_config(path: str | Path) -> AppConfig:
    parser = configparser.ConfigParser()
    read_files = parser.read(path)
    if not read_files:
        raise FileNotFoundError(f"Config file not found: {path}")

    return AppConfig(
        mqtt=load_mqtt_config(parser),
        counters=load_counter_config(parser),
    )
