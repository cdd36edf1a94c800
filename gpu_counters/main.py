from __future__ import annotations

import argparse
import json
import logging
import signal
import threading
import time

from gpu_counters.config import load_config
from gpu_counters.facility import InMemoryFacility, MonitoringFacility, TeeFacility
from gpu_counters.logging_utils import configure_logging, resolve_log_level
from gpu_counters.mqtt_client import MqttFacility
from gpu_counters.schema import validate_payload
from gpu_counters.service import GpuCounterService
from gpu_counters.telemetry import NvmlTelemetrySource


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Publish NVIDIA GPU counters over MQTT")
    parser.add_argument(
        "--config",
        default="config/example.cfg",
        help="Path to CFG configuration file",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Enable debug logging (-v) or trace logging (-vv)",
    )
    parser.add_argument(
        "--log-file",
        help="Also write log records to this file",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Keep counters in memory and log them instead of publishing to MQTT",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Sample and publish every counter once, then exit",
    )
    parser.add_argument(
        "--dump-json",
        help="Write a JSON snapshot of all counters to a file (overwrites on each tick)",
    )
    parser.add_argument(
        "--publish-status",
        metavar="STATUS",
        help="Publish a status (e.g., 'sleeping', 'online') to the availability topic and exit. "
             "Useful for system sleep/wake hooks.",
    )
    parser.add_argument(
        "--remove-category",
        action="store_true",
        help="Remove the published counter category (metadata and discovery) and exit",
    )
    return parser


class SnapshotWriter:
    """Runs after every tick when counters are mirrored in memory."""

    def __init__(self, path: str | None, pretty: bool, log_payload: bool) -> None:
        self.path = path
        self.pretty = pretty
        self.log_payload = log_payload
        self.service: GpuCounterService | None = None
        self.logger = logging.getLogger("gpu_counters")
        self._schema_ok: bool | None = None

    def __call__(self) -> None:
        if self.service is None:
            return
        payload = self.service.snapshot()
        schema_errors = validate_payload(payload)
        if schema_errors:
            self.logger.warning("Schema validation failed with %s errors.", len(schema_errors))
            self.logger.debug("Schema errors: %s", schema_errors)
        elif self._schema_ok is not True:
            self.logger.info("Schema validation passed.")
        self._schema_ok = not schema_errors
        payload_json = json.dumps(payload, indent=2) if self.pretty else json.dumps(payload)
        if self.path:
            with open(self.path, "w", encoding="utf-8") as handle:
                handle.write(payload_json)
        if self.log_payload:
            self.logger.debug("Counters: %s", payload_json)


def _install_signal_handlers(service: GpuCounterService, stop: threading.Event,
                             mqtt_facility: MqttFacility | None) -> None:
    logger = logging.getLogger("gpu_counters")

    def request_stop(signum: int, frame: object) -> None:
        logger.info("Received signal %s, stopping.", signum)
        stop.set()

    def pause(signum: int, frame: object) -> None:
        service.pause()
        if mqtt_facility is not None:
            mqtt_facility.publish_status("paused")

    def resume(signum: int, frame: object) -> None:
        service.resume()
        if mqtt_facility is not None:
            mqtt_facility.publish_status("online")

    signal.signal(signal.SIGINT, request_stop)
    signal.signal(signal.SIGTERM, request_stop)
    # SIGUSR1/SIGUSR2 do not exist on Windows.
    if hasattr(signal, "SIGUSR1"):
        signal.signal(signal.SIGUSR1, pause)
        signal.signal(signal.SIGUSR2, resume)


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()

    level = resolve_log_level(args.verbose, args.log_level)
    configure_logging(level, args.log_file)
    logger = logging.getLogger("gpu_counters")
    config = load_config(args.config)
    pretty_print = level <= logging.DEBUG

    # Handle --publish-status mode (quick publish and exit)
    if args.publish_status:
        status_client = MqttFacility(config.mqtt)
        status_client.connect()
        time.sleep(0.5)
        if status_client.connected:
            status_client.publish_status(args.publish_status)
            time.sleep(0.5)
        else:
            logger.error("Failed to connect to MQTT broker")
        status_client.disconnect()
        return

    mirror = InMemoryFacility() if args.dry_run or args.dump_json else None
    mqtt_facility = None if args.dry_run else MqttFacility(config.mqtt)
    if mqtt_facility is not None:
        mqtt_facility.connect()

    facility: MonitoringFacility
    if mqtt_facility is not None and mirror is not None:
        facility = TeeFacility(mqtt_facility, mirror)
    elif mqtt_facility is not None:
        facility = mqtt_facility
    else:
        logger.info("Dry run enabled; skipping MQTT publish.")
        facility = mirror or InMemoryFacility()

    writer = SnapshotWriter(args.dump_json, pretty_print, args.dry_run) if mirror else None
    service = GpuCounterService(
        NvmlTelemetrySource(),
        facility,
        config.counters,
        on_tick=writer,
        snapshot_facility=mirror,
    )
    if writer is not None:
        writer.service = service

    try:
        if args.remove_category:
            service.remove_category()
            return

        if args.once:
            logger.info("Single-run mode enabled; exiting after one sample.")
            service.run_once()
            return

        stop = threading.Event()
        _install_signal_handlers(service, stop, mqtt_facility)
        try:
            service.start()
            logger.info(
                "GPU counters started. Publishing %s devices every %s ms.",
                len(service.registry.devices),
                config.counters.update_interval_msec,
            )
            while not stop.wait(1.0):
                pass
        except KeyboardInterrupt:
            logger.info("Interrupted.")
        finally:
            service.stop()
    finally:
        if mqtt_facility is not None:
            mqtt_facility.disconnect()


if __name__ == "__main__":
    main()
