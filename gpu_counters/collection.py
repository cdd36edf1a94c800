"""Background thread that samples every GPU and publishes the counters."""

from __future__ import annotations

from collections.abc import Callable
from enum import Enum
import logging
import threading
import time

from gpu_counters.config import DEFAULT_UPDATE_INTERVAL_MSEC, MIN_UPDATE_INTERVAL_MSEC
from gpu_counters.devices import DeviceRegistry
from gpu_counters.errors import LoopStateError
from gpu_counters.publisher import CounterPublisher


class LoopState(Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


class CollectionLoop:
    """Runs refresh -> publish devices -> publish total on a fixed interval.

    All telemetry reads and counter writes happen on the loop thread. The
    only cross-thread interaction is start/stop/pause/resume, which go
    through events; ``stop`` joins the thread so no tick is in flight once
    it returns.
    """

    def __init__(
        self,
        registry: DeviceRegistry,
        publisher: CounterPublisher,
        interval_ms: int = DEFAULT_UPDATE_INTERVAL_MSEC,
        on_tick: Callable[[], None] | None = None,
    ) -> None:
        self.registry = registry
        self.publisher = publisher
        self.interval_s = max(MIN_UPDATE_INTERVAL_MSEC, interval_ms) / 1000.0
        self.on_tick = on_tick
        self.logger = logging.getLogger(self.__class__.__name__)
        self.tick_count = 0
        self._state = LoopState.IDLE
        self._state_lock = threading.Lock()
        self._cancel = threading.Event()
        self._paused = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def state(self) -> LoopState:
        return self._state

    @property
    def paused(self) -> bool:
        return self._paused.is_set()

    def start(self) -> None:
        with self._state_lock:
            if self._state is not LoopState.IDLE:
                raise LoopStateError(f"Cannot start collection loop while {self._state.value}")
            self._cancel.clear()
            self._thread = threading.Thread(
                target=self._run, name="CounterUpdateThread", daemon=True
            )
            self._state = LoopState.RUNNING
            # Started under the lock so stop() never sees an unstarted thread.
            self._thread.start()
        self.logger.info(
            "Collection loop started, updating every %s ms", round(self.interval_s * 1000)
        )

    def pause(self) -> None:
        if not self._paused.is_set():
            self.logger.info("Collection paused")
        self._paused.set()

    def resume(self) -> None:
        if self._paused.is_set():
            self.logger.info("Collection resumed")
        self._paused.clear()

    def stop(self) -> None:
        with self._state_lock:
            if self._state is LoopState.IDLE or self._state is LoopState.STOPPED:
                return
            self._state = LoopState.STOPPING
            self._cancel.set()
            thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join()
        with self._state_lock:
            self._thread = None
            self._state = LoopState.STOPPED
        self.logger.info("Collection loop stopped after %s tick(s)", self.tick_count)

    def run_once(self) -> None:
        """One refresh and publish pass on the calling thread."""
        self.registry.refresh_all()
        devices = self.registry.devices
        self.publisher.publish_all(devices)
        self.tick_count += 1
        if self.on_tick is not None:
            self.on_tick()

    def _run(self) -> None:
        while not self._cancel.is_set():
            started = time.monotonic()
            if not self._paused.is_set():
                try:
                    self.run_once()
                except Exception:
                    # The loop only ends on stop(); a bad tick is retried next interval.
                    self.logger.exception("Collection tick failed")
            remaining = self.interval_s - (time.monotonic() - started)
            if self._cancel.wait(max(0.0, remaining)):
                break
