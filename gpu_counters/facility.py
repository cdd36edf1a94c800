"""Monitoring facility abstraction: named categories of instanced counters."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import logging
from typing import Any, Protocol, runtime_checkable

from gpu_counters.errors import CounterWriteError


class CounterType(Enum):
    NUMBER_OF_ITEMS = "number_of_items"
    RAW_FRACTION = "raw_fraction"
    RAW_BASE = "raw_base"


@dataclass(frozen=True)
class CounterDefinition:
    name: str
    help_text: str
    counter_type: CounterType


@dataclass(frozen=True)
class CounterHandle:
    category: str
    counter: str
    instance: str


@runtime_checkable
class MonitoringFacility(Protocol):
    def category_exists(self, name: str) -> bool: ...

    def create_category(
        self, name: str, help_text: str, counters: list[CounterDefinition]
    ) -> None: ...

    def delete_category(self, name: str) -> None: ...

    def create_handle(self, category: str, counter: str, instance: str) -> CounterHandle: ...

    def write(self, handle: CounterHandle, value: int) -> None: ...

    def close_handle(self, handle: CounterHandle) -> None: ...


def base_counter_for(counters: list[CounterDefinition], counter: str) -> str | None:
    """Name of the RAW_BASE counter that follows a RAW_FRACTION counter."""
    for position, definition in enumerate(counters):
        if definition.name != counter:
            continue
        if definition.counter_type is not CounterType.RAW_FRACTION:
            return None
        following = counters[position + 1] if position + 1 < len(counters) else None
        if following is None or following.counter_type is not CounterType.RAW_BASE:
            raise ValueError(f"Fraction counter {counter!r} has no base counter")
        return following.name
    return None


def render_fraction(value: int, base: int) -> float:
    if base <= 0:
        return 0.0
    return 100.0 * value / base


class InMemoryFacility:
    """Keeps counter values in a dictionary.

    Used for dry runs, for JSON snapshots of the published values and as the
    facility in tests.
    """

    def __init__(self) -> None:
        self.logger = logging.getLogger(self.__class__.__name__)
        self.categories: dict[str, list[CounterDefinition]] = {}
        self.values: dict[CounterHandle, int] = {}
        self.handles: set[CounterHandle] = set()
        self.write_count = 0

    def category_exists(self, name: str) -> bool:
        return name in self.categories

    def create_category(
        self, name: str, help_text: str, counters: list[CounterDefinition]
    ) -> None:
        if name in self.categories:
            raise ValueError(f"Category already exists: {name}")
        self.logger.debug("Creating category %s (%s counters)", name, len(counters))
        self.categories[name] = list(counters)

    def delete_category(self, name: str) -> None:
        self.categories.pop(name, None)
        for handle in [h for h in self.values if h.category == name]:
            del self.values[handle]
        self.handles = {h for h in self.handles if h.category != name}

    def create_handle(self, category: str, counter: str, instance: str) -> CounterHandle:
        counters = self.categories.get(category)
        if counters is None:
            raise KeyError(f"Unknown category: {category}")
        if counter not in {c.name for c in counters}:
            raise KeyError(f"Unknown counter {counter!r} in category {category}")
        handle = CounterHandle(category, counter, instance)
        self.handles.add(handle)
        self.values.setdefault(handle, 0)
        return handle

    def write(self, handle: CounterHandle, value: int) -> None:
        if handle not in self.handles:
            raise CounterWriteError(f"Handle is not open: {handle}")
        self.values[handle] = int(value)
        self.write_count += 1

    def close_handle(self, handle: CounterHandle) -> None:
        self.handles.discard(handle)

    def value(self, category: str, counter: str, instance: str) -> int:
        return self.values[CounterHandle(category, counter, instance)]

    def rendered(self, category: str, counter: str, instance: str) -> float:
        """Value as an observer would see it; fractions become percentages."""
        raw = self.value(category, counter, instance)
        base_name = base_counter_for(self.categories[category], counter)
        if base_name is None:
            return float(raw)
        return render_fraction(raw, self.value(category, base_name, instance))

    def instances(self, category: str) -> list[str]:
        return sorted({h.instance for h in self.values if h.category == category})

    def snapshot(self, category: str) -> dict[str, Any]:
        """All visible counter values of a category, keyed by instance."""
        counters = self.categories.get(category, [])
        result: dict[str, Any] = {}
        for instance in self.instances(category):
            entry: dict[str, Any] = {}
            for definition in counters:
                handle = CounterHandle(category, definition.name, instance)
                if handle not in self.values:
                    continue
                if definition.counter_type is CounterType.RAW_FRACTION:
                    entry[definition.name] = {
                        "raw": self.values[handle],
                        "base": self.value(
                            category, base_counter_for(counters, definition.name), instance
                        ),
                        "value": self.rendered(category, definition.name, instance),
                    }
                elif definition.counter_type is CounterType.NUMBER_OF_ITEMS:
                    entry[definition.name] = self.values[handle]
            result[instance] = entry
        return result


class TeeFacility:
    """Forwards every operation to several facilities.

    Handles are plain values, so one handle addresses the same counter in
    each target. A failed write to one target does not stop the others; the
    first failure is re-raised afterwards.
    """

    def __init__(self, *targets: MonitoringFacility) -> None:
        if not targets:
            raise ValueError("TeeFacility needs at least one target")
        self.targets = targets

    def category_exists(self, name: str) -> bool:
        return all(t.category_exists(name) for t in self.targets)

    def create_category(
        self, name: str, help_text: str, counters: list[CounterDefinition]
    ) -> None:
        for target in self.targets:
            if not target.category_exists(name):
                target.create_category(name, help_text, counters)

    def delete_category(self, name: str) -> None:
        for target in self.targets:
            target.delete_category(name)

    def create_handle(self, category: str, counter: str, instance: str) -> CounterHandle:
        handles = [t.create_handle(category, counter, instance) for t in self.targets]
        return handles[0]

    def write(self, handle: CounterHandle, value: int) -> None:
        failure: CounterWriteError | None = None
        for target in self.targets:
            try:
                target.write(handle, value)
            except CounterWriteError as exc:
                failure = failure or exc
        if failure is not None:
            raise failure

    def close_handle(self, handle: CounterHandle) -> None:
        for target in self.targets:
            target.close_handle(handle)
