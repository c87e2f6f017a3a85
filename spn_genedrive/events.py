"""Scheduled discrete events (releases and perturbations).

An event targets one place by name and modifies its token count at an
exact time:

    add       M[p] += value     (e.g. releasing 50 transgenic males)
    set       M[p]  = value
    multiply  M[p] *= value     (e.g. a 90% knock-down: value 0.1)

Names are resolved against the place set before a run starts, so a typo in
a release schedule is a ConfigError rather than a silently ignored event.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from spn_genedrive.types import ConfigError, EventMethod


@dataclass
class EventRecord:
    """One scheduled modification of a named place."""
    var: str
    time: float
    value: float
    method: str = 'add'


@dataclass(frozen=True)
class ResolvedEvent:
    place: int
    time: float
    value: float
    method: EventMethod


class EventSchedule:
    """Time-ordered events with pre-resolved place indices."""

    def __init__(self, events: Sequence[ResolvedEvent] = ()):
        # stable sort keeps same-time events in the order they were given
        self.events: Tuple[ResolvedEvent, ...] = tuple(
            sorted(events, key=lambda e: e.time)
        )

    def __len__(self) -> int:
        return len(self.events)

    def times(self) -> List[float]:
        return sorted({e.time for e in self.events})

    def at(self, time: float, tol: float = 1e-9) -> List[ResolvedEvent]:
        return [e for e in self.events if abs(e.time - time) <= tol]

    def between(self, t_start: float, t_end: float) -> List[float]:
        """Distinct event times in the half-open window (t_start, t_end]."""
        return [t for t in self.times() if t_start < t <= t_end]


def build_event_schedule(
    records: Iterable,
    places,
    t0: float = float('-inf'),
    tmax: float = float('inf'),
) -> EventSchedule:
    """Resolve event records against a place set.

    Args:
        records: EventRecord objects or dicts with var/time/value/method.
        places: PlaceSet providing the name→index map.
        t0, tmax: Simulation window; events outside it are rejected.

    Raises:
        ConfigError: unknown place name, unknown method, negative value
            for add/set, or a time outside [t0, tmax].
    """
    resolved = []
    for rec in records:
        if isinstance(rec, dict):
            rec = EventRecord(**rec)
        try:
            method = EventMethod(rec.method)
        except ValueError:
            raise ConfigError(
                f"unknown event method '{rec.method}' for '{rec.var}'"
            ) from None
        idx = places.lookup(rec.var)
        if not t0 <= rec.time <= tmax:
            raise ConfigError(
                f"event on '{rec.var}' at t={rec.time} lies outside [{t0}, {tmax}]"
            )
        if rec.value < 0:
            raise ConfigError(f"event value for '{rec.var}' must be non-negative")
        resolved.append(ResolvedEvent(idx, float(rec.time), float(rec.value), method))
    return EventSchedule(resolved)


def apply_events(marking: np.ndarray, events: Iterable[ResolvedEvent],
                 rng: Optional[np.random.Generator] = None) -> None:
    """Apply events to a marking in place.

    With an ``rng`` (stochastic samplers) the marking stays in whole
    tokens: a multiply by a factor <= 1 keeps each token with that
    probability, any other result is rounded to the nearest integer.
    """
    for ev in events:
        if ev.method is EventMethod.ADD:
            value = marking[ev.place] + ev.value
        elif ev.method is EventMethod.SET:
            value = ev.value
        elif rng is not None and ev.value <= 1:
            marking[ev.place] = rng.binomial(int(np.rint(marking[ev.place])), ev.value)
            continue
        else:
            value = marking[ev.place] * ev.value
        marking[ev.place] = value if rng is None else np.rint(value)


def release_schedule(
    var: str,
    start: float,
    n_releases: int,
    interval: float,
    size: float,
) -> List[EventRecord]:
    """Periodic 'add' releases into one place (e.g. weekly male releases)."""
    if n_releases < 1 or interval <= 0:
        raise ConfigError("need n_releases >= 1 and a positive interval")
    return [EventRecord(var, start + k * interval, size, 'add') for k in range(n_releases)]
