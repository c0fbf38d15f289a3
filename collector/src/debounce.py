"""
Debounced plug-state tracker.

Turns the raw per-poll plug state into confirmed transitions. A new state is
only accepted after ``debounce_samples`` consecutive readings agree on it, so
flutter faster than the debounce window is absorbed as noise.

The transition instant is the host-clock time of the *first* sample of the
confirming streak, i.e. the moment the change was first seen rather than the
moment it was accepted. With ``debounce_samples=2`` and readings
``[unplugged@t0, plugged@t1, plugged@t2]`` the plug-in is confirmed at t2 and
stamped t1.

The state before the first reading is unknown. The first reading only sets
the baseline and is never reported as a change, so a collector started while
a car is already plugged in does not invent a plug-in at start-up.

The tracker has no I/O. Faulted or unknown-state readings must not be fed
to it; the session state machine filters them out beforehand so they neither
advance nor reset the streak.

CHANGELOG:
- 2026-10-16: Start from an unknown baseline instead of unplugged (STORY-021)
- 2026-10-03: Stamp transitions with the first sample of the streak (STORY-004)
- 2026-10-02: Initial creation (STORY-003)

TODO:
- None
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from collector.src.models import PlugState

DEFAULT_DEBOUNCE_SAMPLES: int = 2
"""Consecutive consistent samples required to confirm a state change."""


@dataclass(frozen=True)
class ConfirmedTransition:
    """A debounced plug-state change.

    Attributes:
        from_state: Previously confirmed state.
        to_state: Newly confirmed state.
        at: Host-clock instant of the first sample of the confirming streak.
    """

    from_state: PlugState
    to_state: PlugState
    at: datetime


@dataclass
class DebounceState:
    """Mutable debounce bookkeeping for one station.

    ``last_confirmed`` is None until the first reading sets the baseline.
    """

    last_confirmed: PlugState | None = None
    candidate: PlugState | None = None
    candidate_streak: int = 0
    candidate_since: datetime | None = None


class PlugStateTracker:
    """Debounces a raw plug-state stream into confirmed transitions.

    Args:
        debounce_samples: Number of consecutive consistent readings needed
            before a change is confirmed. Values below 1 are treated as 1.
        initial_state: Baseline assumed before the first reading. None (the
            default) lets the first reading set the baseline without
            reporting a transition.
    """

    def __init__(
        self,
        debounce_samples: int = DEFAULT_DEBOUNCE_SAMPLES,
        initial_state: PlugState | None = None,
    ) -> None:
        self._debounce_samples = max(1, debounce_samples)
        self._state = DebounceState(last_confirmed=initial_state)

    @property
    def debounce_samples(self) -> int:
        return self._debounce_samples

    @property
    def confirmed_state(self) -> PlugState | None:
        return self._state.last_confirmed

    @property
    def state(self) -> DebounceState:
        """Current debounce state (read-only view for diagnostics)."""
        return self._state

    def observe(self, raw_state: PlugState, at: datetime) -> ConfirmedTransition | None:
        """Feed one raw plug-state sample.

        Args:
            raw_state: Plug state reported by this poll.
            at: Host-clock instant of the sample.

        Returns:
            A :class:`ConfirmedTransition` exactly once per accepted change,
            otherwise ``None``. The reading that sets the baseline is not a
            change and returns ``None``.
        """
        state = self._state

        if state.last_confirmed is None:
            state.last_confirmed = raw_state
            return None

        if raw_state == state.last_confirmed:
            self._clear_candidate()
            return None

        if raw_state == state.candidate:
            state.candidate_streak += 1
        else:
            state.candidate = raw_state
            state.candidate_streak = 1
            state.candidate_since = at

        if state.candidate_streak < self._debounce_samples:
            return None

        transition = ConfirmedTransition(
            from_state=state.last_confirmed,
            to_state=raw_state,
            at=state.candidate_since or at,
        )
        state.last_confirmed = raw_state
        self._clear_candidate()
        return transition

    def _clear_candidate(self) -> None:
        self._state.candidate = None
        self._state.candidate_streak = 0
        self._state.candidate_since = None
