"""
Spinner: the host draws the movement amount, peers watch it spin.

Phase machine (all on one replicated SpinState):
  idle → spinning → revealed → (next spin) spinning ...

The outcome is chosen the moment the spin is accepted, but it only becomes
authoritative once ``complete`` is set, ``duration`` seconds after
``start_time``. Peers use the shared start time to animate in step with the
host.
"""

import asyncio
import logging
import random
import time
from dataclasses import replace
from enum import Enum

from lifeboard.config import SPIN_DURATION_SECONDS, SPIN_MAX, SPIN_MIN
from lifeboard.errors import ConsistencyFault, RequestRejected
from lifeboard.lifepath.state import SpinState


logger = logging.getLogger(__name__)

SPIN_SPEED = 10.0   # numbers per second at the start of the animation


class SpinPhase(str, Enum):
    IDLE = "idle"
    SPINNING = "spinning"
    REVEALED = "revealed"


def phase_of(state):
    if state.spinning:
        return SpinPhase.SPINNING
    if state.complete:
        return SpinPhase.REVEALED
    return SpinPhase.IDLE


def check_spin_state(state, low=SPIN_MIN, high=SPIN_MAX):
    """Return a ConsistencyFault describing a broken SpinState, or None."""
    if state.spinning and state.complete:
        return ConsistencyFault("Spin is both spinning and complete")
    if (state.spinning or state.complete) and not low <= state.final_value <= high:
        return ConsistencyFault(
            f"Spin value {state.final_value} outside {low}-{high}"
        )
    return None


def display_number(state, now, duration=SPIN_DURATION_SECONDS, low=SPIN_MIN, high=SPIN_MAX):
    """
    Number to show right now. Purely cosmetic while spinning: it cycles
    through the range and slows down toward the reveal.
    """
    if not state.spinning:
        return state.final_value
    elapsed = max(0.0, now - state.start_time)
    progress = min(1.0, elapsed / duration) if duration > 0 else 1.0
    speed = SPIN_SPEED * (1.0 - progress * 0.8)
    span = high - low + 1
    return int(abs(now * speed)) % span + low


class Spinner:

    def __init__(self, container, rng=None, clock=time.time,
                 duration=SPIN_DURATION_SECONDS, low=SPIN_MIN, high=SPIN_MAX, on_fault=None):
        self.container = container
        self.rng = rng or random.Random()
        self.clock = clock
        self.duration = duration
        self.low = low
        self.high = high
        self.on_fault = on_fault

    @property
    def state(self):
        return self.container.value

    @property
    def phase(self):
        return phase_of(self.state)

    # ── Host transitions ──────────────────────────────────────────────

    def request_spin(self):
        """Start a spin. Rejected while another spin is still running."""
        if self.state.spinning:
            raise RequestRejected("Spin already in progress")

        value = self.rng.randint(self.low, self.high)
        self.container.write(SpinState(
            spinning=True,
            final_value=value,
            complete=False,
            start_time=self.clock(),
        ))
        logger.info("Spin started, outcome %d revealed in %.2fs", value, self.duration)
        return value

    def due_at(self):
        return self.state.start_time + self.duration

    def poll(self, now=None):
        """Reveal the outcome if the spin has run for ``duration``. Returns True on reveal."""
        state = self.state
        if not state.spinning:
            return False
        now = self.clock() if now is None else now
        if now - state.start_time < self.duration:
            return False

        self.container.write(replace(state, spinning=False, complete=True))
        logger.info("Spin complete, final number is %d", state.final_value)
        return True

    async def reveal_when_due(self):
        """Sleep until the current spin is due, then reveal it."""
        while self.state.spinning:
            remaining = self.due_at() - self.clock()
            if remaining > 0:
                await asyncio.sleep(remaining)
            if self.poll():
                return True
        return False

    # ── Reading ───────────────────────────────────────────────────────

    def is_complete(self):
        return self.state.complete

    def final_number(self):
        """
        The spin outcome. Only authoritative once ``is_complete()``; an
        out-of-range value is reported as a consistency fault and returned
        unchanged.
        """
        value = self.state.final_value
        if not self.low <= value <= self.high:
            self.report_fault(ConsistencyFault(f"Spin value {value} outside {self.low}-{self.high}"))
        return value

    def display_number(self, now=None):
        now = self.clock() if now is None else now
        return display_number(self.state, now, self.duration, self.low, self.high)

    def report_fault(self, fault):
        logger.error("Consistency fault: %s", fault)
        if self.on_fault is not None:
            self.on_fault(fault)
