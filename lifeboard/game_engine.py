"""
Abstract game engine interface.

A game that plugs into the server implements this interface. The server
knows nothing about the rules: it hands connections and requests to the
engine, then flushes whatever the engine queued for delivery.

Unlike a pure state-in/state-out engine, this one is stateful and
authoritative: it owns replicated containers and may queue broadcasts on
its own (for example when a timer fires). It tells the server about that
through the notifier set with ``set_notifier``.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field


@dataclass
class ActionResult:
    """Returned by handle_request to tell the server what happened."""
    accepted: bool = True
    # Human-readable lines for the game log
    log: list[str] = field(default_factory=list)
    # Set once the game is over after this request
    game_over: bool = False
    # Why a request was refused (empty when accepted)
    reason: str = ""


class GameEngine(ABC):

    player_count_range: tuple[int, int] = (2, 2)

    def __init__(self):
        self._notifier = None

    def set_notifier(self, notifier):
        """``notifier()`` is called whenever broadcasts were queued outside a request."""
        self._notifier = notifier

    def notify(self):
        if self._notifier is not None:
            self._notifier()

    # ── Players ───────────────────────────────────────────────────────

    @abstractmethod
    def connect(self, player: int) -> None:
        """A player's connection is up."""
        ...

    @abstractmethod
    def spawn(self, player: int) -> None:
        """Create the player's host-side state. Until then their requests are refused."""
        ...

    @abstractmethod
    def disconnect(self, player: int) -> None:
        ...

    # ── Requests ──────────────────────────────────────────────────────

    @abstractmethod
    def handle_request(self, player: int, request) -> ActionResult:
        """
        Validate and apply one request. Requests are processed strictly one at
        a time; policy rejections come back as ``accepted=False``.
        """
        ...

    @abstractmethod
    def write_owned(self, player: int, container: str, value) -> ActionResult:
        """Apply a write to an owner-writable container on behalf of its owner."""
        ...

    # ── Outbound ──────────────────────────────────────────────────────

    @abstractmethod
    def drain_outbound(self) -> list:
        """Return queued broadcasts in order and clear the queue."""
        ...

    @abstractmethod
    def full_state(self) -> list:
        """Broadcasts that bring a fresh peer fully up to date."""
        ...

    # ── Views ─────────────────────────────────────────────────────────

    @abstractmethod
    def get_waiting_for(self) -> list[int]:
        """Players who need to act before the game can proceed."""
        ...

    @abstractmethod
    def get_valid_actions(self, player: int) -> list[dict]:
        """Request shapes this player may currently send."""
        ...

    @abstractmethod
    def get_phase_info(self) -> dict:
        """Summary of the current phase for display purposes."""
        ...
