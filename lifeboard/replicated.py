"""
Replicated values: one authoritative writer, mirrored to every peer.

The host holds the canonical copy of each ``Replicated`` container. A write
updates it synchronously, fires local change listeners and queues an immutable
``Snapshot`` for delivery to peers. Mirrors on the peers apply those snapshots
in order and fire their own listeners with ``(previous, next)``.

Nothing here knows about sockets: the session drains snapshots and hands them
to whatever transport is in use.
"""

import logging
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Generic, TypeVar

from lifeboard.errors import WritePermissionError


logger = logging.getLogger(__name__)

V = TypeVar("V")

# Writer id of the authoritative host. Players are numbered from 1.
HOST = 0


class WritePermission(Enum):
    HOST = "host"        # only the host may write
    OWNER = "owner"      # only the owning peer may write (relayed through the host)


@dataclass(frozen=True)
class Snapshot:
    """One replicated write, as delivered to peers."""
    name: str
    seq: int
    value: Any


def _identity(value):
    return value


class Replicated(Generic[V]):

    def __init__(self, name, initial: V, permission=WritePermission.HOST, owner=None,
                 authoritative=True, encode=None, decode=None):
        if permission is WritePermission.OWNER and owner is None:
            raise ValueError(f"Owner-writable container {name!r} needs an owner")
        self.name = name
        self.permission = permission
        self.owner = owner
        self.authoritative = authoritative
        self.seq = 0
        self.encode: Callable[[V], Any] = encode or _identity
        self.decode: Callable[[Any], V] = decode or _identity
        self._value = initial
        self._listeners = []
        self._outbox = deque()

    def __repr__(self):
        return f"Replicated({self.name!r}, seq={self.seq}, value={self._value!r})"

    # ── Reading ───────────────────────────────────────────────────────

    @property
    def value(self) -> V:
        return self._value

    def read(self) -> V:
        return self._value

    # ── Writing (host side) ───────────────────────────────────────────

    def can_write(self, writer):
        if self.permission is WritePermission.HOST:
            return writer == HOST
        return writer == self.owner

    def write(self, value: V, writer=HOST):
        """Replace the canonical value and queue a snapshot for every peer."""
        if not self.authoritative:
            raise WritePermissionError(f"{self.name} is a mirror; writes must go through the host")
        if not self.can_write(writer):
            raise WritePermissionError(
                f"Peer {writer} may not write {self.name} ({self.permission.value}-writable)"
            )

        previous = self._value
        self._value = value
        self.seq += 1
        snapshot = Snapshot(self.name, self.seq, value)
        self._outbox.append(snapshot)
        logger.debug("%s <- %r (seq %d, writer %s)", self.name, value, self.seq, writer)
        self._notify(previous, value)
        return snapshot

    def drain(self):
        """Return queued snapshots in write order and clear the queue."""
        pending = list(self._outbox)
        self._outbox.clear()
        return pending

    def rebroadcast(self):
        """Queue the current value again so peers can resynchronize."""
        snapshot = Snapshot(self.name, self.seq, self._value)
        self._outbox.append(snapshot)
        return snapshot

    # ── Mirror side ───────────────────────────────────────────────────

    def apply(self, snapshot):
        """
        Apply a snapshot received from the host.

        Older snapshots are dropped. A snapshot with the current seq is a
        redundant delivery and is re-applied, so listeners may see
        ``previous == next``.
        """
        if snapshot.seq < self.seq:
            logger.debug("%s: dropping stale seq %d (at %d)", self.name, snapshot.seq, self.seq)
            return False
        previous = self._value
        self._value = snapshot.value
        self.seq = snapshot.seq
        self._notify(previous, snapshot.value)
        return True

    # ── Listeners ─────────────────────────────────────────────────────

    def on_change(self, listener):
        """Register ``listener(previous, next)``; returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, previous, current):
        for listener in list(self._listeners):
            listener(previous, current)


class ReplicationHub:
    """
    Named set of containers belonging to one session (host) or one peer (mirror).

    Ordering is FIFO per container only; ``drain`` makes no promise about how
    snapshots of different containers interleave.
    """

    def __init__(self, authoritative=True):
        self.authoritative = authoritative
        self._containers = {}

    def create(self, name, initial, **kwargs):
        kwargs.setdefault("authoritative", self.authoritative)
        return self.register(Replicated(name, initial, **kwargs))

    def register(self, container):
        if container.name in self._containers:
            raise ValueError(f"Duplicate replicated container: {container.name}")
        self._containers[container.name] = container
        return container

    def __getitem__(self, name):
        return self._containers[name]

    def __contains__(self, name):
        return name in self._containers

    def __iter__(self):
        return iter(self._containers.values())

    def get(self, name):
        return self._containers.get(name)

    def drain(self):
        snapshots = []
        for container in self._containers.values():
            snapshots.extend(container.drain())
        return snapshots

    def rebroadcast_all(self):
        return [container.rebroadcast() for container in self._containers.values()]

    def apply(self, snapshot):
        container = self._containers.get(snapshot.name)
        if container is None:
            logger.warning("Snapshot for unknown container %s ignored", snapshot.name)
            return False
        return container.apply(snapshot)

    # ── Wire format ───────────────────────────────────────────────────

    def encode(self, snapshot):
        container = self._containers[snapshot.name]
        return {
            "container": snapshot.name,
            "seq": snapshot.seq,
            "value": container.encode(snapshot.value),
        }

    def decode(self, data):
        name = data.get("container")
        container = self._containers.get(name)
        if container is None:
            raise KeyError(f"Unknown container: {name}")
        return Snapshot(name, int(data.get("seq", 0)), container.decode(data.get("value")))
