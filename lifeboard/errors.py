"""
Exception taxonomy shared by the engine, replication layer and server.

Rejections are expected during play and never change state. Configuration
errors abort session setup. Consistency faults are logged and answered with a
full re-broadcast; they must never take the host down.
"""


class LifeboardError(Exception):
    """Base class for everything raised by this package."""


class RequestRejected(LifeboardError, ValueError):
    """A request was refused by policy (wrong turn, game over, bad index...)."""


class ConfigurationError(LifeboardError, ValueError):
    """The board or server configuration is unusable."""


class SegmentNotFound(ConfigurationError, KeyError):
    """A segment name does not exist in the path graph."""

    def __str__(self):
        return str(self.args[0]) if self.args else "Segment not found"


class PositionOutOfRange(LifeboardError, IndexError):
    """A waypoint index falls outside its segment."""


class WritePermissionError(LifeboardError, PermissionError):
    """A peer tried to write a replicated value it does not own."""


class ConsistencyFault(LifeboardError, RuntimeError):
    """Replicated state broke one of its invariants."""


class ProtocolError(LifeboardError, ValueError):
    """A wire message could not be understood."""
