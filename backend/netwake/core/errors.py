"""
Error taxonomy shared by the discovery and wake engine.

Expected failures (bad MAC text, host down, bind conflicts) are converted
to sentinel results at the public boundary of each component; these
exceptions are what travels between the layers underneath.
"""


class NetWakeError(Exception):
    """Base class for all engine errors."""


class FormatError(NetWakeError, ValueError):
    """Malformed MAC address, network range or packet text."""


class TransientNetworkError(NetWakeError, OSError):
    """Timeout, unreachable host or socket error during a probe or send."""


class PersistenceConflict(NetWakeError):
    """A registry write violated MAC or IP uniqueness."""


class ListenerBindError(NetWakeError):
    """No magic packet port could be bound."""
