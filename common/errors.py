"""
Exception hierarchy for the relay node.

Errors fall into four families: capacity/resource errors, external command
failures, malformed input, and lookups of unknown objects. Capacity errors are
returned to the caller and never retried automatically.
"""
from typing import List, Optional, Sequence


class RelayNodeError(Exception):
    """Base class for all relay node errors"""


# Capacity / resource errors

class CapacityError(RelayNodeError):
    """The node cannot accept another session"""


class AddressExhaustedError(CapacityError):
    """No free tunnel address is left in the node subnet"""


class InsufficientNodesError(RelayNodeError):
    """Not enough eligible nodes to build a hop chain"""


class GeographicDiversityError(RelayNodeError):
    """Hop chain nodes share a country or a city"""


class NodeUnhealthyError(RelayNodeError):
    """A node selected for a chain failed its health check"""


class ChainTimeoutError(RelayNodeError):
    """Hop chain construction exceeded its deadline"""


# External command failures

class CommandError(RelayNodeError):
    """
    An external command (tunnel tool, firewall tool, routing tool) failed
    """
    def __init__(self, command: Sequence[str], returncode: Optional[int] = None,
                 output: str = "", reason: str = ""):
        self.command = list(command)
        self.returncode = returncode
        self.output = output
        self.reason = reason

        message = f"command failed: {' '.join(self.command)}"
        if returncode is not None:
            message += f" (exit {returncode})"
        if reason:
            message += f": {reason}"
        elif output:
            message += f": {output.strip()}"
        super().__init__(message)


class KillSwitchError(RelayNodeError):
    """The kill switch could not be fully applied and was rolled back"""
    def __init__(self, message: str, rolled_back: Optional[List[str]] = None):
        super().__init__(message)
        self.rolled_back = rolled_back or []


# Malformed input

class MalformedFrameError(ValueError, RelayNodeError):
    """An obfuscated frame is too short or structurally invalid"""


class InvalidRuleError(ValueError, RelayNodeError):
    """A split tunnel rule has an unknown kind or an invalid value"""


class Socks5ProtocolError(ValueError, RelayNodeError):
    """A SOCKS5 client sent an invalid frame"""


# Lookups

class SessionNotFoundError(RelayNodeError):
    """No active session with the given id"""


class PeerNotFoundError(RelayNodeError):
    """The tunnel interface has no peer with the given public key"""


class NodeNotFoundError(RelayNodeError):
    """The repository has no node with the given id"""
