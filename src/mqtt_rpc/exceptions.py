"""
Error taxonomy for RPC calls.

Every failure is local to the call that produced it; nothing here is
process-wide state.
"""


class RPCError(Exception):
    """Base class for all errors raised by mqtt_rpc."""


class TransportError(RPCError):
    """Publish, subscribe or connect failure at the MQTT layer."""


class ConnectError(TransportError):
    """The broker could not be reached or refused the connection."""


class RPCTimeoutError(RPCError, TimeoutError):
    """No matching response arrived within the requested timeout."""


class DecodeError(RPCError, ValueError):
    """A payload could not be decoded into the expected structured form."""


class RPCCancelledError(RPCError):
    """The pending call was cancelled before a response arrived."""
