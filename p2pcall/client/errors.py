"""Exceptions raised by the negotiation controller."""


class CallError(Exception):
    """Base class for call setup failures."""


class MediaAcquisitionError(CallError):
    """Camera or microphone denied or unavailable."""


class NegotiationError(CallError):
    """Creating or applying a session description failed."""


class CallStateError(CallError):
    """The operation is not allowed in the controller's current session state."""
