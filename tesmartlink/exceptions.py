"""Custom exceptions for the TESmart link library."""


class TESmartError(Exception):
    """Base exception for all TESmart link errors."""
    pass


class CommunicationError(TESmartError):
    """Raised when talking to the KVM device fails at the transport level."""
    pass


class UnreachableError(CommunicationError):
    """Raised when the TCP connection to the KVM cannot be established."""
    pass


class NoReplyError(CommunicationError):
    """Raised when the KVM does not answer with a usable reply in time."""
    pass


class BadReplyError(TESmartError):
    """Raised when the KVM returns a malformed or out-of-range reply."""
    pass


class BadArgumentError(TESmartError, ValueError):
    """Raised when a caller-supplied value is out of range or malformed."""
    pass
