"""
Error taxonomy shared by the session, transport and channel layers.

None of these terminate the process: they are reported where they occur as a
single status line plus a log entry.  User-initiated operations re-raise them so
the control API can map them onto HTTP responses.
"""

from __future__ import annotations


class PairchatError(RuntimeError):
    """Base class for session related errors."""

    code = "E_PAIRCHAT"
    # Set once the error has already been surfaced to listeners.
    reported = False


class MediaAccessDenied(PairchatError):
    """Capturing a local media kind failed; the session continues without it."""

    code = "E_MEDIA_ACCESS"


class SignalingError(PairchatError):
    """Creating, serialising or applying a session description failed."""

    code = "E_SIGNALING"


class SignalingParseError(SignalingError):
    """A pasted offer/answer is not a well-formed session description."""

    code = "E_SIGNALING_PARSE"


class InvalidState(SignalingError):
    """The operation does not apply to the current session state."""

    code = "E_INVALID_STATE"


class TransportUnavailable(PairchatError):
    """The matchmaking collaborator is not installed or not configured."""

    code = "E_TRANSPORT_UNAVAILABLE"


class SendFailure(PairchatError):
    """The channel is not open; the message was dropped."""

    code = "E_SEND"


class PeerDisconnected(PairchatError):
    """The transport reported a terminal state."""

    code = "E_PEER_DISCONNECTED"


class FileTransferAborted(PairchatError):
    """A transfer stopped before completion; partial state was discarded."""

    code = "E_TRANSFER_ABORTED"


class ProtocolViolation(PairchatError):
    """A frame carried a recognised tag but invalid fields, or arrived out of place."""

    code = "E_PROTOCOL"


__all__ = [
    "FileTransferAborted",
    "InvalidState",
    "MediaAccessDenied",
    "PairchatError",
    "PeerDisconnected",
    "ProtocolViolation",
    "SendFailure",
    "SignalingError",
    "SignalingParseError",
    "TransportUnavailable",
]
