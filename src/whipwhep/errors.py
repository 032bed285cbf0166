"""Error taxonomy for WHIP/WHEP sessions.

Every public entry point raises one of these, never a raw libdatachannel or
httpx exception.
"""


class WebRTCError(Exception):
    """Base class for all whipwhep errors."""


class InvalidOptionError(WebRTCError, ValueError):
    """Raised when a session option is missing, malformed or out of range."""


class TransportInitError(WebRTCError):
    """Raised when the transport engine cannot allocate a peer connection."""


class UnsupportedCodecError(WebRTCError, ValueError):
    """Raised when a stream's codec, sample rate or channel layout is not supported."""


class TrackCreationError(WebRTCError):
    """Raised when the transport engine refuses to create a track."""


class PacketizerAttachError(WebRTCError):
    """Raised when a packetizer or RTCP handler cannot be attached to a track."""


class SignalingError(WebRTCError):
    """Raised when the HTTP signaling exchange fails."""


class SignalingTimeoutError(SignalingError, TimeoutError):
    """Raised when a signaling request does not complete within rw_timeout."""


class SdpTooLargeError(WebRTCError):
    """Raised when an offer or answer exceeds SDP_MAX_SIZE."""


class ConnectionTimeoutError(WebRTCError, TimeoutError):
    """Raised when the peer connection is not established before the deadline."""


class ConnectionFailedError(WebRTCError):
    """Raised when the peer connection reaches a terminal state while connecting."""


class InvalidTimestampError(WebRTCError, ValueError):
    """Raised when a packet has no usable timestamp. The packet is dropped."""


class UnknownStreamError(WebRTCError, IndexError):
    """Raised when a packet refers to a stream index with no track."""


class TransportSendError(WebRTCError):
    """Raised when the transport engine fails to send a packet."""


class PacketTimeoutError(WebRTCError, TimeoutError):
    """Raised when no packet arrives within rw_timeout on a live session."""


class EndOfStreamError(WebRTCError, EOFError):
    """Raised when the session has reached a terminal state."""
