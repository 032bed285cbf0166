from .codecs import Codec, Direction, MediaKind
from .engine import EngineError, LibDataChannelEngine, TransportEngine
from .errors import (
    ConnectionFailedError,
    ConnectionTimeoutError,
    EndOfStreamError,
    InvalidOptionError,
    InvalidTimestampError,
    PacketizerAttachError,
    PacketTimeoutError,
    SdpTooLargeError,
    SignalingError,
    SignalingTimeoutError,
    TrackCreationError,
    TransportInitError,
    TransportSendError,
    UnknownStreamError,
    UnsupportedCodecError,
    WebRTCError,
)
from .media import CodecParameters, Packet
from .options import WebRTCOptions, parse_duration
from .session import Session
from .signaling import SignalingMode, negotiate
from .state import ConnectionState
from .tracks import Track
from .whep import WHEPClient
from .whip import WHIPClient

__all__ = [
    "Codec",
    "CodecParameters",
    "ConnectionFailedError",
    "ConnectionState",
    "ConnectionTimeoutError",
    "Direction",
    "EndOfStreamError",
    "EngineError",
    "InvalidOptionError",
    "InvalidTimestampError",
    "LibDataChannelEngine",
    "MediaKind",
    "Packet",
    "PacketizerAttachError",
    "PacketTimeoutError",
    "SdpTooLargeError",
    "Session",
    "SignalingError",
    "SignalingMode",
    "SignalingTimeoutError",
    "Track",
    "TrackCreationError",
    "TransportEngine",
    "TransportInitError",
    "TransportSendError",
    "UnknownStreamError",
    "UnsupportedCodecError",
    "WebRTCError",
    "WebRTCOptions",
    "WHEPClient",
    "WHIPClient",
    "negotiate",
    "parse_duration",
]
