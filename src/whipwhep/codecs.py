"""Codec table for WHIP/WHEP tracks

Which codecs each direction accepts, their RTP encoding names, clock rates,
payload types and the fixed SDP profiles used by subscribe tracks.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Optional


class MediaKind(Enum):
    AUDIO = "audio"
    VIDEO = "video"


class Codec(Enum):
    OPUS = "opus"
    AAC = "aac"
    PCMU = "pcm_mulaw"
    PCMA = "pcm_alaw"
    H264 = "h264"
    HEVC = "hevc"
    AV1 = "av1"
    VP9 = "vp9"


class Direction(Enum):
    """Which side of the session produces media"""

    PUBLISH = "publish"
    SUBSCRIBE = "subscribe"


@dataclass(frozen=True)
class CodecInfo:
    codec: Codec
    kind: MediaKind
    encoding_name: str
    clock_rate: int
    channels: int = 1


CODECS: Dict[Codec, CodecInfo] = {
    Codec.OPUS: CodecInfo(Codec.OPUS, MediaKind.AUDIO, "opus", 48000, 2),
    Codec.AAC: CodecInfo(Codec.AAC, MediaKind.AUDIO, "MPEG4-GENERIC", 48000, 2),
    Codec.PCMU: CodecInfo(Codec.PCMU, MediaKind.AUDIO, "PCMU", 48000, 2),
    Codec.PCMA: CodecInfo(Codec.PCMA, MediaKind.AUDIO, "PCMA", 48000, 2),
    Codec.H264: CodecInfo(Codec.H264, MediaKind.VIDEO, "H264", 90000),
    Codec.HEVC: CodecInfo(Codec.HEVC, MediaKind.VIDEO, "H265", 90000),
    Codec.AV1: CodecInfo(Codec.AV1, MediaKind.VIDEO, "AV1", 90000),
    Codec.VP9: CodecInfo(Codec.VP9, MediaKind.VIDEO, "VP9", 90000),
}

AUDIO_SAMPLE_RATE = 48000
AUDIO_CHANNELS = 2
VIDEO_CLOCK_RATE = 90000

SUPPORTED_AUDIO_CODECS: FrozenSet[Codec] = frozenset(
    {Codec.OPUS, Codec.AAC, Codec.PCMU, Codec.PCMA}
)

# VP9 has no packetizer in libdatachannel, so it is receive only
SUPPORTED_VIDEO_CODECS: Dict[Direction, FrozenSet[Codec]] = {
    Direction.PUBLISH: frozenset({Codec.H264, Codec.HEVC, Codec.AV1}),
    Direction.SUBSCRIBE: frozenset({Codec.H264, Codec.HEVC, Codec.AV1, Codec.VP9}),
}

# RFC 3551 static payload types: (codec, clock rate, channels) -> payload type
STATIC_PAYLOAD_TYPES: Dict[tuple, int] = {
    (Codec.PCMU, 8000, 1): 0,
    (Codec.PCMA, 8000, 1): 8,
}

DYNAMIC_PAYLOAD_TYPE_BASE = 96
MAX_PAYLOAD_TYPE = 127

SUBSCRIBE_VIDEO_PAYLOAD_TYPE = 96
SUBSCRIBE_AUDIO_PAYLOAD_TYPE = 97

SUBSCRIBE_PROFILES: Dict[Codec, str] = {
    Codec.H264: "profile-level-id=42e01f;packetization-mode=1;level-asymmetry-allowed=1",
    Codec.HEVC: "profile-id=1",
    Codec.AV1: "profile=0",
    Codec.VP9: "profile-id=0",
    Codec.OPUS: "minptime=10;maxaveragebitrate=96000;stereo=1;sprop-stereo=1;useinbandfec=1",
    Codec.AAC: "streamtype=5;profile-level-id=1;mode=AAC-hbr;sizelength=13;indexlength=3;indexdeltalength=3",
}


def is_supported(codec: Codec, direction: Direction) -> bool:
    if codec in SUPPORTED_AUDIO_CODECS:
        return True
    return codec in SUPPORTED_VIDEO_CODECS[direction]


def payload_type_for(codec: Codec, clock_rate: int, channels: int, index: int) -> int:
    """Pick the RTP payload type of a published stream

    Static payload types only apply when clock rate and channel count match
    the RFC 3551 entry, everything else gets a dynamic payload type derived
    from the stream index.
    """
    static = STATIC_PAYLOAD_TYPES.get((codec, clock_rate, channels))
    if static is not None:
        return static
    return min(DYNAMIC_PAYLOAD_TYPE_BASE + index, MAX_PAYLOAD_TYPE)


def codec_from_encoding_name(name: str) -> Optional[Codec]:
    """Map an SDP rtpmap encoding name to a codec, case insensitively"""
    lowered = name.lower()
    if lowered == "hevc":
        return Codec.HEVC
    for info in CODECS.values():
        if info.encoding_name.lower() == lowered:
            return info.codec
    return None
