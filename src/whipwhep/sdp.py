"""SDP helpers: size bound, media section parsing, generic media rendering"""

import base64
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from .codecs import CODECS, Codec, MediaKind, codec_from_encoding_name
from .errors import SdpTooLargeError, UnsupportedCodecError
from .media import CodecParameters, parameter_sets, to_annexb

logger = logging.getLogger(__name__)

# Offers and answers larger than this are rejected
SDP_MAX_SIZE = 16384

_DIRECTIONS = ("sendrecv", "sendonly", "recvonly", "inactive")


@dataclass
class RtpMap:
    payload_type: int
    encoding_name: str
    clock_rate: int
    channels: int = 1


@dataclass
class MediaSection:
    """One ``m=`` section of a session description"""

    kind: str
    port: int
    protocol: str
    formats: List[int] = field(default_factory=list)
    mid: Optional[str] = None
    direction: str = "sendrecv"
    rtpmaps: Dict[int, RtpMap] = field(default_factory=dict)
    fmtps: Dict[int, str] = field(default_factory=dict)
    ssrcs: List[int] = field(default_factory=list)

    @property
    def media_kind(self) -> Optional[MediaKind]:
        try:
            return MediaKind(self.kind)
        except ValueError:
            return None

    def codec_formats(self) -> List[Tuple[int, Codec, RtpMap]]:
        """Payload types of this section with a known codec, in preference order"""
        result = []
        for payload_type in self.formats:
            rtpmap = self.rtpmaps.get(payload_type)
            if rtpmap is None:
                continue
            codec = codec_from_encoding_name(rtpmap.encoding_name)
            if codec is not None and CODECS[codec].kind is self.media_kind:
                result.append((payload_type, codec, rtpmap))
        return result


def check_size(sdp: str, what: str = "SDP") -> None:
    """Raise SdpTooLargeError if ``sdp`` does not fit in SDP_MAX_SIZE bytes"""
    size = len(sdp.encode("utf-8"))
    if size > SDP_MAX_SIZE:
        raise SdpTooLargeError(f"{what} is {size} bytes, maximum is {SDP_MAX_SIZE}")


def looks_like_sdp(text: str) -> bool:
    return text.lstrip().startswith("v=")


def _parse_rtpmap(value: str) -> Optional[RtpMap]:
    # <payload type> <encoding name>/<clock rate>[/<channels>]
    try:
        payload_type, encoding = value.split(None, 1)
        parts = encoding.strip().split("/")
        return RtpMap(
            payload_type=int(payload_type),
            encoding_name=parts[0],
            clock_rate=int(parts[1]),
            channels=int(parts[2]) if len(parts) > 2 else 1,
        )
    except (ValueError, IndexError):
        logger.debug(f"Ignoring malformed rtpmap: {value}")
        return None


def _parse_media_line(value: str) -> Optional[MediaSection]:
    # <media> <port> <proto> <fmt> ...
    parts = value.split()
    if len(parts) < 3:
        return None
    try:
        port = int(parts[1].split("/")[0])
    except ValueError:
        return None
    formats = [int(fmt) for fmt in parts[3:] if fmt.isdigit()]
    return MediaSection(kind=parts[0], port=port, protocol=parts[2], formats=formats)


def parse_media_sections(sdp: str) -> List[MediaSection]:
    """Parse every ``m=`` section of a session description or media fragment"""
    sections: List[MediaSection] = []
    current: Optional[MediaSection] = None

    for raw_line in sdp.splitlines():
        line = raw_line.strip()
        if len(line) < 2 or line[1] != "=":
            continue
        key, value = line[0], line[2:]

        if key == "m":
            current = _parse_media_line(value)
            if current is not None:
                sections.append(current)
            continue
        if current is None or key != "a":
            continue

        name, _, attr = value.partition(":")
        if name == "mid":
            current.mid = attr.strip()
        elif name in _DIRECTIONS:
            current.direction = name
        elif name == "rtpmap":
            rtpmap = _parse_rtpmap(attr)
            if rtpmap is not None:
                current.rtpmaps[rtpmap.payload_type] = rtpmap
        elif name == "fmtp":
            payload_type, _, params = attr.partition(" ")
            if payload_type.isdigit():
                current.fmtps[int(payload_type)] = params.strip()
        elif name == "ssrc":
            ssrc = attr.split(None, 1)[0] if attr else ""
            if ssrc.isdigit() and int(ssrc) not in current.ssrcs:
                current.ssrcs.append(int(ssrc))

    return sections


def parse_media_section(fragment: str) -> MediaSection:
    sections = parse_media_sections(fragment)
    if not sections:
        raise ValueError("No media section in SDP fragment")
    return sections[0]


def parse_fmtp(value: str) -> Dict[str, str]:
    """Split an fmtp parameter string such as ``a=1;b=2`` into a dict"""
    params: Dict[str, str] = {}
    for item in value.split(";"):
        key, sep, val = item.strip().partition("=")
        if key:
            params[key.strip()] = val.strip() if sep else ""
    return params


def extract_fmtp(media_sdp: str) -> Optional[str]:
    """Return the parameters of the first ``a=fmtp`` attribute of a media description"""
    for raw_line in media_sdp.splitlines():
        line = raw_line.strip()
        if line.startswith("a=fmtp:"):
            _, _, params = line[len("a=fmtp:") :].partition(" ")
            return params.strip() or None
    return None


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _h264_fmtp(params: CodecParameters) -> str:
    fmtp = ["packetization-mode=1"]
    psets = parameter_sets(Codec.H264, params.extradata)
    nal_units = psets.get("sps", []) + psets.get("pps", [])
    if nal_units:
        fmtp.append("sprop-parameter-sets=" + ",".join(_b64(nal) for nal in nal_units))
    sps = psets.get("sps")
    if sps and len(sps[0]) >= 4:
        fmtp.append(f"profile-level-id={sps[0][1:4].hex()}")
    return ";".join(fmtp)


def _hevc_fmtp(params: CodecParameters) -> Optional[str]:
    psets = parameter_sets(Codec.HEVC, params.extradata)
    fmtp = [
        f"sprop-{name}=" + ",".join(_b64(nal) for nal in psets[name])
        for name in ("vps", "sps", "pps")
        if psets.get(name)
    ]
    return ";".join(fmtp) or None


def _av1_fmtp(params: CodecParameters) -> Optional[str]:
    # AV1CodecConfigurationRecord: marker/version, profile/level, tier/...
    extradata = params.extradata
    if len(extradata) < 4 or not extradata[0] & 0x80:
        return None
    profile = extradata[1] >> 5
    level_idx = extradata[1] & 0x1F
    tier = extradata[2] >> 7
    return f"profile={profile};level-idx={level_idx};tier={tier}"


def _aac_fmtp(params: CodecParameters) -> str:
    if not params.extradata:
        raise UnsupportedCodecError("AAC without global header (AudioSpecificConfig) is not supported")
    return (
        "profile-level-id=1;mode=AAC-hbr;sizelength=13;indexlength=3;"
        f"indexdeltalength=3;config={params.extradata.hex()}"
    )


def render_media(params: CodecParameters, payload_type: int) -> str:
    """Render a generic RTP media description for one stream

    The description is what a plain RTP sender would announce for the stream;
    its fmtp attribute carries the codec profile negotiated over WebRTC.
    """
    info = CODECS[params.codec]
    if params.kind is MediaKind.AUDIO:
        channels = params.channels or info.channels
        clock_rate = params.sample_rate or info.clock_rate
        rtpmap = f"{info.encoding_name}/{clock_rate}/{channels}"
    else:
        channels = 0
        rtpmap = f"{info.encoding_name}/{info.clock_rate}"

    fmtp: Optional[str] = None
    if params.codec is Codec.H264:
        fmtp = _h264_fmtp(params)
    elif params.codec is Codec.HEVC:
        fmtp = _hevc_fmtp(params)
    elif params.codec is Codec.AV1:
        fmtp = _av1_fmtp(params)
    elif params.codec is Codec.OPUS and channels == 2:
        fmtp = "sprop-stereo=1"
    elif params.codec is Codec.AAC:
        fmtp = _aac_fmtp(params)

    lines = [
        f"m={params.kind.value} 0 RTP/AVP {payload_type}",
        f"a=rtpmap:{payload_type} {rtpmap}",
    ]
    if fmtp:
        lines.append(f"a=fmtp:{payload_type} {fmtp}")
    return "\r\n".join(lines) + "\r\n"


def _b64_nal_units(value: str) -> List[bytes]:
    nal_units = []
    for item in value.split(","):
        item = item.strip()
        if not item:
            continue
        try:
            nal_units.append(base64.b64decode(item, validate=True))
        except ValueError:
            logger.warning(f"Ignoring malformed parameter set: {item}")
    return nal_units


def codec_parameters(section: MediaSection, payload_type: Optional[int] = None) -> CodecParameters:
    """Build the codec parameters announced by a media section

    Uses ``payload_type``, or the first payload type with a known codec.
    Video parameter sets carried in fmtp are returned as Annex B extradata.

    Raises:
        UnsupportedCodecError: If no matching payload type has a known codec
    """
    formats = [
        entry for entry in section.codec_formats() if payload_type is None or entry[0] == payload_type
    ]
    if not formats:
        raise UnsupportedCodecError(f"No supported codec in {section.kind} section mid={section.mid}")
    payload_type, codec, rtpmap = formats[0]
    fmtp = parse_fmtp(section.fmtps.get(payload_type, ""))

    extradata = b""
    if codec is Codec.H264 and "sprop-parameter-sets" in fmtp:
        extradata = to_annexb(_b64_nal_units(fmtp["sprop-parameter-sets"]))
    elif codec is Codec.HEVC:
        nal_units = []
        for name in ("sprop-vps", "sprop-sps", "sprop-pps"):
            nal_units += _b64_nal_units(fmtp.get(name, ""))
        extradata = to_annexb(nal_units)
    elif codec is Codec.AAC and "config" in fmtp:
        try:
            extradata = bytes.fromhex(fmtp["config"])
        except ValueError:
            logger.warning(f"Ignoring malformed AAC config: {fmtp['config']}")

    kind = CODECS[codec].kind
    if kind is MediaKind.AUDIO:
        return CodecParameters(
            kind=kind,
            codec=codec,
            sample_rate=rtpmap.clock_rate,
            channels=rtpmap.channels,
            extradata=extradata,
            payload_type=payload_type,
        )
    return CodecParameters(kind=kind, codec=codec, extradata=extradata, payload_type=payload_type)
