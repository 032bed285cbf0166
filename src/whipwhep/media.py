"""Types exchanged with the media pipeline and H.264/H.265 bitstream helpers"""

from dataclasses import dataclass
from fractions import Fraction
from typing import Dict, Iterator, List, Optional

from .codecs import Codec, MediaKind

START_CODE = b"\x00\x00\x00\x01"

H264_NAL_SEI = 6
H264_NAL_SPS = 7
H264_NAL_PPS = 8
H264_NAL_AUD = 9
H264_VCL_NAL_TYPES = frozenset({1, 5})

H265_NAL_VPS = 32
H265_NAL_SPS = 33
H265_NAL_PPS = 34


@dataclass
class CodecParameters:
    """Codec parameters of one elementary stream

    Attributes:
        kind: Audio or video
        codec: Codec of the stream
        sample_rate: Audio sample rate in Hz (0 for video)
        channels: Audio channel count (0 for video)
        extradata: Global header: Annex B or avcC/hvcC parameter sets for
            video, AudioSpecificConfig for AAC
        payload_type: RTP payload type to use instead of the computed one
    """

    kind: MediaKind
    codec: Codec
    sample_rate: int = 0
    channels: int = 0
    extradata: bytes = b""
    payload_type: Optional[int] = None


@dataclass
class Packet:
    """One encoded frame

    ``timestamp`` is expressed in ``time_base`` units, which is the track's
    RTP clock (1 / clock rate).
    """

    stream_index: int
    timestamp: int
    data: bytes
    time_base: Optional[Fraction] = None


def _find_start_code(data: bytes, offset: int) -> tuple:
    """Return (position, length) of the next 3 or 4 byte start code, or (-1, 0)"""
    pos = data.find(b"\x00\x00\x01", offset)
    if pos < 0:
        return -1, 0
    if pos > offset and data[pos - 1] == 0:
        return pos - 1, 4
    return pos, 3


def iter_nal_units(data: bytes) -> Iterator[bytes]:
    """Yield the NAL units of an Annex B byte stream without their start codes"""
    pos, length = _find_start_code(data, 0)
    while pos >= 0:
        nal_start = pos + length
        next_pos, next_length = _find_start_code(data, nal_start)
        end = next_pos if next_pos >= 0 else len(data)
        nal = data[nal_start:end]
        if nal:
            yield nal
        pos, length = next_pos, next_length


def is_annexb(data: bytes) -> bool:
    return data.startswith(b"\x00\x00\x01") or data.startswith(START_CODE)


def to_annexb(nal_units: List[bytes]) -> bytes:
    return b"".join(START_CODE + nal for nal in nal_units)


def h264_nal_type(nal: bytes) -> int:
    return nal[0] & 0x1F


def h265_nal_type(nal: bytes) -> int:
    return (nal[0] >> 1) & 0x3F


def _read_length_prefixed(data: bytes, offset: int) -> tuple:
    if offset + 2 > len(data):
        raise ValueError("Truncated decoder configuration record")
    size = int.from_bytes(data[offset : offset + 2], "big")
    end = offset + 2 + size
    if end > len(data):
        raise ValueError("Truncated decoder configuration record")
    return data[offset + 2 : end], end


def _parse_avcc(extradata: bytes) -> Dict[str, List[bytes]]:
    # ISO/IEC 14496-15 AVCDecoderConfigurationRecord
    if len(extradata) < 7:
        raise ValueError("avcC record too short")
    result: Dict[str, List[bytes]] = {"sps": [], "pps": []}
    offset = 6
    for _ in range(extradata[5] & 0x1F):
        nal, offset = _read_length_prefixed(extradata, offset)
        result["sps"].append(nal)
    if offset >= len(extradata):
        raise ValueError("avcC record has no PPS count")
    count = extradata[offset]
    offset += 1
    for _ in range(count):
        nal, offset = _read_length_prefixed(extradata, offset)
        result["pps"].append(nal)
    return result


def _parse_hvcc(extradata: bytes) -> Dict[str, List[bytes]]:
    # ISO/IEC 14496-15 HEVCDecoderConfigurationRecord
    if len(extradata) < 23:
        raise ValueError("hvcC record too short")
    names = {H265_NAL_VPS: "vps", H265_NAL_SPS: "sps", H265_NAL_PPS: "pps"}
    result: Dict[str, List[bytes]] = {"vps": [], "sps": [], "pps": []}
    offset = 23
    for _ in range(extradata[22]):
        if offset + 3 > len(extradata):
            raise ValueError("Truncated hvcC array")
        nal_type = extradata[offset] & 0x3F
        count = int.from_bytes(extradata[offset + 1 : offset + 3], "big")
        offset += 3
        for _ in range(count):
            nal, offset = _read_length_prefixed(extradata, offset)
            if nal_type in names:
                result[names[nal_type]].append(nal)
    return result


def parameter_sets(codec: Codec, extradata: bytes) -> Dict[str, List[bytes]]:
    """Extract SPS/PPS (and VPS for H.265) from Annex B, avcC or hvcC extradata

    Returns:
        Mapping of "vps"/"sps"/"pps" to NAL units without start codes, empty
        for other codecs or empty extradata
    """
    if not extradata or codec not in (Codec.H264, Codec.HEVC):
        return {}

    if not is_annexb(extradata):
        if codec is Codec.H264:
            return _parse_avcc(extradata)
        return _parse_hvcc(extradata)

    if codec is Codec.H264:
        names = {H264_NAL_SPS: "sps", H264_NAL_PPS: "pps"}
        result: Dict[str, List[bytes]] = {"sps": [], "pps": []}
        nal_type = h264_nal_type
    else:
        names = {H265_NAL_VPS: "vps", H265_NAL_SPS: "sps", H265_NAL_PPS: "pps"}
        result = {"vps": [], "sps": [], "pps": []}
        nal_type = h265_nal_type
    for nal in iter_nal_units(extradata):
        name = names.get(nal_type(nal))
        if name:
            result[name].append(nal)
    return result


def split_access_units(data: bytes) -> Iterator[bytes]:
    """Split an H.264 Annex B byte stream into access units

    A new access unit starts at an access unit delimiter, at parameter sets or
    SEI following a picture, or at the first slice of a new picture.
    """
    current: List[bytes] = []
    has_picture = False
    for nal in iter_nal_units(data):
        nal_type = h264_nal_type(nal)
        is_vcl = nal_type in H264_VCL_NAL_TYPES
        # first_mb_in_slice == 0 is coded as a single 1 bit
        first_slice = is_vcl and len(nal) > 1 and bool(nal[1] & 0x80)
        starts_new = nal_type == H264_NAL_AUD or (
            has_picture
            and (first_slice or nal_type in (H264_NAL_SEI, H264_NAL_SPS, H264_NAL_PPS))
        )
        if starts_new and current:
            yield to_annexb(current)
            current = []
            has_picture = False
        current.append(nal)
        has_picture = has_picture or is_vcl
    if current:
        yield to_annexb(current)
