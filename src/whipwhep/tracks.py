"""Track configuration

One transport track per elementary stream, created in stream order. The
session's ``tracks`` list owns every committed track; any failure while
configuring releases the tracks created so far and closes the session.
"""

import logging
import random
import uuid
from dataclasses import dataclass, field
from fractions import Fraction
from typing import TYPE_CHECKING, Any, List, Optional, Sequence

from .codecs import (
    AUDIO_CHANNELS,
    AUDIO_SAMPLE_RATE,
    CODECS,
    SUBSCRIBE_AUDIO_PAYLOAD_TYPE,
    SUBSCRIBE_PROFILES,
    SUBSCRIBE_VIDEO_PAYLOAD_TYPE,
    Codec,
    Direction,
    MediaKind,
    is_supported,
    payload_type_for,
)
from .engine import EngineError, PacketizerInit, TrackDirection, TrackInit
from .errors import PacketizerAttachError, TrackCreationError, UnsupportedCodecError
from .log import handle_error
from .media import CodecParameters
from .sdp import MediaSection, codec_parameters, extract_fmtp, render_media

if TYPE_CHECKING:
    from .session import Session

logger = logging.getLogger(__name__)

# RTCP SDES CNAME of every track
CNAME = "whipwhep"


@dataclass
class Track:
    """One negotiated elementary stream and its transport handle"""

    index: int
    kind: MediaKind
    codec: Codec
    payload_type: int
    clock_rate: int
    channels: int
    ssrc: int
    mid: str
    msid: str
    track_id: str
    profile: Optional[str]
    direction: Direction
    handle: Any = field(default=None, repr=False)

    @property
    def time_base(self) -> Fraction:
        return Fraction(1, self.clock_rate)


def generate_media_stream_id() -> str:
    return str(uuid.uuid4())


def generate_ssrc(used: Sequence[int] = ()) -> int:
    """Return a random non-zero 32-bit SSRC not present in ``used``"""
    while True:
        ssrc = random.randint(1, 0xFFFFFFFF)
        if ssrc not in used:
            return ssrc


def check_codec(params: CodecParameters, direction: Direction) -> None:
    """Raise UnsupportedCodecError unless ``params`` can be carried in ``direction``"""
    info = CODECS.get(params.codec)
    if info is None or info.kind is not params.kind:
        raise UnsupportedCodecError(f"{params.codec} is not a {params.kind.value} codec")

    if params.kind is MediaKind.AUDIO:
        if not is_supported(params.codec, direction):
            raise UnsupportedCodecError(f"Unsupported audio codec: {params.codec.value}")
        if params.sample_rate != AUDIO_SAMPLE_RATE:
            raise UnsupportedCodecError(
                f"Unsupported audio sample rate: {params.sample_rate} Hz "
                f"(only {AUDIO_SAMPLE_RATE} Hz is supported)"
            )
        if params.channels != AUDIO_CHANNELS:
            raise UnsupportedCodecError(
                f"Unsupported audio channel count: {params.channels} (only stereo is supported)"
            )
        return

    if not is_supported(params.codec, direction):
        raise UnsupportedCodecError(
            f"Unsupported video codec for {direction.value}: {params.codec.value}"
        )


def _payload_type(index: int, params: CodecParameters, direction: Direction) -> int:
    if params.payload_type is not None:
        return params.payload_type
    if direction is Direction.SUBSCRIBE:
        if params.kind is MediaKind.VIDEO:
            return SUBSCRIBE_VIDEO_PAYLOAD_TYPE
        return SUBSCRIBE_AUDIO_PAYLOAD_TYPE
    return payload_type_for(params.codec, params.sample_rate, params.channels, index)


def configure_track(
    session: "Session",
    index: int,
    params: CodecParameters,
    direction: Direction,
    mid: Optional[str] = None,
    profile: Optional[str] = None,
) -> Track:
    """Create one track for the stream at ``index`` and append it to the session

    Args:
        session: Session that owns the track
        index: Pipeline stream index
        params: Codec parameters of the stream
        direction: PUBLISH creates a send-only track with an RTP packetizer,
            SUBSCRIBE a receive-only track
        mid: Media id, defaults to ``str(index)``
        profile: fmtp parameters, defaults to the ones derived from ``params``

    Returns:
        The committed track

    Raises:
        UnsupportedCodecError: Codec, sample rate or channel layout not supported
        TrackCreationError: The transport engine refused the track, or the
            local description was already built
        PacketizerAttachError: The RTP/RTCP chain could not be attached
    """
    if session.negotiated:
        raise TrackCreationError(
            f"Cannot add track #{index} after the local description was built"
        )
    check_codec(params, direction)

    info = CODECS[params.codec]
    payload_type = _payload_type(index, params, direction)
    if params.kind is MediaKind.AUDIO:
        clock_rate = params.sample_rate
        channels = params.channels
    else:
        clock_rate = info.clock_rate
        channels = 0

    if profile is None:
        if direction is Direction.PUBLISH:
            try:
                profile = extract_fmtp(render_media(params, payload_type))
            except UnsupportedCodecError:
                raise
            except ValueError as e:
                raise UnsupportedCodecError(
                    f"Malformed codec configuration of stream #{index}: {e}"
                ) from e
        else:
            profile = SUBSCRIBE_PROFILES.get(params.codec)

    ssrc = generate_ssrc([track.ssrc for track in session.tracks])
    msid = session.media_stream_id
    track = Track(
        index=index,
        kind=params.kind,
        codec=params.codec,
        payload_type=payload_type,
        clock_rate=clock_rate,
        channels=channels,
        ssrc=ssrc,
        mid=mid if mid is not None else str(index),
        msid=msid,
        track_id=f"{msid}-{params.kind.value}-{index}",
        profile=profile,
        direction=direction,
    )
    logger.debug(
        f"Track #{index}: {track.kind.value} {track.codec.value} "
        f"ssrc={ssrc} payload_type={payload_type} profile={profile}"
    )

    engine = session.engine
    init = TrackInit(
        kind=track.kind,
        codec=track.codec,
        direction=(
            TrackDirection.SEND_ONLY if direction is Direction.PUBLISH else TrackDirection.RECV_ONLY
        ),
        payload_type=payload_type,
        ssrc=ssrc,
        mid=track.mid,
        name=CNAME,
        msid=msid,
        track_id=track.track_id,
        profile=profile,
    )
    try:
        track.handle = engine.add_track(session.pc, init)
    except EngineError as e:
        raise TrackCreationError(f"Failed to create track #{index}: {e}") from e

    if direction is Direction.PUBLISH:
        try:
            engine.set_packetizer(
                track.handle,
                track.codec,
                PacketizerInit(
                    ssrc=ssrc, cname=CNAME, payload_type=payload_type, clock_rate=clock_rate
                ),
            )
            engine.chain_rtcp_sr_reporter(track.handle)
            engine.chain_rtcp_nack_responder(
                track.handle, session.options.max_stored_packets_count
            )
        except EngineError as e:
            try:
                engine.delete_track(track.handle)
            except EngineError as delete_error:
                handle_error(f"deleting track #{index}", delete_error)
            raise PacketizerAttachError(
                f"Failed to attach RTP/RTCP handlers to track #{index}: {e}"
            ) from e

    session.tracks.append(track)
    return track


def _rollback(session: "Session", error: Exception) -> None:
    logger.error(f"Track configuration failed: {error}")
    session.close()


def configure_publish_tracks(
    session: "Session", streams: Sequence[CodecParameters]
) -> List[Track]:
    """Create one send-only track per stream, in stream order"""
    try:
        for index, params in enumerate(streams):
            configure_track(session, index, params, Direction.PUBLISH)
    except Exception as e:
        _rollback(session, e)
        raise
    logger.info(f"Configured {len(session.tracks)} publish track(s)")
    return session.tracks


def configure_subscribe_tracks(
    session: "Session",
    video_codec: Codec = Codec.H264,
    audio_codec: Codec = Codec.OPUS,
) -> List[Track]:
    """Create the fixed receive-only video (index 0) and audio (index 1) tracks"""
    streams = [
        CodecParameters(kind=MediaKind.VIDEO, codec=video_codec),
        CodecParameters(
            kind=MediaKind.AUDIO,
            codec=audio_codec,
            sample_rate=AUDIO_SAMPLE_RATE,
            channels=AUDIO_CHANNELS,
        ),
    ]
    try:
        for index, params in enumerate(streams):
            configure_track(session, index, params, Direction.SUBSCRIBE)
    except Exception as e:
        _rollback(session, e)
        raise
    logger.info(f"Configured subscribe tracks: video={video_codec.value} audio={audio_codec.value}")
    return session.tracks


def _offer_parameters(section: MediaSection) -> CodecParameters:
    # 最初に受信できるペイロードタイプを使う
    for payload_type, _, _ in section.codec_formats():
        params = codec_parameters(section, payload_type)
        try:
            check_codec(params, Direction.SUBSCRIBE)
        except UnsupportedCodecError as e:
            logger.debug(f"Skipping payload type {payload_type} of mid={section.mid}: {e}")
            continue
        return params
    raise UnsupportedCodecError(f"No supported codec in {section.kind} section mid={section.mid}")


def configure_tracks_from_offer(
    session: "Session", sections: Sequence[MediaSection]
) -> List[Track]:
    """Create one receive-only track per audio/video section of a remote offer

    The offered direction is ignored. Each track keeps the section's mid and
    the first payload type this side can receive.
    """
    try:
        index = 0
        for section in sections:
            if section.media_kind is None:
                logger.debug(f"Ignoring {section.kind} section mid={section.mid}")
                continue
            params = _offer_parameters(section)
            configure_track(
                session,
                index,
                params,
                Direction.SUBSCRIBE,
                mid=section.mid if section.mid is not None else str(index),
                profile=section.fmtps.get(params.payload_type),
            )
            index += 1
    except Exception as e:
        _rollback(session, e)
        raise
    logger.info(f"Configured {len(session.tracks)} track(s) from the remote offer")
    return session.tracks
