from datetime import timedelta

import pytest

from whipwhep.codecs import Codec, MediaKind
from whipwhep.engine import (
    EngineError,
    LibDataChannelEngine,
    PacketizerInit,
    TrackDirection,
    TrackInit,
)
from whipwhep.sdp import parse_media_sections
from whipwhep.state import ConnectionState


@pytest.fixture
def engine():
    return LibDataChannelEngine()


@pytest.fixture
def pc(engine):
    states = []
    pc = engine.create_peer_connection([], states.append)
    yield pc
    engine.delete_peer_connection(pc)


def track_init(kind, codec, direction, payload_type, ssrc, mid, profile=None):
    return TrackInit(
        kind=kind,
        codec=codec,
        direction=direction,
        payload_type=payload_type,
        ssrc=ssrc,
        mid=mid,
        name="whipwhep",
        msid="stream",
        track_id=f"stream-{kind.value}-{mid}",
        profile=profile,
    )


def test_local_offer_has_publish_tracks(engine, pc):
    audio = engine.add_track(
        pc, track_init(MediaKind.AUDIO, Codec.OPUS, TrackDirection.SEND_ONLY, 96, 1111, "0")
    )
    video = engine.add_track(
        pc,
        track_init(
            MediaKind.VIDEO,
            Codec.H264,
            TrackDirection.SEND_ONLY,
            97,
            2222,
            "1",
            profile="packetization-mode=1",
        ),
    )
    engine.set_packetizer(audio, Codec.OPUS, PacketizerInit(1111, "whipwhep", 96, 48000))
    engine.set_packetizer(video, Codec.H264, PacketizerInit(2222, "whipwhep", 97, 90000))
    engine.chain_rtcp_sr_reporter(video)
    engine.chain_rtcp_nack_responder(video, 100)

    engine.set_local_description(pc, "offer")
    sdp = engine.local_description(pc, timedelta(seconds=2))

    sections = parse_media_sections(sdp)
    assert [s.kind for s in sections] == ["audio", "video"]
    assert [s.mid for s in sections] == ["0", "1"]
    assert all(s.direction == "sendonly" for s in sections)
    assert sections[0].rtpmaps[96].encoding_name.lower() == "opus"
    assert sections[1].rtpmaps[97].encoding_name == "H264"
    assert 1111 in sections[0].ssrcs
    assert 2222 in sections[1].ssrcs


def test_recvonly_track(engine, pc):
    # ハンドルを保持していないとトラックが解放されてしまう
    handle = engine.add_track(
        pc, track_init(MediaKind.VIDEO, Codec.H264, TrackDirection.RECV_ONLY, 96, 3333, "0")
    )
    engine.set_local_description(pc, "offer")
    sdp = engine.local_description(pc, timedelta(seconds=2))
    (section,) = parse_media_sections(sdp)
    assert section.direction == "recvonly"
    assert handle.track is not None


def test_rtp_timestamp_is_offset_and_wraps(engine, pc):
    handle = engine.add_track(
        pc, track_init(MediaKind.VIDEO, Codec.H264, TrackDirection.SEND_ONLY, 96, 4444, "0")
    )
    engine.set_packetizer(handle, Codec.H264, PacketizerInit(4444, "whipwhep", 96, 90000))
    start = handle.config.start_timestamp

    engine.set_rtp_timestamp(handle, 3000)
    assert handle.config.timestamp == (start + 3000) & 0xFFFFFFFF
    engine.set_rtp_timestamp(handle, 0x1_0000_0000)
    assert handle.config.timestamp == start


def test_rtp_timestamp_without_packetizer(engine, pc):
    handle = engine.add_track(
        pc, track_init(MediaKind.VIDEO, Codec.H264, TrackDirection.RECV_ONLY, 96, 5555, "0")
    )
    with pytest.raises(EngineError):
        engine.set_rtp_timestamp(handle, 0)
    with pytest.raises(EngineError):
        engine.chain_rtcp_sr_reporter(handle)


def test_send_before_connected(engine, pc):
    handle = engine.add_track(
        pc, track_init(MediaKind.AUDIO, Codec.OPUS, TrackDirection.SEND_ONLY, 96, 6666, "0")
    )
    engine.set_packetizer(handle, Codec.OPUS, PacketizerInit(6666, "whipwhep", 96, 48000))
    with pytest.raises(EngineError):
        engine.send(handle, b"\x00" * 10)


def test_state_callback_maps_states(engine):
    states = []
    pc = engine.create_peer_connection([], states.append)
    engine.delete_peer_connection(pc)
    assert all(isinstance(state, ConnectionState) for state in states)
