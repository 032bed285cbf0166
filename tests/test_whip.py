import pytest

from whipwhep import (
    ConnectionFailedError,
    ConnectionTimeoutError,
    EndOfStreamError,
    SignalingError,
    UnsupportedCodecError,
    WebRTCOptions,
    WHIPClient,
)
from whipwhep.codecs import Codec, MediaKind
from whipwhep.media import CodecParameters
from whipwhep.sdp import parse_media_sections
from whipwhep.state import ConnectionState

OPUS = CodecParameters(kind=MediaKind.AUDIO, codec=Codec.OPUS, sample_rate=48000, channels=2)
H264 = CodecParameters(kind=MediaKind.VIDEO, codec=Codec.H264)


def test_connect(signaling_server, fake_engine, options):
    signaling_server.status = 200
    client = WHIPClient(signaling_server.url, [OPUS, H264], options, fake_engine)
    client.connect()

    assert client.state is ConnectionState.CONNECTED
    assert client.resource_location == "/resource/123"
    audio, video = client.tracks
    assert audio.ssrc != video.ssrc
    assert (audio.kind, video.kind) == (MediaKind.AUDIO, MediaKind.VIDEO)

    (post,) = signaling_server.requests_by("POST")
    sections = parse_media_sections(post.body)
    assert [s.kind for s in sections] == ["audio", "video"]
    assert sections[0].ssrcs == [audio.ssrc]
    assert sections[1].ssrcs == [video.ssrc]

    client.disconnect()
    (delete,) = signaling_server.requests_by("DELETE")
    assert delete.path == "/resource/123"
    assert fake_engine.live_tracks == []
    assert fake_engine.deleted_pcs == fake_engine.pcs


def test_context_manager(signaling_server, fake_engine, options):
    with WHIPClient(signaling_server.url, [H264], options, fake_engine) as client:
        client.send_packet(0, 0, b"\x00\x00\x00\x01\x65")
        client.send_packet(0, 3000, b"\x00\x00\x00\x01\x41")
    assert fake_engine.tracks[0].sent == [b"\x00\x00\x00\x01\x65", b"\x00\x00\x00\x01\x41"]
    assert client.state is ConnectionState.CLOSED
    assert len(signaling_server.requests_by("DELETE")) == 1


def test_close_is_idempotent(signaling_server, fake_engine, options):
    client = WHIPClient(signaling_server.url, [OPUS, H264], options, fake_engine)
    client.connect()
    client.close()
    client.close()
    client.disconnect()
    assert len(signaling_server.requests_by("DELETE")) == 1
    assert len(fake_engine.deleted_pcs) == 1


def test_close_before_connect(fake_engine):
    client = WHIPClient("http://127.0.0.1:9/whip", [H264], engine=fake_engine)
    client.close()
    assert client.state is ConnectionState.NEW
    assert client.tracks == []


def test_send_before_connect(fake_engine):
    client = WHIPClient("http://127.0.0.1:9/whip", [H264], engine=fake_engine)
    with pytest.raises(RuntimeError):
        client.send_packet(0, 0, b"frame")


def test_send_after_disconnect(signaling_server, fake_engine, options):
    client = WHIPClient(signaling_server.url, [H264], options, fake_engine)
    client.connect()
    client.disconnect()
    with pytest.raises(EndOfStreamError):
        client.send_packet(0, 0, b"frame")


def test_unsupported_sample_rate(signaling_server, fake_engine, options):
    audio = CodecParameters(kind=MediaKind.AUDIO, codec=Codec.OPUS, sample_rate=44100, channels=2)
    client = WHIPClient(signaling_server.url, [H264, audio], options, fake_engine)
    with pytest.raises(UnsupportedCodecError):
        client.connect()

    # HTTP リクエストは送られない
    assert signaling_server.requests == []
    assert client.tracks == []
    assert all(track.deleted for track in fake_engine.tracks)
    assert client.state is ConnectionState.CLOSED


def test_connection_failed(signaling_server, fake_engine, options):
    fake_engine.connect_state = ConnectionState.FAILED
    client = WHIPClient(signaling_server.url, [OPUS, H264], options, fake_engine)
    with pytest.raises(ConnectionFailedError):
        client.connect()

    assert client.state is ConnectionState.CLOSED
    assert fake_engine.live_tracks == []
    # リソースは作られているので DELETE する
    (delete,) = signaling_server.requests_by("DELETE")
    assert delete.path == "/resource/123"


def test_connection_timeout(signaling_server, fake_engine):
    fake_engine.connect_state = None
    options = WebRTCOptions(connection_timeout="200ms", rw_timeout="1s")
    client = WHIPClient(signaling_server.url, [H264], options, fake_engine)
    with pytest.raises(ConnectionTimeoutError):
        client.connect()
    assert client.state is ConnectionState.CLOSED
    assert len(signaling_server.requests_by("DELETE")) == 1


def test_signaling_failure(signaling_server, fake_engine, options):
    signaling_server.status = 403
    client = WHIPClient(signaling_server.url, [OPUS, H264], options, fake_engine)
    with pytest.raises(SignalingError):
        client.connect()

    assert client.state is ConnectionState.CLOSED
    assert fake_engine.live_tracks == []
    assert signaling_server.requests_by("DELETE") == []


def test_ice_servers_are_passed(signaling_server, fake_engine):
    options = WebRTCOptions(ice_servers=["stun:stun.example.com:3478"])
    client = WHIPClient(signaling_server.url, [H264], options, fake_engine)
    client.connect()
    assert fake_engine.ice_servers == ["stun:stun.example.com:3478"]
    client.close()


def test_connection_failed_with_malformed_location(signaling_server, fake_engine, options):
    signaling_server.location = "http://[bad"
    fake_engine.connect_state = ConnectionState.FAILED
    client = WHIPClient(signaling_server.url, [OPUS, H264], options, fake_engine)
    with pytest.raises(ConnectionFailedError):
        client.connect()

    assert client.state is ConnectionState.CLOSED
    assert fake_engine.live_tracks == []
    assert fake_engine.deleted_pcs == fake_engine.pcs
    assert signaling_server.requests_by("DELETE") == []
