import asyncio
import threading
from dataclasses import dataclass, field
from queue import Queue
from typing import List, Mapping, Optional

import pytest
from aiohttp import web

from whipwhep.codecs import CODECS, MediaKind
from whipwhep.engine import EngineError, TrackDirection, TransportEngine
from whipwhep.options import WebRTCOptions
from whipwhep.sdp import parse_media_sections
from whipwhep.state import ConnectionState

SDP_HEADER = "v=0\r\no=- 0 0 IN IP4 127.0.0.1\r\ns=-\r\nt=0 0\r\n"

# WHEP サーバーが返す offer（映像 H.264 と音声 Opus）
SERVER_OFFER = (
    SDP_HEADER
    + "m=video 9 UDP/TLS/RTP/SAVPF 102 96\r\n"
    + "a=mid:v0\r\n"
    + "a=sendonly\r\n"
    + "a=rtpmap:102 H264/90000\r\n"
    + "a=fmtp:102 profile-level-id=42e01f;packetization-mode=1;level-asymmetry-allowed=1\r\n"
    + "a=rtpmap:96 VP8/90000\r\n"
    + "m=audio 9 UDP/TLS/RTP/SAVPF 111\r\n"
    + "a=mid:a0\r\n"
    + "a=sendonly\r\n"
    + "a=rtpmap:111 opus/48000/2\r\n"
    + "a=fmtp:111 minptime=10;useinbandfec=1\r\n"
)


def answer_for(offer: str) -> str:
    """offer と同じ数の media section を持つ answer を作る"""
    lines = [SDP_HEADER]
    for section in parse_media_sections(offer):
        formats = " ".join(str(pt) for pt in section.formats)
        lines.append(f"m={section.kind} 9 UDP/TLS/RTP/SAVPF {formats}\r\n")
        if section.mid is not None:
            lines.append(f"a=mid:{section.mid}\r\n")
        lines.append("a=recvonly\r\n")
        for rtpmap in section.rtpmaps.values():
            lines.append(
                f"a=rtpmap:{rtpmap.payload_type} {rtpmap.encoding_name}/{rtpmap.clock_rate}\r\n"
            )
    return "".join(lines)


@dataclass
class RecordedRequest:
    method: str
    path: str
    headers: Mapping[str, str]
    body: str


@dataclass
class SignalingServer:
    """WHIP / WHEP サーバーの代わり

    属性を書き換えるとレスポンスを変えられる。
    """

    url: str = ""
    status: int = 201
    answer: Optional[str] = None
    offer: str = SERVER_OFFER
    location: Optional[str] = "/resource/123"
    body: Optional[bytes] = None
    delay: float = 0.0
    delete_status: int = 200
    delete_body: bytes = b""
    requests: List[RecordedRequest] = field(default_factory=list)

    @property
    def base_url(self) -> str:
        return self.url.rsplit("/", 1)[0]

    def requests_by(self, method: str) -> List[RecordedRequest]:
        return [r for r in self.requests if r.method == method]

    async def handle(self, request: web.Request) -> web.StreamResponse:
        body = await request.text()
        self.requests.append(
            RecordedRequest(request.method, request.path, request.headers.copy(), body)
        )

        if request.path == "/redirect":
            raise web.HTTPTemporaryRedirect("/whip")

        if self.delay:
            await asyncio.sleep(self.delay)

        if request.method == "DELETE":
            return web.Response(status=self.delete_status, body=self.delete_body)

        headers = {}
        if self.location is not None:
            headers["Location"] = self.location

        if not 200 <= self.status < 300:
            return web.Response(status=self.status, text="error", headers=headers)

        if self.body is not None:
            return web.Response(status=self.status, body=self.body, headers=headers)

        if body:
            sdp = self.answer if self.answer is not None else answer_for(body)
        else:
            sdp = self.offer
        return web.Response(
            status=self.status, text=sdp, content_type="application/sdp", headers=headers
        )


@pytest.fixture
def signaling_server():
    """WHIP / WHEP シグナリングサーバーのフィクスチャ"""
    server = SignalingServer()

    app = web.Application()
    app.router.add_route("*", "/{tail:.*}", server.handle)

    # ポート番号を共有するためのキュー
    port_queue = Queue()
    runner = None
    loop = None

    def run_server():
        nonlocal runner, loop
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)

        async def start():
            nonlocal runner
            runner = web.AppRunner(app)
            await runner.setup()
            site = web.TCPSite(runner, "127.0.0.1", 0)
            await site.start()
            # 実際のポート番号を取得
            port = site._server.sockets[0].getsockname()[1]
            port_queue.put(port)

        loop.run_until_complete(start())
        loop.run_forever()

    # サーバーをバックグラウンドスレッドで起動
    thread = threading.Thread(target=run_server, daemon=True)
    thread.start()

    port = port_queue.get(timeout=5)
    server.url = f"http://127.0.0.1:{port}/whip"

    yield server

    # クリーンアップ
    if loop:
        loop.call_soon_threadsafe(loop.stop)
    thread.join(timeout=5)


class FakeTrack:
    def __init__(self, init):
        self.init = init
        self.packetizer = None
        self.packetizer_init = None
        self.sr_reporter = False
        self.nack_max_stored = None
        self.depacketizer = None
        self.on_frame = None
        self.on_closed = None
        self.timestamp = None
        self.sent: List[bytes] = []
        self.deleted = False

    def media_section(self) -> str:
        init = self.init
        info = CODECS[init.codec]
        direction = "sendonly" if init.direction is TrackDirection.SEND_ONLY else "recvonly"
        if init.kind is MediaKind.AUDIO:
            rtpmap = f"{info.encoding_name}/{info.clock_rate}/{info.channels}"
        else:
            rtpmap = f"{info.encoding_name}/{info.clock_rate}"
        lines = [
            f"m={init.kind.value} 9 UDP/TLS/RTP/SAVPF {init.payload_type}",
            f"a=mid:{init.mid}",
            f"a={direction}",
            f"a=rtpmap:{init.payload_type} {rtpmap}",
        ]
        if init.profile:
            lines.append(f"a=fmtp:{init.payload_type} {init.profile}")
        lines.append(f"a=ssrc:{init.ssrc} cname:{init.name}")
        lines.append(f"a=ssrc:{init.ssrc} msid:{init.msid} {init.track_id}")
        return "\r\n".join(lines) + "\r\n"


class FakeEngine(TransportEngine):
    """呼び出しを記録する TransportEngine

    ``fail`` にメソッド名を入れるとそのメソッドが EngineError を送出する。
    """

    def __init__(self):
        self.fail = set()
        self.fail_add_track_at: Optional[int] = None
        self.ice_servers = None
        self.on_state_change = None
        self.pcs: List[object] = []
        self.deleted_pcs: List[object] = []
        self.tracks: List[FakeTrack] = []
        self.local_types: List[str] = []
        self.remote: List[tuple] = []
        self.send_calls = 0
        # set_remote_description の後に通知する状態（None なら通知しない）
        self.connect_state: Optional[ConnectionState] = ConnectionState.CONNECTED
        self.connect_delay = 0.05

    def _check(self, name: str) -> None:
        if name in self.fail:
            raise EngineError(f"{name} failed")

    def fire_state(self, state: ConnectionState) -> None:
        self.on_state_change(state)

    @property
    def live_tracks(self) -> List[FakeTrack]:
        return [t for t in self.tracks if not t.deleted]

    def create_peer_connection(self, ice_servers, on_state_change):
        self._check("create_peer_connection")
        self.ice_servers = ice_servers
        self.on_state_change = on_state_change
        pc = object()
        self.pcs.append(pc)
        return pc

    def delete_peer_connection(self, pc):
        self.deleted_pcs.append(pc)
        self._check("delete_peer_connection")

    def add_track(self, pc, init):
        self._check("add_track")
        if self.fail_add_track_at is not None and len(self.tracks) == self.fail_add_track_at:
            raise EngineError("too many tracks")
        track = FakeTrack(init)
        self.tracks.append(track)
        return track

    def delete_track(self, handle):
        handle.deleted = True
        self._check("delete_track")

    def set_packetizer(self, handle, codec, init):
        self._check("set_packetizer")
        handle.packetizer = codec
        handle.packetizer_init = init

    def chain_rtcp_sr_reporter(self, handle):
        self._check("chain_rtcp_sr_reporter")
        handle.sr_reporter = True

    def chain_rtcp_nack_responder(self, handle, max_stored_packets_count):
        self._check("chain_rtcp_nack_responder")
        handle.nack_max_stored = max_stored_packets_count

    def set_depacketizer(self, handle, codec, on_frame):
        self._check("set_depacketizer")
        handle.depacketizer = codec
        handle.on_frame = on_frame

    def on_track_closed(self, handle, callback):
        handle.on_closed = callback

    def set_local_description(self, pc, sdp_type="offer"):
        self._check("set_local_description")
        self.local_types.append(sdp_type)

    def local_description(self, pc, timeout):
        self._check("local_description")
        return SDP_HEADER + "".join(t.media_section() for t in self.live_tracks)

    def set_remote_description(self, pc, sdp, sdp_type):
        self._check("set_remote_description")
        self.remote.append((sdp_type, sdp))
        if self.connect_state is not None:
            self.fire_state(ConnectionState.CONNECTING)
            timer = threading.Timer(self.connect_delay, self.fire_state, [self.connect_state])
            timer.daemon = True
            timer.start()

    def track_description(self, handle):
        self._check("track_description")
        return handle.media_section()

    def set_rtp_timestamp(self, handle, timestamp):
        handle.timestamp = timestamp

    def send(self, handle, data):
        self.send_calls += 1
        self._check("send")
        handle.sent.append(data)


@pytest.fixture
def fake_engine():
    return FakeEngine()


@pytest.fixture
def options():
    return WebRTCOptions(connection_timeout="1s", rw_timeout="1s")
