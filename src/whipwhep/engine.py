"""Transport engine surface and its libdatachannel implementation

The orchestration layer only talks to the engine through ``TransportEngine``.
Failures are reported as ``EngineError`` and translated by the caller.
"""

import logging
import random
import time
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Any, Callable, List, Optional

from libdatachannel import (
    AACRtpDepacketizer,
    AACRtpPacketizer,
    AV1RtpPacketizer,
    Configuration,
    Description,
    H264RtpDepacketizer,
    H264RtpPacketizer,
    H265RtpDepacketizer,
    H265RtpPacketizer,
    IceServer,
    NalUnit,
    OpusRtpDepacketizer,
    OpusRtpPacketizer,
    PCMARtpDepacketizer,
    PCMARtpPacketizer,
    PCMURtpDepacketizer,
    PCMURtpPacketizer,
    PeerConnection,
    RtcpNackResponder,
    RtcpReceivingSession,
    RtcpSrReporter,
    RtpDepacketizer,
    RtpPacketizationConfig,
    Track,
)

from .codecs import CODECS, Codec, MediaKind
from .state import ConnectionState

logger = logging.getLogger(__name__)

# RTP パケットの最大ペイロードサイズ
MAX_FRAGMENT_SIZE = 1200

# ICE gathering の完了を確認する間隔（秒）
GATHERING_POLL_INTERVAL = 0.001


class EngineError(RuntimeError):
    """Raised by a transport engine when it refuses an operation"""


class TrackDirection(Enum):
    SEND_ONLY = "sendonly"
    RECV_ONLY = "recvonly"


@dataclass
class TrackInit:
    """Everything the engine needs to create a track"""

    kind: MediaKind
    codec: Codec
    direction: TrackDirection
    payload_type: int
    ssrc: int
    mid: str
    name: str
    msid: str
    track_id: str
    profile: Optional[str] = None


@dataclass
class PacketizerInit:
    ssrc: int
    cname: str
    payload_type: int
    clock_rate: int


FrameCallback = Callable[[bytes, int], None]
StateCallback = Callable[[ConnectionState], None]


class TransportEngine:
    """Capabilities the session layer needs from a WebRTC stack"""

    def create_peer_connection(self, ice_servers: List[str], on_state_change: StateCallback) -> Any:
        raise NotImplementedError

    def delete_peer_connection(self, pc: Any) -> None:
        raise NotImplementedError

    def add_track(self, pc: Any, init: TrackInit) -> Any:
        raise NotImplementedError

    def delete_track(self, handle: Any) -> None:
        raise NotImplementedError

    def set_packetizer(self, handle: Any, codec: Codec, init: PacketizerInit) -> None:
        raise NotImplementedError

    def chain_rtcp_sr_reporter(self, handle: Any) -> None:
        raise NotImplementedError

    def chain_rtcp_nack_responder(self, handle: Any, max_stored_packets_count: int) -> None:
        raise NotImplementedError

    def set_depacketizer(self, handle: Any, codec: Codec, on_frame: FrameCallback) -> None:
        raise NotImplementedError

    def on_track_closed(self, handle: Any, callback: Callable[[], None]) -> None:
        raise NotImplementedError

    def set_local_description(self, pc: Any, sdp_type: str = "offer") -> None:
        raise NotImplementedError

    def local_description(self, pc: Any, timeout: timedelta) -> str:
        raise NotImplementedError

    def set_remote_description(self, pc: Any, sdp: str, sdp_type: str) -> None:
        raise NotImplementedError

    def track_description(self, handle: Any) -> str:
        raise NotImplementedError

    def set_rtp_timestamp(self, handle: Any, timestamp: int) -> None:
        raise NotImplementedError

    def send(self, handle: Any, data: bytes) -> None:
        raise NotImplementedError


class _TrackHandle:
    """libdatachannel の Track と、送信に必要な RTP 設定をまとめたもの"""

    def __init__(self, track: Track):
        self.track = track
        self.config: Optional[RtpPacketizationConfig] = None
        self.packetizer = None
        # MediaHandler は Python 側で参照を保持しておく
        self.handlers: list = []


_DESCRIPTION_TYPES = {
    "offer": Description.Type.Offer,
    "answer": Description.Type.Answer,
}

_DIRECTIONS = {
    TrackDirection.SEND_ONLY: Description.Direction.SendOnly,
    TrackDirection.RECV_ONLY: Description.Direction.RecvOnly,
}

_STATES = {
    PeerConnection.State.New: ConnectionState.NEW,
    PeerConnection.State.Connecting: ConnectionState.CONNECTING,
    PeerConnection.State.Connected: ConnectionState.CONNECTED,
    PeerConnection.State.Disconnected: ConnectionState.DISCONNECTED,
    PeerConnection.State.Failed: ConnectionState.FAILED,
    PeerConnection.State.Closed: ConnectionState.CLOSED,
}

_DEPACKETIZERS = {
    Codec.H264: H264RtpDepacketizer,
    Codec.HEVC: H265RtpDepacketizer,
    Codec.OPUS: OpusRtpDepacketizer,
    Codec.AAC: AACRtpDepacketizer,
    Codec.PCMU: PCMURtpDepacketizer,
    Codec.PCMA: PCMARtpDepacketizer,
}


_CODEC_ADDERS = {
    Codec.OPUS: "add_opus_codec",
    Codec.H264: "add_h264_codec",
    Codec.HEVC: "add_h265_codec",
    Codec.AV1: "add_av1_codec",
    Codec.VP9: "add_vp9_codec",
}


def _add_codec(media, init: TrackInit) -> None:
    adder = _CODEC_ADDERS.get(init.codec)
    if adder is None:
        # AAC / PCMU / PCMA はエンコーディング名を指定して追加する
        encoding_name = CODECS[init.codec].encoding_name
        media.add_audio_codec(init.payload_type, encoding_name, init.profile)
    elif init.profile is None:
        getattr(media, adder)(init.payload_type)
    else:
        getattr(media, adder)(init.payload_type, init.profile)


class LibDataChannelEngine(TransportEngine):
    """TransportEngine backed by libdatachannel-py"""

    def create_peer_connection(self, ice_servers: List[str], on_state_change: StateCallback) -> Any:
        config = Configuration()
        config.ice_servers = [IceServer(url) for url in ice_servers]
        try:
            pc = PeerConnection(config)
        except RuntimeError as e:
            raise EngineError(f"Failed to create PeerConnection: {e}") from e

        def on_pc_state_change(state: PeerConnection.State) -> None:
            logger.debug(f"PeerConnection state: {state}")
            on_state_change(_STATES.get(state, ConnectionState.FAILED))

        pc.on_state_change(on_pc_state_change)
        return pc

    def delete_peer_connection(self, pc: PeerConnection) -> None:
        try:
            pc.close()
        except RuntimeError as e:
            raise EngineError(f"Failed to close PeerConnection: {e}") from e

    def add_track(self, pc: PeerConnection, init: TrackInit) -> _TrackHandle:
        direction = _DIRECTIONS[init.direction]
        try:
            if init.kind is MediaKind.AUDIO:
                media = Description.Audio(init.mid, direction)
            else:
                media = Description.Video(init.mid, direction)
            _add_codec(media, init)
            media.add_ssrc(init.ssrc, init.name, init.msid, init.track_id)
            track = pc.add_track(media)
        except RuntimeError as e:
            raise EngineError(f"Failed to add {init.kind.value} track mid={init.mid}: {e}") from e
        if track is None:
            raise EngineError(f"PeerConnection refused {init.kind.value} track mid={init.mid}")
        return _TrackHandle(track)

    def delete_track(self, handle: _TrackHandle) -> None:
        handle.handlers.clear()
        handle.packetizer = None
        try:
            handle.track.close()
        except RuntimeError as e:
            raise EngineError(f"Failed to close track: {e}") from e

    def set_packetizer(self, handle: _TrackHandle, codec: Codec, init: PacketizerInit) -> None:
        config = RtpPacketizationConfig(
            ssrc=init.ssrc,
            cname=init.cname,
            payload_type=init.payload_type,
            clock_rate=init.clock_rate,
        )
        config.start_timestamp = random.randint(0, 0xFFFFFFFF)
        config.timestamp = config.start_timestamp
        config.sequence_number = random.randint(0, 0xFFFF)

        try:
            if codec is Codec.H264:
                packetizer = H264RtpPacketizer(
                    NalUnit.Separator.LongStartSequence, config, MAX_FRAGMENT_SIZE
                )
            elif codec is Codec.HEVC:
                packetizer = H265RtpPacketizer(
                    NalUnit.Separator.LongStartSequence, config, MAX_FRAGMENT_SIZE
                )
            elif codec is Codec.AV1:
                packetizer = AV1RtpPacketizer(
                    AV1RtpPacketizer.Packetization.TemporalUnit, config, MAX_FRAGMENT_SIZE
                )
            elif codec is Codec.OPUS:
                packetizer = OpusRtpPacketizer(config)
            elif codec is Codec.AAC:
                packetizer = AACRtpPacketizer(config)
            elif codec is Codec.PCMU:
                packetizer = PCMURtpPacketizer(config)
            elif codec is Codec.PCMA:
                packetizer = PCMARtpPacketizer(config)
            else:
                raise EngineError(f"No RTP packetizer for {codec.value}")
            handle.track.set_media_handler(packetizer)
        except RuntimeError as e:
            raise EngineError(f"Failed to set {codec.value} packetizer: {e}") from e

        handle.config = config
        handle.packetizer = packetizer

    def _chain(self, handle: _TrackHandle, handler) -> None:
        handle.track.chain_media_handler(handler)
        handle.handlers.append(handler)

    def chain_rtcp_sr_reporter(self, handle: _TrackHandle) -> None:
        if handle.config is None:
            raise EngineError("RTCP SR reporter needs a packetizer")
        try:
            self._chain(handle, RtcpSrReporter(handle.config))
        except RuntimeError as e:
            raise EngineError(f"Failed to chain RTCP SR reporter: {e}") from e

    def chain_rtcp_nack_responder(self, handle: _TrackHandle, max_stored_packets_count: int) -> None:
        try:
            self._chain(handle, RtcpNackResponder(max_stored_packets_count))
        except RuntimeError as e:
            raise EngineError(f"Failed to chain RTCP NACK responder: {e}") from e

    def set_depacketizer(self, handle: _TrackHandle, codec: Codec, on_frame: FrameCallback) -> None:
        # AV1 / VP9 は汎用の RtpDepacketizer でペイロードだけ取り出す
        depacketizer = _DEPACKETIZERS.get(codec, RtpDepacketizer)()

        def on_track_frame(data, frame_info) -> None:
            on_frame(bytes(data), frame_info.timestamp)

        rtcp_session = RtcpReceivingSession()
        try:
            handle.track.on_frame(on_track_frame)
            handle.track.set_media_handler(rtcp_session)
            handle.handlers.append(rtcp_session)
            self._chain(handle, depacketizer)
        except RuntimeError as e:
            raise EngineError(f"Failed to set {codec.value} depacketizer: {e}") from e

    def on_track_closed(self, handle: _TrackHandle, callback: Callable[[], None]) -> None:
        handle.track.on_closed(callback)

    def set_local_description(self, pc: PeerConnection, sdp_type: str = "offer") -> None:
        try:
            if sdp_type == "offer":
                pc.set_local_description()
            else:
                pc.set_local_description(_DESCRIPTION_TYPES[sdp_type])
        except RuntimeError as e:
            raise EngineError(f"Failed to set local description: {e}") from e

    def local_description(self, pc: PeerConnection, timeout: timedelta) -> str:
        deadline = time.monotonic() + timeout.total_seconds()
        while pc.gathering_state() != PeerConnection.GatheringState.Complete:
            if time.monotonic() > deadline:
                logger.warning("ICE gathering did not complete, using the candidates gathered so far")
                break
            time.sleep(GATHERING_POLL_INTERVAL)

        description = pc.local_description()
        if not description:
            raise EngineError("Failed to get local description")
        return str(description)

    def set_remote_description(self, pc: PeerConnection, sdp: str, sdp_type: str) -> None:
        try:
            pc.set_remote_description(Description(sdp, _DESCRIPTION_TYPES[sdp_type]))
        except (RuntimeError, ValueError) as e:
            raise EngineError(f"Failed to set remote description: {e}") from e

    def track_description(self, handle: _TrackHandle) -> str:
        try:
            return str(handle.track.description())
        except RuntimeError as e:
            raise EngineError(f"Failed to get track description: {e}") from e

    def set_rtp_timestamp(self, handle: _TrackHandle, timestamp: int) -> None:
        if handle.config is None:
            raise EngineError("Track has no RTP packetizer")
        handle.config.timestamp = (handle.config.start_timestamp + timestamp) & 0xFFFFFFFF

    def send(self, handle: _TrackHandle, data: bytes) -> None:
        if not handle.track.is_open():
            raise EngineError("Track is not open")
        try:
            handle.track.send(data)
        except RuntimeError as e:
            raise EngineError(f"Failed to send message: {e}") from e
