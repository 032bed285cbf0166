"""Packet pump between the media pipeline and the session tracks"""

import logging
import queue
import time
from typing import TYPE_CHECKING, List, Optional, Tuple

from .engine import EngineError
from .errors import (
    EndOfStreamError,
    InvalidTimestampError,
    PacketizerAttachError,
    PacketTimeoutError,
    TrackCreationError,
    TransportSendError,
    UnknownStreamError,
    WebRTCError,
)
from .media import CodecParameters, Packet
from .sdp import codec_parameters, parse_media_section
from .state import TERMINAL_STATES
from .tracks import Track

if TYPE_CHECKING:
    from .session import Session

logger = logging.getLogger(__name__)

# 受信キューを確認する間隔（秒）
RECEIVE_POLL_INTERVAL = 0.05

# パケット数のログ出力間隔
LOG_INTERVAL = 300


def send_packet(
    session: "Session", stream_index: int, timestamp: Optional[int], payload: bytes
) -> None:
    """Send one encoded frame on the track of ``stream_index``

    Args:
        session: Connected session
        stream_index: Pipeline stream index of the frame
        timestamp: Presentation time in the track's clock units
        payload: Encoded frame

    Raises:
        InvalidTimestampError: Missing or negative timestamp, nothing is sent
        EndOfStreamError: The session is disconnected, failed or closed
        UnknownStreamError: No track for ``stream_index``
        TransportSendError: The transport refused the frame
    """
    if timestamp is None or timestamp < 0:
        raise InvalidTimestampError(f"Invalid timestamp {timestamp} on stream #{stream_index}")

    state = session.state
    if state in TERMINAL_STATES:
        raise EndOfStreamError(f"Session is {state.name}")

    if not 0 <= stream_index < len(session.tracks):
        raise UnknownStreamError(f"No track for stream #{stream_index}")
    track = session.tracks[stream_index]

    try:
        session.engine.set_rtp_timestamp(track.handle, timestamp)
        session.engine.send(track.handle, payload)
    except EngineError as e:
        raise TransportSendError(f"Failed to send packet on stream #{stream_index}: {e}") from e


class TrackDemuxer:
    """Elementary demuxer of one receive-only track

    Frames from the engine thread are pushed into the shared queue tagged
    with the track index. ``None`` in place of a packet marks the end of the
    track.
    """

    def __init__(self, track: Track, parameters: CodecParameters, output: queue.Queue):
        self.track = track
        self.parameters = parameters
        self.output = output
        self.frame_count = 0

    @classmethod
    def bootstrap(cls, session: "Session", track: Track, output: queue.Queue) -> "TrackDemuxer":
        """Build the demuxer from the track's SDP fragment and start receiving"""
        engine = session.engine
        try:
            fragment = engine.track_description(track.handle)
            logger.debug(f"Track #{track.index} description:\n{fragment}")
            parameters = codec_parameters(parse_media_section(fragment))
        except WebRTCError:
            raise
        except (EngineError, ValueError) as e:
            raise TrackCreationError(f"Failed to read track #{track.index} description: {e}") from e

        demuxer = cls(track, parameters, output)
        try:
            engine.set_depacketizer(track.handle, parameters.codec, demuxer.on_frame)
            engine.on_track_closed(track.handle, demuxer.on_closed)
        except EngineError as e:
            raise PacketizerAttachError(
                f"Failed to attach depacketizer to track #{track.index}: {e}"
            ) from e
        return demuxer

    def on_frame(self, data: bytes, timestamp: int) -> None:
        # 単一トラックの demuxer なのでローカルの stream_index は常に 0
        packet = Packet(
            stream_index=0, timestamp=timestamp, data=data, time_base=self.track.time_base
        )
        self.output.put((self.track.index, packet))
        self.frame_count += 1
        if self.frame_count % LOG_INTERVAL == 0:
            logger.debug(f"Track #{self.track.index}: received {self.frame_count} frames")

    def on_closed(self) -> None:
        logger.info(f"Track #{self.track.index} closed")
        self.output.put((self.track.index, None))


class PacketReceiver:
    """Merges the frames of every demuxer of a session into one packet stream"""

    def __init__(self, session: "Session"):
        self.session = session
        self.queue: "queue.Queue[Tuple[int, Optional[Packet]]]" = queue.Queue()
        self.demuxers: List[TrackDemuxer] = []
        self._open_tracks = set()

    def bootstrap(self) -> List[CodecParameters]:
        """Create one demuxer per session track

        Returns:
            Codec parameters of each track, in track order
        """
        for track in self.session.tracks:
            demuxer = TrackDemuxer.bootstrap(self.session, track, self.queue)
            self.demuxers.append(demuxer)
            self._open_tracks.add(track.index)
        return [demuxer.parameters for demuxer in self.demuxers]

    def _get(self, timeout: float) -> Optional[Packet]:
        try:
            track_index, packet = self.queue.get(timeout=timeout)
        except queue.Empty:
            return None
        if packet is None:
            self._open_tracks.discard(track_index)
            return None
        packet.stream_index = track_index
        return packet

    def receive_packet(self) -> Packet:
        """Return the next packet of any track

        Raises:
            EndOfStreamError: Every track has closed, or the session is in a
                terminal state, and nothing is left in the queue
            PacketTimeoutError: Nothing arrived within rw_timeout
        """
        deadline = time.monotonic() + self.session.options.rw_timeout.total_seconds()
        while True:
            if not self._open_tracks or self.session.state in TERMINAL_STATES:
                # 残っているパケットは先に返す
                packet = self._get(timeout=0)
                if packet is not None:
                    return packet
                if self.queue.empty():
                    if self._open_tracks:
                        raise EndOfStreamError(f"Session is {self.session.state.name}")
                    raise EndOfStreamError("All tracks are closed")
                continue

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise PacketTimeoutError(
                    f"No packet within {self.session.options.rw_timeout.total_seconds()}s"
                )
            packet = self._get(timeout=min(remaining, RECEIVE_POLL_INTERVAL))
            if packet is not None:
                return packet
