"""
WHIP (WebRTC-HTTP Ingestion Protocol) クライアント

メディアパイプラインから受け取ったエンコード済みフレームを、ストリームごとの
送信専用トラックで WHIP サーバーへ配信します。
"""

import logging
from typing import List, Optional, Sequence

from .codecs import Direction
from .engine import TransportEngine
from .errors import WebRTCError
from .media import CodecParameters
from .options import WebRTCOptions
from .pump import send_packet
from .session import Session
from .signaling import SignalingMode, negotiate
from .state import ConnectionState
from .tracks import Track, configure_publish_tracks

logger = logging.getLogger(__name__)


class WHIPClient:
    """WHIP クライアント

    Args:
        whip_url: WHIP endpoint
        streams: Codec parameters of each stream, in pipeline order
        options: Session options
        engine: Transport engine, libdatachannel when omitted
    """

    direction = Direction.PUBLISH

    def __init__(
        self,
        whip_url: str,
        streams: Sequence[CodecParameters],
        options: Optional[WebRTCOptions] = None,
        engine: Optional[TransportEngine] = None,
    ):
        self.whip_url = whip_url
        self.streams = list(streams)
        self.options = options or WebRTCOptions()
        self.engine = engine
        self.session: Optional[Session] = None
        self.sent_packets = 0

    @property
    def tracks(self) -> List[Track]:
        return self.session.tracks if self.session else []

    @property
    def state(self) -> ConnectionState:
        return self.session.state if self.session else ConnectionState.NEW

    @property
    def resource_location(self) -> Optional[str]:
        return self.session.resource_location if self.session else None

    def connect(self) -> None:
        """WHIP サーバーに接続し、接続完了まで待つ

        Raises:
            WebRTCError: Any failure. The session is torn down before raising.
        """
        logger.info(f"Connecting to WHIP endpoint: {self.whip_url}")
        self.session = Session.open(self.whip_url, self.options, self.engine)
        try:
            configure_publish_tracks(self.session, self.streams)
            negotiate(self.session, SignalingMode.OFFER)
            self.session.await_connected()
        except WebRTCError:
            self.session.close()
            raise
        logger.info("Connected to WHIP server")

    def send_packet(self, stream_index: int, timestamp: Optional[int], payload: bytes) -> None:
        """Send one encoded frame

        ``timestamp`` is in the clock units of the stream's track (90 kHz
        for video, the sample rate for audio).
        """
        if self.session is None:
            raise RuntimeError("WHIPClient is not connected")
        send_packet(self.session, stream_index, timestamp, payload)
        self.sent_packets += 1
        if self.sent_packets % 300 == 0:
            logger.debug(f"Sent {self.sent_packets} packets")

    def disconnect(self) -> None:
        """切断"""
        if self.session is not None:
            self.session.close()

    close = disconnect

    def __enter__(self) -> "WHIPClient":
        self.connect()
        return self

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        self.disconnect()
