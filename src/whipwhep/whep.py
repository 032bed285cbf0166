"""
WHEP (WebRTC-HTTP Egress Protocol) クライアント

受信専用トラックを作って WHEP サーバーからメディアを受け取り、
トラックごとのエンコード済みフレームをパケットとして取り出します。
"""

import logging
from typing import List, Optional

from .codecs import Codec, Direction
from .engine import TransportEngine
from .errors import WebRTCError
from .media import CodecParameters, Packet
from .options import WebRTCOptions
from .pump import PacketReceiver
from .session import Session
from .signaling import SignalingMode, negotiate
from .state import ConnectionState
from .tracks import Track, configure_subscribe_tracks

logger = logging.getLogger(__name__)


class WHEPClient:
    """WHEP クライアント

    Args:
        whep_url: WHEP endpoint
        options: Session options
        engine: Transport engine, libdatachannel when omitted
        mode: OFFER sends a local offer with one video and one audio track,
            ANSWER takes the tracks from the server offer
        video_codec: Video codec of the local offer
        audio_codec: Audio codec of the local offer
    """

    direction = Direction.SUBSCRIBE

    def __init__(
        self,
        whep_url: str,
        options: Optional[WebRTCOptions] = None,
        engine: Optional[TransportEngine] = None,
        mode: SignalingMode = SignalingMode.OFFER,
        video_codec: Codec = Codec.H264,
        audio_codec: Codec = Codec.OPUS,
    ):
        self.whep_url = whep_url
        self.options = options or WebRTCOptions()
        self.engine = engine
        self.mode = mode
        self.video_codec = video_codec
        self.audio_codec = audio_codec
        self.session: Optional[Session] = None
        self.receiver: Optional[PacketReceiver] = None
        self._streams: List[CodecParameters] = []

    @property
    def tracks(self) -> List[Track]:
        return self.session.tracks if self.session else []

    @property
    def streams(self) -> List[CodecParameters]:
        """Codec parameters of each received track, in track order"""
        return list(self._streams)

    @property
    def state(self) -> ConnectionState:
        return self.session.state if self.session else ConnectionState.NEW

    @property
    def resource_location(self) -> Optional[str]:
        return self.session.resource_location if self.session else None

    def connect(self) -> None:
        """WHEP サーバーに接続し、接続完了まで待つ

        Raises:
            WebRTCError: Any failure. The session is torn down before raising.
        """
        logger.info(f"Connecting to WHEP endpoint: {self.whep_url} (mode: {self.mode.value})")
        self.session = Session.open(self.whep_url, self.options, self.engine)
        try:
            if self.mode is SignalingMode.OFFER:
                configure_subscribe_tracks(self.session, self.video_codec, self.audio_codec)
            # ANSWER モードではサーバーの offer からトラックを作る
            negotiate(self.session, self.mode)

            self.receiver = PacketReceiver(self.session)
            self._streams = self.receiver.bootstrap()
            for track, params in zip(self.session.tracks, self._streams):
                logger.info(
                    f"Track #{track.index}: {params.kind.value} {params.codec.value} mid={track.mid}"
                )

            self.session.await_connected()
        except WebRTCError:
            self.session.close()
            raise
        logger.info("Connected to WHEP server")

    def receive_packet(self) -> Packet:
        """Return the next received frame of any track

        Raises:
            EndOfStreamError: The stream has ended
            PacketTimeoutError: Nothing arrived within rw_timeout
        """
        if self.receiver is None:
            raise RuntimeError("WHEPClient is not connected")
        return self.receiver.receive_packet()

    def disconnect(self) -> None:
        """切断"""
        if self.session is not None:
            self.session.close()

    close = disconnect

    def __enter__(self) -> "WHEPClient":
        self.connect()
        return self

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        self.disconnect()
