"""WebRTC session: peer connection, owned tracks, state cell and teardown"""

import logging
from typing import Any, List, Optional

from .engine import EngineError, LibDataChannelEngine, TransportEngine
from .errors import SignalingError, TransportInitError
from .log import handle_error, init_logger
from .options import WebRTCOptions
from .signaling import SignalingClient
from .state import ConnectionState, StateCell, await_connected
from .tracks import Track, generate_media_stream_id

logger = logging.getLogger(__name__)


class Session:
    """One peer connection and the tracks it owns

    Use :meth:`open` to create a session. :meth:`close` releases everything
    and may be called any number of times.
    """

    def __init__(self, url: str, options: WebRTCOptions, engine: TransportEngine):
        self.url = url
        self.options = options
        self.engine = engine
        self.pc: Any = None
        self.tracks: List[Track] = []
        self.media_stream_id = generate_media_stream_id()
        self.resource_location: Optional[str] = None
        self.state_cell = StateCell()
        # ローカル SDP を作った後はトラックを追加できない
        self.negotiated = False
        self._closed = False

    @classmethod
    def open(
        cls,
        url: str,
        options: Optional[WebRTCOptions] = None,
        engine: Optional[TransportEngine] = None,
    ) -> "Session":
        """Create the peer connection of a new session

        Raises:
            TransportInitError: If the engine cannot allocate a peer connection
        """
        init_logger()
        session = cls(url, options or WebRTCOptions(), engine or LibDataChannelEngine())
        try:
            session.pc = session.engine.create_peer_connection(
                session.options.ice_servers, session.state_cell.set
            )
        except EngineError as e:
            session.state_cell.set(ConnectionState.CLOSED)
            session._closed = True
            raise TransportInitError(str(e)) from e
        logger.debug(f"Session opened: url={url} media_stream_id={session.media_stream_id}")
        return session

    @property
    def state(self) -> ConnectionState:
        return self.state_cell.get()

    @property
    def closed(self) -> bool:
        return self._closed

    def await_connected(self) -> None:
        await_connected(self.state_cell, self.options.connection_timeout)

    def release_tracks(self) -> None:
        """Delete every track handle, newest first, and empty the track list"""
        while self.tracks:
            track = self.tracks.pop()
            if track.handle is None:
                continue
            try:
                self.engine.delete_track(track.handle)
            except EngineError as e:
                handle_error(f"releasing track #{track.index}", e)
            track.handle = None

    def close(self) -> None:
        """Tear the session down

        Sends one DELETE to the resource location if one was captured, then
        releases the tracks and the peer connection. Failures are logged,
        never raised.
        """
        if self._closed:
            return
        self._closed = True

        location = self.resource_location
        self.resource_location = None
        try:
            if location is not None:
                try:
                    SignalingClient(self.url, self.options).delete(location)
                except SignalingError as e:
                    handle_error("deleting signaling resource", e)
        finally:
            # DELETE がどう失敗してもネイティブのリソースは解放する
            self.release_tracks()

            if self.pc is not None:
                try:
                    self.engine.delete_peer_connection(self.pc)
                except EngineError as e:
                    handle_error("closing PeerConnection", e)
                self.pc = None

            self.state_cell.set(ConnectionState.CLOSED)
            logger.info("Session closed")

    def __enter__(self) -> "Session":
        return self

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        self.close()
