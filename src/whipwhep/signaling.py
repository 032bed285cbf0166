"""WHIP/WHEP HTTP signaling

Every request opens and closes its own httpx.Client. Response bodies are read
as a stream and rejected as soon as they exceed SDP_MAX_SIZE.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Dict, Optional, Tuple
from urllib.parse import urljoin

import httpx

from .engine import EngineError
from .errors import SdpTooLargeError, SignalingError, SignalingTimeoutError
from .options import WebRTCOptions
from .sdp import SDP_MAX_SIZE, check_size, looks_like_sdp, parse_media_sections
from .tracks import configure_tracks_from_offer

if TYPE_CHECKING:
    from .session import Session

logger = logging.getLogger(__name__)

SDP_CONTENT_TYPE = "application/sdp"


class SignalingMode(Enum):
    # ローカルが offer を作る (WHIP / WHEP)
    OFFER = "offer"
    # サーバーの offer に answer を返す (WHEP)
    ANSWER = "answer"


@dataclass
class SignalingResponse:
    status_code: int
    sdp: str
    location: str


def _is_success(status_code: int) -> bool:
    return 200 <= status_code < 300


class SignalingClient:
    """HTTP side of the WHIP/WHEP exchange

    Args:
        url: Signaling endpoint
        options: Session options (bearer token and rw_timeout are used)
    """

    def __init__(self, url: str, options: WebRTCOptions):
        self.url = url
        self.options = options

    def _headers(self, **extra: str) -> Dict[str, str]:
        headers = dict(self.options.authorization)
        headers.update(extra)
        return headers

    def _request(
        self,
        method: str,
        url: str,
        headers: Dict[str, str],
        content: Optional[str] = None,
        max_size: int = SDP_MAX_SIZE,
        read_body: bool = True,
    ) -> Tuple[httpx.Response, bytes]:
        timeout = self.options.rw_timeout.total_seconds()
        try:
            with httpx.Client(timeout=timeout, follow_redirects=True) as client:
                with client.stream(method, url, content=content, headers=headers) as response:
                    if not read_body:
                        return response, b""
                    length = response.headers.get("Content-Length", "")
                    if length.isdigit() and int(length) > max_size:
                        raise SdpTooLargeError(
                            f"{method} {url} response is {length} bytes, maximum is {max_size}"
                        )
                    chunks = []
                    size = 0
                    for chunk in response.iter_bytes():
                        size += len(chunk)
                        if size > max_size:
                            raise SdpTooLargeError(
                                f"{method} {url} response exceeds {max_size} bytes"
                            )
                        chunks.append(chunk)
                    return response, b"".join(chunks)
        except httpx.TimeoutException as e:
            raise SignalingTimeoutError(f"{method} {url} timed out after {timeout}s") from e
        except httpx.InvalidURL as e:
            raise SignalingError(f"Invalid signaling URL {url}: {e}") from e
        except httpx.HTTPError as e:
            raise SignalingError(f"{method} {url} failed: {e}") from e

    def _sdp_response(self, method: str, response: httpx.Response, body: bytes) -> SignalingResponse:
        if not _is_success(response.status_code):
            raise SignalingError(
                f"Signaling server returned {response.status_code} for {method}: "
                f"{body[:200].decode('utf-8', 'replace')}"
            )
        try:
            sdp = body.decode("utf-8")
        except UnicodeDecodeError as e:
            raise SignalingError(f"Signaling response is not valid UTF-8: {e}") from e
        if not looks_like_sdp(sdp):
            raise SignalingError("Signaling response body is not an SDP")
        check_size(sdp, "Remote SDP")

        # Location はそのまま保持し、DELETE 時に解決する
        location = response.headers.get("Location") or self.url
        return SignalingResponse(response.status_code, sdp, location)

    def post_offer(self, offer: str) -> SignalingResponse:
        """POST a local offer and return the answer

        Raises:
            SdpTooLargeError: Offer or answer exceeds SDP_MAX_SIZE
            SignalingTimeoutError: No response within rw_timeout
            SignalingError: Transport error, non-2xx status or malformed body
        """
        check_size(offer, "Offer")
        logger.info(f"Sending offer to {self.url}")
        response, body = self._request(
            "POST",
            self.url,
            self._headers(**{"Content-Type": SDP_CONTENT_TYPE}),
            content=offer,
        )
        return self._sdp_response("POST", response, body)

    def create_resource(self) -> SignalingResponse:
        """POST without a body and return the server offer"""
        logger.info(f"Requesting offer from {self.url}")
        response, body = self._request("POST", self.url, self._headers(Accept=SDP_CONTENT_TYPE))
        return self._sdp_response("POST", response, body)

    def resolve(self, location: str) -> str:
        try:
            return urljoin(self.url, location)
        except ValueError as e:
            raise SignalingError(f"Invalid resource location {location!r}: {e}") from e

    def delete(self, location: str) -> int:
        """DELETE the session resource

        A non-2xx response is only logged. The response body is not read.

        Raises:
            SignalingError: Malformed location or transport error

        Returns:
            The response status code
        """
        url = self.resolve(location)
        logger.info(f"Deleting session resource: {url}")
        response, _ = self._request("DELETE", url, self._headers(), read_body=False)
        if not _is_success(response.status_code):
            logger.warning(f"DELETE {url} returned {response.status_code}")
        return response.status_code


def _apply_remote(session: "Session", sdp: str, sdp_type: str) -> None:
    try:
        session.engine.set_remote_description(session.pc, sdp, sdp_type)
    except EngineError as e:
        raise SignalingError(f"Failed to apply remote {sdp_type}: {e}") from e


def _build_local(session: "Session", sdp_type: str) -> str:
    engine = session.engine
    session.negotiated = True
    try:
        engine.set_local_description(session.pc, sdp_type)
        sdp = engine.local_description(session.pc, session.options.connection_timeout)
    except EngineError as e:
        raise SignalingError(f"Failed to create local {sdp_type}: {e}") from e
    check_size(sdp, f"Local {sdp_type}")
    logger.debug(f"Local {sdp_type}:\n{sdp}")
    return sdp


def negotiate(session: "Session", mode: SignalingMode = SignalingMode.OFFER) -> str:
    """Exchange session descriptions with the signaling server

    OFFER mode builds the local offer from the configured tracks, POSTs it
    and applies the answer. ANSWER mode asks the server for an offer,
    configures receive-only tracks from it and applies the local answer.

    Returns:
        The resource location: the ``Location`` header, or the signaling URL
        when the server sent none
    """
    client = SignalingClient(session.url, session.options)

    if mode is SignalingMode.OFFER:
        offer = _build_local(session, "offer")
        response = client.post_offer(offer)
        session.resource_location = response.location
        logger.debug(f"Remote answer:\n{response.sdp}")
        _apply_remote(session, response.sdp, "answer")
    else:
        response = client.create_resource()
        session.resource_location = response.location
        logger.debug(f"Remote offer:\n{response.sdp}")
        configure_tracks_from_offer(session, parse_media_sections(response.sdp))
        _apply_remote(session, response.sdp, "offer")
        _build_local(session, "answer")

    logger.info(f"Negotiated, resource location: {response.location}")
    return response.location
