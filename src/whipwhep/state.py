import logging
import threading
import time
from datetime import timedelta
from enum import Enum
from typing import Callable, Optional

from .errors import ConnectionFailedError, ConnectionTimeoutError

logger = logging.getLogger(__name__)

# 通知を取りこぼしても期限を守れるように待機を区切る（秒）
WAIT_SLICE = 0.1


class ConnectionState(Enum):
    NEW = "new"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    FAILED = "failed"
    CLOSED = "closed"


# DISCONNECTED / FAILED / CLOSED に入ったら二度と戻らない（自動再接続はしない）
FINAL_STATES = frozenset(
    {ConnectionState.DISCONNECTED, ConnectionState.FAILED, ConnectionState.CLOSED}
)

# パケット送受信を止める状態
TERMINAL_STATES = FINAL_STATES


class StateCell:
    """接続状態を保持するセル

    set() は libdatachannel のスレッドから呼ばれ、get() / wait_for() は
    セッションを操作するスレッドから呼ばれる。
    """

    def __init__(self, state: ConnectionState = ConnectionState.NEW):
        self._state = state
        self._cond = threading.Condition()

    def get(self) -> ConnectionState:
        with self._cond:
            return self._state

    def set(self, state: ConnectionState) -> None:
        with self._cond:
            previous = self._state
            if previous in FINAL_STATES and state not in FINAL_STATES:
                logger.debug(f"Ignoring state change from {previous.name} to {state.name}")
                return
            self._state = state
            self._cond.notify_all()
        if previous is not state:
            logger.debug(f"Connection state changed from {previous.name} to {state.name}")

    def wait_for(
        self, predicate: Callable[[ConnectionState], bool], timeout: float
    ) -> Optional[ConnectionState]:
        """Wait until ``predicate(state)`` holds

        Returns:
            The state that satisfied the predicate, or None if ``timeout``
            seconds elapsed first
        """
        deadline = time.monotonic() + timeout
        with self._cond:
            while not predicate(self._state):
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                self._cond.wait(min(remaining, WAIT_SLICE))
            return self._state


def await_connected(cell: StateCell, timeout: timedelta) -> None:
    """Wait for the peer connection to become connected

    Args:
        cell: State cell written by the transport engine
        timeout: Maximum time to wait

    Raises:
        ConnectionFailedError: As soon as a terminal state is observed
        ConnectionTimeoutError: If the deadline elapses while still connecting
    """
    state = cell.wait_for(
        lambda s: s is ConnectionState.CONNECTED or s in TERMINAL_STATES,
        timeout.total_seconds(),
    )
    if state is None:
        raise ConnectionTimeoutError(
            f"Connection not established within {timeout.total_seconds():.3f}s "
            f"(state: {cell.get().name})"
        )
    if state is not ConnectionState.CONNECTED:
        raise ConnectionFailedError(f"Connection reached {state.name} while connecting")
    logger.info("Connection established")
