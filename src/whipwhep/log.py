import logging
import threading
import traceback

import libdatachannel

logger = logging.getLogger(__name__)

# libdatachannel の内部ログはこのロガーに転送する
native_logger = logging.getLogger("whipwhep.libdatachannel")

_NATIVE_LEVELS = {
    "none": logging.NOTSET,
    "fatal": logging.CRITICAL,
    "error": logging.ERROR,
    "warning": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
    "verbose": logging.DEBUG,
}

_init_lock = threading.Lock()
_initialized = False


def handle_error(context: str, error: Exception):
    """Unified error handling

    Args:
        context: Description of where the error occurred
        error: The exception that was raised
    """
    logger.error(f"Error {context}: {error}")
    if logger.isEnabledFor(logging.DEBUG):
        traceback.print_exception(type(error), error, error.__traceback__)


def _native_level(level) -> int:
    name = getattr(level, "name", str(level)).rsplit(".", 1)[-1].lower()
    return _NATIVE_LEVELS.get(name, logging.INFO)


def _on_native_log(level, message: str) -> None:
    python_level = _native_level(level)
    if python_level == logging.NOTSET:
        return
    native_logger.log(python_level, f"[libdatachannel] {message}")


def init_logger() -> bool:
    """Install the libdatachannel log sink once per process

    Safe to call from every session, concurrently or not.

    Returns:
        True if this call installed the sink, False if it was already installed
    """
    global _initialized

    with _init_lock:
        if _initialized:
            return False
        _initialized = True

    if hasattr(libdatachannel, "init_logger") and hasattr(libdatachannel, "LogLevel"):
        libdatachannel.init_logger(libdatachannel.LogLevel.Debug, _on_native_log)
        logger.debug("libdatachannel log sink installed")
    else:
        logger.debug("libdatachannel does not expose init_logger, native log is not forwarded")
    return True
