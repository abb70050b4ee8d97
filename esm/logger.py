"""
ESM Logger Module

Provides the logging setup for the ESM agent: level validation, text or JSON output,
optional syslog fan-out, and a gated writer that holds log output back until the
startup banner has been printed.
"""

import logging
import sys
import threading
from dataclasses import dataclass
from logging.handlers import SysLogHandler
from typing import NamedTuple, TextIO

from pythonjsonlogger.json import JsonFormatter

from esm.errors import LogSetupError
from esm.platform_utils import get_syslog_address

ROOT_LOGGER_NAME = "esm"
SYSLOG_TAG = "esm"

TRACE = 5
logging.addLevelName(TRACE, "TRACE")

LOG_LEVELS: dict[str, int] = {
    "TRACE": TRACE,
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "ERR": logging.ERROR,
    "ERROR": logging.ERROR,
}


@dataclass(frozen=True)
class LogConfig:
    """The subset of the effective configuration that drives logging."""

    log_level: str = "INFO"
    enable_syslog: bool = False
    syslog_facility: str = "LOCAL0"
    log_json: bool = False


class LogSetupResult(NamedTuple):
    logger: logging.Logger | None
    gated_writer: "GatedWriter | None"
    ok: bool


class GatedWriter:
    """
    File-like sink that buffers everything written to it until released.

    Once ``release()`` is called the buffered text is written to the underlying
    stream in its original order, exactly once, and later writes pass straight
    through. ``flush()`` does nothing while the gate is closed, so a
    ``logging.StreamHandler`` flushing after each record cannot open it.
    """

    def __init__(self, writer: TextIO):
        self._writer = writer
        self._buffer: list[str] = []
        self._released = False
        self._lock = threading.Lock()

    def write(self, text: str) -> int:
        with self._lock:
            if not self._released:
                self._buffer.append(text)
                return len(text)
            return self._writer.write(text)

    def flush(self) -> None:
        with self._lock:
            if self._released:
                self._writer.flush()

    def release(self) -> None:
        """Open the gate and emit the buffered history. Further calls are no-ops."""
        with self._lock:
            if self._released:
                return
            self._released = True
            for chunk in self._buffer:
                self._writer.write(chunk)
            self._buffer.clear()
            self._writer.flush()

    @property
    def released(self) -> bool:
        return self._released


def resolve_level(name: str) -> int:
    """
    Map a configured log level name to a logging level.

    Raises:
        LogSetupError: If the name is not one of TRACE, DEBUG, INFO, WARN, ERR
    """
    level = LOG_LEVELS.get(name.strip().upper())
    if level is None:
        raise LogSetupError(
            f"Invalid log level: {name}. Valid log levels are: TRACE, DEBUG, INFO, WARN, ERR"
        )
    return level


def resolve_facility(name: str) -> int:
    """
    Map a syslog facility name such as LOCAL0 or DAEMON to its numeric code.

    Raises:
        LogSetupError: If the facility is unknown
    """
    facility = SysLogHandler.facility_names.get(name.strip().lower())
    if facility is None:
        raise LogSetupError(f"Invalid syslog facility: {name}")
    return facility


class ESMLogger:
    """
    Centralized logger factory for the ESM agent.

    All loggers live under the ``esm`` namespace and share the handlers installed
    by ``configure()``:
    - A stream handler writing to the gated writer in front of stdout
    - An optional syslog handler
    - Text or JSON formatting
    """

    @classmethod
    def get_logger(cls, name: str) -> logging.Logger:
        """
        Get a logger within the ESM namespace.

        Args:
            name: Component name (e.g. 'agent', 'signals')

        Returns:
            logging.Logger named ``esm.<name>``
        """
        return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")

    @classmethod
    def configure(cls, log_config: LogConfig, stream: TextIO | None = None) -> LogSetupResult:
        """
        Install handlers on the ``esm`` logger according to ``log_config``.

        Nothing is changed unless every handler could be built.

        Args:
            log_config: Level, syslog and format settings
            stream: Terminal stream behind the gated writer (defaults to sys.stdout)

        Returns:
            LogSetupResult with ok=True

        Raises:
            LogSetupError: If the level or facility is invalid or syslog is unreachable
        """
        level = resolve_level(log_config.log_level)

        gated_writer = GatedWriter(stream if stream is not None else sys.stdout)
        stream_handler = logging.StreamHandler(gated_writer)
        if log_config.log_json:
            stream_handler.setFormatter(cls._get_json_formatter())
        else:
            stream_handler.setFormatter(cls._get_text_formatter())
        handlers: list[logging.Handler] = [stream_handler]

        if log_config.enable_syslog:
            handlers.append(cls._get_syslog_handler(log_config.syslog_facility))

        root_logger = logging.getLogger(ROOT_LOGGER_NAME)
        cls.reset()
        root_logger.setLevel(level)
        root_logger.propagate = False
        for handler in handlers:
            handler.setLevel(level)
            root_logger.addHandler(handler)

        return LogSetupResult(cls.get_logger("agent"), gated_writer, True)

    @staticmethod
    def _get_text_formatter() -> logging.Formatter:
        fmt = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
        return logging.Formatter(fmt, datefmt="%Y/%m/%d %H:%M:%S")

    @staticmethod
    def _get_json_formatter() -> logging.Formatter:
        return JsonFormatter(
            "%(levelname)s %(name)s %(message)s",
            rename_fields={"levelname": "level", "name": "logger"},
            timestamp=True,
        )

    @staticmethod
    def _get_syslog_handler(facility_name: str) -> SysLogHandler:
        """
        Create a syslog handler for the local syslog daemon.

        Args:
            facility_name: Syslog facility name (e.g. LOCAL0)

        Returns:
            Connected SysLogHandler

        Raises:
            LogSetupError: If the facility is unknown or the daemon cannot be reached
        """
        facility = resolve_facility(facility_name)
        address = get_syslog_address()
        try:
            handler = SysLogHandler(address=address, facility=facility)
        except OSError as e:
            raise LogSetupError(f"Syslog setup failed ({address}): {e}") from e

        # Newer interpreters swallow unix socket connect errors and leave the socket closed
        sock = getattr(handler, "socket", None)
        if handler.unixsocket and (sock is None or sock.fileno() == -1):
            handler.close()
            raise LogSetupError(f"Syslog setup failed ({address}): syslog socket is unreachable")

        handler.setFormatter(logging.Formatter(f"{SYSLOG_TAG}: [%(levelname)s] %(message)s"))
        return handler

    @classmethod
    def reset(cls) -> None:
        """
        Remove and close every handler on the ``esm`` logger.

        Useful for testing or reconfiguration.
        """
        root_logger = logging.getLogger(ROOT_LOGGER_NAME)
        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)
            handler.close()


def setup_logging(log_config: LogConfig, stream: TextIO | None = None) -> LogSetupResult:
    """
    Build the log sink for the agent.

    Failures are reported on stderr and signalled with ``ok=False`` rather than raised,
    so the caller can exit with status 1.

    Args:
        log_config: Level, syslog and format settings
        stream: Terminal stream behind the gated writer (defaults to sys.stdout)

    Returns:
        LogSetupResult(logger, gated_writer, ok)
    """
    try:
        return ESMLogger.configure(log_config, stream)
    except LogSetupError as e:
        print(f"==> {e}", file=sys.stderr)
        return LogSetupResult(None, None, False)
