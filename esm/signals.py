"""
ESM Signal Handling Module

Turns OS signals into a one-shot shutdown notification.

Signal handlers only enqueue the signal number; a background thread drains the queue
and drives a two-state machine (ARMED -> SHUTTING_DOWN) so the shutdown notification
fires exactly once no matter how many interrupts arrive.
"""

import queue
import signal
import threading
from collections.abc import Iterable
from enum import Enum
from logging import Logger
from typing import Any

from esm.errors import ShutdownAlreadyFiredError
from esm.logger import ESMLogger

# Uncatchable, or left to their default action so faults still crash the process
UNSUBSCRIBED_SIGNALS: frozenset[int] = frozenset(
    getattr(signal, name)
    for name in ("SIGKILL", "SIGSTOP", "SIGSEGV", "SIGBUS", "SIGFPE", "SIGILL")
    if hasattr(signal, name)
)

SUBSCRIBED_SIGNALS: tuple[int, ...] = tuple(
    sorted(int(s) for s in signal.valid_signals() if s not in UNSUBSCRIBED_SIGNALS)
)

_CLOSED = object()


def _signal_name(signum: int) -> str:
    try:
        return signal.Signals(signum).name
    except ValueError:
        return str(signum)


class ShutdownSignal:
    """
    One-shot notification that moves from pending to fired exactly once.

    The signal coordinator fires it; the agent's run loop waits on it.
    """

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()

    def fire(self) -> None:
        """
        Mark shutdown as requested and wake all waiters.

        Raises:
            ShutdownAlreadyFiredError: If the signal has already fired
        """
        with self._lock:
            if self._event.is_set():
                raise ShutdownAlreadyFiredError("shutdown signal already fired")
            self._event.set()

    def wait(self, timeout: float | None = None) -> bool:
        """
        Block until the signal fires or ``timeout`` seconds elapse.

        Returns:
            True if the signal has fired
        """
        return self._event.wait(timeout)

    @property
    def fired(self) -> bool:
        return self._event.is_set()


class CoordinatorState(Enum):
    ARMED = "armed"
    SHUTTING_DOWN = "shutting_down"


class SignalCoordinator:
    """
    Fires a ShutdownSignal on the first interrupt and ignores everything after it.

    Typical use::

        coordinator = SignalCoordinator(shutdown, logger)
        coordinator.start()
        coordinator.install()
        ...
        coordinator.close()
    """

    def __init__(
        self,
        shutdown: ShutdownSignal,
        logger: Logger | None = None,
        shutdown_signals: Iterable[int] = (signal.SIGINT,),
    ):
        """
        Initialize the coordinator in the ARMED state.

        Args:
            shutdown: Notification to fire on interrupt
            logger: Logger for the "got signal" message (defaults to esm.signals)
            shutdown_signals: Signal numbers that trigger shutdown
        """
        self.shutdown = shutdown
        self.logger = logger or ESMLogger.get_logger("signals")
        self._shutdown_signals = frozenset(shutdown_signals)
        self._channel: queue.SimpleQueue[Any] = queue.SimpleQueue()
        self._state = CoordinatorState.ARMED
        self._state_lock = threading.Lock()
        self._thread: threading.Thread | None = None
        self._previous_handlers: dict[int, Any] = {}

    @property
    def state(self) -> CoordinatorState:
        return self._state

    def handle(self, signum: int) -> None:
        """
        Apply one signal to the state machine.

        ARMED + shutdown signal: log, fire the notification, move to SHUTTING_DOWN.
        ARMED + any other signal: ignored.
        SHUTTING_DOWN + anything: ignored.
        """
        with self._state_lock:
            if self._state is CoordinatorState.SHUTTING_DOWN:
                return

            if signum not in self._shutdown_signals:
                self.logger.debug(f"Ignoring signal {_signal_name(signum)}")
                return

            self._state = CoordinatorState.SHUTTING_DOWN
            self.logger.info("got signal, shutting down...")
            self.shutdown.fire()

    def notify(self, signum: int) -> None:
        """Deliver a signal to the coordinator's channel. Safe to call from any thread."""
        self._channel.put(signum)

    def start(self) -> None:
        """Start the background thread that drains the signal channel."""
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._run, name="esm-signals", daemon=True)
        self._thread.start()

    def _run(self) -> None:
        while True:
            signum = self._channel.get()
            if signum is _CLOSED:
                break
            self.handle(signum)

    def install(self, signals: Iterable[int] = SUBSCRIBED_SIGNALS) -> None:
        """
        Route OS signals into the channel. Must be called from the main thread.

        Signals the platform refuses to let us handle are skipped.

        Args:
            signals: Signal numbers to subscribe to
        """
        for signum in signals:
            try:
                previous = signal.signal(signum, self._on_signal)
            except (OSError, ValueError):
                continue
            self._previous_handlers[signum] = previous

    def _on_signal(self, signum: int, frame: Any) -> None:
        # SimpleQueue.put is reentrant, so this is safe inside a signal handler
        self._channel.put(signum)

    def close(self, timeout: float | None = 1.0) -> None:
        """Restore the previous signal handlers and stop the background thread."""
        for signum, handler in self._previous_handlers.items():
            # None means the old handler was not installed from Python
            signal.signal(signum, signal.SIG_DFL if handler is None else handler)
        self._previous_handlers.clear()

        self._channel.put(_CLOSED)
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
