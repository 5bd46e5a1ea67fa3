import logging
import signal
import threading
from typing import Callable, Dict, List, Optional

import anyio

logger = logging.getLogger(__name__)

ShutdownCallback = Callable[[], object]

SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class AppStatus:
    """
    Process-wide shutdown flag for open event streams.

    Two consumers react to SIGINT/SIGTERM:
    - every ``EventStreamResponse`` awaits ``listen_for_exit_signal`` and
      cancels its session,
    - every registry handed to ``create_app`` is registered as a shutdown
      callback and cancels whatever sessions it still tracks.

    Signal handlers are installed lazily by the first response, so they sit
    in front of the handlers the server registered and chain to them.
    """

    should_exit = False
    should_exit_event: Optional[anyio.Event] = None
    _original_handlers: Dict[int, object] = {}
    _shutdown_callbacks: List[ShutdownCallback] = []
    _initialized = False
    _lock = threading.RLock()

    @classmethod
    def initialize(cls) -> None:
        with cls._lock:
            if cls._initialized:
                return
            cls._initialized = True
            for sig in SHUTDOWN_SIGNALS:
                cls._install(sig)

    @classmethod
    def _install(cls, sig: int) -> None:
        try:
            cls._original_handlers[sig] = signal.signal(sig, cls._on_signal)
        except (ValueError, OSError) as e:
            # signal.signal only works in the main thread
            logger.warning("Could not register handler for signal %s: %s", sig, e)
        else:
            logger.debug("Registered shutdown handler for signal %s", sig)

    @classmethod
    def _on_signal(cls, signum: int, frame) -> None:
        logger.debug("Received signal %s, cancelling event streams", signum)
        cls.handle_exit(signum, frame)

    @classmethod
    def handle_exit(cls, signum: Optional[int] = None, frame=None) -> None:
        cls.should_exit = True
        if cls.should_exit_event is not None:
            cls.should_exit_event.set()

        with cls._lock:
            callbacks = list(cls._shutdown_callbacks)
        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                logger.error("Error in shutdown callback: %s", e)

        if signum is not None:
            cls._chain(signum, frame)

    @classmethod
    def _chain(cls, signum: int, frame) -> None:
        original = cls._original_handlers.get(signum)
        # SIG_DFL and SIG_IGN are ints, not callables
        if not callable(original):
            return
        try:
            original(signum, frame)
        except Exception as e:
            logger.error("Error calling original signal handler: %s", e)

    @classmethod
    def add_shutdown_callback(cls, callback: ShutdownCallback) -> None:
        with cls._lock:
            if callback not in cls._shutdown_callbacks:
                cls._shutdown_callbacks.append(callback)

    @classmethod
    def remove_shutdown_callback(cls, callback: ShutdownCallback) -> None:
        with cls._lock:
            if callback in cls._shutdown_callbacks:
                cls._shutdown_callbacks.remove(callback)

    @classmethod
    def reset(cls) -> None:
        cls.should_exit = False
        cls.should_exit_event = None
        cls._shutdown_callbacks.clear()

    @classmethod
    def cleanup(cls) -> None:
        """Put the server's own signal handlers back and reset state."""
        with cls._lock:
            restore, cls._original_handlers = cls._original_handlers, {}
            cls._initialized = False

        for sig, original in restore.items():
            if original is None:
                continue
            try:
                signal.signal(sig, original)
            except (ValueError, OSError) as e:
                logger.warning("Could not restore signal handler for %s: %s", sig, e)

        cls.reset()

    @staticmethod
    async def listen_for_exit_signal() -> None:
        """Return once shutdown has been requested."""
        if AppStatus.should_exit:
            return

        if AppStatus.should_exit_event is None:
            AppStatus.should_exit_event = anyio.Event()

        # should_exit may have been set while the event was created
        if AppStatus.should_exit:
            return

        await AppStatus.should_exit_event.wait()
