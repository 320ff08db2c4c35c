"""
Cooperative cancellation for long-running commands.

A ShutdownToken is passed explicitly to the executors, which poll it between
files. Signal handlers only set the token; nothing is interrupted mid-upload.
"""

import signal
import logging
import threading


logger = logging.getLogger(__name__)


class ShutdownToken:
    """Thread-safe "stop requested" flag."""

    def __init__(self):
        self._event = threading.Event()
        self.reason = None

    def request(self, reason: str = 'requested'):
        if not self._event.is_set():
            self.reason = reason
        self._event.set()

    @property
    def requested(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        """Sleep up to timeout seconds; returns True early if shutdown was requested."""
        return self._event.wait(timeout)


def install_signal_handlers(token: ShutdownToken):
    """
    Route SIGINT and SIGTERM to the token.

    A second signal after shutdown was requested restores the default
    handler behaviour and raises KeyboardInterrupt.
    """

    def handler(signum, frame):
        name = signal.Signals(signum).name
        if token.requested:
            logger.warning(f"Received {name} again, aborting")
            signal.signal(signum, signal.SIG_DFL)
            raise KeyboardInterrupt
        logger.warning(f"Received {name}, finishing current file then stopping")
        token.request(name)

    signal.signal(signal.SIGINT, handler)
    signal.signal(signal.SIGTERM, handler)
