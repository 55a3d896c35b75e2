import logging
import threading
import time
from typing import Callable, Optional

from .. import config


class SessionControl:
    """
    Pause / resume / cancel flags shared between the pipeline and whoever
    drives it (progress channel, signal handler, tests).

    The pipeline only looks at these at file boundaries.
    """

    def __init__(self, poll_interval: float = config.PAUSE_POLL_INTERVAL_SEC,
                 sleep: Callable[[float], None] = time.sleep):
        self.poll_interval = poll_interval
        self._sleep = sleep
        self._paused = threading.Event()
        self._cancelled = threading.Event()
        self.cancel_reason: Optional[str] = None

    @property
    def paused(self) -> bool:
        return self._paused.is_set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def pause(self) -> None:
        if not self._paused.is_set():
            logging.info("Pause requested; will stop at the next file boundary")
        self._paused.set()

    def resume(self) -> None:
        if self._paused.is_set():
            logging.info("Resuming")
        self._paused.clear()

    def cancel(self, reason: Optional[str] = None) -> None:
        self.cancel_reason = reason
        logging.info(f"Cancel requested{': ' + reason if reason else ''}")
        self._cancelled.set()

    def should_continue(self) -> bool:
        return not self._cancelled.is_set()

    def wait_while_paused(self) -> bool:
        """
        Blocks while paused, polling so a cancel during the pause is seen promptly.
        Returns False when the session was cancelled.
        """
        while self._paused.is_set() and not self._cancelled.is_set():
            self._sleep(self.poll_interval)
        return not self._cancelled.is_set()
