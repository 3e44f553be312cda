"""
Background progress refresh for the open box or carton.

Operators watch the progress bar while another station (or a second
scanner) may be counting pairs into the same box, so the open box or carton
is re-read on a fixed interval. The refresh is read-only and idempotent; the
machines themselves decide whether a result may be applied.
"""

import configparser
import threading
from pathlib import Path
from typing import Any, Callable, Optional

from logger import get_logger

logger = get_logger(__name__)

DEFAULT_INTERVAL_SECONDS = 2.0


class ProgressPoller:
    """
    Periodically calls a refresh function on a daemon thread.

    Behaviour:
    - start(): begin polling every ``interval_seconds``
    - poll_once(): run one refresh now, on the caller's thread
    - stop(): stop the thread; safe to call multiple times

    A failing refresh is logged and never stops the loop.

    sync_mode=True never starts a thread; only poll_once() refreshes.
    Useful for unit tests that drive ticks by hand.
    """

    def __init__(
        self,
        refresh_fn: Callable[[], Any],
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
        sync_mode: bool = False,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError(f"Poll interval must be positive, got {interval_seconds}")

        self._refresh_fn = refresh_fn
        self._interval = interval_seconds
        self._sync_mode = sync_mode
        self.tick_count = 0

        self._condition = threading.Condition()
        self._stop = False
        self._thread: Optional[threading.Thread] = None

    @classmethod
    def from_config(cls, refresh_fn: Callable[[], Any],
                    config_path: str = "config.ini") -> "ProgressPoller":
        """Build a poller using [Polling] IntervalSeconds from config.ini."""
        config = configparser.ConfigParser()
        if Path(config_path).exists():
            config.read(config_path, encoding='utf-8')
        interval = config.getfloat('Polling', 'IntervalSeconds', fallback=DEFAULT_INTERVAL_SECONDS)
        return cls(refresh_fn, interval_seconds=interval)

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self._sync_mode or self.is_running:
            return

        with self._condition:
            self._stop = False
        self._thread = threading.Thread(
            target=self._run, daemon=True, name="progress-poller"
        )
        self._thread.start()
        logger.debug(f"Progress poller started ({self._interval}s)")

    def poll_once(self) -> Any:
        """Run one refresh; returns the refresh result or None on failure."""
        self.tick_count += 1
        try:
            return self._refresh_fn()
        except Exception:
            logger.exception("ProgressPoller: refresh failed")
            return None

    def stop(self) -> None:
        if self._thread is None:
            return

        with self._condition:
            self._stop = True
            self._condition.notify_all()
        self._thread.join(timeout=10)
        self._thread = None
        logger.debug("Progress poller stopped")

    def _run(self) -> None:
        while True:
            with self._condition:
                # Sleep one interval unless stop() wakes us
                self._condition.wait_for(lambda: self._stop, timeout=self._interval)
                if self._stop:
                    break

            self.poll_once()
