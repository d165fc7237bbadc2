"""Quiet-period timer shared by watch sessions and the refetch trigger.

A watch session arms the timer on every write to one of its files and emits
a single change event once the files have been quiet for 500 ms. The client
connection arms its own instance on every change notification and reloads the
logs once notifications stop for 1000 ms. In both cases only the last arming
counts.

One daemon worker per instance sleeps until the deadline. Arming again while
the worker waits moves the deadline, so a burst of writes never spawns more
than one thread.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = ["DebounceTimer"]


class DebounceTimer:
    """Run ``callback`` once a burst of ``schedule()`` calls has gone quiet.

    Attributes:
        interval (float): Seconds without a ``schedule()`` call before firing.
        callback (Callable[[], None]): Emits the change event or the refetch.
        name (str): Worker thread name, e.g. ``WatchSession-<task>``.

    Example:
        >>> timer = DebounceTimer(1.0, reload_logs, name="RefetchDebounce")
        >>> timer.schedule()  # from each change notification
    """

    __slots__ = ('interval', 'callback', 'name', '_cond', '_deadline', '_stopped', '_worker')

    def __init__(self, interval: float, callback: Callable[[], None], name: str = "DebounceTimer") -> None:
        self.interval = interval
        self.callback = callback
        self.name = name
        self._cond = threading.Condition()
        # Monotonic time of the next fire; None while nothing is pending
        self._deadline: Optional[float] = None
        self._stopped = False
        self._worker: Optional[threading.Thread] = None

    @property
    def pending(self) -> bool:
        """True between a ``schedule()`` and the fire it leads to."""
        with self._cond:
            return self._deadline is not None and not self._stopped

    @property
    def stopped(self) -> bool:
        return self._stopped

    def schedule(self) -> None:
        """Fire ``interval`` seconds from now, superseding any earlier deadline.

        Ignored once the owning session or connection has stopped the timer.
        """
        with self._cond:
            if self._stopped:
                return
            self._deadline = time.monotonic() + self.interval
            if self._worker is None:
                self._spawn_worker()
            else:
                self._cond.notify()

    def cancel(self) -> None:
        """Forget the pending fire, e.g. when the connection is torn down."""
        with self._cond:
            self._deadline = None
            self._cond.notify_all()

    def stop(self) -> None:
        """Cancel and refuse further schedules. Used when a session closes."""
        with self._cond:
            self._stopped = True
            self._deadline = None
            self._cond.notify_all()

    def __repr__(self) -> str:
        return f"<DebounceTimer name={self.name} interval={self.interval} pending={self._deadline is not None}>"

    def _spawn_worker(self) -> None:
        worker = threading.Thread(target=self._run, name=self.name, daemon=True)
        try:
            worker.start()
        except RuntimeError:
            # Out of threads: drop this burst, the next schedule() tries again
            self._deadline = None
            logger.error("Failed to start %s thread", self.name, exc_info=True)
            return
        self._worker = worker

    def _run(self) -> None:
        with self._cond:
            try:
                while self._deadline is not None and not self._stopped:
                    remaining = self._deadline - time.monotonic()
                    if remaining > 0:
                        self._cond.wait(remaining)
                        continue

                    self._deadline = None
                    self._cond.release()
                    try:
                        self.callback()
                    except Exception:
                        logger.error("Error in %s callback", self.name, exc_info=True)
                    finally:
                        self._cond.acquire()
                    # A schedule() made during the callback re-arms the loop
            finally:
                self._worker = None
