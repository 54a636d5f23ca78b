"""Thread coordination utilities for the pollers."""

import logging
from threading import RLock, Thread, current_thread
from typing import List, Optional

logger = logging.getLogger(__name__)


class ThreadCoordinator:
    """
    Central registry of the worker threads started for polling.

    Threads are created through the coordinator so shutdown can find and join every one of
    them, and so retired threads can be forgotten without leaking references.
    """

    def __init__(self):
        self._lock = RLock()
        self._threads: List[Thread] = []

    def create_thread(
        self, target, name: str, *, daemon: bool = True, args=(), kwargs=None
    ) -> Thread:
        """
        Create and register a Thread tracked by this coordinator without starting it.

        Returns:
            Thread: The created Thread instance.
        """
        with self._lock:
            thread = Thread(
                target=target, name=name, daemon=daemon, args=args, kwargs=kwargs
            )
            self._threads.append(thread)
            return thread

    def start_thread(self, thread: Thread):
        """Start ``thread`` if it is tracked by this coordinator."""
        with self._lock:
            if thread in self._threads:
                thread.start()

    def join_thread(self, thread: Thread, timeout: Optional[float] = None) -> bool:
        """
        Join a tracked thread unless it is the caller, then stop tracking it once it exited.

        Returns:
            bool: True if the thread is no longer alive.
        """
        with self._lock:
            should_join = (
                thread in self._threads
                and thread.is_alive()
                and thread is not current_thread()
            )
        if should_join:
            thread.join(timeout=timeout)
        if thread.is_alive():
            logger.warning("Thread %s did not exit within %ss", thread.name, timeout)
            return False
        with self._lock:
            if thread in self._threads:
                self._threads.remove(thread)
        return True

    def alive_threads(self) -> List[Thread]:
        with self._lock:
            return [thread for thread in self._threads if thread.is_alive()]

    def join_all(self, timeout: Optional[float] = None):
        """Join every live tracked thread (except the caller) and clear the registry."""
        with self._lock:
            current = current_thread()
            threads_to_join = [
                thread
                for thread in self._threads
                if thread.is_alive() and thread is not current
            ]
            self._threads.clear()

        # Join outside the lock; threads may touch the coordinator while exiting
        for thread in threads_to_join:
            thread.join(timeout=timeout)
