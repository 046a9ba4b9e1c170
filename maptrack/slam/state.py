import logging
import threading
from enum import Enum
from typing import Optional


class TrackingState(Enum):
    """Tracking state of the pipeline."""

    NOT_INITIALIZED = 0
    OK = 1
    LOST = 2


class TrackingStateMachine:
    """
    Tracking state plus an operator-requested idle overlay.

    A caller asks the worker to pause with :meth:`request_idle` and blocks
    in :meth:`wait_until_idle` until the worker acknowledges at the top of
    its next iteration. :meth:`request_resume` lets the worker continue.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._state = TrackingState.NOT_INITIALIZED
        self._idle_requested = threading.Event()
        self._idle = threading.Event()
        self._resumed = threading.Event()
        self._resumed.set()
        self.logger = logging.getLogger(self.__class__.__name__)

    @property
    def state(self) -> TrackingState:
        with self._lock:
            return self._state

    @state.setter
    def state(self, new_state: TrackingState):
        with self._lock:
            if new_state != self._state:
                self.logger.debug(f"Tracking state {self._state.name} -> {new_state.name}")
            self._state = new_state

    def reset(self):
        self.state = TrackingState.NOT_INITIALIZED

    # Idle overlay

    def request_idle(self):
        self._resumed.clear()
        self._idle_requested.set()

    def wait_until_idle(self, timeout: Optional[float] = None) -> bool:
        """
        Block until the worker has acknowledged the idle request.

        Args:
            timeout: Maximum wait in seconds, None to wait forever

        Returns:
            True if the worker is idle
        """
        return self._idle.wait(timeout)

    def request_resume(self):
        self._idle_requested.clear()
        self._idle.clear()
        self._resumed.set()

    def is_idle(self) -> bool:
        return self._idle.is_set()

    def idle_requested(self) -> bool:
        return self._idle_requested.is_set()

    def acknowledge_idle(self, poll_timeout: Optional[float] = None) -> bool:
        """
        Called by the worker: publish the idle acknowledgement and wait for
        a resume request.

        Args:
            poll_timeout: Maximum time to wait for a resume, so that the
                worker can observe a stop request

        Returns:
            True if the worker was resumed
        """
        self._idle.set()
        resumed = self._resumed.wait(poll_timeout)
        if resumed:
            self._idle.clear()
        return resumed
