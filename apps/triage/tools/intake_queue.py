"""
Intake Queue
Bounded admission for inbound channel messages.
When every processing slot is busy, messages wait in a bounded FIFO backlog
and are drained strictly in arrival order (no priority reordering here:
priority only applies to cases that already exist).
"""

import logging
import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

from apps.core.exceptions import CapacityExceeded

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InboundMessage:
    """One channel adapter delivery"""
    session_id: str
    raw_input: str
    channel: str = 'web'
    user_id: Optional[str] = None
    timestamp: Optional[datetime] = None
    request_id: Optional[str] = None


class IntakeQueue:

    def __init__(self, capacity: int = 100, max_pending: int = 500):
        if capacity < 1:
            raise ValueError('capacity must be at least 1')
        if max_pending < 0:
            raise ValueError('max_pending cannot be negative')
        self.capacity = capacity
        self.max_pending = max_pending
        self._pending = deque()
        self._in_flight = 0
        self._lock = threading.Lock()

    @property
    def in_flight(self) -> int:
        return self._in_flight

    def __len__(self) -> int:
        return len(self._pending)

    def pending(self) -> List[InboundMessage]:
        with self._lock:
            return list(self._pending)

    def try_admit(self, message: InboundMessage) -> bool:
        """
        True: a slot was taken and the caller processes the message now (and must release()).
        False: the message joined the backlog.

        Raises:
            CapacityExceeded: no slot and the backlog is full
        """
        with self._lock:
            if self._in_flight < self.capacity and not self._pending:
                self._in_flight += 1
                return True
            if len(self._pending) >= self.max_pending:
                logger.warning(f"Intake backlog full ({self.max_pending}), rejecting session {message.session_id}")
                raise CapacityExceeded(f"backlog of {self.max_pending} pending messages is full")
            self._pending.append(message)
            logger.info(f"Queued session {message.session_id} at position {len(self._pending)}")
            return False

    def release(self) -> None:
        with self._lock:
            if self._in_flight == 0:
                raise RuntimeError('release() without a matching admission')
            self._in_flight -= 1

    def drain(self, handler: Callable[[InboundMessage], object]) -> list:
        """
        Process backlog messages in arrival order while slots are free.
        A handler failure is logged and skipped; it never strands the rest of the backlog.
        """
        results = []
        while True:
            with self._lock:
                if not self._pending or self._in_flight >= self.capacity:
                    break
                message = self._pending.popleft()
                self._in_flight += 1
            try:
                results.append(handler(message))
            except Exception:
                logger.exception(f"Backlog handler failed for session {message.session_id}")
            finally:
                self.release()
        return results
