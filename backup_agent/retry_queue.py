"""
Durable retry queue for panel API calls.

The whole queue lives in one JSON file that is loaded fresh and rewritten on
every operation, so the file is the only source of truth. Writes go through a
temporary file and an atomic rename. Items that fail ``max_attempts`` times are
dropped.

Items can be addressed by their position in the current on-disk ordering or by
their stable ``id``. Positions shift when an earlier item is removed, so a
caller working through several items should use ids, or hold ``lock()`` and
re-read between mutations.
"""

import fcntl
import json
import logging
import os
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, Union

from .models import RetryItem


logger = logging.getLogger(__name__)

ItemRef = Union[int, str]


class RetryQueueError(Exception):
    """Raised when the queue file cannot be read or written."""
    pass


class RetryQueue:
    """
    Persistent queue of panel calls awaiting delivery.

    Retry delay after the n-th failure is ``base_delay * 2 ** n`` seconds
    (120s, 240s, 480s, ... with the default base of 60s).
    """

    def __init__(
        self,
        path: str,
        max_attempts: int = 5,
        base_delay: int = 60,
        clock: Optional[Callable[[], float]] = None
    ):
        """
        Initialize the retry queue.

        Args:
            path: Path of the JSON queue file
            max_attempts: Failures after which an item is evicted
            base_delay: Backoff base in seconds
            clock: Callable returning the current unix time (defaults to time.time)
        """
        self.path = Path(path)
        self.lock_path = self.path.with_suffix('.lock')
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self._clock = clock or time.time

    def _now(self) -> int:
        return int(self._clock())

    def add(self, endpoint: str, method: str, payload: Dict[str, Any]) -> RetryItem:
        """
        Append a failed call to the queue. It is ready immediately.

        Returns:
            The stored item
        """
        queue = self._load()
        now = self._now()

        item = RetryItem(
            endpoint=endpoint,
            method=method.upper(),
            payload=dict(payload),
            attempts=0,
            next_attempt_at=now,
            created_at=now,
        )
        queue.append(item)
        self._save(queue)

        logger.info(f"Queued {item.method} {endpoint} for retry ({len(queue)} pending)")
        return item

    def get_ready_items(self) -> List[Tuple[int, RetryItem]]:
        """
        Get items that are due and not exhausted.

        Returns:
            List of (index, item) pairs; index is the position in the current file
        """
        now = self._now()
        return [
            (index, item)
            for index, item in enumerate(self._load())
            if item.next_attempt_at <= now and item.attempts < self.max_attempts
        ]

    def mark_success(self, ref: ItemRef) -> bool:
        """
        Remove a delivered item and compact the queue.

        Args:
            ref: Position in the queue or item id

        Returns:
            True if an item was removed
        """
        queue = self._load()
        index = self._resolve(queue, ref)
        if index is None:
            logger.warning(f"Retry item not found: {ref}")
            return False

        item = queue.pop(index)
        self._save(queue)
        logger.debug(f"Retry item delivered: {item.method} {item.endpoint}")
        return True

    def mark_failed(self, ref: ItemRef) -> Optional[RetryItem]:
        """
        Record a failed delivery attempt and reschedule with exponential backoff.

        Items reaching ``max_attempts`` are evicted.

        Args:
            ref: Position in the queue or item id

        Returns:
            The rescheduled item, or None if it was evicted or not found
        """
        queue = self._load()
        index = self._resolve(queue, ref)
        if index is None:
            logger.warning(f"Retry item not found: {ref}")
            return None

        item = queue[index]
        item.attempts += 1
        item.next_attempt_at = self._now() + self.base_delay * (2 ** item.attempts)

        if item.attempts >= self.max_attempts:
            queue.pop(index)
            logger.warning(
                f"Dropping {item.method} {item.endpoint} after {item.attempts} failed attempts"
            )
            item = None

        self._save(queue)
        return item

    def count(self) -> int:
        """Total number of persisted items, ready or not."""
        return len(self._load())

    def items(self) -> List[RetryItem]:
        return self._load()

    def clear(self):
        self._save([])

    @contextmanager
    def lock(self) -> Iterator[None]:
        """
        Hold an exclusive lock on the queue for a read-process-write section.

        Only cooperating processes that also call lock() are excluded; the
        individual operations do not lock on their own.
        """
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(str(self.lock_path), os.O_CREAT | os.O_WRONLY, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX)
            yield
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
            os.close(fd)

    def _resolve(self, queue: List[RetryItem], ref: ItemRef) -> Optional[int]:
        if isinstance(ref, int):
            return ref if 0 <= ref < len(queue) else None
        for index, item in enumerate(queue):
            if item.id == ref:
                return index
        return None

    def _load(self) -> List[RetryItem]:
        if not self.path.exists():
            return []

        try:
            with open(self.path, 'r') as f:
                content = f.read()
        except OSError as e:
            raise RetryQueueError(f"Failed to read retry queue {self.path}: {e}")

        if not content.strip():
            return []

        try:
            data = json.loads(content)
            queue = [RetryItem.from_dict(entry) for entry in data]
            missing_ids = any(not entry.get('id') for entry in data)
        except (ValueError, TypeError, KeyError, AttributeError) as e:
            raise RetryQueueError(f"Retry queue {self.path} is corrupt: {e}")

        if missing_ids:
            # Ids handed out to entries written without one must survive the next load
            self._save(queue)
            logger.debug(f"Assigned ids to retry items in {self.path}")

        return queue

    def _save(self, queue: List[RetryItem]):
        temp_path = self.path.with_suffix('.json.tmp')
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(temp_path, 'w') as f:
                json.dump([item.to_dict() for item in queue], f, indent=4)
            # Entries can hold encryption keys
            os.chmod(temp_path, 0o600)
            os.replace(temp_path, self.path)
        except (OSError, TypeError, ValueError) as e:
            if temp_path.exists():
                temp_path.unlink()
            raise RetryQueueError(f"Failed to write retry queue {self.path}: {e}")
