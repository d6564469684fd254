"""
Frontier - Holds not-yet-completed fetch tasks.

Tasks are deduped by normalized URL and ordered by next_eligible_time, so a
retry scheduled by backoff is not handed out before its time. dequeue()
never blocks: it returns None when no task is ready yet.
"""

import heapq
import itertools
import logging
import threading
from typing import Dict, Iterable, List, Optional, Set, Tuple

from .clock import Clock
from .pipeline_data import FetchTask
from .stages.duplicate_detection_stage import SetBasedDetector
from .stages.url_validation_stage import URLValidationStage


class Frontier:
    """
    Priority queue of fetch tasks keyed by next_eligible_time.

    A task is either queued (waiting in the heap) or in flight (handed out
    by dequeue() and not yet completed or rescheduled). Both count as
    pending for checkpointing.
    """

    def __init__(self, url_validator: Optional[URLValidationStage] = None,
                 clock: Optional[Clock] = None):
        self.url_validator = url_validator or URLValidationStage()
        self.clock = clock or Clock()
        self.logger = logging.getLogger(self.__class__.__name__)

        self._heap: List[Tuple[float, int, str]] = []
        self._queued: Dict[str, FetchTask] = {}
        self._in_flight: Dict[str, FetchTask] = {}
        self._sequence = itertools.count()
        self.seen_urls = SetBasedDetector()
        self.lock = threading.Lock()

    def enqueue(self, url: str, depth: int = 0) -> bool:
        """
        Add a task for `url` unless its normalized form was already seen.

        Returns:
            True if a new task was queued

        Raises:
            InvalidInput: If the URL is malformed
        """
        normalized = self.url_validator.normalize(url)
        if not self.url_validator.is_allowed(normalized, depth):
            return False

        with self.lock:
            if not self.seen_urls.mark_seen(normalized):
                self.logger.debug(f"Already seen: {normalized}")
                return False

            task = FetchTask(url=normalized, depth=depth,
                             next_eligible_time=self.clock.now())
            self._push(task)

        self.logger.debug(f"Enqueued: {normalized} (depth {depth})")
        return True

    def dequeue(self, now: Optional[float] = None) -> Optional[FetchTask]:
        """
        Return the eligible task with the lowest next_eligible_time.

        Returns:
            The task, or None if nothing is ready at `now`
        """
        now = self.clock.now() if now is None else now

        with self.lock:
            if not self._heap or self._heap[0][0] > now:
                return None

            _, _, url = heapq.heappop(self._heap)
            task = self._queued.pop(url)
            self._in_flight[url] = task
            return task

    def reschedule(self, task: FetchTask):
        """Put an in-flight task back after a transient failure."""
        with self.lock:
            self._in_flight.pop(task.url, None)
            self._push(task)

        self.logger.debug(f"Rescheduled {task}")

    def complete(self, task: FetchTask):
        """Drop an in-flight task after success or permanent failure."""
        with self.lock:
            self._in_flight.pop(task.url, None)

    def next_ready_in(self, now: Optional[float] = None) -> Optional[float]:
        """Seconds until the earliest queued task is eligible, None if nothing is queued."""
        now = self.clock.now() if now is None else now

        with self.lock:
            if not self._heap:
                return None
            return max(0.0, self._heap[0][0] - now)

    def snapshot(self) -> List[FetchTask]:
        """Copies of all pending tasks (queued and in flight)."""
        with self.lock:
            tasks = list(self._queued.values()) + list(self._in_flight.values())
        tasks.sort(key=lambda t: t.next_eligible_time)
        return [FetchTask.from_dict(t.to_dict()) for t in tasks]

    def seen_snapshot(self) -> Set[str]:
        return self.seen_urls.snapshot()

    def restore(self, tasks: Iterable[FetchTask], seen_urls: Iterable[str]):
        """Reload pending tasks and seen URLs from a checkpoint."""
        with self.lock:
            self._heap.clear()
            self._queued.clear()
            self._in_flight.clear()
            self.seen_urls.restore(seen_urls)

            for task in tasks:
                self.seen_urls.mark_seen(task.url)
                self._push(task)

            restored = len(self._queued)

        self.logger.info(f"Restored {restored} pending tasks")

    def _push(self, task: FetchTask):
        # Caller holds self.lock
        self._queued[task.url] = task
        heapq.heappush(self._heap, (task.next_eligible_time, next(self._sequence), task.url))

    def __len__(self) -> int:
        with self.lock:
            return len(self._queued) + len(self._in_flight)

    def __repr__(self) -> str:
        with self.lock:
            return (f"<Frontier queued={len(self._queued)} "
                    f"in_flight={len(self._in_flight)} seen={self.seen_urls.count()}>")
