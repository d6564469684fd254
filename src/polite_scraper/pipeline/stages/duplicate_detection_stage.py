"""
Duplicate Detection - Seen-sets used to dedupe URLs and item ids.

The Frontier keeps one detector for normalized URLs; the storage stage keeps
one for item ids. Both are snapshotted into the checkpoint so dedupe
survives a resume.
"""

import threading
import logging
from typing import Iterable, Set


class SetBasedDetector:
    """
    Simple set-based duplicate detection.

    Pros:
    - Fast O(1) lookups
    - Exact matching (no false positives)
    - Trivially serializable into a checkpoint

    Cons:
    - Memory usage grows linearly with keys
    """

    def __init__(self, case_sensitive: bool = True):
        self.seen: Set[str] = set()
        self.case_sensitive = case_sensitive
        self.lock = threading.Lock()
        self.logger = logging.getLogger(self.__class__.__name__)

    def _key(self, value: str) -> str:
        return value if self.case_sensitive else value.lower()

    def is_seen(self, value: str) -> bool:
        """Check if a key has been seen before."""
        with self.lock:
            return self._key(value) in self.seen

    def mark_seen(self, value: str) -> bool:
        """
        Mark a key as seen.

        Returns:
            True if the key was newly added, False if already existed
        """
        key = self._key(value)

        with self.lock:
            if key in self.seen:
                return False
            self.seen.add(key)
            return True

    def count(self) -> int:
        """Get count of seen keys."""
        with self.lock:
            return len(self.seen)

    def snapshot(self) -> Set[str]:
        """Copy of the seen-set for checkpointing."""
        with self.lock:
            return set(self.seen)

    def restore(self, values: Iterable[str]):
        """Replace the seen-set with checkpointed values."""
        with self.lock:
            self.seen = {self._key(v) for v in values}
        self.logger.debug(f"Restored {len(self.seen)} seen keys")

    def clear(self):
        """Clear all seen keys."""
        with self.lock:
            self.seen.clear()
