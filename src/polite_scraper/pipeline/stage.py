"""
Pipeline Stage - Abstract base class for all pipeline stages.

This module defines the PipelineStage abstract base class that all concrete
stages inherit from. Stages are synchronous: a host worker drives one item
at a time through fetch, parse and storage. The base class provides:
- A uniform process() entry point
- Timing and error statistics
- Thread-safe counters (the storage stage is shared by host workers)
"""

import threading
import logging
import time
from typing import Optional, Any
from abc import ABC, abstractmethod


class PipelineStage(ABC):
    """
    Abstract base class for all pipeline stages.

    Each stage:
    - Receives one item (task, fetch result or record)
    - Processes it (implemented by subclass)
    - Returns the result for the next stage, or None to drop the item
    """

    def __init__(self, name: str):
        """
        Initialize pipeline stage.

        Args:
            name: Stage name (for logging/monitoring)
        """
        self.name = name

        # Statistics
        self.processed_count = 0
        self.error_count = 0
        self.start_time = time.time()
        self.total_processing_time = 0.0

        # Thread safety
        self.stats_lock = threading.Lock()

        self.logger = logging.getLogger(f"{self.__class__.__name__}:{self.name}")

    @abstractmethod
    def process(self, data: Any) -> Optional[Any]:
        """
        Process a single data item.

        Args:
            data: Input item

        Returns:
            Processed data to pass to next stage, or None to drop item
        """
        pass

    def run(self, data: Any) -> Optional[Any]:
        """Process an item and record timing; errors are counted and re-raised."""
        start_time = time.time()
        try:
            result = self.process(data)
        except Exception:
            with self.stats_lock:
                self.error_count += 1
            raise

        processing_time = time.time() - start_time
        with self.stats_lock:
            self.processed_count += 1
            self.total_processing_time += processing_time

        self.logger.debug(f"Processed item in {processing_time:.3f}s")
        return result

    def get_stats(self) -> dict:
        """
        Get stage statistics.

        Returns:
            dict with statistics
        """
        with self.stats_lock:
            runtime = time.time() - self.start_time

            stats = {
                'name': self.name,
                'processed': self.processed_count,
                'errors': self.error_count,
                'runtime_seconds': round(runtime, 2),
            }

            if self.processed_count > 0:
                stats['avg_processing_time_seconds'] = round(
                    self.total_processing_time / self.processed_count, 3
                )
            else:
                stats['avg_processing_time_seconds'] = 0.0

            return stats

    def reset_stats(self):
        """Reset statistics counters."""
        with self.stats_lock:
            self.processed_count = 0
            self.error_count = 0
            self.total_processing_time = 0.0
            self.start_time = time.time()

        self.logger.info(f"Reset statistics for stage '{self.name}'")

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name='{self.name}'>"
