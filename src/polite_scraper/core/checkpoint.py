"""
Checkpoint Store - Durable snapshots of scraper progress.

File layout (JSON):
    {"version": 1, "checksum": "<sha256 of payload>", "payload": {...}}

Saves go to a temp file in the same directory, are fsynced, then renamed
over the previous checkpoint, so a crash mid-save leaves the old file intact.
"""

import hashlib
import json
import logging
import os
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Set

from ..exceptions import CheckpointCorrupt
from ..pipeline.pipeline_data import FetchTask
from ..pipeline.stages.storage_stage import atomic_write_text


CHECKPOINT_VERSION = 1


@dataclass
class Checkpoint:
    """Progress of one run: pending work plus dedupe and emission state."""
    pending: List[FetchTask] = field(default_factory=list)
    seen_ids: Set[str] = field(default_factory=set)
    emitted_count: int = 0
    seen_urls: Set[str] = field(default_factory=set)
    pages_fetched: int = 0
    failed_urls: List[str] = field(default_factory=list)
    last_updated: float = 0.0

    @staticmethod
    def empty() -> "Checkpoint":
        return Checkpoint()

    @property
    def is_empty(self) -> bool:
        return not (self.pending or self.seen_urls or self.seen_ids or self.emitted_count)

    def to_dict(self) -> dict:
        """Serialize to a JSON-compatible dict; sets are written sorted."""
        return {
            'pending': [task.to_dict() for task in self.pending],
            'seen_ids': sorted(self.seen_ids),
            'emitted_count': self.emitted_count,
            'seen_urls': sorted(self.seen_urls),
            'pages_fetched': self.pages_fetched,
            'failed_urls': list(self.failed_urls),
            'last_updated': self.last_updated,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Checkpoint":
        try:
            checkpoint = cls(
                pending=[FetchTask.from_dict(t) for t in data.get('pending', [])],
                seen_ids=set(data.get('seen_ids', [])),
                emitted_count=int(data.get('emitted_count', 0)),
                seen_urls=set(data.get('seen_urls', [])),
                pages_fetched=int(data.get('pages_fetched', 0)),
                failed_urls=list(data.get('failed_urls', [])),
                last_updated=float(data.get('last_updated', 0.0)),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise CheckpointCorrupt(f"Malformed checkpoint payload: {e}")

        if checkpoint.emitted_count < 0:
            raise CheckpointCorrupt(f"Negative emitted_count {checkpoint.emitted_count}")
        if checkpoint.emitted_count != len(checkpoint.seen_ids):
            raise CheckpointCorrupt(
                f"emitted_count {checkpoint.emitted_count} does not match "
                f"{len(checkpoint.seen_ids)} seen ids"
            )
        return checkpoint


def _checksum(payload: dict) -> str:
    canonical = json.dumps(payload, sort_keys=True, separators=(',', ':'))
    return hashlib.sha256(canonical.encode('utf-8')).hexdigest()


class CheckpointStore:
    """Loads and atomically saves a Checkpoint at a fixed path."""

    def __init__(self, path: str):
        self.path = Path(path)
        self.lock = threading.Lock()
        self.save_count = 0
        self.logger = logging.getLogger(self.__class__.__name__)

    def save(self, checkpoint: Checkpoint):
        """Write `checkpoint` atomically, replacing the previous one."""
        with self.lock:
            checkpoint.last_updated = time.time()
            payload = checkpoint.to_dict()
            document = {
                'version': CHECKPOINT_VERSION,
                'checksum': _checksum(payload),
                'payload': payload,
            }
            atomic_write_text(self.path, json.dumps(document, indent=2))
            self.save_count += 1

        self.logger.debug(f"Checkpoint saved: {len(checkpoint.pending)} pending, "
                          f"{checkpoint.emitted_count} emitted")

    def load(self) -> Checkpoint:
        """
        Read the checkpoint, or an empty one if there is no file.

        Raises:
            CheckpointCorrupt: If the file fails its integrity check
        """
        with self.lock:
            if not self.path.exists():
                self.logger.info(f"No checkpoint at {self.path}, starting fresh")
                return Checkpoint.empty()

            try:
                with open(self.path, 'r', encoding='utf-8') as f:
                    document = json.load(f)
            except (json.JSONDecodeError, UnicodeDecodeError) as e:
                raise CheckpointCorrupt(f"{self.path} is not valid JSON: {e}")

        if not isinstance(document, dict) or not isinstance(document.get('payload'), dict):
            raise CheckpointCorrupt(f"{self.path} has no checkpoint payload")

        version = document.get('version')
        if version != CHECKPOINT_VERSION:
            raise CheckpointCorrupt(f"{self.path} has unsupported version {version!r}")

        payload = document['payload']
        if document.get('checksum') != _checksum(payload):
            raise CheckpointCorrupt(f"{self.path} failed its checksum")

        checkpoint = Checkpoint.from_dict(payload)
        self.logger.info(f"Loaded checkpoint: {len(checkpoint.pending)} pending tasks, "
                         f"{checkpoint.emitted_count} records emitted")
        return checkpoint

    def clear(self):
        """Delete the checkpoint file."""
        with self.lock:
            if self.path.exists():
                self.path.unlink()
                self.logger.info(f"Removed checkpoint {self.path}")
