"""
Storage Stage - Normalizes records and persists them to CSV or JSON.
Emission is at-most-once per item id; the seen-set and the emitted count are
part of the checkpoint so a resumed run can line the output back up.
"""

import csv
import dataclasses
import json
import logging
import os
import tempfile
import threading
from decimal import Decimal
from pathlib import Path
from typing import Optional, List, Dict, Any, Iterable, Tuple, Set
from dataclasses import dataclass

from ..stage import PipelineStage
from ..pipeline_data import Record
from ..normalization import normalize_whitespace, parse_price
from .duplicate_detection_stage import SetBasedDetector
from ...exceptions import InvalidInput, CheckpointCorrupt


OUTPUT_FORMATS = ('csv', 'json')

# Fields a row may carry; `storage.fields` picks a subset in output order
RECORD_FIELDS = ('item_id', 'title', 'price', 'currency', 'fetched_at')


@dataclass
class StorageConfig:
    """Configuration for storage stage."""
    output_format: str = "csv"  # 'csv' or 'json'
    output_path: str = "data/records.csv"
    fields: List[str] = None
    default_currency: str = "USD"

    def __post_init__(self):
        if self.fields is None:
            self.fields = ['title', 'price']


def atomic_write_text(path: Path, text: str):
    """Write to a temp file in the same directory, fsync, then rename over `path`."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, 'w', encoding='utf-8', newline='') as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


def normalize_record(record: Record, default_currency: str = "USD") -> Record:
    """
    Strip currency symbols from the price and trim whitespace.

    Raises:
        InvalidInput: If the price is missing, unparseable or negative
    """
    currency = (record.currency or '').strip().upper()
    price = record.price

    if not isinstance(price, Decimal):
        try:
            price, detected = parse_price(price, currency or default_currency)
        except ValueError as e:
            raise InvalidInput(f"Record {record.item_id}: {e}")
        currency = currency or detected

    if price < 0:
        raise InvalidInput(f"Record {record.item_id}: negative price {price}")

    return dataclasses.replace(
        record,
        item_id=str(record.item_id).strip(),
        title=normalize_whitespace(record.title or ''),
        price=price,
        currency=currency or default_currency,
    )


class CSVWriter:
    """Appends rows to a CSV file with a header row."""

    def __init__(self, path: str, fields: List[str]):
        self.path = Path(path)
        self.fields = list(fields)
        self.file = None
        self.writer = None
        self.logger = logging.getLogger(self.__class__.__name__)

    def _open(self):
        if self.file is not None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        is_new = not self.path.exists() or self.path.stat().st_size == 0
        self.file = open(self.path, 'a', encoding='utf-8', newline='')
        self.writer = csv.DictWriter(self.file, fieldnames=self.fields, extrasaction='ignore')
        if is_new:
            self.writer.writeheader()

    def write(self, row: Dict[str, Any]):
        self._open()
        self.writer.writerow(row)

    def flush(self):
        if self.file is not None:
            self.file.flush()
            os.fsync(self.file.fileno())

    def read_rows(self) -> List[Dict[str, str]]:
        if not self.path.exists():
            return []
        with open(self.path, 'r', encoding='utf-8', newline='') as f:
            reader = csv.DictReader(f)
            if reader.fieldnames and list(reader.fieldnames) != self.fields:
                raise CheckpointCorrupt(
                    f"{self.path} has columns {reader.fieldnames}, expected {self.fields}"
                )
            return list(reader)

    def truncate(self, keep: int):
        """Keep the header and the first `keep` rows."""
        self.close()
        rows = self.read_rows()[:keep] if keep else []

        lines = []
        buffer = _LineBuffer(lines)
        writer = csv.DictWriter(buffer, fieldnames=self.fields)
        writer.writeheader()
        writer.writerows(rows)
        atomic_write_text(self.path, ''.join(lines))

    def close(self):
        if self.file is not None:
            self.flush()
            self.file.close()
            self.file = None
            self.writer = None


class _LineBuffer:
    """Minimal file-like sink for csv.writer."""

    def __init__(self, lines: List[str]):
        self.lines = lines

    def write(self, text: str):
        self.lines.append(text)


class JSONWriter:
    """Keeps rows in memory and rewrites the JSON array atomically on flush."""

    def __init__(self, path: str, fields: List[str]):
        self.path = Path(path)
        self.fields = list(fields)
        self.rows: List[Dict[str, Any]] = []
        self.dirty = False
        self.logger = logging.getLogger(self.__class__.__name__)

    def write(self, row: Dict[str, Any]):
        self.rows.append({field: row.get(field) for field in self.fields})
        self.dirty = True

    def flush(self):
        if not self.dirty:
            return
        atomic_write_text(self.path, json.dumps(self.rows, indent=2, ensure_ascii=False))
        self.dirty = False

    def read_rows(self) -> List[Dict[str, Any]]:
        if not self.path.exists():
            return []
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise CheckpointCorrupt(f"{self.path} is not valid JSON: {e}")
        if not isinstance(data, list):
            raise CheckpointCorrupt(f"{self.path} does not hold a JSON array")
        return data

    def truncate(self, keep: int):
        self.rows = self.read_rows()[:keep] if keep else []
        self.dirty = True
        self.flush()

    def close(self):
        self.flush()


class StorageStage(PipelineStage):
    """
    Storage (the Sink).

    Responsibilities:
    - Reject records whose item id was already emitted (no-op, not an error)
    - Normalize and append new records to the output file
    - Flush output before each checkpoint save
    - Realign the output with a checkpoint on resume
    """

    def __init__(self, config: Optional[StorageConfig] = None):
        super().__init__(name="Storage")
        self.config = config or StorageConfig()
        self.logger = logging.getLogger(self.__class__.__name__)

        self.writer = self._create_writer()
        self.seen_ids = SetBasedDetector()
        self.emitted_count = 0
        self.emit_lock = threading.Lock()

        self.stats = {
            'records_stored': 0,
            'duplicates_rejected': 0,
            'records_invalid': 0,
        }

    def _create_writer(self):
        """Create the writer for the configured output format."""
        output_format = self.config.output_format.lower()

        if output_format == "csv":
            self.logger.info(f"Writing CSV to {self.config.output_path}")
            return CSVWriter(self.config.output_path, self.config.fields)

        elif output_format == "json":
            self.logger.info(f"Writing JSON to {self.config.output_path}")
            return JSONWriter(self.config.output_path, self.config.fields)

        raise InvalidInput(f"Unknown output format '{self.config.output_format}'. "
                           f"Use one of {', '.join(OUTPUT_FORMATS)}")

    def restore(self, seen_ids: Iterable[str], emitted_count: int):
        """
        Line the output file up with a checkpoint.

        Rows past `emitted_count` were written after the last checkpoint and
        belong to tasks that will be fetched again, so they are dropped.

        Raises:
            CheckpointCorrupt: If the output holds fewer rows than checkpointed
        """
        with self.emit_lock:
            # A fresh run replaces whatever the file held, whatever its columns
            existing = len(self.writer.read_rows()) if emitted_count else 0
            if existing < emitted_count:
                raise CheckpointCorrupt(
                    f"{self.config.output_path} has {existing} records, "
                    f"checkpoint expects {emitted_count}"
                )

            # Also reloads the JSON writer's in-memory rows
            self.writer.truncate(emitted_count)
            if existing > emitted_count:
                self.logger.info(f"Dropped {existing - emitted_count} records "
                                 f"written after the last checkpoint")

            self.seen_ids.restore(seen_ids)
            self.emitted_count = emitted_count

    def emit(self, record: Record) -> bool:
        """
        Append a record unless its item id was already emitted.

        Returns:
            True if the record was written, False for a duplicate

        Raises:
            InvalidInput: If the record cannot be normalized
        """
        try:
            record = normalize_record(record, self.config.default_currency)
        except InvalidInput:
            with self.stats_lock:
                self.stats['records_invalid'] += 1
            raise

        with self.emit_lock:
            if self.seen_ids.is_seen(record.item_id):
                with self.stats_lock:
                    self.stats['duplicates_rejected'] += 1
                self.logger.debug(f"Duplicate item {record.item_id}, not emitted")
                return False

            self.writer.write(record.to_dict())
            self.seen_ids.mark_seen(record.item_id)
            self.emitted_count += 1

        with self.stats_lock:
            self.stats['records_stored'] += 1

        self.logger.debug(f"Stored item {record.item_id}")
        return True

    def process(self, data: Record) -> Optional[Record]:
        return data if self.emit(data) else None

    def flush(self):
        with self.emit_lock:
            self.writer.flush()

    def snapshot(self) -> Tuple[Set[str], int]:
        """
        Flush, then return seen ids and emitted count.

        Both happen under the emit lock, so every counted record is already
        durable when the checkpoint is written.
        """
        with self.emit_lock:
            self.writer.flush()
            return self.seen_ids.snapshot(), self.emitted_count

    def close(self):
        """Flush and close the output."""
        with self.emit_lock:
            self.writer.close()

    def get_stats(self) -> dict:
        """Get storage statistics."""
        base_stats = super().get_stats()

        with self.stats_lock:
            base_stats['storage_stats'] = self.stats.copy()
        base_stats['storage_stats']['emitted_count'] = self.emitted_count

        return base_stats
