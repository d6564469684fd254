"""
Pipeline Data Model - Data containers that flow through the pipeline
File: src/polite_scraper/pipeline/pipeline_data.py
"""
from dataclasses import dataclass, field
from typing import Optional, Dict, Any
from datetime import datetime, timezone
from decimal import Decimal
from urllib.parse import urlparse


@dataclass
class FetchTask:
    """
    A pending fetch of one URL.
    The Frontier owns tasks; the fetcher updates retry state in place.
    """
    url: str
    attempt_count: int = 0
    next_eligible_time: float = 0.0

    # Last backoff delay applied, so the next one never shrinks
    backoff_seconds: float = 0.0

    # Link hops from a start URL
    depth: int = 0

    @property
    def host(self) -> str:
        return urlparse(self.url).netloc.lower()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for checkpoint serialization"""
        return {
            'url': self.url,
            'attempt_count': self.attempt_count,
            'next_eligible_time': self.next_eligible_time,
            'backoff_seconds': self.backoff_seconds,
            'depth': self.depth,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FetchTask":
        return cls(
            url=data['url'],
            attempt_count=int(data.get('attempt_count', 0)),
            next_eligible_time=float(data.get('next_eligible_time', 0.0)),
            backoff_seconds=float(data.get('backoff_seconds', 0.0)),
            depth=int(data.get('depth', 0)),
        )

    def __repr__(self) -> str:
        return (f"FetchTask(url='{self.url}', attempts={self.attempt_count}, "
                f"eligible_at={self.next_eligible_time:.2f})")


@dataclass
class FetchResult:
    """Successful outcome of a single HTTP GET."""
    task: FetchTask
    status_code: int
    body: str
    final_url: str
    headers: Dict[str, str] = field(default_factory=dict)
    fetched_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    response_time: float = 0.0
    proxy: Optional[str] = None


@dataclass
class Record:
    """
    One extracted item.
    item_id is unique within a completed run; price is non-negative.
    """
    item_id: str
    title: str
    price: Decimal
    currency: str
    fetched_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage/serialization"""
        return {
            'item_id': self.item_id,
            'title': self.title,
            'price': str(self.price),
            'currency': self.currency,
            'fetched_at': self.fetched_at.isoformat(),
        }

    def __repr__(self) -> str:
        return f"Record(item_id='{self.item_id}', price={self.price} {self.currency})"
