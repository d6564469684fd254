"""
Polite Scraper - A resumable, rate-limited scraping pipeline built with Python.

Features:
- One sequential worker per host with randomized politeness delays
- Exponential backoff with jitter for 429/503, timeouts and connection errors
- Configurable CSS selectors for item records
- CSV or JSON output with at-most-once emission per item id
- Atomic checkpoints for resuming interrupted runs
- Configurable via YAML
"""

__version__ = "1.0.0"

from .core.pipeline_crawler import PipelineScraper, ScraperConfig
from .config.crawler_config import ConfigLoader, validate_config
from .pipeline.pipeline_data import FetchTask, Record

__all__ = [
    'PipelineScraper',
    'ScraperConfig',
    'ConfigLoader',
    'validate_config',
    'FetchTask',
    'Record',
]
