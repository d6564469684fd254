"""
Core Module - High-level scraper orchestration.

Components:
-----------
- PipelineScraper: Runs one worker per host and keeps the checkpoint current
- ScraperConfig: Complete configuration for all pipeline stages
- CheckpointStore: Atomic, checksummed JSON snapshots of progress

Usage:
------
from polite_scraper.core import PipelineScraper
from polite_scraper.config import ConfigLoader

config = ConfigLoader.load_from_yaml('config/default.yaml')
scraper = PipelineScraper(config)
stats = scraper.run(['https://example.com/catalog'])
"""

from .pipeline_crawler import PipelineScraper, ScraperConfig
from .checkpoint import Checkpoint, CheckpointStore

__all__ = [
    'PipelineScraper',
    'ScraperConfig',
    'Checkpoint',
    'CheckpointStore',
]
