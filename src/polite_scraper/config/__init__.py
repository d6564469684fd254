"""
Configuration Module - Configuration management and loading.

Components:
-----------
- ConfigLoader: Loads and saves configurations from/to YAML files
- validate_config: Validates configuration objects
- ConfigurationError: Exception raised for invalid configurations

Configuration File Format:
-------------------------
scraper:
  start_urls:
    - https://example.com/catalog
  max_pages: null
  checkpoint_path: data/checkpoint.json
  flush_every_tasks: 10

stages:
  rate_limiting:
    delay_min_seconds: 1.0
    delay_max_seconds: 3.0
  fetch:
    max_retries: 3
  storage:
    output_format: csv
    output_path: data/records.csv
  # ... url_validation, parse
"""

from .crawler_config import ConfigLoader, validate_config
from ..exceptions import ConfigurationError

__all__ = [
    'ConfigLoader',
    'validate_config',
    'ConfigurationError',
]
