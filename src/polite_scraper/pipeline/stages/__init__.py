"""
Pipeline Stages Module

Pipeline Flow (per host worker):
--------------------------------
1. URLValidationStage  - Normalizes and validates URLs entering the Frontier
2. RateLimitingStage   - Randomized per-host delay before each request
3. FetchStage          - One HTTP GET; backoff and reschedule on transient errors
4. ParseStage          - Lazily extracts item records and pagination links
5. StorageStage        - Dedupes by item id and appends to CSV or JSON
"""

from .url_validation_stage import URLValidationStage, URLValidationConfig
from .duplicate_detection_stage import SetBasedDetector
from .rate_limiting_stage import RateLimitingStage, RateLimitConfig, BackoffPolicy
from .fetch_stage import FetchStage, FetchConfig
from .parse_stage import ParseStage, ParseConfig
from .storage_stage import StorageStage, StorageConfig


__all__ = [
    'URLValidationStage',
    'RateLimitingStage',
    'FetchStage',
    'ParseStage',
    'StorageStage',

    'URLValidationConfig',
    'RateLimitConfig',
    'FetchConfig',
    'ParseConfig',
    'StorageConfig',

    'SetBasedDetector',
    'BackoffPolicy',
]
