"""
Scraper Configuration Management - Centralized configuration loading and validation.
Supports loading from YAML files with validation and defaults.
"""

import logging
import yaml
from typing import Dict, Any, Union, get_args, get_origin
from pathlib import Path
from dataclasses import asdict, fields, is_dataclass

from ..exceptions import ConfigurationError
from ..pipeline.stages.url_validation_stage import URLValidationConfig
from ..pipeline.stages.rate_limiting_stage import RateLimitConfig, KEY_STRATEGIES
from ..pipeline.stages.fetch_stage import FetchConfig
from ..pipeline.stages.parse_stage import ParseConfig
from ..pipeline.stages.storage_stage import StorageConfig, OUTPUT_FORMATS, RECORD_FIELDS
from ..core.pipeline_crawler import ScraperConfig


STAGE_SECTIONS = {
    'url_validation': URLValidationConfig,
    'rate_limiting': RateLimitConfig,
    'fetch': FetchConfig,
    'parse': ParseConfig,
    'storage': StorageConfig,
}

SCRAPER_KEYS = (
    'start_urls', 'max_pages', 'follow_links', 'poll_interval_seconds',
    'checkpoint_path', 'flush_every_tasks',
)


class ConfigLoader:
    """Loads and validates scraper configuration from YAML files."""

    def __init__(self):
        self.logger = logging.getLogger(self.__class__.__name__)

    @staticmethod
    def load_from_yaml(config_path: str) -> ScraperConfig:
        """
        Load configuration from YAML file.

        Args:
            config_path: Path to YAML configuration file

        Returns:
            ScraperConfig object

        Raises:
            ConfigurationError: If configuration is invalid
        """
        logger = logging.getLogger(__name__)

        # Check if file exists
        path = Path(config_path)
        if not path.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        # Load YAML
        try:
            with open(path, 'r', encoding='utf-8') as f:
                config_dict = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {config_path}: {e}")
        except OSError as e:
            raise ConfigurationError(f"Failed to read {config_path}: {e}")

        if not config_dict:
            raise ConfigurationError(f"Empty configuration file: {config_path}")
        if not isinstance(config_dict, dict):
            raise ConfigurationError(f"Top level of {config_path} must be a mapping")

        logger.info(f"Loaded configuration from {config_path}")

        return ConfigLoader._parse_config(config_dict)

    @staticmethod
    def _parse_config(config_dict: Dict[str, Any]) -> ScraperConfig:
        """Parse configuration dictionary into ScraperConfig object."""
        unknown = set(config_dict) - {'scraper', 'stages'}
        if unknown:
            raise ConfigurationError(f"Unknown top-level sections: {', '.join(sorted(unknown))}")

        scraper = config_dict.get('scraper') or {}
        stages = config_dict.get('stages') or {}
        for section, values in (('scraper', scraper), ('stages', stages)):
            if not isinstance(values, dict):
                raise ConfigurationError(f"{section} must be a mapping")

        unknown = set(stages) - set(STAGE_SECTIONS)
        if unknown:
            raise ConfigurationError(f"Unknown stage sections: {', '.join(sorted(unknown))}")

        stage_configs = {
            name: _build_stage_config(name, config_class, stages.get(name) or {})
            for name, config_class in STAGE_SECTIONS.items()
        }

        unknown = set(scraper) - set(SCRAPER_KEYS)
        if unknown:
            raise ConfigurationError(f"Unknown scraper settings: {', '.join(sorted(unknown))}")

        start_urls = scraper.get('start_urls') or []
        if isinstance(start_urls, str):
            start_urls = [start_urls]
        if not isinstance(start_urls, list):
            raise ConfigurationError("scraper.start_urls must be a URL or a list of URLs")

        return ScraperConfig(
            start_urls=list(start_urls),
            max_pages=scraper.get('max_pages'),
            follow_links=scraper.get('follow_links', True),
            poll_interval_seconds=scraper.get('poll_interval_seconds', 1.0),
            checkpoint_path=scraper.get('checkpoint_path', 'data/checkpoint.json'),
            flush_every_tasks=scraper.get('flush_every_tasks', 10),
            **stage_configs
        )

    @staticmethod
    def save_to_yaml(config: ScraperConfig, output_path: str):
        """Save configuration to YAML file."""
        logger = logging.getLogger(__name__)

        config_dict = {
            'scraper': {key: getattr(config, key) for key in SCRAPER_KEYS},
            'stages': {
                name: asdict(getattr(config, name)) for name in STAGE_SECTIONS
            }
        }

        path = Path(output_path)
        path.parent.mkdir(parents=True, exist_ok=True)

        try:
            with open(path, 'w', encoding='utf-8') as f:
                yaml.safe_dump(config_dict, f, default_flow_style=False, indent=2,
                               sort_keys=False, allow_unicode=True)
            logger.info(f"Configuration saved to {output_path}")
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Failed to save configuration: {e}")

    @staticmethod
    def create_default_config() -> ScraperConfig:
        """Create a default configuration."""
        return ScraperConfig(
            url_validation=URLValidationConfig(),
            rate_limiting=RateLimitConfig(),
            fetch=FetchConfig(),
            parse=ParseConfig(),
            storage=StorageConfig(),
            start_urls=[],
            max_pages=None,
            follow_links=True,
            poll_interval_seconds=1.0,
            checkpoint_path='data/checkpoint.json',
            flush_every_tasks=10
        )


def _build_stage_config(name: str, config_class, values: Dict[str, Any]):
    if not isinstance(values, dict):
        raise ConfigurationError(f"stages.{name} must be a mapping")

    known = {f.name for f in fields(config_class)}
    unknown = set(values) - known
    if unknown:
        raise ConfigurationError(f"Unknown settings in stages.{name}: {', '.join(sorted(unknown))}")

    try:
        return config_class(**values)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid stages.{name}: {e}")


def _type_name(expected) -> str:
    return getattr(expected, '__name__', str(expected).replace('typing.', ''))


def _matches_type(value, expected) -> bool:
    """isinstance() for the annotations used by the config dataclasses."""
    if expected is Any:
        return True
    if expected is type(None):
        return value is None

    origin = get_origin(expected)
    if origin is Union:
        return any(_matches_type(value, arg) for arg in get_args(expected))
    if origin is list:
        item_type = (get_args(expected) or (Any,))[0]
        return isinstance(value, list) and all(_matches_type(v, item_type) for v in value)
    if origin is dict:
        key_type, value_type = get_args(expected) or (Any, Any)
        return isinstance(value, dict) and all(
            _matches_type(k, key_type) and _matches_type(v, value_type)
            for k, v in value.items()
        )

    # bool is a subclass of int; YAML's true/false must not pass as numbers
    if expected is bool:
        return isinstance(value, bool)
    if expected is int:
        return isinstance(value, int) and not isinstance(value, bool)
    if expected is float:
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    return isinstance(value, expected) if isinstance(expected, type) else True


def _check_types(section: str, config_obj):
    for f in fields(config_obj):
        value = getattr(config_obj, f.name)
        if is_dataclass(value):
            continue
        if value is None and f.default is None:
            continue
        if not _matches_type(value, f.type):
            raise ConfigurationError(
                f"{section}.{f.name} must be {_type_name(f.type)}, got {value!r}"
            )


def validate_config(config: ScraperConfig) -> bool:
    """
    Validate scraper configuration.

    Raises:
        ConfigurationError: On the first invalid value
    """
    logger = logging.getLogger(__name__)

    _check_types('scraper', config)
    for name in STAGE_SECTIONS:
        _check_types(f"stages.{name}", getattr(config, name))

    rate = config.rate_limiting
    if rate.delay_min_seconds < 0 or rate.delay_max_seconds < 0:
        raise ConfigurationError("Delays cannot be negative")

    if rate.delay_min_seconds > rate.delay_max_seconds:
        raise ConfigurationError(
            f"delay_min_seconds ({rate.delay_min_seconds}) must not exceed "
            f"delay_max_seconds ({rate.delay_max_seconds})"
        )

    if rate.key_strategy not in KEY_STRATEGIES:
        raise ConfigurationError(f"Unknown key_strategy '{rate.key_strategy}'. "
                                 f"Use one of {', '.join(KEY_STRATEGIES)}")

    fetch = config.fetch
    if fetch.max_retries < 0:
        raise ConfigurationError("max_retries cannot be negative")

    if fetch.timeout_seconds <= 0:
        raise ConfigurationError("timeout_seconds must be positive")

    if fetch.max_redirects < 0:
        raise ConfigurationError("max_redirects cannot be negative")

    if fetch.backoff_base_seconds < 0 or fetch.backoff_max_seconds < fetch.backoff_base_seconds:
        raise ConfigurationError("backoff_max_seconds must be at least backoff_base_seconds >= 0")

    if fetch.backoff_factor < 1:
        raise ConfigurationError("backoff_factor must be at least 1")

    if fetch.backoff_jitter < 0:
        raise ConfigurationError("backoff_jitter cannot be negative")

    storage = config.storage
    if storage.output_format.lower() not in OUTPUT_FORMATS:
        raise ConfigurationError(f"Unknown output format '{storage.output_format}'. "
                                 f"Use one of {', '.join(OUTPUT_FORMATS)}")

    if not storage.fields:
        raise ConfigurationError("storage.fields cannot be empty")

    unknown_fields = [f for f in storage.fields if f not in RECORD_FIELDS]
    if unknown_fields:
        raise ConfigurationError(f"Unknown output fields: {', '.join(unknown_fields)}")

    if config.url_validation.max_depth < 0:
        raise ConfigurationError("max_depth cannot be negative")

    if config.max_pages is not None and config.max_pages < 1:
        raise ConfigurationError("max_pages must be at least 1")

    if config.poll_interval_seconds <= 0:
        raise ConfigurationError("poll_interval_seconds must be positive")

    if config.flush_every_tasks < 1:
        raise ConfigurationError("flush_every_tasks must be at least 1")

    logger.info("Configuration validated successfully")
    return True
