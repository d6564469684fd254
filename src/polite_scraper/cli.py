"""
Command Line Interface for the Polite Scraper.

This module provides a command-line interface for running the scraper and
managing configurations.

Usage Examples:
--------------

# Basic scrape
polite-scraper scrape --start-url https://example.com/catalog

# Scrape with custom configuration
polite-scraper scrape --start-url https://example.com/catalog -c config/production.yaml

# Slower, more patient scrape written as JSON
polite-scraper scrape --start-url https://example.com/catalog \\
    --delay-min 3 --delay-max 8 --max-retries 6 --output json

# Discard the checkpoint and start over
polite-scraper scrape --start-url https://example.com/catalog --fresh

# Create default configuration
polite-scraper config --create-default -o config/default.yaml

# Validate configuration
polite-scraper config --validate config/my_config.yaml

# Verbose logging
polite-scraper -v scrape --start-url https://example.com/catalog
"""

import argparse
import logging
import signal
import sys
from pathlib import Path

from .core.pipeline_crawler import PipelineScraper
from .config.crawler_config import ConfigLoader, validate_config
from .exceptions import ConfigurationError, InvalidInput, CheckpointCorrupt
from .pipeline.stages.storage_stage import OUTPUT_FORMATS
from .pipeline.stages.url_validation_stage import URLValidationStage


EXIT_OK = 0
EXIT_ERROR = 1
EXIT_INTERRUPTED = 130


def setup_logging(verbose: bool = False):
    """
    Setup logging configuration.

    Args:
        verbose: Enable debug-level logging if True
    """
    level = logging.DEBUG if verbose else logging.INFO

    # Create logs directory if it doesn't exist
    log_dir = Path('logs')
    log_dir.mkdir(exist_ok=True)

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler(log_dir / 'scraper.log')
        ]
    )

    # Set third-party loggers to WARNING to reduce noise
    if not verbose:
        logging.getLogger('urllib3').setLevel(logging.WARNING)
        logging.getLogger('requests').setLevel(logging.WARNING)


def apply_overrides(config, args):
    """Apply command line overrides on top of the loaded configuration."""
    logger = logging.getLogger(__name__)

    if args.start_urls:
        config.start_urls = list(args.start_urls)

    if args.max_retries is not None:
        config.fetch.max_retries = args.max_retries
        logger.info(f"Set max_retries to {args.max_retries}")

    if args.delay_min is not None:
        config.rate_limiting.delay_min_seconds = args.delay_min
        logger.info(f"Set delay_min to {args.delay_min} seconds")

    if args.delay_max is not None:
        config.rate_limiting.delay_max_seconds = args.delay_max
        logger.info(f"Set delay_max to {args.delay_max} seconds")

    if args.output:
        config.storage.output_format = args.output
        if not args.output_path:
            # Keep the configured location, switch the extension
            config.storage.output_path = str(
                Path(config.storage.output_path).with_suffix(f".{args.output}")
            )
        logger.info(f"Set output format to {args.output}")

    if args.output_path:
        config.storage.output_path = args.output_path

    if args.checkpoint:
        config.checkpoint_path = args.checkpoint

    if args.max_pages is not None:
        config.max_pages = args.max_pages
        logger.info(f"Set max_pages to {args.max_pages}")

    if args.no_follow:
        config.follow_links = False

    return config


def scrape_command(args) -> int:
    """
    Execute the scrape command.

    Args:
        args: Parsed command-line arguments

    Returns:
        Process exit code
    """
    logger = logging.getLogger(__name__)

    try:
        # Load configuration
        if args.config:
            logger.info(f"Loading configuration from {args.config}")
            config = ConfigLoader.load_from_yaml(args.config)
        else:
            logger.info("Using default configuration")
            config = ConfigLoader.create_default_config()

        apply_overrides(config, args)
        validate_config(config)

        if not config.start_urls:
            raise ConfigurationError("No start URLs given (use --start-url or scraper.start_urls)")

        # Malformed or filtered start URLs are rejected before anything is fetched
        validator = URLValidationStage(config.url_validation)
        for url in config.start_urls:
            if validator.process(url) is None:
                raise InvalidInput(f"Start URL excluded by url_validation settings: {url}")

        scraper = PipelineScraper(config)
        if args.fresh:
            scraper.checkpoint_store.clear()

    except (ConfigurationError, InvalidInput) as e:
        print(f"✗ {e}")
        logger.error(f"Invalid input: {e}")
        return EXIT_ERROR

    def handle_signal(signum, frame):
        logger.info(f"Received signal {signum}")
        scraper.request_stop()

    previous_handlers = {
        signum: signal.signal(signum, handle_signal)
        for signum in (signal.SIGINT, signal.SIGTERM)
    }

    print("\n" + "="*60)
    print("STARTING POLITE SCRAPER")
    print("="*60)

    try:
        scraper.run()
    except CheckpointCorrupt as e:
        print(f"✗ Checkpoint error: {e}")
        print("  Re-run with --fresh to discard the checkpoint and start over.")
        logger.error(f"Checkpoint error: {e}")
        return EXIT_ERROR
    except Exception as e:
        logger.error(f"Scrape failed: {e}", exc_info=True)
        return EXIT_ERROR
    finally:
        for signum, handler in previous_handlers.items():
            signal.signal(signum, handler)

    # Print final statistics
    print("\n" + "="*60)
    print("FINAL STATISTICS")
    print("="*60)
    scraper.print_status()

    if scraper.interrupted:
        logger.info("Scrape interrupted; progress saved to checkpoint")
        return EXIT_INTERRUPTED

    logger.info("Scrape finished successfully")
    return EXIT_OK


def config_command(args) -> int:
    """
    Execute the config command.

    Args:
        args: Parsed command-line arguments

    Returns:
        Process exit code
    """
    logger = logging.getLogger(__name__)

    try:
        if args.create_default:
            config = ConfigLoader.create_default_config()
            output_path = args.output or 'config/default.yaml'

            ConfigLoader.save_to_yaml(config, output_path)
            print(f"✓ Default configuration created at: {output_path}")
            logger.info(f"Default configuration created at {output_path}")

        elif args.validate:
            print(f"Validating configuration: {args.validate}")
            config = ConfigLoader.load_from_yaml(args.validate)
            validate_config(config)
            print(f"✓ Configuration is valid: {args.validate}")
            logger.info(f"Configuration {args.validate} is valid")

        else:
            print("Error: Please specify --create-default or --validate")
            return EXIT_ERROR

    except ConfigurationError as e:
        print(f"✗ Configuration error: {e}")
        logger.error(f"Configuration error: {e}")
        return EXIT_ERROR

    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='polite-scraper',
        description='Polite Scraper - A resumable, rate-limited scraping pipeline',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s scrape --start-url https://example.com/catalog
  %(prog)s scrape --start-url https://example.com/catalog --output json
  %(prog)s scrape --start-url https://example.com/catalog -c config/production.yaml
  %(prog)s config --create-default -o config/default.yaml
  %(prog)s config --validate config/my_config.yaml
        """
    )

    parser.add_argument(
        '-v', '--verbose',
        action='store_true',
        help='Enable verbose (debug) logging'
    )

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    # ========================================================================
    # SCRAPE COMMAND
    # ========================================================================
    scrape_parser = subparsers.add_parser(
        'scrape',
        help='Scrape item records starting from one or more URLs',
        description='Scrape item records, resuming from the checkpoint if one exists'
    )

    scrape_parser.add_argument(
        '--start-url',
        dest='start_urls',
        action='append',
        metavar='URL',
        help='URL to start from (repeatable; default: scraper.start_urls from config)'
    )

    scrape_parser.add_argument(
        '-c', '--config',
        help='Path to YAML configuration file (default: use built-in defaults)'
    )

    scrape_parser.add_argument(
        '--max-retries',
        type=int,
        metavar='N',
        help='Retries for 429/503, timeouts and connection errors before giving up'
    )

    scrape_parser.add_argument(
        '--delay-min',
        type=float,
        metavar='SECONDS',
        help='Minimum delay between requests to the same host'
    )

    scrape_parser.add_argument(
        '--delay-max',
        type=float,
        metavar='SECONDS',
        help='Maximum delay between requests to the same host'
    )

    scrape_parser.add_argument(
        '--output',
        choices=OUTPUT_FORMATS,
        help='Output format'
    )

    scrape_parser.add_argument(
        '--output-path',
        metavar='PATH',
        help='Output file path'
    )

    scrape_parser.add_argument(
        '--checkpoint',
        metavar='PATH',
        help='Checkpoint file path'
    )

    scrape_parser.add_argument(
        '-p', '--max-pages',
        type=int,
        metavar='N',
        help='Stop after N pages; the rest stays in the checkpoint'
    )

    scrape_parser.add_argument(
        '--no-follow',
        action='store_true',
        help='Do not follow pagination links'
    )

    scrape_parser.add_argument(
        '--fresh',
        action='store_true',
        help='Discard any existing checkpoint and start over'
    )

    scrape_parser.set_defaults(func=scrape_command)

    # ========================================================================
    # CONFIG COMMAND
    # ========================================================================
    config_parser = subparsers.add_parser(
        'config',
        help='Configuration management',
        description='Create or validate configuration files'
    )

    config_parser.add_argument(
        '--create-default',
        action='store_true',
        help='Create a default configuration file'
    )

    config_parser.add_argument(
        '--validate',
        metavar='FILE',
        help='Validate a configuration file'
    )

    config_parser.add_argument(
        '-o', '--output',
        metavar='FILE',
        help='Output path for created configuration (default: config/default.yaml)'
    )

    config_parser.set_defaults(func=config_command)

    return parser


def main(argv=None):
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(args.verbose)

    if not hasattr(args, 'func'):
        parser.print_help()
        sys.exit(EXIT_OK)

    sys.exit(args.func(args))


if __name__ == '__main__':
    main()
