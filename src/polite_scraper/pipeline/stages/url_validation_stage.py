"""
URL Validation Stage - Validates and normalizes URLs
File: src/polite_scraper/pipeline/stages/url_validation_stage.py
"""
from typing import Optional, List, Set
from dataclasses import dataclass
from urllib.parse import urlparse, urlunparse, parse_qsl, urlencode
import re
import logging

from ..stage import PipelineStage
from ...exceptions import InvalidInput


@dataclass
class URLValidationConfig:
    """Configuration for URL validation stage"""
    allowed_domains: List[str] = None
    allowed_schemes: List[str] = None
    blocked_extensions: List[str] = None
    ignored_query_params: List[str] = None
    max_url_length: int = 2048
    max_depth: int = 10

    def __post_init__(self):
        if self.allowed_schemes is None:
            self.allowed_schemes = ['http', 'https']
        if self.blocked_extensions is None:
            self.blocked_extensions = [
                '.pdf', '.jpg', '.jpeg', '.png', '.gif', '.bmp', '.svg', '.webp',
                '.zip', '.tar', '.gz', '.rar', '.7z',
                '.mp3', '.mp4', '.avi', '.mov',
                '.exe', '.dmg', '.pkg', '.deb', '.rpm'
            ]
        if self.ignored_query_params is None:
            self.ignored_query_params = [
                'utm_source', 'utm_medium', 'utm_campaign', 'utm_term', 'utm_content'
            ]
        if self.allowed_domains is None:
            self.allowed_domains = []


class URLValidationStage(PipelineStage):
    """
    Validates and normalizes URLs before they reach the Frontier.

    Responsibilities:
    - Validate URL format (malformed URLs raise InvalidInput)
    - Normalize URL (lowercase host, drop default port, sort params,
      drop tracking params and fragments)
    - Check domain whitelist, depth limit and file extension
    """

    def __init__(self, config: Optional[URLValidationConfig] = None):
        super().__init__(name="URL_Validation")
        self.config = config or URLValidationConfig()
        self.logger = logging.getLogger(self.__class__.__name__)

        # Convert to sets for O(1) lookup
        self.allowed_domains_set: Optional[Set[str]] = (
            {d.lower() for d in self.config.allowed_domains}
            if self.config.allowed_domains else None
        )
        self.blocked_extensions_set: Set[str] = set(self.config.blocked_extensions)
        self.ignored_params_set: Set[str] = set(self.config.ignored_query_params)

        # Host part of an absolute URL
        self.host_pattern = re.compile(
            r'^(?:(?:[A-Z0-9](?:[A-Z0-9-]{0,61}[A-Z0-9])?\.)+[A-Z]{2,63}\.?|'
            r'localhost|'
            r'\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3})$', re.IGNORECASE
        )

    def process(self, data: str) -> Optional[str]:
        """Normalize a URL; returns None if it is well-formed but filtered out"""
        normalized = self.normalize(data)
        if not self.is_allowed(normalized):
            return None
        return normalized

    def normalize(self, url: str) -> str:
        """
        Normalize URL to canonical form.

        Raises:
            InvalidInput: If the URL is malformed
        """
        if not url or not isinstance(url, str):
            raise InvalidInput(f"URL must be a non-empty string, got {url!r}")

        url = url.strip()
        if len(url) > self.config.max_url_length:
            raise InvalidInput(f"URL longer than {self.config.max_url_length} characters")

        try:
            parsed = urlparse(url)
            port = parsed.port
        except ValueError as e:
            raise InvalidInput(f"Malformed URL {url!r}: {e}")

        scheme = parsed.scheme.lower()
        if scheme not in self.config.allowed_schemes:
            raise InvalidInput(f"Unsupported scheme {parsed.scheme!r} in {url!r}")

        host = (parsed.hostname or '').lower()
        if not host or not self.host_pattern.match(host):
            raise InvalidInput(f"Malformed host in {url!r}")

        # Remove default ports
        netloc = host
        if port is not None and not (
            (scheme == 'http' and port == 80) or (scheme == 'https' and port == 443)
        ):
            netloc = f"{host}:{port}"

        # Remove trailing slash unless it's the root
        path = parsed.path
        if path.endswith('/') and len(path) > 1:
            path = path.rstrip('/')
        elif not path:
            path = '/'

        # Sort query parameters, dropping tracking params
        query = ''
        if parsed.query:
            params = [
                (k, v) for k, v in parse_qsl(parsed.query, keep_blank_values=True)
                if k not in self.ignored_params_set
            ]
            query = urlencode(sorted(params), doseq=True)

        return urlunparse((scheme, netloc, path, parsed.params, query, ''))

    def is_allowed(self, url: str, depth: int = 0) -> bool:
        """Check domain whitelist, depth limit and file extension of a normalized URL"""
        parsed = urlparse(url)

        if depth > self.config.max_depth:
            self.logger.debug(f"Max depth exceeded ({depth}): {url}")
            return False

        if not self._is_domain_allowed(parsed.hostname or ''):
            self.logger.debug(f"Domain not allowed: {parsed.netloc}")
            return False

        if self._has_blocked_extension(parsed.path):
            self.logger.debug(f"Blocked extension: {url}")
            return False

        return True

    def _is_domain_allowed(self, domain: str) -> bool:
        """Check if domain is allowed based on whitelist"""
        if not self.allowed_domains_set:
            return True

        # Exact match or subdomain
        for allowed in self.allowed_domains_set:
            if domain == allowed or domain.endswith('.' + allowed):
                return True
        return False

    def _has_blocked_extension(self, path: str) -> bool:
        """Check if URL path has a blocked file extension"""
        path_lower = path.lower()
        return any(path_lower.endswith(ext) for ext in self.blocked_extensions_set)
