"""
HTML Parsing Stage - Extracts structured item records from raw HTML.

Selectors are configuration, not code: the container selector picks one
element per item, and the id/title/price selectors are applied inside it.
"""

import logging
from datetime import datetime, timezone
from typing import Optional, Iterator, List
from dataclasses import dataclass
from urllib.parse import urljoin, urlparse

from bs4 import BeautifulSoup, FeatureNotFound, Comment

from ..stage import PipelineStage
from ..pipeline_data import FetchResult, Record
from ..normalization import normalize_whitespace, parse_price
from ...exceptions import ParseSkip, ConfigurationError


SKIP_LINK_SCHEMES = ('mailto:', 'tel:', 'javascript:', 'data:', 'ftp:', 'file:', 'about:')


@dataclass
class ParseConfig:
    """Configuration for HTML parsing stage."""
    parser: str = "html.parser"  # 'html.parser', 'lxml', or 'html5lib'

    # Item extraction
    item_selector: str = "[data-item-id]"
    item_id_attribute: Optional[str] = "data-item-id"
    item_id_selector: Optional[str] = None  # Used when the id is element text
    title_selector: str = ".title"
    price_selector: str = ".price"
    currency_attribute: Optional[str] = "data-currency"
    default_currency: str = "USD"

    # Follow-up pages (pagination)
    next_page_selector: Optional[str] = "a[rel~=next]"

    strip_comments: bool = True
    max_html_size_mb: int = 5  # Skip parsing if HTML larger than this


class HTMLParser:
    """Handles HTML parsing with BeautifulSoup."""

    def __init__(self, config: ParseConfig):
        self.config = config
        self.logger = logging.getLogger(self.__class__.__name__)

        self._verify_parser()

    def _verify_parser(self):
        """Verify the configured parser is available."""
        try:
            BeautifulSoup("<html></html>", self.config.parser)
            self.logger.debug(f"Using parser: {self.config.parser}")
        except FeatureNotFound:
            self.logger.warning(f"Parser '{self.config.parser}' not available, "
                                f"falling back to 'html.parser'")
            self.config.parser = "html.parser"

    def parse(self, html: str) -> Optional[BeautifulSoup]:
        """
        Parse HTML string into BeautifulSoup object.

        Returns:
            BeautifulSoup object or None if the document is too large
        """
        html_size_mb = len(html.encode('utf-8')) / (1024 * 1024)
        if html_size_mb > self.config.max_html_size_mb:
            self.logger.warning(f"HTML too large to parse: {html_size_mb:.2f} MB")
            return None

        soup = BeautifulSoup(html, self.config.parser)

        if self.config.strip_comments:
            for comment in soup.find_all(string=lambda text: isinstance(text, Comment)):
                comment.extract()

        return soup


class ParseStage(PipelineStage):
    """
    HTML Parsing.

    Responsibilities:
    - Produce a lazy, finite sequence of Records from one page
    - Skip (and log) entries that cannot be fully populated
    - Extract follow-up page links
    """

    def __init__(self, config: Optional[ParseConfig] = None):
        super().__init__(name="HTMLParsing")
        self.config = config or ParseConfig()
        self.logger = logging.getLogger(self.__class__.__name__)

        self.html_parser = HTMLParser(self.config)
        self._verify_selectors()

        self.stats = {
            'pages_parsed': 0,
            'records_extracted': 0,
            'records_skipped': 0,
        }

    def _verify_selectors(self):
        sample = BeautifulSoup("<div></div>", self.config.parser)
        selectors = [
            self.config.item_selector, self.config.item_id_selector,
            self.config.title_selector, self.config.price_selector,
            self.config.next_page_selector,
        ]
        for selector in filter(None, selectors):
            try:
                sample.select(selector)
            except Exception as e:
                raise ConfigurationError(f"Invalid CSS selector {selector!r}: {e}")

        if not self.config.item_id_attribute and not self.config.item_id_selector:
            raise ConfigurationError("item_id_attribute or item_id_selector is required")

    def process(self, data: FetchResult) -> Iterator[Record]:
        return self.parse(data.body, fetched_at=data.fetched_at)

    def parse(self, body: str, fetched_at: Optional[datetime] = None) -> Iterator[Record]:
        """
        Lazily extract records from a page.

        Entries that fail extraction are logged and skipped; they never end
        the sequence.
        """
        fetched_at = fetched_at or datetime.now(timezone.utc)

        soup = self.html_parser.parse(body)
        if soup is None:
            return

        with self.stats_lock:
            self.stats['pages_parsed'] += 1

        for index, element in enumerate(soup.select(self.config.item_selector)):
            try:
                record = self._extract_record(element, fetched_at)
            except ParseSkip as e:
                self._skip(index, str(e))
                continue
            except Exception as e:
                self._skip(index, f"{e.__class__.__name__}: {e}")
                continue

            with self.stats_lock:
                self.stats['records_extracted'] += 1
            yield record

    def _skip(self, index: int, reason: str):
        with self.stats_lock:
            self.stats['records_skipped'] += 1
        self.logger.warning(f"Skipping entry #{index}: {reason}")

    def _extract_record(self, element, fetched_at: datetime) -> Record:
        item_id = self._extract_item_id(element)
        if not item_id:
            raise ParseSkip("missing item id")

        title_element = element.select_one(self.config.title_selector)
        title = normalize_whitespace(title_element.get_text(' ')) if title_element else ''
        if not title:
            raise ParseSkip(f"item {item_id}: missing title")

        price_element = element.select_one(self.config.price_selector)
        price_text = price_element.get_text(' ', strip=True) if price_element else ''
        if not price_text:
            raise ParseSkip(f"item {item_id}: missing price")

        try:
            price, currency = parse_price(price_text, self.config.default_currency)
        except ValueError as e:
            raise ParseSkip(f"item {item_id}: {e}")

        if price < 0:
            raise ParseSkip(f"item {item_id}: negative price {price}")

        if self.config.currency_attribute:
            explicit = element.get(self.config.currency_attribute) or \
                price_element.get(self.config.currency_attribute)
            if explicit:
                currency = explicit.strip().upper()

        return Record(
            item_id=item_id,
            title=title,
            price=price,
            currency=currency,
            fetched_at=fetched_at
        )

    def _extract_item_id(self, element) -> str:
        if self.config.item_id_attribute:
            value = element.get(self.config.item_id_attribute)
            if value:
                return str(value).strip()

        if self.config.item_id_selector:
            id_element = element.select_one(self.config.item_id_selector)
            if id_element:
                return id_element.get_text(strip=True)

        return ''

    def extract_links(self, body: str, base_url: str) -> List[str]:
        """Absolute follow-up URLs matched by next_page_selector, in page order."""
        if not self.config.next_page_selector:
            return []

        soup = self.html_parser.parse(body)
        if soup is None:
            return []

        links = []
        for anchor in soup.select(self.config.next_page_selector):
            href = (anchor.get('href') or '').strip()
            if not href or href.startswith('#') or href.lower().startswith(SKIP_LINK_SCHEMES):
                continue

            absolute_url = urljoin(base_url, href)
            if urlparse(absolute_url).scheme not in ('http', 'https'):
                continue
            if absolute_url not in links:
                links.append(absolute_url)

        return links

    def get_stats(self) -> dict:
        base_stats = super().get_stats()
        with self.stats_lock:
            base_stats['parse_stats'] = self.stats.copy()
        return base_stats
