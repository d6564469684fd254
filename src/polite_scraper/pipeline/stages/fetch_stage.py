"""
HTTP Fetch Stage - Downloads pages one request at a time.

Retries are not loops: a retryable failure updates the task's attempt count
and next_eligible_time and puts it back on the Frontier. The worker picks it
up again once it becomes eligible.
"""

import itertools
import logging
import random
import threading
import time
from datetime import datetime, timezone
from threading import Event
from typing import Optional, Dict, List
from dataclasses import dataclass, field

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry
from requests.exceptions import (
    RequestException, Timeout, ConnectionError, ChunkedEncodingError, ContentDecodingError
)

from ..clock import Clock
from ..stage import PipelineStage
from ..pipeline_data import FetchTask, FetchResult
from .rate_limiting_stage import BackoffPolicy, RateLimitingStage
from ...exceptions import FetchTransient, FetchFailed, FailureReason


@dataclass
class FetchConfig:
    """Configuration for HTTP fetch stage."""
    timeout_seconds: float = 30
    max_retries: int = 3
    max_redirects: int = 5
    verify_ssl: bool = True
    user_agent: str = "PoliteScraper/1.0 (+https://example.org/bot)"
    max_content_size_mb: int = 10  # Drop pages larger than this

    # Request headers
    accept_language: str = "en-US,en;q=0.9"
    accept_encoding: str = "gzip, deflate"
    extra_headers: Dict[str, str] = field(default_factory=dict)

    # Retry settings
    retry_on_status: List[int] = None
    backoff_base_seconds: float = 2.0
    backoff_factor: float = 2.0
    backoff_max_seconds: float = 300.0
    backoff_jitter: float = 0.25  # Fraction of the raw delay added at random

    # Proxy rotation (round-robin); empty means direct connections
    proxies: List[str] = field(default_factory=list)

    # Connection pooling
    pool_connections: int = 10
    pool_maxsize: int = 10

    def __post_init__(self):
        """Set default retry status codes."""
        if self.retry_on_status is None:
            self.retry_on_status = [429, 503]


class SessionManager:
    """Manages one requests session per worker thread."""

    def __init__(self, config: FetchConfig):
        self.config = config
        self.sessions: Dict[int, requests.Session] = {}
        self.lock = threading.Lock()
        self.logger = logging.getLogger(self.__class__.__name__)

    def get_session(self) -> requests.Session:
        thread_id = threading.get_ident()
        with self.lock:
            if thread_id not in self.sessions:
                self.sessions[thread_id] = self._create_session()
            return self.sessions[thread_id]

    def _create_session(self) -> requests.Session:
        session = requests.Session()
        # Retries are scheduled through the Frontier, never inside urllib3
        adapter = HTTPAdapter(max_retries=Retry(total=0, raise_on_status=False),
                              pool_connections=self.config.pool_connections,
                              pool_maxsize=self.config.pool_maxsize)
        session.mount("http://", adapter)
        session.mount("https://", adapter)
        session.max_redirects = self.config.max_redirects
        session.headers.update(build_headers(self.config))
        return session

    def close_all(self):
        with self.lock:
            for session in self.sessions.values():
                session.close()
            self.sessions.clear()


class ProxyRotator:
    """Round-robin over configured proxies."""

    def __init__(self, proxies: List[str]):
        self.proxies = list(proxies)
        self._cycle = itertools.cycle(self.proxies) if self.proxies else None
        self.lock = threading.Lock()

    def next_proxy(self) -> Optional[str]:
        if self._cycle is None:
            return None
        with self.lock:
            return next(self._cycle)


def build_headers(config: FetchConfig) -> Dict[str, str]:
    """Fixed identifying header set sent with every request."""
    headers = {
        'User-Agent': config.user_agent,
        'Accept': 'text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8',
        'Accept-Language': config.accept_language,
        'Accept-Encoding': config.accept_encoding,
    }
    headers.update(config.extra_headers or {})
    return headers


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Retry-After in delta-seconds form; HTTP-date values are ignored."""
    if not value:
        return None
    try:
        seconds = float(value.strip())
    except ValueError:
        return None
    return seconds if seconds >= 0 else None


class FetchStage(PipelineStage):
    """
    HTTP Fetch.

    Responsibilities:
    - Wait out the per-host politeness delay
    - Issue one GET with the fixed header set
    - Turn 429/503, connection errors and timeouts into backoff + reschedule
    - Drop tasks whose retry limit is exceeded (FetchFailed PermanentlyBlocked)
    """

    def __init__(self, config: FetchConfig, frontier,
                 rate_limiter: RateLimitingStage, clock: Optional[Clock] = None,
                 rng: Optional[random.Random] = None,
                 interrupt: Optional[Event] = None):
        super().__init__("HTTPFetch")
        self.config = config
        self.frontier = frontier
        self.rate_limiter = rate_limiter
        self.clock = clock or Clock()
        self.logger = logging.getLogger(self.__class__.__name__)
        self.interrupt = interrupt  # Shutdown signal; cuts delay waits short

        self.session_manager = SessionManager(config)
        self.proxy_rotator = ProxyRotator(config.proxies)
        self.backoff = BackoffPolicy(
            base_seconds=config.backoff_base_seconds,
            factor=config.backoff_factor,
            max_seconds=config.backoff_max_seconds,
            jitter=config.backoff_jitter,
            rng=rng
        )

        self.stats = {
            'total_fetched': 0, 'successful': 0, 'rescheduled': 0,
            'permanently_blocked': 0, 'failed': 0, 'http_errors': {},
            'total_bytes': 0, 'total_response_time': 0.0,
        }

    def process(self, data: FetchTask) -> Optional[FetchResult]:
        return self.fetch(data, self.interrupt)

    def fetch(self, task: FetchTask, interrupt: Optional[Event] = None) -> Optional[FetchResult]:
        """
        Fetch one task.

        Returns:
            FetchResult on success, or None if the task was put back on the
            Frontier (transient failure or shutdown during the delay wait)

        Raises:
            FetchFailed: If the task is dropped
        """
        proxy = self.proxy_rotator.next_proxy()

        self.rate_limiter.wait(task, proxy, interrupt)
        if interrupt is not None and interrupt.is_set():
            self.logger.debug(f"Shutdown requested, not fetching {task.url}")
            self.frontier.reschedule(task)
            return None

        try:
            result = self._get(task, proxy)
        except FetchTransient as e:
            return self._handle_transient(task, e)
        except FetchFailed as e:
            with self.stats_lock:
                self.stats['total_fetched'] += 1
                self.stats['failed'] += 1
                if e.status_code:
                    self.stats['http_errors'][e.status_code] = \
                        self.stats['http_errors'].get(e.status_code, 0) + 1
            raise
        finally:
            self.rate_limiter.mark_request(task, proxy)

        with self.stats_lock:
            self.stats['total_fetched'] += 1
            self.stats['successful'] += 1
            self.stats['total_bytes'] += len(result.body)
            self.stats['total_response_time'] += result.response_time

        self.logger.info(f"Fetched: {task.url} ({len(result.body)}b, "
                         f"{result.response_time:.2f}s, attempt {task.attempt_count})")
        return result

    def _handle_transient(self, task: FetchTask, error: FetchTransient) -> None:
        now = self.clock.now()
        delay = self.backoff.apply(task, now)
        if error.retry_after is not None:
            task.next_eligible_time = max(task.next_eligible_time, now + error.retry_after)

        with self.stats_lock:
            self.stats['total_fetched'] += 1
            if error.status_code:
                self.stats['http_errors'][error.status_code] = \
                    self.stats['http_errors'].get(error.status_code, 0) + 1

        if task.attempt_count > self.config.max_retries:
            with self.stats_lock:
                self.stats['permanently_blocked'] += 1
            raise FetchFailed(
                task.url, FailureReason.PERMANENTLY_BLOCKED,
                f"gave up after {task.attempt_count} failed attempts: {error}",
                status_code=error.status_code,
                attempt_count=task.attempt_count
            )

        with self.stats_lock:
            self.stats['rescheduled'] += 1

        self.logger.warning(
            f"Transient failure for {task.url}: {error} "
            f"(attempt {task.attempt_count}/{self.config.max_retries}, "
            f"retry in {task.next_eligible_time - now:.1f}s)"
        )
        self.frontier.reschedule(task)
        return None

    def _get(self, task: FetchTask, proxy: Optional[str]) -> FetchResult:
        """Single GET; classifies failures as FetchTransient or FetchFailed."""
        session = self.session_manager.get_session()
        proxies = {'http': proxy, 'https': proxy} if proxy else None
        start_time = time.time()
        max_bytes = self.config.max_content_size_mb * 1024 * 1024

        try:
            response = session.get(
                task.url, timeout=self.config.timeout_seconds,
                allow_redirects=True, verify=self.config.verify_ssl,
                stream=True, proxies=proxies
            )
        except (Timeout, ConnectionError) as e:
            raise FetchTransient(task.url, f"{e.__class__.__name__}: {e}")
        except RequestException as e:
            raise FetchFailed(task.url, FailureReason.REQUEST_ERROR, str(e),
                              attempt_count=task.attempt_count)

        try:
            status = response.status_code

            if status in self.config.retry_on_status:
                raise FetchTransient(
                    task.url, f"HTTP {status}", status_code=status,
                    retry_after=parse_retry_after(response.headers.get('Retry-After'))
                )

            if not 200 <= status < 300:
                raise FetchFailed(task.url, FailureReason.HTTP_STATUS, f"HTTP {status}",
                                  status_code=status, attempt_count=task.attempt_count)

            content_length = response.headers.get('Content-Length')
            if content_length and content_length.isdigit() and int(content_length) > max_bytes:
                raise FetchFailed(task.url, FailureReason.CONTENT_TOO_LARGE,
                                  f"Content-Length {content_length}",
                                  status_code=status, attempt_count=task.attempt_count)

            content = b''
            try:
                for chunk in response.iter_content(chunk_size=8192):
                    content += chunk
                    if len(content) > max_bytes:
                        raise FetchFailed(task.url, FailureReason.CONTENT_TOO_LARGE,
                                          "body exceeded size limit", status_code=status,
                                          attempt_count=task.attempt_count)
            except (Timeout, ConnectionError, ChunkedEncodingError) as e:
                raise FetchTransient(task.url, f"{e.__class__.__name__}: {e}")
            except ContentDecodingError as e:
                raise FetchFailed(task.url, FailureReason.REQUEST_ERROR,
                                  f"undecodable body: {e}", attempt_count=task.attempt_count)
            except RequestException as e:
                raise FetchFailed(task.url, FailureReason.REQUEST_ERROR, str(e),
                                  attempt_count=task.attempt_count)

            return FetchResult(
                task=task,
                status_code=status,
                body=content.decode('utf-8', errors='replace'),
                final_url=response.url or task.url,
                headers=dict(response.headers),
                fetched_at=datetime.fromtimestamp(self.clock.now(), tz=timezone.utc),
                response_time=time.time() - start_time,
                proxy=proxy
            )
        finally:
            response.close()

    def close(self):
        """Release all sessions."""
        self.session_manager.close_all()
        self.logger.info("Fetch stage resources released.")

    def get_stats(self) -> dict:
        base_stats = super().get_stats()
        with self.stats_lock:
            base_stats['fetch_stats'] = dict(self.stats, http_errors=dict(self.stats['http_errors']))
        return base_stats
