"""Shared fixtures: a simulated clock and a canned HTTP site."""

import threading
from unittest.mock import MagicMock, patch

import pytest
from requests import Response
from requests.exceptions import ContentDecodingError
from requests.structures import CaseInsensitiveDict

from polite_scraper.pipeline.stages.fetch_stage import SessionManager


BASE_URL = "https://shop.example.test"


class FakeClock:
    """Clock whose sleep() advances simulated time instantly."""

    def __init__(self, start: float = 1_000_000.0):
        self.current = start
        self.sleeps = []
        self.lock = threading.Lock()

    def now(self) -> float:
        with self.lock:
            return self.current

    def sleep(self, seconds, interrupt=None) -> bool:
        if seconds > 0:
            with self.lock:
                self.sleeps.append(seconds)
                self.current += seconds
        return bool(interrupt is not None and interrupt.is_set())

    def advance(self, seconds: float):
        with self.lock:
            self.current += seconds


def make_response(status=200, body="", url=BASE_URL + "/", headers=None) -> Response:
    response = Response()
    response.status_code = status
    response._content = body.encode("utf-8") if isinstance(body, str) else body
    response._content_consumed = True
    response.headers = CaseInsensitiveDict(headers or {})
    response.url = url
    response.encoding = "utf-8"
    return response


def undecodable_response(url=BASE_URL + "/") -> Response:
    """200 whose body stream fails like a corrupt gzip payload."""
    response = make_response(200, "", url, {"Content-Encoding": "gzip"})
    response.iter_content = MagicMock(side_effect=ContentDecodingError("bad gzip"))
    return response


def catalog_page(items, next_url=None) -> str:
    """HTML page listing (item_id, title, price) entries."""
    entries = "".join(
        f'<div class="item" data-item-id="{item_id}">'
        f'<h2 class="title">{title}</h2><span class="price">{price}</span></div>'
        for item_id, title, price in items
    )
    pagination = f'<a rel="next" href="{next_url}">Next</a>' if next_url else ""
    return f"<html><body>{entries}{pagination}</body></html>"


class FakeSite:
    """
    Serves canned responses by URL.

    Each URL holds a list of responses; they are served in order and the
    last one repeats. A response is (status, body), (status, body, headers),
    a ready Response, an exception instance to raise, or a callable
    returning one of those. Unknown URLs get a 404.
    """

    def __init__(self):
        self.pages = {}
        self.requests = []
        self.lock = threading.Lock()

    def add(self, url, *responses):
        self.pages[url] = list(responses)

    def page(self, url, body):
        self.add(url, (200, body))

    def get(self, url, **kwargs):
        with self.lock:
            self.requests.append(url)
            queue = self.pages.get(url)
            if not queue:
                return make_response(404, "Not Found", url)
            item = queue.pop(0) if len(queue) > 1 else queue[0]

        if isinstance(item, Exception):
            raise item
        if callable(item):
            item = item()
        if isinstance(item, Response):
            return item
        status, body = item[0], item[1]
        headers = item[2] if len(item) > 2 else None
        return make_response(status, body, url, headers)

    def count(self, url) -> int:
        with self.lock:
            return self.requests.count(url)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_site():
    site = FakeSite()
    session = MagicMock()
    session.get.side_effect = site.get
    with patch.object(SessionManager, "get_session", return_value=session):
        yield site
