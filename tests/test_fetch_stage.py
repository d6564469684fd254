import random
import threading

import pytest
from requests.exceptions import ConnectionError as RequestsConnectionError

from polite_scraper.exceptions import FetchFailed, FailureReason
from polite_scraper.pipeline.frontier import Frontier
from polite_scraper.pipeline.stages.fetch_stage import (
    FetchStage, FetchConfig, build_headers, parse_retry_after
)
from polite_scraper.pipeline.stages.rate_limiting_stage import RateLimitingStage, RateLimitConfig

from conftest import BASE_URL, catalog_page, undecodable_response


PAGE_URL = BASE_URL + "/catalog"


def make_stage(clock, **fetch_options):
    frontier = Frontier(clock=clock)
    rate_limiter = RateLimitingStage(
        RateLimitConfig(delay_min_seconds=1.0, delay_max_seconds=2.0),
        clock=clock, rng=random.Random(5)
    )
    stage = FetchStage(FetchConfig(**fetch_options), frontier, rate_limiter,
                       clock=clock, rng=random.Random(5))
    frontier.enqueue(PAGE_URL)
    return stage, frontier


def fetch_until_done(stage, frontier, clock, max_calls=20):
    """Drive one task through reschedules the way a host worker does."""
    for _ in range(max_calls):
        task = frontier.dequeue()
        if task is None:
            clock.advance(frontier.next_ready_in())
            continue
        result = stage.fetch(task)
        if result is not None:
            return result
    raise AssertionError("task never completed")


class TestRetries:
    def test_three_503s_then_success(self, clock, fake_site):
        fake_site.add(PAGE_URL, (503, ""), (503, ""), (503, ""),
                      (200, catalog_page([("A1", "Lamp", "$10")])))
        stage, frontier = make_stage(clock, max_retries=5)

        result = fetch_until_done(stage, frontier, clock)

        assert result.status_code == 200
        assert result.task.attempt_count == 3
        assert fake_site.count(PAGE_URL) == 4
        assert stage.get_stats()['fetch_stats']['rescheduled'] == 3

    def test_retry_limit_exceeded_is_permanently_blocked(self, clock, fake_site):
        fake_site.add(PAGE_URL, (503, ""))
        stage, frontier = make_stage(clock, max_retries=2)

        with pytest.raises(FetchFailed) as exc_info:
            fetch_until_done(stage, frontier, clock)

        assert exc_info.value.reason is FailureReason.PERMANENTLY_BLOCKED
        assert exc_info.value.attempt_count == 3
        assert "PermanentlyBlocked" in str(exc_info.value)
        assert fake_site.count(PAGE_URL) == 3

    def test_eligibility_never_moves_back(self, clock, fake_site):
        fake_site.add(PAGE_URL, (503, ""))
        stage, frontier = make_stage(clock, max_retries=6)

        eligible_times = []
        for _ in range(6):
            task = frontier.dequeue()
            while task is None:
                clock.advance(frontier.next_ready_in())
                task = frontier.dequeue()
            assert stage.fetch(task) is None
            eligible_times.append(task.next_eligible_time)

        assert eligible_times == sorted(eligible_times)

    def test_connection_error_is_transient(self, clock, fake_site):
        fake_site.add(PAGE_URL, RequestsConnectionError("reset"), (200, "<html></html>"))
        stage, frontier = make_stage(clock, max_retries=1)

        result = fetch_until_done(stage, frontier, clock)
        assert result.task.attempt_count == 1

    def test_retry_after_header_is_honored(self, clock, fake_site):
        fake_site.add(PAGE_URL, (429, "", {"Retry-After": "120"}))
        stage, frontier = make_stage(clock, backoff_base_seconds=1.0, backoff_jitter=0.0)

        task = frontier.dequeue()
        before = clock.now()
        assert stage.fetch(task) is None
        assert task.next_eligible_time >= before + 120


class TestPermanentFailures:
    def test_404_fails_without_retry(self, clock, fake_site):
        stage, frontier = make_stage(clock)

        with pytest.raises(FetchFailed) as exc_info:
            stage.fetch(frontier.dequeue())

        assert exc_info.value.reason is FailureReason.HTTP_STATUS
        assert exc_info.value.status_code == 404
        assert fake_site.count(PAGE_URL) == 1

    def test_oversized_content_length(self, clock, fake_site):
        fake_site.add(PAGE_URL, (200, "<html></html>", {"Content-Length": str(2 * 1024 * 1024)}))
        stage, frontier = make_stage(clock, max_content_size_mb=1)

        with pytest.raises(FetchFailed) as exc_info:
            stage.fetch(frontier.dequeue())
        assert exc_info.value.reason is FailureReason.CONTENT_TOO_LARGE

    def test_undecodable_body_fails_without_retry(self, clock, fake_site):
        fake_site.add(PAGE_URL, undecodable_response(PAGE_URL))
        stage, frontier = make_stage(clock)

        with pytest.raises(FetchFailed) as exc_info:
            stage.fetch(frontier.dequeue())

        assert exc_info.value.reason is FailureReason.REQUEST_ERROR
        assert "bad gzip" in str(exc_info.value)
        assert fake_site.count(PAGE_URL) == 1
        assert stage.get_stats()["fetch_stats"]["failed"] == 1


class TestPoliteness:
    def test_waits_between_requests_to_same_host(self, clock, fake_site):
        fake_site.page(PAGE_URL, "<html></html>")
        fake_site.page(PAGE_URL + "?page=2", "<html></html>")
        stage, frontier = make_stage(clock)
        frontier.enqueue(PAGE_URL + "?page=2")

        stage.fetch(frontier.dequeue())
        stage.fetch(frontier.dequeue())

        assert len(clock.sleeps) == 1
        assert 1.0 <= clock.sleeps[0] <= 2.0

    def test_interrupted_before_request(self, clock, fake_site):
        stage, frontier = make_stage(clock)
        stop = threading.Event()
        stop.set()

        task = frontier.dequeue()
        assert stage.fetch(task, interrupt=stop) is None
        assert fake_site.requests == []
        assert len(frontier) == 1

    def test_result_carries_decoded_body(self, clock, fake_site):
        fake_site.page(PAGE_URL, "<p>Café</p>")
        stage, frontier = make_stage(clock)

        result = stage.fetch(frontier.dequeue())
        assert result.body == "<p>Café</p>"
        assert result.final_url == PAGE_URL
        assert result.fetched_at.timestamp() == pytest.approx(clock.now())


def test_build_headers_identifies_the_client():
    headers = build_headers(FetchConfig(user_agent="TestBot/2.0", extra_headers={"From": "ops@example.test"}))
    assert headers["User-Agent"] == "TestBot/2.0"
    assert headers["From"] == "ops@example.test"
    assert {"Accept", "Accept-Language", "Accept-Encoding"} <= set(headers)


@pytest.mark.parametrize("value, expected", [
    ("30", 30.0),
    (" 5 ", 5.0),
    ("Wed, 21 Oct 2015 07:28:00 GMT", None),
    ("-1", None),
    (None, None),
])
def test_parse_retry_after(value, expected):
    assert parse_retry_after(value) == expected
