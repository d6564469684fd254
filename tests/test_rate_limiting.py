import random

import pytest

from polite_scraper.pipeline.pipeline_data import FetchTask
from polite_scraper.pipeline.stages.rate_limiting_stage import (
    BackoffPolicy, JitteredDelayLimiter, RateLimitingStage, RateLimitConfig
)


class TestJitteredDelayLimiter:
    def test_first_request_is_not_delayed(self, clock):
        limiter = JitteredDelayLimiter(1.0, 3.0, clock=clock, rng=random.Random(1))
        assert limiter.wait_if_needed("shop.example.test") == 0.0
        assert clock.sleeps == []

    def test_delay_is_drawn_within_bounds(self, clock):
        limiter = JitteredDelayLimiter(1.0, 3.0, clock=clock, rng=random.Random(7))
        for _ in range(20):
            delay = limiter.record_request("shop.example.test")
            assert 1.0 <= delay <= 3.0
            waited = limiter.wait_if_needed("shop.example.test")
            assert waited == pytest.approx(delay)

    def test_hosts_have_independent_delays(self, clock):
        limiter = JitteredDelayLimiter(2.0, 2.0, clock=clock, rng=random.Random(1))
        limiter.record_request("a.example.test")
        assert limiter.wait_time("a.example.test") == pytest.approx(2.0)
        assert limiter.wait_time("b.example.test") == 0.0


class TestBackoffPolicy:
    def test_delays_are_non_decreasing(self):
        policy = BackoffPolicy(base_seconds=1.0, factor=2.0, max_seconds=60.0,
                               jitter=0.5, rng=random.Random(3))
        task = FetchTask("https://shop.example.test/")
        delays = [policy.apply(task, now=1000.0) for _ in range(10)]

        assert delays == sorted(delays)
        assert delays[-1] == 60.0
        assert task.attempt_count == 10

    def test_next_eligible_time_never_moves_back(self):
        policy = BackoffPolicy(base_seconds=5.0, jitter=0.0, rng=random.Random(1))
        task = FetchTask("https://shop.example.test/", next_eligible_time=2000.0)
        policy.apply(task, now=1000.0)
        assert task.next_eligible_time == 2000.0

    def test_exponential_growth_without_jitter(self):
        policy = BackoffPolicy(base_seconds=2.0, factor=3.0, max_seconds=1000.0, jitter=0.0)
        assert [policy.compute_delay(n) for n in (1, 2, 3)] == [2.0, 6.0, 18.0]

    def test_previous_delay_is_a_floor(self):
        policy = BackoffPolicy(base_seconds=1.0, jitter=0.0)
        assert policy.compute_delay(1, previous_delay=10.0) == 10.0


class TestRateLimitingStage:
    def test_host_proxy_keys(self, clock):
        task = FetchTask("https://shop.example.test/a")
        by_host = RateLimitingStage(RateLimitConfig(), clock=clock)
        by_proxy = RateLimitingStage(RateLimitConfig(key_strategy="host_proxy"), clock=clock)

        assert by_host.limiter_key(task, "http://proxy:8080") == "shop.example.test"
        assert by_proxy.limiter_key(task, "http://proxy:8080") == "shop.example.test|http://proxy:8080"
        assert by_proxy.limiter_key(task, None) == "shop.example.test"

    def test_unknown_key_strategy(self):
        with pytest.raises(ValueError):
            RateLimitingStage(RateLimitConfig(key_strategy="global"))

    def test_wait_sleeps_on_clock_and_records_stats(self, clock):
        stage = RateLimitingStage(RateLimitConfig(delay_min_seconds=2.0, delay_max_seconds=2.0),
                                  clock=clock, rng=random.Random(1))
        task = FetchTask("https://shop.example.test/a")
        stage.mark_request(task)

        assert stage.wait(task) == pytest.approx(2.0)
        assert clock.sleeps == [pytest.approx(2.0)]
        assert stage.get_stats()['rate_limit_stats']['requests_delayed'] == 1
