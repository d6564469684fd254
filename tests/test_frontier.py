import pytest

from polite_scraper.exceptions import InvalidInput
from polite_scraper.pipeline.frontier import Frontier
from polite_scraper.pipeline.pipeline_data import FetchTask


ITEM_URL = "https://example.test/item/1"


class TestEnqueue:
    def test_same_url_twice_gives_one_task(self, clock):
        frontier = Frontier(clock=clock)
        assert frontier.enqueue(ITEM_URL) is True
        assert frontier.enqueue(ITEM_URL) is False
        assert len(frontier) == 1

    def test_dedupes_on_normalized_form(self, clock):
        frontier = Frontier(clock=clock)
        frontier.enqueue("https://EXAMPLE.test/item/1/")
        frontier.enqueue("https://example.test:443/item/1#top")
        assert len(frontier) == 1

    def test_malformed_url_raises(self, clock):
        with pytest.raises(InvalidInput):
            Frontier(clock=clock).enqueue("mailto:someone@example.test")

    def test_completed_url_is_not_requeued(self, clock):
        frontier = Frontier(clock=clock)
        frontier.enqueue(ITEM_URL)
        task = frontier.dequeue()
        frontier.complete(task)
        assert frontier.enqueue(ITEM_URL) is False
        assert len(frontier) == 0


class TestDequeue:
    def test_returns_none_when_nothing_ready(self, clock):
        frontier = Frontier(clock=clock)
        frontier.enqueue(ITEM_URL)
        task = frontier.dequeue()
        task.next_eligible_time = clock.now() + 30
        frontier.reschedule(task)

        assert frontier.dequeue() is None
        assert frontier.next_ready_in() == pytest.approx(30)

        clock.advance(30)
        assert frontier.dequeue().url == ITEM_URL

    def test_lowest_eligibility_first(self, clock):
        frontier = Frontier(clock=clock)
        frontier.restore([
            FetchTask("https://example.test/late", next_eligible_time=clock.now() - 1),
            FetchTask("https://example.test/early", next_eligible_time=clock.now() - 5),
        ], [])
        assert frontier.dequeue().url == "https://example.test/early"
        assert frontier.dequeue().url == "https://example.test/late"

    def test_next_ready_in_empty(self, clock):
        assert Frontier(clock=clock).next_ready_in() is None


class TestSnapshot:
    def test_includes_in_flight_tasks(self, clock):
        frontier = Frontier(clock=clock)
        frontier.enqueue("https://example.test/a")
        frontier.enqueue("https://example.test/b")
        frontier.dequeue()

        urls = {task.url for task in frontier.snapshot()}
        assert urls == {"https://example.test/a", "https://example.test/b"}

    def test_restore_round_trip(self, clock):
        frontier = Frontier(clock=clock)
        frontier.enqueue("https://example.test/a")
        frontier.enqueue("https://example.test/b")
        frontier.complete(frontier.dequeue())

        restored = Frontier(clock=clock)
        restored.restore(frontier.snapshot(), frontier.seen_snapshot())

        assert len(restored) == 1
        assert restored.enqueue("https://example.test/a") is False
        assert restored.enqueue("https://example.test/b") is False
