import logging
from datetime import datetime, timezone
from decimal import Decimal
import types

import pytest

from polite_scraper.exceptions import ConfigurationError
from polite_scraper.pipeline.stages.parse_stage import ParseStage, ParseConfig

from conftest import BASE_URL, catalog_page


FETCHED_AT = datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)


class TestParse:
    def test_extracts_records(self):
        body = catalog_page([("A1", "  Desk\n Lamp ", "$19.99"), ("B2", "Chair", "€45,00")])
        records = list(ParseStage().parse(body, fetched_at=FETCHED_AT))

        assert [r.item_id for r in records] == ["A1", "B2"]
        assert records[0].title == "Desk Lamp"
        assert records[0].price == Decimal("19.99")
        assert records[0].currency == "USD"
        assert records[1].price == Decimal("45.00")
        assert records[1].currency == "EUR"
        assert records[0].fetched_at == FETCHED_AT

    def test_is_lazy(self):
        records = ParseStage().parse(catalog_page([("A1", "Lamp", "$1")]))
        assert isinstance(records, types.GeneratorType)

    def test_skips_incomplete_entries(self, caplog):
        body = (
            '<div data-item-id="A1"><h2 class="title">Lamp</h2></div>'
            '<div data-item-id="A2"><span class="price">$5</span></div>'
            '<div data-item-id="A3"><h2 class="title">Desk</h2><span class="price">ask us</span></div>'
            '<div data-item-id="A4"><h2 class="title">Refund</h2><span class="price">-$5</span></div>'
            '<div data-item-id=""><h2 class="title">No id</h2><span class="price">$5</span></div>'
            '<div data-item-id="A5"><h2 class="title">Chair</h2><span class="price">$30</span></div>'
        )
        stage = ParseStage()

        with caplog.at_level(logging.WARNING):
            records = list(stage.parse(body))

        assert [r.item_id for r in records] == ["A5"]
        assert stage.get_stats()['parse_stats']['records_skipped'] == 5
        assert "Skipping entry" in caplog.text

    def test_currency_attribute_overrides_symbol(self):
        body = ('<div data-item-id="A1" data-currency="aud">'
                '<h2 class="title">Lamp</h2><span class="price">$12</span></div>')
        record = next(ParseStage().parse(body))
        assert record.currency == "AUD"

    def test_item_id_from_selector(self):
        config = ParseConfig(item_selector="li.product", item_id_attribute=None,
                             item_id_selector=".sku", title_selector="a", price_selector="b")
        body = '<ul><li class="product"><i class="sku">X-9</i><a>Mug</a><b>£4.50</b></li></ul>'

        record = next(ParseStage(config).parse(body))
        assert (record.item_id, record.title, record.price, record.currency) == \
            ("X-9", "Mug", Decimal("4.50"), "GBP")

    def test_empty_page_yields_nothing(self):
        assert list(ParseStage().parse("<html><body></body></html>")) == []


class TestExtractLinks:
    def test_resolves_relative_next_links(self):
        body = catalog_page([], next_url="/catalog?page=2")
        links = ParseStage().extract_links(body, BASE_URL + "/catalog")
        assert links == [BASE_URL + "/catalog?page=2"]

    def test_ignores_non_http_links(self):
        body = '<a rel="next" href="javascript:void(0)">x</a><a rel="next" href="#top">y</a>'
        assert ParseStage().extract_links(body, BASE_URL) == []

    def test_disabled_without_selector(self):
        stage = ParseStage(ParseConfig(next_page_selector=None))
        assert stage.extract_links(catalog_page([], next_url="/p2"), BASE_URL) == []


class TestConfiguration:
    def test_invalid_selector(self):
        with pytest.raises(ConfigurationError):
            ParseStage(ParseConfig(title_selector="h2[["))

    def test_requires_an_item_id_source(self):
        with pytest.raises(ConfigurationError):
            ParseStage(ParseConfig(item_id_attribute=None, item_id_selector=None))

    def test_unknown_parser_falls_back(self):
        stage = ParseStage(ParseConfig(parser="no-such-parser"))
        assert stage.config.parser == "html.parser"
