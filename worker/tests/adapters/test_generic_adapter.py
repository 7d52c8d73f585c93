from __future__ import annotations

import pathlib

import pytest

from worker.src.adapters.generic import GenericAdapter, _classify_availability, _find_product_node

FIXTURES_DIR = pathlib.Path(__file__).parent / "fixtures"


def _load_fixture(name: str) -> str:
    return (FIXTURES_DIR / name).read_text(encoding="utf-8")


# ── Fixtures ──────────────────────────────────────────────────────────────────


@pytest.fixture
def adapter() -> GenericAdapter:
    return GenericAdapter()


# ── Structured data ──────────────────────────────────────────────────────────


class TestJsonLdExtraction:
    def test_reads_product_fields(self, adapter: GenericAdapter) -> None:
        snapshot = adapter.parse(
            _load_fixture("product_json_ld.html"), "https://outdoor.test/p/trail-runner-3"
        )
        assert snapshot.success is True
        assert snapshot.title == "Trail Runner 3"
        assert snapshot.price == 1299.5
        assert snapshot.currency == "SEK"
        assert snapshot.in_stock is True
        assert snapshot.image_url == "https://cdn.outdoor.test/trail-runner-3-front.jpg"

    def test_missing_sizes_filled_from_selectors(self, adapter: GenericAdapter) -> None:
        snapshot = adapter.parse(
            _load_fixture("product_json_ld.html"), "https://outdoor.test/p/trail-runner-3"
        )
        # "41" is marked sold-out on the page
        assert snapshot.sizes == ["40", "42"]

    def test_product_nested_in_graph(self, adapter: GenericAdapter) -> None:
        snapshot = adapter.parse(
            _load_fixture("product_json_ld_graph.html"), "https://peak.test/jackets/summit-down"
        )
        assert snapshot.success is True
        assert snapshot.title == "Summit Down Jacket"
        assert snapshot.price == 249.0
        assert snapshot.currency == "EUR"
        assert snapshot.in_stock is False
        assert snapshot.image_url == "https://peak.test/media/summit-down.jpg"

    def test_variants_out_of_stock_give_no_sizes(self, adapter: GenericAdapter) -> None:
        snapshot = adapter.parse(
            _load_fixture("product_json_ld_graph.html"), "https://peak.test/jackets/summit-down"
        )
        assert snapshot.sizes == []

    def test_in_stock_variants_become_sizes(self, adapter: GenericAdapter) -> None:
        html = """
        <html><head><script type="application/ld+json">
        {"@type": "ProductGroup", "name": "Base Tee",
         "hasVariant": [
           {"@type": "Product", "size": "S", "offers": {"price": 20, "priceCurrency": "USD",
             "availability": "https://schema.org/InStock"}},
           {"@type": "Product", "size": {"name": "M"}, "offers": {"price": 20,
             "availability": "https://schema.org/OutOfStock"}},
           {"@type": "Product", "size": "L", "offers": {"price": 20,
             "availability": "https://schema.org/LimitedAvailability"}}
         ]}
        </script></head><body></body></html>
        """
        snapshot = adapter.parse(html, "https://tees.test/base-tee")
        assert snapshot.sizes == ["S", "L"]
        assert snapshot.in_stock is True
        assert snapshot.price == 20.0

    def test_offer_list_uses_first_priced_offer(self, adapter: GenericAdapter) -> None:
        html = """
        <html><head><script type="application/ld+json">
        [{"@type": "Organization", "name": "Shop"},
         {"@type": "Product", "name": "Kettle",
          "offers": [{"@type": "Offer", "availability": "OutOfStock"},
                     {"@type": "Offer", "price": 45.5, "priceCurrency": "gbp",
                      "availability": "InStock"}]}]
        </script></head><body></body></html>
        """
        snapshot = adapter.parse(html, "https://kitchen.test/kettle")
        assert snapshot.price == 45.5
        assert snapshot.currency == "GBP"
        assert snapshot.in_stock is True

    def test_missing_currency_defaults_to_usd(self, adapter: GenericAdapter) -> None:
        html = """
        <html><head><script type="application/ld+json">
        {"@type": "Product", "name": "Lamp", "offers": {"price": "35"}}
        </script></head><body></body></html>
        """
        snapshot = adapter.parse(html, "https://lamps.test/lamp")
        assert snapshot.price == 35.0
        assert snapshot.currency == "USD"
        assert snapshot.in_stock is None


# ── Selector fallback ────────────────────────────────────────────────────────


class TestSelectorFallback:
    def test_reads_selector_fields(self, adapter: GenericAdapter) -> None:
        snapshot = adapter.parse(
            _load_fixture("product_selectors.html"), "https://bergladen.test/schuhe/alpin"
        )
        assert snapshot.success is True
        assert snapshot.title == "Wanderschuh Alpin"
        assert snapshot.price == 1299.0
        assert snapshot.currency == "EUR"
        assert snapshot.in_stock is True
        assert snapshot.image_url == "https://bergladen.test/bilder/wanderschuh-alpin.jpg"

    def test_select_options_skip_placeholder_and_disabled(self, adapter: GenericAdapter) -> None:
        snapshot = adapter.parse(
            _load_fixture("product_selectors.html"), "https://bergladen.test/schuhe/alpin"
        )
        assert snapshot.sizes == ["EU 40", "EU 42"]

    def test_out_of_stock_marker(self, adapter: GenericAdapter) -> None:
        snapshot = adapter.parse(
            _load_fixture("product_out_of_stock.html"), "https://bags.test/tote"
        )
        assert snapshot.title == "Canvas Tote Bag"
        assert snapshot.price == 24.0
        assert snapshot.currency == "GBP"
        assert snapshot.in_stock is False
        assert snapshot.image_url is None

    def test_stock_unknown_without_signal(self, adapter: GenericAdapter) -> None:
        snapshot = adapter.parse(
            _load_fixture("product_no_stock_signal.html"), "https://kitchen.test/espresso"
        )
        assert snapshot.in_stock is None
        assert snapshot.price == 1249.99
        assert snapshot.currency == "USD"
        assert snapshot.image_url == "https://cdn.kitchen.test/espresso-cups.jpg"

    def test_unavailable_size_options_excluded(self, adapter: GenericAdapter) -> None:
        snapshot = adapter.parse(
            _load_fixture("product_no_stock_signal.html"), "https://kitchen.test/espresso"
        )
        assert snapshot.sizes == ["Small", "Large"]

    def test_sold_out_size_does_not_mark_product_out_of_stock(
        self, adapter: GenericAdapter
    ) -> None:
        snapshot = adapter.parse(
            _load_fixture("product_sold_out_size.html"), "https://layers.test/merino"
        )
        assert snapshot.title == "Merino Base Layer"
        assert snapshot.price == 85.0
        assert snapshot.currency == "USD"
        assert snapshot.in_stock is True
        assert snapshot.sizes == ["S"]

    def test_size_markers_alone_leave_stock_unknown(self, adapter: GenericAdapter) -> None:
        html = """
        <html><body>
          <h1>Trail Sock</h1>
          <ul class="sizes">
            <li>39-42</li>
            <li class="sold-out">43-46</li>
          </ul>
        </body></html>
        """
        snapshot = adapter.parse(html, "https://socks.test/trail")
        assert snapshot.in_stock is None
        assert snapshot.sizes == ["39-42"]

    def test_meta_price_and_title(self, adapter: GenericAdapter) -> None:
        html = """
        <html><head>
          <meta property="og:title" content="Wool Scarf">
          <meta property="product:price:amount" content="59.00">
          <meta property="product:price:currency" content="CHF">
          <meta property="og:availability" content="out of stock">
        </head><body></body></html>
        """
        snapshot = adapter.parse(html, "https://scarves.test/wool")
        assert snapshot.title == "Wool Scarf"
        assert snapshot.price == 59.0
        assert snapshot.currency == "CHF"
        assert snapshot.in_stock is False

    def test_itemprop_price_content(self, adapter: GenericAdapter) -> None:
        html = """
        <html><body>
          <h1 itemprop="name">Desk Chair</h1>
          <span itemprop="price" content="189.90">189,90 €</span>
          <link itemprop="availability" href="https://schema.org/InStock">
        </body></html>
        """
        snapshot = adapter.parse(html, "https://office.test/chair")
        assert snapshot.price == 189.9
        assert snapshot.currency == "EUR"
        assert snapshot.in_stock is True

    def test_availability_text_unavailable_is_not_in_stock(self, adapter: GenericAdapter) -> None:
        html = """
        <html><body>
          <h1>Camp Stove</h1>
          <p class="availability">Currently unavailable</p>
        </body></html>
        """
        snapshot = adapter.parse(html, "https://camp.test/stove")
        assert snapshot.in_stock is False


# ── Failure handling ─────────────────────────────────────────────────────────


class TestParseFailures:
    def test_no_product_data(self, adapter: GenericAdapter) -> None:
        snapshot = adapter.parse(_load_fixture("no_product.html"), "https://blank.test/")
        assert snapshot.success is False
        assert snapshot.error == "No product data found"
        assert snapshot.url == "https://blank.test/"

    def test_empty_content(self, adapter: GenericAdapter) -> None:
        snapshot = adapter.parse("   ", "https://blank.test/")
        assert snapshot.success is False
        assert snapshot.error == "Empty page content"

    def test_garbage_input_never_raises(self, adapter: GenericAdapter) -> None:
        snapshot = adapter.parse("<<<>>>\x00{{{", "https://blank.test/")
        assert snapshot.success is False

    def test_unexpected_exception_becomes_failed_snapshot(
        self, adapter: GenericAdapter, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        def _boom(*args: object, **kwargs: object) -> None:
            raise RuntimeError("selector engine exploded")

        monkeypatch.setattr(adapter, "_extract_json_ld", _boom)
        snapshot = adapter.parse(_load_fixture("product_selectors.html"), "https://x.test/")
        assert snapshot.success is False
        assert snapshot.error is not None
        assert "selector engine exploded" in snapshot.error


# ── Helpers ──────────────────────────────────────────────────────────────────


class TestHelpers:
    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            ("https://schema.org/InStock", True),
            ("http://schema.org/LimitedAvailability", True),
            ("OutOfStock", False),
            ("https://schema.org/SoldOut", False),
            ("https://schema.org/PreOrder", None),
            ("in stock", True),
            (None, None),
            (42, None),
        ],
    )
    def test_classify_availability(self, value: object, expected: bool | None) -> None:
        assert _classify_availability(value) is expected

    def test_find_product_node_in_list(self) -> None:
        data = [{"@type": "WebPage"}, {"@type": "Product", "name": "X"}]
        assert _find_product_node(data) == {"@type": "Product", "name": "X"}

    def test_find_product_node_missing(self) -> None:
        assert _find_product_node({"@type": "WebPage"}) is None
