from __future__ import annotations

import json
from collections.abc import Iterator
from typing import Any

import structlog
from bs4 import BeautifulSoup, Tag

from worker.src.adapters.base import BaseAdapter
from worker.src.adapters.pricing import (
    DEFAULT_CURRENCY,
    detect_currency,
    normalise_currency,
    parse_price,
)
from worker.src.contracts.errors import ParseError
from worker.src.contracts.models import ProductSnapshot

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

_TITLE_SELECTORS: tuple[str, ...] = (
    '[data-testid="product-title"]',
    "[data-product-title]",
    ".product-title",
    ".product-name",
    ".product__title",
    "h1.title",
    'h1[itemprop="name"]',
    "#productTitle",
    "h1",
)
_TITLE_META: tuple[tuple[str, str], ...] = (
    ('meta[property="og:title"]', "content"),
    ('meta[name="twitter:title"]', "content"),
)
_MAX_TITLE_LENGTH: int = 500

_PRICE_SELECTORS: tuple[str, ...] = (
    '[data-testid="price"]',
    "[data-price]",
    ".product-price",
    ".price-current",
    ".price",
    '[itemprop="price"]',
    "#priceblock_ourprice",
    "#priceblock_dealprice",
    ".a-price-whole",
)
_PRICE_META: tuple[str, ...] = (
    'meta[property="product:price:amount"]',
    'meta[property="og:price:amount"]',
)
_CURRENCY_META: tuple[tuple[str, str], ...] = (
    ('meta[property="product:price:currency"]', "content"),
    ('meta[property="og:price:currency"]', "content"),
    ('[itemprop="priceCurrency"]', "content"),
)

_OUT_OF_STOCK_SELECTORS: tuple[str, ...] = (
    ".out-of-stock",
    ".sold-out",
    ".product-unavailable",
    "[data-out-of-stock]",
    "#outOfStock",
)
_IN_STOCK_SELECTORS: tuple[str, ...] = (
    ".in-stock",
    "[data-in-stock]",
    "#inStock",
)
_AVAILABILITY_META: tuple[tuple[str, str], ...] = (
    ('link[itemprop="availability"]', "href"),
    ('meta[itemprop="availability"]', "content"),
    ('meta[property="product:availability"]', "content"),
    ('meta[property="og:availability"]', "content"),
)
_AVAILABILITY_TEXT_SELECTORS: tuple[str, ...] = (
    "#availability",
    ".availability",
    ".stock-status",
)

_SIZE_SELECTORS: tuple[str, ...] = (
    "[data-size]",
    ".size-option",
    ".product-sizes li",
    ".sizes li",
    "select[name*='size' i] option",
    "select[id*='size' i] option",
)
_UNAVAILABLE_CLASSES: frozenset[str] = frozenset(
    {"disabled", "unavailable", "sold-out", "out-of-stock", "is-disabled"}
)
_UNAVAILABLE_MARKER = ", ".join(f".{name}" for name in sorted(_UNAVAILABLE_CLASSES))

_IMAGE_SELECTORS: tuple[str, ...] = (
    '[data-testid="product-image"] img',
    ".product-image img",
    ".product__image img",
    "#landingImage",
    '[itemprop="image"]',
)

_IN_STOCK_AVAILABILITY: tuple[str, ...] = ("instock", "limitedavailability", "onlineonly")
_OUT_OF_STOCK_AVAILABILITY: tuple[str, ...] = ("outofstock", "soldout", "discontinued")


def _classify_availability(value: object) -> bool | None:
    """Map a schema.org availability value (or free text) to in-stock / out / unknown."""
    if not isinstance(value, str):
        return None
    token = value.strip().lower().rsplit("/", 1)[-1].replace(" ", "").replace("_", "")
    if any(marker in token for marker in _OUT_OF_STOCK_AVAILABILITY):
        return False
    if any(marker in token for marker in _IN_STOCK_AVAILABILITY):
        return True
    return None


def _classify_stock_text(text: str) -> bool | None:
    lower = text.lower()
    # Negative phrases first: "unavailable" contains "available".
    if any(phrase in lower for phrase in ("out of stock", "sold out", "unavailable", "not available")):
        return False
    if any(phrase in lower for phrase in ("in stock", "available")):
        return True
    return None


def _coerce_price(value: object) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if value >= 0 else None
    if isinstance(value, str):
        return parse_price(value)
    return None


def _is_product(node: dict[str, Any]) -> bool:
    node_type = node.get("@type")
    if isinstance(node_type, list):
        return "Product" in node_type or "ProductGroup" in node_type
    return node_type in ("Product", "ProductGroup")


def _find_product_node(data: object) -> dict[str, Any] | None:
    """Find the first schema.org Product in parsed JSON-LD (dict, list or @graph)."""
    if isinstance(data, list):
        for item in data:
            found = _find_product_node(item)
            if found is not None:
                return found
        return None
    if isinstance(data, dict):
        if _is_product(data):
            return data
        graph = data.get("@graph")
        if graph is not None:
            return _find_product_node(graph)
    return None


def _image_from_json_ld(image: object) -> str | None:
    if isinstance(image, str):
        return image or None
    if isinstance(image, list) and image:
        return _image_from_json_ld(image[0])
    if isinstance(image, dict):
        url = image.get("url") or image.get("contentUrl")
        return url if isinstance(url, str) and url else None
    return None


def _flatten_offers(offers: object) -> list[dict[str, Any]]:
    """Flatten Offer / AggregateOffer / list-of-offers into a list of offer dicts."""
    if isinstance(offers, dict):
        nested = offers.get("offers")
        flattened = [offers]
        if nested is not None:
            flattened.extend(_flatten_offers(nested))
        return flattened
    if isinstance(offers, list):
        return [offer for item in offers for offer in _flatten_offers(item)]
    return []


class GenericAdapter(BaseAdapter):
    """Domain-agnostic parser for any product page.

    Looks for a JSON-LD ``Product`` first and fills in whatever it lacks from
    common product-page selectors and meta tags. Stock status stays unknown
    (``None``) unless the page gives a positive or negative signal.
    """

    name = "generic"

    def extract(self, soup: BeautifulSoup, url: str) -> ProductSnapshot:
        structured = self._extract_json_ld(soup)
        fields: dict[str, Any] = dict(structured) if structured else {}

        if not fields.get("title"):
            fields["title"] = self._extract_title(soup)

        if fields.get("price") is None:
            price_data = self._extract_price(soup)
            if price_data is not None:
                fields["price"], fields["currency"] = price_data

        if fields.get("in_stock") is None:
            fields["in_stock"] = self._extract_stock_status(soup)

        if not fields.get("image_url"):
            fields["image_url"] = self._extract_image(soup)

        if not fields.get("sizes"):
            fields["sizes"] = self._extract_sizes(soup)

        if fields["title"] is None and fields.get("price") is None and fields["in_stock"] is None:
            raise ParseError("No product data found")

        if fields.get("price") is not None and not fields.get("currency"):
            fields["currency"] = DEFAULT_CURRENCY

        return ProductSnapshot(
            url=url,
            title=fields["title"],
            price=fields.get("price"),
            currency=fields.get("currency") if fields.get("price") is not None else None,
            in_stock=fields["in_stock"],
            sizes=fields["sizes"],
            image_url=self.absolute_url(url, fields["image_url"]),
        )

    # ── Structured data ──────────────────────────────────────────────────────

    def _iter_json_ld(self, soup: BeautifulSoup) -> Iterator[object]:
        for script in soup.find_all("script", attrs={"type": "application/ld+json"}):
            raw = script.string or script.get_text()
            if not raw or not raw.strip():
                continue
            try:
                yield json.loads(raw)
            except json.JSONDecodeError:
                logger.debug("json_ld_invalid", snippet=raw[:120])

    def _extract_json_ld(self, soup: BeautifulSoup) -> dict[str, Any] | None:
        for data in self._iter_json_ld(soup):
            product = _find_product_node(data)
            if product is None:
                continue

            name = product.get("name")
            result: dict[str, Any] = {
                "title": name.strip() if isinstance(name, str) and name.strip() else None,
                "image_url": _image_from_json_ld(product.get("image")),
                "price": None,
                "currency": None,
                "in_stock": None,
                "sizes": [],
            }

            offers = _flatten_offers(product.get("offers"))
            variants = [v for v in product.get("hasVariant") or [] if isinstance(v, dict)]
            for variant in variants:
                offers.extend(_flatten_offers(variant.get("offers")))

            self._read_offers(offers, result)
            result["sizes"] = self._sizes_from_variants(variants)
            return result
        return None

    @staticmethod
    def _read_offers(offers: list[dict[str, Any]], result: dict[str, Any]) -> None:
        for offer in offers:
            price = _coerce_price(offer.get("price"))
            if price is None:
                price = _coerce_price(offer.get("lowPrice"))
            if price is not None:
                result["price"] = price
                result["currency"] = normalise_currency(
                    offer.get("priceCurrency"), default=DEFAULT_CURRENCY
                )
                break

        signals = [_classify_availability(offer.get("availability")) for offer in offers]
        if any(signal is True for signal in signals):
            result["in_stock"] = True
        elif any(signal is False for signal in signals):
            result["in_stock"] = False

    @staticmethod
    def _sizes_from_variants(variants: list[dict[str, Any]]) -> list[str]:
        sizes: list[str] = []
        for variant in variants:
            size = variant.get("size")
            if isinstance(size, dict):
                size = size.get("name")
            if not isinstance(size, str) or not size.strip():
                continue
            signals = [
                _classify_availability(offer.get("availability"))
                for offer in _flatten_offers(variant.get("offers"))
            ]
            if any(signal is True for signal in signals):
                sizes.append(size.strip())
        return sizes

    # ── Selectors & meta tags ────────────────────────────────────────────────

    def _extract_title(self, soup: BeautifulSoup) -> str | None:
        for selector in _TITLE_SELECTORS:
            title = self.select_text(soup, selector)
            if title and len(title) < _MAX_TITLE_LENGTH:
                return title

        for selector, attr in _TITLE_META:
            title = self.select_attr(soup, selector, attr)
            if title:
                return title
        return self.select_text(soup, "title")

    def _extract_price(self, soup: BeautifulSoup) -> tuple[float, str] | None:
        meta_currency = None
        for selector, attr in _CURRENCY_META:
            meta_currency = self.select_attr(soup, selector, attr)
            if meta_currency:
                break

        for selector in _PRICE_SELECTORS:
            element = soup.select_one(selector)
            if element is None:
                continue
            text = self._price_text(element)
            price = parse_price(text)
            if price is not None:
                if meta_currency:
                    currency = normalise_currency(meta_currency)
                else:
                    currency = detect_currency(text)
                return price, currency

        for selector in _PRICE_META:
            price = parse_price(self.select_attr(soup, selector, "content"))
            if price is not None:
                return price, normalise_currency(meta_currency)
        return None

    @staticmethod
    def _price_text(element: Tag) -> str | None:
        for attr in ("content", "data-price"):
            value = element.get(attr)
            if isinstance(value, str) and value.strip():
                text = element.get_text(" ", strip=True)
                # Keep the visible symbol around for currency detection.
                return f"{value.strip()} {text}" if text else value.strip()
        return element.get_text(" ", strip=True) or None

    def _extract_stock_status(self, soup: BeautifulSoup) -> bool | None:
        # Size options reuse the same classes for a single sold-out variant.
        size_options = {id(el) for selector in _SIZE_SELECTORS for el in soup.select(selector)}

        def _page_level(selectors: tuple[str, ...]) -> bool:
            return any(
                not self._within(element, size_options)
                for selector in selectors
                for element in soup.select(selector)
            )

        if _page_level(_OUT_OF_STOCK_SELECTORS):
            return False

        if _page_level(_IN_STOCK_SELECTORS):
            return True

        for selector, attr in _AVAILABILITY_META:
            signal = _classify_availability(self.select_attr(soup, selector, attr))
            if signal is not None:
                return signal

        for selector in _AVAILABILITY_TEXT_SELECTORS:
            text = self.select_text(soup, selector)
            if text:
                signal = _classify_stock_text(text)
                if signal is not None:
                    return signal
        return None

    @staticmethod
    def _within(element: Tag, nodes: set[int]) -> bool:
        """True if ``element`` or one of its ancestors is in ``nodes`` (by identity)."""
        if id(element) in nodes:
            return True
        return any(id(parent) in nodes for parent in element.parents)

    def _extract_image(self, soup: BeautifulSoup) -> str | None:
        for selector in _IMAGE_SELECTORS:
            element = soup.select_one(selector)
            if element is None:
                continue
            src = element.get("src") or element.get("data-src") or element.get("content")
            if isinstance(src, str) and src.strip():
                return src.strip()
        return self.select_attr(soup, 'meta[property="og:image"]', "content")

    def _extract_sizes(self, soup: BeautifulSoup) -> list[str]:
        for selector in _SIZE_SELECTORS:
            elements = soup.select(selector)
            if not elements:
                continue
            return [
                label
                for label in (self._size_label(el) for el in elements if self._size_available(el))
                if label
            ]
        return []

    @staticmethod
    def _size_label(element: Tag) -> str | None:
        label = element.get("data-size")
        if not isinstance(label, str) or not label.strip():
            label = element.get_text(" ", strip=True)
        return label.strip() or None

    @staticmethod
    def _size_available(element: Tag) -> bool:
        if element.name == "option" and element.get("value") == "":
            return False
        if element.has_attr("disabled") or element.get("aria-disabled") == "true":
            return False
        if element.get("data-available") == "false":
            return False
        classes = element.get("class") or []
        if _UNAVAILABLE_CLASSES.intersection(classes):
            return False
        return element.select_one(_UNAVAILABLE_MARKER) is None
