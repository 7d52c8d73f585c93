from __future__ import annotations

import abc
from urllib.parse import urljoin

import structlog
from bs4 import BeautifulSoup, Tag

from worker.src.contracts.errors import ParseError
from worker.src.contracts.models import ProductSnapshot

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)


class BaseAdapter(abc.ABC):
    """Base class for page parsers.

    Subclasses implement :meth:`extract`; :meth:`parse` wraps it so malformed
    input always yields a failed snapshot instead of an exception.
    """

    name: str = "base"

    def parse(self, content: str, url: str) -> ProductSnapshot:
        log = logger.bind(adapter=self.name, url=url)
        if not content or not content.strip():
            log.warning("parse_empty_content")
            return ProductSnapshot.failed(url, "Empty page content")

        try:
            soup = BeautifulSoup(content, "lxml")
            snapshot = self.extract(soup, url)
        except ParseError as exc:
            log.warning("parse_no_product_data", error=str(exc))
            return ProductSnapshot.failed(url, str(exc))
        except Exception as exc:  # noqa: BLE001
            log.warning("parse_error", error=str(exc), exc_info=True)
            return ProductSnapshot.failed(url, f"Parse failed: {exc}")

        log.debug(
            "page_parsed",
            title=snapshot.title,
            price=snapshot.price,
            in_stock=snapshot.in_stock,
            sizes=len(snapshot.sizes),
        )
        return snapshot

    @abc.abstractmethod
    def extract(self, soup: BeautifulSoup, url: str) -> ProductSnapshot:
        """Build a snapshot from parsed HTML. May raise :class:`ParseError`."""

    @staticmethod
    def select_text(soup: BeautifulSoup | Tag, selector: str) -> str | None:
        element = soup.select_one(selector)
        if element is None:
            return None
        text = element.get_text(" ", strip=True)
        return text or None

    @staticmethod
    def select_attr(soup: BeautifulSoup | Tag, selector: str, attr: str) -> str | None:
        element = soup.select_one(selector)
        if element is None:
            return None
        value = element.get(attr)
        if isinstance(value, list):
            value = " ".join(value)
        if not value:
            return None
        return value.strip() or None

    @staticmethod
    def absolute_url(page_url: str, src: str | None) -> str | None:
        if not src:
            return None
        return src if src.startswith(("http://", "https://")) else urljoin(page_url, src)
