from __future__ import annotations

import re
import zlib

from bs4 import BeautifulSoup

from worker.src.adapters.base import BaseAdapter
from worker.src.contracts.models import ProductSnapshot

_PRODUCT_ID = re.compile(r"/products?/([^/?#]+)")

_DEMO_PRODUCTS: dict[str, tuple[str, float]] = {
    "demo-sneakers": ("Demo Sneakers Pro Max", 99.99),
    "demo-jacket": ("Demo Winter Jacket", 149.99),
    "demo-watch": ("Demo Smart Watch", 299.99),
}
_ALL_SIZES: tuple[str, ...] = ("XS", "S", "M", "L", "XL", "XXL")


class DemoAdapter(BaseAdapter):
    """Deterministic mock data for ``example.com`` product URLs.

    Used for local end-to-end runs: the page content is ignored and values
    are derived from the product id in the URL, so repeated checks of the
    same URL give the same snapshot.
    """

    name = "demo"

    def extract(self, soup: BeautifulSoup, url: str) -> ProductSnapshot:
        match = _PRODUCT_ID.search(url)
        product_id = match.group(1) if match else "unknown"
        digest = zlib.crc32(product_id.encode("utf-8"))

        title, base_price = _DEMO_PRODUCTS.get(product_id, (f"Product {product_id}", 79.99))
        variation = ((digest % 21) - 10) / 100  # -10% .. +10%
        price = round(base_price * (1 + variation), 2)

        return ProductSnapshot(
            url=url,
            title=title,
            price=price,
            currency="USD",
            in_stock=digest % 10 < 8,
            sizes=[size for i, size in enumerate(_ALL_SIZES) if (digest + i) % 3 != 0],
            image_url=f"https://example.com/images/{product_id}.jpg",
        )
