"""
Stock Probe — best-effort availability check on a product page
================================================================
Used only when a link has no declared stock status. Reads, in order:

  1. schema.org ``availability`` (JSON-LD offers, microdata, meta tags)
  2. out-of-stock phrases in the visible text
  3. in-stock phrases in the visible text

Anything that goes wrong (timeout, non-200, unparseable page) yields
``StockStatus.UNKNOWN``. Never raises on network trouble.
"""

from __future__ import annotations

import json
import logging

import httpx
from bs4 import BeautifulSoup

from workers.link_audit.models import StockStatus

logger = logging.getLogger(__name__)

OUT_OF_STOCK_PHRASES = (
    "out of stock",
    "sold out",
    "currently unavailable",
    "no longer available",
    "not available",
    "out-of-stock",
    "soldout",
    "stock: 0",
    "inventory: 0",
)

IN_STOCK_PHRASES = (
    "add to cart",
    "add to bag",
    "buy now",
    "in stock",
    "available now",
    "ships today",
)

_OUT_MARKERS = ("outofstock", "soldout", "discontinued")
_IN_MARKERS = ("instock", "limitedavailability", "preorder", "instoreonly", "onlineonly")

_MAX_BYTES = 2_000_000


def _classify_availability(value: str) -> StockStatus:
    marker = value.rsplit("/", 1)[-1].lower()
    if any(m in marker for m in _OUT_MARKERS):
        return StockStatus.OUT_OF_STOCK
    if any(m in marker for m in _IN_MARKERS):
        return StockStatus.IN_STOCK
    return StockStatus.UNKNOWN


def _iter_offers(node):
    """Yield every dict under a JSON-LD node that may carry ``availability``."""
    if isinstance(node, list):
        for item in node:
            yield from _iter_offers(item)
    elif isinstance(node, dict):
        yield node
        for key in ("offers", "@graph", "hasVariant"):
            if key in node:
                yield from _iter_offers(node[key])


def _schema_availability(soup: BeautifulSoup) -> StockStatus:
    for script in soup.find_all("script", type="application/ld+json"):
        try:
            data = json.loads(script.string or "")
        except ValueError:
            continue
        for offer in _iter_offers(data):
            value = offer.get("availability")
            if isinstance(value, str):
                status = _classify_availability(value)
                if status != StockStatus.UNKNOWN:
                    return status

    for tag in soup.select("[itemprop=availability]"):
        value = tag.get("href") or tag.get("content") or tag.get_text(strip=True)
        if value:
            status = _classify_availability(str(value))
            if status != StockStatus.UNKNOWN:
                return status

    meta = soup.find("meta", attrs={"property": "product:availability"}) or soup.find(
        "meta", attrs={"property": "og:availability"}
    )
    if meta and meta.get("content"):
        return _classify_availability(str(meta["content"]).replace(" ", ""))

    return StockStatus.UNKNOWN


def detect_stock_status(html: str) -> StockStatus:
    """Stock status from page HTML."""
    soup = BeautifulSoup(html, "html.parser")

    status = _schema_availability(soup)
    if status != StockStatus.UNKNOWN:
        return status

    for tag in soup(["script", "style", "noscript"]):
        tag.decompose()
    text = soup.get_text(separator=" ", strip=True).lower()

    if any(phrase in text for phrase in OUT_OF_STOCK_PHRASES):
        return StockStatus.OUT_OF_STOCK
    if any(phrase in text for phrase in IN_STOCK_PHRASES):
        return StockStatus.IN_STOCK
    return StockStatus.UNKNOWN


class StockProbe:
    """
    Fetches a landing page once and reads its stock status.

    Usage:
        probe = StockProbe()
        status = await probe.check(client, trace.final_url)
    """

    async def check(self, client: httpx.AsyncClient, url: str) -> StockStatus:
        try:
            response = await client.get(url, follow_redirects=True)
        except httpx.HTTPError as exc:
            logger.debug("Stock probe failed for %s: %s", url, exc)
            return StockStatus.UNKNOWN

        if response.status_code != 200:
            return StockStatus.UNKNOWN
        if "html" not in response.headers.get("content-type", "text/html"):
            return StockStatus.UNKNOWN
        return detect_stock_status(response.text[:_MAX_BYTES])
