"""Tests for landing-page stock detection."""

from __future__ import annotations

import httpx
import pytest

from workers.link_audit.models import StockStatus
from workers.link_audit.stock_probe import StockProbe, detect_stock_status

JSON_LD_OUT = """
<html><head>
<script type="application/ld+json">
{"@context": "https://schema.org", "@type": "Product", "name": "Dress",
 "offers": {"@type": "Offer", "price": "49.00", "availability": "https://schema.org/OutOfStock"}}
</script>
</head><body><button>Add to cart</button></body></html>
"""

MICRODATA_IN = """
<div itemscope itemtype="https://schema.org/Product">
  <link itemprop="availability" href="https://schema.org/InStock" />
  <p>Only a few left</p>
</div>
"""


class TestDetectStockStatus:

    def test_json_ld_wins_over_page_text(self):
        assert detect_stock_status(JSON_LD_OUT) == StockStatus.OUT_OF_STOCK

    def test_json_ld_graph(self):
        html = (
            '<script type="application/ld+json">'
            '{"@graph": [{"@type": "WebPage"}, {"@type": "Product", "offers": [{"availability": "InStock"}]}]}'
            "</script>"
        )
        assert detect_stock_status(html) == StockStatus.IN_STOCK

    def test_microdata(self):
        assert detect_stock_status(MICRODATA_IN) == StockStatus.IN_STOCK

    def test_meta_tag(self):
        html = '<meta property="product:availability" content="out of stock">'
        assert detect_stock_status(html) == StockStatus.OUT_OF_STOCK

    @pytest.mark.parametrize(
        ("text", "status"),
        [
            ("<p>Sorry, this item is SOLD OUT.</p>", StockStatus.OUT_OF_STOCK),
            ("<p>Currently unavailable.</p>", StockStatus.OUT_OF_STOCK),
            ("<button>Add to Cart</button>", StockStatus.IN_STOCK),
            ("<p>Just a blog post.</p>", StockStatus.UNKNOWN),
        ],
    )
    def test_visible_text(self, text, status):
        assert detect_stock_status(f"<html><body>{text}</body></html>") == status

    def test_script_text_is_ignored(self):
        html = "<html><body><script>var label = 'sold out';</script><p>Hello</p></body></html>"
        assert detect_stock_status(html) == StockStatus.UNKNOWN

    def test_broken_json_ld_falls_back_to_text(self):
        html = '<script type="application/ld+json">{not json</script><p>In stock</p>'
        assert detect_stock_status(html) == StockStatus.IN_STOCK


class TestStockProbe:

    @staticmethod
    def client(handler) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(handler))

    async def test_reads_page(self):
        def page(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, html=JSON_LD_OUT)

        async with self.client(page) as client:
            assert await StockProbe().check(client, "https://shop.example.com/p/1") == StockStatus.OUT_OF_STOCK

    async def test_error_status_is_unknown(self):
        async with self.client(lambda request: httpx.Response(503, html="<p>Sold out</p>")) as client:
            assert await StockProbe().check(client, "https://shop.example.com/p/1") == StockStatus.UNKNOWN

    async def test_non_html_is_unknown(self):
        async with self.client(lambda request: httpx.Response(200, json={"stock": 0})) as client:
            assert await StockProbe().check(client, "https://shop.example.com/p/1") == StockStatus.UNKNOWN

    async def test_network_error_is_unknown(self):
        def down(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        async with self.client(down) as client:
            assert await StockProbe().check(client, "https://shop.example.com/p/1") == StockStatus.UNKNOWN
