"""Unit tests for fulfillment detail parsing and fetching."""

import httpx
import pytest

from erp_sync.services.detail_fetcher import (
    DetailFetcher,
    build_tracking_url,
    extract_tracking_numbers,
    infer_carrier,
    parse_fulfillment,
)

from .conftest import json_response, make_client

UPS = "1Z999AA10123456784"


def fulfillment_record():
    return {
        "shipStatus": {"id": "C", "refName": "Shipped"},
        "packageList": {"packages": [
            {"packageTrackingNumber": UPS},
            {"packageTrackingNumber": UPS},
        ]},
        "item": {"items": [
            {"line": 1, "item": {"id": "7", "refName": "SKU-7"}, "quantity": -2},
            {
                "line": 1,
                "item": {"id": "7", "refName": "SKU-7"},
                "quantity": 1,
                "inventoryDetail": {"assignments": [{"issueinventorynumber": {"text": "SN1"}}]},
            },
            {"line": 2, "item": {"id": "8", "refName": "SKU-8"}, "quantity": 4, "custcolns_comment": "gift"},
            {"item": {"id": "9"}, "quantity": 1},
        ]},
    }


class TestCarriers:
    """Tracking number formats"""

    def test_infer_carrier(self):
        assert infer_carrier(UPS) == "ups"
        assert infer_carrier("9400 1118 9922 3344 5566 77") == "usps"
        assert infer_carrier("EC123456789US") == "usps"
        assert infer_carrier("123456789012") == "fedex"
        assert infer_carrier("1234567890") == "dhl"
        assert infer_carrier("JJD0099887766") == "dhl"
        assert infer_carrier("C123456789012") == "ontrac"
        assert infer_carrier("hello") == ""

    def test_tracking_url(self):
        assert build_tracking_url("ups", UPS) == f"https://www.ups.com/track?tracknum={UPS}"
        assert build_tracking_url("", "ABC 1").startswith("https://www.google.com/search?q=ABC%201%20tracking")
        assert build_tracking_url("ups", "") == ""

    def test_tracking_fallback_scans_fields(self):
        record = {"custbody_tracking_no": " ABC ", "nested": [{"trackingNumber": "XYZ"}]}

        assert extract_tracking_numbers(record) == ["ABC", "XYZ"]


class TestParseFulfillment:

    def test_parse(self):
        parsed = parse_fulfillment(fulfillment_record())

        assert parsed["ship_status"] == "Shipped"
        assert parsed["tracking"] == UPS
        assert parsed["tracking_details"] == [
            {"number": UPS, "carrier": "ups", "url": f"https://www.ups.com/track?tracknum={UPS}"}
        ]
        lines = parsed["lines"]
        assert [line["line_no"] for line in lines] == [1, 2]
        assert lines[0]["quantity"] == 3.0
        assert lines[0]["serial_numbers"] == ["SN1"]
        assert lines[0]["item_sku"] == "SKU-7"
        assert lines[1]["comments"] == ["gift"]

    def test_empty_record(self):
        parsed = parse_fulfillment({})

        assert parsed["tracking"] is None
        assert parsed["tracking_urls"] == []
        assert parsed["lines"] == []


class TestDetailFetcher:

    @pytest.mark.asyncio
    async def test_fetch_many_maps_failures_to_none(self):
        paths = []

        def handler(request):
            paths.append(request.url.path)
            assert request.url.params["expandSubResources"] == "true"
            if request.url.path.endswith("/2"):
                return httpx.Response(404, text="not found")
            return json_response(fulfillment_record())

        fetcher = DetailFetcher(client=make_client(handler), base_url="https://erp.test/services/rest", concurrency=2)

        results = await fetcher.fetch_many("itemFulfillment", [1, 2])

        assert results[1]["ship_status"] == "Shipped"
        assert results[2] is None
        assert sorted(paths) == [
            "/services/rest/record/v1/itemFulfillment/1",
            "/services/rest/record/v1/itemFulfillment/2",
        ]

    @pytest.mark.asyncio
    async def test_throttle_ceiling_maps_to_none(self):
        client = make_client(lambda request: httpx.Response(429), backoff_schedule=[1.0], max_total_wait=0.5)
        fetcher = DetailFetcher(client=client, base_url="https://erp.test")

        assert await fetcher.fetch_many("itemFulfillment", [5]) == {5: None}
