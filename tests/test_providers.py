import httpx
import pytest

from valuation.data_models import ProviderLog, Valuation
from valuation_service.metrics import MetricsRegistry
from valuation_service.providers import PremiumCarValuationClient, SuperCarValuationClient

SUPER_CAR_URL = "http://supercar.test"
PREMIUM_CAR_URL = "http://premiumcar.test"

PREMIUM_XML = """
  <?xml version="1.0" encoding="UTF-8"?>
  <Response>
    <RegistrationDate>2012-06-14T00:00:00.0000000</RegistrationDate>
    <RegistrationYear>2001</RegistrationYear>
    <RegistrationMonth>10</RegistrationMonth>
    <ValuationPrivateSaleMinimum>11500</ValuationPrivateSaleMinimum>
    <ValuationPrivateSaleMaximum>12750</ValuationPrivateSaleMaximum>
    <ValuationDealershipMinimum>9500</ValuationDealershipMinimum>
    <ValuationDealershipMaximum>10275</ValuationDealershipMaximum>
  </Response>"""


def _super_car(handler) -> SuperCarValuationClient:
    return SuperCarValuationClient(SUPER_CAR_URL, transport=httpx.MockTransport(handler), metrics=MetricsRegistry())


def _premium_car(handler) -> PremiumCarValuationClient:
    return PremiumCarValuationClient(PREMIUM_CAR_URL, transport=httpx.MockTransport(handler), metrics=MetricsRegistry())


def _network_error(request: httpx.Request) -> httpx.Response:
    raise httpx.ConnectError("Network Error", request=request)


# ── SuperCar (primary, JSON) ────────────────────────────────────────


@pytest.mark.asyncio
async def test_super_car_success():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(str(request.url))
        return httpx.Response(200, json={"valuation": {"upperValue": 20000, "lowerValue": 18000}})

    valuation, log = await _super_car(handler).fetch_valuation("ABC123", 10000)

    assert seen == [f"{SUPER_CAR_URL}/valuations/ABC123?mileage=10000"]
    assert valuation == Valuation(vrm="ABC123", lowest_value=18000, highest_value=20000)
    assert isinstance(log, ProviderLog)
    assert log.vrm == "ABC123"
    assert log.provider_name == "SuperCar"
    assert log.request_url == f"{SUPER_CAR_URL}/valuations/ABC123?mileage=10000"
    assert log.request_date.tzinfo is not None
    assert log.request_duration >= 0
    assert log.response_code == 200
    assert log.error_message is None
    assert log.ok


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [404, 500])
async def test_super_car_upstream_error(status):
    client = _super_car(lambda request: httpx.Response(status))
    valuation, log = await client.fetch_valuation("NOTFND", 10000)

    assert valuation is None
    assert log.response_code == status
    assert log.error_message == f"Request failed with status code {status}"
    assert log.request_url == f"{SUPER_CAR_URL}/valuations/NOTFND?mileage=10000"
    assert not log.ok


@pytest.mark.asyncio
async def test_super_car_network_error():
    valuation, log = await _super_car(_network_error).fetch_valuation("NETERR", 10000)

    assert valuation is None
    assert log.response_code == 503
    assert log.error_message == "Network Error"
    assert log.request_duration >= 0


@pytest.mark.asyncio
async def test_super_car_timeout():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    valuation, log = await _super_car(handler).fetch_valuation("SLOW1", 10000)
    assert valuation is None
    assert log.response_code == 503
    assert log.error_message == "timed out"


@pytest.mark.asyncio
async def test_super_car_malformed_body():
    client = _super_car(lambda request: httpx.Response(200, json={"unexpected": True}))
    valuation, log = await client.fetch_valuation("ABC123", 10000)

    assert valuation is None
    assert log.response_code == 503
    assert log.error_message is not None


@pytest.mark.asyncio
@pytest.mark.parametrize("value", [12750.99, "12750.99", "1e30", 2**31, "inf"])
async def test_super_car_non_integral_or_out_of_range_value_rejected(value):
    body = {"valuation": {"upperValue": value, "lowerValue": 1000}}
    client = _super_car(lambda request: httpx.Response(200, json=body))
    valuation, log = await client.fetch_valuation("ABC123", 10000)

    assert valuation is None
    assert log.response_code == 503
    assert log.error_message.startswith("Malformed SuperCar response: upperValue")


@pytest.mark.asyncio
async def test_super_car_whole_number_float_accepted():
    body = {"valuation": {"upperValue": "7000.0", "lowerValue": 5000.0}}
    client = _super_car(lambda request: httpx.Response(200, json=body))
    valuation, _ = await client.fetch_valuation("ABC123", 10000)
    assert valuation == Valuation(vrm="ABC123", lowest_value=5000, highest_value=7000)


@pytest.mark.asyncio
async def test_super_car_oversized_value_is_abbreviated_in_message():
    body = {"valuation": {"upperValue": "x" * 3000, "lowerValue": 1000}}
    client = _super_car(lambda request: httpx.Response(200, json=body))
    valuation, log = await client.fetch_valuation("ABC123", 10000)

    assert valuation is None
    assert log.response_code == 503
    assert len(log.error_message) < 200


@pytest.mark.asyncio
async def test_super_car_follows_redirects():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url.path)
        if request.url.path.startswith("/valuations/"):
            return httpx.Response(301, headers={"Location": f"{SUPER_CAR_URL}/v2/valuations/ABC123?mileage=10000"})
        return httpx.Response(200, json={"valuation": {"upperValue": 7000, "lowerValue": 5000}})

    valuation, log = await _super_car(handler).fetch_valuation("ABC123", 10000)

    assert seen == ["/valuations/ABC123", "/v2/valuations/ABC123"]
    assert valuation == Valuation(vrm="ABC123", lowest_value=5000, highest_value=7000)
    assert log.response_code == 200
    assert log.request_url == f"{SUPER_CAR_URL}/valuations/ABC123?mileage=10000"
    assert log.ok


@pytest.mark.asyncio
async def test_super_car_negative_value_rejected():
    body = {"valuation": {"upperValue": 1000, "lowerValue": -5}}
    client = _super_car(lambda request: httpx.Response(200, json=body))
    valuation, log = await client.fetch_valuation("ABC123", 10000)
    assert valuation is None
    assert log.response_code == 503


@pytest.mark.asyncio
async def test_super_car_requires_mileage():
    client = _super_car(lambda request: httpx.Response(200))
    with pytest.raises(ValueError):
        await client.fetch_valuation("ABC123", -1)
    with pytest.raises(ValueError):
        await client.fetch_valuation("", 100)


@pytest.mark.asyncio
async def test_provider_records_metrics():
    registry = MetricsRegistry()
    client = SuperCarValuationClient(
        SUPER_CAR_URL,
        transport=httpx.MockTransport(lambda request: httpx.Response(500)),
        metrics=registry,
    )
    await client.fetch_valuation("ABC123", 1)
    assert registry.counters["provider_requests_SuperCar_failure"] == 1
    assert len(registry.histograms["provider_SuperCar"]) == 1


# ── PremiumCar (fallback, XML) ──────────────────────────────────────


@pytest.mark.asyncio
async def test_premium_car_success_keeps_inverted_mapping():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((str(request.url), request.headers.get("Accept")))
        return httpx.Response(200, text=PREMIUM_XML, headers={"Content-Type": "application/xml"})

    valuation, log = await _premium_car(handler).fetch_valuation("ABC123", 10000)

    assert seen == [(f"{PREMIUM_CAR_URL}/valueCar?vrm=ABC123", "application/xml")]
    # minimum -> highest_value, maximum -> lowest_value
    assert valuation == Valuation(vrm="ABC123", lowest_value=12750, highest_value=11500)
    assert log.provider_name == "PremiumCar"
    assert log.response_code == 200
    assert log.error_message is None


@pytest.mark.asyncio
async def test_premium_car_ignores_mileage():
    client = _premium_car(lambda request: httpx.Response(200, text=PREMIUM_XML))
    valuation, log = await client.fetch_valuation("ABC123")
    assert valuation is not None
    assert log.request_url == f"{PREMIUM_CAR_URL}/valueCar?vrm=ABC123"


@pytest.mark.asyncio
async def test_premium_car_upstream_error():
    client = _premium_car(lambda request: httpx.Response(502))
    valuation, log = await client.fetch_valuation("ABC123")
    assert valuation is None
    assert log.response_code == 502
    assert log.error_message == "Request failed with status code 502"


@pytest.mark.asyncio
async def test_premium_car_network_error():
    valuation, log = await _premium_car(_network_error).fetch_valuation("ABC123")
    assert valuation is None
    assert log.response_code == 503
    assert log.error_message == "Network Error"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "body",
    [
        "not xml at all",
        "<Response><ValuationPrivateSaleMinimum>100</ValuationPrivateSaleMinimum></Response>",
        "<Other><Thing>1</Thing></Other>",
        "<Response><ValuationPrivateSaleMinimum>abc</ValuationPrivateSaleMinimum>"
        "<ValuationPrivateSaleMaximum>200</ValuationPrivateSaleMaximum></Response>",
    ],
)
async def test_premium_car_malformed_xml(body):
    client = _premium_car(lambda request: httpx.Response(200, text=body))
    valuation, log = await client.fetch_valuation("ABC123")
    assert valuation is None
    assert log.response_code == 503
    assert log.error_message.startswith("Malformed PremiumCar response")
