from __future__ import annotations

import logging
import reprlib
import time
import xml.etree.ElementTree as ET
from typing import Any

import httpx

from valuation.data_models import FALLBACK_PROVIDER, PRIMARY_PROVIDER, ProviderLog, ProviderName, Valuation
from valuation_service.metrics import MetricsRegistry, metrics as default_metrics

logger = logging.getLogger(__name__)

# Assigned locally when no usable response came back from the provider.
NO_RESPONSE_STATUS = 503

# Valuation bounds are stored in 32-bit integer columns.
MAX_STORED_VALUE = 2**31 - 1


class ValuationProvider:
    """Base for upstream valuation APIs.

    Subclasses supply the request URL and the body parser; this class owns
    the request log and turns every failure mode into a populated
    ``ProviderLog`` instead of an exception.
    """

    name: ProviderName
    accept = "application/json"

    def __init__(
        self,
        base_url: str,
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
        metrics: MetricsRegistry | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._metrics = metrics or default_metrics

    def build_url(self, vrm: str, mileage: int | None) -> str:
        raise NotImplementedError

    def parse(self, vrm: str, response: httpx.Response) -> Valuation:
        raise NotImplementedError

    def validate(self, vrm: str, mileage: int | None) -> None:
        if not vrm:
            raise ValueError("vrm must not be empty")

    async def fetch_valuation(self, vrm: str, mileage: int | None = None) -> tuple[Valuation | None, ProviderLog]:
        self.validate(vrm, mileage)
        url = self.build_url(vrm, mileage)
        log = ProviderLog(vrm=vrm, provider_name=self.name, request_url=url)
        valuation: Valuation | None = None

        started = time.perf_counter()
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport, follow_redirects=True
            ) as client:
                resp = await client.get(url, headers={"Accept": self.accept})
            log.response_code = resp.status_code
            resp.raise_for_status()
            valuation = self.parse(vrm, resp)
        except httpx.HTTPStatusError as exc:
            log.response_code = exc.response.status_code
            log.error_message = f"Request failed with status code {exc.response.status_code}"
        except httpx.RequestError as exc:
            log.response_code = NO_RESPONSE_STATUS
            log.error_message = str(exc) or "Network Error"
        except (ValueError, KeyError, TypeError, ET.ParseError) as exc:
            log.response_code = NO_RESPONSE_STATUS
            log.error_message = f"Malformed {self.name} response: {exc}"
        finally:
            elapsed = time.perf_counter() - started
            log.request_duration = elapsed * 1000

        self._record(log, elapsed)
        return valuation, log

    def _record(self, log: ProviderLog, elapsed: float) -> None:
        outcome = "success" if log.ok else "failure"
        self._metrics.incr(f"provider_requests_{self.name}_{outcome}")
        self._metrics.observe(f"provider_{self.name}", elapsed)
        level = logging.INFO if log.ok else logging.WARNING
        logger.log(
            level,
            "%s responded %s for %s in %.0f ms",
            self.name,
            log.response_code,
            log.vrm,
            log.request_duration,
            extra={"extra_data": {"provider": self.name, "vrm": log.vrm, "error": log.error_message}},
        )


class SuperCarValuationClient(ValuationProvider):
    """Primary provider. JSON body: ``{"valuation": {"upperValue", "lowerValue"}}``."""

    name: ProviderName = PRIMARY_PROVIDER

    def validate(self, vrm: str, mileage: int | None) -> None:
        super().validate(vrm, mileage)
        if mileage is None or mileage < 0:
            raise ValueError("mileage must be a non-negative number")

    def build_url(self, vrm: str, mileage: int | None) -> str:
        return f"{self.base_url}/valuations/{vrm}?mileage={mileage}"

    def parse(self, vrm: str, response: httpx.Response) -> Valuation:
        body = response.json()
        bounds = body["valuation"]
        return Valuation(
            vrm=vrm,
            lowest_value=_as_int(bounds["lowerValue"], "lowerValue"),
            highest_value=_as_int(bounds["upperValue"], "upperValue"),
        )


class PremiumCarValuationClient(ValuationProvider):
    """Fallback provider. XML body with private-sale minimum/maximum fields.

    The upstream minimum is stored as ``highest_value`` and the maximum as
    ``lowest_value``. Existing consumers rely on this mapping.
    """

    name: ProviderName = FALLBACK_PROVIDER
    accept = "application/xml"

    def build_url(self, vrm: str, mileage: int | None) -> str:
        return f"{self.base_url}/valueCar?vrm={vrm}"

    def parse(self, vrm: str, response: httpx.Response) -> Valuation:
        root = ET.fromstring(response.text.strip())
        node = root if root.tag == "Response" else root.find("Response")
        if node is None:
            raise ValueError("missing <Response> element")
        minimum = node.findtext("ValuationPrivateSaleMinimum")
        maximum = node.findtext("ValuationPrivateSaleMaximum")
        return Valuation(
            vrm=vrm,
            highest_value=_as_int(minimum, "ValuationPrivateSaleMinimum"),
            lowest_value=_as_int(maximum, "ValuationPrivateSaleMaximum"),
        )


def _as_int(val: Any, field_name: str) -> int:
    if val is None or isinstance(val, bool):
        raise ValueError(f"{field_name} is missing")
    try:
        number = float(str(val).strip())
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{field_name} is not a number: {reprlib.repr(val)}") from exc
    if not number.is_integer():
        raise ValueError(f"{field_name} is not a whole number: {reprlib.repr(val)}")
    if abs(number) > MAX_STORED_VALUE:
        raise ValueError(f"{field_name} is out of range: {reprlib.repr(val)}")
    return int(number)
