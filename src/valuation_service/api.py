from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

import httpx
from fastapi import FastAPI, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from valuation.data_models import MAX_VRM_LENGTH, ProviderLog, Valuation
from valuation.failover import FailoverManager
from valuation_service.logging_config import configure_logging, correlation_id, new_correlation_id
from valuation_service.metrics import metrics
from valuation_service.orchestrator import ValuationOrchestrator
from valuation_service.providers import NO_RESPONSE_STATUS, PremiumCarValuationClient, SuperCarValuationClient
from valuation_service.settings import ServiceSettings
from valuation_service.storage import ValuationStore


# ── Request / Response Models ───────────────────────────────────────

class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ValuationRequest(BaseModel):
    mileage: int | None = None


class ValuationOut(CamelModel):
    vrm: str
    lowest_value: int
    highest_value: int


class ProviderLogOut(CamelModel):
    id: str | None = None
    vrm: str
    provider_name: str
    request_url: str
    request_date: datetime
    request_duration: float
    response_code: int | None = None
    error_message: str | None = None


class ValuationResponse(CamelModel):
    valuation: ValuationOut
    provider_log: ProviderLogOut | None = None


class ProviderLogsResponse(CamelModel):
    vrm: str
    count: int
    provider_logs: list[ProviderLogOut]


class HealthResponse(BaseModel):
    status: str


class ReadinessResponse(BaseModel):
    status: str
    checks: dict[str, bool]


def _error(status_code: int, message: str | None) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"message": message, "statusCode": status_code})


def _valuation_response(valuation: Valuation, log: ProviderLog | None) -> ValuationResponse:
    return ValuationResponse(
        valuation=ValuationOut(**valuation.to_dict()),
        provider_log=ProviderLogOut(**log.to_dict()) if log is not None else None,
    )


def _vrm_too_long(vrm: str) -> bool:
    return len(vrm) > MAX_VRM_LENGTH


# ── App Factory ─────────────────────────────────────────────────────

def create_app(
    settings: ServiceSettings | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    settings = settings or ServiceSettings()
    configure_logging(level=settings.log_level, fmt=settings.log_format)

    store = ValuationStore(dsn=settings.postgres_dsn)
    failover = FailoverManager(settings.failover_config())
    primary = SuperCarValuationClient(
        base_url=settings.super_car_base_url,
        timeout=settings.provider_timeout_seconds,
        transport=transport,
    )
    fallback = PremiumCarValuationClient(
        base_url=settings.premium_car_base_url,
        timeout=settings.provider_timeout_seconds,
        transport=transport,
    )
    orchestrator = ValuationOrchestrator(failover=failover, store=store, primary=primary, fallback=fallback)

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        await store.connect()
        try:
            yield
        finally:
            await store.close()

    app = FastAPI(title="Car Valuation API", version="1.0.0", lifespan=lifespan)
    app.state.failover = failover
    app.state.store = store

    @app.middleware("http")
    async def correlation_id_middleware(request: Request, call_next: Any) -> Response:
        cid = request.headers.get("X-Correlation-ID") or new_correlation_id()
        correlation_id.set(cid)
        response = await call_next(request)
        response.headers["X-Correlation-ID"] = cid
        return response

    # ── Valuations ──────────────────────────────────────────────────

    @app.put("/valuations/{vrm}", response_model=ValuationResponse, response_model_by_alias=True)
    async def put_valuation(vrm: str, payload: ValuationRequest | None = None) -> Any:
        if _vrm_too_long(vrm):
            return _error(400, f"vrm must be {MAX_VRM_LENGTH} characters or less")
        if payload is None or payload.mileage is None or payload.mileage <= 0:
            return _error(400, "mileage must be a positive number")

        result = await orchestrator.fetch_car_valuation(vrm, payload.mileage)
        if result.valuation is None:
            log = result.provider_log
            if log is None or log.response_code is None:
                return _error(NO_RESPONSE_STATUS, "Valuation provider unavailable")
            return _error(log.response_code, log.error_message)

        return _valuation_response(result.valuation, result.provider_log)

    @app.get("/valuations/{vrm}", response_model=ValuationResponse, response_model_by_alias=True)
    async def get_valuation(vrm: str) -> Any:
        if _vrm_too_long(vrm):
            return _error(400, f"vrm must be {MAX_VRM_LENGTH} characters or less")

        valuation = await store.find_valuation_by_vrm(vrm)
        if valuation is None:
            return _error(404, f"Valuation for VRM {vrm} not found")
        log = await store.find_latest_provider_log(vrm)
        return _valuation_response(valuation, log)

    @app.get("/valuations/{vrm}/provider-logs", response_model=ProviderLogsResponse, response_model_by_alias=True)
    async def get_provider_logs(vrm: str, limit: int = 20) -> Any:
        if _vrm_too_long(vrm):
            return _error(400, f"vrm must be {MAX_VRM_LENGTH} characters or less")
        logs = await store.list_provider_logs(vrm, limit=max(1, min(limit, 100)))
        return ProviderLogsResponse(
            vrm=vrm,
            count=len(logs),
            provider_logs=[ProviderLogOut(**log.to_dict()) for log in logs],
        )

    # ── Failover ────────────────────────────────────────────────────

    @app.get("/failover")
    async def get_failover_status() -> dict[str, Any]:
        return failover.snapshot()

    @app.post("/failover/reset")
    async def reset_failover() -> dict[str, Any]:
        failover.reset_failover_status()
        return failover.snapshot()

    # ── Health ──────────────────────────────────────────────────────

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        return HealthResponse(status="ok")

    @app.get("/ready", response_model=ReadinessResponse)
    async def ready() -> ReadinessResponse:
        checks = {"database": await store.ping()}
        if not all(checks.values()):
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail=ReadinessResponse(status="degraded", checks=checks).model_dump(),
            )
        return ReadinessResponse(status="ready", checks=checks)

    # ── Metrics ─────────────────────────────────────────────────────

    @app.get("/metrics")
    async def get_metrics() -> dict[str, Any]:
        return {**metrics.summary(), "failover": failover.snapshot()}

    @app.get("/metrics/prometheus")
    async def get_prometheus_metrics() -> Response:
        return Response(content=metrics.prometheus_text(), media_type="text/plain; charset=utf-8")

    return app


app = create_app()
