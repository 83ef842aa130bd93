from __future__ import annotations

import logging

from valuation.data_models import CarValuationResponse, ProviderLog, Valuation
from valuation.failover import FailoverManager
from valuation_service.metrics import MetricsRegistry, metrics as default_metrics
from valuation_service.providers import ValuationProvider
from valuation_service.storage import ValuationConflictError, ValuationStore

logger = logging.getLogger(__name__)


class ValuationOrchestrator:
    """Cache-aside valuation lookup: stored valuation first, then a provider.

    A stored valuation is final, so a hit never reaches a provider. On a miss
    the failover manager picks the provider; only primary-provider outcomes
    are fed back to it. Every provider attempt is logged. Racing requests for
    the same new VRM are settled by the store's uniqueness constraint: the
    losing insert is ignored.
    """

    def __init__(
        self,
        failover: FailoverManager,
        store: ValuationStore,
        primary: ValuationProvider,
        fallback: ValuationProvider,
        metrics: MetricsRegistry | None = None,
    ) -> None:
        self.failover = failover
        self.store = store
        self.primary = primary
        self.fallback = fallback
        self._metrics = metrics or default_metrics

    async def fetch_car_valuation(self, vrm: str, mileage: int) -> CarValuationResponse:
        last_log = await self.store.find_latest_provider_log(vrm)
        existing = await self.store.find_valuation_by_vrm(vrm)
        if existing is not None:
            self._metrics.incr("valuation_cache_hit")
            logger.debug("Stored valuation found for %s", vrm)
            return CarValuationResponse(valuation=existing, provider_log=last_log)

        self._metrics.incr("valuation_cache_miss")
        valuation, log = await self._fetch_from_provider(vrm, mileage)

        await self.store.insert_provider_log(log)

        if valuation is not None:
            await self._save_valuation(valuation)

        return CarValuationResponse(valuation=valuation, provider_log=log)

    async def _fetch_from_provider(self, vrm: str, mileage: int) -> tuple[Valuation | None, ProviderLog]:
        if self.failover.should_use_fallback_provider():
            self._metrics.incr("fallback_provider_used")
            return await self.fallback.fetch_valuation(vrm)

        valuation, log = await self.primary.fetch_valuation(vrm, mileage)
        if log.response_code == 200:
            self.failover.record_success()
        else:
            self.failover.record_failure()
        return valuation, log

    async def _save_valuation(self, valuation: Valuation) -> None:
        try:
            await self.store.insert_valuation(valuation)
        except ValuationConflictError:
            logger.debug("Valuation for %s was stored by a concurrent request", valuation.vrm)
            return
        logger.info(
            "Valuation created for %s",
            valuation.vrm,
            extra={"extra_data": valuation.to_dict()},
        )


async def fetch_car_valuation(
    failover: FailoverManager,
    store: ValuationStore,
    primary: ValuationProvider,
    fallback: ValuationProvider,
    vrm: str,
    mileage: int,
) -> CarValuationResponse:
    orchestrator = ValuationOrchestrator(failover=failover, store=store, primary=primary, fallback=fallback)
    return await orchestrator.fetch_car_valuation(vrm, mileage)
