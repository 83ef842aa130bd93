from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import Column, DateTime, Float, Integer, MetaData, String, Table, insert, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from valuation.data_models import MAX_VRM_LENGTH, ProviderLog, Valuation

logger = logging.getLogger(__name__)


ERROR_MESSAGE_LENGTH = 1024

metadata = MetaData()

valuations_table = Table(
    "valuations",
    metadata,
    Column("vrm", String(MAX_VRM_LENGTH), primary_key=True),
    Column("lowest_value", Integer, nullable=False),
    Column("highest_value", Integer, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

provider_logs_table = Table(
    "provider_logs",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("vrm", String(MAX_VRM_LENGTH), nullable=False, index=True),
    Column("provider_name", String(32), nullable=False),
    Column("request_url", String(512), nullable=False),
    Column("request_date", DateTime(timezone=True), nullable=False, index=True),
    Column("request_duration", Float, nullable=False),
    Column("response_code", Integer, nullable=True),
    Column("error_message", String(ERROR_MESSAGE_LENGTH), nullable=True),
)


class StorageError(Exception):
    pass


class ValuationConflictError(StorageError):
    """A valuation for this VRM already exists."""

    def __init__(self, vrm: str) -> None:
        super().__init__(f"valuation for {vrm} already exists")
        self.vrm = vrm


class ValuationStore:
    """Valuations (one per VRM, never updated) and the append-only provider log.

    Runs against an async SQLAlchemy engine. When the database is unreachable
    at startup it keeps everything in process memory with the same contract,
    including the VRM uniqueness conflict.
    """

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.engine: AsyncEngine | None = None
        self._fallback_mode = False
        self._mem_valuations: dict[str, dict[str, Any]] = {}
        self._mem_provider_logs: list[dict[str, Any]] = []

    async def connect(self) -> None:
        try:
            self.engine = create_async_engine(self.dsn, future=True)
            await self.init_schema()
        except Exception as exc:
            logger.warning("Database unavailable, using in-memory store: %s", exc)
            self._fallback_mode = True
            if self.engine is not None:
                await self.engine.dispose()
            self.engine = None

    async def close(self) -> None:
        if self.engine is not None:
            await self.engine.dispose()

    async def ping(self) -> bool:
        if self.engine is None or self._fallback_mode:
            return False
        try:
            async with self.engine.connect() as conn:
                await conn.execute(select(1))
            return True
        except Exception:
            return False

    async def init_schema(self) -> None:
        if self.engine is None:
            return
        async with self.engine.begin() as conn:
            await conn.run_sync(metadata.create_all)

    # ── Valuations ──────────────────────────────────────────────────

    async def find_valuation_by_vrm(self, vrm: str) -> Valuation | None:
        if self.engine is None:
            row = self._mem_valuations.get(vrm)
            return _valuation_from_row(row) if row else None
        stmt = select(valuations_table).where(valuations_table.c.vrm == vrm)
        async with self.engine.connect() as conn:
            row = (await conn.execute(stmt)).first()
        return _valuation_from_row(dict(row._mapping)) if row else None

    async def insert_valuation(self, valuation: Valuation, created_at: datetime | None = None) -> None:
        row = {
            **valuation.to_dict(),
            "created_at": created_at or _utcnow(),
        }
        if self.engine is None:
            if valuation.vrm in self._mem_valuations:
                raise ValuationConflictError(valuation.vrm)
            self._mem_valuations[valuation.vrm] = row
            return
        try:
            async with self.engine.begin() as conn:
                await conn.execute(insert(valuations_table).values(**row))
        except IntegrityError as exc:
            raise ValuationConflictError(valuation.vrm) from exc

    # ── Provider logs ───────────────────────────────────────────────

    async def insert_provider_log(self, log: ProviderLog) -> str:
        row_id = str(uuid4())
        row = {**log.to_dict(), "id": row_id}
        if row["error_message"] is not None:
            row["error_message"] = row["error_message"][:ERROR_MESSAGE_LENGTH]
        if self.engine is None:
            self._mem_provider_logs.append(row)
        else:
            async with self.engine.begin() as conn:
                await conn.execute(insert(provider_logs_table).values(**row))
        log.id = row_id
        return row_id

    async def find_latest_provider_log(self, vrm: str) -> ProviderLog | None:
        logs = await self.list_provider_logs(vrm, limit=1)
        return logs[0] if logs else None

    async def list_provider_logs(self, vrm: str, limit: int = 50) -> list[ProviderLog]:
        if self.engine is None:
            rows = [r for r in self._mem_provider_logs if r["vrm"] == vrm]
            # stable sort keeps insertion order for identical timestamps
            rows = sorted(reversed(rows), key=lambda r: r["request_date"], reverse=True)
            return [_provider_log_from_row(r) for r in rows[:limit]]
        stmt = (
            select(provider_logs_table)
            .where(provider_logs_table.c.vrm == vrm)
            .order_by(provider_logs_table.c.request_date.desc())
            .limit(limit)
        )
        async with self.engine.connect() as conn:
            rows = (await conn.execute(stmt)).all()
        return [_provider_log_from_row(dict(r._mapping)) for r in rows]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _valuation_from_row(row: dict[str, Any]) -> Valuation:
    return Valuation(vrm=row["vrm"], lowest_value=row["lowest_value"], highest_value=row["highest_value"])


def _provider_log_from_row(row: dict[str, Any]) -> ProviderLog:
    return ProviderLog(
        id=row["id"],
        vrm=row["vrm"],
        provider_name=row["provider_name"],
        request_url=row["request_url"],
        request_date=row["request_date"],
        request_duration=row["request_duration"],
        response_code=row["response_code"],
        error_message=row["error_message"],
    )
