from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal


ProviderName = Literal["SuperCar", "PremiumCar"]

PRIMARY_PROVIDER: ProviderName = "SuperCar"
FALLBACK_PROVIDER: ProviderName = "PremiumCar"

MAX_VRM_LENGTH = 7


@dataclass(frozen=True)
class Valuation:
    vrm: str
    lowest_value: int
    highest_value: int

    def __post_init__(self) -> None:
        if not self.vrm:
            raise ValueError("vrm must not be empty")
        if len(self.vrm) > MAX_VRM_LENGTH:
            raise ValueError(f"vrm must be {MAX_VRM_LENGTH} characters or less")
        if self.lowest_value < 0 or self.highest_value < 0:
            raise ValueError(f"valuation bounds must be non-negative for {self.vrm}")

    def to_dict(self) -> dict[str, Any]:
        return {"vrm": self.vrm, "lowest_value": self.lowest_value, "highest_value": self.highest_value}


@dataclass
class ProviderLog:
    """One upstream call attempt.

    ``request_duration`` is elapsed wall-clock milliseconds. ``response_code``
    is the upstream HTTP status, or 503 when nothing usable came back.
    """

    vrm: str
    provider_name: ProviderName
    request_url: str
    request_date: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    request_duration: float = 0.0
    response_code: int | None = None
    error_message: str | None = None
    id: str | None = None

    @property
    def ok(self) -> bool:
        return self.response_code == 200 and self.error_message is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "vrm": self.vrm,
            "provider_name": self.provider_name,
            "request_url": self.request_url,
            "request_date": self.request_date,
            "request_duration": self.request_duration,
            "response_code": self.response_code,
            "error_message": self.error_message,
        }


@dataclass(frozen=True)
class CarValuationResponse:
    valuation: Valuation | None
    provider_log: ProviderLog | None
