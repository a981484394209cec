"""Records that flow through one decision cycle.

MarketSnapshot and Decision are created fresh per cycle and are frozen;
nothing outside the cycle that produced them holds a reference once the
CycleResult has been recorded.
"""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any


class ConfidenceLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class RiskLevel(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class Action(str, Enum):
    BUY = "BUY"
    SELL = "SELL"
    HOLD = "HOLD"
    POST = "POST"

    @property
    def is_trade(self) -> bool:
        return self in (Action.BUY, Action.SELL)


class ActionStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


class ErrorKind(str, Enum):
    TRANSIENT_FETCH = "TRANSIENT_FETCH"
    CACHE_BACKEND = "CACHE_BACKEND"
    DATA_UNAVAILABLE = "DATA_UNAVAILABLE"
    EXECUTION = "EXECUTION"
    STALE_CYCLE = "STALE_CYCLE"


@dataclass(frozen=True)
class Volatility:
    current: float = 0.0
    average: float = 0.0
    adjustment_factor: float = 1.0


@dataclass(frozen=True)
class MarketSnapshot:
    """Normalized market view of one symbol at one instant."""
    symbol: str
    price: float
    volume_24h: float
    market_cap: float
    price_change_24h: float
    liquidity_usd: float
    confidence_level: ConfidenceLevel
    volatility: Volatility = field(default_factory=Volatility)
    captured_at: float = field(default_factory=time.time)
    degraded: bool = False

    @property
    def age_secs(self) -> float:
        return max(0.0, time.time() - self.captured_at)

    def as_degraded(self) -> "MarketSnapshot":
        return MarketSnapshot(
            symbol=self.symbol,
            price=self.price,
            volume_24h=self.volume_24h,
            market_cap=self.market_cap,
            price_change_24h=self.price_change_24h,
            liquidity_usd=self.liquidity_usd,
            confidence_level=self.confidence_level,
            volatility=self.volatility,
            captured_at=self.captured_at,
            degraded=True,
        )

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["confidence_level"] = self.confidence_level.value
        return d

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "MarketSnapshot":
        vol = raw.get("volatility") or {}
        return cls(
            symbol=str(raw["symbol"]),
            price=float(raw.get("price", 0.0)),
            volume_24h=float(raw.get("volume_24h", 0.0)),
            market_cap=float(raw.get("market_cap", 0.0)),
            price_change_24h=float(raw.get("price_change_24h", 0.0)),
            liquidity_usd=float(raw.get("liquidity_usd", 0.0)),
            confidence_level=ConfidenceLevel(raw.get("confidence_level", "low")),
            volatility=Volatility(
                current=float(vol.get("current", 0.0)),
                average=float(vol.get("average", 0.0)),
                adjustment_factor=float(vol.get("adjustment_factor", 1.0)),
            ),
            captured_at=float(raw.get("captured_at", 0.0)),
            degraded=bool(raw.get("degraded", False)),
        )


@dataclass(frozen=True)
class Decision:
    action: Action
    confidence: float
    risk_level: RiskLevel
    reasons: tuple[str, ...] = ()
    symbol: str = ""
    momentum: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action.value,
            "confidence": round(self.confidence, 4),
            "risk_level": self.risk_level.value,
            "reasons": list(self.reasons),
            "symbol": self.symbol,
            "momentum": self.momentum,
        }


@dataclass
class ActionResult:
    status: ActionStatus
    attempts: int = 0
    error: ErrorKind | None = None
    detail: str = ""
    reference: str = ""  # tx id or post id

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "attempts": self.attempts,
            "error": self.error.value if self.error else None,
            "detail": self.detail,
            "reference": self.reference,
        }


@dataclass
class CycleResult:
    """Summary of one fetch -> decide -> execute cycle."""
    cycle_id: int
    epoch: int
    symbol: str
    started_at: float
    ended_at: float = 0.0
    duration_secs: float = 0.0
    snapshot: MarketSnapshot | None = None
    decision: Decision | None = None
    result: ActionResult | None = None
    status: str = "pending"  # pending | completed | skipped | failed | stale
    errors: list[str] = field(default_factory=list)

    def finish(self, status: str) -> "CycleResult":
        self.status = status
        self.ended_at = time.time()
        self.duration_secs = round(self.ended_at - self.started_at, 3)
        return self

    def to_dict(self) -> dict[str, Any]:
        return {
            "cycle_id": self.cycle_id,
            "epoch": self.epoch,
            "symbol": self.symbol,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "duration_secs": self.duration_secs,
            "snapshot": self.snapshot.to_dict() if self.snapshot else None,
            "decision": self.decision.to_dict() if self.decision else None,
            "result": self.result.to_dict() if self.result else None,
            "status": self.status,
            "errors": list(self.errors),
        }
