"""Decision engine: snapshot -> action.

Deterministic and synchronous; no I/O.  Rules, in order:
  1. Clamp negative price/volume/liquidity/market cap to 0.
  2. Numeric confidence from the snapshot's confidence level, halved
     (by default) when the snapshot was served stale.
  3. Direction from 24h momentum: >0 BUY, <0 SELL, exactly 0 HOLD.
  4. A trade below MIN_CONFIDENCE becomes HOLD.
  5. A HOLD while a scheduled post is due becomes POST.
  6. Risk level from liquidity depth, escalated on thin-liquidity churn.
"""

from __future__ import annotations

from meme_agent.config import AgentConfig, DecisionConfig, ThresholdsConfig
from meme_agent.engine.models import Action, Decision, MarketSnapshot, RiskLevel

_ESCALATE = {
    RiskLevel.LOW: RiskLevel.MEDIUM,
    RiskLevel.MEDIUM: RiskLevel.HIGH,
    RiskLevel.HIGH: RiskLevel.HIGH,
}


def _clamp01(x: float) -> float:
    return max(0.0, min(1.0, x))


def numeric_confidence(snapshot: MarketSnapshot, cfg: DecisionConfig) -> float:
    score = cfg.confidence_scores[snapshot.confidence_level.value]
    if snapshot.degraded:
        score *= cfg.degraded_penalty
    return _clamp01(score)


def assess_risk(
    volume_24h: float,
    liquidity_usd: float,
    thresholds: ThresholdsConfig,
    max_turnover_ratio: float,
) -> tuple[RiskLevel, str]:
    """Risk level and a one-line explanation."""
    volume = max(0.0, volume_24h)
    liquidity = max(0.0, liquidity_usd)
    if liquidity > thresholds.high_liquidity:
        level = RiskLevel.LOW
    elif liquidity > thresholds.medium_liquidity:
        level = RiskLevel.MEDIUM
    else:
        level = RiskLevel.HIGH
    reason = f"liquidity ${liquidity:,.0f} -> {level.value} risk"

    if liquidity > 0 and volume / liquidity > max_turnover_ratio:
        escalated = _ESCALATE[level]
        reason += (
            f"; turnover {volume / liquidity:.1f}x exceeds {max_turnover_ratio:g}x"
            f" -> {escalated.value}"
        )
        level = escalated
    return level, reason


def decide(snapshot: MarketSnapshot, config: AgentConfig, *, post_due: bool = False) -> Decision:
    dcfg = config.decision
    min_confidence = config.trading.min_confidence
    reasons: list[str] = []

    confidence = numeric_confidence(snapshot, dcfg)
    reasons.append(
        f"confidence {snapshot.confidence_level.value} -> {confidence:.2f}"
        + (" (degraded data)" if snapshot.degraded else "")
    )

    momentum = snapshot.price_change_24h
    if momentum > 0:
        action = Action.BUY
        reasons.append(f"momentum {momentum:+.2f}% -> BUY")
    elif momentum < 0:
        action = Action.SELL
        reasons.append(f"momentum {momentum:+.2f}% -> SELL")
    else:
        action = Action.HOLD
        reasons.append("momentum flat -> HOLD")

    if action.is_trade and confidence < min_confidence:
        reasons.append(f"confidence {confidence:.2f} below minimum {min_confidence:.2f} -> HOLD")
        action = Action.HOLD

    if action is Action.HOLD and post_due:
        reasons.append("scheduled post due -> POST")
        action = Action.POST

    risk, risk_reason = assess_risk(
        snapshot.volume_24h,
        snapshot.liquidity_usd,
        dcfg.thresholds,
        dcfg.max_turnover_ratio,
    )
    reasons.append(risk_reason)

    return Decision(
        action=action,
        confidence=confidence,
        risk_level=risk,
        reasons=tuple(reasons),
        symbol=snapshot.symbol,
        momentum=momentum,
    )


class DecisionEngine:
    """Binds ``decide`` to one configuration."""

    def __init__(self, config: AgentConfig):
        self._config = config

    def decide(self, snapshot: MarketSnapshot, *, post_due: bool = False) -> Decision:
        return decide(snapshot, self._config, post_due=post_due)
