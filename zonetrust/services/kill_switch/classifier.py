from __future__ import annotations

from datetime import datetime, timezone
import logging
import math
from typing import Any, Iterable, Mapping
from uuid import uuid4

from zonetrust.core.errors import InvalidSignalError, UnknownAnomalyTypeError
from zonetrust.domain.records import (
    AnomalyReport,
    AnomalyType,
    EntityKey,
    PriceAnomaly,
    PriceBaseline,
    PricePoint,
    Severity,
)
from zonetrust.services.kill_switch.policy import KillSwitchThresholds


logger = logging.getLogger(__name__)

# Severity for every type whose rank does not depend on context.
_FIXED_SEVERITY: dict[AnomalyType, Severity] = {
    AnomalyType.HAZARD_PHYSICAL: Severity.HIGH,
    AnomalyType.HAZARD_SAFETY: Severity.HIGH,
    AnomalyType.HAZARD_SCAM: Severity.HIGH,
    AnomalyType.HAZARD_ENVIRONMENTAL: Severity.HIGH,
    AnomalyType.CLOSURE_PERMANENT: Severity.HIGH,
    AnomalyType.CLOSURE_TEMPORARY: Severity.MEDIUM,
    AnomalyType.COORDINATE_ERROR: Severity.HIGH,
    AnomalyType.DATA_MISMATCH: Severity.MEDIUM,
    AnomalyType.TEXTURE_MISMATCH: Severity.LOW,
    AnomalyType.SPAM_SUSPECTED: Severity.LOW,
    AnomalyType.OTHER: Severity.LOW,
}
_PRICE_TYPES = frozenset({AnomalyType.PRICE_SPIKE, AnomalyType.PRICE_DROP})

# Variance step function for price anomalies, checked from the top down.
_PRICE_VARIANCE_STEPS: tuple[tuple[float, Severity], ...] = (
    (2.0, Severity.CRITICAL),
    (1.0, Severity.HIGH),
    (0.5, Severity.MEDIUM),
)

_unclassified = set(AnomalyType) - set(_FIXED_SEVERITY) - _PRICE_TYPES
if _unclassified:
    # Adding an anomaly type without a severity rule must fail at import, not default silently.
    raise RuntimeError(f"anomaly types without a severity rule: {sorted(t.value for t in _unclassified)}")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_anomaly_type(value: AnomalyType | str) -> AnomalyType:
    # Reject unknown types loudly; an unknown type could be masking a hazard.
    if isinstance(value, AnomalyType):
        return value
    try:
        return AnomalyType(value)
    except ValueError as exc:
        logger.error("anomaly_type_unrecognized value=%r", value)
        raise UnknownAnomalyTypeError(f"unrecognized anomaly type: {value!r}") from exc


def classify_severity(
    anomaly_type: AnomalyType | str,
    context: Mapping[str, Any] | None = None,
) -> Severity:
    """Rank an anomaly deterministically from its type and context.

    Hazards are always HIGH regardless of context. Price spikes and drops are
    ranked by ``context["variance"]`` (relative deviation from baseline).
    """
    resolved = parse_anomaly_type(anomaly_type)
    if resolved in _PRICE_TYPES:
        variance = _coerce_variance((context or {}).get("variance"))
        for floor, severity in _PRICE_VARIANCE_STEPS:
            if variance > floor:
                return severity
        return Severity.LOW
    return _FIXED_SEVERITY[resolved]


def _coerce_variance(value: Any) -> float:
    if value is None:
        return 0.0
    try:
        parsed = float(value)
    except (TypeError, ValueError) as exc:
        raise InvalidSignalError(f"variance must be numeric, got {value!r}") from exc
    if math.isnan(parsed) or parsed < 0:
        raise InvalidSignalError(f"variance must be a non-negative number, got {value!r}")
    return parsed


def _validate_price(value: float, *, field: str) -> float:
    try:
        parsed = float(value)
    except (TypeError, ValueError) as exc:
        raise InvalidSignalError(f"{field} must be numeric") from exc
    if not math.isfinite(parsed) or parsed < 0:
        raise InvalidSignalError(f"{field} must be a finite non-negative number")
    return parsed


def _validate_baseline(baseline: PriceBaseline) -> None:
    for field in ("min", "max", "typical"):
        value = _validate_price(getattr(baseline, field), field=f"baseline.{field}")
        if value <= 0:
            raise InvalidSignalError(f"baseline.{field} must be > 0")
    if baseline.min > baseline.max:
        raise InvalidSignalError("baseline.min must be <= baseline.max")


def detect_price_anomaly(
    new_price: float,
    baseline: PriceBaseline,
    recent_prices: Iterable[PricePoint | float] = (),
    *,
    thresholds: KillSwitchThresholds | None = None,
) -> PriceAnomaly:
    """Compare one observed price against its baseline and recent window.

    Rules run in order and the first match wins: absolute baseline bounds
    (spike above ``max * 1.5``, drop below ``min * 0.5``) take precedence over
    the recent-window average rule.
    """
    config = thresholds or KillSwitchThresholds()
    price = _validate_price(new_price, field="new_price")
    _validate_baseline(baseline)

    if price > baseline.max * config.price_spike_multiplier:
        return PriceAnomaly(
            is_anomaly=True,
            anomaly_type=AnomalyType.PRICE_SPIKE,
            variance=(price - baseline.max) / baseline.max,
        )
    if price < baseline.min * config.price_drop_multiplier:
        return PriceAnomaly(
            is_anomaly=True,
            anomaly_type=AnomalyType.PRICE_DROP,
            variance=(baseline.min - price) / baseline.min,
        )

    recent = [
        _validate_price(point.price if isinstance(point, PricePoint) else point, field="recent_price")
        for point in recent_prices
    ]
    if len(recent) >= config.recent_price_min_samples:
        recent_avg = sum(recent) / len(recent)
        if recent_avg > 0:
            recent_variance = abs(price - recent_avg) / recent_avg
            if recent_variance > config.price_variance_threshold:
                return PriceAnomaly(
                    is_anomaly=True,
                    anomaly_type=AnomalyType.PRICE_SPIKE if price > recent_avg else AnomalyType.PRICE_DROP,
                    variance=recent_variance,
                )

    return PriceAnomaly(
        is_anomaly=False,
        anomaly_type=None,
        variance=abs(price - baseline.typical) / baseline.typical,
    )


def create_anomaly_report(
    *,
    key: EntityKey,
    region_id: str,
    anomaly_type: AnomalyType | str,
    reported_by: str,
    description: str = "",
    context: Mapping[str, Any] | None = None,
    evidence: dict[str, Any] | None = None,
    severity: Severity | None = None,
    reported_at: datetime | None = None,
    report_id: str | None = None,
) -> AnomalyReport:
    # Severity is computed here unless the caller already classified the signal.
    resolved_type = parse_anomaly_type(anomaly_type)
    if not str(region_id or "").strip():
        raise InvalidSignalError("region_id is required")
    if not str(reported_by or "").strip():
        raise InvalidSignalError("reported_by is required")
    return AnomalyReport(
        id=report_id or f"anomaly_{uuid4().hex}",
        entity_type=key.entity_type,
        entity_id=key.entity_id,
        region_id=str(region_id).strip(),
        anomaly_type=resolved_type,
        severity=severity or classify_severity(resolved_type, context),
        reported_at=reported_at or _utc_now(),
        reported_by=str(reported_by).strip(),
        description=description,
        evidence=evidence,
    )
