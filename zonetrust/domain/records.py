from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
import re
from typing import Any

from zonetrust.core.errors import InvalidEntityKeyError


SYSTEM_ACTOR = "system"
INITIALIZATION_REASON = "INITIALIZATION"

_ENTITY_TYPE_RE = re.compile(r"^[a-z][a-z0-9_]{0,31}$")
_ENTITY_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.\-]{0,127}$")


class EntityState(str, Enum):
    ACTIVE = "ACTIVE"
    DEGRADED = "DEGRADED"
    OFFLINE = "OFFLINE"
    KILLED = "KILLED"


class KillReason(str, Enum):
    HAZARD_REPORTS = "HAZARD_REPORTS"
    PRICE_ANOMALY = "PRICE_ANOMALY"
    STALENESS = "STALENESS"
    ADMIN_MANUAL = "ADMIN_MANUAL"
    SYSTEM_AUTO = "SYSTEM_AUTO"
    USER_FLAGGED = "USER_FLAGGED"
    VERIFICATION_FAILED = "VERIFICATION_FAILED"


class AnomalyType(str, Enum):
    PRICE_SPIKE = "PRICE_SPIKE"
    PRICE_DROP = "PRICE_DROP"
    HAZARD_PHYSICAL = "HAZARD_PHYSICAL"
    HAZARD_SAFETY = "HAZARD_SAFETY"
    HAZARD_SCAM = "HAZARD_SCAM"
    HAZARD_ENVIRONMENTAL = "HAZARD_ENVIRONMENTAL"
    CLOSURE_PERMANENT = "CLOSURE_PERMANENT"
    CLOSURE_TEMPORARY = "CLOSURE_TEMPORARY"
    DATA_MISMATCH = "DATA_MISMATCH"
    COORDINATE_ERROR = "COORDINATE_ERROR"
    TEXTURE_MISMATCH = "TEXTURE_MISMATCH"
    SPAM_SUSPECTED = "SPAM_SUSPECTED"
    OTHER = "OTHER"

    @property
    def is_hazard(self) -> bool:
        return self.value.startswith("HAZARD_")

    @property
    def is_price(self) -> bool:
        return self in (AnomalyType.PRICE_SPIKE, AnomalyType.PRICE_DROP)


class Severity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    Severity.LOW: 1,
    Severity.MEDIUM: 2,
    Severity.HIGH: 3,
    Severity.CRITICAL: 4,
}


@dataclass(frozen=True, order=True)
class EntityKey:
    """Composite identity of a tracked entity.

    The engine is entity-agnostic: zones, vendors and routes share the same
    record shape and are told apart only by ``entity_type``.
    """

    entity_type: str
    entity_id: str

    def __post_init__(self) -> None:
        if not isinstance(self.entity_type, str) or not _ENTITY_TYPE_RE.match(self.entity_type):
            raise InvalidEntityKeyError(f"invalid entity_type: {self.entity_type!r}")
        if not isinstance(self.entity_id, str) or not _ENTITY_ID_RE.match(self.entity_id):
            raise InvalidEntityKeyError(f"invalid entity_id: {self.entity_id!r}")

    @classmethod
    def parse(cls, value: str) -> "EntityKey":
        entity_type, sep, entity_id = str(value).partition(":")
        if not sep:
            raise InvalidEntityKeyError(f"entity key must be '<type>:<id>', got {value!r}")
        return cls(entity_type=entity_type, entity_id=entity_id)

    def __str__(self) -> str:
        return f"{self.entity_type}:{self.entity_id}"


@dataclass(frozen=True)
class AuditEntry:
    timestamp: datetime
    previous_state: EntityState
    new_state: EntityState
    reason: str
    actor: str
    details: str


@dataclass(frozen=True)
class KillSwitchRecord:
    """Cached projection of one entity's audit trail.

    ``state`` must always equal the last ``new_state`` in ``audit_log``; the
    record is replaced wholesale by transition functions and never edited in
    place. ``version`` counts persisted mutations and guards compare-and-swap
    writes in the durable store.
    """

    entity_type: str
    entity_id: str
    region_id: str
    state: EntityState
    audit_log: tuple[AuditEntry, ...]
    reason: str | None = None
    killed_at: datetime | None = None
    killed_by: str | None = None
    revive_after: datetime | None = None
    hazard_count: int = 0
    anomaly_count: int = 0
    last_verified: datetime | None = None
    data_updated_at: datetime | None = None
    version: int = 0

    @property
    def key(self) -> EntityKey:
        return EntityKey(self.entity_type, self.entity_id)

    @property
    def initialized_at(self) -> datetime:
        return self.audit_log[0].timestamp


@dataclass(frozen=True)
class AnomalyReport:
    id: str
    entity_type: str
    entity_id: str
    region_id: str
    anomaly_type: AnomalyType
    severity: Severity
    reported_at: datetime
    reported_by: str
    description: str
    evidence: dict[str, Any] | None = None
    resolved: bool = False
    resolved_at: datetime | None = None
    resolved_by: str | None = None
    resolution_notes: str | None = None

    @property
    def key(self) -> EntityKey:
        return EntityKey(self.entity_type, self.entity_id)


@dataclass(frozen=True)
class PriceBaseline:
    min: float
    max: float
    typical: float


@dataclass(frozen=True)
class PricePoint:
    price: float
    reported_at: datetime | None = None
    reported_by: str | None = None


@dataclass(frozen=True)
class PriceAnomaly:
    is_anomaly: bool
    anomaly_type: AnomalyType | None
    variance: float


@dataclass(frozen=True)
class EvaluationResult:
    state: EntityState
    action_taken: str
    record: KillSwitchRecord


@dataclass(frozen=True)
class ReconciliationResult:
    updated: int = 0
    revivals: int = 0
    degraded: int = 0
    killed: int = 0
    status: str = "ok"

    def as_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "updated": self.updated,
            "revivals": self.revivals,
            "degraded": self.degraded,
            "killed": self.killed,
        }


@dataclass(frozen=True)
class KillSwitchSummary:
    total: int
    active: int
    degraded: int
    offline: int
    killed: int
    pending_revive: int
    recent_kills: tuple[KillSwitchRecord, ...] = field(default_factory=tuple)


def is_displayable(state: EntityState) -> bool:
    # OFFLINE and KILLED are treated identically by the display layer.
    return state in (EntityState.ACTIVE, EntityState.DEGRADED)


def display_mode(state: EntityState) -> str:
    if state == EntityState.ACTIVE:
        return "normal"
    if state == EntityState.DEGRADED:
        return "warning"
    return "hidden"
