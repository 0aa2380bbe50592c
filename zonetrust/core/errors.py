from __future__ import annotations


class ZoneTrustError(Exception):
    """Base error for the zone trust engine."""


class InvalidInputError(ZoneTrustError):
    """Signal or key rejected at the boundary before any mutation."""


class InvalidEntityKeyError(InvalidInputError):
    """Entity type or id does not match the accepted key format."""


class InvalidSignalError(InvalidInputError):
    """Signal payload is malformed (bad baseline, negative price, bad actor)."""


class UnknownAnomalyTypeError(InvalidInputError):
    """Anomaly type is not part of the closed enumeration; never defaulted."""


class InvalidTransitionError(ZoneTrustError):
    """Transition requested from a state that does not allow it."""


class ConcurrentWriteError(ZoneTrustError):
    """Per-key compare-and-swap kept losing after bounded re-reads."""


class PersistenceError(ZoneTrustError):
    """Store unavailable or a persist timed out; the transition did not apply."""


class RecordNotFoundError(ZoneTrustError):
    """No kill-switch record exists for the entity key."""


class AnomalyNotFoundError(ZoneTrustError):
    """No anomaly report exists for the id."""


class AuditTrailError(ZoneTrustError):
    """Audit log does not replay to a consistent state chain."""


class DuplicateReportError(ZoneTrustError):
    """Anomaly report id was already applied; the retry must not double-count."""


class ReportIdConflictError(InvalidSignalError):
    """Anomaly report id is already stored for a different entity."""
