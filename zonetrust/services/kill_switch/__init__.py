from zonetrust.services.kill_switch.classifier import (
    classify_severity,
    create_anomaly_report,
    detect_price_anomaly,
    parse_anomaly_type,
)
from zonetrust.services.kill_switch.engine import (
    KillSwitchEngine,
    build_kill_switch_engine,
    build_store,
)
from zonetrust.services.kill_switch.policy import KillSwitchThresholds
from zonetrust.services.kill_switch.reconciliation import run_reconciliation, run_reconciliation_cycle
from zonetrust.services.kill_switch.reporting import export_audit_log, format_status, summarize
from zonetrust.services.kill_switch.store import InMemoryKillSwitchStore, KillSwitchStore
from zonetrust.services.kill_switch.transitions import (
    check_auto_revive,
    check_staleness,
    permanent_kill,
    replay_state,
    revive_entity,
    set_degraded,
    trigger_kill,
)

__all__ = [
    "InMemoryKillSwitchStore",
    "KillSwitchEngine",
    "KillSwitchStore",
    "KillSwitchThresholds",
    "build_kill_switch_engine",
    "build_store",
    "check_auto_revive",
    "check_staleness",
    "classify_severity",
    "create_anomaly_report",
    "detect_price_anomaly",
    "export_audit_log",
    "format_status",
    "parse_anomaly_type",
    "permanent_kill",
    "replay_state",
    "revive_entity",
    "run_reconciliation",
    "run_reconciliation_cycle",
    "set_degraded",
    "summarize",
    "trigger_kill",
]
