from __future__ import annotations

import copy
from typing import Any, Dict, List

from database import get_active_policy, upsert_policy


TRANSITION_MODES = {"guarded", "permissive"}

CALENDAR_DEFAULTS: Dict[str, Any] = {
    # 1 = Monday; weekend templates are not modelled.
    "days": [1, 2, 3, 4, 5],
}

TRANSITION_DEFAULTS: Dict[str, Any] = {
    "mode": "guarded",
    # COMPLETED -> INACTIVE, for correcting a mistaken completion.
    "allow_reopen": False,
}

LOCK_DEFAULTS: Dict[str, Any] = {
    "timeout_seconds": 5.0,
}

AD_HOC_DEFAULTS: Dict[str, Any] = {
    "enabled": True,
}

BASELINE_POLICY: Dict[str, Any] = {
    "name": "Default Scheduling Policy",
    "calendar": CALENDAR_DEFAULTS,
    "transitions": TRANSITION_DEFAULTS,
    "locks": LOCK_DEFAULTS,
    "ad_hoc": AD_HOC_DEFAULTS,
}


def load_active_policy(conn) -> Dict:
    """Return the active policy payload as a dict."""
    if conn is None:
        return _normalize_policy({})
    if callable(conn):
        with conn() as session:
            policy = get_active_policy(session)
            return _normalize_policy(policy.params_dict() if policy else {})
    policy = get_active_policy(conn)
    return _normalize_policy(policy.params_dict() if policy else {})


def _deep_update(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_update(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _normalize_policy(policy: Dict) -> Dict:
    """Fill missing sections from the baseline and coerce values the engine relies on."""
    if not isinstance(policy, dict):
        policy = {}
    normalized = _deep_update(BASELINE_POLICY, policy)
    for section, baseline in BASELINE_POLICY.items():
        if isinstance(baseline, dict) and not isinstance(normalized.get(section), dict):
            normalized[section] = copy.deepcopy(baseline)
    calendar_cfg = normalized["calendar"]
    raw_days = calendar_cfg.get("days")
    days: List[int] = []
    for value in raw_days if isinstance(raw_days, (list, tuple)) else []:
        try:
            day = int(value)
        except (TypeError, ValueError):
            continue
        if 1 <= day <= 7 and day not in days:
            days.append(day)
    calendar_cfg["days"] = sorted(days) or list(CALENDAR_DEFAULTS["days"])
    transitions_cfg = normalized["transitions"]
    mode = str(transitions_cfg.get("mode") or "").strip().lower()
    transitions_cfg["mode"] = mode if mode in TRANSITION_MODES else TRANSITION_DEFAULTS["mode"]
    transitions_cfg["allow_reopen"] = bool(transitions_cfg.get("allow_reopen", False))
    locks_cfg = normalized["locks"]
    try:
        timeout = float(locks_cfg.get("timeout_seconds", LOCK_DEFAULTS["timeout_seconds"]))
    except (TypeError, ValueError):
        timeout = LOCK_DEFAULTS["timeout_seconds"]
    locks_cfg["timeout_seconds"] = timeout if timeout > 0 else LOCK_DEFAULTS["timeout_seconds"]
    normalized["ad_hoc"]["enabled"] = bool(normalized["ad_hoc"].get("enabled", True))
    return normalized


def build_default_policy() -> Dict[str, Any]:
    """Return a deepcopy so callers can mutate the policy safely."""
    return copy.deepcopy(BASELINE_POLICY)


def ensure_default_policy(session_factory) -> None:
    """Seed the baseline policy exactly once."""

    with session_factory() as session:
        if get_active_policy(session):
            return
        baseline = build_default_policy()
        name = baseline.get("name", "Default Scheduling Policy")
        params = {key: value for key, value in baseline.items() if key != "name"}
        upsert_policy(session, name, params, edited_by="system")


def scheduling_days(policy: Dict) -> List[int]:
    calendar_cfg = policy.get("calendar") if isinstance(policy, dict) else None
    if isinstance(calendar_cfg, dict) and calendar_cfg.get("days"):
        return list(calendar_cfg["days"])
    return list(CALENDAR_DEFAULTS["days"])


def transition_mode(policy: Dict) -> str:
    transitions_cfg = policy.get("transitions") if isinstance(policy, dict) else None
    if isinstance(transitions_cfg, dict) and transitions_cfg.get("mode") in TRANSITION_MODES:
        return transitions_cfg["mode"]
    return TRANSITION_DEFAULTS["mode"]


def allow_reopen(policy: Dict) -> bool:
    transitions_cfg = policy.get("transitions") if isinstance(policy, dict) else None
    if isinstance(transitions_cfg, dict):
        return bool(transitions_cfg.get("allow_reopen", False))
    return False


def lock_timeout(policy: Dict) -> float:
    locks_cfg = policy.get("locks") if isinstance(policy, dict) else None
    if isinstance(locks_cfg, dict):
        try:
            return float(locks_cfg.get("timeout_seconds", LOCK_DEFAULTS["timeout_seconds"]))
        except (TypeError, ValueError):
            pass
    return LOCK_DEFAULTS["timeout_seconds"]


def ad_hoc_enabled(policy: Dict) -> bool:
    ad_hoc_cfg = policy.get("ad_hoc") if isinstance(policy, dict) else None
    if isinstance(ad_hoc_cfg, dict):
        return bool(ad_hoc_cfg.get("enabled", True))
    return True
