from __future__ import annotations

from typing import Dict, List, Set, Tuple


ROLE_GROUPS: Dict[str, List[str]] = {
    "Floor": ["Waiter", "Waiter - Opener", "Waiter - Closer", "Host"],
    "Kitchen": ["Chef", "Chef - Line", "Chef - Prep", "Dishwasher"],
    "Bar": ["Barista", "Bartender"],
    "Counter": ["Cashier"],
    "Management": ["Manager", "Shift Lead"],
}

# Fallback for free-text roles coming from the directory.
_GROUP_KEYWORDS: List[Tuple[str, str]] = [
    ("waiter", "Floor"),
    ("server", "Floor"),
    ("host", "Floor"),
    ("chef", "Kitchen"),
    ("cook", "Kitchen"),
    ("dish", "Kitchen"),
    ("barista", "Bar"),
    ("bartend", "Bar"),
    ("cashier", "Counter"),
    ("lead", "Management"),
    ("manager", "Management"),
]

_GROUP_BY_ROLE: Dict[str, str] = {
    name.lower(): group for group, names in ROLE_GROUPS.items() for name in names
}


def normalize_role(role: str) -> str:
    return " ".join((role or "").split()).lower()


def role_group(role: str) -> str:
    """Bucket a role label for summaries ("Chef - Prep" -> "Kitchen")."""
    label = normalize_role(role)
    if not label:
        return "Other"
    if label in _GROUP_BY_ROLE:
        return _GROUP_BY_ROLE[label]
    return next((group for keyword, group in _GROUP_KEYWORDS if keyword in label), "Other")


def _labels(role: str) -> Set[str]:
    # "Waiter - Opener" is also accepted as plain "waiter".
    label = normalize_role(role)
    if not label:
        return set()
    return {label, label.split(" - ")[0].strip()}


def role_matches(candidate_role: str, target_role: str) -> bool:
    """True when an employee's role fits a template's role.

    A template without a role accepts anyone.
    """
    wanted = _labels(target_role)
    if not wanted:
        return True
    return any(have == want or have in want or want in have for have in _labels(candidate_role) for want in wanted)
