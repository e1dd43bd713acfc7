"""Find the quote ids a gateway payload refers to.

Gateways give us no structured slot for our ids, so they travel inside
free text ("Order: Blue mug (id1,id2)") or inside the transaction
reference. Strategies run in order and the first one that yields
anything wins.
"""

from __future__ import annotations

import re


UUID_RE = re.compile(
    r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}",
    re.IGNORECASE,
)
_UUID_FULL_RE = re.compile(rf"^{UUID_RE.pattern}$", re.IGNORECASE)
_TRAILING_PARENS_RE = re.compile(r"\(([^()]*)\)\s*$")


def _dedupe(ids) -> list[str]:
    seen = []
    for value in ids:
        value = value.strip().lower()
        if value and value not in seen:
            seen.append(value)
    return seen


def ids_from_trailing_parens(text: str) -> list[str]:
    match = _TRAILING_PARENS_RE.search(text or "")
    if not match:
        return []
    tokens = [t.strip() for t in match.group(1).split(",")]
    return _dedupe(t for t in tokens if _UUID_FULL_RE.match(t))


def uuids_in_text(text: str) -> list[str]:
    return _dedupe(UUID_RE.findall(text or ""))


def resolve_correlation_ids(free_text: str = "", reference: str = "") -> list[str]:
    strategies = (
        lambda: ids_from_trailing_parens(free_text),
        lambda: uuids_in_text(free_text),
        lambda: uuids_in_text(reference)[:1],
    )
    for strategy in strategies:
        ids = strategy()
        if ids:
            return ids
    return []
