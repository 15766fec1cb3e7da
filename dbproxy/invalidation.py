"""Keyword based invalidation scopes for mutating operations."""

from __future__ import annotations

from typing import Dict, Mapping, Optional


DEFAULT_SCOPE_RULES: Dict[str, str] = {
    "users": "user:",
    "products": "product:",
}


class InvalidationRules:
    """Map a write statement or key to the cache prefix it affects.

    Matching is a plain substring test on the statement, checked in rule
    order. It is coarse: an update to ``users`` drops ``user:`` entries but
    leaves cached ``query:`` results that read the same table. Writes no rule
    matches return ``None``, which callers treat as "clear everything".
    """

    def __init__(self, rules: Optional[Mapping[str, str]] = None) -> None:
        self.rules: Dict[str, str] = dict(DEFAULT_SCOPE_RULES if rules is None else rules)

    def scope_for(self, statement: str) -> Optional[str]:
        for keyword, prefix in self.rules.items():
            if keyword in statement:
                return prefix
        return None


__all__ = ["DEFAULT_SCOPE_RULES", "InvalidationRules"]
