from __future__ import annotations

from typing import Any, Iterable


ADMIN_ACTIONS = frozenset({"*", "iam:*"})
ALL_RESOURCES = "*"


def normalize_values(value: Any) -> frozenset[str]:
    """
    Turn an IAM scalar-or-list field (Action, Resource) into a set of strings.

    Non-string members and unexpected shapes are dropped, so a malformed field
    normalizes to an empty set and never satisfies a membership check.
    """
    if isinstance(value, str):
        return frozenset([value])
    if isinstance(value, (list, tuple, set, frozenset)):
        return frozenset(v for v in value if isinstance(v, str))
    return frozenset()


def iter_statements(document: Any) -> list[dict]:
    if not isinstance(document, dict):
        return []
    statements = document.get("Statement", [])
    if isinstance(statements, dict):
        statements = [statements]
    if not isinstance(statements, list):
        return []
    return [s for s in statements if isinstance(s, dict)]


def is_admin_statement(statement: Any, admin_actions: Iterable[str] = ADMIN_ACTIONS) -> bool:
    """
    A statement is administrator-equivalent when it allows every action, or every
    IAM action, over every resource. Matching is exact and case-sensitive.
    """
    if not isinstance(statement, dict):
        return False
    if statement.get("Effect") != "Allow":
        return False

    actions = normalize_values(statement.get("Action"))
    if actions.isdisjoint(admin_actions):
        return False

    return ALL_RESOURCES in normalize_values(statement.get("Resource"))
