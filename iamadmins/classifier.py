from __future__ import annotations

import json
import urllib.parse
from dataclasses import dataclass
from typing import Any, Optional

import yaml

from iamadmins.statements import ADMIN_ACTIONS, is_admin_statement, iter_statements


MANAGED_ADMIN_MARKERS = ("AdministratorAccess", "PowerUserAccess")
EXCLUDED_ROLE_PREFIXES = ("AWSService",)


@dataclass(frozen=True)
class AdminRules:
    managed_policy_markers: tuple[str, ...] = MANAGED_ADMIN_MARKERS
    admin_actions: frozenset[str] = ADMIN_ACTIONS
    excluded_role_prefixes: tuple[str, ...] = EXCLUDED_ROLE_PREFIXES

    def classify_managed(self, policy_arn: Optional[str]) -> bool:
        """Managed policies are matched by substring so path-prefixed ARNs still match."""
        if not isinstance(policy_arn, str):
            return False
        return any(marker in policy_arn for marker in self.managed_policy_markers)

    def classify_inline(self, document: Any) -> bool:
        document = parse_policy_document(document)
        if document is None:
            return False
        return any(is_admin_statement(s, self.admin_actions) for s in iter_statements(document))

    def is_excluded_role(self, role_name: str) -> bool:
        return any(role_name.startswith(prefix) for prefix in self.excluded_role_prefixes)


DEFAULT_RULES = AdminRules()


def classify_managed(policy_arn: Optional[str]) -> bool:
    return DEFAULT_RULES.classify_managed(policy_arn)


def classify_inline(document: Any) -> bool:
    return DEFAULT_RULES.classify_inline(document)


def parse_policy_document(document: Any) -> Optional[dict]:
    """
    boto3 normally hands back decoded policy documents, but raw API payloads and
    some mocks carry the URL-encoded JSON string instead. Anything that does not
    end up as a mapping is treated as unparseable.
    """
    if isinstance(document, dict):
        return document
    if isinstance(document, bytes):
        document = document.decode("utf-8", errors="replace")
    if not isinstance(document, str):
        return None
    for candidate in (document, urllib.parse.unquote(document)):
        try:
            parsed = json.loads(candidate)
        except ValueError:
            continue
        return parsed if isinstance(parsed, dict) else None
    return None


def _string_list(data: dict, key: str, path: str) -> Optional[tuple[str, ...]]:
    if key not in data:
        return None
    value = data[key]
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list) or not all(isinstance(v, str) and v for v in value):
        raise ValueError(f"Invalid '{key}' in {path}: expected a list of non-empty strings")
    return tuple(value)


def load_rules(path: Optional[str]) -> AdminRules:
    """Load rule overrides from a YAML mapping; missing keys keep their defaults."""
    if not path:
        return DEFAULT_RULES
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Invalid YAML mapping in {path}")

    markers = _string_list(data, "managed_policy_markers", path)
    actions = _string_list(data, "admin_actions", path)
    prefixes = _string_list(data, "excluded_role_prefixes", path)
    return AdminRules(
        managed_policy_markers=markers if markers is not None else MANAGED_ADMIN_MARKERS,
        admin_actions=frozenset(actions) if actions is not None else ADMIN_ACTIONS,
        excluded_role_prefixes=prefixes if prefixes is not None else EXCLUDED_ROLE_PREFIXES,
    )
