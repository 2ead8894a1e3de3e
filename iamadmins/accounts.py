from __future__ import annotations

from typing import Iterable

from iamadmins.models import Account


def parse_accounts(lines: Iterable[str]) -> list[Account]:
    """
    Parse `account_id[:profile]` lines. Blank lines and `#` comments are skipped;
    an entry without a profile uses the default credential chain (e.g. CloudShell).
    """
    accounts = []
    for raw in lines:
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        account_id, _, profile = line.partition(":")
        account_id = account_id.strip()
        if not account_id:
            continue
        accounts.append(Account(account_id=account_id, profile=profile.strip() or None))
    return accounts


def load_accounts(path: str) -> list[Account]:
    with open(path, "r", encoding="utf-8") as f:
        return parse_accounts(f)
