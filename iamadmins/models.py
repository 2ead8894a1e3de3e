from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


PARTITION = "aws"

USER = "User"
ROLE = "Role"
GROUP = "Group"

MANAGED = "Managed"
INLINE = "Inline"

DIRECT = "Direct"


@dataclass(frozen=True)
class Account:
    account_id: str
    profile: Optional[str] = None

    @property
    def label(self) -> str:
        return f"{self.account_id}:{self.profile}" if self.profile else self.account_id


@dataclass(frozen=True)
class Identity:
    kind: str
    name: str
    account_id: str

    @property
    def arn(self) -> str:
        return f"arn:{PARTITION}:iam::{self.account_id}:{self.kind.lower()}/{self.name}"


@dataclass(frozen=True)
class GrantPath:
    """How an identity holds a policy: directly, or through one group."""

    group: Optional[str] = None

    @property
    def is_direct(self) -> bool:
        return self.group is None

    def __str__(self) -> str:
        return DIRECT if self.group is None else f"Via Group: {self.group}"


DIRECT_GRANT = GrantPath()


@dataclass(frozen=True)
class AdminFinding:
    identity_arn: str
    policy_type: str
    policy_name: str
    grant_path: GrantPath = DIRECT_GRANT
    # Managed policies only. Not displayed, but keeps same-named policies apart.
    policy_arn: Optional[str] = None

    @property
    def assignment(self) -> str:
        return str(self.grant_path)

    def row(self) -> tuple[str, str, str, str]:
        return (self.identity_arn, self.policy_type, self.policy_name, self.assignment)

    def to_dict(self) -> dict:
        out = {
            "identity_arn": self.identity_arn,
            "policy_type": self.policy_type,
            "policy_name": self.policy_name,
            "assignment": self.assignment,
        }
        if self.grant_path.group:
            out["group"] = self.grant_path.group
        if self.policy_arn:
            out["policy_arn"] = self.policy_arn
        return out
