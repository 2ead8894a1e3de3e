from __future__ import annotations

import threading
from typing import Any, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from iamadmins.models import GROUP, ROLE, USER, Account


DEFAULT_TIMEOUT = 30

# Errors that downgrade a single listing or document fetch to "no findings".
FETCH_ERRORS = (ClientError, BotoCoreError)

# principal kind -> (name parameter, attached listing, inline listing, inline getter)
_PRINCIPAL_OPERATIONS = {
    USER: ("UserName", "list_attached_user_policies", "list_user_policies", "get_user_policy"),
    ROLE: ("RoleName", "list_attached_role_policies", "list_role_policies", "get_role_policy"),
    GROUP: ("GroupName", "list_attached_group_policies", "list_group_policies", "get_group_policy"),
}


class AuditInterrupted(Exception):
    """Raised instead of issuing a new API call once a stop was requested."""


def boto3_config(timeout: int = DEFAULT_TIMEOUT) -> Config:
    # Retries, connection pooling and hard timeouts so no call can hang the audit
    return Config(
        retries={"max_attempts": 3, "mode": "adaptive"},
        max_pool_connections=50,
        connect_timeout=timeout,
        read_timeout=timeout,
    )


def make_session(account: Account) -> boto3.Session:
    if account.profile:
        return boto3.Session(profile_name=account.profile)
    # Default credential chain (env vars, CloudShell, instance metadata...)
    return boto3.Session()


def error_message(err: Exception) -> str:
    if isinstance(err, ClientError):
        return err.response.get("Error", {}).get("Message") or str(err)
    return str(err)


def check_credentials(account: Account, config: Config) -> tuple[bool, str]:
    """
    Returns (True, caller ARN) when the account's credential context works,
    (False, reason) otherwise.
    """
    try:
        session = make_session(account)
        identity = session.client("sts", config=config).get_caller_identity()
    except FETCH_ERRORS as e:
        return False, error_message(e)
    return True, identity.get("Arn", "")


class IamFetcher:
    """Thin, paginating wrapper over an IAM client for the calls the audit needs."""

    def __init__(self, iam_client, stop_event: Optional[threading.Event] = None) -> None:
        self.iam = iam_client
        self.stop_event = stop_event

    @classmethod
    def for_account(cls, account: Account, config: Config, stop_event: Optional[threading.Event] = None) -> "IamFetcher":
        session = make_session(account)
        return cls(session.client("iam", config=config), stop_event=stop_event)

    def _check_stop(self) -> None:
        if self.stop_event is not None and self.stop_event.is_set():
            raise AuditInterrupted()

    def _paginate(self, operation: str, key: str, **kwargs) -> list:
        self._check_stop()
        items = []
        paginator = self.iam.get_paginator(operation)
        for page in paginator.paginate(**kwargs):
            items.extend(page.get(key, []))
            self._check_stop()
        return items

    def list_users(self) -> list[str]:
        return [u["UserName"] for u in self._paginate("list_users", "Users")]

    def list_roles(self) -> list[str]:
        return [r["RoleName"] for r in self._paginate("list_roles", "Roles")]

    def list_groups(self) -> list[str]:
        return [g["GroupName"] for g in self._paginate("list_groups", "Groups")]

    def list_groups_for_user(self, user_name: str) -> list[str]:
        groups = self._paginate("list_groups_for_user", "Groups", UserName=user_name)
        return [g["GroupName"] for g in groups]

    def list_attached_policies(self, kind: str, name: str) -> list[dict]:
        param, operation, _, _ = _PRINCIPAL_OPERATIONS[kind]
        return self._paginate(operation, "AttachedPolicies", **{param: name})

    def list_inline_policy_names(self, kind: str, name: str) -> list[str]:
        param, _, operation, _ = _PRINCIPAL_OPERATIONS[kind]
        return self._paginate(operation, "PolicyNames", **{param: name})

    def get_inline_policy_document(self, kind: str, name: str, policy_name: str) -> Any:
        param, _, _, operation = _PRINCIPAL_OPERATIONS[kind]
        self._check_stop()
        response = getattr(self.iam, operation)(**{param: name, "PolicyName": policy_name})
        return response.get("PolicyDocument")
