from __future__ import annotations

from dataclasses import replace
from typing import Any, Callable, Iterator, Optional

from termcolor import colored
from tqdm import tqdm

from iamadmins.classifier import DEFAULT_RULES, AdminRules
from iamadmins.fetch import FETCH_ERRORS, IamFetcher, error_message
from iamadmins.models import (
    DIRECT_GRANT,
    GROUP,
    INLINE,
    MANAGED,
    ROLE,
    USER,
    AdminFinding,
    GrantPath,
    Identity,
)


ErrorCallback = Callable[[dict], None]


class GrantResolver:
    """
    Produces the administrator-equivalent grants of one identity, lazily and in
    discovery order: attached managed policies, then inline policies, then (for
    users) the same two steps for every group the user belongs to.

    Any failing listing or document fetch only drops the findings of that step;
    the failure is reported through `on_error` and never raised. Group results
    are cached, so one resolver must not span accounts.
    """

    def __init__(
        self,
        fetcher: IamFetcher,
        rules: AdminRules = DEFAULT_RULES,
        *,
        on_error: Optional[ErrorCallback] = None,
        verbose: bool = False,
    ) -> None:
        self.fetcher = fetcher
        self.rules = rules
        self.on_error = on_error
        self.verbose = verbose
        self._group_cache: dict[str, list[AdminFinding]] = {}

    def is_excluded(self, identity: Identity) -> bool:
        return identity.kind == ROLE and self.rules.is_excluded_role(identity.name)

    def resolve(self, identity: Identity) -> Iterator[AdminFinding]:
        if self.is_excluded(identity):
            return

        yield from self._policy_grants(identity, identity.kind, identity.name, DIRECT_GRANT)

        if identity.kind != USER:
            return

        groups = self._fetch(identity, "ListGroupsForUser", self.fetcher.list_groups_for_user, identity.name)
        # Exactly one hop: IAM groups cannot contain other groups.
        for group in groups or []:
            for grant in self._group_grants(identity, group):
                yield replace(grant, identity_arn=identity.arn)

    def _group_grants(self, identity: Identity, group: str) -> list[AdminFinding]:
        """A group's grants are fetched once per resolver and shared by all its members."""
        grants = self._group_cache.get(group)
        if grants is None:
            grants = list(self._policy_grants(identity, GROUP, group, GrantPath(group)))
            self._group_cache[group] = grants
        return grants

    def _policy_grants(self, identity: Identity, kind: str, name: str, path: GrantPath) -> Iterator[AdminFinding]:
        attached = self._fetch(identity, f"ListAttached{kind}Policies", self.fetcher.list_attached_policies, kind, name)
        for policy in attached or []:
            policy_arn = policy.get("PolicyArn")
            if self.rules.classify_managed(policy_arn):
                policy_name = policy.get("PolicyName") or policy_arn.rsplit("/", 1)[-1]
                yield AdminFinding(identity.arn, MANAGED, policy_name, path, policy_arn)

        policy_names = self._fetch(identity, f"List{kind}Policies", self.fetcher.list_inline_policy_names, kind, name)
        for policy_name in policy_names or []:
            document = self._fetch(
                identity,
                f"Get{kind}Policy",
                self.fetcher.get_inline_policy_document,
                kind,
                name,
                policy_name,
            )
            if document is not None and self.rules.classify_inline(document):
                yield AdminFinding(identity.arn, INLINE, policy_name, path)

    def _fetch(self, identity: Identity, operation: str, func: Callable[..., Any], *args) -> Any:
        try:
            return func(*args)
        except FETCH_ERRORS as e:
            target = "/".join(str(a) for a in args)
            if self.verbose:
                tqdm.write(f"{colored('[-] ', 'yellow')}{operation} failed for {target}: {error_message(e)}")
            if self.on_error is not None:
                self.on_error({
                    "account": identity.account_id,
                    "identity": identity.arn,
                    "operation": operation,
                    "target": target,
                    "error": error_message(e),
                })
            return None


def resolve_grants(identity: Identity, fetcher: IamFetcher, rules: AdminRules = DEFAULT_RULES, **kwargs) -> Iterator[AdminFinding]:
    return GrantResolver(fetcher, rules, **kwargs).resolve(identity)
