from __future__ import annotations

import concurrent.futures
import threading
import traceback
from dataclasses import dataclass, field
from typing import Callable, Optional, Sequence

from botocore.config import Config
from termcolor import colored
from tqdm import tqdm

from iamadmins.classifier import DEFAULT_RULES, AdminRules
from iamadmins.fetch import FETCH_ERRORS, AuditInterrupted, IamFetcher, check_credentials, error_message
from iamadmins.models import GROUP, ROLE, USER, Account, Identity
from iamadmins.progress import StageProgress
from iamadmins.report import ReportSink
from iamadmins.resolver import GrantResolver


DEFAULT_KINDS = (USER, ROLE)

FetcherFactory = Callable[[Account, Config, Optional[threading.Event]], IamFetcher]


@dataclass
class AccountResult:
    index: int
    account: Account
    identities: dict[str, int] = field(default_factory=dict)
    excluded_roles: int = 0
    findings: int = 0
    errors: list[dict] = field(default_factory=list)
    interrupted: bool = False

    def to_dict(self) -> dict:
        return {
            "account_id": self.account.account_id,
            "profile": self.account.profile,
            "identities": dict(self.identities),
            "excluded_roles": self.excluded_roles,
            "findings": self.findings,
            "interrupted": self.interrupted,
            "errors": list(self.errors),
        }


def validate_accounts(accounts: Sequence[Account], config: Config) -> list[tuple[Account, str]]:
    """Check every credential context up front; returns the failing ones with their reason."""
    invalid = []
    for account in accounts:
        ok, detail = check_credentials(account, config)
        if not ok:
            invalid.append((account, detail))
    return invalid


class AccountAuditor:
    """Walks the identities of one account and streams their admin grants to the sink."""

    def __init__(
        self,
        sink: ReportSink,
        *,
        rules: AdminRules = DEFAULT_RULES,
        kinds: Sequence[str] = DEFAULT_KINDS,
        progress: Optional[StageProgress] = None,
        verbose: bool = False,
    ) -> None:
        self.sink = sink
        self.rules = rules
        self.kinds = tuple(kinds)
        self.progress = progress
        self.verbose = verbose

    def _list_identities(self, fetcher: IamFetcher, kind: str) -> list[str]:
        if kind == USER:
            return fetcher.list_users()
        if kind == ROLE:
            return fetcher.list_roles()
        if kind == GROUP:
            return fetcher.list_groups()
        raise ValueError(f"Unknown identity kind: {kind}")

    def audit(self, index: int, account: Account, fetcher: IamFetcher) -> AccountResult:
        result = AccountResult(index=index, account=account)
        resolver = GrantResolver(fetcher, self.rules, on_error=result.errors.append, verbose=self.verbose)

        try:
            for kind_idx, kind in enumerate(self.kinds):
                if self.progress:
                    self.progress.set_stage(index, kind.lower() + "s")
                try:
                    names = self._list_identities(fetcher, kind)
                except FETCH_ERRORS as e:
                    if self.verbose:
                        tqdm.write(f"{colored('[-] ', 'red')}Error listing {kind.lower()}s in {account.account_id}: {error_message(e)}")
                    result.errors.append({
                        "account": account.account_id,
                        "operation": f"List{kind}s",
                        "error": error_message(e),
                    })
                    continue

                result.identities[kind] = len(names)
                for identity_idx, name in enumerate(names):
                    identity = Identity(kind=kind, name=name, account_id=account.account_id)
                    if resolver.is_excluded(identity):
                        result.excluded_roles += 1
                        continue
                    for finding_idx, finding in enumerate(resolver.resolve(identity)):
                        self.sink.emit(finding, key=(index, kind_idx, identity_idx, finding_idx))
                        result.findings += 1
                        if self.progress:
                            self.progress.add_findings()
        except AuditInterrupted:
            result.interrupted = True
        return result


def run_audit(
    accounts: Sequence[Account],
    sink: ReportSink,
    *,
    config: Config,
    rules: AdminRules = DEFAULT_RULES,
    kinds: Sequence[str] = DEFAULT_KINDS,
    max_workers: int = 1,
    stop_event: Optional[threading.Event] = None,
    progress: Optional[StageProgress] = None,
    verbose: bool = False,
    fetcher_factory: FetcherFactory = IamFetcher.for_account,
) -> list[AccountResult]:
    """
    Audit every (already validated) account. Accounts are independent: a failure
    in one is recorded in its result and never stops the others. Results come back
    in account-list order whatever the degree of parallelism.
    """
    auditor = AccountAuditor(sink, rules=rules, kinds=kinds, progress=progress, verbose=verbose)

    def _worker(index: int, account: Account) -> AccountResult:
        try:
            if stop_event is not None and stop_event.is_set():
                return AccountResult(index=index, account=account, interrupted=True)
            fetcher = fetcher_factory(account, config, stop_event)
            return auditor.audit(index, account, fetcher)
        except Exception as e:
            if verbose:
                traceback.print_exc()
            return AccountResult(
                index=index,
                account=account,
                errors=[{"account": account.account_id, "operation": "General", "error": str(e)}],
            )
        finally:
            if progress:
                progress.finish(index)

    if max_workers <= 1 or len(accounts) <= 1:
        return [_worker(idx, account) for idx, account in enumerate(accounts)]

    with concurrent.futures.ThreadPoolExecutor(max_workers=min(max_workers, len(accounts))) as executor:
        futures = [executor.submit(_worker, idx, account) for idx, account in enumerate(accounts)]
        return [future.result() for future in futures]
