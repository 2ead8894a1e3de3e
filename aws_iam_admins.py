from __future__ import annotations

import argparse
import os
import signal
import sys
import threading
from collections import defaultdict

import pytz
import yaml
from termcolor import colored
from tqdm import tqdm

from iamadmins.accounts import load_accounts
from iamadmins.audit import DEFAULT_KINDS, run_audit, validate_accounts
from iamadmins.classifier import load_rules
from iamadmins.fetch import DEFAULT_TIMEOUT, boto3_config
from iamadmins.models import GROUP
from iamadmins.progress import StageProgress
from iamadmins.report import (
    ADMIN_REPORT_DIR,
    ADMIN_REPORT_PREFIX,
    DEFAULT_TIMEZONE,
    INTERRUPTED_MARKER,
    NO_FINDINGS_MARKER,
    ReportSink,
    Target,
    artifact_path,
    atomic_write_json,
    build_report,
    gmt_offset,
    local_now,
)


STOP_EVENT = threading.Event()

MAX_ERRORS_TO_PRINT = 5


def signal_handler(signum, frame):
    """First Ctrl+C stops new API calls and keeps the partial report; a second one aborts."""
    if STOP_EVENT.is_set():
        print(f"\n{colored('[-] ', 'red')}Aborted.")
        os._exit(130)
    tqdm.write(f"\n{colored('[*] ', 'yellow')}Interrupt received. Stopping API calls and writing the partial report...")
    STOP_EVENT.set()


def print_summary(results, verbose):
    errors = [err for r in results for err in r.errors]
    interrupted = [r for r in results if r.interrupted]

    for r in results:
        kinds = ", ".join(f"{n} {kind.lower()}s" for kind, n in r.identities.items()) or "nothing listed"
        excluded = f", {r.excluded_roles} excluded roles skipped" if r.excluded_roles else ""
        print(f"{colored('[+] ', 'green')}{colored(r.account.account_id, 'yellow')}: {kinds}{excluded}, {r.findings} findings")

    if interrupted:
        print(f"{colored('[*] ', 'yellow')}Audit interrupted; {len(interrupted)} account(s) were not fully analyzed.")

    if errors:
        print(f"{colored('[*] ', 'yellow')}{len(errors)} operation(s) failed, results may be incomplete:")
        shown = errors if verbose else errors[:MAX_ERRORS_TO_PRINT]
        for err in shown:
            target = err.get("identity") or err.get("account")
            print(f"  - {err['operation']} ({target}): {err['error']}")
        if len(errors) > len(shown):
            print(f"  ... and {len(errors) - len(shown)} more (use -v to list them all)")


def write_json_report(path, results, findings):
    by_account = defaultdict(list)
    for finding in findings:
        by_account[finding.identity_arn.split(":")[4]].append(finding.to_dict())

    targets = []
    for r in results:
        data = r.to_dict()
        data["admin_identities"] = by_account.get(r.account.account_id, [])
        targets.append(
            Target(
                target_type="account",
                target_id=r.account.account_id,
                label=r.account.profile,
                data=data,
            ).to_dict()
        )
    report = build_report(
        provider="aws",
        targets=targets,
        extra_summary={
            "total_accounts": len(results),
            "admin_findings": len(findings),
            "interrupted": any(r.interrupted for r in results),
        },
    )
    atomic_write_json(path, report)


def main(
    accounts_file,
    tz_name=DEFAULT_TIMEZONE,
    *,
    output_dir=ADMIN_REPORT_DIR,
    rules_path=None,
    include_groups=False,
    max_parallel_accounts=1,
    timeout=DEFAULT_TIMEOUT,
    out_json_path=None,
    verbose=False,
    stop_event=STOP_EVENT,
):
    """Run the admin-identity audit. Returns the process exit status."""
    if not os.path.isfile(accounts_file):
        print(f"{colored('[-] ', 'red')}Error: accounts file {accounts_file} not found")
        print(f"Usage: {os.path.basename(sys.argv[0])} <accounts_file> [timezone]")
        return 1

    try:
        moment = local_now(tz_name)
    except pytz.UnknownTimeZoneError:
        print(f"{colored('[-] ', 'red')}Error: unknown time zone '{tz_name}'")
        return 1

    try:
        rules = load_rules(rules_path)
    except (OSError, yaml.YAMLError, ValueError) as e:
        print(f"{colored('[-] ', 'red')}Error loading rules file {rules_path}: {e}")
        return 1

    try:
        accounts = load_accounts(accounts_file)
    except (OSError, UnicodeDecodeError) as e:
        print(f"{colored('[-] ', 'red')}Error reading accounts file {accounts_file}: {e}")
        return 1
    if not accounts:
        print(f"{colored('[-] ', 'red')}Error: no accounts found in {accounts_file}")
        return 1

    config = boto3_config(timeout)

    print(colored("=== IAM AUDIT - ADMINISTRATIVE IDENTITIES ===", attrs=["bold"]))
    print(f"Date: {moment.strftime('%Y-%m-%d %H:%M:%S')} (GMT{gmt_offset(moment)})")
    print()

    print(f"{colored('[*] ', 'cyan')}Validating credentials for {len(accounts)} account(s)...")
    invalid = validate_accounts(accounts, config)
    if invalid:
        print(f"{colored('[-] ', 'red')}Error: credentials not authenticated for:")
        for account, reason in invalid:
            print(f"  - {account.label}: {reason}")
        return 1
    print(f"{colored('[+] ', 'green')}Credentials validated")
    print()

    kinds = DEFAULT_KINDS + ((GROUP,) if include_groups else ())
    sink = ReportSink(artifact_path(output_dir, ADMIN_REPORT_PREFIX, moment))

    progress = None
    if len(accounts) > 1:
        progress = StageProgress(
            total=len(accounts),
            desc="Auditing accounts",
            stages=[kind.lower() + "s" for kind in kinds],
            tqdm_factory=tqdm,
        )

    print(colored("=== ADMINISTRATIVE IDENTITIES (live) ===", attrs=["bold"]))
    print()
    sink.start()

    results = []
    try:
        results = run_audit(
            accounts,
            sink,
            config=config,
            rules=rules,
            kinds=kinds,
            max_workers=max_parallel_accounts,
            stop_event=stop_event,
            progress=progress,
            verbose=verbose,
        )
    finally:
        if progress:
            progress.close()
        if stop_event.is_set() or any(r.interrupted for r in results):
            sink.mark_interrupted()
        # Always flush, so an interrupted run still leaves a partial artifact
        path = sink.finalize()

    print()
    if sink.interrupted:
        print(f"{colored('[*] ', 'yellow')}{INTERRUPTED_MARKER}")
    elif not len(sink):
        print(NO_FINDINGS_MARKER)
    print_summary(results, verbose)

    if out_json_path:
        write_json_report(out_json_path, results, sink.findings)
        print(f"{colored('[+] ', 'green')}JSON report saved to: {out_json_path}")

    print()
    print(colored("=== END OF AUDIT ===", attrs=["bold"]))
    print(f"Report saved to: {path}")

    if sink.interrupted:
        return 130
    return 0


HELP = "Find IAM users and roles with administrator-equivalent permissions in the accounts listed in a file.\n"


def cli(argv=None):
    parser = argparse.ArgumentParser(description=HELP)
    parser.add_argument("accounts_file", help="File with one `account_id[:profile]` per line (no profile = default credentials)")
    parser.add_argument("timezone", nargs="?", default=DEFAULT_TIMEZONE, help=f"Time zone for the report timestamp (default: {DEFAULT_TIMEZONE})")
    parser.add_argument("-v", "--verbose", default=False, action="store_true", help="Print every failed API call as it happens")
    parser.add_argument("--output-dir", default=ADMIN_REPORT_DIR, help=f"Directory for the report (default: {ADMIN_REPORT_DIR})")
    parser.add_argument("--rules", dest="rules_path", help="YAML file overriding the admin detection rules (see admin_rules.yaml)")
    parser.add_argument("--include-groups", default=False, action="store_true", help="Also report groups that directly hold admin policies")
    parser.add_argument(
        "--max-parallel-accounts",
        type=int,
        default=1,
        help="Accounts to audit in parallel (default: 1, fully sequential). The report order does not depend on it.",
    )
    parser.add_argument("--timeout", type=int, default=DEFAULT_TIMEOUT, help=f"Connect/read timeout in seconds for each API call (default: {DEFAULT_TIMEOUT})")
    parser.add_argument("--out-json", dest="out_json", help="Also write a JSON report to this path")

    args = parser.parse_args(argv)

    if args.max_parallel_accounts < 1:
        print(f"{colored('[-] ', 'red')}Error: --max-parallel-accounts must be at least 1")
        sys.exit(1)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    sys.exit(main(
        args.accounts_file,
        args.timezone,
        output_dir=args.output_dir,
        rules_path=args.rules_path,
        include_groups=args.include_groups,
        max_parallel_accounts=args.max_parallel_accounts,
        timeout=args.timeout,
        out_json_path=args.out_json,
        verbose=args.verbose,
    ))


if __name__ == "__main__":
    cli()
