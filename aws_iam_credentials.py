from __future__ import annotations

import argparse
import os
import sys

import pytz
from termcolor import colored

from iamadmins.accounts import load_accounts
from iamadmins.credentials import (
    CREDENTIAL_REPORT_DIR,
    DEFAULT_DAYS_INACTIVE,
    DEFAULT_DAYS_ROTATION,
    INACTIVITY_HEADER,
    MFA_HEADER,
    ROTATION_HEADER,
    CredentialFindings,
    CredentialReportError,
    analyze_credentials,
    fetch_credential_report,
    parse_credential_report,
)
from iamadmins.fetch import DEFAULT_TIMEOUT, FETCH_ERRORS, boto3_config, error_message, make_session
from iamadmins.report import DEFAULT_TIMEZONE, artifact_path, atomic_write_text, format_table, gmt_offset, local_now


def print_section(title, header, rows, empty_msg):
    print()
    print(colored(f"=== {title} ===", attrs=["bold"]))
    print()
    if rows:
        print(format_table([header] + list(rows)), end="")
    else:
        print(empty_msg)


def main(
    accounts_file,
    days_inactive=DEFAULT_DAYS_INACTIVE,
    days_rotation=DEFAULT_DAYS_ROTATION,
    tz_name=DEFAULT_TIMEZONE,
    *,
    output_dir=CREDENTIAL_REPORT_DIR,
    timeout=DEFAULT_TIMEOUT,
    poll_interval=2,
):
    """Download and analyze the IAM credential report of each account. Returns the exit status."""
    if not os.path.isfile(accounts_file):
        print(f"{colored('[-] ', 'red')}Error: accounts file {accounts_file} not found")
        print(f"Usage: {os.path.basename(sys.argv[0])} <accounts_file> [days_inactive] [days_rotation] [timezone]")
        return 1

    try:
        moment = local_now(tz_name)
    except pytz.UnknownTimeZoneError:
        print(f"{colored('[-] ', 'red')}Error: unknown time zone '{tz_name}'")
        return 1

    try:
        accounts = load_accounts(accounts_file)
    except (OSError, UnicodeDecodeError) as e:
        print(f"{colored('[-] ', 'red')}Error reading accounts file {accounts_file}: {e}")
        return 1

    config = boto3_config(timeout)

    print(colored("=== IAM CREDENTIALS AUDIT ===", attrs=["bold"]))
    print(f"Accounts file: {accounts_file}")
    print(f"Inactivity threshold: {days_inactive} days")
    print(f"Rotation threshold: {days_rotation} days")
    print(f"Time zone: {tz_name} (GMT{gmt_offset(moment)})")
    print(f"Date: {moment.strftime('%Y-%m-%d %H:%M:%S')}")
    print()

    findings = CredentialFindings()
    for account in accounts:
        print(f"{colored('[+] ', 'green')}Processing account {account.account_id}...")
        if account.profile:
            print(f"  Using profile: {account.profile}")
        else:
            print("  Using default credentials")

        try:
            iam = make_session(account).client("iam", config=config)
            content = fetch_credential_report(iam, poll_interval=poll_interval)
        except FETCH_ERRORS as e:
            print(f"  {colored('[-] ', 'red')}Could not download the credential report: {error_message(e)}")
            continue
        except CredentialReportError as e:
            print(f"  {colored('[-] ', 'red')}Could not download the credential report: {e}")
            continue

        report_path = artifact_path(output_dir, f"credentials_report_account_{account.account_id[-4:]}", moment, "csv")
        atomic_write_text(report_path, content)
        print(f"  Report saved: {report_path}")

        findings.extend(analyze_credentials(
            parse_credential_report(content),
            days_inactive=days_inactive,
            days_rotation=days_rotation,
        ))

    print_section(f"INACTIVITY (>{days_inactive} days)", INACTIVITY_HEADER, findings.inactive, "No inactive identities found")
    print_section(f"CREDENTIAL ROTATION (>{days_rotation} days without rotation)", ROTATION_HEADER, findings.unrotated, "No unrotated credentials found")
    print_section("MFA (console access)", MFA_HEADER, findings.console_mfa, "No users with console access found")

    print()
    print(colored("=== AUDIT COMPLETE ===", attrs=["bold"]))
    print(f"Reports saved in: {output_dir}")
    return 0


HELP = "Review the IAM credential report of several accounts: inactivity, credential rotation and console MFA.\n"


def cli(argv=None):
    parser = argparse.ArgumentParser(description=HELP)
    parser.add_argument("accounts_file", help="File with one `account_id[:profile]` per line (no profile = default credentials)")
    parser.add_argument("days_inactive", nargs="?", type=int, default=DEFAULT_DAYS_INACTIVE, help=f"Days without activity to flag an access method (default: {DEFAULT_DAYS_INACTIVE})")
    parser.add_argument("days_rotation", nargs="?", type=int, default=DEFAULT_DAYS_ROTATION, help=f"Days without rotation to flag a credential (default: {DEFAULT_DAYS_ROTATION})")
    parser.add_argument("timezone", nargs="?", default=DEFAULT_TIMEZONE, help=f"Time zone for the report timestamps (default: {DEFAULT_TIMEZONE})")
    parser.add_argument("--output-dir", default=CREDENTIAL_REPORT_DIR, help=f"Directory for the downloaded reports (default: {CREDENTIAL_REPORT_DIR})")
    parser.add_argument("--timeout", type=int, default=DEFAULT_TIMEOUT, help=f"Connect/read timeout in seconds for each API call (default: {DEFAULT_TIMEOUT})")
    args = parser.parse_args(argv)

    sys.exit(main(
        args.accounts_file,
        args.days_inactive,
        args.days_rotation,
        args.timezone,
        output_dir=args.output_dir,
        timeout=args.timeout,
    ))


if __name__ == "__main__":
    cli()
