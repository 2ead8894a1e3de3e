from __future__ import annotations

import csv
import io
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from termcolor import colored
from tqdm import tqdm

from iamadmins.fetch import FETCH_ERRORS, error_message


ROOT_ACCOUNT = "<root_account>"
MISSING_VALUES = ("", "N/A", "no_information", "not_supported")

DEFAULT_DAYS_INACTIVE = 30
DEFAULT_DAYS_ROTATION = 90
CREDENTIAL_REPORT_DIR = "IAM_cred_reports"

INACTIVITY_HEADER = ("ARN", "CONSOLE_LAST_USED", "ACCESS_KEY_1_LAST_USED", "ACCESS_KEY_2_LAST_USED")
ROTATION_HEADER = (
    "ARN",
    "PASSWORD_LAST_CHANGED",
    "ACCESS_KEY_1_LAST_ROTATED",
    "ACCESS_KEY_2_LAST_ROTATED",
    "CERT_1_LAST_ROTATED",
    "CERT_2_LAST_ROTATED",
)
MFA_HEADER = ("ARN", "MFA_ACTIVE")

# (enabled flag, last used) per access method
_ACCESS_METHODS = (
    ("password_enabled", "password_last_used"),
    ("access_key_1_active", "access_key_1_last_used_date"),
    ("access_key_2_active", "access_key_2_last_used_date"),
)

# (enabled flag, last rotated) per credential
_ROTATING_CREDENTIALS = (
    ("password_enabled", "password_last_changed"),
    ("access_key_1_active", "access_key_1_last_rotated"),
    ("access_key_2_active", "access_key_2_last_rotated"),
    ("cert_1_active", "cert_1_last_rotated"),
    ("cert_2_active", "cert_2_last_rotated"),
)


class CredentialReportError(Exception):
    pass


def fetch_credential_report(
    iam_client,
    *,
    max_polls: int = 10,
    poll_interval: float = 2,
    sleep: Callable[[float], None] = time.sleep,
) -> str:
    """
    Ask IAM for a fresh credential report and download it as CSV text.

    IAM only regenerates the report every few hours; while a generation is in
    flight the state stays STARTED, so poll a bounded number of times. If the
    generation request itself fails (throttling, no GenerateCredentialReport
    permission), the last report IAM already holds is downloaded instead.
    """
    try:
        state = iam_client.generate_credential_report().get("State", "")
        polls = 0
        while state == "STARTED" and polls < max_polls:
            sleep(poll_interval)
            state = iam_client.generate_credential_report().get("State", "")
            polls += 1
    except FETCH_ERRORS as e:
        tqdm.write(f"  {colored('[*] ', 'yellow')}Could not generate a new credential report, using the existing one: {error_message(e)}")
    else:
        if state == "STARTED":
            raise CredentialReportError("Credential report generation did not complete in time")

    content = iam_client.get_credential_report()["Content"]
    if isinstance(content, bytes):
        content = content.decode("utf-8")
    return content


def parse_credential_report(content: str) -> list[dict]:
    return list(csv.DictReader(io.StringIO(content)))


def is_true(value: Optional[str]) -> bool:
    return (value or "").strip().lower() == "true"


def parse_report_time(value: Optional[str]) -> Optional[datetime]:
    """Report timestamps are ISO 8601; sentinels such as N/A mean 'no date'."""
    value = (value or "").strip()
    if value in MISSING_VALUES:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _display(value: Optional[str]) -> str:
    return value if value else "N/A"


def _is_inactive(row: dict, last_used_col: str, cutoff: datetime) -> bool:
    # Enabled but never used counts as inactive
    last_used = parse_report_time(row.get(last_used_col))
    return last_used is None or last_used < cutoff


def _is_stale(row: dict, last_rotated_col: str, cutoff: datetime) -> bool:
    last_rotated = parse_report_time(row.get(last_rotated_col))
    return last_rotated is not None and last_rotated < cutoff


@dataclass
class CredentialFindings:
    inactive: list[tuple[str, ...]] = field(default_factory=list)
    unrotated: list[tuple[str, ...]] = field(default_factory=list)
    console_mfa: list[tuple[str, ...]] = field(default_factory=list)

    def extend(self, other: "CredentialFindings") -> None:
        self.inactive.extend(other.inactive)
        self.unrotated.extend(other.unrotated)
        self.console_mfa.extend(other.console_mfa)


def analyze_credentials(
    rows: list[dict],
    *,
    days_inactive: int = DEFAULT_DAYS_INACTIVE,
    days_rotation: int = DEFAULT_DAYS_ROTATION,
    now: Optional[datetime] = None,
) -> CredentialFindings:
    """
    Only enabled access methods are judged, so users without any active
    credential never show up.
    """
    now = now or datetime.now(timezone.utc)
    cutoff_inactive = now - timedelta(days=days_inactive)
    cutoff_rotation = now - timedelta(days=days_rotation)

    findings = CredentialFindings()
    for row in rows:
        if row.get("user") == ROOT_ACCOUNT:
            continue
        arn = row.get("arn", "")

        if any(is_true(row.get(flag)) and _is_inactive(row, col, cutoff_inactive) for flag, col in _ACCESS_METHODS):
            findings.inactive.append((arn,) + tuple(_display(row.get(col)) for _, col in _ACCESS_METHODS))

        if any(is_true(row.get(flag)) and _is_stale(row, col, cutoff_rotation) for flag, col in _ROTATING_CREDENTIALS):
            findings.unrotated.append((arn,) + tuple(_display(row.get(col)) for _, col in _ROTATING_CREDENTIALS))

        if is_true(row.get("password_enabled")):
            findings.console_mfa.append((arn, _display(row.get("mfa_active"))))
    return findings
