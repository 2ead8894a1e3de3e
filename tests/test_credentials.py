"""
tests/test_credentials.py - credential report download and hygiene checks
"""

from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError
from helpers import client_error

from iamadmins.credentials import (
    CredentialFindings,
    CredentialReportError,
    analyze_credentials,
    fetch_credential_report,
    parse_credential_report,
    parse_report_time,
)


NOW = datetime(2024, 6, 1, tzinfo=timezone.utc)
RECENT = "2024-05-25T10:00:00+00:00"
OLD = "2023-01-01T10:00:00+00:00"

COLUMNS = [
    "user", "arn", "password_enabled", "password_last_used", "password_last_changed", "mfa_active",
    "access_key_1_active", "access_key_1_last_rotated", "access_key_1_last_used_date",
    "access_key_2_active", "access_key_2_last_rotated", "access_key_2_last_used_date",
    "cert_1_active", "cert_1_last_rotated", "cert_2_active", "cert_2_last_rotated",
]


def row(user, **values):
    out = {col: "false" for col in COLUMNS if col.endswith(("_enabled", "_active"))}
    out.update({col: "N/A" for col in COLUMNS if col not in out})
    out["user"] = user
    out["arn"] = f"arn:aws:iam::111122223333:user/{user}"
    out.update(values)
    return out


def analyze(rows, **kwargs):
    return analyze_credentials(rows, now=NOW, **kwargs)


class TestParseReportTime:
    def test_iso_with_offset(self):
        assert parse_report_time(OLD) == datetime(2023, 1, 1, 10, tzinfo=timezone.utc)

    def test_zulu_suffix(self):
        assert parse_report_time("2023-01-01T10:00:00Z") == datetime(2023, 1, 1, 10, tzinfo=timezone.utc)

    @pytest.mark.parametrize("value", ["N/A", "no_information", "not_supported", "", None, "garbage"])
    def test_sentinels_have_no_date(self, value):
        assert parse_report_time(value) is None


class TestInactivity:
    def test_stale_console_login(self):
        findings = analyze([row("alice", password_enabled="true", password_last_used=OLD, password_last_changed=RECENT)])

        assert findings.inactive == [("arn:aws:iam::111122223333:user/alice", OLD, "N/A", "N/A")]

    def test_active_key_never_used(self):
        findings = analyze([row("bob", access_key_1_active="true", access_key_1_last_rotated=RECENT)])
        assert [r[0] for r in findings.inactive] == ["arn:aws:iam::111122223333:user/bob"]

    def test_recent_activity_is_fine(self):
        findings = analyze([row("carol", access_key_2_active="true", access_key_2_last_used_date=RECENT, access_key_2_last_rotated=RECENT)])
        assert findings.inactive == []

    def test_disabled_methods_are_ignored(self):
        findings = analyze([row("dave", password_last_used=OLD, access_key_1_last_used_date=OLD)])
        assert findings == CredentialFindings()

    def test_threshold_is_configurable(self):
        rows = [row("erin", access_key_1_active="true", access_key_1_last_used_date=RECENT, access_key_1_last_rotated=RECENT)]
        assert analyze(rows, days_inactive=30).inactive == []
        assert len(analyze(rows, days_inactive=3).inactive) == 1


class TestRotation:
    def test_old_access_key(self):
        findings = analyze([row("frank", access_key_1_active="true", access_key_1_last_rotated=OLD, access_key_1_last_used_date=RECENT)])

        assert findings.unrotated == [("arn:aws:iam::111122223333:user/frank", "N/A", OLD, "N/A", "N/A", "N/A")]

    def test_old_certificate(self):
        findings = analyze([row("gina", cert_2_active="true", cert_2_last_rotated=OLD)])
        assert len(findings.unrotated) == 1

    def test_missing_rotation_date_is_not_stale(self):
        findings = analyze([row("hank", password_enabled="true", password_last_used=RECENT, password_last_changed="N/A")])
        assert findings.unrotated == []

    def test_inactive_key_is_not_judged(self):
        findings = analyze([row("ivan", access_key_1_last_rotated=OLD)])
        assert findings.unrotated == []


class TestConsoleMfa:
    def test_every_console_user_is_listed_with_mfa_state(self):
        findings = analyze([
            row("jane", password_enabled="true", password_last_used=RECENT, mfa_active="true"),
            row("kate", password_enabled="true", password_last_used=RECENT, mfa_active="false"),
            row("leo", access_key_1_active="true", access_key_1_last_used_date=RECENT),
        ])

        assert findings.console_mfa == [
            ("arn:aws:iam::111122223333:user/jane", "true"),
            ("arn:aws:iam::111122223333:user/kate", "false"),
        ]


def test_root_account_is_skipped():
    root = row("<root_account>", password_enabled="true", password_last_used=OLD, access_key_1_active="true", access_key_1_last_rotated=OLD)
    assert analyze([root]) == CredentialFindings()


def test_findings_accumulate_across_accounts():
    total = CredentialFindings()
    total.extend(analyze([row("a", password_enabled="true", password_last_used=OLD)]))
    total.extend(analyze([row("b", password_enabled="true", password_last_used=OLD)]))

    assert [r[0].rsplit("/", 1)[-1] for r in total.inactive] == ["a", "b"]
    assert len(total.console_mfa) == 2


def test_parse_credential_report():
    content = "user,arn,password_enabled\nalice,arn:aws:iam::1:user/alice,true\n"
    assert parse_credential_report(content) == [{"user": "alice", "arn": "arn:aws:iam::1:user/alice", "password_enabled": "true"}]


class TestFetchCredentialReport:
    def test_polls_until_complete(self):
        iam = MagicMock()
        iam.generate_credential_report.side_effect = [{"State": "STARTED"}, {"State": "STARTED"}, {"State": "COMPLETE"}]
        iam.get_credential_report.return_value = {"Content": b"user,arn\n"}
        sleeps = []

        content = fetch_credential_report(iam, poll_interval=5, sleep=sleeps.append)

        assert content == "user,arn\n"
        assert sleeps == [5, 5]

    def test_gives_up_after_max_polls(self):
        iam = MagicMock()
        iam.generate_credential_report.return_value = {"State": "STARTED"}

        with pytest.raises(CredentialReportError):
            fetch_credential_report(iam, max_polls=3, sleep=lambda _: None)

        assert iam.generate_credential_report.call_count == 4
        iam.get_credential_report.assert_not_called()

    @pytest.mark.parametrize("code", ["LimitExceeded", "AccessDenied"])
    def test_failed_generation_falls_back_to_existing_report(self, code, capsys):
        iam = MagicMock()
        iam.generate_credential_report.side_effect = client_error("GenerateCredentialReport", code)
        iam.get_credential_report.return_value = {"Content": b"user,arn\n"}

        content = fetch_credential_report(iam, sleep=lambda _: None)

        assert content == "user,arn\n"
        iam.get_credential_report.assert_called_once_with()
        assert "using the existing one" in capsys.readouterr().out

    def test_missing_existing_report_still_raises(self):
        iam = MagicMock()
        iam.generate_credential_report.side_effect = client_error("GenerateCredentialReport")
        iam.get_credential_report.side_effect = client_error("GetCredentialReport", "ReportNotPresent")

        with pytest.raises(ClientError):
            fetch_credential_report(iam, sleep=lambda _: None)

    def test_text_content_is_returned_as_is(self):
        iam = MagicMock()
        iam.generate_credential_report.return_value = {"State": "COMPLETE"}
        iam.get_credential_report.return_value = {"Content": "user,arn\n"}

        assert fetch_credential_report(iam, sleep=lambda _: None) == "user,arn\n"
