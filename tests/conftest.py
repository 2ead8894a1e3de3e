"""
tests/conftest.py - shared pytest fixtures

Fake AWS credentials so moto never reaches a real account.
"""

import boto3
import pytest
from moto import mock_aws


@pytest.fixture(autouse=True)
def aws_test_environment(monkeypatch, tmp_path):
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", "us-east-1")
    # moto 5 only exposes AWS managed policies (AdministratorAccess, ...) on request
    monkeypatch.setenv("MOTO_IAM_LOAD_MANAGED_POLICIES", "true")
    monkeypatch.delenv("AWS_PROFILE", raising=False)
    # No named profiles exist unless a test writes them
    monkeypatch.setenv("AWS_CONFIG_FILE", str(tmp_path / "aws_config"))
    monkeypatch.setenv("AWS_SHARED_CREDENTIALS_FILE", str(tmp_path / "aws_credentials"))


@pytest.fixture
def iam(aws_test_environment):
    """moto-backed IAM client; the mock stays active for the whole test."""
    with mock_aws():
        yield boto3.client("iam")
