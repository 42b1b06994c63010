import json
import time
from types import SimpleNamespace

import pytest

import automation_module_installer.session as session_module
from automation_module_installer.errors import SessionError
from automation_module_installer.session import AzureSession, open_session


def _fake_run(payload, returncode=0, stderr=""):
    calls = []

    def run(cmd, **kwargs):
        calls.append(cmd)
        return SimpleNamespace(returncode=returncode, stdout=json.dumps(payload), stderr=stderr)

    return run, calls


def test_from_az_cli_reads_token_and_subscription(monkeypatch):
    run, calls = _fake_run({"accessToken": "abc", "subscription": "sub-9", "expires_on": time.time() + 3600})
    monkeypatch.setattr(session_module.subprocess, "run", run)

    session = AzureSession.from_az_cli()

    assert session.subscription_id == "sub-9"
    assert session.headers() == {"Authorization": "Bearer abc"}
    assert calls[0][:3] == ["az", "account", "get-access-token"]
    assert "--subscription" not in calls[0]


def test_from_az_cli_failure_raises(monkeypatch):
    run, _ = _fake_run({}, returncode=1, stderr="Please run 'az login'")
    monkeypatch.setattr(session_module.subprocess, "run", run)
    with pytest.raises(SessionError):
        AzureSession.from_az_cli("sub-1")


def test_expired_token_is_refreshed():
    fresh = AzureSession(subscription_id="s", access_token="new", expires_on=time.time() + 3600)
    session = AzureSession(subscription_id="s", access_token="old", expires_on=time.time() - 1, refresher=lambda: fresh)
    assert session.headers() == {"Authorization": "Bearer new"}
    assert not session.expired


def test_open_session_prefers_environment(monkeypatch):
    monkeypatch.setenv("AZURE_ACCESS_TOKEN", "env-token")
    monkeypatch.setenv("AZURE_SUBSCRIPTION_ID", "env-sub")

    def fail(*args, **kwargs):
        raise AssertionError("az CLI should not be called")

    monkeypatch.setattr(session_module.subprocess, "run", fail)
    session = open_session()
    assert session.subscription_id == "env-sub"
    assert session.access_token == "env-token"
