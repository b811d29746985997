"""Tests for the account bootstrap script."""

import asyncio
import os
import sys

from profileauth.service.runtime import get_runtime
from profileauth.storage.models import AccountRole
from scripts import bootstrap_account as script


def _run_main(monkeypatch, *argv):
    calls = []

    async def fake_bootstrap(name, password, **kwargs):
        calls.append((name, kwargs))
        return {"account_id": None, "name": name, "status": "exists"}

    monkeypatch.setattr(script, "bootstrap_account", fake_bootstrap)
    monkeypatch.setattr(sys, "argv", ["bootstrap_account.py", *argv])
    script.main()
    return calls


def test_database_run_keeps_persisted_secret(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "postgresql://app@db/auth")
    monkeypatch.setenv("USE_MEMORY_STORE", "false")
    monkeypatch.delenv("JWT_SECRET", raising=False)

    calls = _run_main(monkeypatch, "--name", "root", "--password", "SecurePassword123!")

    assert calls[0][0] == "root"
    assert "JWT_SECRET" not in os.environ
    assert os.environ["USE_MEMORY_STORE"] == "false"


def test_memory_run_generates_secret(monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setenv("USE_MEMORY_STORE", "false")
    monkeypatch.delenv("JWT_SECRET", raising=False)

    _run_main(monkeypatch, "--name", "root", "--password", "SecurePassword123!")

    assert len(os.environ["JWT_SECRET"]) >= 32
    assert os.environ["USE_MEMORY_STORE"] == "true"


def test_existing_account_left_unchanged():
    runtime = get_runtime()
    existing = runtime.store.create_account("root", role=AccountRole.USER)

    result = asyncio.run(
        script.bootstrap_account("root", "SecurePassword123!", role="admin")
    )

    assert result == {"account_id": existing.id, "name": "root", "status": "exists"}
    assert runtime.store.get_account(existing.id).role == AccountRole.USER
    assert runtime.store.get_credential(existing.id) is None


def test_validate_password():
    assert script.validate_password("SecurePassword123!")
    assert not script.validate_password("short1!A")
    assert not script.validate_password("alllowercaseletters")
