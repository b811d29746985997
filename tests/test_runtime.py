"""Tests for runtime wiring."""

from profileauth.service.runtime import _mask_url_password, get_runtime, reset_runtime_for_tests
from profileauth.storage.memory import MemoryStore
from profileauth.storage.models import AccountRole, VerificationPurpose


def test_runtime_singleton():
    runtime = get_runtime()

    assert get_runtime() is runtime
    assert isinstance(runtime.store, MemoryStore)
    assert reset_runtime_for_tests() is not runtime


async def test_end_to_end_login_refresh_revoke():
    runtime = get_runtime()
    account = runtime.store.create_account("erin", "erin@example.com", role=AccountRole.ADMIN)
    await runtime.sessions.register_credential(account.id, "ErinPassword123!")

    pair = await runtime.sessions.login("erin@example.com", "ErinPassword123!")
    principal = await runtime.sessions.authenticate(pair.access_token)
    assert principal.role == "admin"

    rotated = await runtime.sessions.refresh(pair.access_token, pair.refresh_token)
    assert await runtime.sessions.revoke_all(account.id) == 1
    assert runtime.store.get_refresh_token(rotated.refresh_token) is None


async def test_verification_disabled_without_smtp():
    runtime = get_runtime()

    assert not runtime.email.is_enabled
    assert runtime.verification.notifier is runtime.email
    assert not await runtime.verification.validate(
        "erin@example.com", VerificationPurpose.LOGIN, "ABCDEFGHI"
    )


async def test_background_skipped_in_test_mode():
    runtime = get_runtime()

    await runtime.start_background()
    assert not any(reaper.running for reaper in runtime.reapers)
    await runtime.stop_background()


async def test_background_reapers_start_and_stop(monkeypatch):
    runtime = get_runtime()
    monkeypatch.setattr(runtime.settings, "test_mode", False)

    await runtime.start_background()
    assert all(reaper.running for reaper in runtime.reapers)
    await runtime.stop_background()
    assert not any(reaper.running for reaper in runtime.reapers)


def test_mask_url_password():
    assert _mask_url_password("postgresql://app:s3cret@db:5432/auth") == "postgresql://app:***@db:5432/auth"
    assert _mask_url_password("postgresql://db/auth") == "postgresql://db/auth"
    assert _mask_url_password(None) is None
