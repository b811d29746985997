"""Unit tests for verification codes."""

import pytest

from profileauth.service.errors import (
    InvalidCredentialsError,
    InvalidOrExpiredTokenError,
    NotifierUnavailableError,
)
from profileauth.service.verification import CODE_ALPHABET, CODE_LENGTH, generate_code
from profileauth.storage.models import VerificationPurpose

EMAIL = "alice@example.com"


class TestGenerateAndSend:
    """Tests for issuing codes."""

    async def test_code_sent_to_target(self, verification, notifier, memory_store):
        delivered = await verification.generate_and_send(
            EMAIL, VerificationPurpose.VERIFY_EMAIL, "Alice"
        )

        assert delivered is True
        target, display_name, code = notifier.sent[-1]
        assert (target, display_name) == (EMAIL, "Alice")
        assert len(code) == CODE_LENGTH
        assert set(code) <= set(CODE_ALPHABET)

    async def test_code_expires_after_fifteen_minutes(self, verification, memory_store, clock):
        await verification.generate_and_send(EMAIL, VerificationPurpose.REGISTRATION)

        record = memory_store.verification_codes[(EMAIL, VerificationPurpose.REGISTRATION)]
        assert (record.expires_at - clock.now()).total_seconds() == 15 * 60

    async def test_disabled_notifier_fails_fast(self, verification, notifier, memory_store):
        notifier.enabled = False

        with pytest.raises(NotifierUnavailableError):
            await verification.generate_and_send(EMAIL, VerificationPurpose.LOGIN)
        assert memory_store.verification_codes == {}
        assert notifier.sent == []

    async def test_notifier_failure_reported(self, verification, notifier, memory_store):
        notifier.deliver = False

        assert await verification.generate_and_send(EMAIL, VerificationPurpose.LOGIN) is False
        # Code stays valid so the caller can resend it
        assert await verification.validate(EMAIL, VerificationPurpose.LOGIN, notifier.last_code)

    async def test_notifier_exception_reported_as_false(self, verification, notifier):
        notifier.error = ConnectionError("smtp down")

        assert await verification.generate_and_send(EMAIL, VerificationPurpose.SUDO) is False

    async def test_new_code_replaces_previous(self, verification, notifier):
        await verification.generate_and_send(EMAIL, VerificationPurpose.RESET_PASSWORD)
        first = notifier.last_code
        await verification.generate_and_send(EMAIL, VerificationPurpose.RESET_PASSWORD)
        second = notifier.last_code

        if first != second:
            assert not await verification.validate(EMAIL, VerificationPurpose.RESET_PASSWORD, first)
        assert await verification.validate(EMAIL, VerificationPurpose.RESET_PASSWORD, second)

    async def test_purposes_are_independent(self, verification, notifier):
        await verification.generate_and_send(EMAIL, VerificationPurpose.LOGIN)
        login_code = notifier.last_code
        await verification.generate_and_send(EMAIL, VerificationPurpose.SUDO)

        assert await verification.validate(EMAIL, VerificationPurpose.LOGIN, login_code)


class TestValidate:
    """Tests for redeeming codes."""

    async def test_single_use(self, verification, notifier):
        await verification.generate_and_send(EMAIL, VerificationPurpose.VERIFY_EMAIL)
        code = notifier.last_code

        assert await verification.validate(EMAIL, VerificationPurpose.VERIFY_EMAIL, code)
        assert not await verification.validate(EMAIL, VerificationPurpose.VERIFY_EMAIL, code)

    async def test_input_normalized(self, verification, notifier):
        await verification.generate_and_send(EMAIL, VerificationPurpose.VERIFY_EMAIL)
        code = notifier.last_code

        assert await verification.validate(
            EMAIL, VerificationPurpose.VERIFY_EMAIL, f"  {code.lower()}\n"
        )

    async def test_empty_code_rejected(self, verification):
        assert not await verification.validate(EMAIL, VerificationPurpose.LOGIN, "")
        assert not await verification.validate(EMAIL, VerificationPurpose.LOGIN, "   ")
        assert not await verification.validate(EMAIL, VerificationPurpose.LOGIN, None)

    async def test_expired_code_rejected_without_sweep(
        self, verification, notifier, memory_store, clock
    ):
        await verification.generate_and_send(EMAIL, VerificationPurpose.LOGIN)
        code = notifier.last_code
        clock.advance(minutes=15, seconds=1)

        assert not await verification.validate(EMAIL, VerificationPurpose.LOGIN, code)
        # Lazily removed on the failed attempt
        assert memory_store.verification_codes == {}

    async def test_code_valid_until_expiry_instant(self, verification, notifier, clock):
        await verification.generate_and_send(EMAIL, VerificationPurpose.LOGIN)
        clock.advance(minutes=15)

        assert await verification.validate(EMAIL, VerificationPurpose.LOGIN, notifier.last_code)

    async def test_wrong_code_keeps_pending_code(self, verification, notifier):
        await verification.generate_and_send(EMAIL, VerificationPurpose.LOGIN)
        code = notifier.last_code
        wrong = "0" * CODE_LENGTH if code != "0" * CODE_LENGTH else "1" * CODE_LENGTH

        assert not await verification.validate(EMAIL, VerificationPurpose.LOGIN, wrong)
        assert await verification.validate(EMAIL, VerificationPurpose.LOGIN, code)

    async def test_wrong_identifier_rejected(self, verification, notifier):
        await verification.generate_and_send(EMAIL, VerificationPurpose.LOGIN)

        assert not await verification.validate(
            "mallory@example.com", VerificationPurpose.LOGIN, notifier.last_code
        )


class TestResetPassword:
    """Tests for the password reset flow."""

    async def test_reset_password_flow(self, verification, notifier, sessions, alice, password):
        pair = await sessions.login("alice", password)
        await verification.generate_and_send(EMAIL, VerificationPurpose.RESET_PASSWORD)

        removed = await verification.reset_password(
            "alice", notifier.last_code, "BrandNewPass789!", sessions
        )

        assert removed == 1
        with pytest.raises(InvalidOrExpiredTokenError):
            await sessions.refresh(None, pair.refresh_token)
        with pytest.raises(InvalidCredentialsError):
            await sessions.login("alice", password)
        assert await sessions.login("alice@example.com", "BrandNewPass789!")

    async def test_reset_password_bad_code(self, verification, sessions, alice, password):
        with pytest.raises(InvalidOrExpiredTokenError):
            await verification.reset_password("alice", "ZZZZZZZZZ", "BrandNewPass789!", sessions)
        assert await sessions.login("alice", password)


def test_generate_code_shape():
    codes = {generate_code() for _ in range(100)}

    assert all(len(c) == CODE_LENGTH and set(c) <= set(CODE_ALPHABET) for c in codes)
    assert len(codes) > 90
