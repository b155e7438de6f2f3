"""Tests for password login, lockout and MFA gating."""

import asyncio

from credgate.service import audit
from credgate.service.auth import LoginRequest
from credgate.service.results import AuthErrorKind, Err, Ok
from credgate.service.totp import generate_totp


def _code_from(message: str) -> str:
    return message.split("Your verification code is: ", 1)[1][:6]


class TestLockout:
    async def test_fifth_failure_locks_account(self, gate, alice, password):
        for _ in range(4):
            result = await gate.authenticate("alice", "wrong-password")
            assert isinstance(result, Err)
            assert result.kind == AuthErrorKind.INVALID_CREDENTIALS

        result = await gate.authenticate("alice", "wrong-password")
        assert result.kind == AuthErrorKind.ACCOUNT_LOCKED

        # Even the right password is refused while locked
        result = await gate.authenticate("alice", password)
        assert result.kind == AuthErrorKind.ACCOUNT_LOCKED

    async def test_lockout_expires_after_window(self, gate, alice, password, clock):
        for _ in range(5):
            await gate.authenticate("alice", "wrong-password")

        clock.advance(29 * 60)
        assert (await gate.authenticate("alice", password)).kind == AuthErrorKind.ACCOUNT_LOCKED

        clock.advance(60 + 1)
        result = await gate.authenticate("alice", password)
        assert isinstance(result, Ok)

    async def test_success_resets_failure_counter(self, gate, alice, password):
        for _ in range(4):
            await gate.authenticate("alice", "wrong-password")
        assert isinstance(await gate.authenticate("alice", password), Ok)

        # Counting restarts from one, so four more failures do not lock
        for _ in range(4):
            result = await gate.authenticate("alice", "wrong-password")
            assert result.kind == AuthErrorKind.INVALID_CREDENTIALS
        result = await gate.authenticate("alice", "wrong-password")
        assert result.kind == AuthErrorKind.ACCOUNT_LOCKED

    async def test_counter_window_is_case_insensitive(self, gate, alice):
        for name in ("alice", "ALICE", "Alice", "aLiCe"):
            await gate.authenticate(name, "wrong-password")
        result = await gate.authenticate("alice", "wrong-password")
        assert result.kind == AuthErrorKind.ACCOUNT_LOCKED

    async def test_unknown_user_fails_like_bad_password(self, gate):
        result = await gate.authenticate("nobody", "whatever")
        assert result.kind == AuthErrorKind.INVALID_CREDENTIALS
        assert result.message == "Invalid username or password."

    async def test_concurrent_failures_are_all_counted(self, gate, alice, password, cache, suspend_calls):
        suspend_calls(cache, "get_lockout", "record_failed_login")

        results = await asyncio.gather(
            *(gate.authenticate("alice", "wrong-password") for _ in range(5))
        )

        kinds = [result.kind for result in results]
        assert kinds.count(AuthErrorKind.INVALID_CREDENTIALS) == 4
        assert kinds.count(AuthErrorKind.ACCOUNT_LOCKED) == 1
        assert (await gate.authenticate("alice", password)).kind == AuthErrorKind.ACCOUNT_LOCKED

    async def test_lock_is_audited(self, gate, alice, audit_sink):
        for _ in range(6):
            await gate.authenticate("alice", "wrong-password")
        assert audit_sink.actions().count(audit.SECURITY_VIOLATION) == 2


class TestLogin:
    async def test_successful_login_issues_tokens(self, gate, alice, password, users, audit_sink, clock):
        result = await gate.authenticate(LoginRequest(username="alice", password=password))

        assert isinstance(result, Ok)
        auth = result.value
        assert auth.access_token.count(".") == 2
        assert auth.refresh_token
        assert auth.token_type == "bearer"
        assert auth.user.username == "alice"
        assert auth.user.last_login_at == clock()
        assert users.get_user(alice.id).last_login_at == clock()
        assert audit.LOGIN in audit_sink.actions()

    async def test_blank_credentials_rejected_without_counting(self, gate, alice, cache):
        result = await gate.authenticate("", "")
        assert result.kind == AuthErrorKind.INVALID_CREDENTIALS
        assert await cache.get_lockout("alice") is None

    async def test_inactive_account_rejected(self, gate, users, password):
        users.create_user("bob", password, is_active=False)
        result = await gate.authenticate("bob", password)
        assert result.kind == AuthErrorKind.ACCOUNT_INACTIVE

    async def test_store_failure_becomes_server_error(self, gate, alice, users, monkeypatch):
        def boom(username, password):
            raise RuntimeError("store offline")

        monkeypatch.setattr(users, "validate_credentials", boom)
        result = await gate.authenticate("alice", "anything")
        assert result.kind == AuthErrorKind.SERVER_ERROR
        assert "offline" not in result.message

    async def test_get_user_from_token(self, gate, alice, password):
        result = await gate.authenticate("alice", password)
        info = await gate.get_user_from_token(result.value.access_token)
        assert info.id == alice.id
        assert await gate.get_user_from_token("not-a-token") is None


class TestMfaGating:
    async def test_enrolled_user_receives_challenge(self, gate, mfa, alice, password, email):
        await mfa.setup_mfa(alice.id, "Email")

        result = await gate.authenticate("alice", password)

        assert isinstance(result, Err)
        assert result.kind == AuthErrorKind.MFA_REQUIRED
        assert result.challenge is not None
        assert result.challenge.method.value == "Email"
        assert len(email.sent) == 1
        assert email.sent[0][0] == "alice@example.com"
        assert email.sent[0][1] == "Verification Code"
        assert result.challenge.masked_destination == "a***@example.com"

    async def test_complete_mfa_finishes_login(self, gate, mfa, alice, password, email, users):
        await mfa.setup_mfa(alice.id, "Email")
        pending = await gate.authenticate("alice", password)

        code = _code_from(email.sent[-1][2])
        result = await gate.complete_mfa(pending.challenge.challenge_id, code)

        assert isinstance(result, Ok)
        assert result.value.user.id == alice.id
        stored = users.get_user(alice.id)
        assert stored.last_login_at is not None
        assert stored.last_mfa_validation_at is not None

    async def test_challenge_and_code_in_one_request(self, gate, mfa, alice, password, sms):
        await mfa.setup_mfa(alice.id, "SMS", phone_number="+15551234567")
        pending = await gate.authenticate("alice", password)
        code = _code_from(sms.sent[-1][1])

        result = await gate.authenticate(
            LoginRequest(
                username="alice",
                password=password,
                mfa_code=code,
                challenge_id=pending.challenge.challenge_id,
            )
        )
        assert isinstance(result, Ok)

    async def test_challenge_of_another_user_rejected(self, gate, mfa, users, alice, password, email):
        bob = users.create_user("bob", password, email="bob@example.com")
        await mfa.setup_mfa(alice.id, "Email")
        await mfa.setup_mfa(bob.id, "Email")
        pending = await gate.authenticate("bob", password)
        code = _code_from(email.sent[-1][2])

        result = await gate.authenticate(
            LoginRequest(
                username="alice",
                password=password,
                mfa_code=code,
                challenge_id=pending.challenge.challenge_id,
            )
        )
        assert result.kind == AuthErrorKind.CHALLENGE_EXPIRED_OR_NOT_FOUND

    async def test_totp_code_submitted_with_login(self, gate, mfa, alice, password, clock):
        setup = await mfa.setup_mfa(alice.id, "TOTP")
        code = generate_totp(setup.secret, clock().timestamp())

        result = await gate.authenticate(
            LoginRequest(username="alice", password=password, mfa_code=code)
        )
        assert isinstance(result, Ok)

    async def test_wrong_code_submitted_with_login(self, gate, mfa, alice, password, audit_sink, clock):
        setup = await mfa.setup_mfa(alice.id, "TOTP")
        now = clock().timestamp()
        valid = {generate_totp(setup.secret, now + step * 30) for step in (-1, 0, 1)}
        wrong = next(c for c in ("000000", "111111", "222222", "333333") if c not in valid)

        result = await gate.authenticate(
            LoginRequest(username="alice", password=password, mfa_code=wrong)
        )
        assert result.kind == AuthErrorKind.INVALID_MFA_CODE
        assert audit.MFA_CHALLENGE_FAILED in audit_sink.actions()

    async def test_backup_code_submitted_with_login(self, gate, mfa, alice, password, users):
        setup = await mfa.setup_mfa(alice.id, "TOTP")

        result = await gate.authenticate(
            LoginRequest(username="alice", password=password, mfa_code=setup.backup_codes[0])
        )
        assert isinstance(result, Ok)
        assert len(users.get_user(alice.id).backup_code_hashes) == 7

    async def test_global_switch_skips_mfa(self, gate, mfa, alice, password, settings):
        await mfa.setup_mfa(alice.id, "Email")
        settings.enable_mfa = False

        result = await gate.authenticate("alice", password)
        assert isinstance(result, Ok)

    async def test_codes_with_login_are_capped(self, gate, mfa, alice, password, settings, clock, audit_sink):
        setup = await mfa.setup_mfa(alice.id, "TOTP")
        now = clock().timestamp()
        valid = {generate_totp(setup.secret, now + step * 30) for step in (-1, 0, 1)}
        wrong = next(c for c in ("000000", "111111", "222222", "333333") if c not in valid)

        def login(code):
            return gate.authenticate(LoginRequest(username="alice", password=password, mfa_code=code))

        for _ in range(settings.mfa_max_challenge_attempts):
            assert (await login(wrong)).kind == AuthErrorKind.INVALID_MFA_CODE

        # Exhausted: even the right code is refused until the window passes
        result = await login(generate_totp(setup.secret, now))
        assert result.kind == AuthErrorKind.INVALID_MFA_CODE
        assert audit.SECURITY_VIOLATION in audit_sink.actions()

        clock.advance(settings.lockout_duration_minutes * 60 + 1)
        assert isinstance(await login(generate_totp(setup.secret, clock().timestamp())), Ok)

    async def test_accepted_code_resets_login_code_cap(self, gate, mfa, alice, password, settings, clock):
        setup = await mfa.setup_mfa(alice.id, "TOTP")
        now = clock().timestamp()
        right = generate_totp(setup.secret, now)
        valid = {generate_totp(setup.secret, now + step * 30) for step in (-1, 0, 1)}
        wrong = next(c for c in ("000000", "111111", "222222", "333333") if c not in valid)

        def login(code):
            return gate.authenticate(LoginRequest(username="alice", password=password, mfa_code=code))

        for _ in range(2):
            for _ in range(settings.mfa_max_challenge_attempts - 1):
                assert (await login(wrong)).kind == AuthErrorKind.INVALID_MFA_CODE
            assert isinstance(await login(right), Ok)
