"""Unit tests for auth/totp.py -- TOTP engine and enrollment state machine.

Covers:
- generate()/verify() agree for a fresh secret; adjacent steps accepted
- malformed codes and secrets are rejected without raising
- enrollment URI carries issuer, label and secret
- enable() with a code from a different secret leaves 2FA off
- two setups then enable with the second secret's code: enabled, first secret dead
- setup refused while enabled; disable clears the secret
"""

import time
from urllib.parse import parse_qs, unquote, urlparse

import pyotp
import pytest

from auth import totp
from auth.errors import AccountNotFound, InvalidTotp, TotpStateError
from auth.totp import TotpEnrollment
from conftest import add_account, make_store


@pytest.fixture
def store():
    s = make_store()
    yield s
    s.close()


@pytest.fixture
def enrollment(store):
    return TotpEnrollment(store, issuer="JeffFromIT")


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class TestEngine:
    def test_generated_code_verifies(self) -> None:
        secret = totp.generate_secret()
        assert totp.verify(secret, totp.generate(secret))

    def test_secret_is_base32(self) -> None:
        secret = totp.generate_secret()
        assert len(secret) == 32
        assert set(secret) <= set("ABCDEFGHIJKLMNOPQRSTUVWXYZ234567")

    def test_previous_step_accepted(self) -> None:
        """One step of clock skew either way is tolerated."""
        secret = totp.generate_secret()
        previous = pyotp.TOTP(secret).at(time.time() - 30)
        assert totp.verify(secret, previous)

    def test_distant_step_rejected(self) -> None:
        secret = totp.generate_secret()
        stale = pyotp.TOTP(secret).at(time.time() - 300)
        current = totp.generate(secret)
        if stale != current:
            assert not totp.verify(secret, stale)

    def test_code_with_spaces_is_normalized(self) -> None:
        secret = totp.generate_secret()
        code = totp.generate(secret)
        assert totp.verify(secret, f" {code[:3]} {code[3:]} ")

    @pytest.mark.parametrize("token", ["", "12345", "1234567", "abcdef", None])
    def test_malformed_token_rejected(self, token) -> None:
        assert not totp.verify(totp.generate_secret(), token)

    def test_bad_secret_rejected_without_raising(self) -> None:
        assert not totp.verify("not base32 !!", "123456")
        assert not totp.verify(None, "123456")

    def test_enrollment_uri(self) -> None:
        secret = totp.generate_secret()
        uri = totp.build_enrollment_uri("alice", "JeffFromIT", secret)
        parsed = urlparse(uri)
        assert parsed.scheme == "otpauth"
        assert parsed.netloc == "totp"
        assert unquote(parsed.path) == "/JeffFromIT:alice"
        query = parse_qs(parsed.query)
        assert query["secret"] == [secret]
        assert query["issuer"] == ["JeffFromIT"]


# ---------------------------------------------------------------------------
# Enrollment
# ---------------------------------------------------------------------------


class TestEnrollment:
    def test_setup_stores_pending_secret(self, store, enrollment) -> None:
        account = add_account(store, "alice", "pw")
        setup = enrollment.setup(account.id)
        stored = store.get_account(account.id)
        assert stored.totp_secret == setup.secret
        assert stored.totp_enabled is False
        assert stored.totp_state == "pending"
        assert setup.enrollment_uri.startswith("otpauth://totp/")

    def test_enable_with_valid_code(self, store, enrollment) -> None:
        account = add_account(store, "bob", "pw")
        setup = enrollment.setup(account.id)
        enrollment.enable(account.id, totp.generate(setup.secret))
        assert store.get_account(account.id).totp_state == "enabled"

    def test_enable_with_code_from_other_secret_changes_nothing(self, store, enrollment) -> None:
        account = add_account(store, "carol", "pw")
        setup = enrollment.setup(account.id)
        other = totp.generate_secret()
        code = totp.generate(other)
        if totp.verify(setup.secret, code):
            pytest.skip("codes collided")
        with pytest.raises(InvalidTotp):
            enrollment.enable(account.id, code)
        stored = store.get_account(account.id)
        assert stored.totp_enabled is False
        assert stored.totp_secret == setup.secret

    def test_second_setup_wins(self, store, enrollment) -> None:
        account = add_account(store, "dave", "pw")
        first = enrollment.setup(account.id)
        second = enrollment.setup(account.id)
        assert first.secret != second.secret

        enrollment.enable(account.id, totp.generate(second.secret))

        stored = store.get_account(account.id)
        assert stored.totp_enabled is True
        assert stored.totp_secret == second.secret
        first_code = totp.generate(first.secret)
        if first_code != totp.generate(second.secret):
            assert not totp.verify(stored.totp_secret, first_code)

    def test_enable_loses_race_with_concurrent_setup(self, store, enrollment) -> None:
        """Code checked against secret A, but setup swapped in secret B before the write."""
        account = add_account(store, "erin", "pw")
        first = enrollment.setup(account.id)
        code = totp.generate(first.secret)

        original_enable = store.enable_totp

        def enable_after_swap(account_id, expected_secret):
            store.begin_totp_setup(account_id, totp.generate_secret())
            return original_enable(account_id, expected_secret)

        store.enable_totp = enable_after_swap
        with pytest.raises(InvalidTotp):
            enrollment.enable(account.id, code)
        assert store.get_account(account.id).totp_enabled is False

    def test_enable_without_setup(self, store, enrollment) -> None:
        account = add_account(store, "frank", "pw")
        with pytest.raises(TotpStateError):
            enrollment.enable(account.id, "123456")

    def test_setup_refused_while_enabled(self, store, enrollment) -> None:
        account = add_account(store, "grace", "pw")
        setup = enrollment.setup(account.id)
        enrollment.enable(account.id, totp.generate(setup.secret))
        with pytest.raises(TotpStateError):
            enrollment.setup(account.id)
        assert store.get_account(account.id).totp_secret == setup.secret

    def test_disable_clears_secret(self, store, enrollment) -> None:
        account = add_account(store, "heidi", "pw")
        setup = enrollment.setup(account.id)
        enrollment.enable(account.id, totp.generate(setup.secret))
        enrollment.disable(account.id)
        stored = store.get_account(account.id)
        assert stored.totp_enabled is False
        assert stored.totp_secret is None

    def test_unknown_account(self, enrollment) -> None:
        with pytest.raises(AccountNotFound):
            enrollment.setup(9999)
        with pytest.raises(AccountNotFound):
            enrollment.enable(9999, "123456")
        with pytest.raises(AccountNotFound):
            enrollment.disable(9999)
