"""
tests/test_account_store.py -- Unit tests for AccountStore.

Uses a fresh named shared-memory database per test (store fixture).

Coverage:
  - Account create / lookup by email (case-insensitive), username, id
  - Duplicate detection reports the precise field
  - Role updates refuse an empty set; roles round-trip as a set
  - Ledger token replace keeps exactly one live token per (account, purpose)
  - The live-token index rejects a second live row written behind the lock
  - consume_token is a compare-and-set and applies account fields atomically
  - A token replaced after lookup can never be consumed
  - replace_token_if_idle honours the cool-down
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import IntegrityError

from auth.errors import DuplicateEmail, DuplicateUsername
from auth.models import Account, LedgerToken, TokenPurpose, VerificationStatus
from auth.store import _tokens
from tests.conftest import make_account

T0 = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


def _token(account_id: int, token_hash: str, purpose: TokenPurpose = TokenPurpose.VERIFY) -> LedgerToken:
    return LedgerToken(
        account_id=account_id,
        purpose=purpose,
        token_hash=token_hash,
        issued_at=T0,
        expires_at=T0 + timedelta(hours=24),
    )


class TestAccounts:
    def test_create_and_lookup(self, store) -> None:
        account = make_account(store, email="Alice@Example.com", verified=False)
        assert account.id is not None
        assert store.get_by_email("alice@example.com").id == account.id
        assert store.get_by_email("ALICE@EXAMPLE.COM").id == account.id
        assert store.get_by_username("alice").id == account.id
        assert store.get_by_id(account.id).email == "alice@example.com"
        assert account.verification_status is VerificationStatus.UNVERIFIED
        assert account.created_at is not None

    def test_missing_lookups_return_none(self, store) -> None:
        assert store.get_by_email("nobody@x.com") is None
        assert store.get_by_username("nobody") is None
        assert store.get_by_id(999) is None

    def test_duplicate_email_and_username(self, store) -> None:
        make_account(store)
        with pytest.raises(DuplicateEmail):
            store.create_account(Account(email="A@X.com", username="other", full_name="O", secret_hash="h"))
        with pytest.raises(DuplicateUsername):
            store.create_account(Account(email="other@x.com", username="alice", full_name="O", secret_hash="h"))

    def test_update_roles(self, store) -> None:
        account = make_account(store)
        assert store.update_roles(account.id, ["manager", "user", "manager"])
        assert sorted(store.get_by_id(account.id).roles) == ["manager", "user"]

    def test_update_roles_refuses_empty_set(self, store) -> None:
        account = make_account(store)
        with pytest.raises(ValueError):
            store.update_roles(account.id, [" "])
        assert store.get_by_id(account.id).roles == ["user"]

    def test_update_roles_unknown_account(self, store) -> None:
        assert store.update_roles(999, ["user"]) is False

    def test_set_status_and_count_admins(self, store) -> None:
        admin = make_account(store, email="root@x.com", username="root", roles=("admin",))
        make_account(store)
        assert store.count_admins() == 1
        store.set_status(admin.id, VerificationStatus.CLOSED)
        assert store.get_by_id(admin.id).is_closed
        assert store.count_admins() == 0

    def test_list_accounts_ordered_by_username(self, store) -> None:
        make_account(store, email="z@x.com", username="zed")
        make_account(store, email="a@x.com", username="amy")
        assert [a.username for a in store.list_accounts()] == ["amy", "zed"]


class TestLedgerTokens:
    def test_replace_keeps_one_live_token(self, store) -> None:
        account = make_account(store, verified=False)
        first = store.replace_token(_token(account.id, "h1"))
        second = store.replace_token(_token(account.id, "h2"))
        assert first != second
        assert store.count_live_tokens(account.id, TokenPurpose.VERIFY) == 1
        assert store.get_live_token(account.id, TokenPurpose.VERIFY).token_hash == "h2"
        assert store.get_token_by_hash("h1", TokenPurpose.VERIFY) is None

    def test_purposes_are_independent(self, store) -> None:
        account = make_account(store)
        store.replace_token(_token(account.id, "v1", TokenPurpose.VERIFY))
        store.replace_token(_token(account.id, "r1", TokenPurpose.RESET))
        assert store.count_live_tokens(account.id, TokenPurpose.VERIFY) == 1
        assert store.count_live_tokens(account.id, TokenPurpose.RESET) == 1
        # A hash is only found within its own ledger.
        assert store.get_token_by_hash("v1", TokenPurpose.RESET) is None

    def test_index_rejects_second_live_row(self, store) -> None:
        """The partial unique index holds even for writes that skip replace_token()."""
        account = make_account(store, verified=False)
        store.replace_token(_token(account.id, "h1"))
        with pytest.raises(IntegrityError):
            with store.engine.begin() as conn:
                conn.execute(
                    _tokens.insert().values(
                        account_id=account.id,
                        purpose="verify",
                        token_hash="h2",
                        issued_at=T0.isoformat(),
                        expires_at=(T0 + timedelta(hours=1)).isoformat(),
                        consumed_at=None,
                    )
                )

    def test_consume_is_compare_and_set(self, store) -> None:
        account = make_account(store, verified=False)
        store.replace_token(_token(account.id, "h1"))
        live = store.get_live_token(account.id, TokenPurpose.VERIFY)
        when = T0 + timedelta(minutes=5)
        assert store.consume_token(live, when, verification_status=VerificationStatus.VERIFIED) is True
        assert store.consume_token(live, when, verification_status=VerificationStatus.VERIFIED) is False

        token = store.get_token_by_hash("h1", TokenPurpose.VERIFY)
        assert token.consumed
        assert token.consumed_at == when
        assert store.get_by_id(account.id).is_verified

    def test_consumed_token_leaves_room_for_a_new_live_one(self, store) -> None:
        account = make_account(store, verified=False)
        store.replace_token(_token(account.id, "h1"))
        store.consume_token(store.get_live_token(account.id, TokenPurpose.VERIFY), T0)
        store.replace_token(_token(account.id, "h2"))
        assert store.count_live_tokens(account.id, TokenPurpose.VERIFY) == 1
        # The consumed row survives so a replay reports "already consumed".
        assert store.get_token_by_hash("h1", TokenPurpose.VERIFY).consumed

    def test_replaced_token_cannot_be_consumed(self, store) -> None:
        account = make_account(store, verified=False)
        store.replace_token(_token(account.id, "h1"))
        looked_up = store.get_live_token(account.id, TokenPurpose.VERIFY)
        store.replace_token(_token(account.id, "h2"))

        assert store.consume_token(looked_up, T0, verification_status=VerificationStatus.VERIFIED) is False
        assert not store.get_by_id(account.id).is_verified
        assert not store.get_live_token(account.id, TokenPurpose.VERIFY).consumed

    def test_replace_if_idle_respects_cooldown(self, store) -> None:
        account = make_account(store)
        cooldown = timedelta(seconds=60)
        assert store.replace_token_if_idle(_token(account.id, "r1", TokenPurpose.RESET), cooldown) == 0.0

        later = LedgerToken(
            account_id=account.id,
            purpose=TokenPurpose.RESET,
            token_hash="r2",
            issued_at=T0 + timedelta(seconds=20),
            expires_at=T0 + timedelta(hours=1),
        )
        assert store.replace_token_if_idle(later, cooldown) == 40.0
        assert store.get_live_token(account.id, TokenPurpose.RESET).token_hash == "r1"

        later.issued_at = T0 + timedelta(seconds=60)
        assert store.replace_token_if_idle(later, cooldown) == 0.0
        assert store.get_live_token(account.id, TokenPurpose.RESET).token_hash == "r2"

    def test_tokens_round_trip_as_aware_datetimes(self, store) -> None:
        account = make_account(store)
        store.replace_token(_token(account.id, "h1"))
        token = store.get_live_token(account.id, TokenPurpose.VERIFY)
        assert token.issued_at == T0
        assert token.expires_at == T0 + timedelta(hours=24)
        assert token.is_expired(T0 + timedelta(hours=24))
        assert not token.is_expired(T0 + timedelta(hours=23, minutes=59))
