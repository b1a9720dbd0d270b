"""Tests for mailsieve.orchestrator.synchronizer: one account, fake mailbox.

Covers the watermark rules (monotonic, reset on UIDVALIDITY change,
idempotent re-runs), first-match-wins, the classifier fallback, per-message
error isolation and fetch sizing (headers only vs. full bodies).
"""

import logging
from unittest.mock import MagicMock

import pytest

from conftest import FakeMailbox, make_message
from mailsieve.integrations.imap import DELETED, FLAGGED, SEEN
from mailsieve.integrations.spamd import SpamdClient, SpamdConnectionError
from mailsieve.orchestrator.synchronizer import needs_body, rules_for, sync_account
from mailsieve.schemas.account import Account, SpamAction, SpamdConfig
from mailsieve.schemas.rules import Rule
from mailsieve.schemas.spam import SpamVerdict
from mailsieve.schemas.sync import SyncState
from mailsieve.state.store import StateStoreError, SyncStateStore


def _rule(**overrides) -> Rule:
    defaults = dict(account="work", field="subject", operator="contains", value="invoice", action="flag")
    defaults.update(overrides)
    return Rule(**defaults)


def _spamd(*verdicts) -> MagicMock:
    client = MagicMock()
    client.check.side_effect = list(verdicts)
    return client


def _verdict(is_spam: bool, score: float = 1.0) -> SpamVerdict:
    return SpamVerdict(is_spam=is_spam, score=score, threshold=5.0)


@pytest.fixture
def store(tmp_path):
    return SyncStateStore.load(tmp_path / "state.json")


def _seed(store, *, uid_validity=10, last=5):
    store.put(SyncState(account="work", folder="INBOX", uid_validity=uid_validity, last_processed_uid=last))


class TestWatermark:
    def test_fetches_range_above_watermark(self, account, store):
        _seed(store, uid_validity=10, last=5)
        mb = FakeMailbox([make_message(u) for u in range(1, 9)], uid_validity=10, uid_next=9)

        result = sync_account(account, mailbox=mb, rules=[], store=store)

        assert mb.fetches == [(6, 8, True)]
        assert result.fetched == 3
        assert result.last_processed_uid == 8
        assert store.get("work", "INBOX").last_processed_uid == 8

    def test_first_run_starts_at_uid_one(self, account, store):
        mb = FakeMailbox([make_message(1), make_message(2)], uid_validity=7)

        sync_account(account, mailbox=mb, rules=[], store=store)

        assert mb.fetches[0][:2] == (1, 2)
        state = store.get("work", "INBOX")
        assert state.uid_validity == 7
        assert state.last_processed_uid == 2

    def test_uid_validity_change_resets_watermark(self, account, store):
        _seed(store, uid_validity=10, last=5)
        mb = FakeMailbox([make_message(1), make_message(2), make_message(3)], uid_validity=11, uid_next=4)

        result = sync_account(account, mailbox=mb, rules=[_rule(value="hello")], store=store)

        assert mb.fetches[0][:2] == (1, 3)
        assert result.matched == 3
        state = store.get("work", "INBOX")
        assert state.uid_validity == 11
        assert state.last_processed_uid == 3

    def test_first_sync_logged_as_new_state(self, account, store, caplog):
        caplog.set_level(logging.INFO, logger="mailsieve.orchestrator.synchronizer")
        sync_account(account, mailbox=FakeMailbox([make_message(1)], uid_validity=7), rules=[], store=store)
        assert "New folder state for work:INBOX (UIDVALIDITY 7)" in caplog.text
        assert "UIDVALIDITY changed" not in caplog.text

    def test_epoch_change_logged(self, account, store, caplog):
        caplog.set_level(logging.INFO, logger="mailsieve.orchestrator.synchronizer")
        _seed(store, uid_validity=10, last=5)
        sync_account(account, mailbox=FakeMailbox([make_message(1)], uid_validity=11), rules=[], store=store)
        assert "UIDVALIDITY changed for work:INBOX (10 -> 11)" in caplog.text

    def test_no_new_messages(self, account, store):
        _seed(store, uid_validity=10, last=8)
        mb = FakeMailbox([make_message(8)], uid_validity=10, uid_next=9)

        result = sync_account(account, mailbox=mb, rules=[], store=store)

        assert mb.fetches == []
        assert result.last_processed_uid == 8
        assert store.get("work", "INBOX").last_processed_uid == 8

    def test_empty_folder_persists_epoch(self, account, store):
        mb = FakeMailbox([], uid_validity=3, uid_next=1)

        sync_account(account, mailbox=mb, rules=[], store=store)

        assert mb.fetches == []
        assert store.get("work", "INBOX").uid_validity == 3

    def test_watermark_never_moves_backwards(self, account, store):
        _seed(store, uid_validity=10, last=5)
        # server returns a stale UID inside the range request
        mb = FakeMailbox([make_message(3), make_message(6)], uid_validity=10, uid_next=7)
        mb.fetch_range = lambda start, end, headers_only=False: [make_message(3), make_message(6)]

        result = sync_account(account, mailbox=mb, rules=[_rule(value="hello")], store=store)

        assert result.skipped == 1
        assert result.matched == 1
        assert store.get("work", "INBOX").last_processed_uid == 6

    def test_rerun_is_idempotent(self, account, store):
        mb = FakeMailbox([make_message(1, subject="invoice")], uid_validity=10)
        rules = [_rule()]

        first = sync_account(account, mailbox=mb, rules=rules, store=store)
        second = sync_account(account, mailbox=mb, rules=rules, store=store)

        assert first.matched == 1
        assert second.fetched == 0
        assert second.matched == 0
        assert len(mb.fetches) == 1


class TestRules:
    def test_first_match_wins(self, account, store):
        rules = [
            _rule(value="invoice", action="mark_read"),
            _rule(value="invoice", action="delete"),
        ]
        mb = FakeMailbox([make_message(1, subject="Invoice")], uid_validity=10)

        result = sync_account(account, mailbox=mb, rules=rules, store=store)

        assert result.matched == 1
        assert mb.flags[1] == {SEEN}
        assert mb.expunges == 0

    def test_other_accounts_rules_ignored(self, account, store):
        mb = FakeMailbox([make_message(1, subject="Invoice")], uid_validity=10)

        result = sync_account(account, mailbox=mb, rules=[_rule(account="home", action="delete")], store=store)

        assert result.matched == 0
        assert mb.flags == {}

    def test_invoice_moved_with_copy_fallback(self, account, store):
        rule = _rule(field="subject", operator="contains", value="invoice", action="move", destination="Invoices")
        mb = FakeMailbox([make_message(1, subject="Your Invoice #42")], uid_validity=10)

        result = sync_account(account, mailbox=mb, rules=[rule], store=store)

        assert mb.copies == [(1, "Invoices")]
        assert DELETED in mb.flags[1]
        assert result.expunged is True
        assert mb.expunges == 1

    def test_action_error_counts_and_advances(self, account, store):
        mb = FakeMailbox([make_message(1, subject="invoice"), make_message(2, subject="invoice")], uid_validity=10)
        calls = []

        def _flaky(uid, flag, value):
            calls.append(uid)
            if uid == 1:
                raise OSError("connection reset")
            mb.flags.setdefault(uid, set()).add(flag)

        mb.set_flag = _flaky

        result = sync_account(account, mailbox=mb, rules=[_rule()], store=store)

        assert calls == [1, 2]
        assert result.errors == 1
        assert mb.flags == {2: {FLAGGED}}
        assert store.get("work", "INBOX").last_processed_uid == 2


class TestSpam:
    def _spam_account(self, **overrides) -> Account:
        defaults = dict(
            name="work",
            host="imap.example.com",
            username="me",
            password="pw",
            use_spamassassin=True,
            spam_action=SpamAction.MOVE,
            spam_folder="Junk",
        )
        defaults.update(overrides)
        return Account(**defaults)

    def test_spam_moved_to_junk_and_rules_skipped(self, store):
        mb = FakeMailbox([make_message(1, subject="invoice")], uid_validity=10)
        spamd = _spamd(_verdict(True, 8.2))

        result = sync_account(
            self._spam_account(), mailbox=mb, rules=[_rule(action="mark_read")], store=store, spamd=spamd
        )

        assert result.spam == 1
        assert result.matched == 0
        assert mb.copies == [(1, "Junk")]
        assert mb.flags[1] == {DELETED}
        assert mb.expunges == 1

    def test_ham_goes_through_rules(self, store):
        mb = FakeMailbox([make_message(1, subject="invoice")], uid_validity=10)
        spamd = _spamd(_verdict(False))

        result = sync_account(self._spam_account(), mailbox=mb, rules=[_rule()], store=store, spamd=spamd)

        assert result.spam == 0
        assert result.matched == 1
        spamd.check.assert_called_once_with(mb.messages[1].raw)

    def test_classifier_failure_falls_back_to_rules(self, store):
        mb = FakeMailbox([make_message(1, subject="invoice")], uid_validity=10)
        spamd = _spamd(SpamdConnectionError("refused"))

        result = sync_account(self._spam_account(), mailbox=mb, rules=[_rule()], store=store, spamd=spamd)

        assert result.errors == 0
        assert result.matched == 1
        assert mb.flags[1] == {FLAGGED}

    @pytest.mark.parametrize(
        "config",
        [
            SpamdConfig.model_construct(host="127.0.0.1", port=1, user="jos\u00e9"),
            SpamdConfig(host="a..b", port=783),
        ],
        ids=["non-ascii-user", "malformed-host"],
    )
    def test_client_setup_errors_fall_back_to_rules(self, store, monkeypatch, config):
        monkeypatch.setattr(
            "mailsieve.integrations.spamd.socket.create_connection",
            MagicMock(side_effect=UnicodeError("label empty or too long")),
        )
        mb = FakeMailbox([make_message(1, subject="invoice")], uid_validity=10)

        result = sync_account(
            self._spam_account(), mailbox=mb, rules=[_rule()], store=store, spamd=SpamdClient(config)
        )

        assert result.errors == 0
        assert result.matched == 1
        assert mb.flags[1] == {FLAGGED}
        assert store.get("work", "INBOX").last_processed_uid == 1

    def test_full_bodies_fetched_for_spam(self, store):
        mb = FakeMailbox([make_message(1)], uid_validity=10)
        sync_account(self._spam_account(), mailbox=mb, rules=[], store=store, spamd=_spamd(_verdict(False)))
        assert mb.fetches[0][2] is False

    def test_spam_without_client_is_skipped(self, store):
        mb = FakeMailbox([make_message(1)], uid_validity=10)
        result = sync_account(self._spam_account(), mailbox=mb, rules=[], store=store, spamd=None)
        assert result.spam == 0
        assert mb.fetches[0][2] is True


class TestNeedsBody:
    def test_headers_only_for_header_rules(self, account):
        assert needs_body(account, [_rule()], spam_enabled=False) is False

    def test_body_rule(self, account):
        assert needs_body(account, [_rule(field="body")], spam_enabled=False) is True

    def test_forward_rule(self, account):
        assert needs_body(account, [_rule(action="forward", destination="x@y.z")], spam_enabled=False) is True

    def test_rules_for(self, account):
        rules = [_rule(), _rule(account="home"), _rule(value="second")]
        assert [r.value for r in rules_for(account, rules)] == ["invoice", "second"]


def test_state_write_failure_propagates(account, store, monkeypatch):
    mb = FakeMailbox([make_message(1)], uid_validity=10)

    def _boom(state):
        raise StateStoreError("disk full")

    monkeypatch.setattr(store, "put", _boom)
    with pytest.raises(StateStoreError):
        sync_account(account, mailbox=mb, rules=[], store=store)
