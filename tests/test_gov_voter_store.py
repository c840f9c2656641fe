"""
Tests for the SQLite proposal store.

Tests:
- Insert-if-absent deduplication
- Lookup and message-id sentinels
- Reminder clock check-and-advance (6 hours, voting still open)
- Vote recording
- Corrupt database detection
"""

from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from bots.gov_voter.database import (
    MESSAGE_ID_SEND_FAILED,
    MESSAGE_ID_UNSET,
    ProposalRecord,
    ProposalStore,
)
from bots.gov_voter.errors import StoreIntegrityError
from tests.helpers import T0


def record(proposal_id="42", chain_id="X", voted=False, days=7):
    return ProposalRecord(
        chain_id=chain_id,
        proposal_id=proposal_id,
        voting_start_time=T0,
        voting_end_time=T0 + timedelta(days=days),
        voted=voted,
    )


class TestUpsert:

    def test_inserts_once(self, store):
        assert store.upsert_if_absent(record(), now=T0) is True
        assert store.upsert_if_absent(record(voted=True), now=T0 + timedelta(hours=1)) is False

        records = store.list_records()
        assert len(records) == 1
        assert records[0].uid == "X_42"
        assert records[0].voted is False
        assert records[0].created_at == T0

    def test_same_proposal_on_other_chain_is_separate(self, store):
        store.upsert_if_absent(record(chain_id="X"))
        store.upsert_if_absent(record(chain_id="Y"))
        assert {r.uid for r in store.list_records()} == {"X_42", "Y_42"}

    def test_state_survives_reopen(self, store):
        store.upsert_if_absent(record(), now=T0)
        store.set_message_id("X", "42", 555)

        reopened = ProposalStore(store.db_path)
        assert reopened.lookup("X", "42").message_id == 555


class TestLookup:

    def test_absent(self, store):
        result = store.lookup("X", "42")
        assert result.exists is False
        assert result.voted is False

    def test_present_with_unset_message(self, store):
        store.upsert_if_absent(record(voted=True))
        result = store.lookup("X", "42")
        assert result.exists is True
        assert result.voted is True
        assert result.message_id == MESSAGE_ID_UNSET
        assert result.has_valid_message is False

    def test_send_failed_sentinel(self, store):
        store.upsert_if_absent(record())
        store.set_message_id("X", "42", MESSAGE_ID_SEND_FAILED)

        assert store.lookup("X", "42").has_valid_message is False
        assert store.get("X", "42").message_id == MESSAGE_ID_SEND_FAILED

        store.set_message_id("X", "42", 101)
        assert store.lookup("X", "42").has_valid_message is True


class TestReminderDue:

    def test_not_due_before_six_hours(self, store):
        store.upsert_if_absent(record(), now=T0)
        assert store.reminder_due("X", "42", now=T0 + timedelta(hours=5, minutes=59)) is False

    def test_due_once_per_window(self, store):
        store.upsert_if_absent(record(), now=T0)

        assert store.reminder_due("X", "42", now=T0 + timedelta(hours=6)) is True
        assert store.reminder_due("X", "42", now=T0 + timedelta(hours=6, minutes=5)) is False
        assert store.get("X", "42").last_checked == T0 + timedelta(hours=6)

        assert store.reminder_due("X", "42", now=T0 + timedelta(hours=12)) is True

    def test_never_due_when_voted(self, store):
        store.upsert_if_absent(record(), now=T0)
        store.record_vote("X", "42", "yes", "alice")
        assert store.reminder_due("X", "42", now=T0 + timedelta(days=1)) is False

    def test_never_due_after_voting_ends(self, store):
        store.upsert_if_absent(record(days=1), now=T0)
        assert store.reminder_due("X", "42", now=T0 + timedelta(days=1, hours=1)) is False

    def test_unknown_proposal(self, store):
        assert store.reminder_due("X", "999", now=T0) is False

    def test_concurrent_callers_get_one_reminder(self, store):
        store.upsert_if_absent(record(), now=T0)
        now = T0 + timedelta(hours=7)

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(lambda _: store.reminder_due("X", "42", now=now), range(16)))

        assert results.count(True) == 1

    def test_rewind_makes_reminder_due_again(self, store):
        store.upsert_if_absent(record(), now=T0)
        sent_at = T0 + timedelta(hours=6)
        assert store.reminder_due("X", "42", now=sent_at) is True

        store.rewind_reminder("X", "42", now=sent_at)

        assert store.reminder_due("X", "42", now=sent_at + timedelta(minutes=5)) is True

    def test_rewind_ignores_voted(self, store):
        store.upsert_if_absent(record(), now=T0)
        store.record_vote("X", "42", "yes", "alice")
        store.rewind_reminder("X", "42", now=T0 + timedelta(hours=1))
        assert store.get("X", "42").last_checked == T0


class TestRecordVote:

    def test_sets_vote_fields(self, store):
        store.upsert_if_absent(record())
        store.record_vote("X", "42", "veto", "alice")

        saved = store.get("X", "42")
        assert saved.voted is True
        assert saved.vote_option == "veto"
        assert saved.voted_by == "alice"

    def test_last_writer_wins(self, store):
        store.upsert_if_absent(record())
        store.record_vote("X", "42", "yes", "alice")
        store.record_vote("X", "42", "no", "bob")
        assert store.get("X", "42").vote_option == "no"

    def test_rejects_unknown_option(self, store):
        store.upsert_if_absent(record())
        with pytest.raises(ValueError):
            store.record_vote("X", "42", "maybe", "alice")

    def test_list_records_filters(self, store):
        store.upsert_if_absent(record("1"))
        store.upsert_if_absent(record("2"))
        store.upsert_if_absent(record("3", chain_id="Y"))
        store.record_vote("X", "2", "yes", "alice")

        assert [r.proposal_id for r in store.list_records(chain_id="X", voted=False)] == ["1"]
        assert [r.proposal_id for r in store.list_records(voted=True)] == ["2"]
        assert len(store.list_records(chain_id="Y")) == 1


class TestIntegrity:

    def test_corrupt_file_raises_integrity_error(self, tmp_path):
        db_path = tmp_path / "broken.sqlite"
        db_path.write_bytes(b"definitely not sqlite " * 200)

        with pytest.raises(StoreIntegrityError):
            ProposalStore(db_path)

    def test_malformed_row_raises_integrity_error(self, store):
        store.upsert_if_absent(record())
        with store._get_connection() as conn:
            conn.execute("UPDATE proposals SET voting_end_time = 'soon' WHERE uid = 'X_42'")
            conn.commit()

        with pytest.raises(StoreIntegrityError):
            store.get("X", "42")
