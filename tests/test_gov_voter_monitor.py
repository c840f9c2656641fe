"""
Tests for the per-chain proposal monitor.

Tests:
- New proposal: one record, one alert with vote buttons
- Already voted on chain: alert without buttons
- Failed alert is resent on the next tick
- Reminder every 6 hours, replying to the alert
- Fetch and lookup failures are alerted, never raised
- StoreIntegrityError stops the monitor
- End-to-end: discovery, approval, confirmation
"""

import asyncio
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from bots.gov_voter.approvals import ApprovalEvent, ApprovalHandler
from bots.gov_voter.chain import ChainContext, bring_up_chain
from bots.gov_voter.database import MESSAGE_ID_SEND_FAILED
from bots.gov_voter.errors import StoreIntegrityError, TransientNetworkError
from bots.gov_voter.monitor import ALERTED, REMINDED, RESENT, VOTED, WAITING, ChainMonitor
from bots.gov_voter.query import Proposal, ProposalQueryClient
from bots.gov_voter.signer import VoteSubmitter
from bots.gov_voter.utils import parse_chain_timestamp
from tests.helpers import (
    T0,
    FakeSigningClient,
    RecordingSleep,
    RestStub,
    make_config,
    make_network,
    v1_proposal,
)

CHAT_ID = -100123


class FakeQuery:
    """Stands in for ProposalQueryClient inside a ChainContext."""

    def __init__(self, proposals=None, voted=None):
        self.proposals = list(proposals or [])
        self.voted = dict(voted or {})
        self.fetch_error = None
        self.vote_errors = {}
        self.vote_lookups = []

    async def fetch_active_proposals(self):
        if self.fetch_error:
            raise self.fetch_error
        return list(self.proposals)

    async def has_granter_voted(self, proposal_id):
        self.vote_lookups.append(proposal_id)
        if proposal_id in self.vote_errors:
            raise self.vote_errors[proposal_id]
        return self.voted.get(proposal_id, False)

    async def close(self):
        pass


def proposal(proposal_id="42", days=7):
    return Proposal(
        id=proposal_id,
        title=f"Proposal {proposal_id}",
        voting_start_time=T0,
        voting_end_time=T0 + timedelta(days=days),
    )


def make_monitor(store, transport, clock, query=None, tag_in_reply=""):
    network = make_network()
    context = ChainContext(
        network=network,
        chat_id=CHAT_ID,
        query=query or FakeQuery([proposal()]),
        submitter=VoteSubmitter(network, FakeSigningClient()),
    )
    return ChainMonitor(context, store, transport, interval=3600, tag_in_reply=tag_in_reply, clock=clock)


def button_data(keyboard):
    return [button.callback_data for row in keyboard.inline_keyboard for button in row]


class TestNewProposal:

    @pytest.mark.asyncio
    async def test_alert_with_vote_buttons(self, store, transport, clock):
        monitor = make_monitor(store, transport, clock)

        assert await monitor.process_proposal(proposal()) == ALERTED

        [alert] = transport.sent
        assert alert.chat_id == CHAT_ID
        assert "New X Governance Proposal" in alert.text
        assert "https://explorer.example.org/proposals/42" in alert.text
        assert button_data(alert.keyboard) == ["42:X:yes", "42:X:no", "42:X:veto", "42:X:abstain"]

        record = store.get("X", "42")
        assert record.voted is False
        assert record.message_id == alert.message_id

    @pytest.mark.asyncio
    async def test_already_voted_on_chain(self, store, transport, clock):
        query = FakeQuery([proposal()], voted={"42": True})
        monitor = make_monitor(store, transport, clock, query=query)

        await monitor.run_tick()

        [alert] = transport.sent
        assert alert.keyboard is None
        assert "<b>Voted</b>: Yes" in alert.text
        assert store.get("X", "42").voted is True

        await monitor.run_tick()
        assert len(transport.sent) == 1

    @pytest.mark.asyncio
    async def test_rediscovery_does_not_duplicate(self, store, transport, clock):
        query = FakeQuery([proposal()])
        monitor = make_monitor(store, transport, clock, query=query)

        await monitor.run_tick()
        clock.advance(minutes=5)
        await monitor.run_tick()

        assert len(store.list_records()) == 1
        assert len(transport.sent) == 1
        assert query.vote_lookups == ["42"]

    @pytest.mark.asyncio
    async def test_voted_record_is_left_alone(self, store, transport, clock):
        monitor = make_monitor(store, transport, clock)
        await monitor.process_proposal(proposal())
        store.record_vote("X", "42", "yes", "alice")

        clock.advance(hours=7)
        assert await monitor.process_proposal(proposal()) == VOTED
        assert len(transport.sent) == 1


class TestResend:

    @pytest.mark.asyncio
    async def test_failed_alert_is_resent_next_tick(self, store, transport, clock):
        monitor = make_monitor(store, transport, clock)
        transport.fail_sends = 1

        await monitor.run_tick()

        assert store.lookup("X", "42").message_id == MESSAGE_ID_SEND_FAILED
        # the error alert about the failed send went through
        assert "Bot Error Alert" in transport.sent[0].text

        clock.advance(minutes=5)
        assert await monitor.process_proposal(proposal()) == RESENT

        alert = transport.sent[-1]
        assert alert.keyboard is not None
        assert store.lookup("X", "42").message_id == alert.message_id

    @pytest.mark.asyncio
    async def test_unset_message_id_is_resent(self, store, transport, clock):
        monitor = make_monitor(store, transport, clock)
        await monitor.process_proposal(proposal())
        store.set_message_id("X", "42", 0)

        assert await monitor.process_proposal(proposal()) == RESENT


class TestReminder:

    @pytest.mark.asyncio
    async def test_reminder_replies_to_alert_every_six_hours(self, store, transport, clock):
        monitor = make_monitor(store, transport, clock, tag_in_reply="@ops @val")
        await monitor.process_proposal(proposal())
        alert = transport.sent[0]

        clock.advance(hours=5)
        assert await monitor.process_proposal(proposal()) == WAITING

        clock.advance(hours=1)
        assert await monitor.process_proposal(proposal()) == REMINDED
        reminder = transport.sent[-1]
        assert reminder.reply_to == alert.message_id
        assert reminder.keyboard is None
        assert "Please vote on the X proposal number: 42" in reminder.text
        assert "@ops @val" in reminder.text

        clock.advance(hours=1)
        assert await monitor.process_proposal(proposal()) == WAITING
        assert len(transport.sent) == 2

    @pytest.mark.asyncio
    async def test_failed_reminder_is_retried_next_tick(self, store, transport, clock):
        monitor = make_monitor(store, transport, clock)
        await monitor.process_proposal(proposal())
        alert = transport.sent[0]

        clock.advance(hours=6)
        transport.fail_sends = 1
        assert await monitor.process_proposal(proposal()) == WAITING
        assert "Sending Reminder" in transport.sent[-1].text

        clock.advance(minutes=5)
        assert await monitor.process_proposal(proposal()) == REMINDED
        assert transport.sent[-1].reply_to == alert.message_id

    @pytest.mark.asyncio
    async def test_no_reminder_after_voting_ends(self, store, transport, clock):
        monitor = make_monitor(store, transport, clock)
        await monitor.process_proposal(proposal(days=1))

        clock.advance(days=2)
        assert await monitor.process_proposal(proposal(days=1)) == WAITING
        assert len(transport.sent) == 1


class TestTickErrors:

    @pytest.mark.asyncio
    async def test_fetch_failure_is_alerted(self, store, transport, clock):
        query = FakeQuery()
        query.fetch_error = TransientNetworkError("API request failed: 502")
        monitor = make_monitor(store, transport, clock, query=query)

        await monitor.run_tick()

        [alert] = transport.sent
        assert "Fetching Proposals: X" in alert.text
        assert "502" in alert.text

    @pytest.mark.asyncio
    async def test_vote_lookup_failure_skips_only_that_proposal(self, store, transport, clock):
        query = FakeQuery([proposal("41"), proposal("42")])
        query.vote_errors["41"] = TransientNetworkError("gave up after 3 attempts")
        monitor = make_monitor(store, transport, clock, query=query)

        await monitor.run_tick()

        assert store.lookup("X", "41").exists is False
        assert store.lookup("X", "42").exists is True
        assert "gave up after 3 attempts" in transport.sent[0].text

        # retried on the next tick
        del query.vote_errors["41"]
        await monitor.run_tick()
        assert store.lookup("X", "41").exists is True

    @pytest.mark.asyncio
    async def test_store_integrity_error_escapes(self, transport, clock):
        broken_store = MagicMock()
        broken_store.lookup.side_effect = StoreIntegrityError("malformed")
        monitor = make_monitor(broken_store, transport, clock)

        with pytest.raises(StoreIntegrityError):
            await monitor.run_tick()

    @pytest.mark.asyncio
    async def test_error_alert_send_failure_is_contained(self, store, transport, clock):
        query = FakeQuery()
        query.fetch_error = TransientNetworkError("timeout")
        monitor = make_monitor(store, transport, clock, query=query)
        transport.fail_sends = 1

        await monitor.run_tick()
        assert transport.sent == []


class TestRunLoop:

    @pytest.mark.asyncio
    async def test_first_tick_is_immediate_and_stop_ends_loop(self, store, transport, clock):
        monitor = make_monitor(store, transport, clock)
        task = asyncio.create_task(monitor.run())

        for _ in range(50):
            if monitor.ticks:
                break
            await asyncio.sleep(0.01)
        assert monitor.ticks == 1
        assert monitor.is_running

        monitor.stop()
        await asyncio.wait_for(task, timeout=1)
        assert not monitor.is_running
        assert len(transport.sent) == 1

    @pytest.mark.asyncio
    async def test_integrity_error_ends_task(self, transport, clock):
        broken_store = MagicMock()
        broken_store.lookup.side_effect = StoreIntegrityError("malformed")
        monitor = make_monitor(broken_store, transport, clock)

        with pytest.raises(StoreIntegrityError):
            await asyncio.wait_for(monitor.run(), timeout=1)


class TestEndToEnd:

    @pytest.mark.asyncio
    async def test_discover_approve_confirm(self, tmp_path, store, transport):
        api = "https://api.example.org"
        stub = RestStub({
            f"{api}/cosmos/gov/v1/proposals": (200, {"proposals": [v1_proposal("42", "Upgrade")]}),
            f"{api}/cosmos/gov/v1/proposals/42/votes/cosmos1granter": (404, {"code": 5}),
        })
        query = ProposalQueryClient(api, "cosmos1granter", sleep=RecordingSleep())
        query._get = stub
        signing_client = FakeSigningClient()
        config = make_config(tmp_path)

        context = await bring_up_chain(
            config, config.networks[0], lambda cfg, net: signing_client, query_client=query
        )
        assert signing_client.connected

        # voting started at T0; keep the clock inside the voting period
        monitor = ChainMonitor(
            context, store, transport,
            clock=lambda: parse_chain_timestamp(v1_proposal()["voting_start_time"]),
        )
        await monitor.run_tick()

        record = store.get("X", "42")
        assert record.uid == "X_42"
        assert record.voted is False
        assert record.message_id > 0
        [alert] = transport.sent
        assert len(button_data(alert.keyboard)) == 4

        approvals = ApprovalHandler([context], store, transport)
        outcome = await approvals.handle(ApprovalEvent(
            data="42:X:yes", user_id=1, username="alice", chat_id=CHAT_ID, message_id=record.message_id,
        ))

        assert outcome.accepted is True
        record = store.get("X", "42")
        assert (record.voted, record.vote_option, record.voted_by) == (True, "yes", "alice")

        confirmation = transport.sent[-1]
        assert confirmation.reply_to == record.message_id
        assert "https://explorer.example.org/txs/ABC123" in confirmation.text
        assert transport.controls == [(CHAT_ID, record.message_id, None)]
        assert len(signing_client.broadcasts) == 1
