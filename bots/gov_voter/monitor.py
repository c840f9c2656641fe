"""
Proposal Monitor - one polling loop per chain.

Each tick lists proposals in voting period and moves every one of them
through the alert lifecycle:

    new          -> vote lookup, insert, alert (with vote buttons unless voted)
    alert failed -> resend alert
    unvoted      -> reminder reply every 6 hours while voting is open,
                    retried on the next tick when the send fails
    voted        -> nothing
"""

import asyncio
import logging
from typing import Callable, Optional

from telegram.error import TelegramError

from bots.gov_voter.chain import ChainContext
from bots.gov_voter.database import MESSAGE_ID_SEND_FAILED, ProposalRecord, ProposalStore
from bots.gov_voter.errors import StoreIntegrityError
from bots.gov_voter.messages import (
    build_vote_keyboard,
    format_error_alert,
    format_proposal_alert,
    format_reminder,
)
from bots.gov_voter.query import Proposal
from bots.gov_voter.utils import utc_now

logger = logging.getLogger(__name__)

# Outcomes of process_proposal
ALERTED = "alerted"
RESENT = "resent"
REMINDED = "reminded"
WAITING = "waiting"
VOTED = "voted"


class ChainMonitor:
    """
    Polls one chain's governance proposals and drives their alerts.

    Ticks run back to back with ``interval`` seconds in between; ``stop()``
    ends the loop at the next tick boundary.
    """

    def __init__(
        self,
        context: ChainContext,
        store: ProposalStore,
        transport,
        interval: float = 300.0,
        tag_in_reply: str = "",
        clock: Callable = utc_now,
    ):
        self.context = context
        self.store = store
        self.transport = transport
        self.interval = interval
        self.tag_in_reply = tag_in_reply
        self._clock = clock
        self._stop_event = asyncio.Event()
        self._running = False
        self.ticks = 0

    @property
    def is_running(self) -> bool:
        return self._running

    def stop(self):
        self._stop_event.set()

    async def run(self):
        """Tick until stopped. StoreIntegrityError escapes and ends the task."""
        self._running = True
        logger.info(
            f"Monitoring {self.context.name} ({self.context.chain_id}) every {self.interval / 60:g} minutes"
        )
        try:
            while not self._stop_event.is_set():
                await self.run_tick()
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
                except asyncio.TimeoutError:
                    pass
        finally:
            self._running = False
            logger.info(f"Monitor for {self.context.name} stopped")

    async def run_tick(self):
        """One pass over the chain's active proposals. Failures other than StoreIntegrityError are logged and alerted."""
        self.ticks += 1
        try:
            proposals = await self.context.query.fetch_active_proposals()
        except StoreIntegrityError:
            raise
        except Exception as e:
            logger.error(f"Error fetching proposals for {self.context.name}: {e}", exc_info=True)
            await self.send_error_alert(f"Fetching Proposals: {self.context.name}", e)
            return

        for proposal in proposals:
            try:
                await self.process_proposal(proposal)
            except StoreIntegrityError:
                raise
            except Exception as e:
                logger.error(f"Error processing {self.context.name} proposal {proposal.id}: {e}", exc_info=True)
                await self.send_error_alert(f"Proposal Monitoring: {self.context.name} #{proposal.id}", e)

    async def process_proposal(self, proposal: Proposal) -> str:
        chain_id = self.context.chain_id
        result = self.store.lookup(chain_id, proposal.id)

        if not result.exists:
            voted = await self.context.query.has_granter_voted(proposal.id)
            self.store.upsert_if_absent(ProposalRecord(
                chain_id=chain_id,
                proposal_id=proposal.id,
                voting_start_time=proposal.voting_start_time,
                voting_end_time=proposal.voting_end_time,
                voted=voted,
            ), now=self._clock())
            message_id = await self.send_alert(proposal, voted)
            self.store.set_message_id(chain_id, proposal.id, message_id)
            return ALERTED

        if result.voted:
            return VOTED

        if not result.has_valid_message:
            logger.info(f"Resending alert for {self.context.name} proposal {proposal.id}")
            message_id = await self.send_alert(proposal, voted=False)
            self.store.set_message_id(chain_id, proposal.id, message_id)
            return RESENT

        now = self._clock()
        if self.store.reminder_due(chain_id, proposal.id, now=now):
            if await self.send_reminder(proposal, result.message_id) is None:
                self.store.rewind_reminder(chain_id, proposal.id, now=now)
                return WAITING
            return REMINDED

        return WAITING

    # === CHAT ===

    async def send_alert(self, proposal: Proposal, voted: bool) -> int:
        """Send the proposal alert. Returns the message id or MESSAGE_ID_SEND_FAILED."""
        text = format_proposal_alert(proposal, self.context.chain_id, self.context.proposal_explorer, voted)
        keyboard = None if voted else build_vote_keyboard(proposal.id, self.context.name)
        try:
            message_id = await self.transport.send_message(self.context.chat_id, text, keyboard=keyboard)
        except TelegramError as e:
            logger.error(f"Error sending proposal alert for {self.context.name} #{proposal.id}: {e}")
            await self.send_error_alert(f"Sending Proposal Alert: {self.context.name} Proposal {proposal.id}", e)
            return MESSAGE_ID_SEND_FAILED
        logger.info(f"Message sent for {self.context.name} Proposal {proposal.id}")
        return message_id

    async def send_reminder(self, proposal: Proposal, message_id: int) -> Optional[int]:
        text = format_reminder(self.context.name, proposal.id, self.tag_in_reply)
        try:
            sent = await self.transport.send_message(self.context.chat_id, text, reply_to=message_id)
        except TelegramError as e:
            logger.error(f"Error sending reminder for {self.context.name} #{proposal.id}: {e}")
            await self.send_error_alert("Sending Reminder", e)
            return None
        logger.info(f"Reminder sent for {self.context.name} Proposal {proposal.id}")
        return sent

    async def send_error_alert(self, context: str, error: Exception):
        try:
            await self.transport.send_message(self.context.chat_id, format_error_alert(context, str(error)))
        except TelegramError as e:
            logger.error(f"Failed to send error alert to {self.context.chat_id}: {e}")
