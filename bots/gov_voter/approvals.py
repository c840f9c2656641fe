"""
Vote approvals - route an inline-button press to the right chain's submitter.

Button payload is ``proposal_id:chain_name:vote_option``. The handler is
transport-agnostic: bot.py turns a Telegram callback query into an
ApprovalEvent and answers the query with ApprovalOutcome.answer.
"""

import logging
import sqlite3
from dataclasses import dataclass
from typing import Dict, Iterable, Optional, Set, Tuple, Union

from telegram.error import TelegramError

from bots.gov_voter.chain import ChainContext
from bots.gov_voter.database import VOTE_OPTIONS, ProposalStore, make_uid
from bots.gov_voter.errors import StoreIntegrityError
from bots.gov_voter.messages import build_vote_keyboard, format_error_alert, format_vote_confirmation
from bots.gov_voter.utils import sanitize_actor

logger = logging.getLogger(__name__)


@dataclass
class ApprovalEvent:
    """An operator pressed a vote button."""
    data: str
    user_id: int
    username: str
    chat_id: Union[int, str]
    message_id: int


@dataclass
class ApprovalOutcome:
    accepted: bool
    answer: str
    tx_hash: str = ""


def parse_callback_data(data: str) -> Tuple[str, str, str]:
    """
    Split ``proposal_id:chain_name:vote_option``.

    Raises:
        ValueError: wrong shape, non-numeric proposal id or unknown option.
    """
    parts = (data or "").split(":")
    if len(parts) != 3:
        raise ValueError(f"Incomplete vote data: {data!r}")
    proposal_id, chain_name, option = (p.strip() for p in parts)
    if not proposal_id.isdigit() or not chain_name:
        raise ValueError(f"Incomplete vote data: {data!r}")
    if option not in VOTE_OPTIONS:
        raise ValueError(f"Invalid vote option: {option!r}")
    return proposal_id, chain_name, option


class ApprovalHandler:
    """
    Turns vote-button presses into authz votes.

    At most one submission per proposal runs at a time: the uid is claimed
    before the first await and released when the submission settles.
    """

    def __init__(
        self,
        contexts: Iterable[ChainContext],
        store: ProposalStore,
        transport,
        admin_ids: Optional[Set[int]] = None,
    ):
        self.contexts: Dict[str, ChainContext] = {c.name: c for c in contexts}
        self.store = store
        self.transport = transport
        self.admin_ids = set(admin_ids or ())
        self._in_flight: Set[str] = set()

    def is_admin(self, user_id: int) -> bool:
        return user_id in self.admin_ids if self.admin_ids else True

    async def handle(self, event: ApprovalEvent) -> ApprovalOutcome:
        if not self.is_admin(event.user_id):
            logger.warning(f"Rejected vote from non-admin user {event.user_id}")
            return ApprovalOutcome(False, "Admin only")

        try:
            proposal_id, chain_name, option = parse_callback_data(event.data)
        except ValueError as e:
            logger.warning(f"Ignoring vote callback: {e}")
            return ApprovalOutcome(False, "Invalid vote data")

        actor = sanitize_actor(event.username) or str(event.user_id)
        logger.info(
            f"Vote received from telegram: proposal={proposal_id} chain={chain_name} vote={option} user={actor}"
        )

        context = self.contexts.get(chain_name)
        if context is None:
            logger.warning(f"No chain context for {chain_name}")
            return ApprovalOutcome(False, f"Unknown chain: {chain_name}")

        uid = make_uid(context.chain_id, proposal_id)
        if uid in self._in_flight:
            return ApprovalOutcome(False, "A vote on this proposal is already being submitted")
        if self.store.lookup(context.chain_id, proposal_id).voted:
            return ApprovalOutcome(False, "Already voted on this proposal")

        self._in_flight.add(uid)
        try:
            return await self._submit(context, event, proposal_id, option, actor)
        finally:
            self._in_flight.discard(uid)

    async def _submit(
        self, context: ChainContext, event: ApprovalEvent, proposal_id: str, option: str, actor: str
    ) -> ApprovalOutcome:
        await self._set_controls(event, None)

        result = await context.submitter.submit_vote(proposal_id, option)
        if not result.success:
            logger.error(f"Vote on {context.name} proposal {proposal_id} failed: {result.error}")
            await self._set_controls(event, build_vote_keyboard(proposal_id, context.name))
            await self._send(
                context.chat_id,
                format_error_alert(f"Vote Submission: {context.name} Proposal {proposal_id}", result.error),
            )
            return ApprovalOutcome(False, "Error processing vote. Please try again.", result.tx_hash)

        confirmation = format_vote_confirmation(
            context.name, proposal_id, actor, option, context.tx_explorer, result.tx_hash
        )
        try:
            self.store.record_vote(context.chain_id, proposal_id, option, actor)
        except StoreIntegrityError:
            # the vote is on chain; confirm it before the bot goes down
            await self._send(event.chat_id, confirmation, reply_to=event.message_id)
            raise
        except sqlite3.Error as e:
            logger.error(f"Vote on {context.name} proposal {proposal_id} cast but not saved: {e}", exc_info=True)
            await self._send(event.chat_id, confirmation, reply_to=event.message_id)
            await self._send(
                context.chat_id,
                format_error_alert(
                    f"Saving Vote: {context.name} Proposal {proposal_id}",
                    f"Vote cast (tx {result.tx_hash}) but state not saved: {e}",
                ),
            )
            return ApprovalOutcome(True, f"Vote cast (tx {result.tx_hash}), state not saved", result.tx_hash)

        await self._send(event.chat_id, confirmation, reply_to=event.message_id)
        return ApprovalOutcome(True, f"Voted {option} on proposal {proposal_id}", result.tx_hash)

    async def _set_controls(self, event: ApprovalEvent, keyboard):
        try:
            await self.transport.set_controls(event.chat_id, event.message_id, keyboard)
        except TelegramError as e:
            logger.warning(f"Could not update buttons on message {event.message_id}: {e}")

    async def _send(self, chat_id, text: str, reply_to: Optional[int] = None):
        try:
            await self.transport.send_message(chat_id, text, reply_to=reply_to)
        except TelegramError as e:
            logger.error(f"Failed to send message to {chat_id}: {e}")
