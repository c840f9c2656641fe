"""
Gov Voter Bot - Telegram front end and process orchestration.

Brings every configured chain online, runs one ChainMonitor task per chain
and handles vote-button callbacks through the ApprovalHandler.
"""

import asyncio
import logging
from collections import defaultdict
from typing import Dict, List, Optional

from telegram import Bot, InlineKeyboardMarkup, LinkPreviewOptions, ReplyParameters, Update
from telegram.constants import ParseMode
from telegram.error import TelegramError
from telegram.ext import Application, CallbackQueryHandler, ContextTypes

from bots.gov_voter.approvals import ApprovalEvent, ApprovalHandler, ApprovalOutcome
from bots.gov_voter.chain import ChainContext, SigningClientFactory, bring_up_chains, cosmpy_signing_client
from bots.gov_voter.config import GovVoterConfig
from bots.gov_voter.database import ProposalStore
from bots.gov_voter.errors import ConfigError, StoreIntegrityError
from bots.gov_voter.messages import format_startup
from bots.gov_voter.monitor import ChainMonitor
from bots.gov_voter.utils import utc_now

logger = logging.getLogger(__name__)

VOTE_CALLBACK_PATTERN = r"^\d+:[^:]+:(yes|no|veto|abstain)$"


class TelegramTransport:
    """Chat transport over python-telegram-bot. Raises TelegramError on failure."""

    def __init__(self, bot: Bot):
        self.bot = bot

    async def send_message(
        self,
        chat_id,
        text: str,
        keyboard: Optional[InlineKeyboardMarkup] = None,
        reply_to: Optional[int] = None,
    ) -> int:
        message = await self.bot.send_message(
            chat_id=chat_id,
            text=text,
            parse_mode=ParseMode.HTML,
            reply_markup=keyboard,
            reply_parameters=ReplyParameters(message_id=reply_to, allow_sending_without_reply=True) if reply_to else None,
            link_preview_options=LinkPreviewOptions(is_disabled=True),
        )
        return message.message_id

    async def set_controls(self, chat_id, message_id: int, keyboard: Optional[InlineKeyboardMarkup]):
        """Replace the inline keyboard on a message; None removes it."""
        await self.bot.edit_message_reply_markup(chat_id=chat_id, message_id=message_id, reply_markup=keyboard)


class GovVoterBot:
    """
    Governance vote bot.

    Features:
    - One polling task per chain, independent failures
    - Alerts with Yes/No/No with veto/Abstain buttons
    - Reminders every 6 hours until voted or voting ends
    - authz votes on button press, admin allowlist optional
    """

    def __init__(
        self,
        config: GovVoterConfig,
        store: Optional[ProposalStore] = None,
        signing_client_factory: SigningClientFactory = cosmpy_signing_client,
        application: Optional[Application] = None,
    ):
        self.config = config
        self.store = store
        self.signing_client_factory = signing_client_factory
        self.app = application
        self.transport: Optional[TelegramTransport] = None
        self.contexts: List[ChainContext] = []
        self.monitors: List[ChainMonitor] = []
        self.approvals: Optional[ApprovalHandler] = None
        self._tasks: List[asyncio.Task] = []
        self._polling = False
        self._fatal_error: Optional[BaseException] = None

    async def start(self):
        """
        Bring chains online and start Telegram polling plus monitor tasks.

        Raises:
            ConfigError: missing bot token or no chain came online.
        """
        if not self.config.bot_token:
            raise ConfigError("TELEGRAM_BOT_TOKEN is not set")
        logger.info(f"Starting Gov Voter: {self.config.summary()}")

        if self.store is None:
            self.store = ProposalStore(self.config.db_path)

        self.contexts, failures = await bring_up_chains(self.config, self.signing_client_factory)
        if not self.contexts:
            raise ConfigError(f"No chain came online ({len(failures)} failed)")

        if self.app is None:
            self.app = Application.builder().token(self.config.bot_token).concurrent_updates(True).build()
        self.transport = TelegramTransport(self.app.bot)
        self.approvals = ApprovalHandler(self.contexts, self.store, self.transport, self.config.admin_ids)

        self.app.add_handler(CallbackQueryHandler(self._handle_vote_callback, pattern=VOTE_CALLBACK_PATTERN))
        self.app.add_handler(CallbackQueryHandler(self._handle_unknown_callback))

        await self.app.initialize()
        await self.app.start()
        if self.app.updater:
            await self.app.updater.start_polling(allowed_updates=["callback_query"])
            self._polling = True
            logger.info("Gov Voter bot started (polling enabled)")

        await self._send_startup_messages(list(failures))

        self.monitors = [
            ChainMonitor(
                context,
                self.store,
                self.transport,
                interval=self.config.monitoring_interval_seconds,
                tag_in_reply=self.config.tag_in_reply,
            )
            for context in self.contexts
        ]
        self._tasks = [
            asyncio.create_task(monitor.run(), name=f"monitor:{monitor.context.name}")
            for monitor in self.monitors
        ]

    async def run(self):
        """
        Start, then wait for the monitors.

        A crashed monitor or an abort() from the approval path (StoreIntegrityError)
        stops the bot and is re-raised here.
        """
        try:
            await self.start()
            done, _ = await asyncio.wait(self._tasks, return_when=asyncio.FIRST_EXCEPTION)
            for task in done:
                if not task.cancelled() and task.exception() is not None:
                    logger.error(f"Monitor task {task.get_name()} crashed: {task.exception()}")
                    raise task.exception()
            if self._fatal_error is not None:
                raise self._fatal_error
        finally:
            await self.stop()

    def request_stop(self):
        """Ask every monitor to finish after its current tick."""
        for monitor in self.monitors:
            monitor.stop()

    def abort(self, error: BaseException):
        """Stop every monitor and make run() raise ``error``."""
        if self._fatal_error is None:
            self._fatal_error = error
        self.request_stop()

    async def stop(self):
        self.request_stop()
        for task in self._tasks:
            if not task.done():
                task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

        if self.app:
            try:
                if self._polling and self.app.updater:
                    await self.app.updater.stop()
                if self.app.running:
                    await self.app.stop()
                await self.app.shutdown()
            except TelegramError as e:
                logger.warning(f"Error shutting down Telegram application: {e}")
            self._polling = False

        for context in self.contexts:
            await context.close()
        logger.info("Gov Voter bot stopped")

    def awaiting_votes(self) -> Dict[str, int]:
        """Open proposals per chain that were alerted in an earlier run and are still unvoted."""
        now = utc_now()
        return {
            context.name: sum(
                1 for record in self.store.list_records(chain_id=context.chain_id, voted=False)
                if record.voting_end_time > now
            )
            for context in self.contexts
        }

    async def _send_startup_messages(self, offline: List[str]):
        awaiting = self.awaiting_votes()
        chats: Dict[object, List[str]] = defaultdict(list)
        for context in self.contexts:
            chats[context.chat_id].append(context.name)
        for chat_id, names in chats.items():
            try:
                await self.transport.send_message(chat_id, format_startup(names, offline, awaiting))
            except TelegramError as e:
                logger.warning(f"Could not send startup message to {chat_id}: {e}")

    # === CALLBACKS ===

    async def _handle_vote_callback(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        query = update.callback_query
        if query is None:
            return

        user = query.from_user
        if query.message is None or user is None:
            outcome = ApprovalOutcome(False, "Incomplete vote data")
        else:
            event = ApprovalEvent(
                data=query.data or "",
                user_id=user.id,
                username=user.username or user.full_name or "",
                chat_id=query.message.chat.id,
                message_id=query.message.message_id,
            )
            try:
                outcome = await self.approvals.handle(event)
            except StoreIntegrityError as e:
                logger.critical(f"Proposal store failed while recording a vote: {e}", exc_info=True)
                outcome = ApprovalOutcome(False, "Vote cast, but the proposal store failed. The bot is stopping.")
                self.abort(e)
            except Exception as e:
                logger.error(f"Error handling vote: {e}", exc_info=True)
                outcome = ApprovalOutcome(False, "Error processing vote. Please try again.")

        try:
            await query.answer(outcome.answer[:200], show_alert=not outcome.accepted)
        except TelegramError as e:
            logger.warning(f"Could not answer callback query: {e}")

    async def _handle_unknown_callback(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        query = update.callback_query
        if query is None:
            return
        try:
            await query.answer("Invalid vote data", show_alert=True)
        except TelegramError as e:
            logger.warning(f"Could not answer callback query: {e}")
