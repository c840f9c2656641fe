"""
Chat message rendering for the Gov Voter bot (Telegram HTML parse mode).
"""

import html
from typing import Dict, Iterable, List, Optional

from telegram import InlineKeyboardButton, InlineKeyboardMarkup

from bots.gov_voter.query import Proposal
from bots.gov_voter.utils import capitalize, format_utc, join_url, utc_now

VOTE_BUTTONS = (
    ("Yes", "yes"),
    ("No", "no"),
    ("No with veto", "veto"),
    ("Abstain", "abstain"),
)


def callback_data(proposal_id: str, chain_name: str, option: str) -> str:
    """Inline button payload: ``proposal_id:chain_name:vote_option``."""
    return f"{proposal_id}:{chain_name}:{option}"


def build_vote_keyboard(proposal_id: str, chain_name: str) -> InlineKeyboardMarkup:
    """Two rows: Yes/No, then No with veto/Abstain."""
    buttons = [
        InlineKeyboardButton(label, callback_data=callback_data(proposal_id, chain_name, option))
        for label, option in VOTE_BUTTONS
    ]
    return InlineKeyboardMarkup([buttons[:2], buttons[2:]])


def _link(base: str, path: str, label: str) -> str:
    if not base:
        return ""
    return f'<a href="{html.escape(join_url(base, path), quote=True)}">{label}</a>'


def format_proposal_alert(proposal: Proposal, chain_id: str, proposal_explorer: str = "", voted: bool = False) -> str:
    lines = [
        f"🗳 <b>New {html.escape(capitalize(chain_id))} Governance Proposal</b>",
        "",
        f"<b>ID</b>: {html.escape(proposal.id)}",
        f"<b>Title</b>: {html.escape(proposal.title)}",
        "",
        "⏰ <b>Voting Period</b>",
        f"<b>Start</b>: {format_utc(proposal.voting_start_time)}",
        f"<b>End</b>: {format_utc(proposal.voting_end_time)}",
    ]
    link = _link(proposal_explorer, proposal.id, "Proposal Details")
    if link:
        lines += ["", link]
    if voted:
        lines += ["", "<b>Voted</b>: Yes"]
    return "\n".join(lines)


def format_reminder(chain_name: str, proposal_id: str, tag_in_reply: str = "") -> str:
    text = f"Please vote on the {html.escape(capitalize(chain_name))} proposal number: {html.escape(proposal_id)}"
    if tag_in_reply.strip():
        text += "\n" + html.escape(tag_in_reply.strip())
    return text


def format_vote_confirmation(chain_name: str, proposal_id: str, voted_by: str, option: str, tx_explorer: str, tx_hash: str) -> str:
    lines = [
        f"✅ <b>Vote submitted for {html.escape(capitalize(chain_name))} Proposal {html.escape(proposal_id)}</b>",
        "",
        f"<b>Voted by</b>: @{html.escape(voted_by)}",
        f"<b>Voted</b>: {html.escape(option)}",
    ]
    link = _link(tx_explorer, tx_hash, "Transaction Details")
    lines += ["", link or f"<code>{html.escape(tx_hash)}</code>"]
    return "\n".join(lines)


def format_error_alert(context: str, error: str) -> str:
    return "\n".join([
        "🚨 <b>Bot Error Alert</b>",
        "",
        f"<b>Context</b>: {html.escape(context)}",
        f"<b>Error</b>: {html.escape(str(error))}",
        f"<b>Timestamp</b>: {utc_now().isoformat(timespec='seconds')}",
        "",
        "Please check the logs for more details.",
    ])


def format_startup(
    chain_names: Iterable[str],
    offline: Optional[List[str]] = None,
    awaiting: Optional[Dict[str, int]] = None,
) -> str:
    """Startup notice. ``awaiting`` maps chain name to open proposals still waiting for a vote."""
    awaiting = awaiting or {}
    names = ", ".join(
        html.escape(capitalize(n)) + (f" ({awaiting[n]} awaiting vote)" if awaiting.get(n) else "")
        for n in chain_names
    )
    text = f"🤖 <b>Gov Voter online</b>\n\nMonitoring: {names or 'nothing'}"
    if offline:
        text += "\nOffline: " + ", ".join(html.escape(n) for n in offline)
    return text
