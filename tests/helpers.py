"""
Fakes and builders shared by the Gov Voter tests.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from telegram.error import NetworkError

from bots.gov_voter.config import ExplorerConfig, GovVoterConfig, NetworkConfig
from bots.gov_voter.errors import TransientNetworkError
from bots.gov_voter.signer import BroadcastResult

T0 = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)

SETTING_ENV_VARS = (
    "TELEGRAM_BOT_TOKEN", "TELEGRAM_ADMIN_IDS", "TAG_IN_REPLY", "VOTE_METADATA",
    "MONITORING_INTERVAL", "QUERY_TIMEOUT", "SCHEMA_PROBE_TIMEOUT", "BROADCAST_TIMEOUT",
    "MAX_RETRIES", "GAS_MULTIPLIER", "LOG_LEVEL", "GOV_VOTER_LOG_DIR", "GOV_VOTER_HOME",
)


# === FAKES ===

@dataclass
class SentMessage:
    chat_id: Any
    text: str
    keyboard: Any = None
    reply_to: Optional[int] = None
    message_id: int = 0


class FakeTransport:
    """Records chat traffic. ``fail_sends`` makes the next N sends raise."""

    def __init__(self, first_message_id: int = 100):
        self.sent: List[SentMessage] = []
        self.controls: List[Tuple[Any, int, Any]] = []
        self.fail_sends = 0
        self._next_id = first_message_id

    async def send_message(self, chat_id, text, keyboard=None, reply_to=None) -> int:
        if self.fail_sends:
            self.fail_sends -= 1
            raise NetworkError("telegram unreachable")
        self._next_id += 1
        self.sent.append(SentMessage(chat_id, text, keyboard, reply_to, self._next_id))
        return self._next_id

    async def set_controls(self, chat_id, message_id, keyboard):
        self.controls.append((chat_id, message_id, keyboard))


class FakeSigningClient:
    """Stands in for CosmpySigningClient."""

    def __init__(self, gas_used: int = 100000, result: Optional[BroadcastResult] = None):
        self.gas_used = gas_used
        self.result = result or BroadcastResult(code=0, tx_hash="ABC123", height=10)
        self.connected = False
        self.simulated: List[list] = []
        self.broadcasts: List[tuple] = []

    def connect(self):
        self.connected = True

    def address(self) -> str:
        return "cosmos1grantee"

    def simulate(self, messages) -> int:
        self.simulated.append(messages)
        return self.gas_used

    def sign_and_broadcast(self, messages, fee, memo=""):
        self.broadcasts.append((messages, fee, memo))
        return self.result


class RestStub:
    """
    Replacement for ProposalQueryClient._get.

    ``routes`` maps a URL to a response or a list of responses consumed in
    order (the last one repeats). A response is ``(status, json)`` or an
    exception instance to raise.
    """

    def __init__(self, routes: Optional[Dict[str, Any]] = None):
        self.routes: Dict[str, Any] = dict(routes or {})
        self.calls: List[Tuple[str, Optional[dict]]] = []

    async def __call__(self, url, params=None, timeout=None):
        self.calls.append((url, dict(params) if params else None))
        response = self.routes.get(url, (404, {"code": 5, "message": "not found"}))
        if isinstance(response, list):
            response = response.pop(0) if len(response) > 1 else response[0]
        if isinstance(response, BaseException):
            raise response
        return response

    def urls(self) -> List[str]:
        return [url for url, _ in self.calls]


def transient(message: str = "connection reset") -> TransientNetworkError:
    return TransientNetworkError(message)


def make_network(name: str = "X", chain_id: str = "X", **overrides) -> NetworkConfig:
    values = dict(
        name=name,
        chain_id=chain_id,
        api="https://api.example.org",
        rpc="",
        granter="cosmos1granter",
        denom="uatom",
        decimals=6,
        prefix="cosmos",
        telegram_label="proposal",
        explorer=ExplorerConfig(
            proposal="https://explorer.example.org/proposals/",
            tx="https://explorer.example.org/txs/",
        ),
    )
    values.update(overrides)
    return NetworkConfig(**values)


def make_config(home_dir: Path, networks: Optional[List[NetworkConfig]] = None, **overrides) -> GovVoterConfig:
    values = dict(
        home_dir=home_dir,
        networks=networks if networks is not None else [make_network()],
        telegram_chats={"proposal": -100123},
        bot_token="123456:TEST",
    )
    values.update(overrides)
    return GovVoterConfig(**values)


def v1_proposal(proposal_id: str = "42", title: str = "Upgrade", start: datetime = T0, days: int = 7) -> dict:
    return {
        "id": proposal_id,
        "title": title,
        "status": "PROPOSAL_STATUS_VOTING_PERIOD",
        "voting_start_time": start.strftime("%Y-%m-%dT%H:%M:%S.123456789Z"),
        "voting_end_time": (start + timedelta(days=days)).strftime("%Y-%m-%dT%H:%M:%SZ"),
    }


def v1beta1_proposal(proposal_id: str = "7", title: str = "Community spend", start: datetime = T0, days: int = 7) -> dict:
    return {
        "proposal_id": proposal_id,
        "content": {"@type": "/cosmos.gov.v1beta1.TextProposal", "title": title},
        "status": "PROPOSAL_STATUS_VOTING_PERIOD",
        "voting_start_time": start.strftime("%Y-%m-%dT%H:%M:%SZ"),
        "voting_end_time": (start + timedelta(days=days)).strftime("%Y-%m-%dT%H:%M:%SZ"),
    }


class FakeClock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class RecordingSleep:
    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float):
        self.delays.append(delay)
