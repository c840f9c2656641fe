"""
Vote Submitter - authz-wrapped governance votes signed with cosmpy.

The granter delegated MsgVote to the bot wallet (the grantee). A vote is an
inner MsgVote with voter = granter, wrapped in a MsgExec signed and paid for
by the grantee. The transaction is assembled by hand so the configured
vote/exec type URLs are used verbatim.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import timedelta
from decimal import ROUND_CEILING, ROUND_HALF_UP, Decimal
from pathlib import Path
from typing import List, Optional

from cosmpy.aerial.client import LedgerClient
from cosmpy.aerial.client import NetworkConfig as CosmpyNetworkConfig
from cosmpy.aerial.exceptions import QueryTimeoutError
from cosmpy.aerial.wallet import LocalWallet
from cosmpy.protos.cosmos.authz.v1beta1.tx_pb2 import MsgExec
from cosmpy.protos.cosmos.base.v1beta1.coin_pb2 import Coin
from cosmpy.protos.cosmos.crypto.secp256k1.keys_pb2 import PubKey
from cosmpy.protos.cosmos.gov.v1 import gov_pb2
from cosmpy.protos.cosmos.gov.v1.tx_pb2 import MsgVote as MsgVoteV1
from cosmpy.protos.cosmos.gov.v1beta1.tx_pb2 import MsgVote as MsgVoteV1Beta1
from cosmpy.protos.cosmos.tx.signing.v1beta1.signing_pb2 import SignMode
from cosmpy.protos.cosmos.tx.v1beta1.service_pb2 import BroadcastMode, BroadcastTxRequest, SimulateRequest
from cosmpy.protos.cosmos.tx.v1beta1.tx_pb2 import AuthInfo, Fee as FeeProto, ModeInfo, SignDoc, SignerInfo, Tx, TxBody
from google.protobuf.any_pb2 import Any as AnyProto

from bots.gov_voter.config import VOTE_TYPE_V1, NetworkConfig
from bots.gov_voter.errors import SignerInitError, SubmissionFailure

logger = logging.getLogger(__name__)

# Minimum gas price in whole tokens; scaled by 10**decimals into the base denom
MIN_GAS_PRICE = Decimal("0.000000025")
DEFAULT_GAS_MULTIPLIER = Decimal("1.5")
DEFAULT_HD_PATH = "m/44'/118'/0'/0/0"

MAX_UINT64 = 2 ** 64 - 1

VOTE_OPTIONS = {
    "yes": gov_pb2.VOTE_OPTION_YES,
    "no": gov_pb2.VOTE_OPTION_NO,
    "veto": gov_pb2.VOTE_OPTION_NO_WITH_VETO,
    "abstain": gov_pb2.VOTE_OPTION_ABSTAIN,
}


@dataclass
class EncodedMessage:
    """A transaction message: type URL plus serialized protobuf."""
    type_url: str
    value: bytes

    def to_any(self) -> AnyProto:
        return AnyProto(type_url=self.type_url, value=self.value)


@dataclass
class Fee:
    amount: int
    denom: str
    gas_limit: int

    def __str__(self) -> str:
        return f"{self.amount}{self.denom} (gas {self.gas_limit})"


@dataclass
class BroadcastResult:
    code: int
    tx_hash: str
    raw_log: str = ""
    height: int = 0

    @property
    def success(self) -> bool:
        return self.code == 0


@dataclass
class VoteResult:
    success: bool
    tx_hash: str = ""
    error: str = ""


def parse_proposal_id(proposal_id) -> int:
    """Parse a proposal id as an unsigned 64-bit integer."""
    text = str(proposal_id).strip()
    if not text.isdigit():
        raise ValueError(f"Invalid proposal id: {proposal_id!r}")
    value = int(text)
    if value > MAX_UINT64:
        raise ValueError(f"Proposal id out of range: {proposal_id!r}")
    return value


def gas_price_for(decimals: int) -> Decimal:
    if decimals < 0:
        raise ValueError("Invalid decimals: must be a non-negative integer")
    return MIN_GAS_PRICE * (Decimal(10) ** decimals)


def compute_fee(gas_used: int, denom: str, decimals: int, multiplier: Decimal = DEFAULT_GAS_MULTIPLIER) -> Fee:
    """
    Fee for a simulated gas amount.

    gas_limit = gas_used x multiplier (half-up); amount = gas_limit x gas price,
    rounded up to a whole base-denom unit.
    """
    if not denom or not denom.strip():
        raise ValueError("Invalid denom: denom cannot be empty")
    gas_limit = int((Decimal(gas_used) * Decimal(multiplier)).quantize(Decimal(1), rounding=ROUND_HALF_UP))
    amount = int((Decimal(gas_limit) * gas_price_for(decimals)).to_integral_value(rounding=ROUND_CEILING))
    return Fee(amount=amount, denom=denom, gas_limit=gas_limit)


# === WALLET ===

def load_wallet(keys_dir: Path, wallet_name: str, prefix: str, hd_path: str = DEFAULT_HD_PATH) -> LocalWallet:
    """
    Load ``keys/<wallet>.json`` (``{"name": ..., "mnemonics": ...}``) as a cosmpy wallet.

    Raises:
        SignerInitError: missing/unreadable key file or invalid mnemonic.
    """
    key_file = Path(keys_dir) / f"{wallet_name}.json"
    if not key_file.exists():
        raise SignerInitError(f"Key file not found: {key_file}")

    try:
        with open(key_file, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise SignerInitError(f"Cannot read key file {key_file}: {e}") from e

    mnemonic = str((data or {}).get("mnemonics") or (data or {}).get("mnemonic") or "").strip()
    if not mnemonic:
        raise SignerInitError(f"Key file {key_file} has no mnemonics")

    if hd_path and hd_path != DEFAULT_HD_PATH:
        logger.warning(f"Wallet {wallet_name}: hd_path {hd_path} is not supported, deriving with {DEFAULT_HD_PATH}")

    try:
        return LocalWallet.from_mnemonic(mnemonic, prefix=prefix)
    except Exception as e:
        raise SignerInitError(f"Failed to convert mnemonics to key for wallet {wallet_name}: {e}") from e


# === SIGNING CLIENT ===

class CosmpySigningClient:
    """
    Blocking signing client for one chain endpoint and one wallet.

    Methods are synchronous; VoteSubmitter runs them in a worker thread.
    """

    def __init__(self, chain_id: str, url: str, denom: str, wallet: LocalWallet, broadcast_timeout: float = 60.0):
        self.chain_id = chain_id
        self.url = url
        self.denom = denom
        self.wallet = wallet
        self.broadcast_timeout = broadcast_timeout
        self._client: Optional[LedgerClient] = None

    def connect(self) -> None:
        try:
            self._client = LedgerClient(
                CosmpyNetworkConfig(
                    chain_id=self.chain_id,
                    url=self.url,
                    fee_minimum_gas_price=0,
                    fee_denomination=self.denom,
                    staking_denomination=self.denom,
                )
            )
            height = self._client.query_height()
        except Exception as e:
            self._client = None
            raise SignerInitError(f"Failed to connect signer to {self.url}: {e}") from e
        logger.info(f"Signer connected to {self.url} (chain {self.chain_id}, height {height}) as {self.address()}")

    @property
    def client(self) -> LedgerClient:
        if self._client is None:
            raise SignerInitError("Signing client not connected")
        return self._client

    def address(self) -> str:
        return str(self.wallet.address())

    def _build_tx(self, messages: List[EncodedMessage], fee: Fee, memo: str, sign: bool) -> bytes:
        account = self.client.query_account(self.wallet.address())

        body = TxBody(messages=[m.to_any() for m in messages], memo=memo or "")
        signer_info = SignerInfo(
            public_key=AnyProto(
                type_url="/cosmos.crypto.secp256k1.PubKey",
                value=PubKey(key=self.wallet.public_key().public_key_bytes).SerializeToString(),
            ),
            mode_info=ModeInfo(single=ModeInfo.Single(mode=SignMode.SIGN_MODE_DIRECT)),
            sequence=account.sequence,
        )
        auth_info = AuthInfo(
            signer_infos=[signer_info],
            fee=FeeProto(
                amount=[Coin(denom=fee.denom, amount=str(fee.amount))] if fee.amount else [],
                gas_limit=fee.gas_limit,
            ),
        )

        body_bytes = body.SerializeToString()
        auth_info_bytes = auth_info.SerializeToString()
        signature = b""
        if sign:
            sign_doc = SignDoc(
                body_bytes=body_bytes,
                auth_info_bytes=auth_info_bytes,
                chain_id=self.chain_id,
                account_number=account.number,
            )
            signature = self.wallet.signer().sign(sign_doc.SerializeToString(), deterministic=True, canonicalise=True)

        tx = Tx(body=body, auth_info=auth_info, signatures=[signature])
        return tx.SerializeToString()

    def simulate(self, messages: List[EncodedMessage]) -> int:
        """Gas used by the messages, from an unsigned simulation."""
        tx_bytes = self._build_tx(messages, Fee(amount=0, denom=self.denom, gas_limit=0), "", sign=False)
        response = self.client.txs.Simulate(SimulateRequest(tx_bytes=tx_bytes))
        return int(response.gas_info.gas_used)

    def sign_and_broadcast(self, messages: List[EncodedMessage], fee: Fee, memo: str = "") -> BroadcastResult:
        """
        Sign, broadcast (sync mode) and wait for inclusion.

        Raises:
            SubmissionFailure: the inclusion wait timed out.
        """
        tx_bytes = self._build_tx(messages, fee, memo, sign=True)
        response = self.client.txs.BroadcastTx(
            BroadcastTxRequest(tx_bytes=tx_bytes, mode=BroadcastMode.BROADCAST_MODE_SYNC)
        )
        checked = response.tx_response
        if checked.code != 0:
            return BroadcastResult(code=checked.code, tx_hash=checked.txhash, raw_log=checked.raw_log)

        try:
            included = self.client.wait_for_query_tx(
                checked.txhash, timeout=timedelta(seconds=self.broadcast_timeout)
            )
        except QueryTimeoutError as e:
            raise SubmissionFailure(
                f"Transaction {checked.txhash} not included within {self.broadcast_timeout}s",
                tx_hash=checked.txhash,
            ) from e
        return BroadcastResult(
            code=included.code, tx_hash=included.hash, raw_log=included.raw_log or "", height=included.height
        )


# === VOTE SUBMITTER ===

class VoteSubmitter:
    """Builds, prices and broadcasts authz votes for one chain."""

    def __init__(
        self,
        network: NetworkConfig,
        signing_client,
        gas_multiplier: Decimal = DEFAULT_GAS_MULTIPLIER,
        vote_metadata: str = "",
    ):
        self.network = network
        self.signing_client = signing_client
        self.gas_multiplier = Decimal(gas_multiplier)
        self.vote_metadata = vote_metadata
        self._grantee: Optional[str] = None

    async def connect(self) -> None:
        """Connect the signing client once. Raises SignerInitError."""
        try:
            await asyncio.to_thread(self.signing_client.connect)
            self._grantee = self.signing_client.address()
        except SignerInitError:
            raise
        except Exception as e:
            raise SignerInitError(f"Signer bring-up failed for {self.network.name}: {e}") from e

    @property
    def grantee(self) -> str:
        if self._grantee is None:
            self._grantee = self.signing_client.address()
        return self._grantee

    def build_messages(self, proposal_id, option: str) -> List[EncodedMessage]:
        """
        MsgExec(grantee=self, msgs=[MsgVote(voter=granter)]) using the chain's type pair.

        Raises:
            ValueError: bad proposal id or vote option.
        """
        if option not in VOTE_OPTIONS:
            raise ValueError(f"Invalid vote type: {option}")
        pid = parse_proposal_id(proposal_id)

        if self.network.vote_type == VOTE_TYPE_V1:
            vote = MsgVoteV1(
                proposal_id=pid, voter=self.network.granter,
                option=VOTE_OPTIONS[option], metadata=self.vote_metadata,
            )
        else:
            vote = MsgVoteV1Beta1(proposal_id=pid, voter=self.network.granter, option=VOTE_OPTIONS[option])

        exec_msg = MsgExec(
            grantee=self.grantee,
            msgs=[AnyProto(type_url=self.network.vote_type, value=vote.SerializeToString())],
        )
        return [EncodedMessage(type_url=self.network.exec_type, value=exec_msg.SerializeToString())]

    async def estimate_fee(self, messages: List[EncodedMessage]) -> Fee:
        gas_used = await asyncio.to_thread(self.signing_client.simulate, messages)
        return compute_fee(gas_used, self.network.denom, self.network.decimals, self.gas_multiplier)

    async def submit_vote(self, proposal_id, option: str) -> VoteResult:
        """Cast the granter's vote. Failures come back as VoteResult(success=False)."""
        try:
            messages = self.build_messages(proposal_id, option)
            fee = await self.estimate_fee(messages)
            logger.info(
                f"Voting on {self.network.chain_id} proposal {proposal_id}: "
                f"vote={option} fee={fee} grantee={self.grantee}"
            )
            result = await asyncio.to_thread(self.signing_client.sign_and_broadcast, messages, fee, "")
        except ValueError as e:
            logger.warning(f"Rejected vote on proposal {proposal_id}: {e}")
            return VoteResult(success=False, error=str(e))
        except SubmissionFailure as e:
            logger.error(f"Vote on proposal {proposal_id} failed: {e}")
            return VoteResult(success=False, tx_hash=e.tx_hash, error=str(e))
        except Exception as e:
            logger.error(f"Error voting on proposal {proposal_id}: {e}", exc_info=True)
            return VoteResult(success=False, error=str(e) or type(e).__name__)

        if not result.success:
            error = f"Transaction failed with code {result.code}"
            if result.raw_log:
                error = f"{error}: {result.raw_log}"
            logger.error(f"Vote on proposal {proposal_id} rejected: {error}")
            return VoteResult(success=False, tx_hash=result.tx_hash, error=error)

        logger.info(f"Vote on {self.network.chain_id} proposal {proposal_id} included: {result.tx_hash}")
        return VoteResult(success=True, tx_hash=result.tx_hash)
