"""
Chain Query Client - Cosmos governance REST queries for one chain.

Detects which governance schema (gov/v1 or gov/v1beta1) the endpoint serves,
lists proposals in voting period and checks whether the granter already
voted. All HTTP goes through ``ProposalQueryClient._get``.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Tuple

import aiohttp
from aiohttp import ClientTimeout

from bots.gov_voter.errors import SchemaUnavailable, TransientNetworkError, VoteNotFound
from bots.gov_voter.utils import RetryConfig, parse_chain_timestamp, retry_linear

logger = logging.getLogger(__name__)

VOTING_PERIOD = 2


class GovSchema(Enum):
    """Governance REST schema served by a chain."""
    V1 = "v1"
    V1BETA1 = "v1beta1"

    @property
    def proposals_path(self) -> str:
        return f"/cosmos/gov/{self.value}/proposals"

    @property
    def vote_type(self) -> str:
        return f"/cosmos.gov.{self.value}.MsgVote"


@dataclass
class Proposal:
    """A proposal in voting period, normalized across schemas."""
    id: str
    title: str
    voting_start_time: datetime
    voting_end_time: datetime


def _proposal_title(raw: Dict[str, Any], schema: GovSchema) -> str:
    if schema is GovSchema.V1BETA1:
        return ((raw.get("content") or {}).get("title") or "").strip()
    # gov/v1 before SDK 0.47 has no top-level title; fall back to the first legacy content
    title = (raw.get("title") or "").strip()
    if not title:
        for message in raw.get("messages") or []:
            content = message.get("content") if isinstance(message, dict) else None
            if isinstance(content, dict) and content.get("title"):
                title = str(content["title"]).strip()
                break
    return title


def parse_proposal(raw: Dict[str, Any], schema: GovSchema) -> Proposal:
    """
    Normalize one proposal object from either schema.

    Raises:
        ValueError: missing id or unparsable voting times.
    """
    proposal_id = raw.get("id") if schema is GovSchema.V1 else raw.get("proposal_id")
    if proposal_id in (None, ""):
        raise ValueError(f"proposal without id: {raw!r:.200}")
    return Proposal(
        id=str(proposal_id),
        title=_proposal_title(raw, schema) or f"Proposal #{proposal_id}",
        voting_start_time=parse_chain_timestamp(raw.get("voting_start_time") or ""),
        voting_end_time=parse_chain_timestamp(raw.get("voting_end_time") or ""),
    )


class ProposalQueryClient:
    """
    REST client for one chain's governance module.

    The schema is detected once with ``detect_schema()`` and pinned for the
    lifetime of the client.
    """

    def __init__(
        self,
        api_url: str,
        granter: str,
        query_timeout: float = 10.0,
        probe_timeout: float = 5.0,
        max_retries: int = 3,
        retry_base_delay: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if not api_url or not isinstance(api_url, str):
            raise ValueError("Invalid API URL provided")
        self.api_url = api_url.strip().rstrip("/")
        self.granter = granter
        self.query_timeout = query_timeout
        self.probe_timeout = probe_timeout
        self.retry_config = RetryConfig(max_attempts=max_retries, base_delay=retry_base_delay)
        self._sleep = sleep
        self._schema: Optional[GovSchema] = None
        self._session: Optional[aiohttp.ClientSession] = None

    @property
    def schema(self) -> GovSchema:
        if self._schema is None:
            raise RuntimeError("detect_schema() has not been called")
        return self._schema

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _get(self, url: str, params: Optional[Dict[str, Any]] = None, timeout: Optional[float] = None) -> Tuple[int, Any]:
        """
        GET a URL and return ``(status, decoded JSON or None)``.

        Raises:
            TransientNetworkError: timeouts and transport failures.
        """
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        try:
            async with self._session.get(
                url,
                params=params,
                timeout=ClientTimeout(total=timeout or self.query_timeout),
            ) as resp:
                try:
                    data = await resp.json(content_type=None)
                except ValueError:
                    data = None
                return resp.status, data
        except asyncio.TimeoutError:
            raise TransientNetworkError(f"Request timed out after {timeout or self.query_timeout}s: {url}")
        except aiohttp.ClientError as e:
            raise TransientNetworkError(f"No response received from {url}: {e}")

    # === SCHEMA DETECTION ===

    async def detect_schema(self) -> GovSchema:
        """Probe gov/v1 then gov/v1beta1; pin the first answering 200."""
        for schema in (GovSchema.V1, GovSchema.V1BETA1):
            url = f"{self.api_url}{schema.proposals_path}"
            try:
                status, _ = await self._get(url, {"proposal_status": VOTING_PERIOD}, timeout=self.probe_timeout)
            except TransientNetworkError as e:
                logger.warning(f"Error checking {schema.value} endpoint: {e}")
                continue
            if status == 200:
                self._schema = schema
                logger.info(f"Using cosmos/gov/{schema.value} endpoint with {self.api_url}")
                return schema
            logger.debug(f"{url} answered {status}")
        raise SchemaUnavailable(self.api_url)

    # === PROPOSALS ===

    async def iter_active_proposals(self) -> AsyncIterator[Proposal]:
        """
        Yield proposals in voting period, following ``pagination.next_key``.

        Raises:
            TransientNetworkError: transport failure or a non-200 answer. Not retried.
        """
        schema = self.schema
        url = f"{self.api_url}{schema.proposals_path}"
        params: Dict[str, Any] = {"proposal_status": VOTING_PERIOD}

        while True:
            status, data = await self._get(url, params)
            if status != 200:
                raise TransientNetworkError(f"API request failed: {status} for {url}", status=status)
            if not isinstance(data, dict) or not isinstance(data.get("proposals"), list):
                logger.warning(f"No valid proposals found in the response from: {self.api_url}")
                return

            for raw in data["proposals"]:
                try:
                    yield parse_proposal(raw, schema)
                except (ValueError, TypeError, AttributeError) as e:
                    logger.warning(f"Skipping malformed proposal from {self.api_url}: {e}")

            next_key = (data.get("pagination") or {}).get("next_key")
            if not next_key:
                return
            params = {"proposal_status": VOTING_PERIOD, "pagination.key": next_key}

    async def fetch_active_proposals(self) -> List[Proposal]:
        proposals = [p async for p in self.iter_active_proposals()]
        logger.info(f"Found {len(proposals)} proposals from: {self.api_url}")
        return proposals

    # === VOTES ===

    async def _query_vote(self, proposal_id: str) -> bool:
        url = f"{self.api_url}/cosmos/gov/v1/proposals/{proposal_id}/votes/{self.granter}"
        status, data = await self._get(url)
        if status == 200:
            return bool(isinstance(data, dict) and data.get("vote"))
        if status in (400, 404):
            raise VoteNotFound(proposal_id, self.granter)
        raise TransientNetworkError(f"Unexpected response status {status} for {url}", status=status)

    async def has_granter_voted(self, proposal_id: str) -> bool:
        """
        Whether the granter already voted on a proposal.

        400/404 means "no vote" and is final. Anything else that fails is retried
        with linear backoff; after the last attempt TransientNetworkError
        propagates instead of being read as "not voted".
        """
        try:
            voted = await retry_linear(
                lambda: self._query_vote(proposal_id),
                self.retry_config,
                sleep=self._sleep,
                description=f"vote lookup for proposal {proposal_id} on {self.api_url}",
            )
        except VoteNotFound:
            logger.info(f"Granter {self.granter} has not voted on proposal {proposal_id}")
            return False

        if voted:
            logger.info(f"Granter {self.granter} has voted on proposal {proposal_id}")
        else:
            logger.info(f"Granter {self.granter} has no vote on proposal {proposal_id}")
        return voted
