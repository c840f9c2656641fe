"""
Per-chain bring-up: build the query client and vote submitter for each
configured network and bundle them into a ChainContext.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from bots.gov_voter.config import GovVoterConfig, NetworkConfig
from bots.gov_voter.errors import ConfigError, GovVoterError
from bots.gov_voter.query import ProposalQueryClient
from bots.gov_voter.signer import CosmpySigningClient, VoteSubmitter, load_wallet

logger = logging.getLogger(__name__)

SigningClientFactory = Callable[[GovVoterConfig, NetworkConfig], Any]


@dataclass
class ChainContext:
    """Everything one chain's monitor and approvals need. Built once, read-only afterwards."""
    network: NetworkConfig
    chat_id: Union[int, str]
    query: ProposalQueryClient
    submitter: VoteSubmitter

    @property
    def name(self) -> str:
        return self.network.name

    @property
    def chain_id(self) -> str:
        return self.network.chain_id

    @property
    def proposal_explorer(self) -> str:
        return self.network.explorer.proposal

    @property
    def tx_explorer(self) -> str:
        return self.network.explorer.tx

    async def close(self):
        await self.query.close()


def cosmpy_signing_client(config: GovVoterConfig, network: NetworkConfig) -> CosmpySigningClient:
    wallet = load_wallet(config.keys_dir, network.wallet, network.prefix, network.hd_path)
    return CosmpySigningClient(
        chain_id=network.chain_id,
        url=network.signer_url,
        denom=network.denom,
        wallet=wallet,
        broadcast_timeout=config.broadcast_timeout,
    )


async def bring_up_chain(
    config: GovVoterConfig,
    network: NetworkConfig,
    signing_client_factory: SigningClientFactory = cosmpy_signing_client,
    query_client: Optional[ProposalQueryClient] = None,
) -> ChainContext:
    """
    Validate a network entry, detect its gov schema and connect its signer.

    Raises:
        ConfigError, SchemaUnavailable, SignerInitError: the chain stays offline.
    """
    problems = network.validate()
    if problems:
        raise ConfigError(f"Network {network.name or '?'}: {'; '.join(problems)}")

    chat_id = config.chat_for(network)
    if chat_id is None:
        raise ConfigError(f"Network {network.name}: no telegram chat with label {network.telegram_label!r}")

    query = query_client or ProposalQueryClient(
        network.api,
        network.granter,
        query_timeout=config.query_timeout,
        probe_timeout=config.schema_probe_timeout,
        max_retries=config.max_retries,
    )
    try:
        schema = await query.detect_schema()
        if schema.vote_type != network.vote_type:
            logger.info(f"{network.name}: REST serves gov/{schema.value}, voting with {network.vote_type}")

        submitter = VoteSubmitter(
            network,
            signing_client_factory(config, network),
            gas_multiplier=config.gas_multiplier,
            vote_metadata=config.vote_metadata,
        )
        await submitter.connect()
    except BaseException:
        await query.close()
        raise

    logger.info(f"Loaded chain context for network: {network.name} (grantee {submitter.grantee})")
    return ChainContext(network=network, chat_id=chat_id, query=query, submitter=submitter)


async def bring_up_chains(
    config: GovVoterConfig,
    signing_client_factory: SigningClientFactory = cosmpy_signing_client,
) -> Tuple[List[ChainContext], Dict[str, str]]:
    """Bring every network online; failures exclude that chain only. Returns (contexts, failures)."""
    contexts: List[ChainContext] = []
    failures: Dict[str, str] = {}
    for network in config.networks:
        try:
            contexts.append(await bring_up_chain(config, network, signing_client_factory))
        except GovVoterError as e:
            logger.error(f"Chain {network.name or network.chain_id} excluded from this run: {e}")
            failures[network.name or network.chain_id] = str(e)
    return contexts, failures
