"""
Gov Voter - Cosmos governance proposal alerts and authz voting over Telegram.
"""

from bots.gov_voter.bot import GovVoterBot
from bots.gov_voter.config import GovVoterConfig, load_config
from bots.gov_voter.database import ProposalStore

__all__ = ["GovVoterBot", "GovVoterConfig", "ProposalStore", "load_config"]
