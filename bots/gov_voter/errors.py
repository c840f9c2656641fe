"""
Gov Voter exceptions.

Everything raised on purpose by the bot derives from GovVoterError so the
monitor loop can tell its own failures apart from programming errors.
"""

from typing import Optional


class GovVoterError(Exception):
    """Base exception for the governance vote bot."""
    pass


class ConfigError(GovVoterError):
    """Raised when config.yaml or a network entry is invalid."""
    pass


class TransientNetworkError(GovVoterError):
    """Retryable transport or server failure (timeouts, 5xx, 429)."""

    def __init__(self, message: str, status: Optional[int] = None):
        self.status = status
        super().__init__(message)


class SchemaUnavailable(GovVoterError):
    """Neither governance REST schema answered; the chain cannot come online."""

    def __init__(self, api_url: str):
        self.api_url = api_url
        super().__init__(f"Neither gov/v1 nor gov/v1beta1 endpoints are supported by {api_url}")


class VoteNotFound(GovVoterError):
    """The granter has no vote on record. Terminal negative result, never retried."""

    def __init__(self, proposal_id: str, granter: str):
        self.proposal_id = proposal_id
        self.granter = granter
        super().__init__(f"Vote not found for granter {granter} on proposal {proposal_id}")


class SubmissionFailure(GovVoterError):
    """Vote transaction was rejected or could not be broadcast."""

    def __init__(self, message: str, code: Optional[int] = None, tx_hash: str = ""):
        self.code = code
        self.tx_hash = tx_hash
        super().__init__(message)


class SignerInitError(GovVoterError):
    """Wallet or signing client could not be set up for a chain."""
    pass


class StoreIntegrityError(GovVoterError):
    """Persisted proposal state is corrupt. The process must stop."""
    pass
