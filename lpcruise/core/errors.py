"""Exception taxonomy.

Limit-check denials are not exceptions: FundsManager returns ``False``.
Everything below is caught at the public boundary of the component that
raised it and turned into a logged, typed result.
"""
from __future__ import annotations


class CruiseError(Exception):
    """Base class for every error raised inside lpcruise."""


class AgentNotRegistered(CruiseError):
    """Raised when an operation names an agent the component doesn't know."""

    def __init__(self, agent_id: str) -> None:
        super().__init__(f"Agent {agent_id} is not registered")
        self.agent_id = agent_id


class WalletNotBound(CruiseError):
    """Raised when an agent has no wallet to query or sign with."""

    def __init__(self, agent_id: str) -> None:
        super().__init__(f"Agent {agent_id} has no wallet bound")
        self.agent_id = agent_id


class ChainError(CruiseError):
    """RPC / network failure talking to the chain or a chain-facing service."""


class PersistenceError(CruiseError):
    """State snapshot could not be saved or loaded."""


class InvalidTransition(CruiseError):
    """A transaction request was asked to move to a status it can't reach."""
