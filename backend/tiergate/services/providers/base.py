"""
Capability interfaces for external collaborators.
"""
from typing import Any, Dict, Protocol, runtime_checkable

from tiergate.core.config import TierSettings
from tiergate.models.routing import ProviderResult


@runtime_checkable
class ProviderClient(Protocol):
    """
    Calls one tier of an AI provider.

    Implementations raise ProviderTransientError for retryable failures and
    ProviderTerminalError for everything that must not be retried.
    """

    async def invoke(
        self,
        prompt: str,
        context: Dict[str, Any],
        tier: TierSettings,
    ) -> ProviderResult:
        ...


@runtime_checkable
class UsageLedger(Protocol):
    """Billing capability owned by the orchestrating caller."""

    async def charge(self, user_id: str, amount: float) -> None:
        ...

    async def has_balance(self, user_id: str, amount: float) -> bool:
        ...
