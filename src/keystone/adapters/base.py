"""SourceAdapter contract.

An adapter executes one PlanEntry payload against one backend and returns rows
(a list of flat dicts). Failures are raised as SourceError subclasses so the
ExecutionCoordinator can classify them:

    - SourceTimeout: backend did not answer in time (retryable)
    - TransientNetworkError: connection reset, rate limit, gateway error (retryable)
    - SourceUnavailable: backend down or misconfigured (fallback)

Capability flags tell the coordinator how the adapter may be scheduled:
    - supports_cancel: an in-flight call stops when its task is cancelled
    - supports_parallel: several calls may run at the same time
"""

from abc import ABC, abstractmethod
from typing import Any

from keystone.models import SourceKind


class SourceAdapter(ABC):
    """Executes parameterized payloads against one backend."""

    kind: SourceKind
    supports_cancel: bool = True
    supports_parallel: bool = True

    @abstractmethod
    async def execute(self, payload: Any, timeout: float) -> list[dict[str, Any]]:
        """Execute a payload.

        Args:
            payload: Source-specific payload built by QueryConstructor
            timeout: Seconds the call may take

        Returns:
            Result rows

        Raises:
            SourceError: Classified backend failure
        """

    async def start(self) -> None:
        """Open connections. Called once at engine start."""

    async def close(self) -> None:
        """Release connections. Called once at engine shutdown."""
