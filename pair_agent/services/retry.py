"""
Retry policy for provider calls - exponential backoff, decoupled from the transport
"""

from __future__ import annotations

from pydantic import BaseModel, Field

from pair_agent.errors import ProviderError


class RetryPolicy(BaseModel):
    """How often and how long to wait before retrying a transient provider failure"""

    max_attempts: int = Field(default=3, ge=1)
    base_delay: float = Field(default=2.0, ge=0)
    multiplier: float = Field(default=2.0, ge=1)
    max_delay: float = Field(default=60.0, ge=0)

    def should_retry(self, error: ProviderError, attempt: int) -> bool:
        """`attempt` is the 1-based number of the attempt that just failed"""
        return error.transient and attempt < self.max_attempts

    def delay(self, attempt: int, error: ProviderError | None = None) -> float:
        """Seconds to wait after failed attempt number `attempt`"""
        if error is not None and error.retry_after is not None:
            return min(max(error.retry_after, 0.0), self.max_delay)
        return min(self.base_delay * self.multiplier ** (attempt - 1), self.max_delay)
