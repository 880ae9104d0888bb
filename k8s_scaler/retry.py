"""
Exponential backoff for polling and join steps
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from .errors import TerminalStepFailure, TransientInfraError

logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class BackoffPolicy:
    """base_delay doubling (by multiplier) after each failure, capped by max_delay and max_attempts"""
    base_delay: float = 2.0
    multiplier: float = 2.0
    max_delay: float = 60.0
    max_attempts: int = 5

    def delay_for(self, attempt: int) -> float:
        """Delay after the given failed attempt (1-based)"""
        return min(self.base_delay * (self.multiplier ** (attempt - 1)), self.max_delay)

    async def run(self, operation: Callable[[], Awaitable[T]], description: str,
                  sleep: Optional[Sleep] = None, cluster: Optional[str] = None) -> T:
        """Run operation until it succeeds; TransientInfraError is retried, anything else propagates"""
        sleep = sleep or asyncio.sleep
        last_error: Optional[TransientInfraError] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await operation()
            except TransientInfraError as e:
                last_error = e
                if attempt == self.max_attempts:
                    break
                delay = self.delay_for(attempt)
                logger.info(f"{description}: attempt {attempt}/{self.max_attempts} not ready ({e}), "
                            f"retrying in {delay:.0f}s")
                await sleep(delay)
        logger.error(f"❌ {description} gave up after {self.max_attempts} attempts")
        raise TerminalStepFailure(description, self.max_attempts, last_error, cluster=cluster)
