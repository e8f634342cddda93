"""
Ledger retry helper
Exponential backoff with jitter for retryable ledger failures
"""

import logging
import random
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, TypeVar

from config import Config
from utils.exception_handler import EscrowError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class LedgerRetryPolicy:
    """Retry budget for ledger calls; defaults come from Config"""
    max_attempts: int = field(default_factory=lambda: Config.LEDGER_WRITE_MAX_ATTEMPTS)
    base_delay: float = field(default_factory=lambda: Config.LEDGER_RETRY_BASE_DELAY)
    max_delay: float = field(default_factory=lambda: Config.LEDGER_RETRY_MAX_DELAY)
    sleep: Callable[[float], None] = time.sleep

    def delay_for(self, attempt: int) -> float:
        """Backoff before retry number `attempt` (1-based), jitter included"""
        delay = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
        # Add jitter to prevent thundering herd
        return delay + random.uniform(0.1, 0.3) * delay

    def call(self, operation_name: str, func: Callable[[], T]) -> T:
        """
        Run func, retrying while it raises a retryable EscrowError.
        Non-retryable errors propagate immediately; the last retryable error
        propagates once the budget is exhausted.
        """
        attempts = max(1, self.max_attempts)
        last_error: Optional[EscrowError] = None

        for attempt in range(1, attempts + 1):
            try:
                return func()
            except EscrowError as e:
                if not e.retryable:
                    raise
                last_error = e
                if attempt >= attempts:
                    break
                delay = self.delay_for(attempt)
                logger.warning(
                    f"🔄 LEDGER_RETRY: {operation_name} failed (attempt {attempt}/{attempts}), "
                    f"retrying in {delay:.2f}s: {e}"
                )
                self.sleep(delay)

        logger.error(f"❌ LEDGER_RETRY_EXHAUSTED: {operation_name} failed after {attempts} attempts: {last_error}")
        raise last_error
