"""
Per-plan request rate limiting.

Fixed windows keyed by account id. Counters live in process memory, so
limits apply per gateway process.
"""

import threading
import time
from typing import Callable, Dict, Tuple

import structlog

from ai_credit_gate.config.loader import RateLimitConfig
from ai_credit_gate.storage.models import Account
from .errors import RateLimitedError

logger = structlog.get_logger()


class RateLimiter:
    """Counts requests per account in fixed windows. Admins are exempt."""

    def __init__(self, config: RateLimitConfig, clock: Callable[[], float] = time.monotonic):
        self.config = config
        self._clock = clock
        self._lock = threading.Lock()
        # account id -> (window start, requests in window)
        self._windows: Dict[str, Tuple[float, int]] = {}

    def check(self, account: Account) -> None:
        """Count one request for the account.

        Raises:
            RateLimitedError: If the account's plan limit is already used up
                in the current window
        """
        if account.is_admin:
            return

        limit = self.config.limit_for(account.plan)
        now = self._clock()
        with self._lock:
            started, count = self._windows.get(account.id, (now, 0))
            if now - started >= self.config.window_seconds:
                started, count = now, 0
            if count >= limit:
                retry_after = self.config.window_seconds - (now - started)
                logger.info(
                    "rate_limited",
                    account_id=account.id,
                    plan=account.plan.value,
                    limit=limit,
                )
                raise RateLimitedError(limit, retry_after)
            self._windows[account.id] = (started, count + 1)
