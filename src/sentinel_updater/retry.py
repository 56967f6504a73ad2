"""
Bounded retry policy used for post-start service verification.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from sentinel_updater.logging import get_logger

logger = get_logger(__name__)

SleepFunc = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    """
    Fixed-delay retry policy.

    Attributes:
        max_attempts: Number of times the condition is evaluated.
        delay_seconds: Delay between consecutive attempts.
        sleep: Awaitable sleep, replaceable in tests.
    """

    max_attempts: int = 3
    delay_seconds: float = 2.0
    sleep: SleepFunc = field(default=asyncio.sleep, compare=False, repr=False)

    async def run(
        self,
        condition: Callable[[], Awaitable[bool]],
        *,
        description: str = "condition",
    ) -> bool:
        """
        Evaluate ``condition`` until it returns True or attempts run out.

        An exception raised by the condition counts as a failed attempt.

        Args:
            condition: Async callable returning True on success.
            description: Name used in log records.

        Returns:
            True if any attempt succeeded.
        """
        for attempt in range(1, self.max_attempts + 1):
            try:
                if await condition():
                    logger.info(
                        f"{description} succeeded",
                        extra={"attempt": attempt, "max_attempts": self.max_attempts},
                    )
                    return True
                logger.warning(
                    f"{description} not yet satisfied",
                    extra={"attempt": attempt, "max_attempts": self.max_attempts},
                )
            except Exception as e:
                logger.warning(
                    f"{description} raised an error",
                    extra={
                        "attempt": attempt,
                        "max_attempts": self.max_attempts,
                        "error": str(e),
                    },
                )

            if attempt < self.max_attempts:
                await self.sleep(self.delay_seconds)

        return False
