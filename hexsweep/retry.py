"""Retry with exponential backoff and jitter."""
from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, Optional, Tuple, Type, TypeVar

from . import config

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: float = 1.0
    retry_on: Tuple[Type[BaseException], ...] = (Exception,)
    give_up_on: Tuple[Type[BaseException], ...] = ()
    sleep: Callable[[float], None] = time.sleep

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    def delay_for(self, attempt: int) -> float:
        base = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
        return base + random.uniform(0, self.jitter)

    def call(self, operation: Callable[[], T]) -> T:
        for attempt in range(1, self.max_attempts + 1):
            try:
                return operation()
            except self.give_up_on:
                raise
            except self.retry_on as exc:
                if attempt >= self.max_attempts:
                    logger.error("Operation failed after %s attempts: %s", attempt, exc)
                    raise
                delay = self.delay_for(attempt)
                logger.warning(
                    "Operation failed (attempt %s/%s), retrying in %.2fs: %s",
                    attempt,
                    self.max_attempts,
                    delay,
                    exc,
                )
                self.sleep(delay)
        raise RuntimeError("Unexpected retry loop exit")


def with_retry(
    operation: Callable[[], T],
    max_attempts: int = 3,
    base_delay: float = 1.0,
    jitter: Optional[float] = None,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    give_up_on: Tuple[Type[BaseException], ...] = (),
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    policy = RetryPolicy(
        max_attempts=max_attempts,
        base_delay=base_delay,
        max_delay=config.RETRY_MAX_DELAY,
        jitter=config.RETRY_JITTER if jitter is None else jitter,
        retry_on=retry_on,
        give_up_on=give_up_on,
        sleep=sleep,
    )
    return policy.call(operation)
