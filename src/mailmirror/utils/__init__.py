"""Utility functions for mailmirror."""

from __future__ import annotations

import random
import uuid

import structlog

logger = structlog.get_logger()

_ID_NAMESPACE = uuid.uuid5(uuid.NAMESPACE_URL, "mailmirror")


def full_jitter_delay(
    attempt: int,
    *,
    base: float,
    cap: float,
    rng: random.Random | None = None,
) -> float:
    """Exponential backoff with full jitter.

    Args:
        attempt: Number of failed attempts so far (0 for the first retry).
        base: Base delay in seconds.
        cap: Maximum delay in seconds.
        rng: Random source; injectable for deterministic tests.

    Returns:
        A delay drawn uniformly from ``[0, min(cap, base * 2**attempt)]``.
    """

    ceiling = min(cap, base * (2 ** max(attempt, 0)))
    return (rng or random).uniform(0.0, ceiling)


def retry_delay(
    attempt: int,
    *,
    retry_after: float,
    base: float,
    cap: float,
    rng: random.Random | None = None,
) -> float:
    """Delay before retrying, honouring a provider-suggested ``retry_after``."""

    delay = max(retry_after, full_jitter_delay(attempt, base=base, cap=cap, rng=rng))
    logger.debug("retry_delay_computed", attempt=attempt, retry_after=retry_after, delay=delay)
    return delay


def email_id_for(account_id: str, provider_id: str) -> str:
    """Deterministic local EmailId for an (account, provider id) identity key."""

    return str(uuid.uuid5(_ID_NAMESPACE, f"email:{account_id}:{provider_id}"))


def thread_id_for(account_id: str, thread_key: str) -> str:
    """Deterministic local thread id for an (account, provider thread key) pair."""

    return str(uuid.uuid5(_ID_NAMESPACE, f"thread:{account_id}:{thread_key}"))


def new_id() -> str:
    return str(uuid.uuid4())
