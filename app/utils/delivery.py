"""Bounded, failure-tolerant wrapper around the blocking gateway calls."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable

from app.types.dose_contract import DeliveryResult

_LOGGER = logging.getLogger(__name__)


async def deliver(channel: str, send: Callable[..., Any], *args: Any, timeout: float) -> DeliveryResult:
    """Run *send* in a worker thread; timeouts and exceptions become ``ok=False``.

    A timed-out call has an unknown outcome, so it is reported as a failure and
    the caller leaves its guard unset.
    """
    try:
        result = await asyncio.wait_for(asyncio.to_thread(send, *args), timeout=timeout)
    except asyncio.TimeoutError:
        _LOGGER.warning("[%s] delivery timed out after %ss", channel, timeout)
        return DeliveryResult(channel=channel, ok=False, detail={"error": "timeout"})
    except Exception as exc:  # noqa: BLE001
        _LOGGER.warning("[%s] delivery failed: %s", channel, exc)
        return DeliveryResult(channel=channel, ok=False, detail={"error": str(exc)})

    if isinstance(result, DeliveryResult):
        return result
    return DeliveryResult(channel=channel, ok=bool(result))
