"""Plain-text email through the SendGrid v3 REST API."""

from __future__ import annotations

import logging

import requests
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_random_exponential

from app.types.dose_contract import DeliveryResult
from config import settings

_LOGGER = logging.getLogger(__name__)

SENDGRID_API_KEY = settings.SENDGRID_API_KEY
FROM_EMAIL = settings.SENDGRID_FROM_EMAIL
API_URL = settings.SENDGRID_API_URL


@retry(
    stop=stop_after_attempt(2),
    wait=wait_random_exponential(multiplier=0.5, max=2),
    retry=retry_if_exception_type(requests.ConnectionError),
    reraise=True,
)
def _post(payload: dict, timeout: float) -> requests.Response:
    return requests.post(
        API_URL,
        json=payload,
        headers={"Authorization": f"Bearer {SENDGRID_API_KEY}"},
        timeout=timeout,
    )


def send_email(to: str, subject: str, body: str) -> DeliveryResult:
    if not SENDGRID_API_KEY or not FROM_EMAIL:
        _LOGGER.warning("[EMAIL] SendGrid not configured; not sending to %s", to)
        return DeliveryResult(channel="email", ok=False, detail={"error": "sendgrid not configured"})

    payload = {
        "personalizations": [{"to": [{"email": to}]}],
        "from": {"email": FROM_EMAIL},
        "subject": subject,
        "content": [{"type": "text/plain", "value": body}],
    }
    resp = _post(payload, settings.DELIVERY_TIMEOUT_SECONDS)
    if not resp.ok:
        return DeliveryResult(
            channel="email",
            ok=False,
            detail={"status": resp.status_code, "body": resp.text[:500]},
        )
    return DeliveryResult(
        channel="email",
        ok=True,
        detail={"status": resp.status_code, "message_id": resp.headers.get("X-Message-Id")},
    )
