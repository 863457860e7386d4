"""Caregiver voice calls over Telnyx Call Control.

The spoken script travels with the call as base64 ``client_state``; the voice
webhook reads it back on ``call.answered`` and speaks it.
"""

from __future__ import annotations

import base64
import json
import logging

import telnyx

from app.types.dose_contract import DeliveryResult
from app.utils.phone import to_e164
from config import settings

_LOGGER = logging.getLogger(__name__)

FROM_NUM = settings.TELNYX_FROM_NUMBER
CONNECTION_ID = settings.TELNYX_CONNECTION_ID
TELNYX_API_KEY = settings.TELNYX_API_KEY
if TELNYX_API_KEY:
    telnyx.api_key = TELNYX_API_KEY


def encode_client_state(script: str) -> str:
    return base64.b64encode(json.dumps({"script": script}).encode()).decode()


def decode_client_state(state: str | None) -> str | None:
    if not state:
        return None
    try:
        return json.loads(base64.b64decode(state).decode()).get("script")
    except (ValueError, AttributeError):
        _LOGGER.warning("Undecodable client_state on call webhook")
        return None


def place_call(to: str, script: str) -> DeliveryResult:
    if not TELNYX_API_KEY or not FROM_NUM or not CONNECTION_ID:
        _LOGGER.warning("[CALL] Telnyx call control not configured; not calling %s", to)
        return DeliveryResult(channel="call", ok=False, detail={"error": "telnyx call control not configured"})
    call = telnyx.Call.create(
        connection_id=CONNECTION_ID,
        to=to_e164(to),
        from_=FROM_NUM,
        client_state=encode_client_state(script),
    )
    return DeliveryResult(
        channel="call",
        ok=True,
        detail={"call_control_id": getattr(call, "call_control_id", None)},
    )


def speak(call_control_id: str, script: str) -> None:
    call = telnyx.Call()
    call.call_control_id = call_control_id
    call.speak(payload=script, voice="female", language="en-US")
