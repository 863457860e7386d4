import logging

import telnyx

from app.types.dose_contract import DeliveryResult
from app.utils.phone import to_e164
from config import settings

_LOGGER = logging.getLogger(__name__)

FROM_NUM = settings.TELNYX_FROM_NUMBER
TELNYX_API_KEY = settings.TELNYX_API_KEY
if TELNYX_API_KEY:
    telnyx.api_key = TELNYX_API_KEY

def send_sms(to: str, body: str) -> DeliveryResult:
    """Send one SMS. Telnyx errors propagate; callers run this through ``deliver``."""
    if not TELNYX_API_KEY or not FROM_NUM:
        _LOGGER.warning("[SMS] Telnyx not configured; not sending to %s", to)
        return DeliveryResult(channel="sms", ok=False, detail={"error": "telnyx not configured"})
    message = telnyx.Message.create(from_=FROM_NUM, to=to_e164(to), text=body)
    return DeliveryResult(channel="sms", ok=True, detail={"id": getattr(message, "id", None)})
