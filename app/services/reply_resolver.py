"""Map an inbound SMS reply back onto a pending dose.

Only ``TAKEN``, ``SKIP`` and ``SKIPPED`` (any case, surrounding whitespace
ignored) are acted on. The sender is matched to a profile by canonical phone
number, and the newest pending dose that was texted a confirmation request
within the lookback window is resolved. Every path ends in a short reply for
the sender; internal failures are logged, never echoed back.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional
from xml.sax.saxutils import escape

from app.types.dose_contract import SKIPPED, TAKEN, EscalationPolicy, ReplyOutcome
from app.utils.phone import normalize_phone, phone_candidates
from config import settings
import db

_LOGGER = logging.getLogger(__name__)

ACCEPTED_REPLIES = {"TAKEN": TAKEN, "SKIP": SKIPPED, "SKIPPED": SKIPPED}

PROMPT_MESSAGE = "Please reply TAKEN or SKIP to confirm your medication."
NOTHING_PENDING_MESSAGE = "No pending medication found. You may have already confirmed this dose."
ERROR_MESSAGE = "Error processing your reply."
ACK_MESSAGES = {TAKEN: "Thank you!", SKIPPED: "Noted."}


def parse_reply(body: Optional[str]) -> Optional[str]:
    if body is None:
        return None
    return ACCEPTED_REPLIES.get(body.strip().upper())


def twiml(message: str) -> str:
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        f"<Response><Message>{escape(message)}</Message></Response>"
    )


async def resolve_reply(
    sender: str,
    body: Optional[str],
    *,
    policy: Optional[EscalationPolicy] = None,
    now: Optional[datetime] = None,
) -> ReplyOutcome:
    action = parse_reply(body)
    if action is None:
        return ReplyOutcome(message=PROMPT_MESSAGE)

    now = now or datetime.now(timezone.utc)
    canonical = normalize_phone(sender)

    try:
        policy = policy or EscalationPolicy.from_settings(settings)
        profile = await db.find_profile_by_phone(phone_candidates(sender))
        if profile is None:
            _LOGGER.info("No user found for phone %s", canonical)
            return ReplyOutcome(message=NOTHING_PENDING_MESSAGE, action=action)

        since = now - timedelta(minutes=policy.reply_lookback_minutes)
        candidates = await db.confirmable_doses(profile.id, since)
        if not candidates:
            _LOGGER.info("No confirmable dose for user %s", profile.id)
            return ReplyOutcome(message=NOTHING_PENDING_MESSAGE, action=action)
        if len(candidates) > 1:
            _LOGGER.warning(
                "Reply from user %s matches %d pending doses; resolving the most recent (%s)",
                profile.id,
                len(candidates),
                candidates[0].id,
            )

        dose = candidates[0]
        applied = await db.resolve_dose(dose.id, action, now)
    except Exception:  # noqa: BLE001
        _LOGGER.exception("Error handling SMS reply from %s", canonical)
        return ReplyOutcome(message=ERROR_MESSAGE, action=action)

    if not applied:
        return ReplyOutcome(message=NOTHING_PENDING_MESSAGE, action=action, dose_id=dose.id)
    _LOGGER.info("Dose %s marked %s via SMS reply", dose.id, action)
    return ReplyOutcome(message=ACK_MESSAGES[action], action=action, dose_id=dose.id, applied=True)
