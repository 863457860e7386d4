import logging
from typing import Optional

import telnyx
from fastapi import BackgroundTasks, FastAPI, HTTPException, Query, Request, status
from fastapi.responses import PlainTextResponse, Response

import db
from app.services import dose_actions
from app.services.reply_resolver import resolve_reply, twiml
from app.types.dose_contract import DoseActionResponse, EscalationPolicy, JobReport
from app.utils import sms, voice
from app.utils.delivery import deliver
from app.workers.confirmation import dispatch_confirmations
from app.workers.escalation import escalate_caregivers
from config import settings

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
_LOGGER = logging.getLogger(__name__)

# Configure telnyx public key
if settings.TELNYX_PUBLIC_KEY:
    telnyx.public_key = settings.TELNYX_PUBLIC_KEY

app = FastAPI(title="dose-escalation")


@app.on_event("shutdown")
async def shutdown_event():
    await db.dispose_engine()


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}

# --------------------------------------------
# Helpers
# --------------------------------------------

async def _telnyx_event_data(request: Request) -> dict:
    """Return the ``data`` object of a Telnyx webhook, verifying it when a key is set."""
    raw_body = await request.body()
    sig = request.headers.get("telnyx-signature-ed25519")
    ts = request.headers.get("telnyx-timestamp")
    try:
        if settings.TELNYX_PUBLIC_KEY:
            event = telnyx.Webhook.construct_event(raw_body.decode(), sig, ts)
            data = event.data
        else:  # dev mode: skip signature verification
            data = (await request.json())["data"]
    except Exception:  # noqa: BLE001
        raise HTTPException(400, "Bad signature")

    # TelnyxObject -> dict if needed
    if hasattr(data, "to_dict"):
        data = data.to_dict()
    return data


def _require_job_token(request: Request) -> None:
    if not settings.JOBS_TOKEN:
        return
    if request.headers.get("authorization") != f"Bearer {settings.JOBS_TOKEN}":
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid job token")


async def _send_ack(to: str, message: str) -> None:
    result = await deliver("sms", sms.send_sms, to, message, timeout=settings.DELIVERY_TIMEOUT_SECONDS)
    if not result.ok:
        _LOGGER.warning("Reply acknowledgement to %s not delivered: %s", to, result.detail)

# --------------------------------------------
# Inbound SMS replies
# --------------------------------------------

@app.post("/v1/sms/reply")
async def sms_reply_webhook(request: Request):
    """Form-encoded ``{From, Body}`` webhook answered with an XML message."""
    form = await request.form()
    sender = str(form.get("From") or "")
    body = str(form.get("Body") or "")
    _LOGGER.info("[Webhook] SMS reply from %s", sender)

    outcome = await resolve_reply(sender, body)
    return Response(content=twiml(outcome.message), media_type="text/xml")


@app.post("/v1/sms/telnyx", response_class=PlainTextResponse)
async def telnyx_sms_webhook(request: Request, background: BackgroundTasks):
    data = await _telnyx_event_data(request)
    payload = data.get("payload") or {}

    if payload.get("type") == "ping":
        return PlainTextResponse("PONG")
    event_type = data.get("event_type")
    if event_type and event_type != "message.received":
        return PlainTextResponse("IGNORED")

    sender = payload.get("from") or payload.get("from_", {})
    if hasattr(sender, "to_dict"):
        sender = sender.to_dict()
    from_num = sender.get("phone_number")
    text = payload.get("text", "")

    if not from_num:
        return PlainTextResponse("IGNORED", status_code=status.HTTP_200_OK)

    outcome = await resolve_reply(from_num, text)
    background.add_task(_send_ack, from_num, outcome.message)
    return PlainTextResponse("OK")

# --------------------------------------------
# Voice call control
# --------------------------------------------

@app.post("/v1/voice/telnyx", response_class=PlainTextResponse)
async def telnyx_voice_webhook(request: Request, background: BackgroundTasks):
    data = await _telnyx_event_data(request)
    if data.get("event_type") != "call.answered":
        return PlainTextResponse("IGNORED")

    payload = data.get("payload") or {}
    script = voice.decode_client_state(payload.get("client_state"))
    call_control_id = payload.get("call_control_id")
    if not script or not call_control_id:
        return PlainTextResponse("IGNORED")

    background.add_task(voice.speak, call_control_id, script)
    return PlainTextResponse("OK")

# --------------------------------------------
# In-app dose actions
# --------------------------------------------

@app.post("/v1/doses/{dose_id}/taken", response_model=DoseActionResponse)
async def dose_taken(dose_id: str):
    return await dose_actions.mark_taken(dose_id)


@app.post("/v1/doses/{dose_id}/skip", response_model=DoseActionResponse)
async def dose_skipped(dose_id: str):
    return await dose_actions.mark_skipped(dose_id)


@app.post("/v1/doses/{dose_id}/snooze", response_model=DoseActionResponse)
async def dose_snoozed(dose_id: str, minutes: int = Query(dose_actions.DEFAULT_SNOOZE_MINUTES, ge=1, le=720)):
    return await dose_actions.snooze(dose_id, minutes)

# --------------------------------------------
# Cron-triggered jobs
# --------------------------------------------

@app.post("/v1/jobs/send-confirmations", response_model=JobReport)
async def run_confirmations(request: Request):
    _require_job_token(request)
    return await dispatch_confirmations(EscalationPolicy.from_settings(settings))


@app.post("/v1/jobs/escalate-caregivers", response_model=JobReport)
async def run_caregiver_escalation(
    request: Request,
    escalation_minutes: Optional[int] = Query(None, ge=1),
    enable_calls: Optional[bool] = None,
):
    _require_job_token(request)
    try:
        policy = EscalationPolicy.from_settings(
            settings, escalation_minutes=escalation_minutes, enable_calls=enable_calls
        )
    except ValueError as exc:
        raise HTTPException(status.HTTP_422_UNPROCESSABLE_ENTITY, str(exc))
    return await escalate_caregivers(policy)
