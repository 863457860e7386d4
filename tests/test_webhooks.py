import base64
import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest
import pytest_asyncio

from app.types.dose_contract import DeliveryResult
from app.utils import sms as sms_util, voice
from config import settings
from main import app
import db

NOW = datetime.now(timezone.utc).replace(microsecond=0)


@pytest_asyncio.fixture
async def client(database, monkeypatch):
    monkeypatch.setattr(settings, "TELNYX_PUBLIC_KEY", None)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


@pytest.fixture
def acks(monkeypatch):
    sent = []

    def fake_send_sms(to, body):
        sent.append((to, body))
        return DeliveryResult(channel="sms", ok=True)

    monkeypatch.setattr(sms_util, "send_sms", fake_send_sms)
    return sent


async def _texted_dose(make_dose):
    dose = await make_dose(NOW - timedelta(minutes=5))
    await db.mark_guard(dose.id, "confirmation_sms_sent_at", NOW - timedelta(minutes=5))
    return dose


@pytest.mark.asyncio
async def test_health(client):
    resp = await client.get("/health")
    assert resp.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_form_reply_returns_xml(client, make_dose):
    dose = await _texted_dose(make_dose)

    resp = await client.post("/v1/sms/reply", data={"From": "+15551234567", "Body": "Taken"})

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/xml")
    assert "<Message>Thank you!</Message>" in resp.text
    assert (await db.get_dose_event(dose.id)).status == "taken"


@pytest.mark.asyncio
async def test_form_reply_prompts_on_unknown_text(client, make_dose):
    await _texted_dose(make_dose)

    resp = await client.post("/v1/sms/reply", data={"From": "+15551234567", "Body": "what?"})

    assert "Please reply TAKEN or SKIP" in resp.text


@pytest.mark.asyncio
async def test_telnyx_inbound_sms_acknowledged(client, make_dose, acks):
    dose = await _texted_dose(make_dose)
    event = {
        "data": {
            "event_type": "message.received",
            "payload": {"from": {"phone_number": "+15551234567"}, "text": "skip"},
        }
    }

    resp = await client.post("/v1/sms/telnyx", json=event)

    assert resp.text == "OK"
    assert acks == [("+15551234567", "Noted.")]
    assert (await db.get_dose_event(dose.id)).status == "skipped"


@pytest.mark.asyncio
async def test_telnyx_other_events_ignored(client, acks):
    event = {"data": {"event_type": "message.sent", "payload": {"text": "taken"}}}

    resp = await client.post("/v1/sms/telnyx", json=event)

    assert resp.text == "IGNORED"
    assert acks == []


@pytest.mark.asyncio
async def test_voice_webhook_speaks_script(client, monkeypatch):
    spoken = []
    monkeypatch.setattr(voice, "speak", lambda call_control_id, script: spoken.append((call_control_id, script)))
    state = base64.b64encode(json.dumps({"script": "Please check in."}).encode()).decode()
    event = {
        "data": {
            "event_type": "call.answered",
            "payload": {"call_control_id": "cc-1", "client_state": state},
        }
    }

    resp = await client.post("/v1/voice/telnyx", json=event)

    assert resp.text == "OK"
    assert spoken == [("cc-1", "Please check in.")]


@pytest.mark.asyncio
async def test_dose_action_endpoints(client, make_dose):
    dose = await make_dose(NOW)

    snoozed = (await client.post(f"/v1/doses/{dose.id}/snooze", params={"minutes": 15})).json()
    assert snoozed["applied"] is True and snoozed["status"] == "snoozed"

    taken = (await client.post(f"/v1/doses/{snoozed['next_dose_id']}/taken")).json()
    assert taken == {"dose_id": snoozed["next_dose_id"], "applied": True, "status": "taken", "next_dose_id": None}

    late = (await client.post(f"/v1/doses/{dose.id}/skip")).json()
    assert late["applied"] is False and late["status"] == "snoozed"


@pytest.mark.asyncio
async def test_job_endpoints_require_token(client, make_dose, acks, monkeypatch):
    monkeypatch.setattr(settings, "JOBS_TOKEN", "s3cret")
    await make_dose(NOW)

    denied = await client.post("/v1/jobs/send-confirmations")
    assert denied.status_code == 401

    ok = await client.post("/v1/jobs/send-confirmations", headers={"Authorization": "Bearer s3cret"})
    assert ok.status_code == 200
    assert ok.json()["sent"] == {"sms": 1}


@pytest.mark.asyncio
async def test_escalation_endpoint_accepts_short_threshold(client, make_dose, monkeypatch):
    monkeypatch.setattr(settings, "JOBS_TOKEN", None)
    sent = []

    def fake_send_sms(to, body):
        sent.append(to)
        return DeliveryResult(channel="sms", ok=True)

    monkeypatch.setattr(sms_util, "send_sms", fake_send_sms)
    await make_dose(NOW - timedelta(minutes=25), caregiver_email=None)

    resp = await client.post("/v1/jobs/escalate-caregivers", params={"escalation_minutes": 20})

    assert resp.status_code == 200
    assert resp.json()["sent"] == {"sms": 1}
    assert sent == ["+15559876543"]


@pytest.mark.asyncio
async def test_escalation_endpoint_rejects_non_positive_threshold(client, monkeypatch):
    monkeypatch.setattr(settings, "JOBS_TOKEN", None)

    resp = await client.post("/v1/jobs/escalate-caregivers", params={"escalation_minutes": 0})

    assert resp.status_code == 422
