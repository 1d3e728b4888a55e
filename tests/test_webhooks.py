"""
Tests for the Telegram webhook: secret check, idempotency, acknowledgement kinds.
"""

from unittest.mock import patch

from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from marketbot.api.webhooks import SECRET_HEADER
from marketbot.constants.event_types import EVENT_TELEGRAM_SECRET_VERIFICATION_FAILURE
from marketbot.core.config import settings
from marketbot.db.models import ProcessedUpdate, SystemEvent
from marketbot.services.metrics import get_metrics
from tests.helpers.updates import button_update, next_update_id, photo_update, text_update

WEBHOOK = "/webhooks/telegram"
USER = 4401


def test_text_update_is_accepted_and_dispatched(client, db, gateway):
    update = text_update(USER, "/help")

    response = client.post(WEBHOOK, json=update)

    assert response.status_code == 200
    assert response.json() == {"ok": True, "type": "accepted", "update_id": update["update_id"]}
    assert "/sell" in gateway.last_text(USER)
    row = db.execute(select(ProcessedUpdate)).scalar_one()
    assert row.update_id == update["update_id"]
    assert row.user_id == USER


def test_duplicate_update_is_acknowledged_once(client, db, gateway):
    update = text_update(USER, "/help")

    first = client.post(WEBHOOK, json=update)
    second = client.post(WEBHOOK, json=update)

    assert first.json()["type"] == "accepted"
    assert second.status_code == 200
    body = second.json()
    assert body["type"] == "duplicate"
    assert body["update_id"] == update["update_id"]
    assert body["processed_at"] is not None
    assert len(gateway.sent(USER)) == 1
    assert get_metrics()["counters"]["duplicate.telegram_update"] == 1


def test_photo_update_uses_largest_size(client, bot):
    client.post(WEBHOOK, json=text_update(USER, "/sell"))

    response = client.post(WEBHOOK, json=photo_update(USER))

    assert response.json()["type"] == "accepted"
    assert bot.conversations.get(USER).payload["images"] == ["large"]


def test_button_update_is_answered(client, gateway):
    response = client.post(WEBHOOK, json=button_update(USER, "help", with_photo=True))

    assert response.json()["type"] == "accepted"
    assert len(gateway.answers()) == 1


def test_invalid_json_is_acknowledged(client):
    response = client.post(WEBHOOK, content=b"{not json", headers={"Content-Type": "application/json"})

    assert response.status_code == 200
    assert response.json() == {"ok": True, "type": "invalid-json"}


def test_payload_without_update_id_is_ignored(client, db):
    response = client.post(WEBHOOK, json={"message": {"text": "hi"}})

    assert response.json() == {"ok": True, "type": "ignored"}
    assert db.execute(select(ProcessedUpdate)).scalars().all() == []


def test_malformed_update_is_acknowledged(client):
    update_id = next_update_id()
    response = client.post(WEBHOOK, json={"update_id": update_id, "message": {"from": {"id": USER}, "text": "no chat"}})

    assert response.json() == {"ok": True, "type": "malformed-update", "update_id": update_id}


def test_unsupported_update_is_recorded_but_not_dispatched(client, db, gateway):
    update_id = next_update_id()
    response = client.post(WEBHOOK, json={"update_id": update_id, "edited_message": {"text": "edit"}})

    assert response.json() == {"ok": True, "type": "unsupported", "update_id": update_id}
    assert db.execute(select(ProcessedUpdate)).scalar_one().update_id == update_id
    assert gateway.calls == []


def test_secret_mismatch_is_rejected(client, db, gateway):
    with patch.object(settings, "telegram_webhook_secret", "s3cret"):
        response = client.post(WEBHOOK, json=text_update(USER, "/help"), headers={SECRET_HEADER: "wrong"})

    assert response.status_code == 403
    assert response.json() == {"ok": False, "error": "Invalid secret token"}
    assert gateway.calls == []
    events = db.execute(
        select(SystemEvent).where(SystemEvent.event_type == EVENT_TELEGRAM_SECRET_VERIFICATION_FAILURE)
    ).scalars().all()
    assert len(events) == 1


def test_missing_secret_header_is_rejected(client):
    with patch.object(settings, "telegram_webhook_secret", "s3cret"):
        response = client.post(WEBHOOK, json=text_update(USER, "/help"))

    assert response.status_code == 403


def test_matching_secret_is_accepted(client):
    with patch.object(settings, "telegram_webhook_secret", "s3cret"):
        response = client.post(WEBHOOK, json=text_update(USER, "/help"), headers={SECRET_HEADER: "s3cret"})

    assert response.status_code == 200
    assert response.json()["type"] == "accepted"


def test_dispatch_failure_does_not_change_acknowledgement(client, bot, db):
    with patch.object(bot.dispatcher, "dispatch", side_effect=RuntimeError("boom")):
        response = client.post(WEBHOOK, json=text_update(USER, "/help"))

    assert response.status_code == 200
    assert response.json()["type"] == "accepted"
    events = db.execute(select(SystemEvent).where(SystemEvent.level == "ERROR")).scalars().all()
    assert [e.user_id for e in events] == [USER]


def test_correlation_id_is_echoed(client):
    response = client.post(WEBHOOK, json=text_update(USER, "/help"), headers={"X-Correlation-ID": "abc-123"})

    assert response.headers["X-Correlation-ID"] == "abc-123"


def test_update_is_dispatched_when_idempotency_insert_fails(client, db, gateway):
    update = text_update(USER, "/help")

    with patch.object(db, "commit", side_effect=OperationalError("INSERT", {}, Exception("database is down"))):
        response = client.post(WEBHOOK, json=update)

    assert response.status_code == 200
    assert response.json() == {"ok": True, "type": "accepted", "update_id": update["update_id"]}
    assert "/sell" in gateway.last_text(USER)
    assert get_metrics()["counters"]["store_degraded.processed_updates"] == 1
    assert db.execute(select(ProcessedUpdate)).scalars().all() == []
