"""Tests for the REST surface, driven through FastAPI's TestClient."""
import asyncio
from datetime import date

import pytest
from fastapi.testclient import TestClient

from api.main import app
from models.schemas import AppointmentType, Booking

from conftest import USER


@pytest.fixture
def client(orchestrator):
    app.state.orchestrator = orchestrator
    with TestClient(app) as client:
        yield client
    del app.state.orchestrator


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["active_sessions"] == 0
        assert body["messenger"]["channel"] == "console"

    def test_stats(self, client):
        body = client.get("/api/v1/stats").json()
        assert body["sessions"]["active"] == 0
        assert body["reminders"]["running"] is True
        assert body["throttled_users"] == 0


class TestInbound:
    def test_message_starts_welcome(self, client, messenger):
        response = client.post("/api/v1/messages/inbound",
                               json={"sender": f"{USER}@c.us", "content": "oi"})
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "processed"
        assert body["flow"] == "welcome"
        assert messenger.last_for(USER).startswith("Bom dia!")

        sessions = client.get("/api/v1/sessions").json()
        assert [s["user_id"] for s in sessions] == [USER]
        assert sessions[0]["flow"] == "welcome"

    def test_group_message_ignored(self, client):
        body = client.post("/api/v1/messages/inbound",
                           json={"sender": "120363025@g.us", "content": "oi"}).json()
        assert body == {"status": "ignored", "reason": "group_or_broadcast"}

    def test_missing_content_is_rejected(self, client):
        response = client.post("/api/v1/messages/inbound", json={"sender": USER})
        assert response.status_code == 422


class TestReminders:
    def test_create_list_cancel(self, client):
        response = client.post("/api/v1/reminders", json={
            "recipient": "+55 81 98888-7777",
            "message": "Trazer o carregador do notebook",
            "scheduled_at": "2026-10-21T12:00:00Z",
        })
        assert response.status_code == 201
        job_id = response.json()["id"]

        jobs = client.get("/api/v1/reminders", params={"recipient": USER}).json()
        assert len(jobs) == 1
        assert jobs[0]["id"] == job_id
        assert jobs[0]["status"] == "pending"
        assert jobs[0]["kind"] == "reminder"

        assert client.delete(f"/api/v1/reminders/{job_id}").json() == {
            "status": "cancelled", "id": job_id,
        }
        assert client.delete(f"/api/v1/reminders/{job_id}").status_code == 404

    def test_past_time_rejected(self, client):
        response = client.post("/api/v1/reminders", json={
            "recipient": USER, "message": "Atrasado", "scheduled_at": "2026-10-01T12:00:00Z",
        })
        assert response.status_code == 400
        assert "future" in response.json()["detail"]

    def test_blank_recipient_rejected(self, client):
        response = client.post("/api/v1/reminders", json={
            "recipient": "  ", "message": "Oi", "scheduled_at": "2026-10-21T12:00:00Z",
        })
        assert response.status_code == 400

    def test_unknown_reminder(self, client):
        assert client.delete("/api/v1/reminders/nope").status_code == 404


class TestServiceCompletion:
    def test_no_booking(self, client):
        response = client.post("/api/v1/services/complete", json={"user_id": USER})
        assert response.status_code == 404

    def test_completes_booking(self, orchestrator, stores, messenger):
        asyncio.run(stores.bookings.book(Booking(
            user_id=USER, customer_name="Ana Lima", service="Limpeza",
            appointment_type=AppointmentType.LOJA, day=date(2026, 10, 20), period="Manhã",
            start_time="08:00", end_time="12:00",
        ), capacity=3))

        app.state.orchestrator = orchestrator
        try:
            with TestClient(app) as client:
                response = client.post("/api/v1/services/complete",
                                       json={"user_id": f"{USER}@c.us", "service": "Limpeza"})
        finally:
            del app.state.orchestrator

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "completed"
        assert body["booking"]["status"] == "completed"
        assert body["booking"]["id"] == 1
        assert messenger.last_for(USER).startswith("✅ *Serviço concluído com sucesso!*")
