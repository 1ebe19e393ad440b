import logging
import sys
from datetime import datetime
from pathlib import Path

import pytest
from sqlalchemy import create_engine, text

sys.path.append(str(Path(__file__).resolve().parents[1]))
import app as insighta_app  # noqa: E402
from ticket_store import SqlStore, StoreError, create_local_schema  # noqa: E402


def configure_store(monkeypatch, tmp_path, schema=None):
    engine = create_engine(f"sqlite:///{tmp_path / 'tickets.db'}")
    if schema is None:
        create_local_schema(engine)
    else:
        with engine.begin() as conn:
            conn.execute(text(schema))
    store = SqlStore(engine)
    monkeypatch.setitem(insighta_app.app.config, "TICKET_STORE", store)
    return store


def seed_ticket(store, **overrides):
    defaults = {
        "title": "Sample complaint",
        "description": "Details",
        "customer_email": "holder@example.com",
        "created_at": datetime(2026, 1, 1, 9, 0, 0),
    }
    defaults.update(overrides)
    return store.insert("tickets", defaults)


class ExplodingStore:
    def insert(self, *args, **kwargs):
        raise AssertionError("the store should not be reached")

    select = update = insert


class FailingStore:
    def __init__(self):
        self.calls = []

    def insert(self, table, row):
        self.calls.append(row)
        raise StoreError(f"connection refused ({len(self.calls)})")

    def select(self, table, filters=None, **kwargs):
        self.calls.append(filters)
        raise StoreError("connection refused")


def test_create_with_description_only(monkeypatch, tmp_path):
    configure_store(monkeypatch, tmp_path)
    client = insighta_app.app.test_client()

    response = client.post("/api/tickets", json={"description": "Claim denied unfairly"})
    body = response.get_json()

    assert response.status_code == 201
    assert body["message"] == "Ticket created successfully."
    assert body["ticket"]["reference"] == "INS-000001"
    assert body["ticket"]["priority"] is None
    assert body["ticket"]["status"] == "open"
    assert body["ticket"]["createdAt"]


def test_service_loggers_follow_log_level():
    for name in ("ticket_service", "ticket_store", "account_service", "bounded_retry"):
        assert logging.getLogger(name).isEnabledFor(logging.INFO)


def test_create_is_logged(monkeypatch, tmp_path, caplog):
    configure_store(monkeypatch, tmp_path)
    client = insighta_app.app.test_client()

    client.post("/api/tickets", json={"description": "Claim denied unfairly"})

    assert "Created ticket INS-000001" in caplog.text


def test_create_stores_full_payload(monkeypatch, tmp_path):
    store = configure_store(monkeypatch, tmp_path)
    client = insighta_app.app.test_client()

    response = client.post(
        "/api/tickets",
        json={
            "title": "  Claim delay ",
            "description": "Waiting six weeks for a payout.",
            "category": "Claims",
            "priority": "urgent",
            "customerName": "Dana Reyes",
            "customerEmail": "dana@example.com",
            "policyNumber": "POL-1234",
        },
    )

    assert response.status_code == 201
    rows = store.select("tickets", {"customer_email": "dana@example.com"})
    assert len(rows) == 1
    assert rows[0]["title"] == "Claim delay"
    assert rows[0]["priority"] == "urgent"
    assert rows[0]["policy_number"] == "POL-1234"


def test_title_defaults_when_missing(monkeypatch, tmp_path):
    store = configure_store(monkeypatch, tmp_path)
    client = insighta_app.app.test_client()

    client.post("/api/tickets", json={"title": "   ", "description": "Premium doubled"})

    assert store.select("tickets")[0]["title"] == "Insurance Complaint"


@pytest.mark.parametrize("description", ["", "   ", None, 42])
def test_blank_description_is_rejected_before_store(monkeypatch, description):
    monkeypatch.setitem(insighta_app.app.config, "TICKET_STORE", ExplodingStore())
    client = insighta_app.app.test_client()

    response = client.post("/api/tickets", json={"description": description})

    assert response.status_code == 400
    assert response.get_json() == {"error": "Description is required."}


@pytest.mark.parametrize("priority", ["critical", "High", "URGENT", 3])
def test_unknown_priority_is_rejected(monkeypatch, priority):
    monkeypatch.setitem(insighta_app.app.config, "TICKET_STORE", ExplodingStore())
    client = insighta_app.app.test_client()

    response = client.post("/api/tickets", json={"description": "d", "priority": priority})

    assert response.status_code == 400
    assert response.get_json()["error"] == "Priority must be low, medium, high, or urgent."


@pytest.mark.parametrize("email", ["holder.example.com", "holder@localhost", "a b@c.de"])
def test_invalid_email_is_rejected_on_create_and_lookup(monkeypatch, email):
    monkeypatch.setitem(insighta_app.app.config, "TICKET_STORE", ExplodingStore())
    client = insighta_app.app.test_client()

    created = client.post("/api/tickets", json={"description": "d", "customerEmail": email})
    looked_up = client.get("/api/tickets", query_string={"email": email})

    assert created.status_code == 400
    assert created.get_json()["error"] == "Customer email is invalid."
    assert looked_up.status_code == 400
    assert looked_up.get_json()["error"] == "Email is invalid."


@pytest.mark.parametrize("body", ["{not json", "[1, 2]", '"text"'])
def test_malformed_payload_is_a_400(monkeypatch, body):
    monkeypatch.setitem(insighta_app.app.config, "TICKET_STORE", ExplodingStore())
    client = insighta_app.app.test_client()

    response = client.post("/api/tickets", data=body, content_type="application/json")

    assert response.status_code == 400
    assert response.get_json() == {"error": "Invalid request payload."}


NARROW_SCHEMA = """
CREATE TABLE tickets (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    subject TEXT NOT NULL,
    description TEXT NOT NULL,
    status TEXT DEFAULT 'new',
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
)
"""


def test_create_falls_back_to_subject_column(monkeypatch, tmp_path):
    store = configure_store(monkeypatch, tmp_path, schema=NARROW_SCHEMA)
    client = insighta_app.app.test_client()

    response = client.post(
        "/api/tickets",
        json={"title": "Claim delay", "description": "Still waiting", "priority": "high"},
    )
    body = response.get_json()

    assert response.status_code == 201
    assert body["ticket"]["reference"] == 1
    assert body["ticket"]["status"] == "new"
    assert store.select("tickets")[0]["subject"] == "Claim delay"

    found = client.get("/api/tickets", query_string={"ticketId": "1"}).get_json()
    assert found["tickets"][0]["title"] == "Claim delay"


def test_strict_schema_reports_first_failure(monkeypatch, tmp_path):
    configure_store(monkeypatch, tmp_path, schema=NARROW_SCHEMA)
    monkeypatch.setattr(insighta_app, "TICKET_STRICT_SCHEMA", True)
    client = insighta_app.app.test_client()

    response = client.post("/api/tickets", json={"description": "Still waiting"})
    body = response.get_json()

    assert response.status_code == 500
    assert body["error"] == "Failed to create ticket."
    assert "title" in body["details"]


def test_create_reports_last_store_error(monkeypatch):
    store = FailingStore()
    monkeypatch.setitem(insighta_app.app.config, "TICKET_STORE", store)
    client = insighta_app.app.test_client()

    response = client.post("/api/tickets", json={"title": "T", "description": "D", "category": ""})

    assert response.status_code == 500
    assert response.get_json() == {"error": "Failed to create ticket.", "details": "connection refused (3)"}
    assert store.calls == [
        {"title": "T", "description": "D"},
        {"title": "T", "description": "D"},
        {"subject": "T", "description": "D"},
    ]


def test_lookup_requires_a_filter(monkeypatch):
    monkeypatch.setitem(insighta_app.app.config, "TICKET_STORE", ExplodingStore())
    client = insighta_app.app.test_client()

    response = client.get("/api/tickets", query_string={"limit": "5"})
    message = response.get_json()["error"]

    assert response.status_code == 400
    for name in ("reference", "ticketId", "email", "policyNumber"):
        assert name in message


def test_lookup_by_reference(monkeypatch, tmp_path):
    store = configure_store(monkeypatch, tmp_path)
    seed_ticket(store, title="First")
    seed_ticket(store, title="Second")
    client = insighta_app.app.test_client()

    response = client.get("/api/tickets", query_string={"reference": "INS-000002"})
    body = response.get_json()

    assert response.status_code == 200
    assert body["count"] == 1
    ticket = body["tickets"][0]
    assert ticket["reference"] == "INS-000002"
    assert ticket["title"] == "Second"
    assert ticket["customerEmail"] == "holder@example.com"
    assert set(ticket) == {
        "id", "reference", "title", "description", "category", "status", "priority",
        "customerName", "customerEmail", "policyNumber", "createdAt", "updatedAt",
    }


def test_lookup_reference_tries_other_columns(monkeypatch, tmp_path):
    store = configure_store(
        monkeypatch,
        tmp_path,
        schema="""
        CREATE TABLE tickets (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            reference TEXT,
            title TEXT,
            description TEXT NOT NULL,
            customer_email TEXT,
            created_at TIMESTAMP
        )
        """,
    )
    seed_ticket(store, reference="REF-9", title="Late payout")
    client = insighta_app.app.test_client()

    response = client.get("/api/tickets", query_string={"reference": "REF-9"})

    assert response.status_code == 200
    assert response.get_json()["tickets"][0]["reference"] == "REF-9"


def test_lookup_without_match_is_404(monkeypatch, tmp_path):
    store = configure_store(monkeypatch, tmp_path)
    seed_ticket(store)
    client = insighta_app.app.test_client()

    by_reference = client.get("/api/tickets", query_string={"reference": "INS-999999"})
    by_policy = client.get("/api/tickets", query_string={"policyNumber": "NOPE"})

    assert by_reference.status_code == 404
    assert by_policy.status_code == 404
    assert by_policy.get_json() == {"error": "No tickets found."}


def test_lookup_orders_newest_first_and_clamps_limit(monkeypatch, tmp_path):
    store = configure_store(monkeypatch, tmp_path)
    seed_ticket(store, title="Oldest", created_at=datetime(2026, 1, 1, 9, 0))
    seed_ticket(store, title="Newest", created_at=datetime(2026, 3, 1, 9, 0))
    seed_ticket(store, title="Middle", created_at=datetime(2026, 2, 1, 9, 0))
    client = insighta_app.app.test_client()

    everything = client.get("/api/tickets", query_string={"email": "holder@example.com", "limit": "abc"})
    one = client.get("/api/tickets", query_string={"email": "holder@example.com", "limit": "0"})

    assert [t["title"] for t in everything.get_json()["tickets"]] == ["Newest", "Middle", "Oldest"]
    assert one.get_json()["count"] == 1
    assert one.get_json()["tickets"][0]["title"] == "Newest"


def test_lookup_store_failure_is_500(monkeypatch):
    monkeypatch.setitem(insighta_app.app.config, "TICKET_STORE", FailingStore())
    client = insighta_app.app.test_client()

    response = client.get("/api/tickets", query_string={"policyNumber": "POL-1"})

    assert response.status_code == 500
    assert response.get_json()["error"] == "Failed to look up tickets."
