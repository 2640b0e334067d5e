import json

import pytest
import requests
from sqlalchemy import func, select

from circulation_service.models import PendingSyncEvent
from circulation_service.service import CirculationService


class FakeResponse:
    def __init__(self, status_code):
        self.status_code = status_code


@pytest.fixture
def synced_service(session_factory, config, clock):
    synced = type("SyncedConfig", (config,), {"CATALOG_SYNC_URL": "http://catalog.local/"})
    return CirculationService(session_factory, config=synced, clock=clock)


def pending_events(session_factory):
    session = session_factory()
    try:
        return session.execute(select(func.count()).select_from(PendingSyncEvent)).scalar_one()
    finally:
        session.close()


def test_availability_changes_are_published(synced_service, session_factory, make_book, make_users, monkeypatch):
    sent = []

    def fake_post(url, json=None, headers=None, timeout=None):
        sent.append((url, json, headers))
        return FakeResponse(200)

    monkeypatch.setattr(requests, "post", fake_post)
    book_id = make_book(copies=2)
    (user,) = make_users(1)

    loan = synced_service.create_loan(user, book_id)
    synced_service.return_loan(loan.id, user)

    assert [payload["available_copies"] for _, payload, _ in sent] == [1, 2]
    url, payload, headers = sent[0]
    assert url == "http://catalog.local/api/global/sync/availability"
    assert headers == {"X-API-Key": "test-key"}
    assert payload["total_copies"] == 2
    assert pending_events(session_factory) == 0


def test_undelivered_events_wait_for_retry(synced_service, session_factory, make_book, make_users, monkeypatch):
    def unreachable(*args, **kwargs):
        raise requests.ConnectionError("catalog down")

    monkeypatch.setattr(requests, "post", unreachable)
    book_id = make_book(copies=3)
    a, b = make_users(2)
    synced_service.create_loan(a, book_id)
    synced_service.create_reservation(b, book_id)
    assert pending_events(session_factory) == 2

    delivered = []

    def fake_post(url, json=None, headers=None, timeout=None):
        delivered.append(json)
        return FakeResponse(200)

    monkeypatch.setattr(requests, "post", fake_post)
    assert synced_service.retry_sync() == 2
    assert [p["available_copies"] for p in delivered] == [2, 1]
    assert pending_events(session_factory) == 0


def test_rejected_event_stops_delivery_in_order(synced_service, session_factory, make_book, make_users, monkeypatch):
    monkeypatch.setattr(requests, "post", lambda *a, **kw: FakeResponse(500))
    book_id = make_book(copies=2)
    (user,) = make_users(1)
    synced_service.create_loan(user, book_id)
    assert synced_service.retry_sync() == 0
    assert pending_events(session_factory) == 1

    session = session_factory()
    try:
        evt = session.execute(select(PendingSyncEvent)).scalar_one()
        assert json.loads(evt.payload)["status"] == "available"
        assert evt.available_copies == 1
    finally:
        session.close()


def test_sync_disabled_records_nothing(service, session_factory, make_book, make_users):
    book_id = make_book()
    (user,) = make_users(1)
    service.create_loan(user, book_id)
    assert pending_events(session_factory) == 0
    assert service.retry_sync() == 0
