import pytest

from circulation_service.models import ReservationStatus


def test_sweep_expires_approved_and_pending(service, make_book, make_users, inspect_book, clock):
    book_id = make_book(copies=1)
    a, b = make_users(2)
    approved = service.create_reservation(a, book_id)
    pending = service.create_reservation(b, book_id)
    assert approved.status == ReservationStatus.APPROVED
    assert pending.queue_position == 1

    clock.advance(days=3)
    result = service.sweep_expired()

    assert result.expired_count == 2
    assert sorted(result.processed) == sorted([approved.id, pending.id])
    assert result.failures == []
    assert service.get_reservation(approved.id, a).status == ReservationStatus.EXPIRED
    expired_pending = service.get_reservation(pending.id, b)
    assert expired_pending.status == ReservationStatus.EXPIRED
    assert expired_pending.queue_position is None
    state = inspect_book(book_id)
    assert state["available"] == 1
    assert state["pending"] == []


def test_sweep_promotes_live_waiter(service, make_book, make_users, inspect_book, clock):
    book_id = make_book(copies=1)
    a, b = make_users(2)
    stale = service.create_reservation(a, book_id)
    clock.advance(days=1)
    waiting = service.create_reservation(b, book_id)

    clock.advance(days=1, hours=1)
    result = service.sweep_expired()

    assert result.processed == [stale.id]
    promoted = service.get_reservation(waiting.id, b)
    assert promoted.status == ReservationStatus.APPROVED
    assert promoted.approved_at == clock.now
    assert inspect_book(book_id)["available"] == 0


def test_sweep_compacts_around_expired_pending(service, make_book, make_users, inspect_book, clock):
    book_id = make_book(copies=1, available=0)
    a, b, c = make_users(3)
    service.create_reservation(a, book_id)
    clock.advance(days=1)
    service.create_reservation(b, book_id)
    service.create_reservation(c, book_id)

    clock.advance(days=1, hours=1)
    result = service.sweep_expired()

    assert result.expired_count == 1
    assert inspect_book(book_id)["pending"] == [(b, 1), (c, 2)]


def test_sweep_leaves_fresh_and_terminal_reservations(service, make_book, make_users, clock):
    book_id = make_book(copies=2)
    a, b = make_users(2)
    cancelled = service.create_reservation(a, book_id)
    service.cancel_reservation(cancelled.id, a)
    fresh = service.create_reservation(b, book_id)

    clock.advance(days=1)
    result = service.sweep_expired()

    assert result.expired_count == 0
    assert service.get_reservation(fresh.id, b).status == ReservationStatus.APPROVED


def test_sweep_isolates_failures(service, make_book, make_users, inspect_book, clock, monkeypatch):
    broken_book = make_book(copies=1)
    good_book = make_book(copies=1)
    a, b = make_users(2)
    broken = service.create_reservation(a, broken_book)
    good = service.create_reservation(b, good_book)

    original_retire = service.reservations.retire

    def flaky_retire(session, reservation, book, final_status, now):
        if reservation.id == broken.id:
            raise RuntimeError("disk on fire")
        return original_retire(session, reservation, book, final_status, now)

    monkeypatch.setattr(service.reservations, "retire", flaky_retire)

    clock.advance(days=3)
    result = service.sweep_expired()

    assert result.expired_count == 1
    assert result.processed == [good.id]
    assert len(result.failures) == 1
    assert result.failures[0].reservation_id == broken.id
    assert "disk on fire" in result.failures[0].error
    # the failed record rolled back untouched and is retried next sweep
    assert service.get_reservation(broken.id, a).status == ReservationStatus.APPROVED
    assert inspect_book(broken_book)["available"] == 0
    assert inspect_book(good_book)["available"] == 1

    monkeypatch.setattr(service.reservations, "retire", original_retire)
    retry = service.sweep_expired()
    assert retry.processed == [broken.id]


@pytest.mark.parametrize("hours_after", [0, 1])
def test_sweep_boundary(service, make_book, make_users, clock, hours_after):
    book_id = make_book(copies=1)
    (user,) = make_users(1)
    r = service.create_reservation(user, book_id)

    clock.set(r.expires_at)
    clock.advance(hours=hours_after)
    result = service.sweep_expired()

    # expiry requires expires_at strictly in the past
    assert result.expired_count == (1 if hours_after else 0)
