from datetime import datetime, timedelta

import pytest
from sqlalchemy import select

from circulation_service.app import create_app
from circulation_service.config import Config
from circulation_service.db import make_engine, make_session_factory
from circulation_service.models import Book, Reservation, ReservationStatus, User
from circulation_service.service import CirculationService


class LocalConfig(Config):
    SERVICE_API_KEY = "test-key"
    ITEM_LOCK_TIMEOUT = 10
    CATALOG_SYNC_URL = ""
    DEFAULT_LOAN_DAYS = 14
    MAX_ACTIVE_LOANS = 5
    FINE_RATE_PER_DAY = 5
    LOST_BOOK_PENALTY = 500
    RESERVATION_HOLD_DAYS = 2


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)

    def set(self, now):
        self.now = now


@pytest.fixture
def config():
    return LocalConfig


@pytest.fixture
def engine(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'circulation.db'}")
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def clock():
    return Clock(datetime(2024, 1, 1, 9, 0, 0))


@pytest.fixture
def service(session_factory, config, clock):
    return CirculationService(session_factory, config=config, clock=clock)


@pytest.fixture
def client(service, config):
    app = create_app(config, service=service)
    app.config["TESTING"] = True
    return app.test_client()


@pytest.fixture
def make_book(session_factory):
    counter = {"n": 0}

    def _make_book(copies=1, available=None, price=None, discontinued=False, title=None):
        counter["n"] += 1
        session = session_factory()
        try:
            book = Book(
                isbn=f"978-{counter['n']:010d}",
                title=title or f"Book {counter['n']}",
                author="Some Author",
                price=price,
                total_copies=copies,
                available_copies=copies if available is None else available,
                discontinued=discontinued,
            )
            session.add(book)
            session.commit()
            return book.id
        finally:
            session.close()

    return _make_book


@pytest.fixture
def make_users(session_factory):
    counter = {"n": 0}

    def _make_users(count=1):
        session = session_factory()
        try:
            users = []
            for _ in range(count):
                counter["n"] += 1
                n = counter["n"]
                users.append(
                    User(external_id=f"ext-{n}", name=f"Reader {n}", email=f"reader{n}@example.com")
                )
            session.add_all(users)
            session.commit()
            return [u.id for u in users]
        finally:
            session.close()

    return _make_users


@pytest.fixture
def inspect_book(session_factory):
    def _inspect(book_id):
        session = session_factory()
        try:
            book = session.get(Book, book_id)
            pending = session.execute(
                select(Reservation)
                .where(
                    Reservation.book_id == book_id,
                    Reservation.status == ReservationStatus.PENDING,
                )
                .order_by(Reservation.queue_position)
            ).scalars().all()
            return {
                "available": book.available_copies,
                "total": book.total_copies,
                "pending": [(r.user_id, r.queue_position) for r in pending],
            }
        finally:
            session.close()

    return _inspect
