import logging

from .advancer import QueueAdvancer
from .catalog_sync import CatalogSync
from .config import Config
from .db import make_engine, make_session_factory, unit_of_work
from .inventory import InventoryCounter
from .lending import BorrowingLedger
from .locking import KeyedLocks, book_key, user_key
from .models import utcnow
from .reservations import ReservationQueue
from .sweeper import ExpirySweeper

logger = logging.getLogger(__name__)


class CirculationService:
    """
    Entry point for every lending and reservation operation.

    Each call runs in one database transaction while holding the lock of the
    book it touches (and of the holder, where a holder-wide limit is
    checked). Inventory changes, queue compaction and promotion therefore
    commit together or not at all.
    """

    def __init__(self, session_factory, config=Config, clock=utcnow):
        self.session_factory = session_factory
        self.config = config
        self.clock = clock
        self.locks = KeyedLocks(timeout=config.ITEM_LOCK_TIMEOUT)

        self.catalog_sync = CatalogSync(
            session_factory,
            base_url=config.CATALOG_SYNC_URL,
            api_key=config.SERVICE_API_KEY,
            timeout=config.CATALOG_SYNC_TIMEOUT,
        )
        self.inventory = InventoryCounter(self.catalog_sync)
        self.advancer = QueueAdvancer(self.inventory, hold_days=config.RESERVATION_HOLD_DAYS)
        self.ledger = BorrowingLedger(
            self.inventory,
            self.advancer,
            max_active_loans=config.MAX_ACTIVE_LOANS,
            default_loan_days=config.DEFAULT_LOAN_DAYS,
            fine_rate_per_day=config.FINE_RATE_PER_DAY,
            lost_book_penalty=config.LOST_BOOK_PENALTY,
        )
        self.reservations = ReservationQueue(
            self.inventory, self.advancer, hold_days=config.RESERVATION_HOLD_DAYS
        )
        self.sweeper = ExpirySweeper(
            session_factory, self.locks, self.reservations, self.inventory
        )

    @classmethod
    def from_config(cls, config=Config, clock=utcnow):
        engine = make_engine(config.SQLALCHEMY_DATABASE_URI, echo=config.SQLALCHEMY_ECHO)
        return cls(make_session_factory(engine), config=config, clock=clock)

    # ----------------- helpers -----------------

    def _transaction(self, *keys):
        return unit_of_work(self.session_factory, self.locks, *keys)

    def _read(self, fn):
        session = self.session_factory()
        try:
            return fn(session)
        finally:
            session.close()

    def _loan_book(self, loan_id):
        return self._read(lambda s: self.ledger.peek(s, loan_id).book_id)

    def _reservation_book(self, reservation_id):
        return self._read(lambda s: self.reservations.peek(s, reservation_id).book_id)

    def _publish(self):
        self.catalog_sync.flush()

    def _page_size(self, limit):
        if limit is None:
            return self.config.DEFAULT_PAGE_SIZE
        return min(limit, self.config.MAX_PAGE_SIZE)

    # ----------------- loans -----------------

    def create_loan(self, holder_id, book_id, loan_days=None):
        with self._transaction(user_key(holder_id), book_key(book_id)) as session:
            loan = self.ledger.create_loan(
                session, holder_id, book_id, self.clock(), loan_days=loan_days
            )
        self._publish()
        return loan

    def return_loan(self, loan_id, actor_id, is_admin=False):
        book_id = self._loan_book(loan_id)
        with self._transaction(book_key(book_id)) as session:
            receipt = self.ledger.return_loan(
                session, loan_id, actor_id, is_admin, self.clock()
            )
        self._publish()
        return receipt

    def mark_lost(self, loan_id, actor_id, is_admin=False):
        book_id = self._loan_book(loan_id)
        with self._transaction(book_key(book_id)) as session:
            return self.ledger.mark_lost(session, loan_id, actor_id, is_admin)

    def settle_fine(self, loan_id):
        book_id = self._loan_book(loan_id)
        with self._transaction(book_key(book_id)) as session:
            return self.ledger.settle_fine(session, loan_id)

    def list_active_loans(self, holder_id):
        return self._read(
            lambda s: self.ledger.list_active_loans(s, holder_id, self.clock())
        )

    def list_overdue_loans(self):
        return self._read(lambda s: self.ledger.list_overdue_loans(s, self.clock()))

    def list_unpaid_fines(self, holder_id=None):
        return self._read(lambda s: self.ledger.list_unpaid_fines(s, holder_id))

    def get_loan(self, loan_id, actor_id, is_admin=False):
        return self._read(lambda s: self.ledger.get_loan(s, loan_id, actor_id, is_admin))

    def list_loans(self, holder_id=None, status=None, page=1, limit=None):
        limit = self._page_size(limit)
        return self._read(
            lambda s: self.ledger.list_loans(
                s, holder_id=holder_id, status=status, page=page, limit=limit
            )
        )

    def loan_stats(self, holder_id=None):
        return self._read(
            lambda s: self.ledger.loan_stats(s, self.clock(), holder_id=holder_id)
        )

    # ----------------- reservations -----------------

    def create_reservation(self, holder_id, book_id):
        with self._transaction(user_key(holder_id), book_key(book_id)) as session:
            reservation = self.reservations.create_reservation(
                session, holder_id, book_id, self.clock()
            )
        self._publish()
        return reservation

    def cancel_reservation(self, reservation_id, actor_id, is_admin=False):
        book_id = self._reservation_book(reservation_id)
        with self._transaction(book_key(book_id)) as session:
            reservation = self.reservations.cancel_reservation(
                session, reservation_id, actor_id, is_admin, self.clock()
            )
        self._publish()
        return reservation

    def complete_reservation(self, reservation_id):
        book_id = self._reservation_book(reservation_id)
        with self._transaction(book_key(book_id)) as session:
            reservation = self.reservations.complete_reservation(
                session, reservation_id, self.clock()
            )
        self._publish()
        return reservation

    def get_reservation(self, reservation_id, actor_id, is_admin=False):
        return self._read(
            lambda s: self.reservations.get_reservation(s, reservation_id, actor_id, is_admin)
        )

    def list_reservations(self, holder_id=None, book_id=None, status=None, page=1, limit=None):
        limit = self._page_size(limit)
        return self._read(
            lambda s: self.reservations.list_reservations(
                s, holder_id=holder_id, book_id=book_id, status=status, page=page, limit=limit
            )
        )

    def get_queue_status(self, book_id):
        with self._transaction(book_key(book_id)) as session:
            return self.reservations.get_queue_status(session, book_id)

    # ----------------- periodic -----------------

    def sweep_expired(self):
        result = self.sweeper.sweep_expired(self.clock())
        if result.expired_count:
            self._publish()
        return result

    def retry_sync(self):
        return self.catalog_sync.flush()
