import logging

from sqlalchemy import select

from .errors import NotFound
from .models import Book

logger = logging.getLogger(__name__)


class InventoryCounter:
    """
    Owns ``Book.available_copies``.

    Callers must hold the book's lock and have loaded the row through
    ``lock_item`` in the current transaction; the counter itself never
    commits.
    """

    def __init__(self, catalog_sync=None):
        self.catalog_sync = catalog_sync

    def lock_item(self, session, book_id):
        book = session.execute(
            select(Book).where(Book.id == book_id).with_for_update()
        ).scalar_one_or_none()
        if book is None:
            raise NotFound(f"Book {book_id} not found")
        return book

    def try_debit(self, session, book):
        """Take one copy. Returns False when none is left."""
        if book.available_copies <= 0:
            return False
        book.available_copies -= 1
        self._changed(session, book)
        return True

    def credit(self, session, book):
        """Put one copy back. Returns False if the shelf is already full."""
        if book.available_copies >= book.total_copies:
            logger.warning(
                "Refusing credit for book %s: already %d/%d available",
                book.id,
                book.available_copies,
                book.total_copies,
            )
            return False
        book.available_copies += 1
        self._changed(session, book)
        return True

    def _changed(self, session, book):
        logger.info(
            "Book %s availability now %d/%d",
            book.id,
            book.available_copies,
            book.total_copies,
        )
        if self.catalog_sync is not None:
            self.catalog_sync.record(session, book)
