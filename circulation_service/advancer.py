import logging
from datetime import timedelta

from sqlalchemy import select

from .models import Reservation, ReservationStatus
from .positions import compact_positions

logger = logging.getLogger(__name__)


class QueueAdvancer:
    """
    Hands a freed copy to the head of a book's waiting line.

    Runs inside the transaction (and under the book lock) of whatever freed
    the copy, so a credit and the promotion it triggers commit together.
    """

    def __init__(self, inventory, hold_days=2):
        self.inventory = inventory
        self.hold_days = hold_days

    def pending_queue(self, session, book_id):
        return session.execute(
            select(Reservation)
            .where(
                Reservation.book_id == book_id,
                Reservation.status == ReservationStatus.PENDING,
            )
            .order_by(Reservation.queue_position)
            .with_for_update()
        ).scalars().all()

    def advance(self, session, book, now):
        """
        Promote the first pending reservation for ``book`` if a copy is free.
        Returns the promoted reservation, or None when there was nothing to do.
        """
        if book.available_copies <= 0:
            return None

        queue = self.pending_queue(session, book.id)
        if not queue:
            return None
        head = queue[0]

        if not self.inventory.try_debit(session, book):
            return None

        old_position = head.queue_position
        head.status = ReservationStatus.APPROVED
        head.queue_position = None
        head.approved_at = now
        head.expires_at = now + timedelta(days=self.hold_days)
        logger.info(
            "Promoted reservation %s for book %s from position %s",
            head.id,
            book.id,
            old_position,
        )

        self.close_gap(session, book.id, old_position)
        return head

    def close_gap(self, session, book_id, removed_position):
        """Shift every pending reservation behind ``removed_position`` up one place."""
        if removed_position is None:
            return
        queue = self.pending_queue(session, book_id)
        compacted = compact_positions(
            {r.id: r.queue_position for r in queue}, removed_position
        )
        for r in queue:
            if r.id in compacted:
                r.queue_position = compacted[r.id]
