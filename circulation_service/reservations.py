import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import List

from sqlalchemy import func, select

from .db import paginate
from .errors import Discontinued, Duplicate, InvalidState, NotFound, Unauthorized
from .models import (
    ACTIVE_RESERVATION_STATES,
    Reservation,
    ReservationStatus,
    User,
)
from .positions import is_contiguous, next_position

logger = logging.getLogger(__name__)


@dataclass
class QueueEntry:
    reservation_id: int
    user_id: int
    queue_position: int
    expires_at: object
    created_at: object


@dataclass
class QueueStatus:
    book_id: int
    title: str
    available_copies: int
    pending_count: int
    approved_count: int
    queue: List[QueueEntry] = field(default_factory=list)


class ReservationQueue:
    def __init__(self, inventory, advancer, hold_days=2):
        self.inventory = inventory
        self.advancer = advancer
        self.hold_days = hold_days

    def peek(self, session, reservation_id):
        reservation = session.get(Reservation, reservation_id)
        if reservation is None:
            raise NotFound(f"Reservation {reservation_id} not found")
        return reservation

    def _lock_reservation(self, session, reservation_id):
        reservation = session.execute(
            select(Reservation).where(Reservation.id == reservation_id).with_for_update()
        ).scalar_one_or_none()
        if reservation is None:
            raise NotFound(f"Reservation {reservation_id} not found")
        return reservation

    def find_active(self, session, holder_id, book_id):
        return session.execute(
            select(Reservation).where(
                Reservation.user_id == holder_id,
                Reservation.book_id == book_id,
                Reservation.status.in_(ACTIVE_RESERVATION_STATES),
            )
        ).scalars().first()

    # ----------------- lifecycle -----------------

    def create_reservation(self, session, holder_id, book_id, now):
        if session.get(User, holder_id) is None:
            raise NotFound(f"User {holder_id} not found")
        book = self.inventory.lock_item(session, book_id)
        if book.discontinued:
            raise Discontinued(f"Book {book.id} is no longer available for reservation")

        existing = self.find_active(session, holder_id, book.id)
        if existing is not None:
            raise Duplicate(
                f"User {holder_id} already has a {existing.status.value.lower()} "
                f"reservation for book {book.id}"
            )

        reservation = Reservation(
            user_id=holder_id,
            book_id=book.id,
            expires_at=now + timedelta(days=self.hold_days),
            created_at=now,
        )
        if self.inventory.try_debit(session, book):
            reservation.status = ReservationStatus.APPROVED
            reservation.queue_position = None
            reservation.approved_at = now
        else:
            positions = [r.queue_position for r in self.advancer.pending_queue(session, book.id)]
            reservation.status = ReservationStatus.PENDING
            reservation.queue_position = next_position(positions)

        session.add(reservation)
        session.flush()
        logger.info(
            "Reservation %s: user %s on book %s is %s%s",
            reservation.id,
            holder_id,
            book.id,
            reservation.status.value.lower(),
            f" at position {reservation.queue_position}" if reservation.queue_position else "",
        )
        return reservation

    def cancel_reservation(self, session, reservation_id, actor_id, is_admin, now):
        reservation = self._lock_reservation(session, reservation_id)
        if not is_admin and reservation.user_id != actor_id:
            raise Unauthorized(f"Not authorized to cancel reservation {reservation_id}")
        if reservation.status not in ACTIVE_RESERVATION_STATES:
            raise InvalidState(
                f"Cannot cancel reservation {reservation_id}, it is "
                f"{reservation.status.value.lower()}"
            )

        book = self.inventory.lock_item(session, reservation.book_id)
        self.retire(session, reservation, book, ReservationStatus.CANCELLED, now)
        reservation.cancelled_at = now
        logger.info("Reservation %s cancelled", reservation.id)
        return reservation

    def complete_reservation(self, session, reservation_id, now):
        reservation = self._lock_reservation(session, reservation_id)
        if reservation.status != ReservationStatus.APPROVED:
            raise InvalidState(
                f"Only approved reservations can be completed, "
                f"reservation {reservation_id} is {reservation.status.value.lower()}"
            )

        book = self.inventory.lock_item(session, reservation.book_id)
        reservation.status = ReservationStatus.COMPLETED
        reservation.completed_at = now
        # the collected copy stays debited
        self.advancer.advance(session, book, now)
        logger.info("Reservation %s completed", reservation.id)
        return reservation

    def retire(self, session, reservation, book, final_status, now):
        """
        Move an active reservation to a terminal state and release what it
        held: an approved one gives its copy back, a pending one its place.
        """
        was_approved = reservation.status == ReservationStatus.APPROVED
        old_position = reservation.queue_position

        reservation.status = final_status
        reservation.queue_position = None

        if was_approved:
            self.inventory.credit(session, book)
            self.advancer.advance(session, book, now)
        else:
            self.advancer.close_gap(session, book.id, old_position)

    # ----------------- queries -----------------

    def get_reservation(self, session, reservation_id, actor_id, is_admin):
        reservation = self.peek(session, reservation_id)
        if not is_admin and reservation.user_id != actor_id:
            raise Unauthorized(f"Not authorized to view reservation {reservation_id}")
        return reservation

    def list_reservations(
        self, session, holder_id=None, book_id=None, status=None, page=1, limit=20
    ):
        q = select(Reservation)
        if holder_id is not None:
            q = q.where(Reservation.user_id == holder_id)
        if book_id is not None:
            q = q.where(Reservation.book_id == book_id)
        if status is not None:
            q = q.where(Reservation.status == ReservationStatus(status))
        q = q.order_by(Reservation.created_at.desc(), Reservation.id.desc())
        return paginate(session, q, page=page, limit=limit)

    def get_queue_status(self, session, book_id):
        book = self.inventory.lock_item(session, book_id)
        pending = self.advancer.pending_queue(session, book.id)
        approved_count = session.execute(
            select(func.count())
            .select_from(Reservation)
            .where(
                Reservation.book_id == book.id,
                Reservation.status == ReservationStatus.APPROVED,
            )
        ).scalar_one()

        if not is_contiguous(r.queue_position for r in pending):
            logger.error(
                "Queue for book %s is not contiguous: %s",
                book.id,
                [r.queue_position for r in pending],
            )

        return QueueStatus(
            book_id=book.id,
            title=book.title,
            available_copies=book.available_copies,
            pending_count=len(pending),
            approved_count=approved_count,
            queue=[
                QueueEntry(
                    reservation_id=r.id,
                    user_id=r.user_id,
                    queue_position=r.queue_position,
                    expires_at=r.expires_at,
                    created_at=r.created_at,
                )
                for r in pending
            ],
        )
