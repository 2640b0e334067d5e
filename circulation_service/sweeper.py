import logging
from dataclasses import dataclass, field
from typing import List

from sqlalchemy import select

from .db import unit_of_work
from .locking import book_key
from .models import (
    ACTIVE_RESERVATION_STATES,
    Reservation,
    ReservationStatus,
    is_expired,
)

logger = logging.getLogger(__name__)


@dataclass
class SweepFailure:
    reservation_id: int
    error: str


@dataclass
class SweepResult:
    expired_count: int = 0
    processed: List[int] = field(default_factory=list)
    skipped: List[int] = field(default_factory=list)
    failures: List[SweepFailure] = field(default_factory=list)


class ExpirySweeper:
    """
    Retires pending and approved reservations whose hold ran out.

    Meant to be invoked by an external scheduler (e.g. hourly). Every
    reservation is retired in its own transaction under its book's lock, so
    the sweep interleaves with live requests and one bad record cannot stop
    the rest.
    """

    def __init__(self, session_factory, locks, reservations, inventory):
        self.session_factory = session_factory
        self.locks = locks
        self.reservations = reservations
        self.inventory = inventory

    def find_candidates(self, now):
        session = self.session_factory()
        try:
            rows = session.execute(
                select(
                    Reservation.id,
                    Reservation.book_id,
                    Reservation.status,
                    Reservation.queue_position,
                ).where(
                    Reservation.status.in_(ACTIVE_RESERVATION_STATES),
                    Reservation.expires_at < now,
                )
            ).all()
        finally:
            session.close()

        # Expired pending entries leave the line first; otherwise an approved
        # expiry would promote a reservation that is itself already stale.
        rows = sorted(
            rows,
            key=lambda row: (
                row.status != ReservationStatus.PENDING,
                row.book_id,
                row.queue_position or 0,
                row.id,
            ),
        )
        return [(row.id, row.book_id) for row in rows]

    def sweep_expired(self, now):
        result = SweepResult()
        for reservation_id, book_id in self.find_candidates(now):
            try:
                with unit_of_work(self.session_factory, self.locks, book_key(book_id)) as session:
                    expired = self._expire_one(session, reservation_id, now)
            except Exception as e:
                logger.warning("Error expiring reservation %s: %s", reservation_id, e)
                result.failures.append(SweepFailure(reservation_id, str(e)))
                continue
            if expired:
                result.expired_count += 1
                result.processed.append(reservation_id)
            else:
                result.skipped.append(reservation_id)

        logger.info(
            "Expiry sweep: %d expired, %d skipped, %d failed",
            result.expired_count,
            len(result.skipped),
            len(result.failures),
        )
        return result

    def _expire_one(self, session, reservation_id, now):
        reservation = session.execute(
            select(Reservation).where(Reservation.id == reservation_id).with_for_update()
        ).scalar_one_or_none()
        # cancelled, completed or promoted (new expiry) since candidates were read
        if reservation is None or not is_expired(reservation, now):
            return False

        book = self.inventory.lock_item(session, reservation.book_id)
        self.reservations.retire(session, reservation, book, ReservationStatus.EXPIRED, now)
        logger.info("Reservation %s expired", reservation.id)
        return True
