import logging
import math
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy import and_, case, func, select

from .db import paginate
from .errors import Duplicate, InvalidState, LimitExceeded, NotFound, Unauthorized, Unavailable
from .models import Loan, LoanStatus, User, is_overdue

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60


def days_overdue(due_at, at):
    """Whole days past ``due_at``; any started day counts as a full one."""
    if at <= due_at:
        return 0
    return math.ceil((at - due_at).total_seconds() / SECONDS_PER_DAY)


def assess_fine(due_at, at, rate_per_day):
    days = days_overdue(due_at, at)
    return days, days * rate_per_day


@dataclass
class ReturnReceipt:
    loan: Loan
    days_overdue: int
    fine_amount: int
    fine_rate: int

    @property
    def fine_paid(self):
        return self.loan.fine_paid


@dataclass
class LoanSummary:
    loan: Loan
    days_remaining: int
    is_overdue: bool
    days_overdue: int
    estimated_fine: int


@dataclass
class LoanStats:
    total_loans: int
    active: int
    returned: int
    lost: int
    overdue: int
    total_fines: int
    unpaid_fines: int
    unpaid_count: int


class BorrowingLedger:
    def __init__(
        self,
        inventory,
        advancer,
        max_active_loans=5,
        default_loan_days=14,
        fine_rate_per_day=5,
        lost_book_penalty=500,
    ):
        self.inventory = inventory
        self.advancer = advancer
        self.max_active_loans = max_active_loans
        self.default_loan_days = default_loan_days
        self.fine_rate_per_day = fine_rate_per_day
        self.lost_book_penalty = lost_book_penalty

    # ----------------- lookups -----------------

    def peek(self, session, loan_id):
        loan = session.get(Loan, loan_id)
        if loan is None:
            raise NotFound(f"Loan {loan_id} not found")
        return loan

    def _lock_loan(self, session, loan_id):
        loan = session.execute(
            select(Loan).where(Loan.id == loan_id).with_for_update()
        ).scalar_one_or_none()
        if loan is None:
            raise NotFound(f"Loan {loan_id} not found")
        return loan

    def active_loans(self, session, holder_id):
        return session.execute(
            select(Loan).where(
                Loan.user_id == holder_id,
                Loan.status == LoanStatus.ACTIVE,
            )
        ).scalars().all()

    # ----------------- lifecycle -----------------

    def create_loan(self, session, holder_id, book_id, now, loan_days=None):
        if loan_days is None:
            loan_days = self.default_loan_days
        if loan_days < 1:
            raise ValueError("loan_days must be at least 1")

        if session.get(User, holder_id) is None:
            raise NotFound(f"User {holder_id} not found")
        book = self.inventory.lock_item(session, book_id)

        active = self.active_loans(session, holder_id)
        if len(active) >= self.max_active_loans:
            raise LimitExceeded(
                f"User {holder_id} has reached the maximum of "
                f"{self.max_active_loans} active loans"
            )
        if any(loan.book_id == book.id for loan in active):
            raise Duplicate(f"User {holder_id} already holds book {book.id}")

        if not self.inventory.try_debit(session, book):
            raise Unavailable(f"No copies of book {book.id} available")

        loan = Loan(
            user_id=holder_id,
            book_id=book.id,
            borrowed_at=now,
            due_at=now + timedelta(days=loan_days),
            status=LoanStatus.ACTIVE,
            fine_amount=0,
            fine_paid=False,
        )
        session.add(loan)
        session.flush()
        logger.info("Loan %s: user %s borrowed book %s", loan.id, holder_id, book.id)
        return loan

    def return_loan(self, session, loan_id, actor_id, is_admin, now):
        loan = self._lock_loan(session, loan_id)
        if not is_admin and loan.user_id != actor_id:
            raise Unauthorized(f"Not authorized to return loan {loan_id}")
        if loan.status != LoanStatus.ACTIVE:
            raise InvalidState(f"Loan {loan_id} is {loan.status.value.lower()}")

        book = self.inventory.lock_item(session, loan.book_id)
        days, fine = assess_fine(loan.due_at, now, self.fine_rate_per_day)

        loan.returned_at = now
        loan.status = LoanStatus.RETURNED
        loan.fine_amount = fine
        loan.fine_paid = fine == 0

        self.inventory.credit(session, book)
        self.advancer.advance(session, book, now)

        if fine:
            logger.info("Loan %s returned %d day(s) late, fine %d", loan.id, days, fine)
        else:
            logger.info("Loan %s returned on time", loan.id)
        return ReturnReceipt(
            loan=loan,
            days_overdue=days,
            fine_amount=fine,
            fine_rate=self.fine_rate_per_day,
        )

    def mark_lost(self, session, loan_id, actor_id, is_admin):
        loan = self._lock_loan(session, loan_id)
        if not is_admin and loan.user_id != actor_id:
            raise Unauthorized(f"Not authorized to mark loan {loan_id} as lost")
        if loan.status in (LoanStatus.RETURNED, LoanStatus.LOST):
            raise InvalidState(
                f"Cannot mark loan {loan_id} as lost, it is {loan.status.value.lower()}"
            )

        # the copy is gone: no credit and no queue advance
        book = self.inventory.lock_item(session, loan.book_id)
        penalty = book.price or self.lost_book_penalty
        loan.fine_amount = loan.fine_amount + penalty
        loan.fine_paid = False
        loan.status = LoanStatus.LOST
        logger.info("Loan %s marked lost, penalty %d", loan.id, penalty)
        return loan

    def settle_fine(self, session, loan_id):
        loan = self._lock_loan(session, loan_id)
        if loan.fine_amount <= 0 or loan.fine_paid:
            raise InvalidState(f"Loan {loan_id} has no outstanding fine")
        loan.fine_paid = True
        logger.info("Fine of %d on loan %s settled", loan.fine_amount, loan.id)
        return loan

    # ----------------- reporting -----------------

    def summarize(self, loan, now):
        remaining = math.ceil((loan.due_at - now).total_seconds() / SECONDS_PER_DAY)
        overdue = is_overdue(loan, now)
        days = days_overdue(loan.due_at, now) if overdue else 0
        return LoanSummary(
            loan=loan,
            days_remaining=remaining,
            is_overdue=overdue,
            days_overdue=days,
            estimated_fine=days * self.fine_rate_per_day,
        )

    def list_active_loans(self, session, holder_id, now):
        if session.get(User, holder_id) is None:
            raise NotFound(f"User {holder_id} not found")
        loans = sorted(self.active_loans(session, holder_id), key=lambda l: l.due_at)
        return [self.summarize(loan, now) for loan in loans]

    def list_overdue_loans(self, session, now):
        loans = session.execute(
            select(Loan)
            .where(Loan.status == LoanStatus.ACTIVE, Loan.due_at < now)
            .order_by(Loan.due_at)
        ).scalars().all()
        return [self.summarize(loan, now) for loan in loans]

    def list_unpaid_fines(self, session, holder_id=None):
        q = select(Loan).where(Loan.fine_amount > 0, Loan.fine_paid.is_(False))
        if holder_id is not None:
            q = q.where(Loan.user_id == holder_id)
        return session.execute(q.order_by(Loan.id)).scalars().all()

    def get_loan(self, session, loan_id, actor_id, is_admin):
        loan = self.peek(session, loan_id)
        if not is_admin and loan.user_id != actor_id:
            raise Unauthorized(f"Not authorized to view loan {loan_id}")
        return loan

    def list_loans(self, session, holder_id=None, status=None, page=1, limit=20):
        """Full loan history, newest first, one page at a time."""
        q = select(Loan)
        if holder_id is not None:
            q = q.where(Loan.user_id == holder_id)
        if status is not None:
            q = q.where(Loan.status == LoanStatus(status))
        q = q.order_by(Loan.borrowed_at.desc(), Loan.id.desc())
        return paginate(session, q, page=page, limit=limit)

    def loan_stats(self, session, now, holder_id=None):
        if holder_id is not None and session.get(User, holder_id) is None:
            raise NotFound(f"User {holder_id} not found")

        def count_where(*conditions):
            return func.coalesce(func.sum(case((and_(*conditions), 1), else_=0)), 0)

        unpaid = and_(Loan.fine_amount > 0, Loan.fine_paid.is_(False))
        q = select(
            func.count(Loan.id),
            count_where(Loan.status == LoanStatus.ACTIVE),
            count_where(Loan.status == LoanStatus.RETURNED),
            count_where(Loan.status == LoanStatus.LOST),
            count_where(Loan.status == LoanStatus.ACTIVE, Loan.due_at < now),
            func.coalesce(func.sum(Loan.fine_amount), 0),
            func.coalesce(func.sum(case((unpaid, Loan.fine_amount), else_=0)), 0),
            count_where(unpaid),
        )
        if holder_id is not None:
            q = q.where(Loan.user_id == holder_id)
        row = session.execute(q).one()
        return LoanStats(*(int(value) for value in row))
