import enum
from datetime import datetime, timezone

from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)

Base = declarative_base()


def utcnow():
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class LoanStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    RETURNED = "RETURNED"
    OVERDUE = "OVERDUE"  # reserved, never assigned
    LOST = "LOST"


class ReservationStatus(str, enum.Enum):
    """
    Reservation lifecycle.

        PENDING -> APPROVED -> COMPLETED
        PENDING -> CANCELLED, APPROVED -> CANCELLED
        PENDING -> EXPIRED, APPROVED -> EXPIRED
    """
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    CANCELLED = "CANCELLED"
    COMPLETED = "COMPLETED"
    EXPIRED = "EXPIRED"


ACTIVE_RESERVATION_STATES = (ReservationStatus.PENDING, ReservationStatus.APPROVED)


class Book(Base):
    __tablename__ = "book"
    __table_args__ = (
        CheckConstraint(
            "available_copies >= 0 AND available_copies <= total_copies",
            name="ck_book_available_copies",
        ),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    isbn = Column(String(20), unique=True, nullable=False)
    title = Column(String(255), nullable=False)
    author = Column(String(255))
    # replacement cost charged when a copy is lost
    price = Column(Integer)
    total_copies = Column(Integer, nullable=False, default=1)
    available_copies = Column(Integer, nullable=False, default=1)
    discontinued = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    @property
    def status(self):
        if self.discontinued:
            return "discontinued"
        if self.available_copies <= 0:
            return "out-of-stock"
        return "available"


class User(Base):
    __tablename__ = "user"

    id = Column(Integer, primary_key=True, autoincrement=True)
    external_id = Column(String(100), unique=True, nullable=False)
    name = Column(String(255), nullable=False)
    email = Column(String(255), unique=True, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class Loan(Base):
    __tablename__ = "loan"
    __table_args__ = (
        # at most one active loan per holder and book
        Index(
            "uq_loan_active_holder_book",
            "user_id",
            "book_id",
            unique=True,
            sqlite_where=text("status = 'ACTIVE'"),
            postgresql_where=text("status = 'ACTIVE'"),
        ),
        CheckConstraint("fine_amount >= 0", name="ck_loan_fine_amount"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("user.id"), nullable=False)
    book_id = Column(Integer, ForeignKey("book.id"), nullable=False)
    borrowed_at = Column(DateTime, nullable=False, default=utcnow)
    due_at = Column(DateTime, nullable=False)
    returned_at = Column(DateTime)
    status = Column(
        Enum(LoanStatus, name="loan_status"),
        nullable=False,
        default=LoanStatus.ACTIVE,
    )
    fine_amount = Column(Integer, nullable=False, default=0)
    fine_paid = Column(Boolean, nullable=False, default=False)
    notes = Column(Text)

    user = relationship("User")
    book = relationship("Book")


class Reservation(Base):
    __tablename__ = "reservation"
    __table_args__ = (
        # at most one pending-or-approved reservation per holder and book
        Index(
            "uq_reservation_active_holder_book",
            "user_id",
            "book_id",
            unique=True,
            sqlite_where=text("status IN ('PENDING', 'APPROVED')"),
            postgresql_where=text("status IN ('PENDING', 'APPROVED')"),
        ),
        Index("ix_reservation_queue", "book_id", "status", "queue_position"),
        Index("ix_reservation_expiry", "expires_at", "status"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("user.id"), nullable=False)
    book_id = Column(Integer, ForeignKey("book.id"), nullable=False)
    status = Column(
        Enum(ReservationStatus, name="reservation_status"),
        nullable=False,
        default=ReservationStatus.PENDING,
    )
    # only set while PENDING; 1 is next in line
    queue_position = Column(Integer)
    expires_at = Column(DateTime, nullable=False)
    approved_at = Column(DateTime)
    cancelled_at = Column(DateTime)
    completed_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    notes = Column(Text)

    user = relationship("User")
    book = relationship("Book")


class PendingSyncEvent(Base):
    """
    Availability snapshots that still have to reach the catalog.
    """
    __tablename__ = "pending_sync_event"

    id = Column(Integer, primary_key=True, autoincrement=True)
    book_id = Column(Integer, nullable=False)
    isbn = Column(String(20), nullable=False)
    total_copies = Column(Integer, nullable=False)
    available_copies = Column(Integer, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    payload = Column(Text)  # JSON blob


def is_expired(reservation, now):
    return (
        reservation.status in ACTIVE_RESERVATION_STATES
        and reservation.expires_at < now
    )


def is_overdue(loan, now):
    return loan.status == LoanStatus.ACTIVE and now > loan.due_at
