import math
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import List

from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker

from .models import Base


def make_engine(url, echo=False):
    connect_args = {}
    if url.startswith("sqlite"):
        # sessions are handed between worker threads; writers wait on the file lock
        connect_args = {"check_same_thread": False, "timeout": 30}
    engine = create_engine(url, echo=echo, future=True, connect_args=connect_args)
    # Create tables if not present
    Base.metadata.create_all(engine)
    return engine


def make_session_factory(engine):
    # objects are returned to callers after commit, so keep their loaded state
    return sessionmaker(bind=engine, expire_on_commit=False)


@contextmanager
def unit_of_work(session_factory, locks, *keys):
    """
    Hold ``keys`` in ``locks`` and yield a session whose transaction commits
    when the block exits cleanly and rolls back on any exception.
    """
    with locks.hold(*keys):
        session = session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()


@dataclass
class Page:
    items: List[object] = field(default_factory=list)
    total: int = 0
    page: int = 1
    limit: int = 20

    @property
    def pages(self):
        return math.ceil(self.total / self.limit) if self.total else 0


def paginate(session, query, page=1, limit=20):
    """Run an ordered ``select`` for one page of rows plus the unpaged total."""
    if page < 1:
        raise ValueError("page must be at least 1")
    if limit < 1:
        raise ValueError("limit must be at least 1")
    total = session.execute(
        select(func.count()).select_from(query.order_by(None).subquery())
    ).scalar_one()
    items = session.execute(
        query.limit(limit).offset((page - 1) * limit)
    ).scalars().all()
    return Page(items=list(items), total=total, page=page, limit=limit)
