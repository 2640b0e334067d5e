import json
import logging
import threading

import requests
from sqlalchemy import select

from .models import PendingSyncEvent, utcnow

logger = logging.getLogger(__name__)


class CatalogSync:
    """
    Publishes availability changes to the catalog service.

    Events are written to ``pending_sync_event`` inside the transaction that
    changed the counter, and delivered by ``flush`` after commit. Events that
    fail to deliver stay in the table for the next flush.
    """

    def __init__(self, session_factory, base_url="", api_key=None, timeout=3):
        self.session_factory = session_factory
        self.base_url = base_url or ""
        self.api_key = api_key
        self.timeout = timeout
        self._flushing = threading.Lock()

    @property
    def enabled(self):
        return bool(self.base_url)

    @property
    def url(self):
        return f"{self.base_url.rstrip('/')}/api/global/sync/availability"

    def record(self, session, book):
        if not self.enabled:
            return None
        payload = {
            "isbn": book.isbn,
            "title": book.title,
            "author": book.author,
            "total_copies": book.total_copies,
            "available_copies": book.available_copies,
            "status": book.status,
            "timestamp": utcnow().isoformat(),
        }
        evt = PendingSyncEvent(
            book_id=book.id,
            isbn=book.isbn,
            total_copies=book.total_copies,
            available_copies=book.available_copies,
            payload=json.dumps(payload),
        )
        session.add(evt)
        return evt

    def flush(self):
        """
        Try to deliver every pending event in creation order.
        Returns the number delivered; stops at the first failure so the
        catalog never sees a newer snapshot overtaken by an older one.
        """
        if not self.enabled:
            return 0
        if not self._flushing.acquire(blocking=False):
            # another thread is already delivering
            return 0
        delivered = 0
        session = self.session_factory()
        try:
            events = session.execute(
                select(PendingSyncEvent).order_by(PendingSyncEvent.id)
            ).scalars().all()
            for evt in events:
                try:
                    resp = requests.post(
                        self.url,
                        json=json.loads(evt.payload),
                        headers={"X-API-Key": self.api_key or ""},
                        timeout=self.timeout,
                    )
                except requests.RequestException as e:
                    logger.warning("Catalog sync for %s failed: %s", evt.isbn, e)
                    break
                if resp.status_code != 200:
                    logger.warning(
                        "Catalog sync for %s rejected with %s", evt.isbn, resp.status_code
                    )
                    break
                session.delete(evt)
                delivered += 1
            session.commit()
        finally:
            session.close()
            self._flushing.release()
        if delivered:
            logger.info("Delivered %d availability event(s) to catalog", delivered)
        return delivered
