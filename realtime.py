import logging
import threading
from itertools import count

from errors import BackendError, PermissionDenied

logger = logging.getLogger(__name__)

INSERT = 'INSERT'
UPDATE = 'UPDATE'
DELETE = 'DELETE'


def _matches(filter, row):
    if not filter:
        return True
    if row is None:
        return False
    return all(row.get(key) == value for key, value in filter.items())


class ChangeFeed:
    """
    In-process fan-out of row change events.

    Listeners register per collection with an equality filter
    (for example ``{'user_id': 7}``) and are called after the write that
    produced the event has been committed. The payload mirrors a database
    change notification: ``table``, ``eventType``, ``new`` and ``old``.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._ids = count(1)
        self._subscriptions = {}

    def subscribe(self, collection, filter, on_change):
        """Register a listener and return the function that removes it."""
        subscription_id = next(self._ids)
        with self._lock:
            self._subscriptions[subscription_id] = (collection, dict(filter or {}), on_change)

        def unsubscribe():
            with self._lock:
                self._subscriptions.pop(subscription_id, None)

        return unsubscribe

    def publish(self, collection, event_type, new=None, old=None):
        payload = {
            'table': collection,
            'eventType': event_type,
            'new': new or {},
            'old': old or {}
        }
        with self._lock:
            listeners = [
                on_change
                for table, filter, on_change in self._subscriptions.values()
                if table == collection and (_matches(filter, new) or _matches(filter, old))
            ]

        for on_change in listeners:
            try:
                on_change(payload)
            except Exception as e:
                logger.error(f"Change listener for {collection} failed: {str(e)}")
        return len(listeners)

    def __len__(self):
        with self._lock:
            return len(self._subscriptions)


class LiveList:
    """
    A list of records kept fresh by invalidate-and-reload.

    Any change event on the watched collection triggers a full refetch;
    the event payload itself is never merged into the cached rows.
    """

    def __init__(self, store, collection, filter=None, order='-created_at', limit=None):
        self.store = store
        self.collection = collection
        self.filter = dict(filter or {})
        self.order = order
        self.limit = limit
        self.records = []
        self.error = None
        self.loading = True
        self.reloads = 0
        self.reload()
        self._unsubscribe = store.subscribe(collection, self.filter, self._on_change)

    def _on_change(self, payload):
        self.reload()

    def reload(self):
        self.loading = True
        try:
            self.records = self.store.query(self.collection, self.filter, order=self.order, limit=self.limit)
            self.error = None
        except (BackendError, PermissionDenied) as e:
            # Keep the last good rows so the view stays usable
            logger.error(f"Error loading {self.collection}: {str(e)}")
            self.error = str(e)
        finally:
            self.loading = False
            self.reloads += 1
        return self.records

    def close(self):
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False

    def __iter__(self):
        return iter(self.records)

    def __len__(self):
        return len(self.records)
