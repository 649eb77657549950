"""
Data access layer shared by the offline timer, the role checks, the record
lifecycles and the HTTP routes.

``DataStore`` is the one gateway to the database: generic CRUD over named
collections, change subscriptions, server-side functions and database
procedures. Row-level isolation is applied here, so an ordinary store only
ever sees rows owned by the signed-in user.
"""
import logging
from contextlib import contextmanager
from datetime import datetime

from flask import g
from flask_login import current_user
from sqlalchemy.exc import SQLAlchemyError

from app import db, change_feed
from errors import BackendError, PermissionDenied, FunctionError
from models import (User, AdminUser, OfflineSession, EwasteItem, CollectionRequest, DumpingReport,
                    MarketplaceListing, WalletBalance, WalletTransaction, Payment, Notification,
                    PasswordResetOtp, ChatConversation, ChatMessage)
from realtime import INSERT, UPDATE, DELETE
import lifecycle

logger = logging.getLogger(__name__)

COLLECTIONS = {
    'users': User,
    'admin_users': AdminUser,
    'offline_sessions': OfflineSession,
    'e_waste_items': EwasteItem,
    'collection_requests': CollectionRequest,
    'dumping_reports': DumpingReport,
    'marketplace_listings': MarketplaceListing,
    'wallet_balances': WalletBalance,
    'wallet_transactions': WalletTransaction,
    'payments': Payment,
    'notifications': Notification,
    'password_reset_otps': PasswordResetOtp,
    'chat_conversations': ChatConversation,
    'chat_messages': ChatMessage,
}

# Column holding the owner of each row; everything else uses user_id
OWNER_COLUMNS = {'users': 'id'}

# Anyone signed in may read these
PUBLIC_READ = {'marketplace_listings'}

# Only server-side code (functions, procedures) may touch these
RESTRICTED = {'password_reset_otps', 'admin_users', 'payments'}

# Rows every admin may read and update across owners
ADMIN_VISIBLE = {'collection_requests', 'dumping_reports', 'marketplace_listings', 'e_waste_items', 'users'}

_functions = {}
_procedures = {}


def function(name):
    """Register a server-side function reachable through ``invoke_function``."""
    def decorator(fn):
        _functions[name] = fn
        return fn
    return decorator


def procedure(name):
    """Register a database procedure reachable through ``call_procedure``."""
    def decorator(fn):
        _procedures[name] = fn
        return fn
    return decorator


class AuthContext:
    """
    The authenticated user for one client, passed explicitly to whatever
    needs it. Listeners hear about sign-in and sign-out.
    """

    def __init__(self, user=None):
        self.user = user
        self._listeners = []

    @property
    def user_id(self):
        return self.user.id if self.user is not None else None

    @property
    def email(self):
        return self.user.email if self.user is not None else None

    def subscribe(self, listener):
        self._listeners.append(listener)
        return lambda: self.unsubscribe(listener)

    def unsubscribe(self, listener):
        if listener in self._listeners:
            self._listeners.remove(listener)

    def sign_in(self, user):
        self.user = user
        self._notify('SIGNED_IN')

    def sign_out(self):
        self.user = None
        self._notify('SIGNED_OUT')

    def _notify(self, event):
        for listener in list(self._listeners):
            try:
                listener(event, self.user)
            except Exception as e:
                logger.error(f"Auth listener failed on {event}: {str(e)}")


class DataStore:
    def __init__(self, auth=None, privileged=False, admin_role=None, feed=None, clock=datetime.utcnow):
        self.auth = auth if auth is not None else AuthContext()
        self.privileged = privileged
        self.admin_role = admin_role
        self.feed = feed if feed is not None else change_feed
        self.clock = clock
        self._depth = 0
        self._pending_events = []

    # Views -------------------------------------------------------------

    def elevated(self):
        """A service-role view of the same backend, used by functions and procedures."""
        if self.privileged:
            # Nested calls share one transaction
            return self
        return DataStore(self.auth, privileged=True, feed=self.feed, clock=self.clock)

    def as_admin(self, role):
        """A view that may cross ownership boundaries with the given admin role."""
        return DataStore(self.auth, admin_role=role, feed=self.feed, clock=self.clock)

    def now(self):
        return self.clock()

    # Auth --------------------------------------------------------------

    def current_user(self):
        if self.auth.user is None:
            return None
        return {'id': self.auth.user_id, 'email': self.auth.email}

    # CRUD --------------------------------------------------------------

    def query(self, collection, filter=None, order=None, limit=None):
        model = self._model(collection)
        q = self._scoped(collection, model, model.query, write=False)
        q = q.filter(*self._criteria(model, filter))
        for clause in self._ordering(model, order):
            q = q.order_by(clause)
        if limit is not None:
            q = q.limit(limit)
        try:
            return q.all()
        except SQLAlchemyError as e:
            self._fail(f"Error querying {collection}", e)

    def get(self, collection, record_id):
        rows = self.query(collection, {'id': record_id}, limit=1)
        return rows[0] if rows else None

    def insert(self, collection, record):
        model = self._model(collection)
        values = dict(record)
        self._check_insert(collection, model, values)
        machine = lifecycle.MACHINES.get(collection)
        if machine is not None:
            values['status'] = lifecycle.check_initial(machine, values.get('status'))

        try:
            row = model(**values)
            db.session.add(row)
            db.session.flush()
            self._queue(collection, INSERT, new=row.to_dict())
            self._commit()
        except SQLAlchemyError as e:
            self._fail(f"Error inserting into {collection}", e)
        except TypeError as e:
            db.session.rollback()
            raise BackendError(f"Invalid record for {collection}: {str(e)}")
        return row

    def update(self, collection, record_id, patch):
        """
        Apply ``patch`` to one row and return it, or ``None`` when no visible
        row has that id. Status changes on lifecycle collections are checked
        against the transition table before anything is written.
        """
        model = self._model(collection)
        q = self._scoped(collection, model, model.query, write=True)
        try:
            row = q.filter(model.id == record_id).first()
        except SQLAlchemyError as e:
            self._fail(f"Error loading {collection} {record_id}", e)
        if row is None:
            return None

        changes = self._validated_patch(collection, row, dict(patch))
        if not changes:
            return row

        old = row.to_dict()
        try:
            for key, value in changes.items():
                setattr(row, key, value)
            if hasattr(row, 'updated_at'):
                row.updated_at = self.now()
            db.session.flush()
            self._queue(collection, UPDATE, new=row.to_dict(), old=old)
            self._commit()
        except SQLAlchemyError as e:
            self._fail(f"Error updating {collection} {record_id}", e)
        return row

    def update_where(self, collection, filter, patch):
        """Apply ``patch`` to every visible row matching ``filter``; returns the rows touched."""
        updated = []
        with self.atomic():
            for row in self.query(collection, filter):
                result = self.update(collection, row.id, patch)
                if result is not None:
                    updated.append(result)
        return updated

    def delete(self, collection, record_id):
        model = self._model(collection)
        q = self._scoped(collection, model, model.query, write=True)
        try:
            row = q.filter(model.id == record_id).first()
            if row is None:
                return False
            old = row.to_dict()
            db.session.delete(row)
            db.session.flush()
            self._queue(collection, DELETE, old=old)
            self._commit()
        except SQLAlchemyError as e:
            self._fail(f"Error deleting from {collection}", e)
        return True

    @contextmanager
    def atomic(self):
        """Group several writes into one commit; events go out only after it."""
        self._depth += 1
        try:
            yield self
        except Exception:
            self._depth -= 1
            if self._depth == 0:
                db.session.rollback()
                self._pending_events = []
            raise
        else:
            self._depth -= 1
            self._commit()

    # Realtime, functions, procedures ------------------------------------

    def subscribe(self, collection, filter, on_change):
        self._model(collection)
        if not self.privileged and collection not in PUBLIC_READ and self.admin_role is None:
            owner_column = OWNER_COLUMNS.get(collection, 'user_id')
            if self.auth.user_id is None or (filter or {}).get(owner_column) != self.auth.user_id:
                raise PermissionDenied(f"Subscriptions to {collection} must be filtered to your own rows")
        return self.feed.subscribe(collection, filter, on_change)

    def invoke_function(self, name, payload=None):
        fn = _functions.get(name)
        if fn is None:
            raise FunctionError(f"Unknown function {name}", status=404)
        logger.info(f"Invoking function {name}")
        return fn(self.elevated(), self.auth.user, payload or {})

    def call_procedure(self, name, args=None):
        fn = _procedures.get(name)
        if fn is None:
            raise BackendError(f"Unknown procedure {name}")
        return fn(self.elevated(), self.auth.user, **(args or {}))

    # Internals ---------------------------------------------------------

    def _model(self, collection):
        model = COLLECTIONS.get(collection)
        if model is None:
            raise BackendError(f"Unknown collection {collection}")
        return model

    def _scoped(self, collection, model, q, write):
        if self.privileged:
            return q
        if collection in RESTRICTED:
            if collection == 'admin_users' and not write and self.admin_role is not None:
                return q
            raise PermissionDenied(f"{collection} is not accessible")
        if self.admin_role is not None and collection in ADMIN_VISIBLE:
            return q
        if collection in PUBLIC_READ and not write:
            return q
        user_id = self.auth.user_id
        if user_id is None:
            raise PermissionDenied('Not signed in')
        owner_column = getattr(model, OWNER_COLUMNS.get(collection, 'user_id'))
        return q.filter(owner_column == user_id)

    def _check_insert(self, collection, model, values):
        if self.privileged:
            return
        if collection in RESTRICTED or collection == 'users':
            raise PermissionDenied(f"Cannot insert into {collection}")
        user_id = self.auth.user_id
        if user_id is None:
            raise PermissionDenied('Not signed in')
        owner = values.setdefault('user_id', user_id)
        if owner != user_id:
            raise PermissionDenied(f"Cannot create {collection} rows for another user")

    def _validated_patch(self, collection, row, patch):
        for key in patch:
            if not hasattr(type(row), key):
                raise BackendError(f"Unknown column {key} on {collection}")
        owner_column = OWNER_COLUMNS.get(collection, 'user_id')
        if not self.privileged and owner_column in patch and patch[owner_column] != getattr(row, owner_column):
            raise PermissionDenied('Ownership cannot be transferred')

        machine = lifecycle.MACHINES.get(collection)
        if machine is not None and 'status' in patch:
            is_owner = getattr(row, owner_column) == self.auth.user_id
            changed = lifecycle.check_transition(
                machine, row.status, patch['status'],
                is_owner=is_owner, role=self.admin_role, system=self.privileged
            )
            if not changed:
                patch.pop('status')

        return {key: value for key, value in patch.items() if getattr(row, key, None) != value}

    def _criteria(self, model, filter):
        criteria = []
        for key, value in (filter or {}).items():
            name, _, op = key.partition('__')
            column = getattr(model, name, None)
            if column is None:
                raise BackendError(f"Unknown column {name} on {model.__tablename__}")
            op = op or 'eq'
            if op == 'eq':
                criteria.append(column.is_(None) if value is None else column == value)
            elif op == 'ne':
                criteria.append(column.isnot(None) if value is None else column != value)
            elif op == 'gt':
                criteria.append(column > value)
            elif op == 'gte':
                criteria.append(column >= value)
            elif op == 'lt':
                criteria.append(column < value)
            elif op == 'lte':
                criteria.append(column <= value)
            elif op == 'in':
                criteria.append(column.in_(list(value)))
            else:
                raise BackendError(f"Unknown filter operator {op}")
        return criteria

    def _ordering(self, model, order):
        if not order:
            return []
        if isinstance(order, str):
            order = [order]
        clauses = []
        for field in order:
            descending = field.startswith('-')
            column = getattr(model, field.lstrip('-'), None)
            if column is None:
                raise BackendError(f"Unknown column {field.lstrip('-')} on {model.__tablename__}")
            clauses.append(column.desc() if descending else column.asc())
        return clauses

    def _queue(self, collection, event_type, new=None, old=None):
        self._pending_events.append((collection, event_type, new, old))

    def _commit(self):
        if self._depth > 0:
            return
        try:
            db.session.commit()
        except SQLAlchemyError as e:
            self._fail('Error committing changes', e)
        events, self._pending_events = self._pending_events, []
        for collection, event_type, new, old in events:
            self.feed.publish(collection, event_type, new=new, old=old)

    def _fail(self, message, error):
        db.session.rollback()
        self._pending_events = []
        logger.error(f"{message}: {str(error)}")
        raise BackendError(message) from error


def request_store():
    """The store for the current request, bound to the logged-in user."""
    if 'store' not in g:
        user = current_user._get_current_object() if current_user.is_authenticated else None
        g.store = DataStore(AuthContext(user))
    return g.store
