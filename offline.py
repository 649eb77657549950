import logging
from dataclasses import dataclass, asdict
from datetime import timedelta
from functools import wraps

from flask import jsonify
from flask_login import current_user

from errors import BackendError, PermissionDenied
from store import request_store

logger = logging.getLogger(__name__)

OFFLINE_SESSION_MINUTES = 15


@dataclass(frozen=True)
class OfflineFeatures:
    can_view_information: bool
    can_use_ai_assistant: bool
    can_view_recycling_map: bool
    can_register_items: bool
    can_schedule_collection: bool
    can_access_marketplace: bool
    can_access_wallet: bool

    def to_dict(self):
        """camelCase keys, as the mobile client reads them"""
        result = {}
        for name, value in asdict(self).items():
            head, *rest = name.split('_')
            result[head + ''.join(part.title() for part in rest)] = value
        return result


def capabilities(is_offline):
    """Read-only features stay on while offline; anything that writes records is off."""
    online = not is_offline
    return OfflineFeatures(
        can_view_information=True,
        can_use_ai_assistant=True,
        can_view_recycling_map=True,
        can_register_items=online,
        can_schedule_collection=online,
        can_access_marketplace=online,
        can_access_wallet=online,
    )


class SessionTimer:
    """
    One user's offline-mode window.

    The window lives in ``offline_sessions``; this object keeps the
    per-second countdown for a single client. Backend failures are logged
    and leave the timer as it was.

    The double-submit guard belongs to one timer instance, so it covers a
    start re-entered on the same client. Concurrent requests each build
    their own timer and rely on the atomic deactivate-then-insert.
    """

    def __init__(self, store, minutes=OFFLINE_SESSION_MINUTES, clock=None):
        self.store = store
        self.duration = timedelta(minutes=minutes)
        self.clock = clock or store.now
        self.session = None
        self.remaining = 0
        self._starting = False

    @property
    def is_offline(self):
        return self.session is not None and self.remaining > 0

    def start(self, owner_id):
        # Double-submit guard
        if self._starting:
            logger.warning(f"Offline mode start already in progress for user {owner_id}")
            return None

        self._starting = True
        try:
            now = self.clock()
            with self.store.atomic():
                self.store.update_where('offline_sessions', {'user_id': owner_id, 'is_active': True}, {'is_active': False})
                session = self.store.insert('offline_sessions', {
                    'user_id': owner_id,
                    'started_at': now,
                    'expires_at': now + self.duration,
                    'is_active': True
                })
        except (BackendError, PermissionDenied) as e:
            logger.error(f"Error starting offline session: {str(e)}")
            return None
        finally:
            self._starting = False

        self.session = session
        self.remaining = int(self.duration.total_seconds())
        logger.info(f"Offline mode started for user {owner_id} until {session.expires_at}")
        return session

    def check_active(self, owner_id):
        """
        Newest unexpired active session, or None.

        Expiry is decided by the query alone; a stale row that still says
        active is simply not returned and is not rewritten here.
        """
        now = self.clock()
        try:
            rows = self.store.query(
                'offline_sessions',
                {'user_id': owner_id, 'is_active': True, 'expires_at__gt': now},
                order=['-started_at', '-id'],
                limit=1
            )
        except (BackendError, PermissionDenied) as e:
            logger.error(f"Error checking offline session: {str(e)}")
            return None

        if not rows:
            self.session = None
            self.remaining = 0
            return None

        session = rows[0]
        self.session = session
        self.remaining = max(0, int((session.expires_at - now).total_seconds()))
        return session

    def tick(self):
        if self.session is None or self.remaining <= 0:
            return 0
        self.remaining -= 1
        if self.remaining <= 0:
            self.end(self.session.user_id)
        return self.remaining

    def end(self, owner_id):
        """Close the owner's window; returns False and keeps the countdown when the backend fails"""
        try:
            self.store.update_where('offline_sessions', {'user_id': owner_id, 'is_active': True}, {'is_active': False})
        except (BackendError, PermissionDenied) as e:
            logger.error(f"Error ending offline session: {str(e)}")
            return False
        self.session = None
        self.remaining = 0
        return True

    def features(self):
        return capabilities(self.is_offline)

    def to_dict(self):
        return {
            'is_offline': self.is_offline,
            'time_remaining': self.remaining,
            'session': self.session.to_dict() if self.session is not None else None,
            'features': self.features().to_dict()
        }


def offline_guard(feature):
    """Reject a request when the user's offline window switches ``feature`` off."""
    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            if current_user.is_authenticated:
                timer = SessionTimer(request_store())
                timer.check_active(current_user.id)
                if not getattr(timer.features(), feature):
                    return jsonify({
                        'success': False,
                        'message': 'This feature is not available in offline mode.',
                        'time_remaining': timer.remaining
                    }), 423
            return view(*args, **kwargs)
        return wrapped
    return decorator
