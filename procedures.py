"""
Database procedures. Each runs with a service-role store and receives the
calling user (or None) so it can apply its own checks, the way
SECURITY DEFINER functions do in Postgres.
"""
import logging
from datetime import timedelta

from sqlalchemy import func
from werkzeug.security import generate_password_hash

from app import db
from errors import PermissionDenied
from models import (AdminRole, User, AdminUser, CollectionRequest, DumpingReport, EwasteItem,
                    MarketplaceListing)
from rbac import can_grant
from store import procedure
from utils import calculate_carbon_footprint

logger = logging.getLogger(__name__)


def _active_assignment(store, user_id):
    if user_id is None:
        return None
    rows = store.query('admin_users', {'user_id': user_id, 'is_active': True}, limit=1)
    return rows[0] if rows else None


def _caller_id(caller, user_id=None):
    if user_id is not None:
        return user_id
    return caller.id if caller is not None else None


@procedure('is_admin')
def is_admin(store, caller, user_id=None):
    return _active_assignment(store, _caller_id(caller, user_id)) is not None


@procedure('get_admin_role')
def get_admin_role(store, caller, user_id=None):
    assignment = _active_assignment(store, _caller_id(caller, user_id))
    return assignment.admin_role if assignment else None


@procedure('initialize_first_admin')
def initialize_first_admin(store, caller, user_email):
    """
    Make ``user_email`` the first super admin.

    Works only while admin_users is completely empty, inactive rows
    included, so it can succeed at most once per installation.
    """
    with store.atomic():
        if store.query('admin_users', limit=1):
            logger.warning(f"First admin initialization refused for {user_email}: admins already exist")
            return False
        users = store.query('users', {'email': user_email}, limit=1)
        if not users:
            logger.warning(f"First admin initialization refused: no user {user_email}")
            return False
        store.insert('admin_users', {
            'user_id': users[0].id,
            'admin_role': AdminRole.SUPER_ADMIN.value,
            'is_active': True,
            'created_by': users[0].id
        })
    logger.info(f"Initialized first super admin {user_email}")
    return True


@procedure('grant_admin_role')
def grant_admin_role(store, caller, user_email, role):
    if caller is None:
        raise PermissionDenied('Not signed in')
    granter = _active_assignment(store, caller.id)
    if granter is None or not can_grant(granter.admin_role, role):
        logger.warning(f"User {caller.id} may not grant {role}")
        return False

    users = store.query('users', {'email': user_email}, limit=1)
    if not users or users[0].id == caller.id:
        return False
    target = users[0]

    existing = store.query('admin_users', {'user_id': target.id}, limit=1)
    if existing:
        if existing[0].is_active and not can_grant(granter.admin_role, existing[0].admin_role):
            return False
        store.update('admin_users', existing[0].id, {'admin_role': role, 'is_active': True, 'created_by': caller.id})
    else:
        store.insert('admin_users', {
            'user_id': target.id,
            'admin_role': role,
            'is_active': True,
            'created_by': caller.id
        })
    logger.info(f"User {caller.id} granted {role} to {user_email}")
    return True


@procedure('revoke_admin_role')
def revoke_admin_role(store, caller, user_id):
    if caller is None:
        raise PermissionDenied('Not signed in')
    granter = _active_assignment(store, caller.id)
    target = _active_assignment(store, user_id)
    if granter is None or target is None or user_id == caller.id:
        return False
    if not can_grant(granter.admin_role, target.admin_role):
        return False
    store.update('admin_users', target.id, {'is_active': False})
    logger.info(f"User {caller.id} revoked {target.admin_role} from user {user_id}")
    return True


@procedure('add_eco_points')
def add_eco_points(store, caller, user_id, points):
    user = store.get('users', user_id)
    if user is None:
        return None
    store.update('users', user_id, {'eco_points': (user.eco_points or 0) + int(points)})
    return user.eco_points


@procedure('verify_sufficient_balance')
def verify_sufficient_balance(store, caller, user_id, amount, currency='ZAR'):
    rows = store.query('wallet_balances', {'user_id': user_id, 'currency': currency}, limit=1)
    balance = rows[0].balance if rows else 0.0
    return balance >= float(amount)


@procedure('reset_password_with_otp')
def reset_password_with_otp(store, caller, email, otp, new_password):
    """Consume an unexpired, unused reset code for ``email`` and set the new password."""
    email = email.strip().lower()
    codes = store.query('password_reset_otps', {
        'email': email,
        'otp': otp,
        'used': False,
        'expires_at__gt': store.now()
    }, order='-created_at', limit=1)
    users = store.query('users', {'email': email}, limit=1)
    if not codes or not users:
        logger.warning(f"Invalid or expired password reset code for {email}")
        return False

    with store.atomic():
        store.update('password_reset_otps', codes[0].id, {'used': True})
        store.update('users', users[0].id, {'password_hash': generate_password_hash(new_password)})
    logger.info(f"Password reset for user {users[0].id}")
    return True


@procedure('get_admin_analytics')
def get_admin_analytics(store, caller):
    if caller is None or _active_assignment(store, caller.id) is None:
        raise PermissionDenied('Admin access required')

    week_ago = store.now() - timedelta(days=7)
    categories = db.session.query(EwasteItem.category, func.count(EwasteItem.id)).group_by(EwasteItem.category).all()
    carbon_saved = sum(calculate_carbon_footprint(category, quantity) for category, quantity in categories)

    return [
        {'metric': 'total_users', 'value': User.query.count(),
         'description': 'Registered users'},
        {'metric': 'new_users_7d', 'value': User.query.filter(User.created_at >= week_ago).count(),
         'description': 'Users who joined in the last 7 days'},
        {'metric': 'total_collection_requests', 'value': CollectionRequest.query.count(),
         'description': 'Collection requests submitted'},
        {'metric': 'pending_collection_requests',
         'value': CollectionRequest.query.filter_by(status='pending').count(),
         'description': 'Collection requests waiting for review'},
        {'metric': 'completed_collection_requests',
         'value': CollectionRequest.query.filter_by(status='completed').count(),
         'description': 'Collections completed'},
        {'metric': 'open_dumping_reports',
         'value': DumpingReport.query.filter(DumpingReport.status != 'resolved').count(),
         'description': 'Dumping reports not yet resolved'},
        {'metric': 'active_listings',
         'value': MarketplaceListing.query.filter_by(status='available').count(),
         'description': 'Marketplace listings currently available'},
        {'metric': 'registered_items', 'value': EwasteItem.query.count(),
         'description': 'E-waste items registered'},
        {'metric': 'estimated_carbon_saved_kg', 'value': round(carbon_saved, 1),
         'description': 'Estimated kg of CO2 saved by registered items'},
        {'metric': 'active_admins', 'value': AdminUser.query.filter_by(is_active=True).count(),
         'description': 'Active admin users'},
    ]

