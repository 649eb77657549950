import logging

from errors import BackendError, PermissionDenied
from models import AdminRole

logger = logging.getLogger(__name__)

# Higher rank includes every permission of the lower ones
ROLE_RANKS = {
    AdminRole.MODERATOR.value: 1,
    AdminRole.ADMIN.value: 2,
    AdminRole.SUPER_ADMIN.value: 3,
}


def rank(role):
    """Return the rank of ``role``; anything unrecognised ranks 0."""
    if isinstance(role, AdminRole):
        role = role.value
    if not isinstance(role, str):
        return 0
    return ROLE_RANKS.get(role, 0)


def authorize(user_role, required_role):
    """True when ``user_role`` is a known role at or above ``required_role``."""
    user_rank = rank(user_role)
    required_rank = rank(required_role)
    return user_rank > 0 and required_rank > 0 and user_rank >= required_rank


def can_grant(granter_role, role):
    """Only a super admin, or someone strictly above the role being granted, may grant it."""
    if rank(role) == 0:
        return False
    return rank(granter_role) == rank(AdminRole.SUPER_ADMIN) or rank(granter_role) > rank(role)


class RoleAuthorizer:
    """
    Admin checks for one signed-in user.

    The role itself always comes from the ``is_admin`` / ``get_admin_role``
    procedures; every failure to resolve it counts as "not authorised".
    """

    def __init__(self, store):
        self.store = store

    def is_admin(self, owner_id=None):
        try:
            return bool(self.store.call_procedure('is_admin', {'user_id': owner_id}))
        except (BackendError, PermissionDenied) as e:
            logger.error(f"Error checking admin status: {str(e)}")
            return False

    def role_of(self, owner_id=None):
        try:
            role = self.store.call_procedure('get_admin_role', {'user_id': owner_id})
        except (BackendError, PermissionDenied) as e:
            logger.error(f"Error resolving admin role: {str(e)}")
            return None
        return role if rank(role) else None

    def has_role(self, required_role, owner_id=None):
        return authorize(self.role_of(owner_id), required_role)

    def admin_store(self, required_role=AdminRole.MODERATOR.value):
        """A cross-owner store for the current user, or ``None`` when they lack ``required_role``."""
        role = self.role_of()
        if not authorize(role, required_role):
            return None
        return self.store.as_admin(role)

    def initialize_first_admin(self, email):
        try:
            return bool(self.store.call_procedure('initialize_first_admin', {'user_email': email}))
        except (BackendError, PermissionDenied) as e:
            logger.error(f"Error initializing first admin: {str(e)}")
            return False

    def grant_role(self, email, role):
        try:
            return bool(self.store.call_procedure('grant_admin_role', {'user_email': email, 'role': role}))
        except (BackendError, PermissionDenied) as e:
            logger.error(f"Error granting {role} to {email}: {str(e)}")
            return False

    def revoke_role(self, owner_id):
        try:
            return bool(self.store.call_procedure('revoke_admin_role', {'user_id': owner_id}))
        except (BackendError, PermissionDenied) as e:
            logger.error(f"Error revoking admin role of user {owner_id}: {str(e)}")
            return False
