import functools
import logging

from flask import abort
from flask_login import UserMixin, current_user

logger = logging.getLogger(__name__)

ADMIN_ROLE = "admin"


class AppUser(UserMixin):
    def __init__(self, row, permissions=()):
        self.id = str(row["id"])
        self.username = row["username"]
        self.email = row["email"]
        self.full_name = row["full_name"]
        self.role = row["role"]
        self.permissions = frozenset(permissions)
        self._is_active = bool(row["is_active"])

    @property
    def is_active(self):
        return self._is_active

    @property
    def display_name(self):
        return self.full_name or self.username

    def can(self, permission):
        return self.role == ADMIN_ROLE or permission in self.permissions


def get_user_permissions(db, user_id):
    """Names of the permissions granted to the user's role."""
    rows = db.execute(
        """
        SELECT p.name
        FROM users u
        JOIN role_has_permissions rhp ON rhp.role_id = u.role_id
        JOIN permissions p ON p.id = rhp.permission_id
        WHERE u.id = ?
        ORDER BY p.name ASC
        """,
        (user_id,),
    ).fetchall()
    return [row["name"] for row in rows]


def load_app_user(db, user_id):
    row = db.execute(
        """
        SELECT u.id, u.username, u.email, u.full_name, u.is_active, r.name AS role
        FROM users u
        LEFT JOIN roles r ON r.id = u.role_id
        WHERE u.id = ?
        """,
        (user_id,),
    ).fetchone()
    if row is None:
        return None
    return AppUser(row, get_user_permissions(db, row["id"]))


def check_permission(permission):
    if not current_user.is_authenticated:
        abort(401, description="You must be logged in to perform this action.")
    if current_user.can(permission):
        return
    logger.warning("User %s denied '%s'", current_user.username, permission)
    abort(403, description=f"You do not have the '{permission}' permission.")


def permission_required(permission):
    def decorator(view):
        @functools.wraps(view)
        def wrapped_view(*args, **kwargs):
            check_permission(permission)
            return view(*args, **kwargs)

        return wrapped_view

    return decorator
