# registry_app/utils/permissions.py

from registry_app.models import UserRole

MANAGE_SCHOOL_IMPORTS = "manage_school_imports"
VIEW_SCHOOL_IMPORTS = "view_school_imports"

ROLE_PERMISSIONS = {
    UserRole.ADMIN: frozenset({MANAGE_SCHOOL_IMPORTS, VIEW_SCHOOL_IMPORTS}),
    UserRole.DATA_MANAGER: frozenset({MANAGE_SCHOOL_IMPORTS, VIEW_SCHOOL_IMPORTS}),
    UserRole.VIEWER: frozenset({VIEW_SCHOOL_IMPORTS}),
}


def get_user_permissions(user):
    """Return the permission names granted by the user's role"""
    if not user or not getattr(user, "is_authenticated", False):
        return frozenset()
    if not getattr(user, "is_active", True):
        return frozenset()
    role = getattr(user, "role", None)
    if isinstance(role, str) and not isinstance(role, UserRole):
        try:
            role = UserRole(role)
        except ValueError:
            return frozenset()
    return ROLE_PERMISSIONS.get(role, frozenset())


def has_permission(user, permission_name):
    """Check if user has a specific permission"""
    return permission_name in get_user_permissions(user)
