"""Role-based access control for the admin console.

Every admin route checks exactly one permission string. Roles map to a fixed
permission list; USER carries none.
"""

ROLE_USER = "USER"
ROLE_SUPER_ADMIN = "SUPER_ADMIN"
ROLE_FINANCE_ADMIN = "FINANCE_ADMIN"
ROLE_CONTENT_ADMIN = "CONTENT_ADMIN"
ROLE_SUPPORT_ADMIN = "SUPPORT_ADMIN"
ROLE_MARKETING_ADMIN = "MARKETING_ADMIN"
ROLE_MODERATOR = "MODERATOR"

ADMIN_ROLES = (
    ROLE_SUPER_ADMIN,
    ROLE_FINANCE_ADMIN,
    ROLE_CONTENT_ADMIN,
    ROLE_SUPPORT_ADMIN,
    ROLE_MARKETING_ADMIN,
    ROLE_MODERATOR,
)

ALL_ROLES = (ROLE_USER,) + ADMIN_ROLES

ALL_PERMISSIONS = (
    "dashboard.view",
    "users.view", "users.edit", "users.ban", "users.delete", "users.adjust_balance",
    "kyc.view", "kyc.approve", "kyc.reject",
    "tasks.view", "tasks.create", "tasks.edit", "tasks.delete",
    "courses.view", "courses.manage",
    "feed.moderate",
    "submissions.view", "submissions.approve", "submissions.reject",
    "withdrawals.view", "withdrawals.process", "withdrawals.approve", "withdrawals.reject",
    "marketplace.view", "marketplace.manage", "marketplace.disputes",
    "packages.view", "packages.edit",
    "referrals.view", "referrals.configure",
    "notifications.view", "notifications.send",
    "analytics.view", "analytics.export",
    "settings.view", "settings.edit",
    "admins.view", "admins.manage",
    "logs.view",
)

ROLE_PERMISSIONS = {
    ROLE_USER: (),
    ROLE_SUPER_ADMIN: ALL_PERMISSIONS,
    ROLE_FINANCE_ADMIN: (
        "dashboard.view",
        "users.view",
        "withdrawals.view", "withdrawals.process", "withdrawals.approve", "withdrawals.reject",
        "marketplace.view",
        "packages.view", "packages.edit",
        "analytics.view", "analytics.export",
    ),
    ROLE_CONTENT_ADMIN: (
        "dashboard.view",
        "users.view",
        "tasks.view", "tasks.create", "tasks.edit",
        "courses.view", "courses.manage",
        "feed.moderate",
        "submissions.view", "submissions.approve", "submissions.reject",
        "notifications.view", "notifications.send",
        "analytics.view",
    ),
    ROLE_SUPPORT_ADMIN: (
        "dashboard.view",
        "users.view", "users.edit", "users.ban",
        "kyc.view", "kyc.approve", "kyc.reject",
        "tasks.view",
        "marketplace.view", "marketplace.disputes",
        "feed.moderate",
    ),
    ROLE_MARKETING_ADMIN: (
        "dashboard.view",
        "users.view",
        "notifications.view", "notifications.send",
        "analytics.view", "analytics.export",
        "referrals.view",
    ),
    ROLE_MODERATOR: (
        "dashboard.view",
        "tasks.view",
        "submissions.view", "submissions.approve", "submissions.reject",
        "feed.moderate",
    ),
}


def is_admin_role(role: str) -> bool:
    return role in ADMIN_ROLES


def has_permission(role: str, permission: str) -> bool:
    if not role:
        return False
    return permission in ROLE_PERMISSIONS.get(role, ())


def has_any_permission(role: str, permissions) -> bool:
    return any(has_permission(role, p) for p in permissions)
