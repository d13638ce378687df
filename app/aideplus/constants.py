"""
Central constants for tiers, subscription states, admin roles and usage limits.
"""
from __future__ import annotations

# Subscription tiers, lowest to highest.
TIER_FREE = "free"
TIER_BASIC = "basic"
TIER_PLUS = "plus"
TIER_PREMIUM = "premium"

TIERS = (TIER_FREE, TIER_BASIC, TIER_PLUS, TIER_PREMIUM)
PAID_TIERS = (TIER_BASIC, TIER_PLUS, TIER_PREMIUM)
TIER_RANK = {tier: i for i, tier in enumerate(TIERS)}

# Subscription record statuses
STATUS_ACTIVE = "active"
STATUS_TRIALING = "trialing"
STATUS_PAST_DUE = "past_due"
STATUS_INCOMPLETE = "incomplete"
STATUS_CANCELLED = "cancelled"
STATUS_REVOKED = "revoked"

STATUSES = (
    STATUS_ACTIVE,
    STATUS_TRIALING,
    STATUS_PAST_DUE,
    STATUS_INCOMPLETE,
    STATUS_CANCELLED,
    STATUS_REVOKED,
)
ENTITLED_STATUSES = frozenset({STATUS_ACTIVE, STATUS_TRIALING})

# Allowed status transitions. None is "no record yet".
# Revocation is reachable from anywhere; leaving "revoked" requires a new administrative grant.
STATUS_TRANSITIONS: dict[str | None, frozenset[str]] = {
    None: frozenset({STATUS_ACTIVE, STATUS_TRIALING, STATUS_INCOMPLETE}),
    STATUS_ACTIVE: frozenset({STATUS_ACTIVE, STATUS_PAST_DUE, STATUS_CANCELLED, STATUS_REVOKED}),
    STATUS_TRIALING: frozenset({STATUS_TRIALING, STATUS_ACTIVE, STATUS_PAST_DUE, STATUS_CANCELLED, STATUS_REVOKED}),
    STATUS_PAST_DUE: frozenset({STATUS_PAST_DUE, STATUS_ACTIVE, STATUS_CANCELLED, STATUS_REVOKED}),
    STATUS_INCOMPLETE: frozenset({STATUS_INCOMPLETE, STATUS_ACTIVE, STATUS_CANCELLED, STATUS_REVOKED}),
    STATUS_CANCELLED: frozenset({STATUS_CANCELLED, STATUS_ACTIVE, STATUS_TRIALING, STATUS_INCOMPLETE, STATUS_REVOKED}),
    STATUS_REVOKED: frozenset({STATUS_REVOKED}),
}

# Admin roles
ROLE_SUPER_ADMIN = "super_admin"
ROLE_ADMIN = "admin"
ROLE_MODERATOR = "moderator"
ROLE_SUPPORT = "support"

ADMIN_ROLES = (ROLE_SUPER_ADMIN, ROLE_ADMIN, ROLE_MODERATOR, ROLE_SUPPORT)

# Admin permission keys
PERM_MANAGE_USERS = "manage_users"
PERM_MANAGE_CONTENT = "manage_content"
PERM_MANAGE_AFFILIATES = "manage_affiliates"
PERM_MANAGE_SUBSCRIPTIONS = "manage_subscriptions"
PERM_VIEW_ANALYTICS = "view_analytics"
PERM_MANAGE_ADMINS = "manage_admins"
PERM_SEND_BULK_EMAILS = "send_bulk_emails"
PERM_MANAGE_SETTINGS = "manage_settings"

ADMIN_PERMISSIONS = (
    PERM_MANAGE_USERS,
    PERM_MANAGE_CONTENT,
    PERM_MANAGE_AFFILIATES,
    PERM_MANAGE_SUBSCRIPTIONS,
    PERM_VIEW_ANALYTICS,
    PERM_MANAGE_ADMINS,
    PERM_SEND_BULK_EMAILS,
    PERM_MANAGE_SETTINGS,
)

# Metered resource kinds and their period granularity
RESOURCE_CHAT_MESSAGE = "chat_message"
RESOURCE_SIMULATION = "simulation"
RESOURCE_CONTENT_VIEW = "content_view"
RESOURCE_EXPORT = "export"

PERIOD_DAY = "day"
PERIOD_MONTH = "month"

RESOURCE_PERIODS = {
    RESOURCE_CHAT_MESSAGE: PERIOD_DAY,
    RESOURCE_SIMULATION: PERIOD_DAY,
    RESOURCE_CONTENT_VIEW: PERIOD_DAY,
    RESOURCE_EXPORT: PERIOD_MONTH,
}

# Per-tier limits. None = unlimited, 0 = not available at this tier.
TIER_LIMITS: dict[str, dict[str, int | None]] = {
    TIER_FREE: {
        RESOURCE_CHAT_MESSAGE: 10,
        RESOURCE_SIMULATION: 5,
        RESOURCE_CONTENT_VIEW: 5,
        RESOURCE_EXPORT: 0,
    },
    TIER_BASIC: {
        RESOURCE_CHAT_MESSAGE: 50,
        RESOURCE_SIMULATION: None,
        RESOURCE_CONTENT_VIEW: 15,
        RESOURCE_EXPORT: 0,
    },
    TIER_PLUS: {
        RESOURCE_CHAT_MESSAGE: 100,
        RESOURCE_SIMULATION: None,
        RESOURCE_CONTENT_VIEW: None,
        RESOURCE_EXPORT: 5,
    },
    TIER_PREMIUM: {
        RESOURCE_CHAT_MESSAGE: 200,
        RESOURCE_SIMULATION: None,
        RESOURCE_CONTENT_VIEW: None,
        RESOURCE_EXPORT: 30,
    },
}

# Usage share at which an upgrade is suggested
UPGRADE_HINT_THRESHOLD = 80

# Promo codes
DISCOUNT_PERCENTAGE = "percentage"
DISCOUNT_FIXED = "fixed"
DISCOUNT_TYPES = (DISCOUNT_PERCENTAGE, DISCOUNT_FIXED)
PROMO_GRANT_MONTHS = 1

# Complimentary grant bounds (months)
GRANT_MIN_MONTHS = 1
GRANT_MAX_MONTHS = 24
