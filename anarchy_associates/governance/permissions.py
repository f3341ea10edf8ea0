"""
Permission Service — per-guild action authority checks.

Answers "does this context hold authority A?" for the closed action set of
``PermissionAction``. Checks are evaluated in a fixed order, short-circuiting
on the first grant:

1. guild owner → granted for every action
2. malformed context → denied
3. ``admin`` → listed admin user, or a role in the guild's admin roles
4. any other action → a role in that action's configured role set

Admin holders are NOT implicitly granted other actions; the composite checks
(``has_senior_staff_permission`` and friends) are where admin widens into
other authorities.

Every check is a yes/no decision: store failures are logged and converted to
a denial, never propagated to the caller.
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import SQLAlchemyError

from anarchy_associates.firm.schema import PermissionAction, PermissionContext
from anarchy_associates.store.repositories import GuildConfigRepository

logger = logging.getLogger(__name__)


class PermissionService:
    """Stateless permission checks backed by the guild configuration store."""

    def __init__(self, guild_configs: GuildConfigRepository) -> None:
        self.guild_configs = guild_configs

    def has_action_permission(
        self, context: PermissionContext, action: PermissionAction
    ) -> bool:
        """
        Check a single action against the guild configuration.

        Args:
            context: Identity of the actor.
            action: The authority being requested.

        Returns:
            True if granted. Malformed contexts and store failures deny.
        """
        if context.is_guild_owner:
            logger.debug(
                "Permission granted (guild owner): guild=%s user=%s action=%s",
                context.guild_id, context.user_id, action.value,
            )
            return True

        if not context.is_well_formed:
            logger.debug(
                "Permission denied (malformed context): guild=%r user=%r action=%s",
                context.guild_id, context.user_id, action.value,
            )
            return False

        try:
            config = self.guild_configs.ensure_guild_config(context.guild_id)
        except SQLAlchemyError:
            logger.exception(
                "Failed to load guild config: guild=%s user=%s action=%s",
                context.guild_id, context.user_id, action.value,
            )
            return False

        if action == PermissionAction.ADMIN:
            granted = (
                context.user_id in config.admin_users
                or not context.user_roles.isdisjoint(config.admin_roles)
            )
        else:
            granted = not context.user_roles.isdisjoint(config.roles_for(action))

        logger.debug(
            "Permission %s: guild=%s user=%s action=%s",
            "granted" if granted else "denied",
            context.guild_id, context.user_id, action.value,
        )
        return granted

    # ── Composite checks ────────────────────────────────────────

    def is_admin(self, context: PermissionContext) -> bool:
        return self.has_action_permission(context, PermissionAction.ADMIN)

    def has_senior_staff_permission(self, context: PermissionContext) -> bool:
        return self.is_admin(context) or self.has_action_permission(
            context, PermissionAction.SENIOR_STAFF
        )

    def has_case_permission(self, context: PermissionContext) -> bool:
        return self.is_admin(context) or self.has_action_permission(
            context, PermissionAction.CASE
        )

    def has_lawyer_permission(self, context: PermissionContext) -> bool:
        return self.is_admin(context) or self.has_action_permission(
            context, PermissionAction.LAWYER
        )

    def has_lead_attorney_permission(self, context: PermissionContext) -> bool:
        return self.is_admin(context) or self.has_action_permission(
            context, PermissionAction.LEAD_ATTORNEY
        )

    def can_manage_config(self, context: PermissionContext) -> bool:
        return self.is_admin(context) or self.has_action_permission(
            context, PermissionAction.CONFIG
        )

    def can_manage_admins(self, context: PermissionContext) -> bool:
        """Only the guild owner and admins may edit the admin lists."""
        return context.is_guild_owner or self.is_admin(context)

    def can_repair(self, context: PermissionContext) -> bool:
        return self.is_admin(context) or self.has_action_permission(
            context, PermissionAction.REPAIR
        )

    def get_permission_summary(self, context: PermissionContext) -> dict[PermissionAction, bool]:
        """Every action mapped to the raw (non-composite) decision."""
        return {
            action: self.has_action_permission(context, action)
            for action in PermissionAction
        }
