"""Guild permission administration: action roles and admin lists."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from sqlalchemy.exc import SQLAlchemyError

from anarchy_associates.firm.schema import (
    GuildPermissionConfig,
    PermissionAction,
    PermissionContext,
)
from anarchy_associates.governance.permissions import PermissionService
from anarchy_associates.store.repositories import GuildConfigRepository

logger = logging.getLogger(__name__)


@dataclass
class ConfigChangeResult:
    success: bool
    config: GuildPermissionConfig | None = None
    error: str | None = None


class GuildConfigService:
    """
    Edits a guild's permission configuration.

    Action role grants need ``can_manage_config``; admin role and admin user
    changes need ``can_manage_admins``.
    """

    def __init__(self, configs: GuildConfigRepository, permissions: PermissionService) -> None:
        self.configs = configs
        self.permissions = permissions

    def get_config(self, context: PermissionContext) -> ConfigChangeResult:
        if not self.permissions.can_manage_config(context):
            return ConfigChangeResult(
                success=False, error="You do not have permission to view the configuration"
            )
        return self._apply(context, "view", lambda: self.configs.ensure_guild_config(context.guild_id))

    def grant_action_role(
        self, context: PermissionContext, action: PermissionAction, role_id: str
    ) -> ConfigChangeResult:
        if not self.permissions.can_manage_config(context):
            return self._denied("configure permissions")
        return self._apply(
            context, f"grant {action.value} to role {role_id}",
            lambda: self.configs.grant_action_role(context.guild_id, action, role_id),
        )

    def revoke_action_role(
        self, context: PermissionContext, action: PermissionAction, role_id: str
    ) -> ConfigChangeResult:
        if not self.permissions.can_manage_config(context):
            return self._denied("configure permissions")
        return self._apply(
            context, f"revoke {action.value} from role {role_id}",
            lambda: self.configs.revoke_action_role(context.guild_id, action, role_id),
        )

    def add_admin_role(self, context: PermissionContext, role_id: str) -> ConfigChangeResult:
        if not self.permissions.can_manage_admins(context):
            return self._denied("manage admin roles")
        return self._apply(
            context, f"add admin role {role_id}",
            lambda: self.configs.add_admin_role(context.guild_id, role_id),
        )

    def remove_admin_role(self, context: PermissionContext, role_id: str) -> ConfigChangeResult:
        if not self.permissions.can_manage_admins(context):
            return self._denied("manage admin roles")
        return self._apply(
            context, f"remove admin role {role_id}",
            lambda: self.configs.remove_admin_role(context.guild_id, role_id),
        )

    def add_admin_user(self, context: PermissionContext, user_id: str) -> ConfigChangeResult:
        if not self.permissions.can_manage_admins(context):
            return self._denied("manage admin users")
        return self._apply(
            context, f"add admin user {user_id}",
            lambda: self.configs.add_admin_user(context.guild_id, user_id),
        )

    def remove_admin_user(self, context: PermissionContext, user_id: str) -> ConfigChangeResult:
        if not self.permissions.can_manage_admins(context):
            return self._denied("manage admin users")
        return self._apply(
            context, f"remove admin user {user_id}",
            lambda: self.configs.remove_admin_user(context.guild_id, user_id),
        )

    # ── Internal ────────────────────────────────────────────────

    @staticmethod
    def _denied(what: str) -> ConfigChangeResult:
        return ConfigChangeResult(success=False, error=f"You do not have permission to {what}")

    @staticmethod
    def _apply(
        context: PermissionContext,
        description: str,
        change: Callable[[], GuildPermissionConfig],
    ) -> ConfigChangeResult:
        try:
            config = change()
        except SQLAlchemyError:
            logger.exception(
                "Config change failed: guild=%s actor=%s change=%s",
                context.guild_id, context.user_id, description,
            )
            return ConfigChangeResult(success=False, error="Failed to update configuration")
        logger.info(
            "Config %s: guild=%s actor=%s", description, context.guild_id, context.user_id
        )
        return ConfigChangeResult(success=True, config=config)
