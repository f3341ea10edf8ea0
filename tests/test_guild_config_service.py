"""Tests for guild permission administration."""

from __future__ import annotations

from anarchy_associates.config import FirmSettings
from anarchy_associates.firm.schema import PermissionAction, PermissionContext
from anarchy_associates.runtime import FirmRuntime
from anarchy_associates.store.database import Database


class TestGuildConfigService:

    def setup_method(self):
        self.db = Database("sqlite://")
        self.db.initialize()
        self.runtime = FirmRuntime.from_settings(FirmSettings(database_url="sqlite://"), self.db)
        self.service = self.runtime.config

        self.runtime.guild_configs.grant_action_role("G1", PermissionAction.CONFIG, "R_CONFIG")
        self.owner = PermissionContext(guild_id="G1", user_id="OWNER", is_guild_owner=True)
        self.configurer = PermissionContext(guild_id="G1", user_id="U2", user_roles={"R_CONFIG"})
        self.nobody = PermissionContext(guild_id="G1", user_id="U9")

    def teardown_method(self):
        self.db.dispose()

    def test_owner_grants_action_role(self):
        result = self.service.grant_action_role(self.owner, PermissionAction.LAWYER, "R_LAWYER")
        assert result.success
        assert result.config.roles_for(PermissionAction.LAWYER) == {"R_LAWYER"}

        lawyer = PermissionContext(guild_id="G1", user_id="L1", user_roles={"R_LAWYER"})
        assert self.runtime.permissions.has_lawyer_permission(lawyer)

    def test_config_holder_manages_action_roles(self):
        assert self.service.grant_action_role(
            self.configurer, PermissionAction.CASE, "R_CASE"
        ).success
        result = self.service.revoke_action_role(self.configurer, PermissionAction.CASE, "R_CASE")
        assert result.success
        assert result.config.roles_for(PermissionAction.CASE) == set()

    def test_config_holder_cannot_manage_admins(self):
        result = self.service.add_admin_role(self.configurer, "R_ADMIN")
        assert not result.success
        assert result.error == "You do not have permission to manage admin roles"
        assert self.runtime.guild_configs.get("G1").admin_roles == set()

    def test_unprivileged_user_denied(self):
        result = self.service.grant_action_role(self.nobody, PermissionAction.ADMIN, "R_X")
        assert not result.success
        assert result.error == "You do not have permission to configure permissions"
        assert not self.service.get_config(self.nobody).success

    def test_admin_lists(self):
        assert self.service.add_admin_role(self.owner, "R_ADMIN").success
        assert self.service.add_admin_user(self.owner, "U_ADMIN").success

        admin = PermissionContext(guild_id="G1", user_id="U_ADMIN")
        assert self.runtime.permissions.is_admin(admin)

        assert self.service.remove_admin_user(self.owner, "U_ADMIN").success
        config = self.service.remove_admin_role(self.owner, "R_ADMIN").config
        assert config.admin_roles == set()
        assert config.admin_users == set()
        assert not self.runtime.permissions.is_admin(admin)

    def test_admin_role_holder_manages_admins(self):
        self.service.add_admin_role(self.owner, "R_ADMIN")
        admin = PermissionContext(guild_id="G1", user_id="U3", user_roles={"R_ADMIN"})
        assert self.service.add_admin_user(admin, "U4").success
        assert "U4" in self.service.get_config(admin).config.admin_users
