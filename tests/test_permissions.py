"""
Tests for the Permission Service.

Validates:
- Guild owner override
- Admin users and admin roles
- Independence of non-admin actions from admin
- Composite checks
- Fail-closed behaviour on malformed contexts and store failures
"""

from __future__ import annotations

from sqlalchemy.exc import OperationalError

from anarchy_associates.firm.schema import PermissionAction, PermissionContext
from anarchy_associates.governance.permissions import PermissionService
from anarchy_associates.store.database import Database
from anarchy_associates.store.repositories import GuildConfigRepository


class FailingConfigRepository:
    def ensure_guild_config(self, guild_id):
        raise OperationalError("SELECT 1", {}, Exception("database unreachable"))


class TestPermissionService:
    """Test the per-guild permission checks."""

    def setup_method(self):
        self.db = Database("sqlite://")
        self.db.initialize()
        self.configs = GuildConfigRepository(self.db)
        self.service = PermissionService(self.configs)

        self.configs.add_admin_role("G1", "R_ADMIN")
        self.configs.add_admin_user("G1", "U_ADMIN")
        self.configs.grant_action_role("G1", PermissionAction.LAWYER, "R_LAWYER")
        self.configs.grant_action_role("G1", PermissionAction.SENIOR_STAFF, "R_SENIOR")

    def teardown_method(self):
        self.db.dispose()

    def ctx(self, user_id="U1", roles=(), owner=False, guild_id="G1"):
        return PermissionContext(
            guild_id=guild_id, user_id=user_id, user_roles=frozenset(roles), is_guild_owner=owner
        )

    def test_guild_owner_granted_every_action(self):
        owner = self.ctx(user_id="OWNER", owner=True)
        for action in PermissionAction:
            assert self.service.has_action_permission(owner, action)

    def test_guild_owner_granted_even_without_config(self):
        owner = self.ctx(user_id="OWNER", owner=True, guild_id="G_UNCONFIGURED")
        assert self.service.has_lawyer_permission(owner)

    def test_admin_user_is_admin(self):
        assert self.service.is_admin(self.ctx(user_id="U_ADMIN"))

    def test_admin_role_is_admin(self):
        assert self.service.is_admin(self.ctx(roles={"R_ADMIN"}))

    def test_admin_role_does_not_imply_lawyer_action(self):
        """Admin holders do not hold other raw actions."""
        admin = self.ctx(roles={"R_ADMIN"})
        assert not self.service.has_action_permission(admin, PermissionAction.LAWYER)
        assert not self.service.has_action_permission(admin, PermissionAction.REPAIR)

    def test_composites_include_admin(self):
        admin = self.ctx(roles={"R_ADMIN"})
        assert self.service.has_lawyer_permission(admin)
        assert self.service.has_senior_staff_permission(admin)
        assert self.service.has_lead_attorney_permission(admin)
        assert self.service.can_manage_config(admin)
        assert self.service.can_repair(admin)

    def test_action_role_grants_only_that_action(self):
        lawyer = self.ctx(roles={"R_LAWYER"})
        assert self.service.has_lawyer_permission(lawyer)
        assert not self.service.is_admin(lawyer)
        assert not self.service.has_senior_staff_permission(lawyer)
        assert not self.service.has_lead_attorney_permission(lawyer)

    def test_no_roles_no_permission(self):
        nobody = self.ctx()
        summary = self.service.get_permission_summary(nobody)
        assert set(summary) == set(PermissionAction)
        assert not any(summary.values())

    def test_unconfigured_guild_is_created_with_defaults(self):
        assert self.configs.get("G2") is None
        assert not self.service.has_lawyer_permission(self.ctx(guild_id="G2", roles={"R_LAWYER"}))
        created = self.configs.get("G2")
        assert created is not None
        assert all(roles == set() for roles in created.permissions.values())

    def test_malformed_context_denied(self):
        assert not self.service.is_admin(self.ctx(user_id="", roles={"R_ADMIN"}))
        assert not self.service.has_lawyer_permission(self.ctx(guild_id="", roles={"R_LAWYER"}))

    def test_repeated_checks_are_idempotent(self):
        lawyer = self.ctx(roles={"R_LAWYER"})
        first = self.service.has_action_permission(lawyer, PermissionAction.LAWYER)
        second = self.service.has_action_permission(lawyer, PermissionAction.LAWYER)
        assert first == second is True

    def test_revoked_role_loses_permission(self):
        self.configs.revoke_action_role("G1", PermissionAction.LAWYER, "R_LAWYER")
        assert not self.service.has_lawyer_permission(self.ctx(roles={"R_LAWYER"}))

    def test_can_manage_admins(self):
        assert self.service.can_manage_admins(self.ctx(user_id="OWNER", owner=True))
        assert self.service.can_manage_admins(self.ctx(roles={"R_ADMIN"}))
        assert not self.service.can_manage_admins(self.ctx(roles={"R_SENIOR"}))

    def test_store_failure_fails_closed(self):
        service = PermissionService(FailingConfigRepository())
        assert not service.is_admin(self.ctx(user_id="U_ADMIN"))
        assert not service.has_lawyer_permission(self.ctx(roles={"R_LAWYER"}))

    def test_store_failure_does_not_affect_owner(self):
        service = PermissionService(FailingConfigRepository())
        assert service.is_admin(self.ctx(user_id="OWNER", owner=True))
