"""
Tests for the Business Rule Validation Service.

Validates:
- Role population limits (active staff only, bypass eligibility)
- Promotion and demotion direction, self-promotion
- Client active-case cap and its warning
- Lead attorney eligibility
- Fail-closed behaviour on store failures
"""

from __future__ import annotations

import pytest
from sqlalchemy.exc import OperationalError

from anarchy_associates.config import FirmSettings
from anarchy_associates.firm.hierarchy import cap_of, level_of
from anarchy_associates.firm.schema import (
    CaseRecord,
    CaseStatus,
    PermissionAction,
    PermissionContext,
    PromotionActionType,
    PromotionRecord,
    StaffRecord,
    StaffRole,
)
from anarchy_associates.governance.business_rules import BusinessRuleValidationService
from anarchy_associates.runtime import FirmRuntime
from anarchy_associates.store.database import Database


def seed_staff(runtime, user_id, role, guild_id="G1", terminated=False):
    runtime.staff_repository.insert_or_reactivate(
        StaffRecord(guild_id=guild_id, user_id=user_id, role=role, hired_by="SEED")
    )
    if terminated:
        runtime.staff_repository.terminate(
            guild_id, user_id,
            PromotionRecord(
                from_role=role, to_role=role, actor_id="SEED",
                action_type=PromotionActionType.FIRE,
            ),
        )


def seed_case(runtime, client_id, status=CaseStatus.PENDING, guild_id="G1", **fields):
    return runtime.case_repository.add(
        CaseRecord(
            guild_id=guild_id,
            case_number=runtime.case_repository.next_case_number(guild_id, client_id),
            client_id=client_id,
            client_username=client_id,
            title="Contract dispute",
            status=status,
            **fields,
        )
    )


class FailingStaffRepository:
    def count_active_by_role(self, guild_id, role):
        raise OperationalError("SELECT count", {}, Exception("database unreachable"))


class FailingCaseRepository:
    def count_open_for_client(self, guild_id, client_id):
        raise OperationalError("SELECT count", {}, Exception("database unreachable"))


class TestRoleLimit:

    def setup_method(self):
        self.db = Database("sqlite://")
        self.db.initialize()
        self.runtime = FirmRuntime.from_settings(FirmSettings(database_url="sqlite://"), self.db)
        self.rules = self.runtime.rules
        self.actor = PermissionContext(guild_id="G1", user_id="U2")

    def teardown_method(self):
        self.db.dispose()

    def test_under_cap_is_valid(self):
        result = self.rules.validate_role_limit(self.actor, StaffRole.SENIOR_PARTNER)
        assert result.valid
        assert (result.current_count, result.max_count) == (0, 3)

    @pytest.mark.parametrize("role", list(StaffRole))
    def test_full_role_fails_with_bypass(self, role):
        """Hiring the (M+1)-th holder fails with currentCount=M, maxCount=M."""
        for i in range(cap_of(role)):
            seed_staff(self.runtime, f"S{i}", role)

        result = self.rules.validate_role_limit(self.actor, role)

        assert not result.valid
        assert result.bypass_available
        assert result.current_count == cap_of(role)
        assert result.max_count == cap_of(role)
        assert result.errors == [
            f"Cannot hire {role.value}. Maximum limit of {cap_of(role)} "
            f"reached (current: {cap_of(role)})"
        ]

    def test_terminated_staff_do_not_count(self):
        seed_staff(self.runtime, "U1", StaffRole.MANAGING_PARTNER, terminated=True)
        result = self.rules.validate_role_limit(self.actor, StaffRole.MANAGING_PARTNER)
        assert result.valid
        assert result.current_count == 0

    def test_other_guilds_do_not_count(self):
        seed_staff(self.runtime, "U1", StaffRole.MANAGING_PARTNER, guild_id="G2")
        assert self.rules.validate_role_limit(self.actor, StaffRole.MANAGING_PARTNER).valid

    def test_store_failure_fails_closed_without_bypass(self):
        rules = BusinessRuleValidationService(
            FailingStaffRepository(), self.runtime.case_repository, self.runtime.permissions
        )
        result = rules.validate_role_limit(self.actor, StaffRole.PARALEGAL)
        assert not result.valid
        assert not result.bypass_available
        assert result.errors == ["Failed to validate role limits"]


class TestRoleChanges:

    def setup_method(self):
        self.db = Database("sqlite://")
        self.db.initialize()
        self.runtime = FirmRuntime.from_settings(FirmSettings(database_url="sqlite://"), self.db)
        self.rules = self.runtime.rules
        self.actor = PermissionContext(guild_id="G1", user_id="U6")

    def teardown_method(self):
        self.db.dispose()

    def test_promotion_iff_higher(self):
        for current in StaffRole:
            for target in StaffRole:
                result = self.rules.validate_promotion(self.actor, "U5", current, target)
                assert result.valid == (level_of(target) > level_of(current)), (current, target)

    def test_demotion_iff_lower(self):
        for current in StaffRole:
            for target in StaffRole:
                result = self.rules.validate_demotion(self.actor, "U5", current, target)
                assert result.valid == (level_of(target) < level_of(current)), (current, target)

    def test_wrong_direction_messages(self):
        up = self.rules.validate_promotion(
            self.actor, "U5", StaffRole.SENIOR_ASSOCIATE, StaffRole.PARALEGAL
        )
        down = self.rules.validate_demotion(
            self.actor, "U5", StaffRole.PARALEGAL, StaffRole.SENIOR_ASSOCIATE
        )
        assert up.errors == ["New role must be higher than current role for promotion"]
        assert down.errors == ["New role must be lower than current role for demotion"]

    def test_self_promotion_always_rejected(self):
        self_actor = PermissionContext(guild_id="G1", user_id="U5")
        for current in StaffRole:
            for target in StaffRole:
                result = self.rules.validate_promotion(self_actor, "U5", current, target)
                assert not result.valid
                assert result.errors == ["Staff members cannot promote themselves"]

    def test_self_promotion_checked_before_role_limit(self):
        seed_staff(self.runtime, "MP", StaffRole.MANAGING_PARTNER)
        self_actor = PermissionContext(guild_id="G1", user_id="U5")
        result = self.rules.validate_promotion(
            self_actor, "U5", StaffRole.SENIOR_PARTNER, StaffRole.MANAGING_PARTNER
        )
        assert result.errors == ["Staff members cannot promote themselves"]
        assert not result.bypass_available
        assert result.current_count is None

    def test_promotion_into_full_role_is_bypassable(self):
        seed_staff(self.runtime, "MP", StaffRole.MANAGING_PARTNER)
        result = self.rules.validate_promotion(
            self.actor, "U5", StaffRole.SENIOR_PARTNER, StaffRole.MANAGING_PARTNER
        )
        assert not result.valid
        assert result.bypass_available
        assert (result.current_count, result.max_count) == (1, 1)

    def test_demotion_into_full_role_is_not_rechecked(self):
        for i in range(cap_of(StaffRole.PARALEGAL)):
            seed_staff(self.runtime, f"P{i}", StaffRole.PARALEGAL)
        result = self.rules.validate_demotion(
            self.actor, "U5", StaffRole.JUNIOR_ASSOCIATE, StaffRole.PARALEGAL
        )
        assert result.valid


class TestClientCaseLimit:

    def setup_method(self):
        self.db = Database("sqlite://")
        self.db.initialize()
        self.runtime = FirmRuntime.from_settings(FirmSettings(database_url="sqlite://"), self.db)
        self.rules = self.runtime.rules

    def teardown_method(self):
        self.db.dispose()

    def test_sixth_open_case_rejected(self):
        for status in [CaseStatus.PENDING] * 3 + [CaseStatus.IN_PROGRESS] * 2:
            seed_case(self.runtime, "C1", status=status)

        result = self.rules.validate_client_case_limit("G1", "C1")

        assert not result.valid
        assert not result.bypass_available
        assert "maximum active case limit (5)" in result.errors[0]
        assert (result.current_count, result.max_count) == (5, 5)

    def test_closed_cases_never_count(self):
        for _ in range(12):
            seed_case(self.runtime, "C1", status=CaseStatus.CLOSED)
        result = self.rules.validate_client_case_limit("G1", "C1")
        assert result.valid
        assert result.current_count == 0
        assert result.warnings == []

    def test_warning_one_below_cap(self):
        for _ in range(4):
            seed_case(self.runtime, "C1")
        result = self.rules.validate_client_case_limit("G1", "C1")
        assert result.valid
        assert len(result.warnings) == 1
        assert (result.current_count, result.max_count) == (4, 5)

    def test_cases_of_other_clients_do_not_count(self):
        for _ in range(5):
            seed_case(self.runtime, "C2")
        assert self.rules.validate_client_case_limit("G1", "C1").valid

    def test_configured_limit(self):
        rules = BusinessRuleValidationService(
            self.runtime.staff_repository, self.runtime.case_repository,
            self.runtime.permissions, client_case_limit=2,
        )
        seed_case(self.runtime, "C1")
        seed_case(self.runtime, "C1")
        result = rules.validate_client_case_limit("G1", "C1")
        assert not result.valid
        assert "(2)" in result.errors[0]

    def test_store_failure_fails_closed(self):
        rules = BusinessRuleValidationService(
            self.runtime.staff_repository, FailingCaseRepository(), self.runtime.permissions
        )
        result = rules.validate_client_case_limit("G1", "C1")
        assert not result.valid
        assert not result.bypass_available


class TestLeadAttorney:

    def setup_method(self):
        self.db = Database("sqlite://")
        self.db.initialize()
        self.runtime = FirmRuntime.from_settings(FirmSettings(database_url="sqlite://"), self.db)
        self.rules = self.runtime.rules
        self.runtime.guild_configs.grant_action_role(
            "G1", PermissionAction.LEAD_ATTORNEY, "R_LEAD"
        )
        self.case = seed_case(
            self.runtime, "C1", status=CaseStatus.IN_PROGRESS, assigned_lawyer_ids=["L1"]
        )

    def teardown_method(self):
        self.db.dispose()

    def test_assigned_lawyer_can_become_lead(self):
        actor = PermissionContext(guild_id="G1", user_id="U1", user_roles={"R_LEAD"})
        assert self.rules.validate_lead_attorney(actor, self.case, "L1").valid

    def test_unassigned_lawyer_rejected_even_with_full_permission(self):
        owner = PermissionContext(guild_id="G1", user_id="OWNER", is_guild_owner=True)
        result = self.rules.validate_lead_attorney(owner, self.case, "L2")
        assert not result.valid
        assert result.errors[0].startswith("User cannot be assigned as lead attorney")

    def test_actor_without_permission_gets_distinct_message(self):
        actor = PermissionContext(guild_id="G1", user_id="U1", user_roles={"R_OTHER"})
        result = self.rules.validate_lead_attorney(actor, self.case, "L1")
        assert not result.valid
        assert "permission" in result.errors[0]
        assert not result.errors[0].startswith("User cannot be assigned as lead attorney")


class TestStaffAndPermissionHelpers:

    def setup_method(self):
        self.db = Database("sqlite://")
        self.db.initialize()
        self.runtime = FirmRuntime.from_settings(FirmSettings(database_url="sqlite://"), self.db)
        self.rules = self.runtime.rules
        self.actor = PermissionContext(guild_id="G1", user_id="U1")

    def teardown_method(self):
        self.db.dispose()

    def test_validate_staff_member(self):
        seed_staff(self.runtime, "SA", StaffRole.SENIOR_ASSOCIATE)
        assert self.rules.validate_staff_member(
            self.actor, "SA", [PermissionAction.LAWYER, PermissionAction.LEAD_ATTORNEY]
        ).valid

        result = self.rules.validate_staff_member(self.actor, "SA", [PermissionAction.SENIOR_STAFF])
        assert not result.valid
        assert "senior-staff" in result.errors[0]

        assert not self.rules.validate_staff_member(self.actor, "NOBODY").valid

    def test_validate_permission(self):
        assert not self.rules.validate_permission(self.actor, PermissionAction.CONFIG).valid
        owner = PermissionContext(guild_id="G1", user_id="OWNER", is_guild_owner=True)
        assert self.rules.validate_permission(owner, PermissionAction.CONFIG).valid

    def test_validate_multiple(self):
        seed_staff(self.runtime, "MP", StaffRole.MANAGING_PARTNER)
        merged = self.rules.validate_multiple([
            self.rules.validate_role_limit(self.actor, StaffRole.PARALEGAL),
            self.rules.validate_role_limit(self.actor, StaffRole.MANAGING_PARTNER),
        ])
        assert not merged.valid
        assert merged.bypass_available
        assert merged.metadata["validation_count"] == 2
        assert merged.metadata["invalid_results"] == 1
