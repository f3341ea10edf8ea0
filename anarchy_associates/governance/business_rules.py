"""
Business Rule Validation — stateful rules that permission lookup cannot express.

Rules:
    role limit      — active holders of a role vs the tier's cap (bypassable)
    promotion       — no self-promotion, strictly higher tier, target role limit
    demotion        — strictly lower tier; the destination cap is not re-checked
    client cases    — non-closed cases per client vs the case cap (never bypassable)
    lead attorney   — actor authority, then target must already be assigned

Every rule returns a ``ValidationResult`` so callers can block, warn or offer
a guild owner bypass. A store failure fails closed: the result is invalid,
carries a generic message, is never bypassable, and the failure is logged.

``bypass_available`` describes the situation only. Whether the actor may
exercise it is decided by the caller from ``PermissionContext.is_guild_owner``.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from sqlalchemy.exc import SQLAlchemyError

from anarchy_associates.firm.hierarchy import cap_of, is_demotion, is_promotion, level_of
from anarchy_associates.firm.schema import (
    CaseRecord,
    PermissionAction,
    PermissionContext,
    StaffRole,
    ValidationResult,
)
from anarchy_associates.governance.permissions import PermissionService
from anarchy_associates.store.repositories import CaseRepository, StaffRepository

logger = logging.getLogger(__name__)

DEFAULT_CLIENT_CASE_LIMIT = 5

# Minimum tier whose holders carry an authority by virtue of their role.
ROLE_LEVEL_AUTHORITIES: dict[PermissionAction, int] = {
    PermissionAction.ADMIN: 6,
    PermissionAction.SENIOR_STAFF: 5,
    PermissionAction.LEAD_ATTORNEY: 3,
    PermissionAction.LAWYER: 2,
    PermissionAction.CASE: 2,
}


class BusinessRuleValidationService:
    """Evaluates firm business rules against the staff and case stores."""

    def __init__(
        self,
        staff: StaffRepository,
        cases: CaseRepository,
        permissions: PermissionService,
        client_case_limit: int = DEFAULT_CLIENT_CASE_LIMIT,
    ) -> None:
        self.staff = staff
        self.cases = cases
        self.permissions = permissions
        self.client_case_limit = client_case_limit

    # ── Role population ─────────────────────────────────────────

    def validate_role_limit(self, context: PermissionContext, role: StaffRole) -> ValidationResult:
        """
        Check that one more active holder of ``role`` fits under its cap.

        Only active records count; terminated and inactive ones never do.
        """
        try:
            current = self.staff.count_active_by_role(context.guild_id, role)
        except SQLAlchemyError:
            logger.exception(
                "Role limit check failed: guild=%s actor=%s role=%s",
                context.guild_id, context.user_id, role.value,
            )
            return ValidationResult.failure("Failed to validate role limits", rule_type="role-limit")

        maximum = cap_of(role)
        metadata = {"rule_type": "role-limit", "role": role.value}

        if current >= maximum:
            result = ValidationResult(
                valid=False,
                errors=[
                    f"Cannot hire {role.value}. Maximum limit of {maximum} "
                    f"reached (current: {current})"
                ],
                bypass_available=True,
                current_count=current,
                max_count=maximum,
                metadata=metadata,
            )
        else:
            result = ValidationResult(
                valid=True, current_count=current, max_count=maximum, metadata=metadata
            )

        logger.debug(
            "Role limit: guild=%s role=%s count=%d/%d valid=%s",
            context.guild_id, role.value, current, maximum, result.valid,
        )
        return result

    # ── Role changes ────────────────────────────────────────────

    def validate_promotion(
        self,
        context: PermissionContext,
        target_user_id: str,
        current_role: StaffRole,
        new_role: StaffRole,
    ) -> ValidationResult:
        """
        Self-promotion is rejected before anything else is looked at,
        including the tier comparison and the role limit.
        """
        if context.user_id == target_user_id:
            return ValidationResult.failure(
                "Staff members cannot promote themselves", rule_type="self-promotion"
            )

        if not is_promotion(current_role, new_role):
            return ValidationResult.failure(
                "New role must be higher than current role for promotion",
                rule_type="promotion-direction",
                current_level=level_of(current_role),
                new_level=level_of(new_role),
            )

        return self.validate_role_limit(context, new_role)

    def validate_demotion(
        self,
        context: PermissionContext,
        target_user_id: str,
        current_role: StaffRole,
        new_role: StaffRole,
    ) -> ValidationResult:
        if not is_demotion(current_role, new_role):
            return ValidationResult.failure(
                "New role must be lower than current role for demotion",
                rule_type="demotion-direction",
                current_level=level_of(current_role),
                new_level=level_of(new_role),
            )
        return ValidationResult.success(
            rule_type="demotion-direction",
            current_level=level_of(current_role),
            new_level=level_of(new_role),
        )

    # ── Client cases ────────────────────────────────────────────

    def validate_client_case_limit(self, guild_id: str, client_id: str) -> ValidationResult:
        """
        Check that the client may open one more case.

        Pending and in-progress cases count, closed cases never do. One below
        the cap the result is still valid but carries a warning.
        """
        maximum = self.client_case_limit
        try:
            current = self.cases.count_open_for_client(guild_id, client_id)
        except SQLAlchemyError:
            logger.exception(
                "Client case limit check failed: guild=%s client=%s", guild_id, client_id
            )
            return ValidationResult.failure(
                "Failed to validate client case limits", rule_type="case-limit"
            )

        metadata = {"rule_type": "case-limit", "client_id": client_id}
        if current >= maximum:
            result = ValidationResult(
                valid=False,
                errors=[
                    f"Client has reached maximum active case limit ({maximum}). "
                    f"Current active cases: {current}"
                ],
                current_count=current,
                max_count=maximum,
                metadata=metadata,
            )
        else:
            warnings = []
            if current == maximum - 1:
                warnings.append(
                    f"Client is approaching the active case limit "
                    f"({current} of {maximum} active cases)"
                )
            result = ValidationResult(
                valid=True,
                warnings=warnings,
                current_count=current,
                max_count=maximum,
                metadata=metadata,
            )

        logger.debug(
            "Client case limit: guild=%s client=%s count=%d/%d valid=%s",
            guild_id, client_id, current, maximum, result.valid,
        )
        return result

    # ── Lead attorney ───────────────────────────────────────────

    def validate_lead_attorney(
        self, context: PermissionContext, case: CaseRecord, user_id: str
    ) -> ValidationResult:
        if not self.permissions.has_lead_attorney_permission(context):
            return ValidationResult.failure(
                "You do not have permission to set lead attorneys",
                rule_type="lead-attorney-permission",
            )

        if user_id not in case.assigned_lawyer_ids:
            return ValidationResult.failure(
                "User cannot be assigned as lead attorney: they must first be "
                "assigned to the case as a lawyer",
                rule_type="lead-attorney-eligibility",
                case_id=str(case.id),
            )

        return ValidationResult.success(rule_type="lead-attorney-eligibility")

    # ── Staff and permission helpers ────────────────────────────

    def validate_staff_member(
        self,
        context: PermissionContext,
        user_id: str,
        required_actions: Iterable[PermissionAction] = (),
    ) -> ValidationResult:
        """
        Check that ``user_id`` is active staff whose tier carries every
        authority in ``required_actions``.
        """
        try:
            staff = self.staff.find_active(context.guild_id, user_id)
        except SQLAlchemyError:
            logger.exception(
                "Staff validation failed: guild=%s actor=%s user=%s",
                context.guild_id, context.user_id, user_id,
            )
            return ValidationResult.failure("Failed to validate staff member")

        if staff is None:
            return ValidationResult.failure(
                "User is not an active staff member", rule_type="staff-validation", user_id=user_id
            )

        level = level_of(staff.role)
        missing = [
            action.value
            for action in required_actions
            if level < ROLE_LEVEL_AUTHORITIES.get(action, len(StaffRole) + 1)
        ]
        if missing:
            return ValidationResult.failure(
                f"User lacks required permissions: {', '.join(missing)}",
                rule_type="staff-validation",
                user_id=user_id,
                current_role=staff.role.value,
            )
        return ValidationResult.success(
            rule_type="staff-validation", user_id=user_id, current_role=staff.role.value
        )

    def validate_permission(
        self, context: PermissionContext, action: PermissionAction
    ) -> ValidationResult:
        """Package a composite permission check as a result."""
        checks = {
            PermissionAction.ADMIN: self.permissions.is_admin,
            PermissionAction.SENIOR_STAFF: self.permissions.has_senior_staff_permission,
            PermissionAction.CASE: self.permissions.has_case_permission,
            PermissionAction.CONFIG: self.permissions.can_manage_config,
            PermissionAction.LAWYER: self.permissions.has_lawyer_permission,
            PermissionAction.LEAD_ATTORNEY: self.permissions.has_lead_attorney_permission,
            PermissionAction.REPAIR: self.permissions.can_repair,
        }
        if checks[action](context):
            return ValidationResult.success(
                rule_type="permission-validation", required_permission=action.value
            )
        return ValidationResult.failure(
            f"Missing required permission: {action.value}",
            rule_type="permission-validation",
            required_permission=action.value,
        )

    def validate_multiple(self, results: Iterable[ValidationResult]) -> ValidationResult:
        results = list(results)
        merged = ValidationResult.merge(*results)
        merged.metadata.update(
            rule_type="multiple-validation",
            validation_count=len(results),
            invalid_results=sum(1 for r in results if not r.valid),
        )
        return merged
