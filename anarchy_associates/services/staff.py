"""
Staff Service — hire, promote, demote and fire firm staff.

Every mutating operation follows the same pipeline:

1. structural, permission and cross-entity validation
2. the operation's business rule (role limit, promotion direction, ...)
3. guild owner bypass handling when the rule failed on a role limit
4. the staff record mutation, with a promotion-history entry, committed in
   one transaction with the operation's audit entry (plus the critical
   entry of a consumed bypass)

A guild owner hitting a role limit first receives a pending
``BypassRequest``; the operation proceeds only when it is called again with
that request confirmed (phrase + reason).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from sqlalchemy.exc import SQLAlchemyError

from anarchy_associates.firm.errors import FirmError
from anarchy_associates.firm.hierarchy import cap_of, roles_by_level
from anarchy_associates.firm.schema import (
    AuditAction,
    AuditDetails,
    AuditEntry,
    AuditState,
    HireRequest,
    PermissionContext,
    PromotionActionType,
    PromotionRecord,
    RoleChangeRequest,
    StaffRecord,
    StaffRole,
    StaffStatus,
    TerminationRequest,
    ValidationResult,
)
from anarchy_associates.governance.bypass import BypassRequest, GuildOwnerBypassService
from anarchy_associates.governance.business_rules import BusinessRuleValidationService
from anarchy_associates.governance.permissions import PermissionService
from anarchy_associates.governance.validation import (
    EntityType,
    Operation,
    UnifiedValidationService,
    context_for,
)
from anarchy_associates.store.repositories import AuditLogRepository, StaffRepository

logger = logging.getLogger(__name__)


@dataclass
class StaffOperationResult:
    """Outcome of a staff operation."""

    success: bool
    staff: StaffRecord | None = None
    error: str | None = None
    validation: ValidationResult | None = None
    bypass_request: BypassRequest | None = None
    warnings: list[str] = field(default_factory=list)

    @property
    def needs_confirmation(self) -> bool:
        """A guild owner bypass is waiting for confirmation."""
        return self.bypass_request is not None and not self.bypass_request.confirmed


class StaffService:
    """Staff lifecycle management for one firm per guild."""

    def __init__(
        self,
        staff: StaffRepository,
        audit: AuditLogRepository,
        permissions: PermissionService,
        rules: BusinessRuleValidationService,
        validation: UnifiedValidationService,
        bypass: GuildOwnerBypassService,
    ) -> None:
        self.staff = staff
        self.audit = audit
        self.permissions = permissions
        self.rules = rules
        self.validation = validation
        self.bypass = bypass

    # ── Hire ────────────────────────────────────────────────────

    def hire_staff(
        self,
        context: PermissionContext,
        request: HireRequest,
        bypass: BypassRequest | None = None,
    ) -> StaffOperationResult:
        """
        Hire a user into a role.

        Args:
            context: The hiring actor.
            request: Who to hire, into which role.
            bypass: A confirmed bypass request when re-submitting a hire that
                previously failed on the role limit.

        Returns:
            StaffOperationResult. When the role is full and the actor is the
            guild owner without a confirmed bypass, ``bypass_request`` holds
            the request to confirm.
        """
        try:
            checks = self.validation.validate(
                context_for(context, EntityType.STAFF, Operation.HIRE, request),
                exclude={"business-rule"},
            )
            if not checks.valid:
                return self._rejected(checks)

            limit = self.rules.validate_role_limit(context, request.role)
            blocked, bypass = self._resolve_bypass(
                context, limit, request.user_id, request.role, PromotionActionType.HIRE, bypass
            )
            if blocked is not None:
                return blocked

            record = StaffRecord(
                guild_id=request.guild_id,
                user_id=request.user_id,
                roblox_username=request.roblox_username,
                role=request.role,
                hired_by=request.hired_by,
                promotion_history=[
                    PromotionRecord(
                        from_role=request.role,
                        to_role=request.role,
                        actor_id=context.user_id,
                        reason=request.reason,
                        action_type=PromotionActionType.HIRE,
                    )
                ],
            )
            hired = self._entry(
                context, AuditAction.STAFF_HIRED, request.user_id,
                after=AuditState(role=request.role, status=StaffStatus.ACTIVE.value),
                reason=request.reason,
                metadata={
                    "roblox_username": request.roblox_username,
                    "guild_owner_bypass": bypass is not None,
                },
            )
            stored = self.staff.insert_or_reactivate(
                record, audit_entries=self._with_bypass(hired, bypass)
            )
            if stored is None:
                return StaffOperationResult(
                    success=False, error="User is already an active staff member"
                )
            if bypass is not None:
                self.bypass.consume(bypass)

            logger.info(
                "Staff hired: guild=%s user=%s role=%s by=%s",
                stored.guild_id, stored.user_id, stored.role.value, context.user_id,
            )
            return StaffOperationResult(
                success=True, staff=stored, validation=limit, warnings=checks.warnings
            )

        except FirmError as exc:
            return StaffOperationResult(success=False, error=str(exc))
        except SQLAlchemyError:
            logger.exception(
                "Hire failed: guild=%s actor=%s target=%s",
                request.guild_id, context.user_id, request.user_id,
            )
            return StaffOperationResult(success=False, error="Failed to hire staff member")

    # ── Promote / demote ────────────────────────────────────────

    def promote_staff(
        self,
        context: PermissionContext,
        request: RoleChangeRequest,
        bypass: BypassRequest | None = None,
    ) -> StaffOperationResult:
        return self._change_role(context, request, PromotionActionType.PROMOTION, bypass)

    def demote_staff(
        self, context: PermissionContext, request: RoleChangeRequest
    ) -> StaffOperationResult:
        """Demotions never hit a role limit, so they never need a bypass."""
        return self._change_role(context, request, PromotionActionType.DEMOTION, None)

    def _change_role(
        self,
        context: PermissionContext,
        request: RoleChangeRequest,
        action_type: PromotionActionType,
        bypass: BypassRequest | None,
    ) -> StaffOperationResult:
        promoting = action_type == PromotionActionType.PROMOTION
        operation = Operation.PROMOTE if promoting else Operation.DEMOTE
        try:
            checks = self.validation.validate(
                context_for(context, EntityType.STAFF, operation, request),
                exclude={"business-rule"},
            )
            if not checks.valid:
                return self._rejected(checks)

            current = self.staff.find_active(request.guild_id, request.user_id)
            if current is None:
                return StaffOperationResult(success=False, error="Staff member not found")

            if promoting:
                rule = self.rules.validate_promotion(
                    context, request.user_id, current.role, request.new_role
                )
            else:
                rule = self.rules.validate_demotion(
                    context, request.user_id, current.role, request.new_role
                )
            blocked, bypass = self._resolve_bypass(
                context, rule, request.user_id, request.new_role, action_type, bypass
            )
            if blocked is not None:
                return blocked

            entry = PromotionRecord(
                from_role=current.role,
                to_role=request.new_role,
                actor_id=context.user_id,
                reason=request.reason,
                action_type=action_type,
            )
            changed = self._entry(
                context,
                AuditAction.STAFF_PROMOTED if promoting else AuditAction.STAFF_DEMOTED,
                request.user_id,
                before=AuditState(role=current.role, status=current.status.value),
                after=AuditState(role=request.new_role, status=current.status.value),
                reason=request.reason,
                metadata={"guild_owner_bypass": bypass is not None},
            )
            updated = self.staff.change_role(
                request.guild_id, request.user_id, entry,
                audit_entries=self._with_bypass(changed, bypass),
            )
            if updated is None:
                return StaffOperationResult(success=False, error="Staff member not found")
            if bypass is not None:
                self.bypass.consume(bypass)

            logger.info(
                "Staff %s: guild=%s user=%s %s -> %s by=%s",
                action_type.value, request.guild_id, request.user_id,
                current.role.value, updated.role.value, context.user_id,
            )
            return StaffOperationResult(
                success=True,
                staff=updated,
                validation=rule,
                warnings=checks.warnings + rule.warnings,
            )

        except FirmError as exc:
            return StaffOperationResult(success=False, error=str(exc))
        except SQLAlchemyError:
            logger.exception(
                "Role change failed: guild=%s actor=%s target=%s action=%s",
                request.guild_id, context.user_id, request.user_id, action_type.value,
            )
            return StaffOperationResult(
                success=False, error=f"Failed to process staff {action_type.value}"
            )

    # ── Fire ────────────────────────────────────────────────────

    def fire_staff(
        self, context: PermissionContext, request: TerminationRequest
    ) -> StaffOperationResult:
        try:
            checks = self.validation.validate(
                context_for(context, EntityType.STAFF, Operation.FIRE, request)
            )
            if not checks.valid:
                return self._rejected(checks)

            current = self.staff.find_active(request.guild_id, request.user_id)
            if current is None:
                return StaffOperationResult(success=False, error="Staff member not found")

            entry = PromotionRecord(
                from_role=current.role,
                to_role=current.role,
                actor_id=context.user_id,
                reason=request.reason,
                action_type=PromotionActionType.FIRE,
            )
            terminated = self.staff.terminate(request.guild_id, request.user_id, entry)
            if terminated is None:
                return StaffOperationResult(success=False, error="Staff member not found")

            self._audit(
                context, AuditAction.STAFF_FIRED, request.user_id,
                before=AuditState(role=current.role, status=current.status.value),
                after=AuditState(role=terminated.role, status=terminated.status.value),
                reason=request.reason,
            )
            logger.info(
                "Staff fired: guild=%s user=%s role=%s by=%s",
                request.guild_id, request.user_id, current.role.value, context.user_id,
            )
            return StaffOperationResult(
                success=True, staff=terminated, validation=checks, warnings=checks.warnings
            )

        except SQLAlchemyError:
            logger.exception(
                "Termination failed: guild=%s actor=%s target=%s",
                request.guild_id, context.user_id, request.user_id,
            )
            return StaffOperationResult(success=False, error="Failed to fire staff member")

    # ── Queries ─────────────────────────────────────────────────

    def get_staff(self, context: PermissionContext, user_id: str) -> StaffOperationResult:
        if not self._can_view(context):
            return StaffOperationResult(
                success=False, error="You do not have permission to view staff information"
            )
        try:
            record = self.staff.find(context.guild_id, user_id)
            self._audit(context, AuditAction.STAFF_INFO_VIEWED, user_id)
        except SQLAlchemyError:
            logger.exception("Staff lookup failed: guild=%s user=%s", context.guild_id, user_id)
            return StaffOperationResult(success=False, error="Failed to load staff member")
        if record is None:
            return StaffOperationResult(success=False, error="Staff member not found")
        return StaffOperationResult(success=True, staff=record)

    def list_staff(
        self, context: PermissionContext, role: StaffRole | None = None
    ) -> list[StaffRecord]:
        """Active staff, highest tier first. Empty when the actor may not view staff."""
        if not self._can_view(context):
            return []
        try:
            records = self.staff.list_active(context.guild_id, role)
            self._audit(
                context, AuditAction.STAFF_LIST_VIEWED, None,
                metadata={"role_filter": role.value if role else None, "count": len(records)},
            )
        except SQLAlchemyError:
            logger.exception("Staff listing failed: guild=%s", context.guild_id)
            return []
        return records

    def role_counts(self, context: PermissionContext) -> dict[StaffRole, tuple[int, int]]:
        """Active holders and cap per role, highest tier first. Empty when not permitted."""
        if not self._can_view(context):
            return {}
        try:
            return {
                role: (self.staff.count_active_by_role(context.guild_id, role), cap_of(role))
                for role in roles_by_level()
            }
        except SQLAlchemyError:
            logger.exception("Role count failed: guild=%s", context.guild_id)
            return {}

    # ── Internal ────────────────────────────────────────────────

    def _can_view(self, context: PermissionContext) -> bool:
        return self.permissions.has_senior_staff_permission(
            context
        ) or self.permissions.has_lawyer_permission(context)

    def _resolve_bypass(
        self,
        context: PermissionContext,
        rule: ValidationResult,
        target_id: str,
        role: StaffRole,
        operation: PromotionActionType,
        bypass: BypassRequest | None,
    ) -> tuple[StaffOperationResult | None, BypassRequest | None]:
        """
        Decide what a failed rule means for this actor.

        Returns ``(blocked_result, None)`` when the operation must stop, or
        ``(None, confirmed_request)`` / ``(None, None)`` when it may proceed.
        """
        if rule.valid:
            return None, None

        if not (rule.bypass_available and context.is_guild_owner):
            return self._rejected(rule), None

        if bypass is None:
            request = self.bypass.open_request(context, rule, target_id, role, operation)
            return StaffOperationResult(
                success=False,
                error=self.bypass.prompt_for(request),
                validation=rule,
                bypass_request=request,
            ), None

        current = self.bypass.get(bypass.id)
        if (
            not current.confirmed
            or current.actor_id != context.user_id
            or not current.matches(context.guild_id, target_id, role)
        ):
            return StaffOperationResult(
                success=False,
                error="Bypass request does not match this operation or is not confirmed",
                validation=rule,
            ), None

        logger.warning(
            "Guild owner proceeding past role limit: guild=%s target=%s role=%s count=%s/%s",
            context.guild_id, target_id, role.value, rule.current_count, rule.max_count,
        )
        return None, current

    @staticmethod
    def _rejected(validation: ValidationResult) -> StaffOperationResult:
        return StaffOperationResult(
            success=False,
            error="; ".join(validation.errors) or "Validation failed",
            validation=validation,
        )

    @staticmethod
    def _entry(
        context: PermissionContext,
        action: AuditAction,
        target_id: str | None,
        before: AuditState | None = None,
        after: AuditState | None = None,
        reason: str | None = None,
        metadata: dict | None = None,
    ) -> AuditEntry:
        return AuditEntry(
            guild_id=context.guild_id,
            action=action,
            actor_id=context.user_id,
            target_id=target_id,
            details=AuditDetails(
                before=before, after=after, reason=reason, metadata=metadata or {}
            ),
        )

    def _with_bypass(
        self, entry: AuditEntry, bypass: BypassRequest | None
    ) -> list[AuditEntry]:
        if bypass is None:
            return [entry]
        return [entry, self.bypass.entry_for(bypass)]

    def _audit(
        self,
        context: PermissionContext,
        action: AuditAction,
        target_id: str | None,
        **details,
    ) -> AuditEntry:
        return self.audit.log_action(self._entry(context, action, target_id, **details))
