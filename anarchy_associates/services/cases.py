"""
Case Service — client cases from creation to closure.

Lifecycle:

    pending ──accept──▶ in-progress ──close──▶ closed

Creation is gated by the client case cap; lead attorney changes by the
lead-attorney eligibility rule. Only in-progress cases close, and the close
is a single conditional write so two closures cannot both succeed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError

from anarchy_associates.firm.schema import (
    AuditAction,
    AuditDetails,
    AuditEntry,
    CaseAssignmentRequest,
    CaseClosureRequest,
    CaseCreationRequest,
    CaseRecord,
    CaseStatus,
    LeadAttorneyRequest,
    PermissionContext,
    ValidationResult,
)
from anarchy_associates.governance.permissions import PermissionService
from anarchy_associates.governance.validation import (
    EntityType,
    Operation,
    UnifiedValidationService,
    context_for,
)
from anarchy_associates.store.repositories import AuditLogRepository, CaseRepository

logger = logging.getLogger(__name__)


@dataclass
class CaseOperationResult:
    """Outcome of a case operation."""

    success: bool
    case: CaseRecord | None = None
    error: str | None = None
    validation: ValidationResult | None = None
    warnings: list[str] = field(default_factory=list)


class CaseService:
    def __init__(
        self,
        cases: CaseRepository,
        audit: AuditLogRepository,
        permissions: PermissionService,
        validation: UnifiedValidationService,
    ) -> None:
        self.cases = cases
        self.audit = audit
        self.permissions = permissions
        self.validation = validation

    def create_case(
        self, context: PermissionContext, request: CaseCreationRequest
    ) -> CaseOperationResult:
        """
        Open a case for a client.

        Rejected when the client already has the maximum number of non-closed
        cases; one below the cap the case is created with a warning.
        """
        try:
            checks = self.validation.validate(
                context_for(context, EntityType.CASE, Operation.CREATE, request)
            )
            if not checks.valid:
                return self._rejected(checks)

            case = CaseRecord(
                guild_id=request.guild_id,
                case_number=self.cases.next_case_number(request.guild_id, request.client_username),
                client_id=request.client_id,
                client_username=request.client_username,
                title=request.title,
                description=request.description,
                priority=request.priority,
            )
            stored = self.cases.add(case)
            self._audit(
                context, AuditAction.CASE_CREATED, request.client_id,
                metadata={
                    "case_id": str(stored.id),
                    "case_number": stored.case_number,
                    "priority": stored.priority.value,
                },
            )
            logger.info(
                "Case created: guild=%s case=%s client=%s",
                stored.guild_id, stored.case_number, stored.client_id,
            )
            return CaseOperationResult(
                success=True, case=stored, validation=checks, warnings=checks.warnings
            )

        except SQLAlchemyError:
            logger.exception(
                "Case creation failed: guild=%s actor=%s client=%s",
                request.guild_id, context.user_id, request.client_id,
            )
            return CaseOperationResult(success=False, error="Failed to create case")

    def accept_case(self, context: PermissionContext, case_id: UUID) -> CaseOperationResult:
        """The accepting lawyer is assigned and becomes lead attorney."""
        if not self.permissions.has_lawyer_permission(context):
            return CaseOperationResult(
                success=False, error="You do not have permission to accept cases"
            )
        try:
            case = self.cases.get(case_id)
            if case is None or case.guild_id != context.guild_id:
                return CaseOperationResult(success=False, error="Case not found")
            if case.status != CaseStatus.PENDING:
                return CaseOperationResult(
                    success=False,
                    error=f"Case cannot be accepted - current status: {case.status.value}",
                )

            assigned = list(case.assigned_lawyer_ids)
            if context.user_id not in assigned:
                assigned.append(context.user_id)
            updated = self.cases.save(
                case.model_copy(update={
                    "status": CaseStatus.IN_PROGRESS,
                    "lead_attorney_id": context.user_id,
                    "assigned_lawyer_ids": assigned,
                })
            )
            self._audit(
                context, AuditAction.CASE_ASSIGNED, context.user_id,
                metadata={"case_id": str(case.id), "accepted": True},
            )
            return CaseOperationResult(success=True, case=updated)

        except SQLAlchemyError:
            logger.exception(
                "Case acceptance failed: guild=%s actor=%s case=%s",
                context.guild_id, context.user_id, case_id,
            )
            return CaseOperationResult(success=False, error="Failed to accept case")

    def assign_lawyer(
        self, context: PermissionContext, request: CaseAssignmentRequest
    ) -> CaseOperationResult:
        try:
            checks = self.validation.validate(
                context_for(context, EntityType.CASE, Operation.ASSIGN, request)
            )
            if not checks.valid:
                return self._rejected(checks)

            case = self.cases.get(request.case_id)
            updated = self.cases.save(
                case.model_copy(update={
                    "assigned_lawyer_ids": [*case.assigned_lawyer_ids, request.lawyer_id],
                })
            )
            self._audit(
                context, AuditAction.CASE_ASSIGNED, request.lawyer_id,
                metadata={"case_id": str(case.id)},
            )
            return CaseOperationResult(
                success=True, case=updated, validation=checks, warnings=checks.warnings
            )

        except SQLAlchemyError:
            logger.exception(
                "Lawyer assignment failed: actor=%s case=%s lawyer=%s",
                context.user_id, request.case_id, request.lawyer_id,
            )
            return CaseOperationResult(success=False, error="Failed to assign lawyer")

    def unassign_lawyer(
        self, context: PermissionContext, case_id: UUID, lawyer_id: str
    ) -> CaseOperationResult:
        """Removing the lead attorney also clears the lead."""
        if not self.permissions.has_case_permission(context):
            return CaseOperationResult(
                success=False, error="You do not have permission to unassign lawyers from cases"
            )
        try:
            case = self.cases.get(case_id)
            if case is None or case.guild_id != context.guild_id:
                return CaseOperationResult(success=False, error="Case not found")
            if lawyer_id not in case.assigned_lawyer_ids:
                return CaseOperationResult(
                    success=False, error="Lawyer is not assigned to this case"
                )

            was_lead = case.lead_attorney_id == lawyer_id
            updated = self.cases.save(
                case.model_copy(update={
                    "assigned_lawyer_ids": [i for i in case.assigned_lawyer_ids if i != lawyer_id],
                    "lead_attorney_id": None if was_lead else case.lead_attorney_id,
                })
            )
            if was_lead:
                self._audit(
                    context, AuditAction.LEAD_ATTORNEY_REMOVED, lawyer_id,
                    metadata={"case_id": str(case.id)},
                )
            self._audit(
                context, AuditAction.CASE_ASSIGNED, lawyer_id,
                metadata={"case_id": str(case.id), "unassigned": True},
            )
            return CaseOperationResult(success=True, case=updated)

        except SQLAlchemyError:
            logger.exception(
                "Lawyer unassignment failed: actor=%s case=%s lawyer=%s",
                context.user_id, case_id, lawyer_id,
            )
            return CaseOperationResult(success=False, error="Failed to unassign lawyer")

    def set_lead_attorney(
        self, context: PermissionContext, request: LeadAttorneyRequest
    ) -> CaseOperationResult:
        try:
            checks = self.validation.validate(
                context_for(context, EntityType.CASE, Operation.SET_LEAD_ATTORNEY, request)
            )
            if not checks.valid:
                return self._rejected(checks)

            case = self.cases.get(request.case_id)
            previous = case.lead_attorney_id
            updated = self.cases.save(case.model_copy(update={"lead_attorney_id": request.lawyer_id}))
            self._audit(
                context, AuditAction.LEAD_ATTORNEY_CHANGED, request.lawyer_id,
                metadata={
                    "case_id": str(case.id),
                    "previous_lead_attorney_id": previous,
                },
            )
            return CaseOperationResult(success=True, case=updated, validation=checks)

        except SQLAlchemyError:
            logger.exception(
                "Lead attorney change failed: actor=%s case=%s lawyer=%s",
                context.user_id, request.case_id, request.lawyer_id,
            )
            return CaseOperationResult(success=False, error="Failed to set lead attorney")

    def close_case(
        self, context: PermissionContext, request: CaseClosureRequest
    ) -> CaseOperationResult:
        try:
            checks = self.validation.validate(
                context_for(context, EntityType.CASE, Operation.CLOSE, request)
            )
            if not checks.valid:
                return self._rejected(checks)

            closed = self.cases.close_if_in_progress(
                request.case_id, request.result, context.user_id, request.result_notes
            )
            if closed is None:
                return CaseOperationResult(
                    success=False, error="Case cannot be closed - it is no longer in progress"
                )

            self._audit(
                context, AuditAction.CASE_CLOSED, closed.client_id,
                reason=request.result_notes,
                metadata={
                    "case_id": str(closed.id),
                    "case_number": closed.case_number,
                    "result": request.result.value,
                },
            )
            logger.info(
                "Case closed: guild=%s case=%s result=%s",
                closed.guild_id, closed.case_number, request.result.value,
            )
            return CaseOperationResult(
                success=True, case=closed, validation=checks, warnings=checks.warnings
            )

        except SQLAlchemyError:
            logger.exception(
                "Case closure failed: actor=%s case=%s", context.user_id, request.case_id
            )
            return CaseOperationResult(success=False, error="Failed to close case")

    def get_case(self, context: PermissionContext, case_id: UUID) -> CaseRecord | None:
        if not self.permissions.has_case_permission(context):
            return None
        case = self.cases.get(case_id)
        if case is None or case.guild_id != context.guild_id:
            return None
        return case

    # ── Internal ────────────────────────────────────────────────

    @staticmethod
    def _rejected(validation: ValidationResult) -> CaseOperationResult:
        return CaseOperationResult(
            success=False,
            error="; ".join(validation.errors) or "Validation failed",
            validation=validation,
        )

    def _audit(
        self,
        context: PermissionContext,
        action: AuditAction,
        target_id: str | None,
        reason: str | None = None,
        metadata: dict | None = None,
    ) -> AuditEntry:
        return self.audit.log_action(
            AuditEntry(
                guild_id=context.guild_id,
                action=action,
                actor_id=context.user_id,
                target_id=target_id,
                details=AuditDetails(reason=reason, metadata=metadata or {}),
            )
        )
