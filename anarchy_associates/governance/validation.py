"""
Unified Validation — strategy dispatch over (entity type, operation) pairs.

A ``ValidationContext`` describes what is being validated; the service runs
every registered strategy that handles the context's pair, in registration
order, and merges their fragments into one ``ValidationResult`` that is valid
iff every contributing fragment is valid.

Default registration order:

    schema → permission → business rules → cross-entity

A schema failure is a hard failure: no later strategy runs against
structurally invalid input. A strategy that raises contributes a failed
fragment instead of propagating the exception.
"""

from __future__ import annotations

import enum
import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from anarchy_associates.firm.errors import ValidationFailedError
from anarchy_associates.firm.schema import (
    CaseAssignmentRequest,
    CaseClosureRequest,
    CaseCreationRequest,
    CaseStatus,
    HireRequest,
    LeadAttorneyRequest,
    PermissionAction,
    PermissionContext,
    RoleChangeRequest,
    TerminationRequest,
    ValidationResult,
)
from anarchy_associates.governance.business_rules import BusinessRuleValidationService
from anarchy_associates.store.repositories import CaseRepository, StaffRepository

logger = logging.getLogger(__name__)


class EntityType(str, enum.Enum):
    STAFF = "staff"
    CASE = "case"


class Operation(str, enum.Enum):
    HIRE = "hire"
    PROMOTE = "promote"
    DEMOTE = "demote"
    FIRE = "fire"
    CREATE = "create"
    ASSIGN = "assign"
    SET_LEAD_ATTORNEY = "set_lead_attorney"
    CLOSE = "close"


Pair = tuple[EntityType, Operation]

REQUEST_MODELS: dict[Pair, type[BaseModel]] = {
    (EntityType.STAFF, Operation.HIRE): HireRequest,
    (EntityType.STAFF, Operation.PROMOTE): RoleChangeRequest,
    (EntityType.STAFF, Operation.DEMOTE): RoleChangeRequest,
    (EntityType.STAFF, Operation.FIRE): TerminationRequest,
    (EntityType.CASE, Operation.CREATE): CaseCreationRequest,
    (EntityType.CASE, Operation.ASSIGN): CaseAssignmentRequest,
    (EntityType.CASE, Operation.SET_LEAD_ATTORNEY): LeadAttorneyRequest,
    (EntityType.CASE, Operation.CLOSE): CaseClosureRequest,
}

# Lead attorney authority is checked by the eligibility rule itself.
REQUIRED_AUTHORITY: dict[Pair, PermissionAction] = {
    (EntityType.STAFF, Operation.HIRE): PermissionAction.SENIOR_STAFF,
    (EntityType.STAFF, Operation.PROMOTE): PermissionAction.SENIOR_STAFF,
    (EntityType.STAFF, Operation.DEMOTE): PermissionAction.SENIOR_STAFF,
    (EntityType.STAFF, Operation.FIRE): PermissionAction.SENIOR_STAFF,
    (EntityType.CASE, Operation.CREATE): PermissionAction.CASE,
    (EntityType.CASE, Operation.ASSIGN): PermissionAction.CASE,
    (EntityType.CASE, Operation.CLOSE): PermissionAction.CASE,
}


class ValidationContext(BaseModel):
    """Everything a strategy needs to validate one operation."""

    permission_context: PermissionContext
    entity_type: EntityType
    operation: Operation
    data: dict[str, Any] = Field(default_factory=dict)
    entity_id: str | None = None

    @property
    def pair(self) -> Pair:
        return (self.entity_type, self.operation)

    def request(self) -> Any:
        """The parsed request model; only call after schema validation passed."""
        return REQUEST_MODELS[self.pair].model_validate(self.data)


# ════════════════════════════════════════════════════════════════
# Strategies
# ════════════════════════════════════════════════════════════════


class ValidationStrategy(ABC):
    """A pure ``(context) -> fragment`` check for a closed set of pairs."""

    name: str = "strategy"
    handles: frozenset[Pair] = frozenset()
    hard_failure: bool = False

    def can_handle(self, context: ValidationContext) -> bool:
        return context.pair in self.handles

    @abstractmethod
    def validate(self, context: ValidationContext) -> ValidationResult:
        ...


class SchemaValidationStrategy(ValidationStrategy):
    """Structural validation against the request model of the pair."""

    name = "schema"
    handles = frozenset(REQUEST_MODELS)
    hard_failure = True

    def validate(self, context: ValidationContext) -> ValidationResult:
        try:
            REQUEST_MODELS[context.pair].model_validate(context.data)
        except PydanticValidationError as exc:
            errors = [
                f"{'.'.join(str(part) for part in err['loc']) or 'input'}: {err['msg']}"
                for err in exc.errors()
            ]
            return ValidationResult.failure(*errors)
        return ValidationResult.success()


class PermissionValidationStrategy(ValidationStrategy):
    """Checks the authority each operation requires."""

    name = "permission"
    handles = frozenset(REQUIRED_AUTHORITY)

    def __init__(self, rules: BusinessRuleValidationService) -> None:
        self.rules = rules

    def validate(self, context: ValidationContext) -> ValidationResult:
        return self.rules.validate_permission(
            context.permission_context, REQUIRED_AUTHORITY[context.pair]
        )


class BusinessRuleValidationStrategy(ValidationStrategy):
    """Routes each operation to its business rule."""

    name = "business-rule"
    handles = frozenset({
        (EntityType.STAFF, Operation.HIRE),
        (EntityType.STAFF, Operation.PROMOTE),
        (EntityType.STAFF, Operation.DEMOTE),
        (EntityType.CASE, Operation.CREATE),
        (EntityType.CASE, Operation.SET_LEAD_ATTORNEY),
    })

    def __init__(
        self,
        rules: BusinessRuleValidationService,
        staff: StaffRepository,
        cases: CaseRepository,
    ) -> None:
        self.rules = rules
        self.staff = staff
        self.cases = cases

    def validate(self, context: ValidationContext) -> ValidationResult:
        actor = context.permission_context
        request = context.request()

        if context.operation == Operation.HIRE:
            return self.rules.validate_role_limit(actor, request.role)

        if context.operation in (Operation.PROMOTE, Operation.DEMOTE):
            current = self.staff.find_active(request.guild_id, request.user_id)
            if current is None:
                return ValidationResult.failure("User is not an active staff member")
            check = (
                self.rules.validate_promotion
                if context.operation == Operation.PROMOTE
                else self.rules.validate_demotion
            )
            return check(actor, request.user_id, current.role, request.new_role)

        if context.operation == Operation.CREATE:
            return self.rules.validate_client_case_limit(request.guild_id, request.client_id)

        case = self.cases.get(request.case_id)
        if case is None:
            return ValidationResult.failure("Case not found")
        return self.rules.validate_lead_attorney(actor, case, request.lawyer_id)


class CrossEntityValidationStrategy(ValidationStrategy):
    """Consistency between staff records and cases."""

    name = "cross-entity"
    handles = frozenset({
        (EntityType.STAFF, Operation.HIRE),
        (EntityType.STAFF, Operation.PROMOTE),
        (EntityType.STAFF, Operation.DEMOTE),
        (EntityType.STAFF, Operation.FIRE),
        (EntityType.CASE, Operation.CREATE),
        (EntityType.CASE, Operation.ASSIGN),
        (EntityType.CASE, Operation.SET_LEAD_ATTORNEY),
        (EntityType.CASE, Operation.CLOSE),
    })

    def __init__(self, staff: StaffRepository, cases: CaseRepository) -> None:
        self.staff = staff
        self.cases = cases

    def validate(self, context: ValidationContext) -> ValidationResult:
        request = context.request()
        guild_id = context.permission_context.guild_id
        # Records may only be written in the guild the actor acts in.
        if getattr(request, "guild_id", guild_id) != guild_id:
            return ValidationResult.failure("Request guild does not match the acting guild")
        if context.entity_type == EntityType.STAFF:
            return self._validate_staff(context.operation, request)
        if context.operation == Operation.CREATE:
            return ValidationResult.success()
        return self._validate_case(guild_id, context.operation, request)

    def _validate_staff(self, operation: Operation, request: Any) -> ValidationResult:
        existing = self.staff.find_active(request.guild_id, request.user_id)

        if operation == Operation.HIRE:
            if existing is not None:
                return ValidationResult.failure("User is already an active staff member")
            if request.roblox_username:
                holder = self.staff.find_active_by_roblox_username(
                    request.guild_id, request.roblox_username
                )
                if holder is not None:
                    return ValidationResult.failure(
                        f"Roblox username {request.roblox_username} is already used by another staff member"
                    )
            return ValidationResult.success()

        if existing is None:
            return ValidationResult.failure("User is not an active staff member")

        warnings = []
        if operation in (Operation.DEMOTE, Operation.FIRE):
            led = self._count_led_cases(request.guild_id, request.user_id)
            if led:
                warnings.append(
                    f"Staff member is lead attorney on {led} open case(s); "
                    f"consider reassigning them"
                )
        return ValidationResult.success(warnings=warnings)

    def _validate_case(self, guild_id: str, operation: Operation, request: Any) -> ValidationResult:
        case = self.cases.get(request.case_id)
        if case is None or case.guild_id != guild_id:
            return ValidationResult.failure("Case not found")

        if operation == Operation.CLOSE:
            if case.status != CaseStatus.IN_PROGRESS:
                return ValidationResult.failure("Only in-progress cases can be closed")
            if case.lead_attorney_id is None:
                return ValidationResult.success(warnings=["Case has no lead attorney"])
            return ValidationResult.success()

        if not case.is_open:
            return ValidationResult.failure("Cannot modify a closed case")
        if self.staff.find_active(case.guild_id, request.lawyer_id) is None:
            return ValidationResult.failure("Lawyer is not an active staff member")
        if operation == Operation.ASSIGN and request.lawyer_id in case.assigned_lawyer_ids:
            return ValidationResult.failure("Lawyer is already assigned to this case")
        return ValidationResult.success()

    def _count_led_cases(self, guild_id: str, user_id: str) -> int:
        return len(self.cases.find_open_led_by(guild_id, user_id))


# ════════════════════════════════════════════════════════════════
# Dispatcher
# ════════════════════════════════════════════════════════════════


class UnifiedValidationService:
    """Runs the applicable strategies for a context and merges their results."""

    def __init__(self, strategies: Iterable[ValidationStrategy] = ()) -> None:
        self._strategies: list[ValidationStrategy] = []
        for strategy in strategies:
            self.register(strategy)

    @classmethod
    def with_default_strategies(
        cls,
        rules: BusinessRuleValidationService,
        staff: StaffRepository,
        cases: CaseRepository,
    ) -> "UnifiedValidationService":
        return cls([
            SchemaValidationStrategy(),
            PermissionValidationStrategy(rules),
            BusinessRuleValidationStrategy(rules, staff, cases),
            CrossEntityValidationStrategy(staff, cases),
        ])

    def register(self, strategy: ValidationStrategy) -> None:
        """Append a strategy, replacing any registered under the same name in place."""
        for index, existing in enumerate(self._strategies):
            if existing.name == strategy.name:
                logger.warning("Replacing validation strategy: %s", strategy.name)
                self._strategies[index] = strategy
                return
        self._strategies.append(strategy)
        logger.debug("Registered validation strategy: %s", strategy.name)

    @property
    def strategy_names(self) -> list[str]:
        return [s.name for s in self._strategies]

    def validate(
        self,
        context: ValidationContext,
        include: Iterable[str] | None = None,
        exclude: Iterable[str] | None = None,
    ) -> ValidationResult:
        include = set(include) if include is not None else None
        exclude = set(exclude or ())
        applicable = [
            s for s in self._strategies
            if s.can_handle(context)
            and (include is None or s.name in include)
            and s.name not in exclude
        ]

        if not applicable:
            logger.warning(
                "No validation strategy for %s:%s",
                context.entity_type.value, context.operation.value,
            )

        fragments: list[ValidationResult] = []
        ran: list[str] = []
        for strategy in applicable:
            fragment = self._execute(strategy, context)
            fragments.append(fragment)
            ran.append(strategy.name)
            if strategy.hard_failure and not fragment.valid:
                logger.debug(
                    "Validation stopped after %s for %s:%s",
                    strategy.name, context.entity_type.value, context.operation.value,
                )
                break

        result = ValidationResult.merge(*fragments)
        result.metadata["strategies"] = ran
        logger.debug(
            "Validated %s:%s with %s: valid=%s",
            context.entity_type.value, context.operation.value, ran, result.valid,
        )
        return result

    def validate_with_strategy(self, name: str, context: ValidationContext) -> ValidationResult:
        for strategy in self._strategies:
            if strategy.name == name:
                if not strategy.can_handle(context):
                    raise ValueError(
                        f"Strategy {name} cannot handle "
                        f"{context.entity_type.value}:{context.operation.value}"
                    )
                return self._execute(strategy, context)
        raise KeyError(f"Validation strategy not found: {name}")

    def validate_or_raise(self, context: ValidationContext, **options: Any) -> ValidationResult:
        result = self.validate(context, **options)
        if not result.valid:
            raise ValidationFailedError(result)
        return result

    @staticmethod
    def _execute(strategy: ValidationStrategy, context: ValidationContext) -> ValidationResult:
        try:
            return strategy.validate(context)
        except Exception as exc:
            logger.exception(
                "Validation strategy %s raised: guild=%s user=%s %s:%s",
                strategy.name,
                context.permission_context.guild_id,
                context.permission_context.user_id,
                context.entity_type.value,
                context.operation.value,
            )
            return ValidationResult.failure(
                f"Validation strategy {strategy.name} failed: {exc}",
                strategy_error=strategy.name,
            )


def format_result(result: ValidationResult) -> str:
    """Render a result as user-facing bullet text."""
    if result.valid and not result.warnings:
        return "✅ Validation passed"

    lines = ["✅ Validation passed with warnings:" if result.valid else "❌ Validation failed:"]
    lines.extend(f"• {error}" for error in result.errors)
    if result.warnings:
        if not result.valid:
            lines.append("⚠️ Warnings:")
        lines.extend(f"• {warning}" for warning in result.warnings)
    if result.bypass_available and result.current_count is not None:
        lines.append(
            f"Guild owner bypass available (current: {result.current_count}, "
            f"max: {result.max_count})"
        )
    return "\n".join(lines)


def context_for(
    permission_context: PermissionContext,
    entity_type: EntityType,
    operation: Operation,
    request: BaseModel | dict[str, Any],
    entity_id: str | UUID | None = None,
) -> ValidationContext:
    """Build a context from a request model or a raw payload."""
    data = request.model_dump(mode="json") if isinstance(request, BaseModel) else dict(request)
    return ValidationContext(
        permission_context=permission_context,
        entity_type=entity_type,
        operation=operation,
        data=data,
        entity_id=str(entity_id) if entity_id is not None else None,
    )
