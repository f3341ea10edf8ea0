"""
Firm Schema — Pydantic models for every entity the firm administration core handles.

These models are the canonical data structures shared by the permission
service, the business-rule validators, the repositories and the audit trail.
Request models double as the schema-validation layer: malformed command input
is rejected here before any rule is evaluated.

Entities:
    PermissionContext     — per-request identity, never persisted
    GuildPermissionConfig — per-guild action → role mapping
    StaffRecord           — staff member with promotion history
    CaseRecord            — client case with assigned lawyers
    AuditEntry            — append-only audit trail entry
    ValidationResult      — outcome of every rule check
"""

from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, computed_field, field_validator, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Discord snowflakes are 17-20 digit numbers; test fixtures use short slugs.
SNOWFLAKE_PATTERN = r"^(\d{17,20}|[A-Za-z0-9_-]+)$"
ROBLOX_USERNAME_PATTERN = r"^[A-Za-z0-9_]{3,20}$"


# ════════════════════════════════════════════════════════════════
# Enumerations
# ════════════════════════════════════════════════════════════════


class PermissionAction(str, enum.Enum):
    """Named authorities checked independently per guild configuration."""

    ADMIN = "admin"
    SENIOR_STAFF = "senior-staff"
    CASE = "case"
    CONFIG = "config"
    LAWYER = "lawyer"
    LEAD_ATTORNEY = "lead-attorney"
    REPAIR = "repair"


class StaffRole(str, enum.Enum):
    """The six tiers of the firm, highest first."""

    MANAGING_PARTNER = "Managing Partner"
    SENIOR_PARTNER = "Senior Partner"
    JUNIOR_PARTNER = "Junior Partner"
    SENIOR_ASSOCIATE = "Senior Associate"
    JUNIOR_ASSOCIATE = "Junior Associate"
    PARALEGAL = "Paralegal"


class StaffStatus(str, enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    TERMINATED = "terminated"


class PromotionActionType(str, enum.Enum):
    HIRE = "hire"
    PROMOTION = "promotion"
    DEMOTION = "demotion"
    FIRE = "fire"


class CaseStatus(str, enum.Enum):
    PENDING = "pending"  # Review requested, not yet accepted
    IN_PROGRESS = "in-progress"  # Accepted and being worked on
    CLOSED = "closed"


class CasePriority(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class CaseResult(str, enum.Enum):
    WIN = "win"
    LOSS = "loss"
    SETTLEMENT = "settlement"
    DISMISSED = "dismissed"
    WITHDRAWN = "withdrawn"


class AuditAction(str, enum.Enum):
    """Closed set of audited actions."""

    # Staff
    STAFF_HIRED = "staff_hired"
    STAFF_FIRED = "staff_fired"
    STAFF_PROMOTED = "staff_promoted"
    STAFF_DEMOTED = "staff_demoted"
    STAFF_INFO_VIEWED = "staff_info_viewed"
    STAFF_LIST_VIEWED = "staff_list_viewed"
    ROLE_SYNC_PERFORMED = "role_sync_performed"

    # Jobs
    JOB_CREATED = "job_created"
    JOB_UPDATED = "job_updated"
    JOB_CLOSED = "job_closed"
    JOB_REMOVED = "job_removed"
    JOB_LIST_VIEWED = "job_list_viewed"
    JOB_INFO_VIEWED = "job_info_viewed"

    # Guild owner bypass
    GUILD_OWNER_BYPASS = "guild_owner_bypass"
    BUSINESS_RULE_VIOLATION = "business_rule_violation"
    ROLE_LIMIT_BYPASSED = "role_limit_bypassed"
    PERMISSION_OVERRIDE = "permission_override"

    # Cases
    CASE_CREATED = "case_created"
    CASE_ASSIGNED = "case_assigned"
    CASE_CLOSED = "case_closed"
    CASE_ARCHIVED = "case_archived"
    CHANNEL_ARCHIVED = "channel_archived"
    LEAD_ATTORNEY_CHANGED = "lead_attorney_changed"
    LEAD_ATTORNEY_REMOVED = "lead_attorney_removed"

    # Channel cleanup
    CHANNEL_CLEANUP_SCAN = "channel_cleanup_scan"
    CHANNEL_CLEANUP_PERFORMED = "channel_cleanup_performed"
    ORPHANED_CHANNEL_DELETED = "orphaned_channel_deleted"

    # Maintenance
    SYSTEM_REPAIR = "system_repair"


class AuditSeverity(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class BypassType(str, enum.Enum):
    GUILD_OWNER = "guild-owner"
    ADMIN = "admin"
    EMERGENCY = "emergency"


ACTION_SEVERITY: dict[AuditAction, AuditSeverity] = {
    AuditAction.STAFF_INFO_VIEWED: AuditSeverity.LOW,
    AuditAction.STAFF_LIST_VIEWED: AuditSeverity.LOW,
    AuditAction.JOB_LIST_VIEWED: AuditSeverity.LOW,
    AuditAction.JOB_INFO_VIEWED: AuditSeverity.LOW,
    AuditAction.CHANNEL_CLEANUP_SCAN: AuditSeverity.LOW,
    AuditAction.STAFF_PROMOTED: AuditSeverity.MEDIUM,
    AuditAction.STAFF_DEMOTED: AuditSeverity.MEDIUM,
    AuditAction.JOB_CREATED: AuditSeverity.MEDIUM,
    AuditAction.JOB_UPDATED: AuditSeverity.MEDIUM,
    AuditAction.JOB_CLOSED: AuditSeverity.MEDIUM,
    AuditAction.CASE_ASSIGNED: AuditSeverity.MEDIUM,
    AuditAction.ROLE_SYNC_PERFORMED: AuditSeverity.MEDIUM,
    AuditAction.LEAD_ATTORNEY_CHANGED: AuditSeverity.MEDIUM,
    AuditAction.STAFF_HIRED: AuditSeverity.HIGH,
    AuditAction.STAFF_FIRED: AuditSeverity.HIGH,
    AuditAction.JOB_REMOVED: AuditSeverity.HIGH,
    AuditAction.CASE_CREATED: AuditSeverity.HIGH,
    AuditAction.CASE_CLOSED: AuditSeverity.HIGH,
    AuditAction.CASE_ARCHIVED: AuditSeverity.HIGH,
    AuditAction.CHANNEL_ARCHIVED: AuditSeverity.HIGH,
    AuditAction.LEAD_ATTORNEY_REMOVED: AuditSeverity.HIGH,
    AuditAction.CHANNEL_CLEANUP_PERFORMED: AuditSeverity.HIGH,
    AuditAction.ORPHANED_CHANNEL_DELETED: AuditSeverity.HIGH,
    AuditAction.SYSTEM_REPAIR: AuditSeverity.HIGH,
    AuditAction.GUILD_OWNER_BYPASS: AuditSeverity.CRITICAL,
    AuditAction.BUSINESS_RULE_VIOLATION: AuditSeverity.CRITICAL,
    AuditAction.ROLE_LIMIT_BYPASSED: AuditSeverity.CRITICAL,
    AuditAction.PERMISSION_OVERRIDE: AuditSeverity.CRITICAL,
}


def severity_for(action: AuditAction) -> AuditSeverity:
    """Severity is a pure function of the action."""
    return ACTION_SEVERITY.get(action, AuditSeverity.MEDIUM)


# ════════════════════════════════════════════════════════════════
# Permission Models
# ════════════════════════════════════════════════════════════════


class PermissionContext(BaseModel):
    """
    Identity of the actor behind one inbound command or event.

    Constructed fresh for every request from platform data and discarded
    afterwards. ``is_guild_owner`` is asserted by the caller.
    """

    guild_id: str
    user_id: str
    user_roles: frozenset[str] = Field(default_factory=frozenset)
    is_guild_owner: bool = False

    model_config = {"frozen": True}

    @property
    def is_well_formed(self) -> bool:
        return bool(self.guild_id) and bool(self.user_id)


class GuildPermissionConfig(BaseModel):
    """
    Per-guild permission configuration.

    Every action of the closed ``PermissionAction`` set is always present;
    a key missing from stored data resolves to an empty role set.
    """

    guild_id: str
    permissions: dict[PermissionAction, set[str]] = Field(
        default_factory=dict, validate_default=True
    )
    admin_roles: set[str] = Field(default_factory=set)
    admin_users: set[str] = Field(default_factory=set)

    @field_validator("permissions", mode="after")
    @classmethod
    def _fill_missing_actions(
        cls, value: dict[PermissionAction, set[str]]
    ) -> dict[PermissionAction, set[str]]:
        return {action: set(value.get(action, set())) for action in PermissionAction}

    def roles_for(self, action: PermissionAction) -> set[str]:
        return self.permissions.get(action, set())


# ════════════════════════════════════════════════════════════════
# Staff Models
# ════════════════════════════════════════════════════════════════


class PromotionRecord(BaseModel):
    """One entry of a staff member's promotion history."""

    from_role: StaffRole
    to_role: StaffRole
    actor_id: str
    timestamp: datetime = Field(default_factory=utcnow)
    reason: str | None = None
    action_type: PromotionActionType


class StaffRecord(BaseModel):
    """
    A staff member of the firm in one guild.

    A user holds at most one record per guild; re-hiring reactivates it and
    termination is a status change, never a removal.
    """

    guild_id: str
    user_id: str
    roblox_username: str | None = None
    role: StaffRole
    status: StaffStatus = StaffStatus.ACTIVE
    hired_at: datetime = Field(default_factory=utcnow)
    hired_by: str
    promotion_history: list[PromotionRecord] = Field(default_factory=list)

    @property
    def is_active(self) -> bool:
        return self.status == StaffStatus.ACTIVE


# ════════════════════════════════════════════════════════════════
# Case Models
# ════════════════════════════════════════════════════════════════


class CaseRecord(BaseModel):
    """A client case handled by the firm."""

    id: UUID = Field(default_factory=uuid4)
    guild_id: str
    case_number: str = Field(description="Format: YYYY-NNNN-username")
    client_id: str
    client_username: str
    title: str
    description: str = ""
    status: CaseStatus = CaseStatus.PENDING
    priority: CasePriority = CasePriority.MEDIUM
    lead_attorney_id: str | None = None
    assigned_lawyer_ids: list[str] = Field(default_factory=list)
    result: CaseResult | None = None
    result_notes: str | None = None
    closed_at: datetime | None = None
    closed_by: str | None = None
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def is_open(self) -> bool:
        return self.status != CaseStatus.CLOSED


def format_case_number(year: int, count: int, username: str) -> str:
    return f"{year}-{count:04d}-{username}"


# ════════════════════════════════════════════════════════════════
# Audit Models
# ════════════════════════════════════════════════════════════════


class AuditState(BaseModel):
    """Known before/after shape of an audited record."""

    role: StaffRole | None = None
    status: str | None = None


class BypassInfo(BaseModel):
    """What a guild owner bypassed and why."""

    bypass_type: BypassType = BypassType.GUILD_OWNER
    business_rule_violated: str
    original_validation_errors: list[str] = Field(default_factory=list)
    bypass_reason: str | None = None
    current_count: int | None = Field(default=None, ge=0)
    max_count: int | None = Field(default=None, gt=0)


class AuditDetails(BaseModel):
    before: AuditState | None = None
    after: AuditState | None = None
    reason: str | None = None
    bypass_info: BypassInfo | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class AuditEntry(BaseModel):
    """
    A single entry of the audit trail.

    Append-only: once written an entry is never updated or deleted.
    Severity is derived from the action through ``ACTION_SEVERITY``.
    """

    id: UUID = Field(default_factory=uuid4)
    guild_id: str
    action: AuditAction
    actor_id: str
    target_id: str | None = None
    timestamp: datetime = Field(default_factory=utcnow)
    details: AuditDetails = Field(default_factory=AuditDetails)
    is_guild_owner_bypass: bool = False

    @computed_field
    @property
    def severity(self) -> AuditSeverity:
        return severity_for(self.action)


# ════════════════════════════════════════════════════════════════
# Validation Result
# ════════════════════════════════════════════════════════════════


class ValidationResult(BaseModel):
    """
    Outcome of a rule check.

    ``bypass_available`` describes whether the situation is bypass-eligible,
    not whether the actor may exercise the bypass; callers check
    ``PermissionContext.is_guild_owner`` before acting on it.
    """

    valid: bool
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    bypass_available: bool = False
    current_count: int | None = None
    max_count: int | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_consistency(self) -> "ValidationResult":
        if self.valid and self.errors:
            raise ValueError("a valid result cannot carry errors")
        if self.valid and self.bypass_available:
            raise ValueError("bypass is only available on a failed result")
        return self

    @classmethod
    def success(
        cls, warnings: list[str] | None = None, **metadata: Any
    ) -> "ValidationResult":
        return cls(valid=True, warnings=list(warnings or []), metadata=metadata)

    @classmethod
    def failure(cls, *errors: str, **metadata: Any) -> "ValidationResult":
        return cls(valid=False, errors=list(errors), metadata=metadata)

    @classmethod
    def merge(cls, *results: "ValidationResult") -> "ValidationResult":
        """Valid iff every result is valid; messages keep their order."""
        if not results:
            return cls(valid=True)
        valid = all(r.valid for r in results)
        metadata: dict[str, Any] = {}
        current_count = max_count = None
        for r in results:
            metadata.update(r.metadata)
            if r.current_count is not None:
                current_count, max_count = r.current_count, r.max_count
        return cls(
            valid=valid,
            errors=[e for r in results for e in r.errors],
            warnings=[w for r in results for w in r.warnings],
            bypass_available=(not valid) and any(r.bypass_available for r in results),
            current_count=current_count,
            max_count=max_count,
            metadata=metadata,
        )


# ════════════════════════════════════════════════════════════════
# Operation Requests (schema validation layer)
# ════════════════════════════════════════════════════════════════


class HireRequest(BaseModel):
    guild_id: str = Field(pattern=SNOWFLAKE_PATTERN)
    user_id: str = Field(pattern=SNOWFLAKE_PATTERN)
    role: StaffRole
    hired_by: str = Field(pattern=SNOWFLAKE_PATTERN)
    roblox_username: str | None = Field(default=None, pattern=ROBLOX_USERNAME_PATTERN)
    reason: str | None = Field(default=None, max_length=500)

    @field_validator("roblox_username")
    @classmethod
    def _no_edge_underscores(cls, value: str | None) -> str | None:
        if value is not None and (value.startswith("_") or value.endswith("_")):
            raise ValueError("Username cannot start or end with an underscore")
        return value


class RoleChangeRequest(BaseModel):
    """Promotion or demotion of an existing staff member."""

    guild_id: str = Field(pattern=SNOWFLAKE_PATTERN)
    user_id: str = Field(pattern=SNOWFLAKE_PATTERN)
    new_role: StaffRole
    actor_id: str = Field(pattern=SNOWFLAKE_PATTERN)
    reason: str | None = Field(default=None, max_length=500)


class TerminationRequest(BaseModel):
    guild_id: str = Field(pattern=SNOWFLAKE_PATTERN)
    user_id: str = Field(pattern=SNOWFLAKE_PATTERN)
    actor_id: str = Field(pattern=SNOWFLAKE_PATTERN)
    reason: str | None = Field(default=None, max_length=500)


class CaseCreationRequest(BaseModel):
    guild_id: str = Field(pattern=SNOWFLAKE_PATTERN)
    client_id: str = Field(pattern=SNOWFLAKE_PATTERN)
    client_username: str = Field(min_length=1, max_length=100)
    title: str = Field(min_length=1, max_length=200)
    description: str = Field(default="", max_length=2000)
    priority: CasePriority = CasePriority.MEDIUM


class CaseAssignmentRequest(BaseModel):
    case_id: UUID
    lawyer_id: str = Field(pattern=SNOWFLAKE_PATTERN)
    assigned_by: str = Field(pattern=SNOWFLAKE_PATTERN)


class LeadAttorneyRequest(BaseModel):
    case_id: UUID
    lawyer_id: str = Field(pattern=SNOWFLAKE_PATTERN)


class CaseClosureRequest(BaseModel):
    case_id: UUID
    result: CaseResult
    closed_by: str = Field(pattern=SNOWFLAKE_PATTERN)
    result_notes: str | None = Field(default=None, max_length=2000)
