"""
Guild Owner Bypass — two-step confirmation for exceeding a role's cap.

A failed, bypass-eligible role-limit check does not by itself let an
operation through. The guild owner must:

1. open a request (the situation and the actor are checked here),
2. confirm it with the confirmation phrase and a mandatory reason,

after which the operation that consumes the request writes the critical
``role_limit_bypassed`` audit entry from ``entry_for`` in the same
transaction as its own change, then calls ``consume``. ``record`` does both
for callers without a change of their own. A confirmed request is consumed
exactly once, and only after its entry is stored; unconfirmed requests
expire after a TTL.

Pending requests live in memory for the lifetime of the service, like the
confirmation prompt they back.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from anarchy_associates.firm.errors import (
    BypassConfirmationError,
    BypassNotAllowedError,
    BypassNotFoundError,
)
from anarchy_associates.firm.schema import (
    AuditEntry,
    PermissionContext,
    PromotionActionType,
    StaffRole,
    ValidationResult,
    utcnow,
)
from anarchy_associates.store.repositories import AuditLogRepository

logger = logging.getLogger(__name__)


class BypassRequest(BaseModel):
    """A guild owner's pending or confirmed override of a role limit."""

    id: UUID = Field(default_factory=uuid4)
    guild_id: str
    actor_id: str
    target_id: str
    role: StaffRole
    operation: PromotionActionType
    current_count: int
    max_count: int
    original_errors: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime
    confirmed: bool = False
    reason: str | None = None

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    def matches(self, guild_id: str, target_id: str, role: StaffRole) -> bool:
        return (self.guild_id, self.target_id, self.role) == (guild_id, target_id, role)


class GuildOwnerBypassService:
    """Opens, confirms and records guild owner bypasses."""

    def __init__(
        self,
        audit: AuditLogRepository,
        confirmation_phrase: str = "confirm",
        ttl_minutes: int = 15,
    ) -> None:
        self.audit = audit
        self.confirmation_phrase = confirmation_phrase
        self.ttl = timedelta(minutes=ttl_minutes)
        self._requests: dict[UUID, BypassRequest] = {}

    def open_request(
        self,
        context: PermissionContext,
        validation: ValidationResult,
        target_id: str,
        role: StaffRole,
        operation: PromotionActionType,
    ) -> BypassRequest:
        """
        Start a bypass for a failed role-limit validation.

        Raises:
            BypassNotAllowedError: the actor is not the guild owner, or the
                validation passed or is not bypass-eligible.
        """
        if not context.is_guild_owner:
            raise BypassNotAllowedError("Only the guild owner can bypass role limits")
        if validation.valid or not validation.bypass_available:
            raise BypassNotAllowedError("This validation failure cannot be bypassed")

        now = utcnow()
        request = BypassRequest(
            guild_id=context.guild_id,
            actor_id=context.user_id,
            target_id=target_id,
            role=role,
            operation=operation,
            current_count=validation.current_count or 0,
            max_count=validation.max_count or 1,
            original_errors=list(validation.errors),
            created_at=now,
            expires_at=now + self.ttl,
        )
        self._requests[request.id] = request
        logger.info(
            "Bypass requested: guild=%s actor=%s target=%s role=%s count=%d/%d",
            request.guild_id, request.actor_id, target_id, role.value,
            request.current_count, request.max_count,
        )
        return request

    def get(self, request_id: UUID) -> BypassRequest:
        request = self._requests.get(request_id)
        if request is None:
            raise BypassNotFoundError(f"Unknown bypass request: {request_id}")
        if request.is_expired():
            del self._requests[request_id]
            raise BypassNotFoundError(f"Bypass request expired: {request_id}")
        return request

    def confirm(self, request_id: UUID, confirmation: str, reason: str | None) -> BypassRequest:
        """
        Confirm a pending request.

        A wrong phrase or a blank reason leaves the request pending.
        """
        request = self.get(request_id)
        if confirmation.strip().lower() != self.confirmation_phrase.lower():
            raise BypassConfirmationError(
                f"Type '{self.confirmation_phrase}' to confirm the bypass"
            )
        if not reason or not reason.strip():
            raise BypassConfirmationError("A reason is required to bypass a role limit")

        confirmed = request.model_copy(update={"confirmed": True, "reason": reason.strip()})
        self._requests[request_id] = confirmed
        return confirmed

    def prompt_for(self, request: BypassRequest) -> str:
        """Text shown to the guild owner when asking for confirmation."""
        return (
            f"{request.role.value} is at its limit ({request.current_count}/{request.max_count}). "
            f"Type '{self.confirmation_phrase}' and give a reason to proceed as guild owner."
        )

    def entry_for(self, request: BypassRequest) -> AuditEntry:
        """
        The audit entry of a confirmed request, without consuming it.

        Raises:
            BypassNotFoundError: already consumed, expired or unknown.
            BypassConfirmationError: not confirmed yet.
        """
        current = self.get(request.id)
        if not current.confirmed or not current.reason:
            raise BypassConfirmationError("Bypass request has not been confirmed")
        return AuditLogRepository.role_limit_bypass_entry(
            guild_id=current.guild_id,
            actor_id=current.actor_id,
            target_id=current.target_id,
            role=current.role,
            current_count=current.current_count,
            max_count=current.max_count,
            bypass_reason=current.reason,
            original_validation_errors=current.original_errors,
        )

    def consume(self, request: BypassRequest) -> None:
        """Drop a request whose audit entry has been stored."""
        current = self._requests.pop(request.id, None)
        if current is None:
            return
        logger.warning(
            "Guild owner bypass used: guild=%s actor=%s role=%s operation=%s reason=%r",
            current.guild_id, current.actor_id, current.role.value,
            current.operation.value, current.reason,
        )

    def record(self, request: BypassRequest) -> AuditEntry:
        """
        Append the audit entry of a confirmed request, then consume it.

        A failed audit write leaves the request confirmed for a retry.
        """
        entry = self.audit.log_action(self.entry_for(request))
        self.consume(request)
        return entry

    def purge_expired(self) -> int:
        now = utcnow()
        expired = [rid for rid, r in self._requests.items() if r.is_expired(now)]
        for rid in expired:
            del self._requests[rid]
        return len(expired)

    @property
    def pending_count(self) -> int:
        return len(self._requests)
