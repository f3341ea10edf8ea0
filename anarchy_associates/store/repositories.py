"""
Firm Repositories — the document-store collaborator of the firm core.

Each repository wraps one table behind the narrow reads and writes the
services need:

- GuildConfigRepository — explicit upsert-with-defaults, role list edits
- StaffRepository       — active counts per role, hire/reactivate, role changes
- CaseRepository        — case numbering, open-case counts, conditional close
- AuditLogRepository    — APPEND-ONLY writes and trail queries

Repositories translate between SQLAlchemy rows and the Pydantic models of
``anarchy_associates.firm.schema``; nothing outside this module sees a row.
Store errors propagate; decision-returning callers convert them.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from anarchy_associates.firm.hierarchy import level_of
from anarchy_associates.firm.schema import (
    AuditAction,
    AuditDetails,
    AuditEntry,
    BypassInfo,
    BypassType,
    CaseRecord,
    CaseResult,
    CaseStatus,
    GuildPermissionConfig,
    PermissionAction,
    PromotionRecord,
    StaffRecord,
    StaffRole,
    StaffStatus,
    format_case_number,
    severity_for,
)
from anarchy_associates.store.database import Database
from anarchy_associates.store.models import (
    AuditLogDB,
    CaseCounterDB,
    CaseDB,
    GuildConfigDB,
    StaffDB,
)

logger = logging.getLogger(__name__)


# ════════════════════════════════════════════════════════════════
# Guild Configuration
# ════════════════════════════════════════════════════════════════


class GuildConfigRepository:
    """Per-guild permission configuration."""

    def __init__(self, database: Database) -> None:
        self.SessionLocal = database.SessionLocal

    def ensure_guild_config(self, guild_id: str) -> GuildPermissionConfig:
        """
        Return the guild's configuration, creating it with empty defaults.

        This is the only place a configuration row is created. A concurrent
        creator losing the insert race re-reads the winner's row.
        """
        with self.SessionLocal() as session:
            row = session.get(GuildConfigDB, guild_id)
            if row is not None:
                return self._to_model(row)

            row = GuildConfigDB(
                guild_id=guild_id,
                permissions={action.value: [] for action in PermissionAction},
                admin_roles=[],
                admin_users=[],
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                row = session.get(GuildConfigDB, guild_id)
            else:
                logger.info("Guild config created with defaults: guild=%s", guild_id)
            return self._to_model(row)

    def get(self, guild_id: str) -> GuildPermissionConfig | None:
        with self.SessionLocal() as session:
            row = session.get(GuildConfigDB, guild_id)
            return self._to_model(row) if row is not None else None

    def grant_action_role(
        self, guild_id: str, action: PermissionAction, role_id: str
    ) -> GuildPermissionConfig:
        return self._update(guild_id, lambda c: c.permissions[action].add(role_id))

    def revoke_action_role(
        self, guild_id: str, action: PermissionAction, role_id: str
    ) -> GuildPermissionConfig:
        return self._update(guild_id, lambda c: c.permissions[action].discard(role_id))

    def add_admin_role(self, guild_id: str, role_id: str) -> GuildPermissionConfig:
        return self._update(guild_id, lambda c: c.admin_roles.add(role_id))

    def remove_admin_role(self, guild_id: str, role_id: str) -> GuildPermissionConfig:
        return self._update(guild_id, lambda c: c.admin_roles.discard(role_id))

    def add_admin_user(self, guild_id: str, user_id: str) -> GuildPermissionConfig:
        return self._update(guild_id, lambda c: c.admin_users.add(user_id))

    def remove_admin_user(self, guild_id: str, user_id: str) -> GuildPermissionConfig:
        return self._update(guild_id, lambda c: c.admin_users.discard(user_id))

    # ── Internal ────────────────────────────────────────────────

    def _update(
        self, guild_id: str, mutate: Callable[[GuildPermissionConfig], None]
    ) -> GuildPermissionConfig:
        self.ensure_guild_config(guild_id)
        with self.SessionLocal() as session:
            row = session.get(GuildConfigDB, guild_id)
            config = self._to_model(row)
            mutate(config)
            row.permissions = {
                action.value: sorted(roles) for action, roles in config.permissions.items()
            }
            row.admin_roles = sorted(config.admin_roles)
            row.admin_users = sorted(config.admin_users)
            session.commit()
            return config

    @staticmethod
    def _to_model(row: GuildConfigDB) -> GuildPermissionConfig:
        known = {action.value for action in PermissionAction}
        return GuildPermissionConfig(
            guild_id=row.guild_id,
            permissions={
                key: set(roles) for key, roles in (row.permissions or {}).items() if key in known
            },
            admin_roles=set(row.admin_roles or []),
            admin_users=set(row.admin_users or []),
        )


# ════════════════════════════════════════════════════════════════
# Staff
# ════════════════════════════════════════════════════════════════


class StaffRepository:
    """Staff records; at most one row, hence one active record, per guild and user."""

    def __init__(self, database: Database) -> None:
        self.SessionLocal = database.SessionLocal

    def count_active_by_role(self, guild_id: str, role: StaffRole) -> int:
        """Count active holders of ``role``; inactive and terminated rows never count."""
        with self.SessionLocal() as session:
            result = session.execute(
                select(func.count())
                .select_from(StaffDB)
                .where(
                    StaffDB.guild_id == guild_id,
                    StaffDB.role == role.value,
                    StaffDB.status == StaffStatus.ACTIVE.value,
                )
            )
            return result.scalar() or 0

    def find(self, guild_id: str, user_id: str) -> StaffRecord | None:
        with self.SessionLocal() as session:
            row = self._get_row(session, guild_id, user_id)
            return self._to_model(row) if row is not None else None

    def find_active(self, guild_id: str, user_id: str) -> StaffRecord | None:
        record = self.find(guild_id, user_id)
        return record if record is not None and record.is_active else None

    def find_active_by_roblox_username(
        self, guild_id: str, roblox_username: str
    ) -> StaffRecord | None:
        with self.SessionLocal() as session:
            row = session.execute(
                select(StaffDB).where(
                    StaffDB.guild_id == guild_id,
                    func.lower(StaffDB.roblox_username) == roblox_username.lower(),
                    StaffDB.status == StaffStatus.ACTIVE.value,
                )
            ).scalars().first()
            return self._to_model(row) if row is not None else None

    def list_active(self, guild_id: str, role: StaffRole | None = None) -> list[StaffRecord]:
        """Active staff of a guild, highest tier first."""
        with self.SessionLocal() as session:
            stmt = select(StaffDB).where(
                StaffDB.guild_id == guild_id,
                StaffDB.status == StaffStatus.ACTIVE.value,
            )
            if role is not None:
                stmt = stmt.where(StaffDB.role == role.value)
            records = [self._to_model(row) for row in session.execute(stmt).scalars().all()]
        return sorted(records, key=lambda r: (-level_of(r.role), r.hired_at))

    def insert_or_reactivate(
        self, record: StaffRecord, audit_entries: Iterable[AuditEntry] = ()
    ) -> StaffRecord | None:
        """
        Store a newly hired staff member.

        A previous terminated or inactive record of the same user is
        reactivated and keeps its history. Returns None when the user is
        already active (or wins a concurrent hire), leaving storage untouched.
        ``audit_entries`` are committed in the same transaction as the record.
        """
        with self.SessionLocal() as session:
            row = self._get_row(session, record.guild_id, record.user_id)
            if row is not None:
                if row.status == StaffStatus.ACTIVE.value:
                    return None
                row.role = record.role.value
                row.status = StaffStatus.ACTIVE.value
                row.roblox_username = record.roblox_username
                row.hired_at = record.hired_at
                row.hired_by = record.hired_by
                row.promotion_history = [
                    *row.promotion_history,
                    *(entry.model_dump(mode="json") for entry in record.promotion_history),
                ]
                session.add_all(audit_row(e) for e in audit_entries)
                session.commit()
                logger.info(
                    "Staff record reactivated: guild=%s user=%s role=%s",
                    record.guild_id, record.user_id, record.role.value,
                )
                return self._to_model(row)

            row = StaffDB(
                guild_id=record.guild_id,
                user_id=record.user_id,
                roblox_username=record.roblox_username,
                role=record.role.value,
                status=record.status.value,
                hired_at=record.hired_at,
                hired_by=record.hired_by,
                promotion_history=[
                    entry.model_dump(mode="json") for entry in record.promotion_history
                ],
            )
            session.add(row)
            session.add_all(audit_row(e) for e in audit_entries)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                return None
            return self._to_model(row)

    def change_role(
        self,
        guild_id: str,
        user_id: str,
        entry: PromotionRecord,
        audit_entries: Iterable[AuditEntry] = (),
    ) -> StaffRecord | None:
        """Move an active member to ``entry.to_role`` and append ``entry``."""
        return self._apply(
            guild_id, user_id, entry, new_role=entry.to_role, audit_entries=audit_entries
        )

    def terminate(
        self, guild_id: str, user_id: str, entry: PromotionRecord
    ) -> StaffRecord | None:
        """Mark an active member terminated; the row is kept."""
        return self._apply(guild_id, user_id, entry, new_status=StaffStatus.TERMINATED)

    # ── Internal ────────────────────────────────────────────────

    def _apply(
        self,
        guild_id: str,
        user_id: str,
        entry: PromotionRecord,
        new_role: StaffRole | None = None,
        new_status: StaffStatus | None = None,
        audit_entries: Iterable[AuditEntry] = (),
    ) -> StaffRecord | None:
        with self.SessionLocal() as session:
            row = self._get_row(session, guild_id, user_id)
            if row is None or row.status != StaffStatus.ACTIVE.value:
                return None
            if new_role is not None:
                row.role = new_role.value
            if new_status is not None:
                row.status = new_status.value
            row.promotion_history = [*row.promotion_history, entry.model_dump(mode="json")]
            session.add_all(audit_row(e) for e in audit_entries)
            session.commit()
            return self._to_model(row)

    @staticmethod
    def _get_row(session: Any, guild_id: str, user_id: str) -> StaffDB | None:
        return session.execute(
            select(StaffDB).where(StaffDB.guild_id == guild_id, StaffDB.user_id == user_id)
        ).scalar_one_or_none()

    @staticmethod
    def _to_model(row: StaffDB) -> StaffRecord:
        return StaffRecord(
            guild_id=row.guild_id,
            user_id=row.user_id,
            roblox_username=row.roblox_username,
            role=StaffRole(row.role),
            status=StaffStatus(row.status),
            hired_at=row.hired_at,
            hired_by=row.hired_by,
            promotion_history=[PromotionRecord(**entry) for entry in row.promotion_history or []],
        )


# ════════════════════════════════════════════════════════════════
# Cases
# ════════════════════════════════════════════════════════════════


class CaseRepository:
    """Client cases and their sequential numbering."""

    def __init__(self, database: Database) -> None:
        self.SessionLocal = database.SessionLocal

    def next_case_number(self, guild_id: str, client_username: str, year: int | None = None) -> str:
        """Reserve the next ``YYYY-NNNN-username`` number for a guild."""
        year = year or datetime.now(timezone.utc).year
        with self.SessionLocal() as session:
            counter = session.get(CaseCounterDB, (guild_id, year))
            if counter is None:
                counter = CaseCounterDB(guild_id=guild_id, year=year, count=0)
                session.add(counter)
            counter.count += 1
            count = counter.count
            session.commit()
        return format_case_number(year, count, client_username)

    def add(self, case: CaseRecord) -> CaseRecord:
        with self.SessionLocal() as session:
            row = CaseDB(id=case.id, created_at=case.created_at)
            self._copy_into(case, row)
            session.add(row)
            session.commit()
            return self._to_model(row)

    def get(self, case_id: UUID) -> CaseRecord | None:
        with self.SessionLocal() as session:
            row = session.get(CaseDB, case_id)
            return self._to_model(row) if row is not None else None

    def save(self, case: CaseRecord) -> CaseRecord | None:
        """Overwrite the mutable fields of an existing case."""
        with self.SessionLocal() as session:
            row = session.get(CaseDB, case.id)
            if row is None:
                return None
            self._copy_into(case, row)
            session.commit()
            return self._to_model(row)

    def count_open_for_client(self, guild_id: str, client_id: str) -> int:
        """Pending and in-progress cases count; closed cases do not."""
        with self.SessionLocal() as session:
            result = session.execute(
                select(func.count())
                .select_from(CaseDB)
                .where(
                    CaseDB.guild_id == guild_id,
                    CaseDB.client_id == client_id,
                    CaseDB.status != CaseStatus.CLOSED.value,
                )
            )
            return result.scalar() or 0

    def find_open_led_by(self, guild_id: str, user_id: str) -> list[CaseRecord]:
        with self.SessionLocal() as session:
            rows = session.execute(
                select(CaseDB).where(
                    CaseDB.guild_id == guild_id,
                    CaseDB.lead_attorney_id == user_id,
                    CaseDB.status != CaseStatus.CLOSED.value,
                )
            ).scalars().all()
            return [self._to_model(row) for row in rows]

    def close_if_in_progress(
        self,
        case_id: UUID,
        result: CaseResult,
        closed_by: str,
        result_notes: str | None = None,
    ) -> CaseRecord | None:
        """
        Close a case in a single conditional UPDATE.

        Returns None when the case is missing or not in progress, so two
        concurrent closures cannot both succeed.
        """
        with self.SessionLocal() as session:
            outcome = session.execute(
                update(CaseDB)
                .where(CaseDB.id == case_id, CaseDB.status == CaseStatus.IN_PROGRESS.value)
                .values(
                    status=CaseStatus.CLOSED.value,
                    result=result.value,
                    result_notes=result_notes,
                    closed_at=datetime.now(timezone.utc),
                    closed_by=closed_by,
                )
            )
            session.commit()
            if outcome.rowcount != 1:
                return None
            return self._to_model(session.get(CaseDB, case_id, populate_existing=True))

    # ── Internal ────────────────────────────────────────────────

    @staticmethod
    def _copy_into(case: CaseRecord, row: CaseDB) -> None:
        row.guild_id = case.guild_id
        row.case_number = case.case_number
        row.client_id = case.client_id
        row.client_username = case.client_username
        row.title = case.title
        row.description = case.description
        row.status = case.status.value
        row.priority = case.priority.value
        row.lead_attorney_id = case.lead_attorney_id
        row.assigned_lawyer_ids = list(case.assigned_lawyer_ids)
        row.result = case.result.value if case.result else None
        row.result_notes = case.result_notes
        row.closed_at = case.closed_at
        row.closed_by = case.closed_by

    @staticmethod
    def _to_model(row: CaseDB) -> CaseRecord:
        return CaseRecord(
            id=row.id,
            guild_id=row.guild_id,
            case_number=row.case_number,
            client_id=row.client_id,
            client_username=row.client_username,
            title=row.title,
            description=row.description or "",
            status=row.status,
            priority=row.priority,
            lead_attorney_id=row.lead_attorney_id,
            assigned_lawyer_ids=list(row.assigned_lawyer_ids or []),
            result=row.result,
            result_notes=row.result_notes,
            closed_at=row.closed_at,
            closed_by=row.closed_by,
            created_at=row.created_at,
        )


# ════════════════════════════════════════════════════════════════
# Audit Trail
# ════════════════════════════════════════════════════════════════


def audit_row(entry: AuditEntry) -> AuditLogDB:
    """Row for an audit entry; callers add it to their own session."""
    return AuditLogDB(
        id=entry.id,
        guild_id=entry.guild_id,
        action=entry.action.value,
        actor_id=entry.actor_id,
        target_id=entry.target_id,
        timestamp=entry.timestamp,
        details=entry.details.model_dump(mode="json", exclude_none=True),
        severity=entry.severity.value,
        is_guild_owner_bypass=entry.is_guild_owner_bypass,
    )


class AuditLogRepository:
    """
    Append-only audit trail.

    ``log_action`` and its specialised variants are the only writes; there is
    no update or delete.
    """

    def __init__(self, database: Database) -> None:
        self.SessionLocal = database.SessionLocal

    def log_action(self, entry: AuditEntry) -> AuditEntry:
        with self.SessionLocal() as session:
            session.add(audit_row(entry))
            session.commit()

        logger.debug(
            "Audit entry appended: guild=%s action=%s severity=%s",
            entry.guild_id, entry.action.value, entry.severity.value,
        )
        return entry

    def log_role_limit_bypass(
        self,
        guild_id: str,
        actor_id: str,
        target_id: str,
        role: StaffRole,
        current_count: int,
        max_count: int,
        bypass_reason: str,
        original_validation_errors: list[str] | None = None,
    ) -> AuditEntry:
        """Record a guild owner exceeding a role's population cap."""
        entry = self.role_limit_bypass_entry(
            guild_id, actor_id, target_id, role, current_count, max_count,
            bypass_reason, original_validation_errors,
        )
        self.log_action(entry)
        logger.warning(
            "Role limit bypass logged: guild=%s actor=%s target=%s role=%s count=%d/%d",
            guild_id, actor_id, target_id, role.value, current_count, max_count,
        )
        return entry

    @staticmethod
    def role_limit_bypass_entry(
        guild_id: str,
        actor_id: str,
        target_id: str,
        role: StaffRole,
        current_count: int,
        max_count: int,
        bypass_reason: str,
        original_validation_errors: list[str] | None = None,
    ) -> AuditEntry:
        return AuditEntry(
            guild_id=guild_id,
            action=AuditAction.ROLE_LIMIT_BYPASSED,
            actor_id=actor_id,
            target_id=target_id,
            is_guild_owner_bypass=True,
            details=AuditDetails(
                reason=bypass_reason,
                bypass_info=BypassInfo(
                    bypass_type=BypassType.GUILD_OWNER,
                    business_rule_violated="role-limit",
                    original_validation_errors=original_validation_errors or [
                        f"Cannot hire {role.value}. Maximum limit of {max_count} "
                        f"reached (current: {current_count})"
                    ],
                    bypass_reason=bypass_reason,
                    current_count=current_count,
                    max_count=max_count,
                ),
                metadata={"role": role.value, "new_count": current_count + 1},
            ),
        )

    def log_business_rule_violation(
        self,
        guild_id: str,
        actor_id: str,
        rule_violated: str,
        violation_details: list[str],
        attempted_action: AuditAction,
        target_id: str | None = None,
    ) -> AuditEntry:
        """Record a blocked attempt to break a business rule."""
        entry = AuditEntry(
            guild_id=guild_id,
            action=AuditAction.BUSINESS_RULE_VIOLATION,
            actor_id=actor_id,
            target_id=target_id,
            details=AuditDetails(
                reason=f"Business rule violation: {rule_violated}",
                metadata={
                    "attempted_action": attempted_action.value,
                    "violation_details": violation_details,
                },
            ),
        )
        self.log_action(entry)
        logger.warning(
            "Business rule violation logged: guild=%s actor=%s rule=%s",
            guild_id, actor_id, rule_violated,
        )
        return entry

    def find_by_guild(self, guild_id: str, limit: int = 50) -> list[AuditEntry]:
        return self._find(limit, AuditLogDB.guild_id == guild_id)

    def find_by_action(self, guild_id: str, action: AuditAction, limit: int = 50) -> list[AuditEntry]:
        return self._find(limit, AuditLogDB.guild_id == guild_id, AuditLogDB.action == action.value)

    def find_by_actor(self, guild_id: str, actor_id: str, limit: int = 50) -> list[AuditEntry]:
        return self._find(limit, AuditLogDB.guild_id == guild_id, AuditLogDB.actor_id == actor_id)

    def find_by_target(self, guild_id: str, target_id: str, limit: int = 50) -> list[AuditEntry]:
        return self._find(limit, AuditLogDB.guild_id == guild_id, AuditLogDB.target_id == target_id)

    def find_guild_owner_bypasses(self, guild_id: str, limit: int = 50) -> list[AuditEntry]:
        return self._find(
            limit, AuditLogDB.guild_id == guild_id, AuditLogDB.is_guild_owner_bypass.is_(True)
        )

    def action_counts(self, guild_id: str) -> dict[AuditAction, int]:
        """Number of entries per action, zero for actions never logged."""
        counts = {action: 0 for action in AuditAction}
        with self.SessionLocal() as session:
            rows = session.execute(
                select(AuditLogDB.action, func.count())
                .where(AuditLogDB.guild_id == guild_id)
                .group_by(AuditLogDB.action)
            ).all()
        for action, count in rows:
            if action in AuditAction._value2member_map_:
                counts[AuditAction(action)] = count
        return counts

    # ── Internal ────────────────────────────────────────────────

    def _find(self, limit: int, *criteria: Any) -> list[AuditEntry]:
        with self.SessionLocal() as session:
            rows = session.execute(
                select(AuditLogDB)
                .where(*criteria)
                .order_by(AuditLogDB.timestamp.desc())
                .limit(limit)
            ).scalars().all()
            return [self._to_model(row) for row in rows]

    @staticmethod
    def _to_model(row: AuditLogDB) -> AuditEntry:
        entry = AuditEntry(
            id=row.id,
            guild_id=row.guild_id,
            action=AuditAction(row.action),
            actor_id=row.actor_id,
            target_id=row.target_id,
            timestamp=row.timestamp,
            details=AuditDetails.model_validate(row.details or {}),
            is_guild_owner_bypass=row.is_guild_owner_bypass,
        )
        if entry.severity.value != row.severity:
            logger.warning(
                "Stored severity %s differs from table severity %s for action %s",
                row.severity, entry.severity.value, row.action,
            )
        return entry
