"""
Firm Store — SQLAlchemy models for guild configuration, staff, cases and audit.

Tables:
    guild_configs  — one row per guild, lazily created with empty defaults
    staff          — one row per (guild, user); termination is a status change
    cases          — client cases with their assigned lawyers
    case_counters  — per guild, per year sequence for case numbers
    audit_logs     — APPEND-ONLY audit trail

JSON columns become JSONB on PostgreSQL and plain JSON elsewhere, so the same
models run against SQLite for local development and tests.
"""

from __future__ import annotations

from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase

JSONDocument = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for all firm models."""
    pass


class GuildConfigDB(Base):
    """
    Permission configuration of one guild.

    ``permissions`` maps each action name to a list of role IDs. Missing keys
    are filled with empty lists when the row is read back.
    """

    __tablename__ = "guild_configs"

    guild_id = Column(String(32), primary_key=True)
    permissions = Column(
        JSONDocument, nullable=False, default=dict,
        comment="Action name -> list of authorized role IDs",
    )
    admin_roles = Column(JSONDocument, nullable=False, default=list)
    admin_users = Column(JSONDocument, nullable=False, default=list)
    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())
    updated_at = Column(
        DateTime(timezone=True), nullable=False, default=func.now(), onupdate=func.now(),
    )


class StaffDB(Base):
    """
    A staff member of one guild.

    The (guild_id, user_id) pair is unique: re-hiring a terminated member
    reactivates this row instead of inserting a second one.
    """

    __tablename__ = "staff"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    guild_id = Column(String(32), nullable=False)
    user_id = Column(String(32), nullable=False)
    roblox_username = Column(String(20), nullable=True)
    role = Column(String(40), nullable=False)
    status = Column(
        String(20), nullable=False, default="active",
        comment="active, inactive or terminated",
    )
    hired_at = Column(DateTime(timezone=True), nullable=False, default=func.now())
    hired_by = Column(String(32), nullable=False)
    promotion_history = Column(
        JSONDocument, nullable=False, default=list,
        comment="Ordered hire/promotion/demotion/fire records",
    )

    __table_args__ = (
        UniqueConstraint("guild_id", "user_id", name="uq_staff_guild_user"),
        Index("ix_staff_guild_role_status", "guild_id", "role", "status"),
    )

    def __repr__(self) -> str:
        return f"<Staff guild={self.guild_id} user={self.user_id} role={self.role} status={self.status}>"


class CaseDB(Base):
    """A client case."""

    __tablename__ = "cases"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    guild_id = Column(String(32), nullable=False)
    case_number = Column(String(140), nullable=False, unique=True)
    client_id = Column(String(32), nullable=False)
    client_username = Column(String(100), nullable=False)
    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=False, default="")
    status = Column(
        String(20), nullable=False, default="pending",
        comment="pending, in-progress or closed",
    )
    priority = Column(String(20), nullable=False, default="medium")
    lead_attorney_id = Column(String(32), nullable=True)
    assigned_lawyer_ids = Column(JSONDocument, nullable=False, default=list)
    result = Column(String(20), nullable=True)
    result_notes = Column(Text, nullable=True)
    closed_at = Column(DateTime(timezone=True), nullable=True)
    closed_by = Column(String(32), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())

    __table_args__ = (
        Index("ix_case_guild_client_status", "guild_id", "client_id", "status"),
        Index("ix_case_lead_attorney", "guild_id", "lead_attorney_id"),
    )


class CaseCounterDB(Base):
    """Sequence backing ``YYYY-NNNN-username`` case numbers."""

    __tablename__ = "case_counters"

    guild_id = Column(String(32), primary_key=True)
    year = Column(Integer, primary_key=True)
    count = Column(Integer, nullable=False, default=0)


class AuditLogDB(Base):
    """
    A single audit trail entry.

    This table is APPEND-ONLY. No rows may be updated or deleted.
    """

    __tablename__ = "audit_logs"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    guild_id = Column(String(32), nullable=False)
    action = Column(String(50), nullable=False)
    actor_id = Column(String(32), nullable=False)
    target_id = Column(String(32), nullable=True)
    timestamp = Column(DateTime(timezone=True), nullable=False, default=func.now())
    details = Column(
        JSONDocument, nullable=False, default=dict,
        comment="before/after state, reason, bypass info, metadata",
    )
    severity = Column(String(10), nullable=False)
    is_guild_owner_bypass = Column(Boolean, nullable=False, default=False)

    __table_args__ = (
        Index("ix_audit_guild_timestamp", "guild_id", "timestamp"),
        Index("ix_audit_guild_action", "guild_id", "action"),
        Index("ix_audit_guild_actor", "guild_id", "actor_id"),
        Index("ix_audit_bypass", "guild_id", "is_guild_owner_bypass"),
    )

    def __repr__(self) -> str:
        return f"<AuditLog guild={self.guild_id} action={self.action} severity={self.severity}>"
