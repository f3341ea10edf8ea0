"""
Tests for the audit trail.

Validates:
- Entries round-trip with their details and derived severity
- Query helpers filter by guild, action, actor, target and bypass flag
- Newest entries come first and limits apply
- The repository exposes no update or delete
- The operator report CLI
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from anarchy_associates.firm.schema import (
    AuditAction,
    AuditDetails,
    AuditEntry,
    AuditSeverity,
    AuditState,
    StaffRole,
)
from anarchy_associates.store import audit as audit_cli
from anarchy_associates.store.database import Database
from anarchy_associates.store.repositories import AuditLogRepository

BASE_TIME = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def entry(action, actor="U1", target=None, guild="G1", minutes=0, **details):
    return AuditEntry(
        guild_id=guild,
        action=action,
        actor_id=actor,
        target_id=target,
        timestamp=BASE_TIME + timedelta(minutes=minutes),
        details=AuditDetails(**details),
    )


class TestAuditLogRepository:

    def setup_method(self):
        self.db = Database("sqlite://")
        self.db.initialize()
        self.audit = AuditLogRepository(self.db)

    def teardown_method(self):
        self.db.dispose()

    def test_entry_round_trip(self):
        self.audit.log_action(
            entry(
                AuditAction.STAFF_PROMOTED, target="U5",
                before=AuditState(role=StaffRole.JUNIOR_ASSOCIATE),
                after=AuditState(role=StaffRole.SENIOR_ASSOCIATE),
                reason="Excellent work",
            )
        )
        stored = self.audit.find_by_guild("G1")[0]
        assert stored.action == AuditAction.STAFF_PROMOTED
        assert stored.severity == AuditSeverity.MEDIUM
        assert stored.details.before.role == StaffRole.JUNIOR_ASSOCIATE
        assert stored.details.after.role == StaffRole.SENIOR_ASSOCIATE
        assert stored.details.reason == "Excellent work"
        assert not stored.is_guild_owner_bypass

    def test_newest_first_and_limit(self):
        for minute in range(5):
            self.audit.log_action(entry(AuditAction.STAFF_LIST_VIEWED, minutes=minute))
        entries = self.audit.find_by_guild("G1", limit=3)
        assert len(entries) == 3
        assert entries[0].timestamp > entries[1].timestamp > entries[2].timestamp

    def test_queries_filter(self):
        self.audit.log_action(entry(AuditAction.STAFF_HIRED, actor="U2", target="U3"))
        self.audit.log_action(entry(AuditAction.STAFF_FIRED, actor="U2", target="U4", minutes=1))
        self.audit.log_action(entry(AuditAction.STAFF_HIRED, actor="U7", target="U3", minutes=2))
        self.audit.log_action(entry(AuditAction.STAFF_HIRED, guild="G2", target="U3"))

        assert len(self.audit.find_by_guild("G1")) == 3
        assert len(self.audit.find_by_action("G1", AuditAction.STAFF_HIRED)) == 2
        assert [e.target_id for e in self.audit.find_by_actor("G1", "U2")] == ["U4", "U3"]
        assert {e.actor_id for e in self.audit.find_by_target("G1", "U3")} == {"U2", "U7"}

    def test_role_limit_bypass_entry(self):
        self.audit.log_role_limit_bypass(
            "G1", "OWNER", "U3", StaffRole.MANAGING_PARTNER,
            current_count=1, max_count=1, bypass_reason="Restructuring",
        )
        stored = self.audit.find_guild_owner_bypasses("G1")[0]
        assert stored.severity == AuditSeverity.CRITICAL
        info = stored.details.bypass_info
        assert info.business_rule_violated == "role-limit"
        assert info.original_validation_errors == [
            "Cannot hire Managing Partner. Maximum limit of 1 reached (current: 1)"
        ]
        assert stored.details.metadata["new_count"] == 2

    def test_business_rule_violation_entry(self):
        self.audit.log_business_rule_violation(
            "G1", "U5", "self-promotion",
            ["Staff members cannot promote themselves"],
            AuditAction.STAFF_PROMOTED,
            target_id="U5",
        )
        stored = self.audit.find_by_action("G1", AuditAction.BUSINESS_RULE_VIOLATION)[0]
        assert stored.severity == AuditSeverity.CRITICAL
        assert stored.details.reason == "Business rule violation: self-promotion"
        assert stored.details.metadata["attempted_action"] == "staff_promoted"
        assert not stored.is_guild_owner_bypass

    def test_action_counts(self):
        self.audit.log_action(entry(AuditAction.STAFF_HIRED))
        self.audit.log_action(entry(AuditAction.STAFF_HIRED, minutes=1))
        self.audit.log_action(entry(AuditAction.CASE_CREATED, minutes=2))

        counts = self.audit.action_counts("G1")
        assert counts[AuditAction.STAFF_HIRED] == 2
        assert counts[AuditAction.CASE_CREATED] == 1
        assert counts[AuditAction.CASE_CLOSED] == 0
        assert set(counts) == set(AuditAction)

    def test_no_update_or_delete(self):
        public = {name for name in dir(self.audit) if not name.startswith("_")}
        assert not any(name.startswith(("update", "delete", "remove")) for name in public)


class TestAuditReport:

    def seed(self, tmp_path):
        url = f"sqlite:///{tmp_path / 'firm.db'}"
        database = Database(url)
        database.initialize()
        repo = AuditLogRepository(database)
        repo.log_action(entry(AuditAction.STAFF_HIRED, actor="U2", target="U3"))
        repo.log_role_limit_bypass(
            "G1", "OWNER", "U4", StaffRole.MANAGING_PARTNER,
            current_count=1, max_count=1, bypass_reason="Restructuring",
        )
        database.dispose()
        return url

    def test_report_lists_guild_entries(self, tmp_path):
        url = self.seed(tmp_path)
        assert audit_cli.run_report(url, "G1") == 2
        assert audit_cli.run_report(url, "G2") == 0

    def test_report_bypasses_only(self, tmp_path):
        url = self.seed(tmp_path)
        assert audit_cli.run_report(url, "G1", bypasses_only=True) == 1

    def test_main_exits_cleanly(self, tmp_path):
        url = self.seed(tmp_path)
        with pytest.raises(SystemExit) as exc_info:
            audit_cli.main(["--guild", "G1", "--database-url", url, "--limit", "5"])
        assert exc_info.value.code == 0

    def test_main_requires_guild(self):
        with pytest.raises(SystemExit) as exc_info:
            audit_cli.main([])
        assert exc_info.value.code == 2
