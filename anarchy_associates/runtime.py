"""
Anarchy & Associates — Runtime wiring.

Builds the store, repositories, governance services and firm services in
dependency order from ``FirmSettings``. Command handlers hold one
``FirmRuntime`` and call its services with a ``PermissionContext`` per
inbound event.

Usage:
    python -m anarchy_associates.runtime      # create the schema and exit
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import structlog

from anarchy_associates.config import FirmSettings, settings
from anarchy_associates.governance.business_rules import BusinessRuleValidationService
from anarchy_associates.governance.bypass import GuildOwnerBypassService
from anarchy_associates.governance.permissions import PermissionService
from anarchy_associates.governance.validation import UnifiedValidationService
from anarchy_associates.services.cases import CaseService
from anarchy_associates.services.guild_config import GuildConfigService
from anarchy_associates.services.staff import StaffService
from anarchy_associates.store.database import Database
from anarchy_associates.store.repositories import (
    AuditLogRepository,
    CaseRepository,
    GuildConfigRepository,
    StaffRepository,
)

logger = logging.getLogger(__name__)


def configure_logging(config: FirmSettings = settings) -> None:
    """Configure structured logging."""
    level = logging.getLevelName(config.log_level.upper())
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            (
                structlog.dev.ConsoleRenderer()
                if config.log_format != "json"
                else structlog.processors.JSONRenderer()
            ),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


@dataclass
class FirmRuntime:
    database: Database
    guild_configs: GuildConfigRepository
    staff_repository: StaffRepository
    case_repository: CaseRepository
    audit: AuditLogRepository
    permissions: PermissionService
    rules: BusinessRuleValidationService
    validation: UnifiedValidationService
    bypass: GuildOwnerBypassService
    staff: StaffService
    cases: CaseService
    config: GuildConfigService

    @classmethod
    def from_settings(
        cls, config: FirmSettings = settings, database: Database | None = None
    ) -> "FirmRuntime":
        database = database or Database(config.database_url_sync)

        guild_configs = GuildConfigRepository(database)
        staff_repository = StaffRepository(database)
        case_repository = CaseRepository(database)
        audit = AuditLogRepository(database)

        permissions = PermissionService(guild_configs)
        rules = BusinessRuleValidationService(
            staff_repository,
            case_repository,
            permissions,
            client_case_limit=config.client_case_limit,
        )
        validation = UnifiedValidationService.with_default_strategies(
            rules, staff_repository, case_repository
        )
        bypass = GuildOwnerBypassService(
            audit,
            confirmation_phrase=config.bypass_confirmation_phrase,
            ttl_minutes=config.bypass_request_ttl_minutes,
        )

        return cls(
            database=database,
            guild_configs=guild_configs,
            staff_repository=staff_repository,
            case_repository=case_repository,
            audit=audit,
            permissions=permissions,
            rules=rules,
            validation=validation,
            bypass=bypass,
            staff=StaffService(staff_repository, audit, permissions, rules, validation, bypass),
            cases=CaseService(case_repository, audit, permissions, validation),
            config=GuildConfigService(guild_configs, permissions),
        )


def main() -> None:
    configure_logging()
    log = structlog.get_logger()

    log.info("anarchy_associates.runtime.starting", log_level=settings.log_level)
    runtime = FirmRuntime.from_settings(settings)
    runtime.database.initialize()
    log.info(
        "anarchy_associates.runtime.ready",
        strategies=runtime.validation.strategy_names,
        client_case_limit=settings.client_case_limit,
    )
    runtime.database.dispose()


if __name__ == "__main__":
    main()
