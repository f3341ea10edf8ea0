"""Engine and session factory shared by every repository."""

from __future__ import annotations

import logging

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from anarchy_associates.store.models import Base

logger = logging.getLogger(__name__)


class Database:
    """
    Owns the SQLAlchemy engine and session factory.

    Usage:
        db = Database("postgresql+psycopg2://...")
        db.initialize()  # Create tables
        with db.SessionLocal() as session:
            ...
    """

    def __init__(self, database_url: str, echo: bool = False) -> None:
        self.database_url = database_url
        self.engine: Engine = self._create_engine(database_url, echo)
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False)

    @staticmethod
    def _create_engine(database_url: str, echo: bool) -> Engine:
        # In-memory SQLite lives on a single connection; share it across sessions.
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            return create_engine(
                database_url,
                echo=echo,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        return create_engine(database_url, echo=echo)

    def initialize(self) -> None:
        """Create every table that does not exist yet."""
        Base.metadata.create_all(self.engine)
        logger.info("Firm store schema ready: %s", self.engine.url.render_as_string(hide_password=True))

    def dispose(self) -> None:
        self.engine.dispose()
