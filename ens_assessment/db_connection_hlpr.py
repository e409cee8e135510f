# ens_assessment/db_connection_hlpr.py

import logging
import os
from typing import Callable

from dotenv import load_dotenv
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from ens_assessment.entities import Base

load_dotenv()

logger = logging.getLogger("ens_assessment")


class DBConnection:
    """
    Builds the SQLAlchemy engine / session factory for the answer store.

    The URL comes from the constructor or from DATABASE_URL in the .env file;
    without either, a local SQLite file is used.
    """

    def __init__(self, database_url: str | None = None) -> None:
        self.DATABASE_URL = database_url or os.getenv("DATABASE_URL", "") or "sqlite:///ens_assessment.db"
        self.IS_SQLITE = self.DATABASE_URL.startswith("sqlite")
        self.IS_IN_MEMORY = self.IS_SQLITE and (
            self.DATABASE_URL in ("sqlite://", "sqlite:///:memory:") or ":memory:" in self.DATABASE_URL
        )
        self._engine: Engine | None = None
        self._sessionmaker: sessionmaker | None = None

    def get_engine(self) -> Engine:
        if self._engine is None:
            if self.IS_IN_MEMORY:
                # one shared connection, otherwise every session sees an empty database
                self._engine = create_engine(
                    self.DATABASE_URL,
                    connect_args={"check_same_thread": False},
                    poolclass=StaticPool,
                )
            elif self.IS_SQLITE:
                self._engine = create_engine(
                    self.DATABASE_URL,
                    connect_args={"check_same_thread": False, "timeout": 10},
                )
            else:
                self._engine = create_engine(self.DATABASE_URL, pool_pre_ping=True)
            logger.info(f"[DB] Using answer store at {self._redacted_url()}")
        return self._engine

    def _redacted_url(self) -> str:
        url = self.DATABASE_URL
        if "@" in url and "://" in url:
            scheme, rest = url.split("://", 1)
            return f"{scheme}://***@{rest.split('@', 1)[1]}"
        return url

    def create_schema(self) -> None:
        Base.metadata.create_all(self.get_engine())

    def build_db_session_factory(self) -> Callable[[], Session]:
        if self._sessionmaker is None:
            self._sessionmaker = sessionmaker(
                bind=self.get_engine(),
                autoflush=False,
                expire_on_commit=False,
            )

        def _factory() -> Session:
            return self._sessionmaker()

        return _factory
