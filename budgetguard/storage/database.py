"""Database models and connection management."""

from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from sqlalchemy import (
    Column,
    DateTime,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
)
from sqlalchemy.orm import declarative_base, sessionmaker, Session

from budgetguard.utils.helpers import utc_now

Base = declarative_base()


class LedgerEntryRow(Base):
    """Append-only resource consumption record. Never updated or deleted."""

    __tablename__ = "ledger_entries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    month = Column(String(7), nullable=False, index=True)
    episode_id = Column(String, nullable=False, index=True)
    cost_plan_id = Column(Integer, nullable=True, index=True)
    resource = Column(String, nullable=False)
    # Decimals kept as text so SQLite does not round them
    quantity = Column(String, nullable=False)
    unit_cost = Column(String, nullable=False)
    total_cents = Column(Integer, nullable=False)
    kind = Column(String, nullable=False, default="charge")  # charge | compensation | adjustment
    created_at = Column(DateTime, nullable=False, default=utc_now)

    def __repr__(self) -> str:
        return (
            f"<LedgerEntryRow(id={self.id}, month={self.month}, episode={self.episode_id}, "
            f"resource={self.resource}, total={self.total_cents}c, kind={self.kind})>"
        )


class EpisodeCostPlanRow(Base):
    """Committed plan choice. An override adds a new revision instead of editing this one."""

    __tablename__ = "episode_cost_plans"
    __table_args__ = (UniqueConstraint("episode_id", "revision", name="uq_episode_revision"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    episode_id = Column(String, nullable=False, index=True)
    revision = Column(Integer, nullable=False, default=1)
    month = Column(String(7), nullable=False, index=True)
    plan_code = Column(String, nullable=False)
    estimate_cents = Column(Integer, nullable=False)
    decided_by = Column(String, nullable=False)
    rationale = Column(Text, nullable=False, default="")
    created_at = Column(DateTime, nullable=False, default=utc_now, index=True)

    def __repr__(self) -> str:
        return (
            f"<EpisodeCostPlanRow(episode={self.episode_id}, rev={self.revision}, "
            f"plan={self.plan_code}, estimate={self.estimate_cents}c)>"
        )


class BudgetSnapshotRow(Base):
    """Per-month aggregate spend. Updated only inside ledger commits."""

    __tablename__ = "budget_snapshots"

    month = Column(String(7), primary_key=True)
    spent_cents = Column(Integer, nullable=False, default=0)
    forecast_cents = Column(Integer, nullable=False, default=0)
    borrowed_cents = Column(Integer, nullable=False, default=0)
    lent_cents = Column(Integer, nullable=False, default=0)
    version = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, nullable=False, default=utc_now)

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return (
            f"<BudgetSnapshotRow(month={self.month}, spent={self.spent_cents}c, "
            f"forecast={self.forecast_cents}c, v{self.version})>"
        )


class ReallocationRow(Base):
    """Audit record of slack pulled forward from a future month."""

    __tablename__ = "reallocations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    from_month = Column(String(7), nullable=False, index=True)
    to_month = Column(String(7), nullable=False, index=True)
    episode_id = Column(String, nullable=False)
    amount_cents = Column(Integer, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utc_now)


class DatabaseManager:
    """Manager for database connections and operations."""

    def __init__(self, database_path: str):
        """Initialize the database manager.

        Args:
            database_path: Path to SQLite database file
        """
        self.database_path = Path(database_path)
        self.database_path.parent.mkdir(parents=True, exist_ok=True)

        self.engine = create_engine(
            f"sqlite:///{self.database_path}",
            echo=False,
            pool_pre_ping=True,
            connect_args={"check_same_thread": False, "timeout": 30},
        )

        self.SessionLocal = sessionmaker(
            autocommit=False,
            autoflush=False,
            expire_on_commit=False,
            bind=self.engine
        )

    def init_db(self) -> None:
        """Create all database tables."""
        Base.metadata.create_all(bind=self.engine)

    def dispose(self) -> None:
        """Release pooled connections."""
        self.engine.dispose()

    @contextmanager
    def get_session(self) -> Generator[Session, None, None]:
        """Get a database session context manager.

        The session commits when the block exits cleanly and rolls back on any
        exception, so a block is one atomic unit.

        Yields:
            SQLAlchemy Session object

        Example:
            with db_manager.get_session() as session:
                session.add(LedgerEntryRow(...))
        """
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
