import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncRun(Base):
    __tablename__ = "sync_runs"

    run_id = Column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        comment="identifier shared by every snapshot of one ingestion call",
    )
    run_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        comment="timestamp stamped on every snapshot of the run",
    )
    source = Column(Text, nullable=False, comment="name of the sync job")
    item_count = Column(
        Integer, nullable=False, default=0, comment="number of snapshots in the run"
    )

    # Relationships
    snapshots = relationship("WorkItemSnapshot", back_populates="run")


class WorkItemSnapshot(Base):
    __tablename__ = "work_item_snapshots"
    __table_args__ = (
        Index("ix_work_item_snapshots_release_at", "release", "snapshot_at"),
    )

    run_id = Column(
        UUID(as_uuid=True),
        ForeignKey("sync_runs.run_id", ondelete="CASCADE"),
        primary_key=True,
        comment="foreign key for sync_runs.run_id",
    )
    work_item_id = Column(BigInteger, primary_key=True, comment="work item id")
    snapshot_at = Column(
        DateTime(timezone=True),
        nullable=False,
        comment="run timestamp the state was observed at",
    )
    release = Column(Text, comment="release the item was planned for")
    type = Column(Text, comment="work item type (Bug, User Story, ...)")
    state = Column(Text, comment="raw workflow state")
    severity = Column(Text)
    effort = Column(Float)
    dep_count = Column(Integer, nullable=False, default=0)
    open_dep_count = Column(
        Integer, comment="open predecessors; null when the source did not report it"
    )
    related_link_count = Column(Integer, nullable=False, default=0)
    open_related_count = Column(
        Integer, comment="open related items; null when the source did not report it"
    )
    closed_date = Column(DateTime(timezone=True))

    # Relationships
    run = relationship("SyncRun", back_populates="snapshots")


class WorkItemLatest(Base):
    __tablename__ = "work_items_latest"

    work_item_id = Column(BigInteger, primary_key=True, comment="work item id")
    type = Column(Text)
    title = Column(Text)
    state = Column(Text)
    reason = Column(Text)
    assigned_to = Column(Text)
    assigned_to_upn = Column(Text)
    project = Column(Text)
    area_path = Column(Text)
    iteration_path = Column(Text)
    tags = Column(Text)
    release = Column(Text, index=True)
    created_by = Column(Text)
    changed_by = Column(Text)
    created_date = Column(DateTime(timezone=True))
    changed_date = Column(DateTime(timezone=True))
    state_change_date = Column(DateTime(timezone=True))
    closed_date = Column(DateTime(timezone=True))
    severity = Column(Text)
    effort = Column(Float)
    parent_id = Column(BigInteger)
    feature_id = Column(BigInteger)
    feature = Column(Text)
    dep_count = Column(Integer, nullable=False, default=0)
    open_dep_count = Column(Integer)
    related_link_count = Column(Integer, nullable=False, default=0)
    open_related_count = Column(Integer)
    source = Column(Text, comment="name of the sync job that last wrote the row")
    synced_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        comment="run timestamp of the last upsert",
    )


SNAPSHOT_COLUMNS = [
    "work_item_id",
    "release",
    "type",
    "state",
    "severity",
    "effort",
    "dep_count",
    "open_dep_count",
    "related_link_count",
    "open_related_count",
    "closed_date",
]

LATEST_COLUMNS = [column.key for column in WorkItemLatest.__table__.columns]
