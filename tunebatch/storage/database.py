from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple
from uuid import uuid4
import logging

from sqlalchemy import (
    JSON, Column, DateTime, Enum as SQLEnum, Float, ForeignKey, Index, Integer,
    String, Text, create_engine, func, select, update,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base, relationship, sessionmaker

from ..config.settings import default_db_path
from ..models.errors import NotFoundError, PersistenceError
from ..models.job import (
    BatchJob, BatchJobItem, ItemStatus, JobStatus, TERMINAL_ITEM_STATES, utcnow,
)

Base = declarative_base()
logger = logging.getLogger(__name__)


def _new_id() -> str:
    return str(uuid4())


class JobModel(Base):
    __tablename__ = "batch_jobs"

    id = Column(String, primary_key=True, default=_new_id)
    name = Column(String(255), nullable=False)
    type = Column(String(50), nullable=False)
    status = Column(SQLEnum(JobStatus), nullable=False, default=JobStatus.PENDING)
    total_items = Column(Integer, nullable=False)
    processed_items = Column(Integer, nullable=False, default=0)
    failed_items = Column(Integer, nullable=False, default=0)
    config = Column(JSON, nullable=True)
    results = Column(JSON, nullable=True)
    error_log = Column(JSON, nullable=False, default=list)
    estimated_cost = Column(Float, nullable=True)
    actual_cost = Column(Float, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    locked_by = Column(String, nullable=True)
    locked_until = Column(DateTime, nullable=True)

    items = relationship("JobItemModel", cascade="all, delete-orphan")

    __table_args__ = (Index("idx_batch_jobs_status", "status", "created_at"),)


class JobItemModel(Base):
    __tablename__ = "batch_job_items"

    id = Column(String, primary_key=True, default=_new_id)
    batch_job_id = Column(String, ForeignKey("batch_jobs.id", ondelete="CASCADE"), nullable=False)
    sequence_number = Column(Integer, nullable=False)
    input_data = Column(JSON, nullable=False)
    output_data = Column(JSON, nullable=True)
    status = Column(SQLEnum(ItemStatus), nullable=False, default=ItemStatus.PENDING)
    error_message = Column(Text, nullable=True)
    processing_time_ms = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    processed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_batch_job_items_seq", "batch_job_id", "sequence_number", unique=True),
        Index("idx_batch_job_items_status", "batch_job_id", "status"),
    )


JOB_FIELDS = {
    "status", "processed_items", "failed_items", "results", "error_log", "estimated_cost",
    "actual_cost", "started_at", "completed_at", "cancelled_at", "locked_by", "locked_until",
}
ITEM_FIELDS = {"status", "output_data", "error_message", "processing_time_ms", "processed_at"}


class Storage:
    def __init__(self, db_path: str = None, url: str = None):
        if not url:
            if not db_path:
                db_path = default_db_path()
            url = f"sqlite:///{db_path}"

        self.engine = create_engine(url)
        Base.metadata.create_all(self.engine)
        self.Session = sessionmaker(bind=self.engine, expire_on_commit=False)

    def __del__(self):
        if hasattr(self, 'engine'):
            self.engine.dispose()

    @contextmanager
    def session(self):
        """Session scope that commits on success and maps driver errors to PersistenceError"""
        session = self.Session()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Job store operation failed: {e}")
            raise PersistenceError(str(e)) from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # ---------------- Jobs ----------------

    def create_job(self, name: str, job_type: str, items: List[Any], config: Dict[str, Any] = None,
                   estimated_cost: float = None) -> Tuple[BatchJob, List[BatchJobItem]]:
        """Persist a pending job and its items in a single transaction"""
        with self.session() as session:
            job = JobModel(
                id=_new_id(),
                name=name,
                type=job_type,
                status=JobStatus.PENDING,
                total_items=len(items),
                processed_items=0,
                failed_items=0,
                config=config,
                error_log=[],
                estimated_cost=estimated_cost,
                created_at=utcnow(),
            )
            session.add(job)
            rows = [
                JobItemModel(
                    id=_new_id(),
                    batch_job_id=job.id,
                    sequence_number=index + 1,
                    input_data=input_data,
                    status=ItemStatus.PENDING,
                    created_at=job.created_at,
                )
                for index, input_data in enumerate(items)
            ]
            session.add_all(rows)
            session.flush()
            created = BatchJob.model_validate(job)
            created_items = [BatchJobItem.model_validate(row) for row in rows]

        logger.info(f"Created job {created.id} with {len(created_items)} items")
        return created, created_items

    def get_job(self, job_id: str) -> Tuple[BatchJob, List[BatchJobItem]]:
        with self.session() as session:
            job = session.get(JobModel, job_id)
            if job is None:
                raise NotFoundError("Job", job_id)
            rows = session.scalars(
                select(JobItemModel)
                .where(JobItemModel.batch_job_id == job_id)
                .order_by(JobItemModel.sequence_number.asc())
            ).all()
            return BatchJob.model_validate(job), [BatchJobItem.model_validate(r) for r in rows]

    def get_job_record(self, job_id: str) -> BatchJob:
        """Read only the job row, without its items"""
        with self.session() as session:
            job = session.get(JobModel, job_id)
            if job is None:
                raise NotFoundError("Job", job_id)
            return BatchJob.model_validate(job)

    def update_job_progress(self, job_id: str, updates: Dict[str, Any]) -> None:
        unknown = set(updates) - JOB_FIELDS
        if unknown:
            raise ValueError(f"Unknown job fields: {sorted(unknown)}")
        with self.session() as session:
            result = session.execute(update(JobModel).where(JobModel.id == job_id).values(**updates))
            if result.rowcount == 0:
                raise NotFoundError("Job", job_id)

    def increment_job_counters(self, job_id: str, processed: int = 0, failed: int = 0,
                               cost: float = 0.0) -> None:
        """Atomically add to the job's counters; concurrent writers never lose an increment"""
        values = {}
        if processed:
            values["processed_items"] = JobModel.processed_items + processed
        if failed:
            values["failed_items"] = JobModel.failed_items + failed
        if cost:
            values["actual_cost"] = func.coalesce(JobModel.actual_cost, 0.0) + cost
        if not values:
            return
        with self.session() as session:
            result = session.execute(update(JobModel).where(JobModel.id == job_id).values(**values))
            if result.rowcount == 0:
                raise NotFoundError("Job", job_id)

    def append_error_log(self, job_id: str, *entries: str) -> None:
        with self.session() as session:
            job = session.get(JobModel, job_id, with_for_update=True)
            if job is None:
                raise NotFoundError("Job", job_id)
            # Reassign so the JSON column is flagged dirty
            job.error_log = list(job.error_log or []) + list(entries)

    def transition_job(self, job_id: str, from_states: Iterable[JobStatus], to_status: JobStatus,
                       held_by: Optional[str] = None, **fields) -> bool:
        """Move a job to `to_status` only if it is currently in one of `from_states`.

        With `held_by`, the move also requires that runner to still hold the lease.
        """
        unknown = set(fields) - JOB_FIELDS
        if unknown:
            raise ValueError(f"Unknown job fields: {sorted(unknown)}")
        statement = (
            update(JobModel)
            .where(JobModel.id == job_id)
            .where(JobModel.status.in_(list(from_states)))
        )
        if held_by is not None:
            statement = statement.where(JobModel.locked_by == held_by)
        with self.session() as session:
            result = session.execute(statement.values(status=to_status, **fields))
            return result.rowcount == 1

    def acquire_job(self, job_id: str, runner_id: str, lease_seconds: int) -> bool:
        """Claim a pending job for one runner: pending -> running plus the lease, in one statement"""
        now = utcnow()
        with self.session() as session:
            result = session.execute(
                update(JobModel)
                .where(JobModel.id == job_id)
                .where(JobModel.status == JobStatus.PENDING)
                .values(
                    status=JobStatus.RUNNING,
                    started_at=func.coalesce(JobModel.started_at, now),
                    completed_at=None,
                    locked_by=runner_id,
                    locked_until=now + timedelta(seconds=lease_seconds),
                )
            )
            return result.rowcount == 1

    def renew_lease(self, job_id: str, runner_id: str, lease_seconds: int) -> bool:
        with self.session() as session:
            result = session.execute(
                update(JobModel)
                .where(JobModel.id == job_id)
                .where(JobModel.locked_by == runner_id)
                .values(locked_until=utcnow() + timedelta(seconds=lease_seconds))
            )
            return result.rowcount == 1

    def release_lease(self, job_id: str, runner_id: str) -> None:
        with self.session() as session:
            session.execute(
                update(JobModel)
                .where(JobModel.id == job_id)
                .where(JobModel.locked_by == runner_id)
                .values(locked_by=None, locked_until=None)
            )

    def has_live_lease(self, job: BatchJob, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        return bool(job.locked_by) and job.locked_until is not None and job.locked_until > now

    def reset_stale_jobs(self) -> List[str]:
        """Requeue running/paused jobs whose runner is gone, and their in-flight items"""
        now = utcnow()
        recovered = []
        with self.session() as session:
            stale_jobs = session.scalars(
                select(JobModel)
                .where(JobModel.status.in_([JobStatus.RUNNING, JobStatus.PAUSED]))
                .where((JobModel.locked_until.is_(None)) | (JobModel.locked_until <= now))
            ).all()
            for job in stale_jobs:
                session.execute(
                    update(JobItemModel)
                    .where(JobItemModel.batch_job_id == job.id)
                    .where(JobItemModel.status == ItemStatus.PROCESSING)
                    .values(status=ItemStatus.PENDING)
                )
                job.status = JobStatus.PENDING
                job.locked_by = None
                job.locked_until = None
                job.error_log = list(job.error_log or []) + ["Recovered after interrupted run"]
                recovered.append(job.id)

        for job_id in recovered:
            logger.warning(f"Requeued stale job {job_id}")
        return recovered

    def list_jobs(self, status: JobStatus = None, job_type: str = None, limit: int = None,
                  offset: int = 0) -> Tuple[List[BatchJob], int]:
        with self.session() as session:
            query = select(JobModel)
            count_query = select(func.count()).select_from(JobModel)
            if status:
                query = query.where(JobModel.status == status)
                count_query = count_query.where(JobModel.status == status)
            if job_type:
                query = query.where(JobModel.type == job_type)
                count_query = count_query.where(JobModel.type == job_type)
            query = query.order_by(JobModel.created_at.desc())
            if limit:
                query = query.offset(offset or 0).limit(limit)
            jobs = [BatchJob.model_validate(row) for row in session.scalars(query).all()]
            return jobs, session.scalar(count_query) or 0

    def delete_job(self, job_id: str) -> None:
        with self.session() as session:
            job = session.get(JobModel, job_id)
            if job is None:
                raise NotFoundError("Job", job_id)
            session.delete(job)

    def count_running_jobs(self) -> int:
        with self.session() as session:
            return session.scalar(
                select(func.count()).select_from(JobModel).where(JobModel.status == JobStatus.RUNNING)
            ) or 0

    def get_job_stats(self, recent: int = 5) -> Dict[str, Any]:
        by_status = {status.value: 0 for status in JobStatus}
        with self.session() as session:
            rows = session.execute(
                select(JobModel.status, func.count()).group_by(JobModel.status)
            ).all()
            for status, count in rows:
                by_status[JobStatus(status).value] = count
            recent_jobs = session.scalars(
                select(JobModel).order_by(JobModel.created_at.desc()).limit(recent)
            ).all()
            return {
                "total": sum(by_status.values()),
                "by_status": by_status,
                "recent_jobs": [BatchJob.model_validate(row) for row in recent_jobs],
            }

    # ---------------- Items ----------------

    def update_item(self, item_id: str, updates: Dict[str, Any]) -> bool:
        """Partial item update; items already completed or failed are left untouched"""
        unknown = set(updates) - ITEM_FIELDS
        if unknown:
            raise ValueError(f"Unknown item fields: {sorted(unknown)}")
        with self.session() as session:
            result = session.execute(
                update(JobItemModel)
                .where(JobItemModel.id == item_id)
                .where(JobItemModel.status.not_in(list(TERMINAL_ITEM_STATES)))
                .values(**updates)
            )
            return result.rowcount == 1

    def get_item(self, item_id: str) -> BatchJobItem:
        with self.session() as session:
            row = session.get(JobItemModel, item_id)
            if row is None:
                raise NotFoundError("Item", item_id)
            return BatchJobItem.model_validate(row)

    def list_items(self, job_id: str, status: ItemStatus = None, limit: int = None,
                   offset: int = 0) -> Tuple[List[BatchJobItem], int]:
        with self.session() as session:
            query = select(JobItemModel).where(JobItemModel.batch_job_id == job_id)
            count_query = (
                select(func.count()).select_from(JobItemModel)
                .where(JobItemModel.batch_job_id == job_id)
            )
            if status:
                query = query.where(JobItemModel.status == status)
                count_query = count_query.where(JobItemModel.status == status)
            query = query.order_by(JobItemModel.sequence_number.asc())
            if limit:
                query = query.offset(offset or 0).limit(limit)
            items = [BatchJobItem.model_validate(row) for row in session.scalars(query).all()]
            return items, session.scalar(count_query) or 0
