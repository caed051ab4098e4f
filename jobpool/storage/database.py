from sqlalchemy import (
    create_engine, Column, String, Integer, BigInteger, DateTime, JSON, Text,
    Enum as SQLEnum, update, delete,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base
from sqlalchemy.orm import sessionmaker
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence
import logging
import os

from ..models.heartbeat import Heartbeat
from ..models.job import (
    CLAIMABLE_STATES, DEFAULT_MAX_ATTEMPTS, TERMINAL_STATES, EnqueueOptions, Job, JobStatus,
    utcnow,
)
from .base import QueueStorage, StorageError, empty_stats

Base = declarative_base()

logger = logging.getLogger("jobpool.storage")


def _naive(value: Optional[datetime]) -> Optional[datetime]:
    """Columns hold naive UTC timestamps."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class JobModel(Base):
    __tablename__ = "jobs"

    id = Column(String, primary_key=True)
    queue = Column(String, nullable=False, index=True, default="default")
    type = Column(String, nullable=False)
    payload = Column(JSON, nullable=False, default=dict)
    status = Column(SQLEnum(JobStatus), nullable=False, default=JobStatus.PENDING, index=True)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    scheduled_at = Column(DateTime, nullable=False, index=True)
    owner_worker_id = Column(String, nullable=True)
    result = Column(JSON, nullable=True)
    error = Column(Text, nullable=True)
    retried_as = Column(String, nullable=True)
    created_at = Column(DateTime, nullable=False)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    def to_job(self) -> Job:
        return Job(
            id=self.id,
            queue=self.queue,
            type=self.type,
            payload=self.payload or {},
            status=self.status,
            attempts=self.attempts,
            max_attempts=self.max_attempts,
            scheduled_at=self.scheduled_at,
            owner_worker_id=self.owner_worker_id,
            result=self.result,
            error=self.error,
            retried_as=self.retried_as,
            created_at=self.created_at,
            started_at=self.started_at,
            completed_at=self.completed_at,
        )


class HeartbeatModel(Base):
    __tablename__ = "worker_heartbeats"

    worker_id = Column(String, primary_key=True)
    timestamp = Column(Integer, nullable=False)
    memory_usage = Column(BigInteger, nullable=False, default=0)
    jobs_processed = Column(Integer, nullable=False, default=0)
    current_job = Column(String, nullable=True)
    queues = Column(JSON, nullable=False, default=list)


class Storage(QueueStorage):
    # Claims lost to a concurrent worker before giving up on a queue
    max_claim_races = 10

    def __init__(self, db_path: str = None, url: str = None):
        if not url:
            if not db_path:
                db_path = os.path.join(os.path.expanduser("~"), ".jobpool", "jobs.db")
                os.makedirs(os.path.dirname(db_path), exist_ok=True)
            url = f"sqlite:///{db_path}"

        connect_args = {}
        if url.startswith("sqlite"):
            # workers are threads sharing this engine; wait on the write lock instead of failing
            connect_args = {"check_same_thread": False, "timeout": 30}

        self.engine = create_engine(url, connect_args=connect_args)
        Base.metadata.create_all(self.engine)
        self.Session = sessionmaker(bind=self.engine)

    def __del__(self):
        if hasattr(self, 'engine'):
            self.engine.dispose()

    @staticmethod
    def _new_row(job: Job) -> JobModel:
        return JobModel(
            id=job.id,
            queue=job.queue,
            type=job.type,
            payload=job.payload,
            status=job.status,
            attempts=0,
            max_attempts=job.max_attempts,
            scheduled_at=_naive(job.scheduled_at),
            created_at=_naive(job.created_at),
        )

    def enqueue(self, queue: str, type: str, payload: Dict[str, Any],
                options: Optional[EnqueueOptions] = None) -> str:
        options = options or EnqueueOptions()
        now = utcnow()
        job = Job(
            queue=queue,
            type=type,
            payload=payload,
            max_attempts=options.max_attempts or DEFAULT_MAX_ATTEMPTS,
            created_at=now,
            scheduled_at=now + timedelta(seconds=options.delay_seconds()),
            **({"id": options.job_id} if options.job_id else {}),
        )
        session = self.Session()
        try:
            if session.get(JobModel, job.id) is not None:
                raise StorageError(f"Job '{job.id}' already exists")
            session.add(self._new_row(job))
            session.commit()
            return job.id
        except SQLAlchemyError as e:
            session.rollback()
            raise StorageError(f"Failed to enqueue job: {e}") from e
        finally:
            session.close()

    def claim_next(self, queues: Sequence[str], worker_id: str) -> Optional[Job]:
        session = self.Session()
        try:
            now = _naive(utcnow())
            for queue in queues:
                for _ in range(self.max_claim_races):
                    candidate = (
                        session.query(JobModel.id)
                        .filter(JobModel.queue == queue)
                        .filter(JobModel.status.in_(CLAIMABLE_STATES))
                        .filter(JobModel.scheduled_at <= now)
                        .filter(JobModel.attempts < JobModel.max_attempts)
                        .order_by(JobModel.created_at.asc())
                        .first()
                    )
                    if candidate is None:
                        break

                    # Conditional update: only one caller can move the row out of a claimable state
                    claimed = session.execute(
                        update(JobModel)
                        .execution_options(synchronize_session=False)
                        .where(JobModel.id == candidate.id)
                        .where(JobModel.status.in_(CLAIMABLE_STATES))
                        .where(JobModel.attempts < JobModel.max_attempts)
                        .values(
                            status=JobStatus.RUNNING,
                            owner_worker_id=worker_id,
                            started_at=now,
                            completed_at=None,
                            attempts=JobModel.attempts + 1,
                        )
                    )
                    session.commit()
                    if claimed.rowcount == 1:
                        return session.get(JobModel, candidate.id).to_job()
            return None
        except SQLAlchemyError as e:
            session.rollback()
            raise StorageError(f"Failed to claim from {list(queues)}: {e}") from e
        finally:
            session.close()

    def update(self, job: Job, expected_owner: Optional[str] = None) -> bool:
        session = self.Session()
        try:
            statement = (
                update(JobModel)
                .execution_options(synchronize_session=False)
                .where(JobModel.id == job.id)
                .where(JobModel.status.notin_(TERMINAL_STATES))
            )
            if expected_owner is not None:
                statement = (
                    statement
                    .where(JobModel.status == JobStatus.RUNNING)
                    .where(JobModel.owner_worker_id == expected_owner)
                )
            result = session.execute(
                statement.values(
                    status=job.status,
                    attempts=job.attempts,
                    max_attempts=job.max_attempts,
                    scheduled_at=_naive(job.scheduled_at),
                    owner_worker_id=job.owner_worker_id,
                    result=job.result,
                    error=job.error,
                    started_at=_naive(job.started_at),
                    completed_at=_naive(job.completed_at),
                )
            )
            session.commit()
            if result.rowcount == 1:
                return True

            stored = session.get(JobModel, job.id)
            if stored is None:
                raise StorageError(f"Job '{job.id}' not found")
            if stored.status in TERMINAL_STATES:
                if stored.status != job.status:
                    logger.warning("Ignoring %s update for job %s: already %s",
                                   job.status.value, job.id, stored.status.value)
            else:
                logger.warning("Ignoring update for job %s: no longer owned by %s",
                               job.id, expected_owner)
            return False
        except SQLAlchemyError as e:
            session.rollback()
            raise StorageError(f"Failed to update job {job.id}: {e}") from e
        finally:
            session.close()

    def get(self, job_id: str) -> Optional[Job]:
        session = self.Session()
        try:
            model = session.get(JobModel, job_id)
            return model.to_job() if model else None
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to load job {job_id}: {e}") from e
        finally:
            session.close()

    def list_jobs(self, status: Optional[JobStatus] = None, queue: Optional[str] = None,
                  limit: Optional[int] = None) -> List[Job]:
        session = self.Session()
        try:
            query = session.query(JobModel)
            if status:
                query = query.filter(JobModel.status == status)
            if queue:
                query = query.filter(JobModel.queue == queue)
            query = query.order_by(JobModel.created_at.asc())
            if limit:
                query = query.limit(limit)
            return [model.to_job() for model in query.all()]
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to list jobs: {e}") from e
        finally:
            session.close()

    def pending_count(self, queues: Optional[Iterable[str]] = None) -> int:
        session = self.Session()
        try:
            query = session.query(JobModel).filter(JobModel.status.in_(CLAIMABLE_STATES))
            if queues is not None:
                query = query.filter(JobModel.queue.in_(list(queues)))
            return query.count()
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to count pending jobs: {e}") from e
        finally:
            session.close()

    def queue_stats(self, queue: Optional[str] = None) -> Dict[str, Any]:
        stats = empty_stats()
        times = []
        for job in self.list_jobs(queue=queue):
            stats[job.status.value] += 1
            stats["total"] += 1
            if job.status == JobStatus.COMPLETED and job.processing_time() is not None:
                times.append(job.processing_time())
        if times:
            stats["avg_processing_time"] = sum(times) / len(times)
        return stats

    def cleanup(self, retention: timedelta) -> int:
        session = self.Session()
        try:
            cutoff = _naive(utcnow() - retention)
            result = session.execute(
                delete(JobModel)
                .execution_options(synchronize_session=False)
                .where(JobModel.status.in_(TERMINAL_STATES))
                .where(JobModel.completed_at < cutoff)
            )
            session.commit()
            return result.rowcount
        except SQLAlchemyError as e:
            session.rollback()
            raise StorageError(f"Failed to clean up jobs: {e}") from e
        finally:
            session.close()

    def retry_failed(self, job_id: str) -> Optional[str]:
        session = self.Session()
        try:
            original = session.get(JobModel, job_id)
            if original is None or original.status != JobStatus.FAILED or original.retried_as:
                return None
            now = utcnow()
            job = Job(
                queue=original.queue,
                type=original.type,
                payload=dict(original.payload or {}),
                max_attempts=original.max_attempts,
                created_at=now,
                scheduled_at=now,
            )
            # The mark and the insert commit together, so a job is re-queued once
            marked = session.execute(
                update(JobModel)
                .execution_options(synchronize_session=False)
                .where(JobModel.id == job_id)
                .where(JobModel.status == JobStatus.FAILED)
                .where(JobModel.retried_as.is_(None))
                .values(retried_as=job.id)
            )
            if marked.rowcount != 1:
                session.rollback()
                return None
            session.add(self._new_row(job))
            session.commit()
            return job.id
        except SQLAlchemyError as e:
            session.rollback()
            raise StorageError(f"Failed to retry job {job_id}: {e}") from e
        finally:
            session.close()

    def cancel(self, job_id: str) -> bool:
        session = self.Session()
        try:
            result = session.execute(
                update(JobModel)
                .execution_options(synchronize_session=False)
                .where(JobModel.id == job_id)
                .where(JobModel.status.in_(CLAIMABLE_STATES))
                .values(
                    status=JobStatus.CANCELLED,
                    owner_worker_id=None,
                    completed_at=_naive(utcnow()),
                )
            )
            session.commit()
            return result.rowcount == 1
        except SQLAlchemyError as e:
            session.rollback()
            raise StorageError(f"Failed to cancel job {job_id}: {e}") from e
        finally:
            session.close()

    def clear(self, queue: Optional[str] = None) -> int:
        session = self.Session()
        try:
            statement = (
                delete(JobModel)
                .execution_options(synchronize_session=False)
                .where(JobModel.status != JobStatus.RUNNING)
            )
            if queue:
                statement = statement.where(JobModel.queue == queue)
            result = session.execute(statement)
            session.commit()
            return result.rowcount
        except SQLAlchemyError as e:
            session.rollback()
            raise StorageError(f"Failed to clear jobs: {e}") from e
        finally:
            session.close()

    def reclaim_expired(self, lease: timedelta, live_worker_ids: Iterable[str]) -> List[str]:
        live = list(live_worker_ids)
        session = self.Session()
        try:
            now = utcnow()
            stale = (
                session.query(JobModel)
                .filter(JobModel.status == JobStatus.RUNNING)
                .filter(JobModel.started_at <= _naive(now - lease))
            )
            if live:
                stale = stale.filter(
                    (JobModel.owner_worker_id.is_(None)) | (JobModel.owner_worker_id.notin_(live))
                )

            reclaimed = []
            for model in stale.all():
                job = model.to_job()
                if job.can_retry:
                    job.schedule_retry(0, "lease expired")
                else:
                    job.mark_failed("lease expired")
                # Guard on the owner so a late check-in from the original worker wins
                result = session.execute(
                    update(JobModel)
                    .execution_options(synchronize_session=False)
                    .where(JobModel.id == job.id)
                    .where(JobModel.status == JobStatus.RUNNING)
                    .where(JobModel.owner_worker_id == model.owner_worker_id)
                    .values(
                        status=job.status,
                        owner_worker_id=None,
                        error=job.error,
                        scheduled_at=_naive(job.scheduled_at),
                        completed_at=_naive(job.completed_at),
                    )
                )
                if result.rowcount == 1:
                    reclaimed.append(job.id)
            session.commit()
            return reclaimed
        except SQLAlchemyError as e:
            session.rollback()
            raise StorageError(f"Failed to reclaim expired jobs: {e}") from e
        finally:
            session.close()

    def record_heartbeat(self, heartbeat: Heartbeat) -> None:
        session = self.Session()
        try:
            session.merge(HeartbeatModel(**heartbeat.model_dump()))
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise StorageError(f"Failed to record heartbeat for {heartbeat.worker_id}: {e}") from e
        finally:
            session.close()

    def list_heartbeats(self) -> List[Heartbeat]:
        session = self.Session()
        try:
            return [
                Heartbeat(
                    worker_id=row.worker_id,
                    timestamp=row.timestamp,
                    memory_usage=row.memory_usage,
                    jobs_processed=row.jobs_processed,
                    current_job=row.current_job,
                    queues=row.queues or [],
                )
                for row in session.query(HeartbeatModel).all()
            ]
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to list heartbeats: {e}") from e
        finally:
            session.close()

    def remove_heartbeat(self, worker_id: str) -> None:
        session = self.Session()
        try:
            session.execute(delete(HeartbeatModel).where(HeartbeatModel.worker_id == worker_id))
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise StorageError(f"Failed to remove heartbeat for {worker_id}: {e}") from e
        finally:
            session.close()
