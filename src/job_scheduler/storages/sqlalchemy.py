import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional

from sqlalchemy import JSON, Column, DateTime, Integer, String, Text, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import StaticPool

from job_scheduler.domain.job import Job, JobPriority, JobStatus, utcnow
from job_scheduler.errors import StorageError
from job_scheduler.storages.protocol import Storage

logger = logging.getLogger(__name__)

Base = declarative_base()

# Job attributes that update_job may change; id and created_at are immutable.
UPDATABLE_FIELDS = frozenset({"status", "error", "completed_at", "payload", "priority", "task_name"})

# SQLite INTEGER range; larger ids cannot exist and are treated as missing.
MIN_JOB_ID = -2 ** 63
MAX_JOB_ID = 2 ** 63 - 1


class JobModel(Base):
    __tablename__ = 'jobs'
    # AUTOINCREMENT keeps SQLite from ever handing out an id twice.
    __table_args__ = {'sqlite_autoincrement': True}

    id = Column(Integer, primary_key=True, autoincrement=True)
    task_name = Column(String, nullable=False)
    payload = Column(JSON, nullable=False)
    priority = Column(String, nullable=False, index=True)
    status = Column(String, nullable=False, index=True)
    error = Column(Text)
    created_at = Column(DateTime(timezone=True), nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True), nullable=False)
    completed_at = Column(DateTime(timezone=True))


class SqlAlchemyStorage(Storage):
    """
    Job store over an SQLAlchemy async engine.

    On SQLite every session holds one asyncio.Lock, so operations on different
    jobs wait for each other. SQLite allows a single writer anyway and the
    in-memory database is one shared connection. Other backends get no lock
    and rely on the conditional UPDATE alone.
    """

    def __init__(self, db_url: str):
        self.db_url = db_url
        engine_kwargs: Dict[str, Any] = {}
        if _is_memory_sqlite(db_url):
            # one shared connection, otherwise every session sees an empty database
            engine_kwargs["poolclass"] = StaticPool
            engine_kwargs["connect_args"] = {"check_same_thread": False}
        self.engine = create_async_engine(db_url, **engine_kwargs)
        self.async_session = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )
        self._lock: Optional[asyncio.Lock] = asyncio.Lock() if needs_session_lock(db_url) else None

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        if self._lock is not None:
            await self._lock.acquire()
        try:
            async with self.async_session() as session:
                yield session
        except SQLAlchemyError as e:
            logger.error("Storage operation failed: %s", e)
            raise StorageError(f"Storage operation failed: {e}") from e
        finally:
            if self._lock is not None:
                self._lock.release()

    async def create_tables(self) -> None:
        try:
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except SQLAlchemyError as e:
            raise StorageError(f"Could not create tables: {e}") from e

    async def close(self) -> None:
        await self.engine.dispose()

    async def create_job(self, task_name: str, payload: Dict[str, Any], priority: JobPriority) -> Job:
        now = utcnow()
        async with self._session() as session:
            db_job = JobModel(
                task_name=task_name,
                payload=payload,
                priority=JobPriority(priority).value,
                status=JobStatus.PENDING.value,
                created_at=now,
                updated_at=now,
                completed_at=None,
            )
            session.add(db_job)
            await session.commit()
            return self._db_to_job(db_job)

    async def get_job(self, job_id: int) -> Optional[Job]:
        if not _valid_id(job_id):
            return None
        async with self._session() as session:
            db_job = await session.get(JobModel, job_id)
            if db_job:
                return self._db_to_job(db_job)
            return None

    async def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        priority: Optional[JobPriority] = None,
    ) -> List[Job]:
        query = self._filtered(select(JobModel), status, priority)
        query = query.order_by(JobModel.created_at.desc(), JobModel.id.desc())
        async with self._session() as session:
            result = await session.execute(query)
            return [self._db_to_job(db_job) for db_job in result.scalars()]

    async def count_jobs(
        self,
        status: Optional[JobStatus] = None,
        priority: Optional[JobPriority] = None,
    ) -> int:
        query = self._filtered(select(func.count(JobModel.id)), status, priority)
        async with self._session() as session:
            result = await session.execute(query)
            return result.scalar_one()

    async def update_job(
        self,
        job_id: int,
        fields: Mapping[str, Any],
        expected_status: Optional[JobStatus] = None,
    ) -> Optional[Job]:
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update job fields: {', '.join(sorted(unknown))}")
        if not _valid_id(job_id):
            return None

        values: Dict[str, Any] = {key: _column_value(value) for key, value in fields.items()}
        values["updated_at"] = utcnow()

        statement = update(JobModel).where(JobModel.id == job_id)
        if expected_status is not None:
            statement = statement.where(JobModel.status == JobStatus(expected_status).value)
        statement = statement.values(**values).execution_options(synchronize_session=False)

        async with self._session() as session:
            result = await session.execute(statement)
            if result.rowcount == 0:
                await session.rollback()
                return None
            await session.commit()
            db_job = await session.get(JobModel, job_id, populate_existing=True)
            return self._db_to_job(db_job) if db_job else None

    @staticmethod
    def _filtered(query, status: Optional[JobStatus], priority: Optional[JobPriority]):
        if status is not None:
            query = query.where(JobModel.status == JobStatus(status).value)
        if priority is not None:
            query = query.where(JobModel.priority == JobPriority(priority).value)
        return query

    def _db_to_job(self, db_job: JobModel) -> Job:
        return Job(
            id=db_job.id,
            task_name=db_job.task_name,
            payload=db_job.payload,
            priority=JobPriority(db_job.priority),
            status=JobStatus(db_job.status),
            error=db_job.error,
            created_at=db_job.created_at,
            updated_at=db_job.updated_at,
            completed_at=db_job.completed_at,
        )


class InMemoryStorage(SqlAlchemyStorage):
    def __init__(self):
        super().__init__("sqlite+aiosqlite:///:memory:")


def needs_session_lock(db_url: str) -> bool:
    return db_url.startswith("sqlite")


def _valid_id(job_id: int) -> bool:
    return MIN_JOB_ID <= job_id <= MAX_JOB_ID


def _is_memory_sqlite(db_url: str) -> bool:
    return db_url.startswith("sqlite") and (":memory:" in db_url or db_url.endswith("://"))


def _column_value(value: Any) -> Any:
    if isinstance(value, (JobStatus, JobPriority)):
        return value.value
    return value
