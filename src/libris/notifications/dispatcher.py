"""Despacho de notificaciones: interfaz común y backends `log` y `database`."""
from __future__ import annotations

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta

from pydantic import BaseModel
from sqlalchemy import and_, or_, select, update, delete, func
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from libris.clock import utcnow
from libris.config import settings as default_settings
from libris.errors import InvalidState, NotFound, ValidationFailed
from libris.models import JobStatus, NotificationJobRecord
from libris.notifications.jobs import NotificationJob, dump_job, parse_job
from libris.notifications.messages import render

logger = logging.getLogger(__name__)


class JobHandle(BaseModel):
    id: str
    kind: str
    status: JobStatus
    attempts: int = 0
    last_error: str | None = None


def _empty_stats() -> dict:
    return {s.value: 0 for s in JobStatus}


class NotificationDispatcher(ABC):
    @abstractmethod
    async def enqueue(self, job: NotificationJob) -> JobHandle: ...

    @abstractmethod
    async def stats(self) -> dict: ...

    @abstractmethod
    async def retry(self, job_id: str) -> JobHandle: ...

    @abstractmethod
    async def remove(self, job_id: str) -> None: ...

    @abstractmethod
    async def clean(self, status: JobStatus = JobStatus.COMPLETED, grace_seconds: int = 0) -> int: ...

    async def aclose(self) -> None:
        return None


@dataclass
class _Entry:
    job: NotificationJob
    status: JobStatus
    updated_at: datetime
    attempts: int = 0
    last_error: str | None = None


class LoggingDispatcher(NotificationDispatcher):
    """Cola en memoria: cada trabajo se 'entrega' al log en el momento de encolarlo."""

    def __init__(self, max_jobs: int = 1000):
        self._jobs: OrderedDict[str, _Entry] = OrderedDict()
        self.max_jobs = max(1, max_jobs)
        logger.warning("Usando LoggingDispatcher: las notificaciones solo se registran en el log.")

    def _evict(self) -> None:
        # Primero se descartan los más viejos que no fallaron; los fallidos quedan para retry.
        while len(self._jobs) > self.max_jobs:
            victim = next((k for k, e in self._jobs.items() if e.status != JobStatus.FAILED), None)
            if victim is None:
                victim = next(iter(self._jobs))
            del self._jobs[victim]

    def _handle(self, job_id: str) -> JobHandle:
        e = self._jobs[job_id]
        return JobHandle(id=job_id, kind=e.job.kind, status=e.status, attempts=e.attempts, last_error=e.last_error)

    def _deliver(self, job_id: str) -> None:
        e = self._jobs[job_id]
        e.attempts += 1
        try:
            subject, body = render(e.job)
        except ValueError as ex:
            e.status, e.last_error = JobStatus.FAILED, str(ex)
            logger.error("[notify] %s (%s) falló: %s", e.job.kind, job_id, ex)
        else:
            e.status, e.last_error = JobStatus.COMPLETED, None
            logger.info("[notify] %s -> %s | %s\n%s", e.job.kind, e.job.recipient.email, subject, body)
        e.updated_at = utcnow()

    async def enqueue(self, job: NotificationJob) -> JobHandle:
        job_id = f"log-{uuid.uuid4()}"
        self._jobs[job_id] = _Entry(job=job, status=JobStatus.QUEUED, updated_at=utcnow())
        self._deliver(job_id)
        handle = self._handle(job_id)
        self._evict()
        return handle

    async def stats(self) -> dict:
        counts = _empty_stats()
        for e in self._jobs.values():
            counts[e.status.value] += 1
        return {**counts, "timestamp": utcnow().isoformat()}

    def _get(self, job_id: str) -> _Entry:
        if job_id not in self._jobs:
            raise NotFound(f"No existe el trabajo {job_id}.", code="JOB_NOT_FOUND")
        return self._jobs[job_id]

    async def retry(self, job_id: str) -> JobHandle:
        e = self._get(job_id)
        if e.status != JobStatus.FAILED:
            raise InvalidState("Solo se pueden reintentar trabajos fallidos.", code="JOB_NOT_FAILED")
        self._deliver(job_id)
        return self._handle(job_id)

    async def remove(self, job_id: str) -> None:
        self._get(job_id)
        del self._jobs[job_id]

    async def clean(self, status: JobStatus = JobStatus.COMPLETED, grace_seconds: int = 0) -> int:
        cutoff = utcnow() - timedelta(seconds=grace_seconds)
        stale = [k for k, e in self._jobs.items() if e.status == status and e.updated_at <= cutoff]
        for k in stale:
            del self._jobs[k]
        return len(stale)


class DatabaseDispatcher(NotificationDispatcher):
    """Cola persistida en ``notification_jobs``, con sesiones propias.

    Un trabajo que falla vuelve a ``queued`` hasta agotar ``max_attempts`` y
    entonces queda ``failed``.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], max_attempts: int = 3,
                 visibility_timeout: int = 300):
        self.session_factory = session_factory
        self.max_attempts = max(1, max_attempts)
        self.visibility_timeout = max(0, visibility_timeout)

    @staticmethod
    def _handle(rec: NotificationJobRecord) -> JobHandle:
        return JobHandle(id=rec.id, kind=rec.kind, status=rec.status, attempts=rec.attempts, last_error=rec.last_error)

    async def enqueue(self, job: NotificationJob) -> JobHandle:
        async with self.session_factory() as session:
            rec = NotificationJobRecord(kind=job.kind, payload=dump_job(job), status=JobStatus.QUEUED)
            session.add(rec)
            await session.commit()
            logger.info("[queue] %s encolado: %s", job.kind, rec.id)
            return self._handle(rec)

    async def stats(self) -> dict:
        async with self.session_factory() as session:
            q = select(NotificationJobRecord.status, func.count().label("n")).group_by(NotificationJobRecord.status)
            counts = _empty_stats()
            for row in await session.execute(q):
                counts[JobStatus(row.status).value] = int(row.n)
        return {**counts, "timestamp": utcnow().isoformat()}

    async def _get(self, session: AsyncSession, job_id: str) -> NotificationJobRecord:
        rec = await session.get(NotificationJobRecord, job_id)
        if not rec:
            raise NotFound(f"No existe el trabajo {job_id}.", code="JOB_NOT_FOUND")
        return rec

    async def retry(self, job_id: str) -> JobHandle:
        async with self.session_factory() as session:
            rec = await self._get(session, job_id)
            if rec.status != JobStatus.FAILED:
                raise InvalidState("Solo se pueden reintentar trabajos fallidos.", code="JOB_NOT_FAILED")
            rec.status = JobStatus.QUEUED
            rec.attempts = 0
            rec.last_error = None
            await session.commit()
            return self._handle(rec)

    async def remove(self, job_id: str) -> None:
        async with self.session_factory() as session:
            rec = await self._get(session, job_id)
            await session.delete(rec)
            await session.commit()

    async def clean(self, status: JobStatus = JobStatus.COMPLETED, grace_seconds: int = 0) -> int:
        if status in (JobStatus.QUEUED, JobStatus.PROCESSING):
            raise ValidationFailed("Solo se limpian trabajos completados o fallidos.", code="INVALID_CLEAN_STATUS")
        cutoff = utcnow() - timedelta(seconds=grace_seconds)
        async with self.session_factory() as session:
            res = await session.execute(
                delete(NotificationJobRecord)
                .where(NotificationJobRecord.status == status, NotificationJobRecord.updated_at <= cutoff)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return res.rowcount or 0

    async def claim(self, limit: int = 10) -> list[tuple[str, NotificationJob]]:
        """Marca hasta ``limit`` trabajos como ``processing`` y los devuelve.

        Además de los ``queued`` recupera los ``processing`` sin novedades en
        ``visibility_timeout`` segundos (el worker que los tomó no terminó).
        """
        cutoff = utcnow() - timedelta(seconds=self.visibility_timeout)
        claimable = or_(
            NotificationJobRecord.status == JobStatus.QUEUED,
            and_(NotificationJobRecord.status == JobStatus.PROCESSING, NotificationJobRecord.updated_at <= cutoff),
        )
        claimed: list[tuple[str, NotificationJob]] = []
        async with self.session_factory() as session:
            rows = (await session.execute(
                select(NotificationJobRecord.id, NotificationJobRecord.payload, NotificationJobRecord.status)
                .where(claimable)
                .order_by(NotificationJobRecord.created_at)
                .limit(limit)
            )).all()
            for job_id, payload, status in rows:
                res = await session.execute(
                    update(NotificationJobRecord)
                    .where(NotificationJobRecord.id == job_id, claimable)
                    .values(status=JobStatus.PROCESSING, updated_at=utcnow())
                    .execution_options(synchronize_session=False)
                )
                if res.rowcount == 1:
                    if status == JobStatus.PROCESSING:
                        logger.warning("[queue] %s quedó en processing; se vuelve a entregar.", job_id)
                    claimed.append((job_id, parse_job(payload)))
            await session.commit()
        return claimed

    async def complete(self, job_id: str) -> None:
        async with self.session_factory() as session:
            rec = await self._get(session, job_id)
            rec.status = JobStatus.COMPLETED
            rec.attempts += 1
            rec.last_error = None
            rec.processed_at = utcnow()
            await session.commit()

    async def fail(self, job_id: str, error: str) -> JobStatus:
        async with self.session_factory() as session:
            rec = await self._get(session, job_id)
            rec.attempts += 1
            rec.last_error = error[:1000]
            rec.status = JobStatus.FAILED if rec.attempts >= self.max_attempts else JobStatus.QUEUED
            await session.commit()
            return rec.status


def build_dispatcher(session_factory: async_sessionmaker[AsyncSession], settings=default_settings) -> NotificationDispatcher:
    backend = settings.NOTIFICATION_BACKEND
    if backend == "log":
        return LoggingDispatcher(max_jobs=settings.LOG_QUEUE_MAX_JOBS)
    if backend == "database":
        return DatabaseDispatcher(
            session_factory, max_attempts=settings.JOB_MAX_ATTEMPTS,
            visibility_timeout=settings.JOB_VISIBILITY_TIMEOUT,
        )
    raise ValueError(f"NOTIFICATION_BACKEND desconocido: {backend!r}")


async def notify(dispatcher: NotificationDispatcher | None, job: NotificationJob, timeout: float | None = None) -> JobHandle | None:
    """Encola sin propagar errores: el fallo se registra y se devuelve ``None``."""
    if dispatcher is None:
        return None
    limit = default_settings.NOTIFY_ENQUEUE_TIMEOUT if timeout is None else timeout
    try:
        return await asyncio.wait_for(dispatcher.enqueue(job), timeout=limit)
    except Exception:
        logger.exception("[notify] No se pudo encolar %s para %s", job.kind, job.recipient.email)
        return None
