from __future__ import annotations

from datetime import datetime
import logging
from typing import TYPE_CHECKING, Any

from sqlalchemy import bindparam, text
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from orgcluster.models import ProvisioningJobORM, ProvisioningJobRead, ProvisionRequest, utcnow
from orgcluster.services.constants import (
    JOB_STATUS_DONE,
    JOB_STATUS_FAILED,
    JOB_STATUS_QUEUED,
    JOB_STATUS_RUNNING,
)
from orgcluster.services.errors import NotFoundException, ProvisioningInProgressException

if TYPE_CHECKING:
    from orgcluster.services.provisioning import ProvisioningOrchestrator

logger = logging.getLogger(__name__)


def enqueue_job(
    session: Session,
    *,
    organization_id: str,
    user_id: str,
    options: dict[str, Any] | None = None,
    run_after: datetime | None = None,
    cluster_id: str | None = None,
) -> ProvisioningJobORM:
    """Create a queued provisioning job in the current transaction."""
    job = ProvisioningJobORM(
        organization_id=organization_id,
        user_id=user_id,
        options_json=options or None,
        run_after=run_after or utcnow(),
        status=JOB_STATUS_QUEUED,
        cluster_id=cluster_id,
    )
    try:
        session.add(job)
        session.flush()
        logger.info(
            "Enqueued provisioning job id=%s organization_id=%s run_after=%s",
            job.id,
            organization_id,
            job.run_after,
        )
    except IntegrityError as exc:
        logger.warning(
            "Duplicate open provisioning job for organization_id=%s; rejecting enqueue",
            organization_id,
        )
        raise ProvisioningInProgressException("A provisioning job is already queued or running") from exc
    return job


def list_jobs(
    session: Session,
    *,
    status: str | None = None,
    organization_id: str | None = None,
    limit: int = 100,
) -> list[ProvisioningJobORM]:
    stmt = select(ProvisioningJobORM)
    if status is not None:
        stmt = stmt.where(ProvisioningJobORM.status == status)
    if organization_id is not None:
        stmt = stmt.where(ProvisioningJobORM.organization_id == organization_id)
    stmt = stmt.order_by(ProvisioningJobORM.run_after, ProvisioningJobORM.id).limit(limit)
    return list(session.exec(stmt).all())


def get_job(session: Session, *, job_id: int) -> ProvisioningJobRead:
    if not (job := session.get(ProvisioningJobORM, job_id)):
        raise NotFoundException("Job not found")
    return ProvisioningJobRead.model_validate(job)


def _claim_next_job_postgres(session: Session, *, worker_id: str) -> ProvisioningJobORM | None:
    """Claim the next runnable job using Postgres row locking with SKIP LOCKED."""
    now = utcnow()
    stmt = (
        select(ProvisioningJobORM)
        .where(
            ProvisioningJobORM.status == JOB_STATUS_QUEUED,
            ProvisioningJobORM.run_after <= now,
        )
        .order_by(ProvisioningJobORM.run_after, ProvisioningJobORM.id)
        .with_for_update(skip_locked=True)
        .limit(1)
    )
    job = session.exec(stmt).first()
    if job is None:
        logger.debug("No runnable provisioning job available for worker_id=%s", worker_id)
        return None
    job.status = JOB_STATUS_RUNNING
    job.attempt += 1
    job.locked_by = worker_id
    job.locked_at = now
    job.updated_at = now
    session.add(job)
    session.commit()
    session.refresh(job)
    logger.info(
        "Claimed provisioning job id=%s organization_id=%s worker_id=%s (postgres)",
        job.id,
        job.organization_id,
        worker_id,
    )
    return job


def _claim_next_job_sqlite(session: Session, *, worker_id: str) -> ProvisioningJobORM | None:
    """Claim the next runnable job atomically with UPDATE ... RETURNING."""
    now = utcnow()
    stmt = text(
        """
        UPDATE provisioning_job
        SET status = :running_status,
            attempt = attempt + 1,
            locked_by = :worker_id,
            locked_at = :now_ts,
            updated_at = :now_ts
        WHERE id = (
            SELECT id
            FROM provisioning_job
            WHERE status = :queued_status
              AND run_after <= :now_ts
            ORDER BY run_after, id
            LIMIT 1
        )
        RETURNING id
        """
    ).bindparams(bindparam("now_ts", type_=ProvisioningJobORM.__table__.c.run_after.type))
    row = session.execute(
        stmt,
        {
            "running_status": JOB_STATUS_RUNNING,
            "queued_status": JOB_STATUS_QUEUED,
            "worker_id": worker_id,
            "now_ts": now,
        },
    ).first()
    if row is None:
        session.commit()
        logger.debug("No runnable provisioning job available for worker_id=%s", worker_id)
        return None
    job_id = int(row[0])
    session.commit()
    job = session.get(ProvisioningJobORM, job_id)
    if job is not None:
        session.refresh(job)
        logger.info(
            "Claimed provisioning job id=%s organization_id=%s worker_id=%s (sqlite)",
            job.id,
            job.organization_id,
            worker_id,
        )
    return job


def claim_next_job(session: Session, *, worker_id: str) -> ProvisioningJobORM | None:
    """Claim one runnable job for a worker, using a dialect-appropriate strategy."""
    if session.get_bind().dialect.name == "sqlite":
        return _claim_next_job_sqlite(session, worker_id=worker_id)
    return _claim_next_job_postgres(session, worker_id=worker_id)


def _finish_job(
    session: Session,
    *,
    job_id: int,
    status: str,
    error: str | None,
    cluster_id: str | None,
) -> ProvisioningJobORM:
    job = session.get(ProvisioningJobORM, job_id)
    if job is None:
        raise NotFoundException("Job not found")
    job.status = status
    job.last_error = error
    job.cluster_id = cluster_id or job.cluster_id
    job.locked_by = None
    job.locked_at = None
    job.updated_at = utcnow()
    session.add(job)
    session.commit()
    session.refresh(job)
    return job


def mark_job_done(session: Session, *, job_id: int, cluster_id: str | None = None) -> ProvisioningJobORM:
    job = _finish_job(session, job_id=job_id, status=JOB_STATUS_DONE, error=None, cluster_id=cluster_id)
    logger.info("Marked provisioning job id=%s as done cluster_id=%s", job_id, job.cluster_id)
    return job


def mark_job_failed(
    session: Session,
    *,
    job_id: int,
    error: str,
    cluster_id: str | None = None,
) -> ProvisioningJobORM:
    job = _finish_job(session, job_id=job_id, status=JOB_STATUS_FAILED, error=error, cluster_id=cluster_id)
    logger.warning("Marked provisioning job id=%s as failed: %s", job_id, error)
    return job


def run_next_job(
    session: Session,
    *,
    worker_id: str,
    orchestrator: ProvisioningOrchestrator,
) -> ProvisioningJobORM | None:
    """Claim one queued job and run the provisioning it describes to completion.

    A job queued together with its ``pending`` record runs that record; a bare
    job starts a fresh attempt. Returns the finished job, or ``None`` when the
    queue is empty.
    """
    job = claim_next_job(session, worker_id=worker_id)
    if job is None:
        return None

    job_id = job.id
    try:
        if job.cluster_id:
            result = orchestrator.run_queued(job.cluster_id, job.user_id)
        else:
            options = ProvisionRequest.model_validate(job.options_json or {})
            result = orchestrator.provision(job.organization_id, job.user_id, options)
    except Exception as exc:
        logger.exception("Provisioning job id=%s crashed", job_id)
        session.rollback()
        return mark_job_failed(session, job_id=job_id, error=str(exc))

    if result.success:
        return mark_job_done(session, job_id=job_id, cluster_id=result.cluster_id)
    return mark_job_failed(
        session,
        job_id=job_id,
        error=f"{result.error_code}: {result.error}",
        cluster_id=result.cluster_id,
    )
