from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from orgcluster.models import ProvisionedClusterORM, utcnow
from orgcluster.services.constants import (
    CLUSTER_RELEASED_STATUSES,
    CLUSTER_STATUS_DELETED,
    CLUSTER_STATUS_FAILED,
)
from orgcluster.services.errors import AlreadyProvisionedException, NotFoundException

logger = logging.getLogger(__name__)


class StateRepository:
    """Persistence for ``ProvisionedCluster`` records.

    The orchestrator is the only writer. Records are never removed; teardown is
    recorded as ``status=deleted``.
    """

    def __init__(self, session: Session) -> None:
        self._session = session

    def find_active_by_org(self, organization_id: str) -> ProvisionedClusterORM | None:
        """Return the record that blocks a new attempt (anything not failed/deleted)."""
        stmt = (
            select(ProvisionedClusterORM)
            .where(
                ProvisionedClusterORM.organization_id == organization_id,
                ProvisionedClusterORM.status.not_in(CLUSTER_RELEASED_STATUSES),
            )
            .order_by(ProvisionedClusterORM.created_at.desc())
        )
        return self._session.exec(stmt).first()

    def find_latest_by_org(self, organization_id: str) -> ProvisionedClusterORM | None:
        """Return the newest record that has not been torn down, failed ones included."""
        stmt = (
            select(ProvisionedClusterORM)
            .where(
                ProvisionedClusterORM.organization_id == organization_id,
                ProvisionedClusterORM.status != CLUSTER_STATUS_DELETED,
            )
            .order_by(ProvisionedClusterORM.created_at.desc())
        )
        return self._session.exec(stmt).first()

    def get(self, cluster_id: str) -> ProvisionedClusterORM:
        if not (record := self._session.get(ProvisionedClusterORM, cluster_id)):
            raise NotFoundException("Provisioned cluster not found")
        return record

    def insert(self, record: ProvisionedClusterORM) -> ProvisionedClusterORM:
        self._session.add(record)
        try:
            self._session.commit()
        except IntegrityError as exc:
            self._session.rollback()
            logger.warning(
                "Rejected second active cluster record for organization_id=%s",
                record.organization_id,
            )
            raise AlreadyProvisionedException("Organization already has a provisioned cluster") from exc
        self._session.refresh(record)
        logger.info(
            "Created cluster record cluster_id=%s organization_id=%s status=%s",
            record.cluster_id,
            record.organization_id,
            record.status,
        )
        return record

    def update_status(self, cluster_id: str, status: str, **fields: Any) -> ProvisionedClusterORM:
        record = self.get(cluster_id)
        for name, value in fields.items():
            if not hasattr(record, name):
                raise AttributeError(f"ProvisionedCluster has no field {name!r}")
            setattr(record, name, value)
        record.status = status
        record.updated_at = utcnow()
        self._session.add(record)
        self._session.commit()
        self._session.refresh(record)
        logger.debug(
            "Persisted cluster_id=%s status=%s fields=%s",
            cluster_id,
            status,
            sorted(fields),
        )
        return record

    def find_all(self, *, limit: int = 500) -> list[ProvisionedClusterORM]:
        stmt = select(ProvisionedClusterORM).order_by(ProvisionedClusterORM.created_at.desc()).limit(limit)
        return list(self._session.exec(stmt).all())

    def supersede_failed(self, organization_id: str) -> list[str]:
        """Retire the org's earlier failed attempts once a new one is recorded."""
        stale = self._session.exec(
            select(ProvisionedClusterORM).where(
                ProvisionedClusterORM.organization_id == organization_id,
                ProvisionedClusterORM.status == CLUSTER_STATUS_FAILED,
            )
        ).all()
        cluster_ids = [record.cluster_id for record in stale]
        now = utcnow()
        for record in stale:
            record.status = CLUSTER_STATUS_DELETED
            record.status_message = "Superseded by a new provisioning attempt"
            record.deleted_at = now
            record.updated_at = now
            self._session.add(record)
        self._session.commit()
        if cluster_ids:
            logger.info(
                "Superseded failed cluster records organization_id=%s cluster_ids=%s",
                organization_id,
                cluster_ids,
            )
        return cluster_ids
