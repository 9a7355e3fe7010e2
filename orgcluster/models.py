from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import JSON, Column, Index, Text
from sqlmodel import Field, SQLModel

from orgcluster.services.constants import (
    CLUSTER_RELEASED_STATUSES,
    CLUSTER_STATUS_PENDING,
    INVITATION_STATUS_PENDING,
    JOB_STATUS_QUEUED,
    JOB_STATUS_RUNNING,
    LOW_TIER_INSTANCE_SIZE,
    LOW_TIER_MAX_CONNECTIONS,
    LOW_TIER_STORAGE_LIMIT_MB,
    SECRET_STATUS_ACTIVE,
)
from orgcluster.services.naming import generate_id


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserBase(SQLModel):
    email: str


class UserORM(UserBase, table=True):
    __tablename__ = "user"
    __table_args__ = (
        Index(
            "uq_user_active",
            "email",
            unique=True,
            sqlite_where=Column("deleted_at").is_(None),
            postgresql_where=Column("deleted_at").is_(None),
        ),
    )
    id: str = Field(default_factory=lambda: generate_id("usr"), primary_key=True)
    email: str = Field(nullable=False)
    created_at: datetime = Field(default_factory=utcnow, nullable=False)
    deleted_at: Optional[datetime] = Field(default=None)


class UserCreate(UserBase):
    id: Optional[str] = None


class UserRead(UserBase):
    id: str
    created_at: datetime


class ProvisionRequest(SQLModel):
    cluster_name: Optional[str] = None
    provider: Optional[str] = None
    region: Optional[str] = None
    database_name: Optional[str] = None


class ProvisionedClusterBase(SQLModel):
    organization_id: str
    control_plane_project_id: Optional[str] = None
    control_plane_project_name: Optional[str] = None
    control_plane_cluster_id: Optional[str] = None
    control_plane_cluster_name: Optional[str] = None
    provider: str
    region: str
    instance_size: str = LOW_TIER_INSTANCE_SIZE
    database_name: str
    status: str = CLUSTER_STATUS_PENDING
    status_message: Optional[str] = None
    secret_ref: Optional[str] = None
    invitation_ref: Optional[str] = None
    database_username: Optional[str] = None
    storage_limit_mb: int = LOW_TIER_STORAGE_LIMIT_MB
    max_connections: int = LOW_TIER_MAX_CONNECTIONS
    created_by: Optional[str] = None
    provisioning_started_at: Optional[datetime] = None
    provisioning_completed_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None


class ProvisionedClusterORM(ProvisionedClusterBase, table=True):
    __tablename__ = "provisioned_cluster"
    __table_args__ = (
        Index(
            "uq_provisioned_cluster_active_org",
            "organization_id",
            unique=True,
            sqlite_where=Column("status").not_in(CLUSTER_RELEASED_STATUSES),
            postgresql_where=Column("status").not_in(CLUSTER_RELEASED_STATUSES),
        ),
    )

    cluster_id: str = Field(default_factory=lambda: generate_id("cluster"), primary_key=True)
    organization_id: str = Field(index=True)
    status: str = Field(default=CLUSTER_STATUS_PENDING, nullable=False, index=True)
    status_message: Optional[str] = Field(default=None, sa_column=Column(Text(), nullable=True))
    created_at: datetime = Field(default_factory=utcnow, nullable=False)
    updated_at: datetime = Field(default_factory=utcnow, nullable=False)


class ProvisionedClusterRead(ProvisionedClusterBase):
    cluster_id: str
    created_at: datetime
    updated_at: datetime


class ProvisioningStatusRead(SQLModel):
    status: str
    message: Optional[str] = None
    secret_ref: Optional[str] = None


class ClusterInvitationBase(SQLModel):
    organization_id: str
    control_plane_project_id: str
    control_plane_invitation_id: str
    user_id: Optional[str] = None
    email: str
    role: str
    status: str = INVITATION_STATUS_PENDING
    expires_at: Optional[datetime] = None
    last_checked_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None


class ClusterInvitationORM(ClusterInvitationBase, table=True):
    __tablename__ = "cluster_invitation"

    invitation_id: str = Field(default_factory=lambda: generate_id("inv"), primary_key=True)
    organization_id: str = Field(index=True)
    email: str = Field(index=True)
    status: str = Field(default=INVITATION_STATUS_PENDING, nullable=False, index=True)
    created_at: datetime = Field(default_factory=utcnow, nullable=False)


class ClusterInvitationRead(ClusterInvitationBase):
    invitation_id: str
    created_at: datetime


class StoredSecretORM(SQLModel, table=True):
    __tablename__ = "stored_secret"

    secret_ref: str = Field(default_factory=lambda: generate_id("sec"), primary_key=True)
    organization_id: str = Field(index=True)
    name: str
    description: Optional[str] = None
    ciphertext: str = Field(sa_column=Column(Text(), nullable=False))
    status: str = Field(default=SECRET_STATUS_ACTIVE, nullable=False, index=True)
    created_at: datetime = Field(default_factory=utcnow, nullable=False)
    deleted_at: Optional[datetime] = Field(default=None)


class ProvisioningJobBase(SQLModel):
    organization_id: str
    user_id: str
    options_json: Optional[dict[str, Any]] = None
    status: str = Field(default=JOB_STATUS_QUEUED)
    run_after: datetime = Field(default_factory=utcnow, nullable=False)
    attempt: int = Field(default=0, nullable=False)
    locked_by: Optional[str] = None
    locked_at: Optional[datetime] = None
    last_error: Optional[str] = None
    cluster_id: Optional[str] = None


class ProvisioningJobORM(ProvisioningJobBase, table=True):
    __tablename__ = "provisioning_job"
    __table_args__ = (
        Index(
            "uq_open_provisioning_job_per_org",
            "organization_id",
            unique=True,
            sqlite_where=Column("status").in_((JOB_STATUS_QUEUED, JOB_STATUS_RUNNING)),
            postgresql_where=Column("status").in_((JOB_STATUS_QUEUED, JOB_STATUS_RUNNING)),
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    organization_id: str = Field(index=True)
    options_json: Optional[dict[str, Any]] = Field(default=None, sa_column=Column(JSON, nullable=True))
    last_error: Optional[str] = Field(default=None, sa_column=Column(Text(), nullable=True))
    created_at: datetime = Field(default_factory=utcnow, nullable=False)
    updated_at: datetime = Field(default_factory=utcnow, nullable=False)


class ProvisioningJobRead(ProvisioningJobBase):
    id: int
    created_at: datetime
    updated_at: datetime
