from __future__ import annotations

from dataclasses import dataclass, field
import logging
import time
from typing import Any, Callable, Iterator
from contextlib import contextmanager

from sqlmodel import Session

from orgcluster.control_plane import (
    CLUSTER_STATE_IDLE,
    ERROR_CODE_TIMEOUT,
    ERROR_CODE_USER_ALREADY_EXISTS,
    ApiResult,
    ControlPlaneClient,
)
from orgcluster.models import (
    ClusterInvitationRead,
    ProvisionedClusterORM,
    ProvisionedClusterRead,
    ProvisioningStatusRead,
    ProvisionRequest,
    utcnow,
)
from orgcluster.services import jobs as job_service
from orgcluster.services import users as user_service
from orgcluster.services.bootstrap import DatabaseInitializer
from orgcluster.services.constants import (
    CLUSTER_RELEASED_STATUSES,
    CLUSTER_STATUS_CONFIGURING_NETWORK,
    CLUSTER_STATUS_CREATING_CLUSTER,
    CLUSTER_STATUS_CREATING_PROJECT,
    CLUSTER_STATUS_CREATING_USER,
    CLUSTER_STATUS_DELETED,
    CLUSTER_STATUS_FAILED,
    CLUSTER_STATUS_PENDING,
    CLUSTER_STATUS_READY,
    CONSOLE_ROLE_READ_WRITE,
    ERROR_ALREADY_PROVISIONED,
    ERROR_INVALID_STATE,
    ERROR_NOT_CONFIGURED,
    ERROR_NOT_FOUND,
    ERROR_PARTIAL_CLEANUP,
    ERROR_TIMEOUT,
    ERROR_UPSTREAM,
    INVITATION_STATUS_ACCEPTED,
    INVITATION_STATUS_EXPIRED,
    INVITATION_STATUS_PENDING,
    REDACTED,
    STEP_BOOTSTRAP,
    STEP_CLUSTER,
    STEP_DATABASE_USER,
    STEP_INVITATION,
    STEP_NETWORK,
    STEP_PROJECT,
    STEP_READY,
    STEP_SECRET,
)
from orgcluster.services.errors import (
    AlreadyProvisionedException,
    NotConfiguredException,
    NotFoundException,
    ProvisioningInProgressException,
    ProvisioningTimeout,
    SecretVaultError,
    UpstreamError,
)
from orgcluster.services.invitations import InvitationService, console_url
from orgcluster.services.naming import (
    build_connection_string,
    cluster_name_for_org,
    database_username_for_org,
    generate_password,
    project_name_for_org,
)
from orgcluster.services.repository import StateRepository
from orgcluster.services.vault import SecretVault, build_secret_vault
from orgcluster.settings import Settings, get_settings

logger = logging.getLogger(__name__)

SECRET_NAME = "default-database"
NETWORK_COMMENT = "orgcluster server"
OPEN_NETWORK_COMMENT = "orgcluster - allow all (provisioned cluster)"


@dataclass(frozen=True)
class ProvisioningResult:
    success: bool
    status: str
    cluster_id: str | None = None
    secret_ref: str | None = None
    error: str | None = None
    error_code: str | None = None
    job_id: int | None = None
    # Always REDACTED on success; the plaintext never leaves the orchestrator.
    connection_string: str | None = None


@dataclass(frozen=True)
class DeprovisionResult:
    success: bool
    cluster_id: str | None = None
    error: str | None = None
    error_code: str | None = None


@dataclass(frozen=True)
class RepairResult:
    success: bool
    secret_ref: str | None = None
    collections_initialized: list[str] = field(default_factory=list)
    error: str | None = None
    error_code: str | None = None


@dataclass(frozen=True)
class InvitationResult:
    success: bool
    status: str | None = None
    invitation_id: str | None = None
    already_pending: bool = False
    console_url: str | None = None
    error: str | None = None
    error_code: str | None = None


@dataclass(frozen=True)
class InvitationOverview:
    organization_id: str
    cluster_status: str | None
    console_url: str | None
    invitations: list[ClusterInvitationRead]


@dataclass(frozen=True)
class ClusterUsage:
    cluster_id: str
    storage_limit_mb: int
    max_connections: int
    measurements: list[dict[str, Any]]


@dataclass(frozen=True)
class _Credential:
    username: str
    password: str


def _upstream_error(message: str, result: ApiResult) -> UpstreamError:
    detail = result.error_detail or "no detail"
    status = result.error.status if result.error else None
    return UpstreamError(f"{message}: {detail}", code=result.error_code, status=status)


class ProvisioningOrchestrator:
    """Drive the control plane to give an organization its own database cluster.

    ``provision`` walks the record through ``pending → creating_project →
    creating_cluster → creating_user → configuring_network → ready``. The
    status is persisted before each step's external calls so an interrupted
    attempt shows where it stopped, and every step looks for an existing
    upstream resource before creating one so ``resume`` can re-run the steps
    against the same record without duplicating infrastructure.

    ``deprovision`` undoes the steps in reverse order and always ends with the
    record marked ``deleted``; individual cleanup failures are collected into a
    warning instead of being raised.
    """

    def __init__(
        self,
        *,
        session: Session,
        client: ControlPlaneClient,
        settings: Settings,
        invitations: InvitationService | None = None,
        initializer: DatabaseInitializer | None = None,
        sleep: Callable[[float], None] = time.sleep,
        vault: SecretVault | None = None,
        vault_factory: Callable[[], SecretVault] | None = None,
    ) -> None:
        self._session = session
        self._client = client
        self._vault = vault
        self._vault_factory = vault_factory
        self._settings = settings
        self._repository = StateRepository(session)
        self._invitations = invitations or InvitationService(
            session=session,
            client=client,
            org_container_id=settings.org_container_id,
        )
        self._initializer = initializer or DatabaseInitializer()
        self._sleep = sleep

    @property
    def vault(self) -> SecretVault:
        """The secret vault, built on first use so reads work without vault configuration."""
        if self._vault is None:
            if self._vault_factory is None:
                raise NotConfiguredException("No secret vault configured")
            self._vault = self._vault_factory()
        return self._vault

    def is_auto_provisioning_available(self) -> bool:
        return self._settings.is_auto_provisioning_available and self._client.is_configured()

    def _control_plane_error(self) -> str | None:
        if not self._client.is_configured():
            return "Control plane API not configured. Set ATLAS_PUBLIC_KEY and ATLAS_PRIVATE_KEY."
        if not self._settings.org_container_id:
            return "Control plane organization id not configured. Set ATLAS_ORG_ID."
        return None

    def _not_configured_error(self) -> str | None:
        if error := self._control_plane_error():
            return error
        try:
            self.vault
        except NotConfiguredException as exc:
            return str(exc)
        return None

    # Provision

    def _new_record(self, organization_id: str, user_id: str, options: ProvisionRequest) -> ProvisionedClusterORM:
        return ProvisionedClusterORM(
            organization_id=organization_id,
            control_plane_project_name=project_name_for_org(organization_id),
            control_plane_cluster_name=options.cluster_name or cluster_name_for_org(organization_id),
            provider=options.provider or self._settings.default_provider,
            region=options.region or self._settings.default_region,
            database_name=options.database_name or self._settings.default_database_name,
            status=CLUSTER_STATUS_PENDING,
            created_by=user_id,
            provisioning_started_at=utcnow(),
        )

    def provision(
        self,
        organization_id: str,
        user_id: str,
        options: ProvisionRequest | None = None,
    ) -> ProvisioningResult:
        logger.info("Provisioning requested organization_id=%s user_id=%s", organization_id, user_id)
        if refusal := self._refuse_new_attempt(organization_id):
            return refusal

        record = self._new_record(organization_id, user_id, options or ProvisionRequest())
        try:
            record = self._repository.insert(record)
        except AlreadyProvisionedException:
            existing = self._repository.find_active_by_org(organization_id)
            return self._already_provisioned(existing)
        self._repository.supersede_failed(organization_id)

        return self._run(record, user_id)

    def provision_in_background(
        self,
        organization_id: str,
        user_id: str,
        options: ProvisionRequest | None = None,
    ) -> ProvisioningResult:
        """Record a ``pending`` attempt, queue a job to run it and acknowledge immediately.

        The record and the job are committed together, so status polling sees
        ``pending`` as soon as the call returns and a concurrent request for the
        same organization is refused until the job finishes.
        """
        if refusal := self._refuse_new_attempt(organization_id):
            return refusal

        options = options or ProvisionRequest()
        record = self._new_record(organization_id, user_id, options)
        try:
            job = job_service.enqueue_job(
                self._session,
                organization_id=organization_id,
                user_id=user_id,
                options=options.model_dump(exclude_none=True),
                cluster_id=record.cluster_id,
            )
            record = self._repository.insert(record)
        except ProvisioningInProgressException as exc:
            self._session.rollback()
            return ProvisioningResult(
                success=False,
                status=CLUSTER_STATUS_PENDING,
                error=str(exc),
                error_code=ERROR_ALREADY_PROVISIONED,
            )
        except AlreadyProvisionedException:
            existing = self._repository.find_active_by_org(organization_id)
            return self._already_provisioned(existing)
        self._repository.supersede_failed(organization_id)
        logger.info(
            "Queued background provisioning organization_id=%s cluster_id=%s job_id=%s",
            organization_id,
            record.cluster_id,
            job.id,
        )
        return ProvisioningResult(
            success=True,
            status=CLUSTER_STATUS_PENDING,
            cluster_id=record.cluster_id,
            job_id=job.id,
        )

    def run_queued(self, cluster_id: str, user_id: str | None) -> ProvisioningResult:
        """Run the attempt a background job was queued for."""
        if error := self._not_configured_error():
            return ProvisioningResult(
                success=False, status=CLUSTER_STATUS_FAILED, error=error, error_code=ERROR_NOT_CONFIGURED
            )
        record = self._repository.get(cluster_id)
        if record.status in CLUSTER_RELEASED_STATUSES or record.status == CLUSTER_STATUS_READY:
            logger.warning(
                "Queued provisioning no longer applicable cluster_id=%s status=%s",
                cluster_id,
                record.status,
            )
            return ProvisioningResult(
                success=False,
                status=record.status,
                cluster_id=cluster_id,
                error=f"Cluster is {record.status}",
                error_code=ERROR_INVALID_STATE,
            )
        return self._run(record, user_id)

    def resume(self, organization_id: str, actor_id: str) -> ProvisioningResult:
        """Continue an in-flight attempt, e.g. after a readiness timeout or a crash."""
        if error := self._not_configured_error():
            return ProvisioningResult(
                success=False, status=CLUSTER_STATUS_FAILED, error=error, error_code=ERROR_NOT_CONFIGURED
            )
        record = self._repository.find_active_by_org(organization_id)
        if record is None:
            return ProvisioningResult(
                success=False,
                status=CLUSTER_STATUS_FAILED,
                error="No in-progress provisioning found",
                error_code=ERROR_NOT_FOUND,
            )
        if record.status == CLUSTER_STATUS_READY:
            return ProvisioningResult(
                success=False,
                status=record.status,
                cluster_id=record.cluster_id,
                secret_ref=record.secret_ref,
                error="Cluster is already ready",
                error_code=ERROR_INVALID_STATE,
            )
        logger.info(
            "Resuming provisioning cluster_id=%s status=%s actor_id=%s",
            record.cluster_id,
            record.status,
            actor_id,
        )
        return self._run(record, record.created_by or actor_id)

    def _refuse_new_attempt(self, organization_id: str) -> ProvisioningResult | None:
        if error := self._not_configured_error():
            logger.error("Provisioning unavailable organization_id=%s: %s", organization_id, error)
            return ProvisioningResult(
                success=False, status=CLUSTER_STATUS_FAILED, error=error, error_code=ERROR_NOT_CONFIGURED
            )
        existing = self._repository.find_active_by_org(organization_id)
        if existing is not None:
            return self._already_provisioned(existing)
        return None

    @staticmethod
    def _already_provisioned(existing: ProvisionedClusterORM | None) -> ProvisioningResult:
        logger.info(
            "Organization already provisioned cluster_id=%s status=%s",
            existing.cluster_id if existing else None,
            existing.status if existing else None,
        )
        return ProvisioningResult(
            success=False,
            status=existing.status if existing else CLUSTER_STATUS_PENDING,
            cluster_id=existing.cluster_id if existing else None,
            secret_ref=existing.secret_ref if existing else None,
            error="Organization already has a provisioned cluster",
            error_code=ERROR_ALREADY_PROVISIONED,
        )

    def _run(self, record: ProvisionedClusterORM, user_id: str | None) -> ProvisioningResult:
        cluster_id = record.cluster_id
        try:
            record = self._ensure_project(record)
            record, srv_address = self._ensure_cluster(record)
            record, credential = self._ensure_database_user(record)
            record = self._configure_network(record)
            record, connection_string = self._store_secret(record, srv_address, credential)
        except ProvisioningTimeout as exc:
            self._session.rollback()
            record = self._repository.get(cluster_id)
            # The cluster may still come up; leave the record where it stopped.
            record = self._repository.update_status(cluster_id, record.status, status_message=str(exc))
            logger.warning("Provisioning timed out cluster_id=%s step=%s: %s", cluster_id, STEP_CLUSTER, exc)
            return ProvisioningResult(
                success=False,
                status=record.status,
                cluster_id=cluster_id,
                error=str(exc),
                error_code=ERROR_TIMEOUT,
            )
        except Exception as exc:
            self._session.rollback()
            logger.exception("Provisioning failed cluster_id=%s", cluster_id)
            self._repository.update_status(cluster_id, CLUSTER_STATUS_FAILED, status_message=str(exc))
            return ProvisioningResult(
                success=False,
                status=CLUSTER_STATUS_FAILED,
                cluster_id=cluster_id,
                error=str(exc),
                error_code=ERROR_UPSTREAM,
            )

        invitation_ref = self._send_invitation(record, user_id)
        self._bootstrap(record, connection_string)

        record = self._repository.update_status(
            cluster_id,
            CLUSTER_STATUS_READY,
            invitation_ref=invitation_ref or record.invitation_ref,
            provisioning_completed_at=utcnow(),
            status_message="Cluster provisioned",
        )
        logger.info(
            "Provisioning complete cluster_id=%s step=%s secret_ref=%s",
            cluster_id,
            STEP_READY,
            record.secret_ref,
        )
        return ProvisioningResult(
            success=True,
            status=CLUSTER_STATUS_READY,
            cluster_id=cluster_id,
            secret_ref=record.secret_ref,
            connection_string=REDACTED,
        )

    def _enter(self, record: ProvisionedClusterORM, status: str, step: str) -> ProvisionedClusterORM:
        logger.info("Entering step cluster_id=%s step=%s status=%s", record.cluster_id, step, status)
        return self._repository.update_status(record.cluster_id, status, status_message=None)

    # Required steps

    def _ensure_project(self, record: ProvisionedClusterORM) -> ProvisionedClusterORM:
        record = self._enter(record, CLUSTER_STATUS_CREATING_PROJECT, STEP_PROJECT)
        project_id = self._find_project(record)
        if project_id:
            logger.info(
                "Reusing project cluster_id=%s step=%s project_id=%s", record.cluster_id, STEP_PROJECT, project_id
            )
        else:
            created = self._client.create_project(
                name=record.control_plane_project_name,
                org_id=self._settings.org_container_id,
            )
            if not created.success:
                raise _upstream_error("Failed to create project", created)
            project_id = (created.data or {}).get("id") or (created.data or {}).get("groupId")
            if not project_id:
                raise UpstreamError("Project created but no project id returned")
            logger.info(
                "Created project cluster_id=%s step=%s project_id=%s", record.cluster_id, STEP_PROJECT, project_id
            )
        return self._repository.update_status(
            record.cluster_id,
            CLUSTER_STATUS_CREATING_PROJECT,
            control_plane_project_id=project_id,
        )

    def _find_project(self, record: ProvisionedClusterORM) -> str | None:
        if record.control_plane_project_id:
            known = self._client.get_project(record.control_plane_project_id)
            if known.success:
                return record.control_plane_project_id
            if not known.error.not_found:
                raise _upstream_error("Failed to look up project", known)
        lookup = self._client.get_project_by_name(
            org_id=self._settings.org_container_id,
            name=record.control_plane_project_name,
        )
        if not lookup.success:
            # Creation below is rejected upstream if the name is taken.
            logger.warning(
                "Project lookup failed cluster_id=%s step=%s code=%s",
                record.cluster_id,
                STEP_PROJECT,
                lookup.error_code,
            )
            return None
        if lookup.data:
            return lookup.data.get("id") or lookup.data.get("groupId")
        return None

    def _ensure_cluster(self, record: ProvisionedClusterORM) -> tuple[ProvisionedClusterORM, str]:
        record = self._enter(record, CLUSTER_STATUS_CREATING_CLUSTER, STEP_CLUSTER)
        project_id = record.control_plane_project_id
        listed = self._client.list_clusters(project_id)
        if not listed.success:
            raise _upstream_error("Failed to list clusters", listed)

        clusters = listed.data or []
        if clusters:
            # Low-tier clusters are limited to one per project.
            existing = next(
                (c for c in clusters if c.get("name") == record.control_plane_cluster_name),
                clusters[0],
            )
            record = self._repository.update_status(
                record.cluster_id,
                CLUSTER_STATUS_CREATING_CLUSTER,
                control_plane_cluster_name=existing.get("name"),
                control_plane_cluster_id=existing.get("id"),
            )
            logger.info(
                "Reusing cluster cluster_id=%s step=%s name=%s state=%s",
                record.cluster_id,
                STEP_CLUSTER,
                existing.get("name"),
                existing.get("stateName"),
            )
            details = existing if existing.get("stateName") == CLUSTER_STATE_IDLE else self._wait_until_ready(record)
        else:
            created = self._client.create_cluster(
                project_id,
                name=record.control_plane_cluster_name,
                provider=record.provider,
                region=record.region,
                instance_size=record.instance_size,
            )
            if not created.success or not created.data:
                raise _upstream_error("Failed to create cluster", created)
            record = self._repository.update_status(
                record.cluster_id,
                CLUSTER_STATUS_CREATING_CLUSTER,
                control_plane_cluster_id=created.data.get("id"),
            )
            logger.info(
                "Created cluster cluster_id=%s step=%s name=%s",
                record.cluster_id,
                STEP_CLUSTER,
                record.control_plane_cluster_name,
            )
            details = self._wait_until_ready(record)

        srv_address = (details.get("connectionStrings") or {}).get("standardSrv")
        if not srv_address:
            raise UpstreamError("Cluster ready but no connection string available")
        return record, srv_address

    def _wait_until_ready(self, record: ProvisionedClusterORM) -> dict[str, Any]:
        ready = self._client.wait_for_cluster_ready(
            record.control_plane_project_id,
            record.control_plane_cluster_name,
            timeout_sec=self._settings.cluster_ready_timeout_sec,
            poll_interval_sec=self._settings.cluster_poll_interval_sec,
        )
        if ready.success and ready.data:
            return ready.data
        if ready.error_code == ERROR_CODE_TIMEOUT:
            raise ProvisioningTimeout(
                ready.error_detail or "Cluster did not become ready",
                code=ready.error_code,
                status=ready.error.status,
            )
        raise _upstream_error("Cluster did not become ready", ready)

    def _upsert_database_user(
        self,
        project_id: str,
        *,
        organization_id: str,
        cluster_name: str,
        database_name: str,
    ) -> _Credential:
        """Create the scoped credential, or rotate it in place when it already exists."""
        credential = _Credential(username=database_username_for_org(organization_id), password=generate_password())
        roles = [{"roleName": "readWrite", "databaseName": database_name}]
        scopes = [{"name": cluster_name, "type": "CLUSTER"}]
        created = self._client.create_database_user(
            project_id,
            username=credential.username,
            password=credential.password,
            roles=roles,
            scopes=scopes,
        )
        if created.success:
            return credential
        if created.error_code != ERROR_CODE_USER_ALREADY_EXISTS:
            raise _upstream_error("Failed to create database user", created)

        logger.info("Database user exists, rotating in place username=%s", credential.username)
        updated = self._client.update_database_user(
            project_id,
            username=credential.username,
            password=credential.password,
            roles=roles,
            scopes=scopes,
        )
        if not updated.success:
            raise _upstream_error("Failed to update existing database user", updated)
        return credential

    def _ensure_database_user(self, record: ProvisionedClusterORM) -> tuple[ProvisionedClusterORM, _Credential]:
        record = self._enter(record, CLUSTER_STATUS_CREATING_USER, STEP_DATABASE_USER)
        credential = self._upsert_database_user(
            record.control_plane_project_id,
            organization_id=record.organization_id,
            cluster_name=record.control_plane_cluster_name,
            database_name=record.database_name,
        )
        record = self._repository.update_status(
            record.cluster_id,
            CLUSTER_STATUS_CREATING_USER,
            database_username=credential.username,
        )
        return record, credential

    def _configure_network(self, record: ProvisionedClusterORM) -> ProvisionedClusterORM:
        record = self._enter(record, CLUSTER_STATUS_CONFIGURING_NETWORK, STEP_NETWORK)
        project_id = record.control_plane_project_id
        if self._settings.server_ips:
            entries = [
                {"cidrBlock" if "/" in ip else "ipAddress": ip, "comment": NETWORK_COMMENT}
                for ip in self._settings.server_ips
            ]
            result = self._client.add_access_list_entries(project_id, entries)
        else:
            logger.warning(
                "No server IP allow-list configured; opening project to 0.0.0.0/0 cluster_id=%s step=%s",
                record.cluster_id,
                STEP_NETWORK,
            )
            result = self._client.allow_all_ips(project_id, comment=OPEN_NETWORK_COMMENT)
        if not result.success:
            raise _upstream_error("Failed to configure network access", result)
        return record

    def _store_secret(
        self,
        record: ProvisionedClusterORM,
        srv_address: str,
        credential: _Credential,
    ) -> tuple[ProvisionedClusterORM, str]:
        logger.info("Storing connection secret cluster_id=%s step=%s", record.cluster_id, STEP_SECRET)
        connection_string = build_connection_string(
            srv_address,
            credential.username,
            credential.password,
            record.database_name,
        )
        secret_ref = self.vault.store(
            connection_string,
            organization_id=record.organization_id,
            name=SECRET_NAME,
            description=f"Low-tier cluster database provisioned on {utcnow():%Y-%m-%d}",
        )
        previous_ref = record.secret_ref
        record = self._repository.update_status(record.cluster_id, record.status, secret_ref=secret_ref)
        if previous_ref and previous_ref != secret_ref:
            self._discard_secret(previous_ref, record.cluster_id)
        return record, connection_string

    def _discard_secret(self, secret_ref: str, cluster_id: str) -> None:
        try:
            self.vault.delete(secret_ref)
        except SecretVaultError as exc:
            logger.warning(
                "Could not delete superseded secret cluster_id=%s secret_ref=%s: %s", cluster_id, secret_ref, exc
            )

    # Best-effort steps

    def _send_invitation(self, record: ProvisionedClusterORM, user_id: str | None) -> str | None:
        try:
            user = user_service.find_user(self._session, user_id=user_id) if user_id else None
            if user is None or not user.email:
                logger.warning(
                    "No contact email for user_id=%s; skipping invitation cluster_id=%s step=%s",
                    user_id,
                    record.cluster_id,
                    STEP_INVITATION,
                )
                return None
            outcome = self._invitations.invite(
                organization_id=record.organization_id,
                project_id=record.control_plane_project_id,
                email=user.email,
                user_id=user_id,
                role=CONSOLE_ROLE_READ_WRITE,
            )
        except Exception as exc:
            self._session.rollback()
            logger.warning("Invitation failed cluster_id=%s step=%s: %s", record.cluster_id, STEP_INVITATION, exc)
            return None
        if not outcome.success:
            logger.warning(
                "Invitation not sent cluster_id=%s step=%s: %s",
                record.cluster_id,
                STEP_INVITATION,
                outcome.error,
            )
            return None
        return outcome.invitation_id

    def _bootstrap(self, record: ProvisionedClusterORM, connection_string: str) -> list[str]:
        try:
            collections = self._initializer.initialize(connection_string, record.database_name)
        except Exception as exc:
            logger.warning(
                "Database bootstrap failed cluster_id=%s step=%s: %s",
                record.cluster_id,
                STEP_BOOTSTRAP,
                exc,
            )
            return []
        logger.info(
            "Bootstrapped database cluster_id=%s step=%s collections=%s",
            record.cluster_id,
            STEP_BOOTSTRAP,
            collections,
        )
        return collections

    # Deprovision

    def deprovision(self, organization_id: str, actor_id: str) -> DeprovisionResult:
        record = self._repository.find_latest_by_org(organization_id)
        if record is None:
            return DeprovisionResult(success=False, error="No provisioned cluster found", error_code=ERROR_NOT_FOUND)

        cluster_id = record.cluster_id
        logger.info("Deprovisioning cluster_id=%s status=%s actor_id=%s", cluster_id, record.status, actor_id)
        warnings: list[str] = []

        try:
            warnings.extend(self._invitations.cancel_pending_for_org(organization_id))
        except Exception as exc:
            self._session.rollback()
            warnings.append(f"Failed to cancel invitations: {exc}")

        project_id = record.control_plane_project_id
        cluster_name = record.control_plane_cluster_name
        if project_id and cluster_name:
            self._cleanup(warnings, "delete cluster", lambda: self._client.delete_cluster(project_id, cluster_name))
        if project_id:
            # Cluster deletion is asynchronous upstream.
            self._sleep(self._settings.project_settle_delay_sec)
            self._cleanup(warnings, "delete project", lambda: self._client.delete_project(project_id))

        if record.secret_ref:
            try:
                self.vault.delete(record.secret_ref)
            except Exception as exc:
                warnings.append(f"Failed to delete secret: {exc}")

        for warning in warnings:
            logger.warning("Cleanup warning cluster_id=%s: %s", cluster_id, warning)

        message = f"Deleted with warnings: {'; '.join(warnings)}" if warnings else "Deleted successfully"
        self._repository.update_status(
            cluster_id,
            CLUSTER_STATUS_DELETED,
            deleted_at=utcnow(),
            status_message=message,
        )
        logger.info("Deprovisioned cluster_id=%s warnings=%s", cluster_id, len(warnings))
        if warnings:
            return DeprovisionResult(
                success=True,
                cluster_id=cluster_id,
                error=f"Cluster deleted with some warnings: {'; '.join(warnings)}",
                error_code=ERROR_PARTIAL_CLEANUP,
            )
        return DeprovisionResult(success=True, cluster_id=cluster_id)

    @staticmethod
    def _cleanup(warnings: list[str], action: str, call: Callable[[], ApiResult]) -> None:
        try:
            result = call()
        except Exception as exc:
            warnings.append(f"Failed to {action}: {exc}")
            return
        if not result.success and not result.error.not_found:
            warnings.append(f"Failed to {action}: {result.error_detail} ({result.error_code})")

    # Repair

    def repair(self, organization_id: str, actor_id: str) -> RepairResult:
        """Replace a missing or stale secret for a ready cluster with a fresh credential."""
        record = self._repository.find_active_by_org(organization_id)
        if record is None:
            return RepairResult(success=False, error="No provisioned cluster found", error_code=ERROR_NOT_FOUND)
        if record.status != CLUSTER_STATUS_READY:
            return RepairResult(
                success=False,
                error=f"Cluster not ready: {record.status}",
                error_code=ERROR_INVALID_STATE,
            )

        cluster_id = record.cluster_id
        if record.secret_ref and self._secret_is_valid(record.secret_ref, cluster_id):
            logger.info("Secret still valid cluster_id=%s secret_ref=%s", cluster_id, record.secret_ref)
            return RepairResult(success=True, secret_ref=record.secret_ref)

        if error := self._not_configured_error():
            return RepairResult(success=False, error=error, error_code=ERROR_NOT_CONFIGURED)
        if not record.control_plane_project_id or not record.control_plane_cluster_name:
            return RepairResult(
                success=False,
                error="Cluster record is missing its project or cluster name",
                error_code=ERROR_INVALID_STATE,
            )

        logger.info("Repairing credentials cluster_id=%s actor_id=%s", cluster_id, actor_id)
        try:
            details = self._client.get_cluster(record.control_plane_project_id, record.control_plane_cluster_name)
            if not details.success or not details.data:
                raise _upstream_error("Failed to get cluster", details)
            srv_address = (details.data.get("connectionStrings") or {}).get("standardSrv")
            if not srv_address:
                raise UpstreamError("No connection string available for cluster")
            credential = self._upsert_database_user(
                record.control_plane_project_id,
                organization_id=organization_id,
                cluster_name=record.control_plane_cluster_name,
                database_name=record.database_name,
            )
            record, connection_string = self._store_secret(record, srv_address, credential)
        except (UpstreamError, SecretVaultError) as exc:
            self._session.rollback()
            logger.warning("Repair failed cluster_id=%s: %s", cluster_id, exc)
            return RepairResult(success=False, error=str(exc), error_code=ERROR_UPSTREAM)

        collections = self._bootstrap(record, connection_string)
        record = self._repository.update_status(
            cluster_id,
            CLUSTER_STATUS_READY,
            database_username=credential.username,
            status_message="Credentials repaired",
        )
        return RepairResult(success=True, secret_ref=record.secret_ref, collections_initialized=collections)

    def _secret_is_valid(self, secret_ref: str, cluster_id: str) -> bool:
        try:
            return self.vault.exists(secret_ref)
        except SecretVaultError as exc:
            logger.warning("Could not verify secret cluster_id=%s secret_ref=%s: %s", cluster_id, secret_ref, exc)
            return False

    # Console invitations

    def _sync_pending_invitations(self, organization_id: str) -> None:
        for invitation in self._invitations.list_for_org(organization_id):
            if invitation.status == INVITATION_STATUS_PENDING:
                self._invitations.sync_status(invitation.invitation_id)

    def invitation_status(self, organization_id: str) -> InvitationOverview:
        """Refresh pending invitations from the control plane and report all of them."""
        record = self._repository.find_latest_by_org(organization_id)
        self._sync_pending_invitations(organization_id)
        project_id = record.control_plane_project_id if record else None
        return InvitationOverview(
            organization_id=organization_id,
            cluster_status=record.status if record else None,
            console_url=console_url(project_id) if project_id else None,
            invitations=self._invitations.list_for_org(organization_id),
        )

    def invite_member(self, organization_id: str, user_id: str) -> InvitationResult:
        """Give a user console access to the organization's ready cluster.

        A live invitation is reported rather than sent twice, and an expired one
        is sent again.
        """
        if error := self._control_plane_error():
            return InvitationResult(success=False, error=error, error_code=ERROR_NOT_CONFIGURED)
        record = self._repository.find_active_by_org(organization_id)
        if record is None:
            return InvitationResult(success=False, error="No provisioned cluster found", error_code=ERROR_NOT_FOUND)
        if record.status != CLUSTER_STATUS_READY:
            return InvitationResult(
                success=False,
                error=f"Cluster is {record.status}; invitations are sent once it is ready",
                error_code=ERROR_INVALID_STATE,
            )
        user = user_service.find_user(self._session, user_id=user_id)
        if user is None:
            return InvitationResult(success=False, error="User not found", error_code=ERROR_NOT_FOUND)

        link = console_url(record.control_plane_project_id)
        self._sync_pending_invitations(organization_id)
        email = user.email.strip().lower()
        latest = next(
            (invitation for invitation in self._invitations.list_for_org(organization_id) if invitation.email == email),
            None,
        )
        if latest is not None and latest.status == INVITATION_STATUS_ACCEPTED:
            return InvitationResult(
                success=True, status=latest.status, invitation_id=latest.invitation_id, console_url=link
            )
        if latest is not None and latest.status == INVITATION_STATUS_EXPIRED:
            outcome = self._invitations.resend(latest.invitation_id)
        else:
            outcome = self._invitations.invite(
                organization_id=organization_id,
                project_id=record.control_plane_project_id,
                email=user.email,
                user_id=user_id,
                role=CONSOLE_ROLE_READ_WRITE,
            )
        if not outcome.success:
            logger.warning(
                "Invitation not sent organization_id=%s user_id=%s: %s",
                organization_id,
                user_id,
                outcome.error,
            )
            return InvitationResult(success=False, error=outcome.error, error_code=ERROR_UPSTREAM)

        if outcome.invitation_id != record.invitation_ref:
            self._repository.update_status(record.cluster_id, record.status, invitation_ref=outcome.invitation_id)
        return InvitationResult(
            success=True,
            status=INVITATION_STATUS_PENDING,
            invitation_id=outcome.invitation_id,
            already_pending=outcome.already_pending,
            console_url=link,
        )

    # Reads

    def get_status(self, organization_id: str) -> ProvisioningStatusRead | None:
        record = self._repository.find_latest_by_org(organization_id)
        if record is None:
            return None
        return ProvisioningStatusRead(status=record.status, message=record.status_message, secret_ref=record.secret_ref)

    def get_cluster(self, organization_id: str) -> ProvisionedClusterRead:
        if not (record := self._repository.find_latest_by_org(organization_id)):
            raise NotFoundException("Provisioned cluster not found")
        return ProvisionedClusterRead.model_validate(record)

    def list_clusters(self, *, limit: int = 500) -> list[ProvisionedClusterRead]:
        return [ProvisionedClusterRead.model_validate(record) for record in self._repository.find_all(limit=limit)]

    def get_usage(self, organization_id: str, *, granularity: str = "PT1H", period: str = "P1D") -> ClusterUsage:
        record = self._repository.find_active_by_org(organization_id)
        if record is None or record.status != CLUSTER_STATUS_READY:
            raise NotFoundException("No ready cluster for organization")
        result = self._client.get_cluster_measurements(
            record.control_plane_project_id,
            record.control_plane_cluster_name,
            granularity=granularity,
            period=period,
        )
        if not result.success:
            raise _upstream_error("Failed to read cluster measurements", result)
        return ClusterUsage(
            cluster_id=record.cluster_id,
            storage_limit_mb=record.storage_limit_mb,
            max_connections=record.max_connections,
            measurements=list((result.data or {}).get("measurements") or []),
        )


def build_orchestrator(
    session: Session,
    *,
    client: ControlPlaneClient,
    settings: Settings | None = None,
) -> ProvisioningOrchestrator:
    settings = settings or get_settings()
    return ProvisioningOrchestrator(
        session=session,
        client=client,
        vault_factory=lambda: build_secret_vault(settings, session),
        settings=settings,
    )


@contextmanager
def orchestrator_scope(session: Session, settings: Settings | None = None) -> Iterator[ProvisioningOrchestrator]:
    settings = settings or get_settings()
    with ControlPlaneClient.from_settings(settings) as client:
        yield build_orchestrator(session, client=client, settings=settings)
