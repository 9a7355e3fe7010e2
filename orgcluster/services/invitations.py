from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging

from sqlmodel import Session, select

from orgcluster.control_plane import ControlPlaneClient
from orgcluster.models import ClusterInvitationORM, ClusterInvitationRead, utcnow
from orgcluster.services.constants import (
    CONSOLE_ROLE_READ_WRITE,
    INVITATION_STATUS_ACCEPTED,
    INVITATION_STATUS_CANCELLED,
    INVITATION_STATUS_EXPIRED,
    INVITATION_STATUS_PENDING,
)
from orgcluster.services.errors import NotFoundException

logger = logging.getLogger(__name__)

CONSOLE_BASE_URL = "https://cloud.mongodb.com/v2"


@dataclass(frozen=True)
class InviteResult:
    success: bool
    invitation_id: str | None = None
    control_plane_invitation_id: str | None = None
    already_pending: bool = False
    error: str | None = None


@dataclass(frozen=True)
class CancelResult:
    success: bool
    error: str | None = None


@dataclass(frozen=True)
class SyncResult:
    status: str
    changed: bool


def console_url(project_id: str) -> str:
    return f"{CONSOLE_BASE_URL}/{project_id}"


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.warning("Ignoring unparseable invitation expiry: %s", value)
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


class InvitationService:
    """Console-access invitations scoped to one organization's project.

    Delivery happens upstream; this service only tracks what was sent so a
    repeated request does not produce a second email.
    """

    def __init__(self, *, session: Session, client: ControlPlaneClient, org_container_id: str) -> None:
        self._session = session
        self._client = client
        self._org_container_id = org_container_id

    def _configured_error(self) -> str | None:
        if not self._client.is_configured():
            return "Control plane API not configured"
        if not self._org_container_id:
            return "Control plane organization id not configured"
        return None

    def _get(self, invitation_id: str) -> ClusterInvitationORM:
        if not (invitation := self._session.get(ClusterInvitationORM, invitation_id)):
            raise NotFoundException("Invitation not found")
        return invitation

    def _set_status(self, invitation: ClusterInvitationORM, status: str, **fields) -> None:
        invitation.status = status
        invitation.last_checked_at = utcnow()
        for name, value in fields.items():
            setattr(invitation, name, value)
        self._session.add(invitation)
        self._session.commit()
        self._session.refresh(invitation)

    def invite(
        self,
        *,
        organization_id: str,
        project_id: str,
        email: str,
        user_id: str | None = None,
        role: str = CONSOLE_ROLE_READ_WRITE,
    ) -> InviteResult:
        if error := self._configured_error():
            logger.warning("Skipping invitation for organization_id=%s: %s", organization_id, error)
            return InviteResult(success=False, error=error)

        normalized_email = email.strip().lower()
        existing = self._session.exec(
            select(ClusterInvitationORM).where(
                ClusterInvitationORM.organization_id == organization_id,
                ClusterInvitationORM.email == normalized_email,
                ClusterInvitationORM.status == INVITATION_STATUS_PENDING,
            )
        ).first()
        if existing is not None:
            logger.info(
                "Invitation already pending invitation_id=%s organization_id=%s",
                existing.invitation_id,
                organization_id,
            )
            return InviteResult(
                success=True,
                invitation_id=existing.invitation_id,
                control_plane_invitation_id=existing.control_plane_invitation_id,
                already_pending=True,
            )

        result = self._client.create_invitation(
            self._org_container_id,
            email=normalized_email,
            project_id=project_id,
            roles=[role],
        )
        if not result.success or not result.data:
            detail = result.error_detail or "Failed to create console invitation"
            logger.warning(
                "Console invitation rejected organization_id=%s code=%s detail=%s",
                organization_id,
                result.error_code,
                detail,
            )
            return InviteResult(success=False, error=detail)

        invitation = ClusterInvitationORM(
            organization_id=organization_id,
            control_plane_project_id=project_id,
            control_plane_invitation_id=str(result.data.get("id")),
            user_id=user_id,
            email=normalized_email,
            role=role,
            expires_at=_parse_timestamp(result.data.get("expiresAt")),
            last_checked_at=utcnow(),
        )
        self._session.add(invitation)
        self._session.commit()
        self._session.refresh(invitation)
        logger.info(
            "Sent console invitation invitation_id=%s organization_id=%s project_id=%s",
            invitation.invitation_id,
            organization_id,
            project_id,
        )
        return InviteResult(
            success=True,
            invitation_id=invitation.invitation_id,
            control_plane_invitation_id=invitation.control_plane_invitation_id,
        )

    def cancel(self, invitation_id: str) -> CancelResult:
        invitation = self._get(invitation_id)
        if invitation.status != INVITATION_STATUS_PENDING:
            return CancelResult(success=False, error=f"Cannot cancel invitation with status: {invitation.status}")
        if error := self._configured_error():
            return CancelResult(success=False, error=error)

        result = self._client.delete_invitation(self._org_container_id, invitation.control_plane_invitation_id)
        if not result.success and not result.error.not_found:
            return CancelResult(success=False, error=result.error_detail or "Failed to cancel invitation")

        self._set_status(invitation, INVITATION_STATUS_CANCELLED)
        logger.info("Cancelled invitation invitation_id=%s", invitation_id)
        return CancelResult(success=True)

    def cancel_pending_for_org(self, organization_id: str) -> list[str]:
        """Cancel every pending invitation of an organization; returns failure messages."""
        pending = self._session.exec(
            select(ClusterInvitationORM).where(
                ClusterInvitationORM.organization_id == organization_id,
                ClusterInvitationORM.status == INVITATION_STATUS_PENDING,
            )
        ).all()
        failures = []
        for invitation in pending:
            outcome = self.cancel(invitation.invitation_id)
            if not outcome.success:
                failures.append(f"invitation {invitation.invitation_id}: {outcome.error}")
        return failures

    def sync_status(self, invitation_id: str) -> SyncResult:
        invitation = self._get(invitation_id)
        if invitation.status != INVITATION_STATUS_PENDING:
            return SyncResult(status=invitation.status, changed=False)
        if self._configured_error():
            return SyncResult(status=invitation.status, changed=False)

        result = self._client.get_invitation(self._org_container_id, invitation.control_plane_invitation_id)
        if not result.success:
            # A consumed invitation disappears upstream.
            if result.error.not_found:
                self._set_status(invitation, INVITATION_STATUS_ACCEPTED, accepted_at=utcnow())
                return SyncResult(status=INVITATION_STATUS_ACCEPTED, changed=True)
            return SyncResult(status=invitation.status, changed=False)

        expires_at = _parse_timestamp((result.data or {}).get("expiresAt")) or invitation.expires_at
        if expires_at is not None and expires_at < utcnow():
            self._set_status(invitation, INVITATION_STATUS_EXPIRED, expires_at=expires_at)
            return SyncResult(status=INVITATION_STATUS_EXPIRED, changed=True)

        self._set_status(invitation, INVITATION_STATUS_PENDING)
        return SyncResult(status=INVITATION_STATUS_PENDING, changed=False)

    def resend(self, invitation_id: str) -> InviteResult:
        invitation = self._get(invitation_id)
        if invitation.status == INVITATION_STATUS_PENDING:
            self.cancel(invitation_id)
        return self.invite(
            organization_id=invitation.organization_id,
            project_id=invitation.control_plane_project_id,
            email=invitation.email,
            user_id=invitation.user_id,
            role=invitation.role,
        )

    def list_for_org(self, organization_id: str) -> list[ClusterInvitationRead]:
        invitations = self._session.exec(
            select(ClusterInvitationORM)
            .where(ClusterInvitationORM.organization_id == organization_id)
            .order_by(ClusterInvitationORM.created_at.desc())
        ).all()
        return [ClusterInvitationRead.model_validate(invitation) for invitation in invitations]
