from datetime import datetime, timezone

import pytest
from sqlmodel import select

from orgcluster.models import ClusterInvitationORM, UserCreate
from orgcluster.services import users as user_service
from orgcluster.services.errors import NotFoundException
from orgcluster.services.invitations import InvitationService, _parse_timestamp, console_url
from orgcluster.services.repository import StateRepository
from tests.fakes import FakeControlPlane

ORG_ID = "org_abc123"
PROJECT_ID = "proj0001"


@pytest.fixture
def invitations(db_session, control_plane):
    return InvitationService(session=db_session, client=control_plane, org_container_id="container-0001")


def _invite(invitations, email="Owner@Example.com"):
    return invitations.invite(organization_id=ORG_ID, project_id=PROJECT_ID, email=email, user_id="usr_owner")


def test_invite_records_pending_invitation(invitations, control_plane, db_session):
    result = _invite(invitations)

    assert result.success is True
    assert result.already_pending is False
    invitation = db_session.get(ClusterInvitationORM, result.invitation_id)
    assert invitation.email == "owner@example.com"
    assert invitation.status == "pending"
    assert invitation.role == "GROUP_DATA_ACCESS_READ_WRITE"
    assert invitation.expires_at == datetime(2999, 1, 1, tzinfo=timezone.utc)
    assert invitation.control_plane_invitation_id == result.control_plane_invitation_id
    kwargs = control_plane.calls[0][1]
    assert kwargs == {
        "org_id": "container-0001",
        "email": "owner@example.com",
        "project_id": PROJECT_ID,
        "roles": ["GROUP_DATA_ACCESS_READ_WRITE"],
    }


def test_repeat_invite_reuses_pending(invitations, control_plane):
    first = _invite(invitations)
    second = _invite(invitations, email="owner@example.com ")

    assert second.success is True
    assert second.already_pending is True
    assert second.invitation_id == first.invitation_id
    assert control_plane.call_names() == ["create_invitation"]


def test_invite_rejected_upstream(invitations, control_plane, db_session):
    control_plane.fail("create_invitation", status=400, code="INVALID_EMAIL", detail="bad address")

    result = _invite(invitations)

    assert result.success is False
    assert result.error == "bad address"
    assert db_session.exec(select(ClusterInvitationORM)).all() == []


def test_invite_without_configuration(db_session):
    service = InvitationService(session=db_session, client=FakeControlPlane(), org_container_id="")

    result = _invite(service)

    assert result.success is False
    assert "not configured" in result.error


def test_cancel_pending_invitation(invitations, control_plane, db_session):
    invited = _invite(invitations)

    result = invitations.cancel(invited.invitation_id)

    assert result.success is True
    assert db_session.get(ClusterInvitationORM, invited.invitation_id).status == "cancelled"
    assert control_plane.invitations == {}


def test_cancel_non_pending_invitation(invitations):
    invited = _invite(invitations)
    invitations.cancel(invited.invitation_id)

    result = invitations.cancel(invited.invitation_id)

    assert result.success is False
    assert "cancelled" in result.error


def test_cancel_tolerates_invitation_gone_upstream(invitations, control_plane, db_session):
    invited = _invite(invitations)
    control_plane.invitations.clear()

    assert invitations.cancel(invited.invitation_id).success is True
    assert db_session.get(ClusterInvitationORM, invited.invitation_id).status == "cancelled"


def test_cancel_upstream_failure(invitations, control_plane, db_session):
    invited = _invite(invitations)
    control_plane.fail("delete_invitation", detail="try later")

    result = invitations.cancel(invited.invitation_id)

    assert result.success is False
    assert result.error == "try later"
    assert db_session.get(ClusterInvitationORM, invited.invitation_id).status == "pending"


def test_cancel_unknown_invitation(invitations):
    with pytest.raises(NotFoundException):
        invitations.cancel("inv_missing")


def test_cancel_pending_for_org_collects_failures(invitations, control_plane):
    _invite(invitations, email="a@example.com")
    _invite(invitations, email="b@example.com")
    control_plane.fail("delete_invitation")

    failures = invitations.cancel_pending_for_org(ORG_ID)

    assert len(failures) == 2
    assert all("boom" in failure for failure in failures)


def test_sync_marks_consumed_invitation_accepted(invitations, control_plane, db_session):
    invited = _invite(invitations)
    control_plane.invitations.clear()

    result = invitations.sync_status(invited.invitation_id)

    assert (result.status, result.changed) == ("accepted", True)
    invitation = db_session.get(ClusterInvitationORM, invited.invitation_id)
    assert invitation.accepted_at is not None


def test_sync_marks_expired_invitation(invitations, control_plane):
    control_plane.invitation_expires_at = "2020-01-01T00:00:00Z"
    invited = _invite(invitations)

    result = invitations.sync_status(invited.invitation_id)

    assert (result.status, result.changed) == ("expired", True)
    assert invitations.sync_status(invited.invitation_id).changed is False


def test_sync_keeps_live_invitation_pending(invitations, db_session):
    invited = _invite(invitations)

    result = invitations.sync_status(invited.invitation_id)

    assert (result.status, result.changed) == ("pending", False)
    assert db_session.get(ClusterInvitationORM, invited.invitation_id).last_checked_at is not None


def test_resend_replaces_pending_invitation(invitations, control_plane, db_session):
    invited = _invite(invitations)

    resent = invitations.resend(invited.invitation_id)

    assert resent.success is True
    assert resent.invitation_id != invited.invitation_id
    assert db_session.get(ClusterInvitationORM, invited.invitation_id).status == "cancelled"
    assert control_plane.call_names() == ["create_invitation", "delete_invitation", "create_invitation"]


def test_list_for_org(invitations):
    _invite(invitations, email="a@example.com")
    _invite(invitations, email="b@example.com")

    listed = invitations.list_for_org(ORG_ID)

    assert {invitation.email for invitation in listed} == {"a@example.com", "b@example.com"}
    assert invitations.list_for_org("org_other1") == []


def test_parse_timestamp():
    assert _parse_timestamp("2026-03-01T12:30:00Z") == datetime(2026, 3, 1, 12, 30, tzinfo=timezone.utc)
    assert _parse_timestamp("2026-03-01T14:30:00+02:00") == datetime(2026, 3, 1, 12, 30, tzinfo=timezone.utc)
    assert _parse_timestamp("2026-03-01T12:30:00") == datetime(2026, 3, 1, 12, 30, tzinfo=timezone.utc)
    assert _parse_timestamp("soon") is None
    assert _parse_timestamp(None) is None


def test_console_url():
    assert console_url("proj0001") == "https://cloud.mongodb.com/v2/proj0001"


@pytest.fixture
def owner(db_session):
    return user_service.create_user(db_session, UserCreate(email="Owner@Example.com"))


@pytest.fixture
def provisioned(orchestrator, db_session, owner):
    result = orchestrator.provision(ORG_ID, owner.id)
    assert result.success
    return StateRepository(db_session).get(result.cluster_id)


def test_invite_member_needs_a_ready_cluster(orchestrator, control_plane, owner):
    assert orchestrator.invite_member(ORG_ID, owner.id).error_code == "not_found"

    control_plane.never_ready = True
    orchestrator.provision(ORG_ID, owner.id)

    result = orchestrator.invite_member(ORG_ID, owner.id)
    assert result.success is False
    assert result.error_code == "invalid_state"
    assert "creating_cluster" in result.error


def test_invite_member_reports_live_invitation(orchestrator, control_plane, owner, provisioned):
    control_plane.calls.clear()

    result = orchestrator.invite_member(ORG_ID, owner.id)

    assert result.success is True
    assert result.status == "pending"
    assert result.already_pending is True
    assert result.invitation_id == provisioned.invitation_ref
    assert result.console_url == f"https://cloud.mongodb.com/v2/{provisioned.control_plane_project_id}"
    assert control_plane.call_names() == ["get_invitation"]


def test_invite_member_resends_expired_invitation(orchestrator, control_plane, db_session, owner):
    control_plane.invitation_expires_at = "2020-01-01T00:00:00Z"
    first = orchestrator.provision(ORG_ID, owner.id)
    old_ref = StateRepository(db_session).get(first.cluster_id).invitation_ref

    result = orchestrator.invite_member(ORG_ID, owner.id)

    assert result.success is True
    assert result.already_pending is False
    assert result.invitation_id != old_ref
    assert db_session.get(ClusterInvitationORM, old_ref).status == "expired"
    assert StateRepository(db_session).get(first.cluster_id).invitation_ref == result.invitation_id


def test_invite_member_sends_new_invitation_to_another_user(orchestrator, control_plane, db_session, provisioned):
    teammate = user_service.create_user(db_session, UserCreate(email="teammate@example.com"))

    result = orchestrator.invite_member(ORG_ID, teammate.id)

    assert result.success is True
    assert result.already_pending is False
    invitation = db_session.get(ClusterInvitationORM, result.invitation_id)
    assert invitation.email == "teammate@example.com"
    assert invitation.control_plane_project_id == provisioned.control_plane_project_id


def test_invite_member_for_accepted_invitation_sends_nothing(orchestrator, control_plane, owner, provisioned):
    control_plane.invitations.clear()
    control_plane.calls.clear()

    result = orchestrator.invite_member(ORG_ID, owner.id)

    assert result.success is True
    assert result.status == "accepted"
    assert "create_invitation" not in control_plane.call_names()


def test_invite_member_unknown_user(orchestrator, provisioned):
    result = orchestrator.invite_member(ORG_ID, "usr_missing")

    assert result.success is False
    assert result.error_code == "not_found"
    assert result.error == "User not found"


def test_invite_member_upstream_rejection(orchestrator, control_plane, db_session, provisioned):
    teammate = user_service.create_user(db_session, UserCreate(email="teammate@example.com"))
    control_plane.fail("create_invitation", status=400, code="INVALID_EMAIL", detail="bad address")

    result = orchestrator.invite_member(ORG_ID, teammate.id)

    assert result.success is False
    assert result.error_code == "upstream_error"
    assert result.error == "bad address"


def test_invitation_status_syncs_and_lists(orchestrator, control_plane, provisioned):
    overview = orchestrator.invitation_status(ORG_ID)

    assert overview.cluster_status == "ready"
    assert overview.console_url == console_url(provisioned.control_plane_project_id)
    assert [invitation.status for invitation in overview.invitations] == ["pending"]

    control_plane.invitations.clear()

    assert [invitation.status for invitation in orchestrator.invitation_status(ORG_ID).invitations] == ["accepted"]


def test_invitation_status_without_cluster(orchestrator):
    overview = orchestrator.invitation_status(ORG_ID)

    assert overview.cluster_status is None
    assert overview.console_url is None
    assert overview.invitations == []
