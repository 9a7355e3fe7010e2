from __future__ import annotations

from dataclasses import asdict
from typing import Iterator, Optional

from fastapi import APIRouter, Depends, Query, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from sqlmodel import Session, SQLModel

from orgcluster.api.utils import ERROR_CODE_STATUS
from orgcluster.db import get_session
from orgcluster.models import ProvisionedClusterRead, ProvisioningJobRead, ProvisionRequest
from orgcluster.services import jobs as job_service
from orgcluster.services.provisioning import ProvisioningOrchestrator, orchestrator_scope

router = APIRouter(tags=["clusters"])


class ProvisionClusterRequest(ProvisionRequest):
    user_id: str


class ActorRequest(SQLModel):
    actor_id: str


class InviteRequest(SQLModel):
    user_id: str


class ClusterStatusResponse(SQLModel):
    organization_id: str
    provisioning_available: bool
    status: Optional[str] = None
    message: Optional[str] = None
    secret_ref: Optional[str] = None
    cluster: Optional[ProvisionedClusterRead] = None


def get_orchestrator(session: Session = Depends(get_session)) -> Iterator[ProvisioningOrchestrator]:
    with orchestrator_scope(session) as orchestrator:
        yield orchestrator


def _respond(result, success_status: int = status.HTTP_200_OK) -> JSONResponse:
    if result.success:
        code = success_status
    else:
        code = ERROR_CODE_STATUS.get(result.error_code, status.HTTP_500_INTERNAL_SERVER_ERROR)
    return JSONResponse(jsonable_encoder(asdict(result)), status_code=code)


@router.get("/organizations/{organization_id}/cluster", response_model=ClusterStatusResponse)
def get_cluster_status(
    organization_id: str, orchestrator: ProvisioningOrchestrator = Depends(get_orchestrator)
) -> ClusterStatusResponse:
    current = orchestrator.get_status(organization_id)
    if current is None:
        return ClusterStatusResponse(
            organization_id=organization_id,
            provisioning_available=orchestrator.is_auto_provisioning_available(),
        )
    return ClusterStatusResponse(
        organization_id=organization_id,
        provisioning_available=orchestrator.is_auto_provisioning_available(),
        status=current.status,
        message=current.message,
        secret_ref=current.secret_ref,
        cluster=orchestrator.get_cluster(organization_id),
    )


@router.post("/organizations/{organization_id}/cluster")
def provision_cluster(
    organization_id: str,
    payload: ProvisionClusterRequest,
    background: bool = Query(False),
    orchestrator: ProvisioningOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    options = ProvisionRequest.model_validate(payload.model_dump(exclude={"user_id"}))
    if background:
        result = orchestrator.provision_in_background(organization_id, payload.user_id, options)
        return _respond(result, status.HTTP_202_ACCEPTED)
    result = orchestrator.provision(organization_id, payload.user_id, options)
    return _respond(result, status.HTTP_201_CREATED)


@router.delete("/organizations/{organization_id}/cluster")
def deprovision_cluster(
    organization_id: str,
    actor_id: str = Query(...),
    orchestrator: ProvisioningOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    return _respond(orchestrator.deprovision(organization_id, actor_id))


@router.post("/organizations/{organization_id}/cluster/repair")
def repair_cluster(
    organization_id: str,
    payload: ActorRequest,
    orchestrator: ProvisioningOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    return _respond(orchestrator.repair(organization_id, payload.actor_id))


@router.post("/organizations/{organization_id}/cluster/resume")
def resume_cluster(
    organization_id: str,
    payload: ActorRequest,
    orchestrator: ProvisioningOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    return _respond(orchestrator.resume(organization_id, payload.actor_id))


@router.get("/organizations/{organization_id}/cluster/invitation")
def get_invitation_status(
    organization_id: str, orchestrator: ProvisioningOrchestrator = Depends(get_orchestrator)
):
    return jsonable_encoder(asdict(orchestrator.invitation_status(organization_id)))


@router.post("/organizations/{organization_id}/cluster/invitation")
def invite_member(
    organization_id: str,
    payload: InviteRequest,
    orchestrator: ProvisioningOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    return _respond(orchestrator.invite_member(organization_id, payload.user_id))


@router.get("/organizations/{organization_id}/cluster/metrics")
def get_cluster_metrics(
    organization_id: str,
    granularity: str = Query("PT1H"),
    period: str = Query("P1D"),
    orchestrator: ProvisioningOrchestrator = Depends(get_orchestrator),
):
    usage = orchestrator.get_usage(organization_id, granularity=granularity, period=period)
    return jsonable_encoder(asdict(usage))


@router.get("/clusters", response_model=list[ProvisionedClusterRead])
def list_clusters(orchestrator: ProvisioningOrchestrator = Depends(get_orchestrator)) -> list[ProvisionedClusterRead]:
    return orchestrator.list_clusters()


@router.get("/provisioning-jobs/{job_id}", response_model=ProvisioningJobRead)
def get_provisioning_job(job_id: int, session: Session = Depends(get_session)) -> ProvisioningJobRead:
    return job_service.get_job(session, job_id=job_id)
