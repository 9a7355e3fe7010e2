from __future__ import annotations

from dataclasses import asdict, is_dataclass
import logging
import socket
import time

import typer
import yaml
from fastapi.encoders import jsonable_encoder

from orgcluster.db import session_scope
from orgcluster.logging_config import configure_logging
from orgcluster.models import ProvisionRequest, UserCreate
from orgcluster.services import jobs as job_service, users as user_service
from orgcluster.services.errors import OrgClusterException
from orgcluster.services.provisioning import orchestrator_scope
from orgcluster.settings import get_settings

configure_logging()
logger = logging.getLogger(__name__)
app = typer.Typer(help="OrgCluster CLI", pretty_exceptions_show_locals=False)


def _exit_for_domain_error(exc: OrgClusterException) -> None:
    logger.warning("CLI command failed with domain error: %s", exc)
    typer.echo(f"Error: {exc}", err=True)
    raise typer.Exit(code=1)


def _echo_yaml_entity(entity: object) -> None:
    if is_dataclass(entity) and not isinstance(entity, type):
        entity = asdict(entity)
    encoded = jsonable_encoder(entity)
    typer.echo(yaml.safe_dump(encoded, sort_keys=False), nl=False)


def _echo_result(result) -> None:
    """Print an orchestrator result; failures go to stderr and exit 1."""
    if not result.success:
        typer.echo(f"Error: {result.error} ({result.error_code})", err=True)
        raise typer.Exit(code=1)
    _echo_yaml_entity(result)


@app.command("create-user")
def create_user(email: str) -> None:
    with session_scope() as session:
        try:
            user = user_service.create_user(session, UserCreate(email=email))
        except OrgClusterException as e:
            _exit_for_domain_error(e)
        _echo_yaml_entity(user)


@app.command("list-users")
def list_users() -> None:
    with session_scope() as session:
        _echo_yaml_entity(user_service.list_users(session))


@app.command("provision")
def provision(
    organization_id: str,
    *,
    user_id: str = typer.Option(..., "--user-id", help="User requesting the cluster; invited to the console."),
    cluster_name: str | None = typer.Option(None, "--cluster-name"),
    provider: str | None = typer.Option(None, "--provider", help="Backing cloud provider, e.g. AWS."),
    region: str | None = typer.Option(None, "--region", help="Provider region, e.g. US_EAST_1."),
    database_name: str | None = typer.Option(None, "--database-name"),
    background: bool = typer.Option(False, "--background", help="Queue the provisioning job and return at once."),
) -> None:
    options = ProvisionRequest(
        cluster_name=cluster_name,
        provider=provider,
        region=region,
        database_name=database_name,
    )
    with session_scope() as session, orchestrator_scope(session) as orchestrator:
        try:
            if background:
                result = orchestrator.provision_in_background(organization_id, user_id, options)
            else:
                result = orchestrator.provision(organization_id, user_id, options)
        except OrgClusterException as e:
            _exit_for_domain_error(e)
        _echo_result(result)


@app.command("deprovision")
def deprovision(organization_id: str, actor_id: str = typer.Option(..., "--actor-id")) -> None:
    with session_scope() as session, orchestrator_scope(session) as orchestrator:
        try:
            result = orchestrator.deprovision(organization_id, actor_id)
        except OrgClusterException as e:
            _exit_for_domain_error(e)
        if result.error and result.success:
            typer.echo(f"Warning: {result.error}", err=True)
        _echo_result(result)


@app.command("repair")
def repair(organization_id: str, actor_id: str = typer.Option(..., "--actor-id")) -> None:
    with session_scope() as session, orchestrator_scope(session) as orchestrator:
        try:
            result = orchestrator.repair(organization_id, actor_id)
        except OrgClusterException as e:
            _exit_for_domain_error(e)
        _echo_result(result)


@app.command("resume")
def resume(organization_id: str, actor_id: str = typer.Option(..., "--actor-id")) -> None:
    with session_scope() as session, orchestrator_scope(session) as orchestrator:
        try:
            result = orchestrator.resume(organization_id, actor_id)
        except OrgClusterException as e:
            _exit_for_domain_error(e)
        _echo_result(result)


@app.command("status")
def status(organization_id: str) -> None:
    with session_scope() as session, orchestrator_scope(session) as orchestrator:
        current = orchestrator.get_status(organization_id)
        if current is None:
            typer.echo(f"Error: No provisioned cluster for organization {organization_id}", err=True)
            raise typer.Exit(code=1)
        _echo_yaml_entity(current)


@app.command("invitation-status")
def invitation_status(organization_id: str) -> None:
    with session_scope() as session, orchestrator_scope(session) as orchestrator:
        _echo_yaml_entity(orchestrator.invitation_status(organization_id))


@app.command("invite")
def invite(organization_id: str, user_id: str = typer.Option(..., "--user-id")) -> None:
    with session_scope() as session, orchestrator_scope(session) as orchestrator:
        _echo_result(orchestrator.invite_member(organization_id, user_id))


@app.command("list-clusters")
def list_clusters() -> None:
    with session_scope() as session, orchestrator_scope(session) as orchestrator:
        _echo_yaml_entity(orchestrator.list_clusters())


@app.command("get-job")
def get_job(job_id: int) -> None:
    with session_scope() as session:
        try:
            job = job_service.get_job(session, job_id=job_id)
        except OrgClusterException as e:
            _exit_for_domain_error(e)
        _echo_yaml_entity(job)


@app.command("worker")
def worker(
    once: bool = typer.Option(False, "--once", help="Process at most one job and exit."),
    poll_interval: float = typer.Option(5.0, "--poll-interval", help="Seconds to wait when the queue is empty."),
    worker_id: str | None = typer.Option(None, "--worker-id"),
) -> None:
    settings = get_settings()
    worker_id = worker_id or f"{socket.gethostname()}-worker"
    logger.info("Starting provisioning worker worker_id=%s configuration=%s", worker_id, settings.describe())
    with session_scope() as session, orchestrator_scope(session, settings) as orchestrator:
        while True:
            job = job_service.run_next_job(session, worker_id=worker_id, orchestrator=orchestrator)
            if job is not None:
                _echo_yaml_entity(job_service.get_job(session, job_id=job.id))
            if once:
                break
            if job is None:
                time.sleep(poll_interval)


if __name__ == "__main__":
    app()
