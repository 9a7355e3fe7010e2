import importlib
from contextlib import contextmanager

import pytest
from sqlmodel import Session
from starlette.testclient import TestClient
from typer.testing import CliRunner

from orgcluster.api.clusters import get_orchestrator
from orgcluster.db import get_session, init_db, make_engine
from orgcluster.main import app
from tests.fakes import FakeControlPlane, FakeInitializer, make_orchestrator


@pytest.fixture
def db_session():
    engine = make_engine("sqlite://")
    init_db(engine)
    with Session(engine) as session:
        yield session


@pytest.fixture
def control_plane():
    return FakeControlPlane()


@pytest.fixture
def initializer():
    return FakeInitializer()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def orchestrator(db_session, control_plane, initializer, sleeps):
    return make_orchestrator(db_session, control_plane, initializer=initializer, sleep=sleeps.append)


@pytest.fixture()
def cli_runner(tmp_path, monkeypatch):
    db_path = tmp_path / "test_cli.db"
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{db_path}")

    import orgcluster.db as db

    importlib.reload(db)
    init_db(db.engine)

    import orgcluster.cli as cli

    importlib.reload(cli)

    return CliRunner(), cli.app


@pytest.fixture
def cli_control_plane(cli_runner, monkeypatch):
    """Route CLI commands through a fake control plane instead of the real API."""
    import orgcluster.cli as cli

    fake = FakeControlPlane()

    @contextmanager
    def fake_scope(session, settings=None):
        yield make_orchestrator(session, fake)

    monkeypatch.setattr(cli, "orchestrator_scope", fake_scope)
    return fake


@pytest.fixture
def client(db_session, control_plane, initializer):
    def override_get_db():
        yield db_session

    def override_get_orchestrator():
        yield make_orchestrator(db_session, control_plane, initializer=initializer)

    app.dependency_overrides[get_session] = override_get_db
    app.dependency_overrides[get_orchestrator] = override_get_orchestrator

    with TestClient(app) as client:
        yield client

    app.dependency_overrides.clear()
