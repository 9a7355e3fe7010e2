from datetime import timezone

from sqlalchemy import inspect
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, select

from orgcluster.db import init_db, make_engine
from orgcluster.models import UserORM, utcnow


def test_in_memory_database_keeps_one_connection():
    engine = make_engine("sqlite://")
    init_db(engine)

    with Session(engine) as session:
        session.add(UserORM(email="owner@example.com"))
        session.commit()
    with Session(engine) as session:
        users = session.exec(select(UserORM)).all()

    assert isinstance(engine.pool, StaticPool)
    assert [user.email for user in users] == ["owner@example.com"]


def test_file_database_gets_every_table(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'orgcluster.db'}")

    init_db(engine)

    assert not isinstance(engine.pool, StaticPool)
    assert set(inspect(engine).get_table_names()) == {
        "user",
        "provisioned_cluster",
        "cluster_invitation",
        "stored_secret",
        "provisioning_job",
    }


def test_timestamps_round_trip_as_utc(db_session):
    before = utcnow()
    db_session.add(UserORM(email="owner@example.com"))
    db_session.commit()
    db_session.expire_all()

    user = db_session.exec(select(UserORM)).one()

    assert before.tzinfo is timezone.utc
    assert user.created_at.utcoffset() is not None
    assert before <= user.created_at <= utcnow()
