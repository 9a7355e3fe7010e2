from __future__ import annotations

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from orgcluster.models import UserCreate, UserORM, UserRead
from orgcluster.services.errors import IntegrityException, NotFoundException


def create_user(session: Session, payload: UserCreate) -> UserRead:
    user = UserORM.model_validate(payload.model_dump(exclude_none=True))
    session.add(user)
    try:
        session.commit()
        session.refresh(user)
        return UserRead.model_validate(user)
    except IntegrityError as exc:
        session.rollback()
        raise IntegrityException(f"Email already in use: {user.email}") from exc


def list_users(session: Session) -> list[UserRead]:
    users = session.exec(select(UserORM).where(UserORM.deleted_at == None)).all()  # noqa: E711
    return [UserRead.model_validate(user) for user in users]


def find_user(session: Session, *, user_id: str) -> UserORM | None:
    """Return the active user or ``None``; used where a missing user is not an error."""
    user = session.get(UserORM, user_id)
    if user is None or user.deleted_at is not None:
        return None
    return user


def get_user(session: Session, *, user_id: str) -> UserRead:
    if not (user := find_user(session, user_id=user_id)):
        raise NotFoundException("User not found")
    return UserRead.model_validate(user)
