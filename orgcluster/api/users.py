from __future__ import annotations

from fastapi import APIRouter, Depends, status
from sqlmodel import Session

from orgcluster.db import get_session
from orgcluster.models import UserCreate, UserRead
from orgcluster.services import users as user_service

router = APIRouter(prefix="/users", tags=["users"])


@router.post("", response_model=UserRead, status_code=status.HTTP_201_CREATED)
def create_user(payload: UserCreate, session: Session = Depends(get_session)) -> UserRead:
    return user_service.create_user(session, payload)


@router.get("", response_model=list[UserRead])
def list_users(session: Session = Depends(get_session)) -> list[UserRead]:
    return user_service.list_users(session)


@router.get("/{user_id}", response_model=UserRead)
def get_user(user_id: str, session: Session = Depends(get_session)) -> UserRead:
    return user_service.get_user(session, user_id=user_id)
