from functools import lru_cache

from fastapi import HTTPException, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from medbook.core.actor import PRACTITIONER, Actor
from medbook.database import SessionLocal, ensure_scheduling_schema
from medbook.models.practitioner import Practitioner
from medbook.scheduling.service import SchedulingService

DATABASE_UNAVAILABLE_DETAIL = 'Database unavailable. Verify DATABASE_URL and database credentials.'


def database_unavailable() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail=DATABASE_UNAVAILABLE_DETAIL,
    )


def ensure_database_ready() -> None:
    try:
        ensure_scheduling_schema()
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@lru_cache
def get_scheduling_service() -> SchedulingService:
    return SchedulingService()


def ensure_practitioner_access(db: Session, actor: Actor, practitioner_id: int) -> None:
    """Allow admins, or the practitioner acting on their own record."""
    if actor.is_system:
        return

    if actor.role == PRACTITIONER:
        owner_user_id = db.query(Practitioner.user_id).filter(Practitioner.id == practitioner_id).scalar()
        if owner_user_id is not None and owner_user_id == actor.user_id:
            return

    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail='Only this practitioner or an admin can manage this practitioner.',
    )
