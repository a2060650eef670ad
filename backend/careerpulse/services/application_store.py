"""Application store: per-user CRUD, exact duplicate lookup and status history on an AsyncSession."""
import logging
from datetime import date
from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import Application, StatusHistory, utcnow

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = {
    "company",
    "title",
    "status",
    "location",
    "date_applied",
    "remote_policy",
    "salary",
    "notes",
    "confidence_score",
}


class StoreError(Exception):
    """Store operation failed."""

    def __init__(self, message: str, original: Optional[Exception] = None):
        super().__init__(message)
        self.original = original


class NotFoundError(StoreError):
    def __init__(self, resource: str, id_):
        super().__init__(f"{resource} with id {id_} not found")
        self.resource = resource
        self.id = id_


class DuplicateError(StoreError):
    def __init__(self, resource: str, field: str, value, original: Optional[Exception] = None):
        super().__init__(f"{resource} with {field} '{value}' already exists", original)
        self.resource = resource
        self.field = field
        self.value = value


def _norm(value: Optional[str]) -> str:
    return (value or "").strip().casefold()


class ApplicationStore:
    """All reads and writes are scoped to a user_id."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create_application(self, application: Application) -> Application:
        """
        Insert one application plus its initial status history row in a single commit.
        Raises DuplicateError when the (user_id, source_message_id) index is violated.
        """
        self.db.add(application)
        try:
            await self.db.flush()
            self.db.add(StatusHistory(
                application_id=application.id,
                old_status=None,
                new_status=application.status,
                changed_at=utcnow(),
            ))
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            raise DuplicateError("Application", "source_message_id", application.source_message_id, e) from e
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise StoreError("Failed to create application", e) from e
        return application

    async def get_application(self, user_id: int, application_id: int) -> Application:
        result = await self.db.execute(
            select(Application).where(Application.id == application_id, Application.user_id == user_id)
        )
        app = result.scalars().first()
        if not app:
            raise NotFoundError("Application", application_id)
        return app

    async def list_applications(
        self,
        user_id: int,
        status: Optional[str] = None,
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> List[Application]:
        q = select(Application).where(Application.user_id == user_id)
        if status:
            q = q.where(Application.status == status)
        q = q.order_by(Application.date_applied.desc(), Application.id.desc()).offset(offset)
        if limit:
            q = q.limit(limit)
        result = await self.db.execute(q)
        return list(result.scalars().all())

    async def count_applications(self, user_id: int, status: Optional[str] = None) -> int:
        q = select(func.count()).select_from(Application).where(Application.user_id == user_id)
        if status:
            q = q.where(Application.status == status)
        total = await self.db.scalar(q)
        return int(total or 0)

    async def update_application(self, user_id: int, application_id: int, updates: dict) -> Application:
        """Apply field updates; a status change is recorded in status history."""
        app = await self.get_application(user_id, application_id)
        old_status = app.status
        for key, value in updates.items():
            if key in UPDATABLE_FIELDS and value is not None:
                setattr(app, key, value)
        if app.status != old_status:
            self.db.add(StatusHistory(
                application_id=app.id,
                old_status=old_status,
                new_status=app.status,
                changed_at=utcnow(),
            ))
        app.updated_at = utcnow()
        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise StoreError("Failed to update application", e) from e
        return app

    async def delete_application(self, user_id: int, application_id: int) -> None:
        app = await self.get_application(user_id, application_id)
        await self.db.delete(app)
        await self.db.commit()

    async def find_duplicate_application(
        self,
        user_id: int,
        company: str,
        title: str,
        date_applied: date,
    ) -> Optional[Application]:
        """Same user, company and title (case/space-insensitive) on the same date."""
        # Compared in Python: SQLite lower() only folds ASCII.
        result = await self.db.execute(
            select(Application)
            .where(
                Application.user_id == user_id,
                Application.date_applied == date_applied,
            )
            .order_by(Application.id)
        )
        company_key, title_key = _norm(company), _norm(title)
        for app in result.scalars():
            if _norm(app.company) == company_key and _norm(app.title) == title_key:
                return app
        return None

    async def get_status_history(self, user_id: int, application_id: int) -> List[StatusHistory]:
        await self.get_application(user_id, application_id)
        result = await self.db.execute(
            select(StatusHistory)
            .where(StatusHistory.application_id == application_id)
            .order_by(StatusHistory.changed_at.desc(), StatusHistory.id.desc())
        )
        return list(result.scalars().all())
