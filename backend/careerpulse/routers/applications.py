"""Applications API: list with pagination, update, delete, status history, near-duplicate report."""
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from ..auth import get_current_user_required
from ..database import get_db
from ..models import User
from ..schemas import (
    ApplicationResponse,
    ApplicationStatus,
    ApplicationUpdate,
    PaginatedApplications,
    SimilarApplication,
    StatusHistoryEntry,
)
from ..services.application_store import ApplicationStore, NotFoundError, StoreError
from ..services.duplicate_detector import SIMILARITY_THRESHOLD, DuplicateDetector

router = APIRouter(prefix="/api", tags=["applications"])


@router.get("/applications", response_model=PaginatedApplications)
async def get_applications(
    status: Optional[ApplicationStatus] = None,
    offset: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user_required),
):
    store = ApplicationStore(db)
    status_value = status.value if status else None
    total = await store.count_applications(current_user.id, status=status_value)
    items = await store.list_applications(current_user.id, status=status_value, offset=offset, limit=limit)
    return PaginatedApplications(items=items, total=total, offset=offset, limit=limit)


@router.get("/applications/{application_id}", response_model=ApplicationResponse)
async def get_application(
    application_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user_required),
):
    try:
        return await ApplicationStore(db).get_application(current_user.id, application_id)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Application not found")


@router.patch("/applications/{application_id}", response_model=ApplicationResponse)
async def update_application(
    application_id: int,
    body: ApplicationUpdate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user_required),
):
    """Partial update; a status change is recorded in the application's status history."""
    updates = body.model_dump(exclude_unset=True)
    if updates.get("status") is not None:
        updates["status"] = updates["status"].value
    try:
        return await ApplicationStore(db).update_application(current_user.id, application_id, updates)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Application not found")
    except StoreError as e:
        raise HTTPException(status_code=500, detail=str(e))


@router.delete("/applications/{application_id}", status_code=204)
async def delete_application(
    application_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user_required),
):
    try:
        await ApplicationStore(db).delete_application(current_user.id, application_id)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Application not found")


@router.get("/applications/{application_id}/history", response_model=List[StatusHistoryEntry])
async def get_application_history(
    application_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user_required),
):
    try:
        return await ApplicationStore(db).get_status_history(current_user.id, application_id)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Application not found")


@router.get("/applications/{application_id}/similar", response_model=List[SimilarApplication])
async def get_similar_applications(
    application_id: int,
    threshold: float = Query(SIMILARITY_THRESHOLD, ge=0.0, le=1.0),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user_required),
):
    """Near-duplicates of this application (same user, fuzzy company/title). Reported only, never merged."""
    store = ApplicationStore(db)
    try:
        app = await store.get_application(current_user.id, application_id)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Application not found")
    similar = await DuplicateDetector(store).find_similar_applications(
        current_user.id, app.company, app.title, threshold=threshold, exclude_id=app.id
    )
    return [
        SimilarApplication(
            id=other.id,
            company=other.company,
            title=other.title,
            status=other.status,
            date_applied=other.date_applied,
            similarity=score,
        )
        for other, score in similar
    ]
