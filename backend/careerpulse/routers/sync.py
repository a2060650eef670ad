"""Email sync API: POST sync, GET connection status and Gmail profile, Gmail OAuth connect."""
import asyncio
import logging
from typing import Dict, Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from ..auth import get_current_user_required
from ..credential_store import get_credential
from ..database import get_db
from ..gmail_service import (
    GmailOAuthStateError,
    MailboxError,
    NotConnectedError,
    ReconnectRequiredError,
    ensure_fresh_credentials,
    finish_gmail_oauth,
    format_after_date,
    get_gmail_profile,
    start_gmail_oauth,
)
from ..models import User
from ..schemas import ConnectionStatus, GmailProfile, SyncRequest, SyncSummary
from ..services.field_extractor import get_field_extractor
from ..services.sync_service import run_sync

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["sync"])

# One running sync per user (single process).
_sync_locks: Dict[int, asyncio.Lock] = {}


def _user_lock(user_id: int) -> asyncio.Lock:
    lock = _sync_locks.get(user_id)
    if lock is None:
        lock = asyncio.Lock()
        _sync_locks[user_id] = lock
    return lock


def _drop_user_lock(user_id: int, lock: asyncio.Lock) -> None:
    if _sync_locks.get(user_id) is lock and not lock.locked():
        del _sync_locks[user_id]


def _not_connected(e: NotConnectedError) -> JSONResponse:
    if isinstance(e, ReconnectRequiredError):
        return JSONResponse(
            status_code=401,
            content={"error": str(e), "reconnect_required": True},
        )
    return JSONResponse(status_code=401, content={"error": "Gmail not connected"})


@router.post("/email/sync", response_model=SyncSummary)
async def sync_emails(
    body: Optional[SyncRequest] = None,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user_required),
):
    """Run one sync for the current user and return its summary. 409 while another sync is running."""
    body = body or SyncRequest()
    try:
        format_after_date(body.after_date)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    try:
        extractor = get_field_extractor()
    except ValueError as e:
        raise HTTPException(status_code=503, detail=str(e))

    lock = _user_lock(current_user.id)
    if lock.locked():
        raise HTTPException(status_code=409, detail="A sync is already running for this user.")
    try:
        async with lock:
            return await run_sync(
                db,
                current_user.id,
                max_results=body.max_results,
                after_date=body.after_date,
                extractor=extractor,
            )
    except NotConnectedError as e:
        return _not_connected(e)
    except MailboxError as e:
        logger.error(f"Sync failed for user {current_user.id}: {e}")
        raise HTTPException(status_code=502, detail=str(e))
    finally:
        _drop_user_lock(current_user.id, lock)


@router.get("/email/status", response_model=ConnectionStatus)
async def email_status(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user_required),
):
    """Whether the user has a stored Gmail credential, and for which address."""
    credential = await get_credential(db, current_user.id)
    if credential is None:
        return ConnectionStatus(connected=False)
    return ConnectionStatus(connected=True, email=credential.email, updated_at=credential.updated_at)


@router.get("/email/profile", response_model=GmailProfile)
async def email_profile(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user_required),
):
    credential = await get_credential(db, current_user.id)
    if credential is None:
        return _not_connected(NotConnectedError("Gmail not connected"))
    try:
        credential = await ensure_fresh_credentials(db, credential)
        return GmailProfile(**await get_gmail_profile(credential))
    except NotConnectedError as e:
        return _not_connected(e)
    except MailboxError as e:
        raise HTTPException(status_code=502, detail=str(e))


@router.get("/gmail/auth")
async def gmail_auth(
    redirect_url: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user_required),
):
    """
    Start Gmail OAuth for the current user. Redirects to Google's consent screen;
    add GET /api/gmail/callback as redirect URI in Google Cloud.
    Optional: ?redirect_url=http://localhost:5173
    """
    redirect_after = redirect_url or "http://localhost:5173"
    try:
        auth_url = await start_gmail_oauth(db, current_user.id, redirect_after)
    except ValueError as e:
        return {"error": str(e)}
    return RedirectResponse(url=auth_url, status_code=302)


@router.get("/gmail/callback")
async def gmail_callback(
    code: Optional[str] = None,
    state: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
):
    """OAuth callback. Validates state (bound to the user who started the flow) and stores the credential."""
    if not code or not state:
        raise HTTPException(status_code=400, detail="Missing code or state")
    try:
        redirect_url = await finish_gmail_oauth(db, code=code, state=state)
    except GmailOAuthStateError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ValueError as e:
        return {"error": str(e)}
    return RedirectResponse(url=redirect_url, status_code=302)
