"""OAuth CSRF state persisted in DB for the Gmail connect flow."""
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from .models import OAuthState, utcnow

OAUTH_STATE_TTL_SECONDS = 900  # 15 minutes (avoids invalid_state when slow or callback retried)

KIND_GMAIL = "gmail"


async def oauth_state_set(
    db: AsyncSession,
    kind: str,
    state_token: str,
    user_id: Optional[int],
    redirect_url: Optional[str] = None,
) -> None:
    """Store OAuth state token. Overwrites if exists."""
    now = utcnow()
    row = await db.get(OAuthState, state_token)
    if row:
        row.kind = kind
        row.user_id = user_id
        row.redirect_url = redirect_url
        row.created_at = now
    else:
        db.add(OAuthState(
            state_token=state_token,
            kind=kind,
            user_id=user_id,
            redirect_url=redirect_url or "",
            created_at=now,
        ))
    await db.commit()


async def oauth_state_consume(db: AsyncSession, state_token: str) -> Optional[dict]:
    """
    Look up state, validate TTL, delete row, return payload or None.
    Returns {"redirect_url", "user_id", "kind", "created_at"} if valid; None if missing or expired.
    """
    if not state_token:
        return None
    row = await db.get(OAuthState, state_token)
    if not row:
        return None
    expired = (utcnow() - row.created_at).total_seconds() > OAUTH_STATE_TTL_SECONDS
    payload = {
        "redirect_url": row.redirect_url or "",
        "user_id": row.user_id,
        "kind": row.kind,
        "created_at": row.created_at,
    }
    await db.delete(row)
    await db.commit()
    return None if expired else payload


async def oauth_state_cleanup_expired(db: AsyncSession) -> None:
    """Delete expired state rows."""
    rows = (await db.execute(select(OAuthState))).scalars().all()
    now = utcnow()
    stale = [r.state_token for r in rows if (now - r.created_at).total_seconds() > OAUTH_STATE_TTL_SECONDS]
    if stale:
        await db.execute(delete(OAuthState).where(OAuthState.state_token.in_(stale)))
        await db.commit()
