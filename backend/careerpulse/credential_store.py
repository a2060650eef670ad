"""Mailbox credentials in DB (EmailCredential model), one row per user and provider."""
from datetime import datetime
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from .models import EmailCredential, utcnow

PROVIDER_GMAIL = "gmail"


async def get_credential(
    db: AsyncSession, user_id: int, provider: str = PROVIDER_GMAIL
) -> Optional[EmailCredential]:
    result = await db.execute(
        select(EmailCredential).where(
            EmailCredential.user_id == user_id,
            EmailCredential.provider == provider,
        )
    )
    return result.scalars().first()


async def save_credential(
    db: AsyncSession,
    user_id: int,
    access_token: str,
    refresh_token: str,
    expires_at: datetime,
    email: Optional[str] = None,
    provider: str = PROVIDER_GMAIL,
) -> EmailCredential:
    """Insert or replace the credential for (user, provider)."""
    if not refresh_token:
        raise ValueError("refresh_token is required to store a mailbox credential")
    row = await get_credential(db, user_id, provider)
    now = utcnow()
    if row:
        row.access_token = access_token
        row.refresh_token = refresh_token
        row.expires_at = expires_at
        row.email = email or row.email
        row.updated_at = now
    else:
        row = EmailCredential(
            user_id=user_id,
            provider=provider,
            email=email,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
            created_at=now,
            updated_at=now,
        )
        db.add(row)
    await db.commit()
    return row


async def update_access_token(
    db: AsyncSession, credential: EmailCredential, access_token: str, expires_at: datetime
) -> EmailCredential:
    """Persist a refreshed access token; refresh_token is left as is."""
    credential.access_token = access_token
    credential.expires_at = expires_at
    credential.updated_at = utcnow()
    await db.commit()
    return credential


async def delete_credential(db: AsyncSession, user_id: int, provider: str = PROVIDER_GMAIL) -> None:
    await db.execute(
        delete(EmailCredential).where(
            EmailCredential.user_id == user_id,
            EmailCredential.provider == provider,
        )
    )
    await db.commit()
