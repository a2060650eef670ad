"""Gmail API integration: token refresh, paginated job-candidate listing, error classification, OAuth connect."""
import asyncio
import base64
import html
import logging
import re
import secrets
import time
from datetime import datetime, timedelta, timezone
from email.utils import parsedate_to_datetime
from typing import List, Optional, Tuple

from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import Flow
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from sqlalchemy.ext.asyncio import AsyncSession

from .config import settings
from .credential_store import delete_credential, save_credential, update_access_token
from .models import EmailCredential, utcnow
from .oauth_state_db import KIND_GMAIL, oauth_state_cleanup_expired, oauth_state_consume, oauth_state_set
from .schemas import RawMessage

logger = logging.getLogger(__name__)

SCOPES = ["https://www.googleapis.com/auth/gmail.readonly"]

# Recall-oriented server-side filter; the keyword prefilter and extractor handle precision.
JOB_QUERY_TERMS = [
    "application", "apply", "applied", "interview", "offer", "rejected", "rejection",
    "position", "role", "job", "career", "hiring", "recruit", "candidate",
    '"thank you for"', '"thanks for applying"', "congratulations", "schedule",
    '"phone screen"', '"video call"', '"next steps"',
]

RETRYABLE_STATUSES = (429, 500, 503)


class AuthError(Exception):
    """Refresh token rejected by the provider (invalid or revoked)."""


class FetchError(Exception):
    """A single message could not be fetched."""

    def __init__(self, message_id: str, original: Exception):
        super().__init__(f"Failed to fetch message {message_id}: {original}")
        self.message_id = message_id
        self.original = original


class MailboxError(Exception):
    """Any provider failure surfaced to the sync, with a human-readable context prefix."""

    def __init__(self, message: str, original: Optional[Exception] = None, auth_failed: bool = False):
        super().__init__(message)
        self.original = original
        self.auth_failed = auth_failed


class NotConnectedError(Exception):
    """No usable mailbox credential for the user."""


class ReconnectRequiredError(NotConnectedError):
    """Credential could not be refreshed and was removed; the user must reconnect."""


class GmailOAuthStateError(ValueError):
    """OAuth callback state missing, unknown, expired or not bound to a user."""


def _http_status(e: Exception) -> Optional[int]:
    resp = getattr(e, "resp", None)
    status = getattr(resp, "status", None)
    try:
        return int(status) if status is not None else None
    except (TypeError, ValueError):
        return None


def _mailbox_error(context: str, e: Exception) -> MailboxError:
    """Wrap a provider exception; 401 means the access token was rejected."""
    auth_failed = isinstance(e, HttpError) and _http_status(e) == 401
    return MailboxError(f"{context}: {e}", original=e, auth_failed=auth_failed)


# =============================================================================
# Credentials
# =============================================================================

def _google_credentials(access_token: Optional[str], refresh_token: Optional[str] = None) -> Credentials:
    return Credentials(
        token=access_token,
        refresh_token=refresh_token,
        token_uri=settings.google_token_uri,
        client_id=settings.google_client_id or None,
        client_secret=settings.google_client_secret or None,
        scopes=SCOPES,
    )


def refresh_access_token(refresh_token: str) -> Tuple[str, datetime]:
    """
    Exchange a refresh token for a new access token. Blocking; run in a worker thread.
    Returns (access_token, expires_at as naive UTC).
    Raises AuthError if the provider rejects the refresh token.
    """
    creds = _google_credentials(None, refresh_token)
    try:
        creds.refresh(Request())
    except RefreshError as e:
        raise AuthError(str(e)) from e
    if not creds.token:
        raise AuthError("Token endpoint returned no access token")
    expires_at = creds.expiry or (utcnow() + timedelta(hours=1))
    if expires_at.tzinfo:
        expires_at = expires_at.astimezone(timezone.utc).replace(tzinfo=None)
    return creds.token, expires_at


def _needs_refresh(credential: EmailCredential, now: Optional[datetime] = None) -> bool:
    now = now or utcnow()
    skew = timedelta(seconds=max(0, settings.token_refresh_skew_seconds))
    return credential.expires_at is None or now >= credential.expires_at - skew


async def ensure_fresh_credentials(
    db: AsyncSession, credential: EmailCredential, force: bool = False
) -> EmailCredential:
    """
    Return a credential valid for at least one API call, refreshing it when expired
    (or unconditionally with force=True, after the provider rejected the access token).

    An unusable refresh token means the mailbox is disconnected: the record is
    deleted and ReconnectRequiredError is raised. Network failures while
    refreshing raise MailboxError and leave the record in place.
    """
    if not force and not _needs_refresh(credential):
        return credential

    user_id = credential.user_id
    if not credential.refresh_token:
        logger.warning(f"Credential for user {user_id} has no refresh token; removing it")
        await delete_credential(db, user_id, credential.provider)
        raise ReconnectRequiredError("Gmail connection expired. Please reconnect your Gmail account.")

    try:
        access_token, expires_at = await asyncio.to_thread(refresh_access_token, credential.refresh_token)
    except AuthError as e:
        logger.warning(f"Token refresh rejected for user {user_id}: {e}")
        await delete_credential(db, user_id, credential.provider)
        raise ReconnectRequiredError("Gmail token refresh failed. Please reconnect your Gmail account.") from e
    except TransportError as e:
        raise MailboxError(f"Failed to refresh Gmail token: {e}", original=e) from e

    logger.info(f"Refreshed Gmail access token for user {user_id} (expires {expires_at.isoformat()})")
    return await update_access_token(db, credential, access_token, expires_at)


def build_gmail_service(access_token: str):
    """Gmail API client authorized with a bare access token (refresh is handled by ensure_fresh_credentials)."""
    return build("gmail", "v1", credentials=_google_credentials(access_token), cache_discovery=False)


# =============================================================================
# Message parsing
# =============================================================================

def _decode_base64(data: str) -> str:
    try:
        padded = data + "=" * (-len(data) % 4)
        return base64.urlsafe_b64decode(padded).decode("utf-8", errors="replace")
    except (ValueError, TypeError):
        logger.debug("Could not decode message part")
        return ""


def _strip_html(raw: str) -> str:
    text = re.sub(r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>", "", raw, flags=re.I)
    text = re.sub(r"<style\b[^<]*(?:(?!</style>)<[^<]*)*</style>", "", text, flags=re.I)
    text = re.sub(r"<[^>]+>", " ", text)
    text = html.unescape(text)
    return re.sub(r"\s+", " ", text).strip()


def _get_body(payload: dict) -> str:
    """Prefer text/plain, fall back to stripped text/html, recursing into nested multiparts."""
    if payload.get("body", {}).get("data"):
        body = _decode_base64(payload["body"]["data"])
        if payload.get("mimeType") == "text/html":
            return _strip_html(body)
        return body
    html_fallback = ""
    for part in payload.get("parts", []) or []:
        data = part.get("body", {}).get("data")
        mime = part.get("mimeType")
        if mime == "text/plain" and data:
            return _decode_base64(data)
        if mime == "text/html" and data and not html_fallback:
            html_fallback = _strip_html(_decode_base64(data))
        elif part.get("parts"):
            nested = _get_body(part)
            if nested:
                return nested
    return html_fallback


def _get_headers(email: dict) -> dict:
    return {h["name"].lower(): h["value"] for h in email.get("payload", {}).get("headers", [])}


def _get_received_date(email: dict) -> Optional[datetime]:
    """Date header as naive UTC; falls back to Gmail's internalDate (epoch ms)."""
    date_str = _get_headers(email).get("date")
    if date_str:
        try:
            received = parsedate_to_datetime(date_str)
            if received.tzinfo:
                received = received.astimezone(timezone.utc).replace(tzinfo=None)
            return received
        except (TypeError, ValueError):
            pass
    internal = email.get("internalDate")
    if internal:
        try:
            return datetime.fromtimestamp(int(internal) / 1000, tz=timezone.utc).replace(tzinfo=None)
        except (TypeError, ValueError, OverflowError):
            return None
    return None


def parse_gmail_message(email: dict) -> RawMessage:
    headers = _get_headers(email)
    return RawMessage(
        id=email.get("id", ""),
        sender=headers.get("from", ""),
        subject=headers.get("subject", ""),
        body=_get_body(email.get("payload", {})),
        received_at=_get_received_date(email),
        thread_id=email.get("threadId"),
    )


# =============================================================================
# Listing
# =============================================================================

# Rate limiting: exponential backoff
def _with_backoff(fn, max_retries: int = 5):
    for attempt in range(max_retries):
        try:
            return fn()
        except HttpError as e:
            if _http_status(e) in RETRYABLE_STATUSES and attempt < max_retries - 1:
                time.sleep(2 ** attempt)
                continue
            raise


def list_messages(
    service,
    query: str,
    max_results: int = 100,
    page_token: Optional[str] = None,
) -> dict:
    """List message IDs with pagination."""
    return _with_backoff(
        lambda: service.users()
        .messages()
        .list(
            userId="me",
            q=query,
            maxResults=min(max_results, settings.gmail_page_size),
            pageToken=page_token or None,
        )
        .execute()
    )


def get_message(service, msg_id: str) -> dict:
    """Get full message by ID. Raises FetchError."""
    try:
        return _with_backoff(
            lambda: service.users()
            .messages()
            .get(userId="me", id=msg_id, format="full")
            .execute()
        )
    except Exception as e:
        raise FetchError(msg_id, e) from e


def format_after_date(value: Optional[str]) -> Optional[str]:
    """Normalize YYYY-MM-DD / YYYY/MM/DD to Gmail's YYYY/MM/DD."""
    value = (value or "").strip()
    if not value:
        return None
    value = value.replace("-", "/")
    try:
        return datetime.strptime(value, "%Y/%m/%d").strftime("%Y/%m/%d")
    except ValueError as e:
        raise ValueError(f"Invalid after_date {value!r}; expected YYYY-MM-DD") from e


def default_after_date() -> str:
    days_back = max(1, settings.sync_default_days_back)
    return (utcnow() - timedelta(days=days_back)).strftime("%Y/%m/%d")


def build_job_query(after_date: Optional[str] = None) -> str:
    after = format_after_date(after_date) or default_after_date()
    return f"({' OR '.join(JOB_QUERY_TERMS)}) in:inbox after:{after}"


def _list_message_ids(service, query: str, max_results: int) -> List[str]:
    """Walk list pages (newest first) until max_results ids are collected."""
    ids: List[str] = []
    seen: set[str] = set()
    page_token = None
    page_num = 0

    while len(ids) < max_results:
        page_num += 1
        result = list_messages(service, query, max_results=max_results - len(ids), page_token=page_token)
        messages = result.get("messages", [])
        logger.debug(f"    Page {page_num}: Got {len(messages)} message IDs")
        for msg in messages:
            mid = msg.get("id")
            if mid and mid not in seen:
                seen.add(mid)
                ids.append(mid)

        next_page_token = result.get("nextPageToken")
        if next_page_token is not None and next_page_token == page_token:
            logger.warning("    Pagination stalled (repeated page token); stopping listing.")
            break
        page_token = next_page_token
        if not page_token:
            break
    return ids[:max_results]


def _clamp_max_results(max_results: Optional[int]) -> int:
    if not max_results or max_results < 1:
        max_results = settings.sync_default_max_results
    return min(max_results, settings.sync_max_results_limit)


async def list_job_candidate_messages(
    credential: EmailCredential,
    max_results: Optional[int] = None,
    after_date: Optional[str] = None,
) -> Tuple[List[RawMessage], List[str]]:
    """
    List job-candidate messages newest first. Returns (messages, failed_ids).

    A message whose detail fetch fails is skipped and its id reported in
    failed_ids; listing failures raise MailboxError.
    """
    max_results = _clamp_max_results(max_results)
    query = build_job_query(after_date)
    try:
        service = build_gmail_service(credential.access_token)
        ids = await asyncio.to_thread(_list_message_ids, service, query, max_results)
    except Exception as e:
        raise _mailbox_error("Failed to fetch emails", e) from e

    logger.info(f"Listed {len(ids)} candidate messages for user {credential.user_id}")

    messages: List[RawMessage] = []
    failed_ids: List[str] = []
    for mid in ids:
        try:
            raw = await asyncio.to_thread(get_message, service, mid)
            messages.append(parse_gmail_message(raw))
        except FetchError as e:
            logger.error(f"Error fetching message {mid}: {str(e.original)[:120]}")
            failed_ids.append(mid)
        except Exception as e:
            logger.error(f"Error parsing message {mid}: {str(e)[:120]}")
            failed_ids.append(mid)
    return messages, failed_ids


async def get_gmail_profile(credential: EmailCredential) -> dict:
    try:
        service = build_gmail_service(credential.access_token)
        profile = await asyncio.to_thread(
            lambda: _with_backoff(lambda: service.users().getProfile(userId="me").execute())
        )
    except Exception as e:
        raise _mailbox_error("Failed to fetch Gmail profile", e) from e
    return {
        "email": profile.get("emailAddress"),
        "messages_total": profile.get("messagesTotal"),
        "threads_total": profile.get("threadsTotal"),
    }


# =============================================================================
# OAuth connect
# =============================================================================

def _client_config() -> dict:
    if not settings.google_client_id or not settings.google_client_secret:
        raise ValueError("GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET must be set to connect Gmail")
    return {
        "web": {
            "client_id": settings.google_client_id,
            "client_secret": settings.google_client_secret,
            "auth_uri": "https://accounts.google.com/o/oauth2/auth",
            "token_uri": settings.google_token_uri,
        }
    }


def _make_flow() -> Flow:
    redirect_uri = settings.gmail_oauth_redirect_uri
    if not redirect_uri:
        raise ValueError("GMAIL_OAUTH_REDIRECT_URI must be set to connect Gmail")
    # No PKCE: the callback builds a fresh flow, so a verifier from the start step would be lost.
    return Flow.from_client_config(
        _client_config(), SCOPES, redirect_uri=redirect_uri, autogenerate_code_verifier=False
    )


async def start_gmail_oauth(db: AsyncSession, user_id: int, redirect_url_after: str) -> str:
    """
    Start OAuth with CSRF state bound to user_id.
    Returns the Google authorization URL; finish_gmail_oauth(code, state) completes it.
    """
    flow = _make_flow()
    await oauth_state_cleanup_expired(db)
    state = secrets.token_urlsafe(32)
    await oauth_state_set(db, KIND_GMAIL, state, user_id, redirect_url_after)
    auth_url, _ = flow.authorization_url(prompt="consent", state=state, access_type="offline")
    return auth_url


async def finish_gmail_oauth(db: AsyncSession, code: str, state: Optional[str]) -> str:
    """
    Validate state, exchange code for tokens and store the credential for the bound user.
    Returns the redirect URL to send the browser to.

    A missing or unbound state is a hard failure; identity is never taken from the token.
    """
    if not state:
        raise GmailOAuthStateError("Missing OAuth state")
    entry = await oauth_state_consume(db, state)
    if not entry or entry.get("kind") != KIND_GMAIL:
        raise GmailOAuthStateError("Invalid or expired OAuth state")
    user_id = entry.get("user_id")
    if user_id is None:
        raise GmailOAuthStateError("OAuth state has no user binding")

    flow = _make_flow()
    await asyncio.to_thread(flow.fetch_token, code=code)
    creds = flow.credentials
    if not creds.refresh_token:
        raise ValueError("Google did not return a refresh token; revoke access and connect again")

    expires_at = creds.expiry or (utcnow() + timedelta(hours=1))
    if expires_at.tzinfo:
        expires_at = expires_at.astimezone(timezone.utc).replace(tzinfo=None)

    email = None
    try:
        service = build_gmail_service(creds.token)
        profile = await asyncio.to_thread(lambda: service.users().getProfile(userId="me").execute())
        email = profile.get("emailAddress")
    except Exception as e:
        logger.warning(f"Could not read Gmail profile after connect: {e}")

    await save_credential(db, user_id, creds.token, creds.refresh_token, expires_at, email=email)
    logger.info(f"Gmail connected for user {user_id}")
    return entry.get("redirect_url") or "http://localhost:5173"
