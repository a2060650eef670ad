"""Email sync: list candidate messages, prefilter, extract, dedupe, persist and summarize, one message at a time."""
import logging
from enum import Enum
from typing import List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')

from ..credential_store import get_credential
from ..email_relevance_filter import is_candidate
from ..gmail_service import (
    MailboxError,
    NotConnectedError,
    ensure_fresh_credentials,
    list_job_candidate_messages,
)
from ..models import Application, utcnow
from ..schemas import (
    ApplicationCandidate,
    ExtractionResult,
    RawMessage,
    SyncedApplication,
    SyncSummary,
)
from .application_store import ApplicationStore, DuplicateError
from .duplicate_detector import DuplicateDetector
from .field_extractor import FieldExtractor, calculate_confidence, get_field_extractor


class SyncStage(str, Enum):
    IDLE = "idle"
    LISTING = "listing"
    PROCESSING = "processing"
    SUMMARIZING = "summarizing"
    DONE = "done"
    FAILED = "failed"


class MessageOutcome(str, Enum):
    FILTERED = "filtered"  # rejected by the keyword prefilter
    NOT_JOB = "not_job"  # extractor said no, or returned nothing
    DUPLICATE = "duplicate"
    CREATED = "created"


def build_candidate(user_id: int, message: RawMessage, extraction: ExtractionResult) -> ApplicationCandidate:
    """Candidate from a job extraction; date_applied is the message's received date (UTC)."""
    location = extraction.location.strip()[:255]
    received = message.received_at or utcnow()
    return ApplicationCandidate(
        user_id=user_id,
        company=extraction.company.strip()[:255],
        title=extraction.title.strip()[:255],
        status=extraction.status,
        location=location,
        date_applied=received.date(),
        source_message_id=message.id,
        confidence_score=calculate_confidence(extraction),
        remote_policy="Remote" if "remote" in location.lower() else None,
        notes=f'Extracted from email: "{message.subject}"'[:1000],
    )


def candidate_to_application(candidate: ApplicationCandidate) -> Application:
    return Application(
        user_id=candidate.user_id,
        company=candidate.company,
        title=candidate.title,
        status=candidate.status.value,
        location=candidate.location,
        date_applied=candidate.date_applied,
        source=candidate.source,
        source_message_id=candidate.source_message_id,
        confidence_score=candidate.confidence_score,
        remote_policy=candidate.remote_policy,
        notes=candidate.notes or None,
    )


class SyncRun:
    """
    One sync for one user.

    Idle -> Listing -> Processing -> Summarizing -> Done, or Listing -> Failed.
    Only Listing can fail the run; every per-message failure is counted and the
    loop moves on. Messages are handled strictly in listing order so each
    duplicate check sees the applications created earlier in the same run.
    """

    def __init__(self, db: AsyncSession, user_id: int, extractor: Optional[FieldExtractor] = None):
        self.db = db
        self.user_id = user_id
        self.extractor = extractor or get_field_extractor()
        self.store = ApplicationStore(db)
        self.detector = DuplicateDetector(self.store)
        self.stage = SyncStage.IDLE
        self._counts = {"total": 0, "job": 0, "created": 0, "duplicates": 0, "errors": 0}
        self._created: List[SyncedApplication] = []

    async def run(self, max_results: Optional[int] = None, after_date: Optional[str] = None) -> SyncSummary:
        logger.info(f"=== SYNC START (user={self.user_id}, max_results={max_results}, after={after_date}) ===")
        messages, failed_ids = await self._list(max_results, after_date)
        self._counts["errors"] += len(failed_ids)

        self.stage = SyncStage.PROCESSING
        total = len(messages)
        for idx, message in enumerate(messages):
            self._counts["total"] += 1
            try:
                outcome = await self._process(message)
                logger.debug(f"Email {idx+1}/{total}: {outcome.value} (msg_id={message.id})")
            except Exception as e:
                self._counts["errors"] += 1
                logger.error(f"Email {idx+1}/{total}: Processing failed (msg_id={message.id}) - {str(e)[:120]}")
                await self._rollback()

        self.stage = SyncStage.SUMMARIZING
        summary = self._summarize()
        self.stage = SyncStage.DONE

        logger.info("=== SYNC COMPLETE ===")
        logger.info(f"Total messages: {summary.total_messages}")
        logger.info(f"Job messages: {summary.job_messages}")
        logger.info(f"Created: {summary.new_applications}")
        logger.info(f"Duplicates: {summary.duplicates}")
        logger.info(f"Errors: {summary.errors}")
        return summary

    async def _list(self, max_results: Optional[int], after_date: Optional[str]) -> Tuple[List[RawMessage], List[str]]:
        self.stage = SyncStage.LISTING
        try:
            credential = await get_credential(self.db, self.user_id)
            if credential is None:
                raise NotConnectedError("No Gmail connection found. Please connect your Gmail account first.")
            credential = await ensure_fresh_credentials(self.db, credential)
            try:
                return await list_job_candidate_messages(credential, max_results, after_date)
            except MailboxError as e:
                if not e.auth_failed:
                    raise
                # Access token rejected before its recorded expiry: refresh once and retry.
                logger.warning(f"Gmail rejected access token for user {self.user_id}; refreshing")
                credential = await ensure_fresh_credentials(self.db, credential, force=True)
                return await list_job_candidate_messages(credential, max_results, after_date)
        except (NotConnectedError, MailboxError, ValueError):
            self.stage = SyncStage.FAILED
            logger.error(f"=== SYNC FAILED (user={self.user_id}) during listing ===")
            raise

    async def _process(self, message: RawMessage) -> MessageOutcome:
        if not is_candidate(message.subject, message.body):
            return MessageOutcome.FILTERED

        extraction = await self.extractor.extract(message.sender, message.subject, message.body)
        if extraction is None or not extraction.is_job_message:
            return MessageOutcome.NOT_JOB
        self._counts["job"] += 1

        candidate = build_candidate(self.user_id, message, extraction)
        check = await self.detector.check_duplicate(candidate)
        if check.is_duplicate:
            logger.info(f"Duplicate found: {candidate.company} - {candidate.title} (matches #{check.matched_id})")
            self._counts["duplicates"] += 1
            return MessageOutcome.DUPLICATE

        try:
            await self.store.create_application(candidate_to_application(candidate))
        except DuplicateError:
            logger.info(f"Duplicate on insert: {candidate.company} - {candidate.title} (msg_id={message.id})")
            self._counts["duplicates"] += 1
            return MessageOutcome.DUPLICATE

        logger.info(f"Added: {candidate.company} - {candidate.title} (confidence: {candidate.confidence_score}%)")
        self._counts["created"] += 1
        self._created.append(SyncedApplication(
            company=candidate.company,
            title=candidate.title,
            status=candidate.status,
            confidence_score=candidate.confidence_score,
        ))
        return MessageOutcome.CREATED

    async def _rollback(self) -> None:
        try:
            await self.db.rollback()
        except SQLAlchemyError as e:
            logger.error(f"Rollback after message failure failed: {str(e)[:120]}")

    def _summarize(self) -> SyncSummary:
        return SyncSummary(
            total_messages=self._counts["total"],
            job_messages=self._counts["job"],
            new_applications=self._counts["created"],
            duplicates=self._counts["duplicates"],
            errors=self._counts["errors"],
            applications=list(self._created),
        )


async def run_sync(
    db: AsyncSession,
    user_id: int,
    max_results: Optional[int] = None,
    after_date: Optional[str] = None,
    extractor: Optional[FieldExtractor] = None,
) -> SyncSummary:
    """
    Run one sync for user_id and return its summary.

    Raises NotConnectedError (ReconnectRequiredError when the token could not be
    refreshed) or MailboxError before any message is processed; nothing else
    escapes a started run.
    """
    return await SyncRun(db, user_id, extractor).run(max_results, after_date)
