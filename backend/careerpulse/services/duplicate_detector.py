"""Duplicate detection for application candidates, always scoped to the candidate's user."""
import logging
import re
from typing import List, Optional

from ..schemas import ApplicationCandidate, DuplicateCheckResult
from .application_store import ApplicationStore

logger = logging.getLogger(__name__)

SIMILARITY_THRESHOLD = 0.7


def string_similarity(a: Optional[str], b: Optional[str]) -> float:
    """
    Similarity in [0, 1]: 1.0 for equal strings (case/space-insensitive),
    0.8 when one contains the other, otherwise Dice overlap of words.
    """
    if not a or not b:
        return 0.0
    s1 = a.lower().strip()
    s2 = b.lower().strip()
    if not s1 or not s2:
        return 0.0
    if s1 == s2:
        return 1.0
    if s1 in s2 or s2 in s1:
        return 0.8
    words1 = re.split(r"\s+", s1)
    words2 = re.split(r"\s+", s2)
    common = sum(1 for w in words1 if w in words2)
    return min(1.0, (2 * common) / (len(words1) + len(words2)))


class DuplicateDetector:
    """
    Exact-match gate used by the sync, plus a near-duplicate report.

    Only check_duplicate() decides persistence; find_similar_applications()
    reports near matches and never merges.
    """

    def __init__(self, store: ApplicationStore):
        self.store = store

    async def check_duplicate(self, candidate: ApplicationCandidate) -> DuplicateCheckResult:
        match = await self.store.find_duplicate_application(
            candidate.user_id,
            candidate.company,
            candidate.title,
            candidate.date_applied,
        )
        if match is not None:
            return DuplicateCheckResult(
                is_duplicate=True,
                matched_id=match.id,
                similarity=1.0,
                reason="Exact match (company, title and date applied)",
            )
        return DuplicateCheckResult(is_duplicate=False, matched_id=None, similarity=0.0, reason=None)

    async def find_similar_applications(
        self,
        user_id: int,
        company: str,
        title: str,
        threshold: float = SIMILARITY_THRESHOLD,
        exclude_id: Optional[int] = None,
    ) -> List[tuple]:
        """Return [(application, similarity)] for this user at or above threshold, best first."""
        similar = []
        for app in await self.store.list_applications(user_id):
            if exclude_id is not None and app.id == exclude_id:
                continue
            score = (string_similarity(company, app.company) + string_similarity(title, app.title)) / 2
            if score >= threshold:
                similar.append((app, round(score, 4)))
        similar.sort(key=lambda pair: pair[1], reverse=True)
        logger.debug(f"Found {len(similar)} similar applications for user {user_id}")
        return similar
