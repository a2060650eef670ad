"""
Email relevance filter - cheap keyword gate in front of the field extractor.

Runs before any model call so newsletters, receipts and account notices never
cost an extraction. Each keyword set is one compiled alternation, so a message
is scanned once per set.
"""

import re
from typing import Iterable, Pattern

# Keywords that suggest job-related content
JOB_KEYWORDS = [
    "application", "apply", "applied", "interview", "offer", "position",
    "role", "job", "career", "hiring", "recruit", "recruiter", "recruiting",
    "candidate", "rejection", "rejected", "thank you for", "thanks for applying",
    "congratulations", "schedule", "phone screen", "video call", "meet with",
    "next steps",
]

# Keywords that indicate marketing/spam/account mail
SPAM_KEYWORDS = [
    "unsubscribe", "promotional", "promotion", "sale", "discount", "deal",
    "coupon", "newsletter", "update your", "verify your", "reset password",
    "confirm email", "limited time",
]

# With marketing language present, the body must carry at least this many
# distinct job keywords (or the subject at least one) for the message to pass.
STRONG_BODY_JOB_KEYWORDS = 2


def _compile(keywords: Iterable[str]) -> Pattern[str]:
    alternation = "|".join(re.escape(k).replace(r"\ ", r"\s+") for k in sorted(keywords, key=len, reverse=True))
    return re.compile(rf"\b({alternation})(?:s|es|ed|ing|ers?)?\b", re.I)


_JOB_RE = _compile(JOB_KEYWORDS)
_SPAM_RE = _compile(SPAM_KEYWORDS)


def _distinct_matches(pattern: Pattern[str], text: str) -> set[str]:
    return {re.sub(r"\s+", " ", m.group(1).lower()) for m in pattern.finditer(text)}


def is_candidate(subject: str, body: str) -> bool:
    """
    True when the message is worth an extraction call.

    - No job keyword anywhere: rejected.
    - Job keyword and no marketing keyword: accepted.
    - Marketing keyword present: accepted only if the subject names a job
      event or the body carries strong job language.
    """
    subject = subject or ""
    body = body or ""

    subject_job = _JOB_RE.search(subject) is not None
    body_job = _distinct_matches(_JOB_RE, body)
    if not subject_job and not body_job:
        return False

    if _SPAM_RE.search(subject) is None and _SPAM_RE.search(body) is None:
        return True

    return subject_job or len(body_job) >= STRONG_BODY_JOB_KEYWORDS
