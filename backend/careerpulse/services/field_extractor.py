"""Field extraction: one model call returning strict JSON, cached by content hash, failing closed to None."""
import json
import logging
import re
from typing import Optional

from pydantic import ValidationError

from ..config import settings
from ..schemas import ApplicationStatus, ExtractionResult
from .extraction_cache import ExtractionCache, content_hash

logger = logging.getLogger(__name__)

# Placeholder values the model is told to use when a field is absent
UNKNOWN_VALUES = {"unknown", "unknown company", "unknown position", "not specified"}


def build_prompt(sender: str, subject: str, body: str, body_chars: int = 2000) -> str:
    body_sample = (body or "")[:body_chars]
    return f"""You are an expert at analyzing job application emails.

Analyze this email and determine:
1. Is this a job application related email? (true/false)
2. If yes, extract: company name, job title, status, location

Email From: {sender}
Email Subject: {subject}
Email Body: {body_sample}

Return ONLY a valid, complete JSON object with these exact keys:
isJobMessage, company, title, status, location
Do not include any explanation, markdown formatting, or code blocks.

Rules for classification:
- isJobMessage: true if this is about a job application, interview, offer, or rejection
- isJobMessage: false if this is marketing, newsletter, spam, a job alert digest, or unrelated

Rules for extraction (only if isJobMessage is true):
- company: the actual hiring company, NOT an applicant tracking system such as
  Greenhouse, Lever, Workday, Myworkday, Jobvite, Ashby, iCIMS.
- title: the COMPLETE job title. If not found, use "Not specified". Never leave it empty.
- status: exactly one of "Applied", "Interview", "Offer", "Rejected"
  * "Applied" = application received/confirmed
  * "Interview" = invitation to interview or schedule a call
  * "Offer" = job offer
  * "Rejected" = application declined/not moving forward
- location: city/state if mentioned, "Remote" for remote work, otherwise "Not specified"

Examples:
{{"isJobMessage":true,"company":"Google","title":"Software Engineer","status":"Applied","location":"Mountain View, CA"}}
{{"isJobMessage":true,"company":"Amazon","title":"Software Development Engineer II","status":"Interview","location":"Seattle, WA"}}
{{"isJobMessage":false,"company":"","title":"","status":"","location":""}}"""


def _parse_json_response(text: str) -> dict:
    """Parse JSON from model response, handling markdown code blocks."""
    text = re.sub(r"```json\s*", "", text or "")
    text = re.sub(r"```\s*", "", text)
    text = text.strip()

    try:
        return json.loads(text)
    except json.JSONDecodeError:
        match = re.search(r"\{[\s\S]*\}", text, re.DOTALL)
        if match:
            try:
                return json.loads(match.group())
            except json.JSONDecodeError:
                pass
        return {}


def _is_known(value: Optional[str]) -> bool:
    return bool(value) and value.strip().lower() not in UNKNOWN_VALUES


def calculate_confidence(result: ExtractionResult) -> int:
    """Confidence 0-100 for a model extraction: 60 base, +15 company, +15 title, +10 non-Applied status."""
    score = 60
    if _is_known(result.company):
        score += 15
    if _is_known(result.title):
        score += 15
    if result.status is not None and result.status != ApplicationStatus.APPLIED:
        score += 10
    return min(score, 100)


class FieldExtractor:
    """
    Classifies a message and extracts {company, title, status, location}.

    extract() never raises: service errors, unparseable output and payloads that
    violate the result shape all return None, and are not cached.
    """

    def __init__(
        self,
        client=None,
        cache: Optional[ExtractionCache] = None,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        body_chars: Optional[int] = None,
    ):
        self.client = client
        self.cache = cache if cache is not None else ExtractionCache(settings.extraction_cache_max_size)
        self.model = model or settings.openai_model or "gpt-4o-mini"
        self.temperature = settings.openai_temperature if temperature is None else temperature
        self.max_tokens = max_tokens or settings.openai_max_tokens
        self.body_chars = body_chars or settings.extraction_body_chars

    async def _call_llm(self, prompt: str) -> str:
        """Call the chat model in JSON mode and return the response text."""
        if self.client is None:
            raise ValueError("No extraction client configured")
        response = await self.client.chat.completions.create(
            model=self.model,
            temperature=float(self.temperature),
            max_tokens=self.max_tokens,
            response_format={"type": "json_object"},
            messages=[
                {"role": "system", "content": "You extract job application data from emails. Return strict JSON only."},
                {"role": "user", "content": prompt},
            ],
        )
        return (response.choices[0].message.content or "").strip()

    async def extract(self, sender: str, subject: str, body: str) -> Optional[ExtractionResult]:
        key = content_hash(sender, subject, body)
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        try:
            text = await self._call_llm(build_prompt(sender, subject, body, self.body_chars))
        except Exception as e:
            logger.warning(f"Extraction call failed: {str(e)[:120]}")
            return None

        try:
            result = ExtractionResult.model_validate(_parse_json_response(text))
        except ValidationError as e:
            logger.warning(f"Invalid extraction payload: {e.errors()[:1]}")
            return None
        except Exception as e:
            logger.warning(f"Unparseable extraction response: {type(e).__name__}")
            return None

        if not result.is_job_message:
            result = ExtractionResult.not_job()
        self.cache.put(key, result)
        return result

    def clear_cache(self) -> None:
        self.cache.clear()

    def cache_stats(self) -> dict:
        return self.cache.stats()


_extractor: Optional[FieldExtractor] = None


def get_field_extractor() -> FieldExtractor:
    """Process-wide extractor (shared cache). Raises ValueError if OPENAI_API_KEY is not set."""
    global _extractor
    if _extractor is None:
        if not settings.openai_api_key:
            raise ValueError("OPENAI_API_KEY not set. Add to .env or environment.")
        from openai import AsyncOpenAI
        _extractor = FieldExtractor(client=AsyncOpenAI(api_key=settings.openai_api_key))
    return _extractor
