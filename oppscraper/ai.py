"""
AI-assisted extraction of structured opportunity records from scraped pages
"""

import json
import logging
import re
import time
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional, Protocol

from .errors import AIParseFailed, AIProviderError
from .models import ScrapedContent


logger = logging.getLogger(__name__)

CATEGORIES = (
    'Scholarships', 'Fellowships', 'Grants', 'Conferences',
    'Competitions', 'Exchange Program', 'Forum', 'Misc'
)
FUNDING_TYPES = (
    'Full Funding', 'Partial Funding', 'Prize Money', 'Stipend',
    'Grant', 'Variable Amount', 'No Funding'
)

CORE_FIELDS = (
    'title', 'organization', 'description', 'deadline',
    'about_opportunity', 'requirements', 'how_to_apply'
)
REQUIRED_FIELDS = ('title', 'organization')
IMPORTANT_FIELDS = (
    'description', 'deadline', 'about_opportunity', 'requirements',
    'how_to_apply', 'what_you_get', 'category', 'location'
)
BONUS_FIELDS = (
    'contact_email', 'amount', 'funding_type', 'eligible_countries',
    'program_start_date', 'program_end_date', 'eligibility_age'
)

# Model JSON key -> OpportunityRecord attribute
AI_FIELD_MAP = {
    'title': 'title',
    'organization': 'organization',
    'description': 'description',
    'category': 'category',
    'location': 'location',
    'deadline': 'deadline',
    'amount': 'amount',
    'tags': 'tags',
    'url': 'url',
    'featured': 'featured',
    'aboutOpportunity': 'about_opportunity',
    'requirements': 'requirements',
    'howToApply': 'how_to_apply',
    'whatYouGet': 'what_you_get',
    'programStartDate': 'program_start_date',
    'programEndDate': 'program_end_date',
    'contactEmail': 'contact_email',
    'eligibilityAge': 'eligibility_age',
    'languageRequirements': 'language_requirements',
    'fundingType': 'funding_type',
    'eligibleCountries': 'eligible_countries',
    'minAmount': 'min_amount',
    'maxAmount': 'max_amount',
}

DEFAULT_MODEL = 'gemini-2.0-flash'
FALLBACK_MODEL_VERSION = 'metadata-fallback'

EXTRACTION_PROMPT = """
Extract structured opportunity information from this content and format it as JSON according to our opportunity schema.

CONTENT TO ANALYZE:
Title: {title}
URL: {source_url}
Content: {content}

REQUIRED OUTPUT FORMAT (JSON only, no additional text):
{{
  "title": "Clear, engaging title (max 100 chars)",
  "organization": "Organization/Company name",
  "description": "Brief 2-3 sentence description (max 300 chars)",
  "category": "{categories}",
  "location": "Location or 'Global'",
  "deadline": "YYYY-MM-DD format or descriptive text",
  "amount": "Funding amount with currency or 'Variable'",
  "tags": "comma,separated,relevant,keywords",
  "url": "{source_url}",
  "featured": false,
  "aboutOpportunity": "Detailed description (200-1000 words)",
  "requirements": "Detailed eligibility requirements",
  "howToApply": "Step-by-step application process",
  "whatYouGet": "Benefits, funding details, what recipients receive",
  "programStartDate": "YYYY-MM-DD or empty",
  "programEndDate": "YYYY-MM-DD or empty",
  "contactEmail": "Contact email if found or empty",
  "eligibilityAge": "Age requirements if specified or empty",
  "languageRequirements": "Language requirements if any or empty",
  "fundingType": "{funding_types}",
  "eligibleCountries": "Countries/regions eligible or 'Global'",
  "minAmount": "Minimum amount if range specified or empty",
  "maxAmount": "Maximum amount if range specified or empty"
}}

EXTRACTION RULES:
1. Use ONLY information present in the content - never make up information
2. Choose the most appropriate category from the provided options
3. Format dates as YYYY-MM-DD when possible, otherwise use descriptive text
4. Extract comprehensive information for aboutOpportunity, requirements, howToApply, whatYouGet
5. If information is missing, use empty string ""
6. Tags should be 5-10 relevant keywords separated by commas
7. Amount should include currency symbol when available

Return ONLY the JSON object, no markdown formatting or additional text.
"""


class AIClient(Protocol):
    def generate(self, prompt: str) -> str:
        ...


class GeminiClient:
    """Request/response wrapper around the Google GenAI SDK"""

    def __init__(self, api_key: str, model: str = DEFAULT_MODEL,
                 temperature: float = 0.1, max_output_tokens: int = 4096):
        from google import genai

        self.model = model
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens
        self.client = genai.Client(api_key=api_key)
        logger.info(f"GeminiClient initialized with model: {model}")

    def generate(self, prompt: str) -> str:
        from google.genai import types

        config = types.GenerateContentConfig(
            temperature=self.temperature,
            max_output_tokens=self.max_output_tokens,
        )
        try:
            response = self.client.models.generate_content(
                model=self.model,
                contents=prompt,
                config=config,
            )
        except Exception as exc:
            raise AIProviderError(f"Gemini request failed: {exc}") from exc
        return response.text or ''


@dataclass
class OpportunityRecord:
    """Validated opportunity as extracted from a page"""
    title: str = ''
    organization: str = ''
    description: str = ''
    category: str = 'Misc'
    location: str = 'Global'
    deadline: str = ''
    amount: str = ''
    tags: str = ''
    url: str = ''
    featured: bool = False
    about_opportunity: str = ''
    requirements: str = ''
    how_to_apply: str = ''
    what_you_get: str = ''
    program_start_date: str = ''
    program_end_date: str = ''
    contact_email: str = ''
    eligibility_age: str = ''
    language_requirements: str = ''
    funding_type: str = 'Variable Amount'
    eligible_countries: str = 'Global'
    min_amount: str = ''
    max_amount: str = ''

    @classmethod
    def from_payload(cls, payload: Dict[str, Any], source_url: str) -> "OpportunityRecord":
        """Build a record from model JSON, applying the defaulting rules

        ``url`` always comes from the page we scraped, never from the model.
        """
        values: Dict[str, Any] = {}
        for key, attr in AI_FIELD_MAP.items():
            if key not in payload or payload[key] is None:
                continue
            raw = payload[key]
            if attr == 'featured':
                values[attr] = raw if isinstance(raw, bool) else str(raw).strip().lower() == 'true'
            elif attr == 'tags' and isinstance(raw, list):
                values[attr] = ','.join(str(tag).strip() for tag in raw if str(tag).strip())
            else:
                values[attr] = str(raw).strip()

        record = cls(**values)
        record.url = source_url
        record.category = record.category or 'Misc'
        record.funding_type = record.funding_type or 'Variable Amount'
        record.eligible_countries = record.eligible_countries or 'Global'
        record.location = record.location or 'Global'
        return record

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass
class AIExtractionResult:
    success: bool
    data: Optional[OpportunityRecord] = None
    confidence: Optional[float] = None
    validation_errors: List[str] = field(default_factory=list)
    extracted_fields: List[str] = field(default_factory=list)
    error: Optional[str] = None
    processing_time_ms: Optional[int] = None
    fallback: bool = False
    model_version: Optional[str] = None


def build_extraction_prompt(title: str, content: str, source_url: str) -> str:
    return EXTRACTION_PROMPT.format(
        title=title,
        source_url=source_url,
        content=content,
        categories='|'.join(CATEGORIES),
        funding_types='|'.join(FUNDING_TYPES),
    )


def sanitize_response(text: str) -> str:
    """Strip markdown fences and chatter around the outermost JSON object"""
    cleaned = re.sub(r'```(?:json)?', '', text or '', flags=re.I).strip()
    start = cleaned.find('{')
    end = cleaned.rfind('}')
    if start == -1 or end < start:
        raise AIParseFailed('No JSON object found in AI response', raw_response=text)
    return cleaned[start:end + 1]


def parse_ai_response(text: str) -> Dict[str, Any]:
    """Sanitize and decode a model response into a JSON object"""
    json_text = sanitize_response(text)
    try:
        payload = json.loads(json_text)
    except json.JSONDecodeError as exc:
        raise AIParseFailed(f"Failed to parse AI response: {exc}", raw_response=text) from exc
    if not isinstance(payload, dict):
        raise AIParseFailed('AI response is not a JSON object', raw_response=text)
    return payload


def _filled(value: Any) -> bool:
    return isinstance(value, str) and value.strip() != ''


def calculate_confidence(record: OpportunityRecord) -> float:
    """Score how complete a record is, independent of anything the model claims"""
    score = float(sum(1 for name in CORE_FIELDS if _filled(getattr(record, name))))

    if _filled(record.deadline):
        score += 0.5
    if _filled(record.amount) and record.amount.strip() != 'Variable':
        score += 0.5
    if _filled(record.contact_email):
        score += 0.5

    return min(score / len(CORE_FIELDS), 1.0)


def _normalize_choice(value: str, choices) -> Optional[str]:
    lowered = value.strip().lower()
    for choice in choices:
        if lowered in (choice.lower(), choice.lower().rstrip('s')):
            return choice
    return None


def validate_record(record: OpportunityRecord) -> Dict[str, Any]:
    """Check required fields and enum values; invalid enums fall back to defaults"""
    errors: List[str] = []
    extracted: List[str] = []

    for name in REQUIRED_FIELDS:
        if _filled(getattr(record, name)):
            extracted.append(name)
        else:
            errors.append(f"Missing required field: {name}")

    for name in IMPORTANT_FIELDS + BONUS_FIELDS:
        if _filled(getattr(record, name)):
            extracted.append(name)

    category = _normalize_choice(record.category, CATEGORIES)
    if category is None:
        errors.append(f"Invalid category: {record.category}")
        record.category = 'Misc'
    else:
        record.category = category

    funding_type = _normalize_choice(record.funding_type, FUNDING_TYPES)
    if funding_type is None:
        errors.append(f"Invalid funding type: {record.funding_type}")
        record.funding_type = 'Variable Amount'
    else:
        record.funding_type = funding_type

    is_valid = not any(error.startswith('Missing required field') for error in errors)
    return {'is_valid': is_valid, 'errors': errors, 'extracted_fields': extracted}


def fallback_record(scraped: ScrapedContent) -> OpportunityRecord:
    """Minimal record built from scraped metadata when the model is unusable"""
    meta = scraped.metadata
    return OpportunityRecord(
        title=scraped.title,
        organization=meta.organization or 'Unknown',
        description=scraped.content[:200],
        category='Misc',
        location=meta.location or 'Global',
        deadline=meta.deadline or '',
        amount=meta.amount or 'Variable',
        url=scraped.url,
        about_opportunity=scraped.content[:1000],
        requirements=meta.requirements or '',
        how_to_apply=meta.apply_info or 'Visit the website for application details',
        tags='opportunity,funding',
        funding_type='Variable Amount',
        eligible_countries='Global',
        featured=False,
    )


class AIExtractor:
    """Turns page text into an OpportunityRecord via a generative model"""

    def __init__(self, client: Optional[AIClient], model_version: str = DEFAULT_MODEL):
        self.client = client
        self.model_version = model_version

    def extract(self, title: str, content: str, source_url: str) -> AIExtractionResult:
        """Ask the model for a record; failures come back as success=False"""
        start = time.monotonic()
        try:
            record = self._request_record(title, content, source_url)
        except (AIParseFailed, AIProviderError) as exc:
            logger.warning(f"AI extraction failed for {source_url}: {exc}")
            return AIExtractionResult(success=False, error=str(exc),
                                      processing_time_ms=self._elapsed(start))
        return self._result(record, start, self.model_version)

    def process_scraped_content(self, scraped: ScrapedContent) -> AIExtractionResult:
        """Extract with the model, falling back to scraped metadata if it is unusable"""
        start = time.monotonic()
        try:
            record = self._request_record(scraped.title, scraped.content, scraped.url)
        except (AIParseFailed, AIProviderError) as exc:
            logger.warning(f"Using metadata fallback for {scraped.url}: {exc}")
            result = self._result(fallback_record(scraped), start, FALLBACK_MODEL_VERSION)
            result.success = True
            result.fallback = True
            result.error = str(exc)
            return result
        return self._result(record, start, self.model_version)

    def _result(self, record: OpportunityRecord, start: float, model_version: str) -> AIExtractionResult:
        validation = validate_record(record)
        return AIExtractionResult(
            success=validation['is_valid'],
            data=record,
            confidence=calculate_confidence(record),
            validation_errors=validation['errors'],
            extracted_fields=validation['extracted_fields'],
            processing_time_ms=self._elapsed(start),
            model_version=model_version,
        )

    def _request_record(self, title: str, content: str, source_url: str) -> OpportunityRecord:
        if self.client is None:
            raise AIProviderError('No AI client configured')

        prompt = build_extraction_prompt(title, content, source_url)
        try:
            response_text = self.client.generate(prompt)
        except AIProviderError:
            raise
        except Exception as exc:
            raise AIProviderError(f"AI request failed: {exc}") from exc

        payload = parse_ai_response(response_text)
        return OpportunityRecord.from_payload(payload, source_url)

    @staticmethod
    def _elapsed(start: float) -> int:
        return int((time.monotonic() - start) * 1000)
