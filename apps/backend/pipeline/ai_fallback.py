"""
AI fallback extractor.

Sends the cleaned page text and URL to an LLM through OpenRouter and maps the
JSON reply into the common field shape. The model reports its own confidence,
clamped to [0, 1]; the orchestrator applies the acceptance threshold.
"""

import json
import logging
from typing import Any, Dict, Optional

import httpx

from core.notifier import ErrorNotifier
from core.salary import coerce_amount
from .extractor import BaseExtractor, ExtractionInput, ExtractionOutcome, clamp_confidence
from .models import EventType, RECORD_FIELDS

logger = logging.getLogger(__name__)

OPENROUTER_URL = "https://openrouter.ai/api/v1/chat/completions"
DEFAULT_MODEL = "anthropic/claude-3-haiku"
PROVIDER = "openrouter"

SYSTEM_PROMPT = "You are a job extraction assistant. Return only valid JSON."

TEXT_FIELDS = tuple(name for name in RECORD_FIELDS
                    if name not in ('salary_min', 'salary_max', 'custom_sections'))


def build_prompt(url: str, cleaned_html: str) -> str:
    fields = ", ".join(RECORD_FIELDS)
    return (
        f"Extract the job posting at {url} from the page text below.\n\n"
        f"Return one JSON object with the keys: {fields}, confidence.\n"
        "Use null for anything not stated on the page. remote_type is one of "
        "remote, hybrid, on_site. salary_min and salary_max are annual numbers and "
        "salary_currency is an ISO 4217 code. confidence is a number between 0 and 1.\n\n"
        f"Page text:\n{cleaned_html}"
    )


def parse_json_reply(content: str) -> Dict[str, Any]:
    """Decode the model reply, tolerating a surrounding markdown code fence."""
    content = (content or '').strip()
    if content.startswith('```'):
        lines = content.split('\n')
        content = '\n'.join(lines[1:-1]) if len(lines) > 2 else content
    data = json.loads(content)
    if not isinstance(data, dict):
        raise ValueError("reply is not a JSON object")
    return data


class AIExtractor(BaseExtractor):
    """LLM-backed extraction, the last method tried before the heuristic floor."""

    method = "ai"
    event_type = EventType.AI_EXTRACTION.value

    def __init__(self, api_key: Optional[str] = None, model: str = DEFAULT_MODEL,
                 timeout: float = 60.0, notifier: Optional[ErrorNotifier] = None):
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self.notifier = notifier or ErrorNotifier()
        self.call_count = 0

    @classmethod
    def from_config(cls, config, notifier: Optional[ErrorNotifier] = None) -> "AIExtractor":
        return cls(
            api_key=config.openrouter_api_key,
            model=config.ai_model or DEFAULT_MODEL,
            timeout=config.ai_timeout,
            notifier=notifier,
        )

    def applies_to(self, extraction_input: ExtractionInput) -> Optional[str]:
        if not self.api_key:
            return "AI extraction disabled: no API key"
        if not extraction_input.cleaned_html:
            return "No cleaned HTML available"
        return None

    async def extract(self, extraction_input: ExtractionInput) -> ExtractionOutcome:
        skip_reason = self.applies_to(extraction_input)
        if skip_reason:
            logger.warning(f"[ai_fallback] {skip_reason} url={extraction_input.url}")
            return ExtractionOutcome.failed(self.method, skip_reason, provider=PROVIDER, model=self.model)

        prompt = build_prompt(extraction_input.url, extraction_input.cleaned_html)
        try:
            data = await self._call_ai(prompt)
        except httpx.TimeoutException as e:
            logger.warning(f"[ai_fallback] Timeout after {self.timeout}s url={extraction_input.url}: {e}")
            return ExtractionOutcome.failed(self.method, f"AI request timeout: {e}", provider=PROVIDER, model=self.model)
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            logger.warning(f"[ai_fallback] HTTP {status} from provider url={extraction_input.url}")
            return ExtractionOutcome.failed(self.method, f"AI request failed: HTTP {status}",
                                            provider=PROVIDER, model=self.model)
        except httpx.TransportError as e:
            logger.warning(f"[ai_fallback] Transport error url={extraction_input.url}: {e}")
            return ExtractionOutcome.failed(self.method, f"AI request failed: {e}", provider=PROVIDER, model=self.model)
        except ValueError as e:
            logger.warning(f"[ai_fallback] Undecodable provider response url={extraction_input.url}: {e}")
            return ExtractionOutcome.failed(self.method, f"Malformed AI response: {e}",
                                            provider=PROVIDER, model=self.model)
        except Exception as e:
            self.notifier.notify(e, "ai_extraction", url=extraction_input.url,
                                 record_id=extraction_input.record.id, model=self.model)
            raise

        self.call_count += 1
        if not isinstance(data, dict):
            return ExtractionOutcome.failed(self.method, "Malformed AI response: not an object",
                                            provider=PROVIDER, model=self.model)
        usage = data.get('usage') or {}
        tokens = usage.get('total_tokens')
        try:
            content = data['choices'][0]['message']['content']
            reply = parse_json_reply(content)
        except (KeyError, IndexError, TypeError, ValueError) as e:
            logger.warning(f"[ai_fallback] Malformed reply url={extraction_input.url}: {e}")
            return ExtractionOutcome.failed(self.method, f"Malformed AI response: {e}",
                                            provider=PROVIDER, model=data.get('model') or self.model,
                                            tokens_used=tokens)

        outcome = ExtractionOutcome(
            method=self.method,
            provider=PROVIDER,
            model=data.get('model') or self.model,
            confidence=clamp_confidence(reply.get('confidence')),
            fields=self._map_fields(reply),
            tokens_used=tokens,
            metadata={
                "prompt_tokens": usage.get('prompt_tokens'),
                "completion_tokens": usage.get('completion_tokens'),
            },
        )
        if not outcome.produced_fields():
            outcome.error = "AI returned no fields"
        logger.info(
            f"[ai_fallback] model={outcome.model} confidence={outcome.confidence:.2f} "
            f"fields={len(outcome.produced_fields())} tokens={tokens}"
        )
        return outcome

    async def _call_ai(self, prompt: str) -> Dict[str, Any]:
        """Call OpenRouter and return the decoded response body."""
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            "temperature": 0.1,
            "max_tokens": 2000,
        }
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(OPENROUTER_URL, json=payload, headers=headers)
            response.raise_for_status()
            return response.json()

    def _map_fields(self, reply: Dict[str, Any]) -> Dict[str, Any]:
        fields: Dict[str, Any] = {}
        for name in TEXT_FIELDS:
            value = reply.get(name)
            if isinstance(value, list):
                value = "\n".join(str(item).strip() for item in value if str(item).strip())
            if isinstance(value, str) and value.strip():
                fields[name] = value.strip()

        for name in ('salary_min', 'salary_max'):
            amount = coerce_amount(reply.get(name))
            if amount is not None:
                fields[name] = amount

        currency = fields.get('salary_currency')
        if currency:
            fields['salary_currency'] = currency.upper()

        if isinstance(reply.get('custom_sections'), dict) and reply['custom_sections']:
            fields['custom_sections'] = reply['custom_sections']
        return fields
