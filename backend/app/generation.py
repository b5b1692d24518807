from __future__ import annotations

from dataclasses import dataclass
import json
import logging
import re
import time
from typing import Any, Mapping

from pydantic import ValidationError

from app.config import Settings
from app.rendering import OutputType
from app.rendering.slides import SlideDeck

logger = logging.getLogger("regbrief.generation")

TRUNCATION_MARKER = "\n\n[Document truncated due to length]"

MEMO_SECTIONS = (
    "Executive Summary",
    "Key Changes",
    "Who Is Affected",
    "Timeline",
    "Business Implications",
    "Recommended Actions",
    "Questions to Consider",
)

DEFAULT_DECK_INSTRUCTIONS = """# Regulatory Document Transformation Rules

## Overview
Transform regulatory publications into executive summary presentations for client
leadership. Focus on actionable impacts, compliance deadlines and financial implications.

## Slide Structure

### Title Slide
- Use the official rule name as title
- Include the citation and publication date

### Executive Summary (1-2 slides)
- 3-5 key takeaways for executives
- Focus on "what this means for your organization"

### Timeline & Deadlines
- Extract every date mentioned in the document
- Call out comment and compliance deadlines explicitly

### Financial Impact
- Pull dollar figures, percentages and payment changes
- Compare to the current state when the document does

### Required Actions
- List specific compliance steps, prioritized by deadline
- Group by department where it helps (Clinical, Finance, IT, Legal)

### Questions for Discussion
- 3-5 strategic questions about organizational impact and decision points

## Formatting Preferences
- Maximum 6 bullets per slide
- Translate agency jargon into plain language
- Quote the document only for critical regulatory language
- Put presenter talking points in note items
"""

_SLIDE_SCHEMA_DESCRIPTION = (
    "Return a JSON object with keys slides and metadata. "
    "slides is an array of objects with keys slide_type, title, subtitle, content, left_column, right_column. "
    "slide_type must be one of title, content, section, two_column, summary. "
    "content, left_column and right_column are arrays of objects with keys type, text, level where "
    "type is one of bullet, paragraph, note and level is 0 for top-level bullets or 1 for sub-bullets. "
    "note items are speaker notes and are not shown on the slide. "
    "metadata has keys document_title, citation, publication_date, comment_deadline, key_topics "
    "(an array of strings). The first slide must be a title slide."
)


class GenerationError(RuntimeError):
    """Raised when the model call fails or returns unusable output."""


@dataclass(frozen=True)
class GenerationResult:
    text: str
    tokens_in: int
    tokens_out: int
    model_used: str


def truncate_source_text(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + TRUNCATION_MARKER


def estimate_generation_cost(client_count: int, *, settings: Settings) -> dict[str, float]:
    base_cost = settings.generation_base_cost_usd
    client_cost = max(client_count, 0) * settings.generation_client_cost_usd
    return {
        "base_cost": round(base_cost, 4),
        "client_cost": round(client_cost, 4),
        "total": round(base_cost + client_cost, 4),
    }


def _document_context(document: Mapping[str, object]) -> str:
    lines = [f"Title: {document.get('title') or 'Untitled'}"]
    for label, key in (
        ("Citation", "citation"),
        ("Document type", "document_type"),
        ("Publication date", "publication_date"),
        ("Agency", "agency_name"),
    ):
        value = document.get(key)
        if value:
            lines.append(f"{label}: {value}")
    abstract = document.get("abstract")
    if abstract:
        lines.append(f"Abstract: {abstract}")
    return "\n".join(lines)


def _client_context(client: Mapping[str, object]) -> str:
    lines = [f"Client name: {client.get('name')}"]
    if client.get("industry"):
        lines.append(f"Industry: {client.get('industry')}")
    focus_areas = client.get("focus_areas") or []
    if focus_areas:
        lines.append(f"Focus areas: {', '.join(str(area) for area in focus_areas)}")
    lines.append(f"Client context:\n{client.get('context') or '(none provided)'}")
    return "\n".join(lines)


def _model_override(tenant: Mapping[str, object], key: str) -> str | None:
    model_config = tenant.get("model_config")
    if isinstance(model_config, Mapping):
        value = str(model_config.get(key) or "").strip()
        return value or None
    return None


class BedrockContentGenerator:
    def __init__(self, settings: Settings, client: Any | None = None) -> None:
        self._settings = settings
        self._client = client or self._create_bedrock_client()

    def generate_base(
        self,
        document: Mapping[str, object],
        tenant: Mapping[str, object],
        source_text: str,
    ) -> GenerationResult:
        model_id = _model_override(tenant, "base_model") or self._settings.bedrock_model_id
        text = truncate_source_text(source_text, self._settings.generation_max_input_chars)

        if OutputType(str(tenant.get("output_type"))) is OutputType.SLIDE_DECK:
            instructions = str(tenant.get("deck_instructions") or "").strip() or DEFAULT_DECK_INSTRUCTIONS
            return self._generate_slides(model_id, text, instructions, document=document)

        system_prompt = (
            "You are a regulatory analyst writing briefing memos for professional services firms. "
            "Write in clear business language. Use only facts stated in the source document."
        )
        section_list = "\n".join(f"## {name}" for name in MEMO_SECTIONS)
        user_prompt = (
            "Write a regulatory briefing memo in markdown using exactly these section headings:\n"
            f"{section_list}\n\n"
            "Use '-' bullets for lists and **bold** lead-ins for key terms. Preserve every date, dollar figure "
            "and percentage exactly as written in the document. Do not add a title line.\n\n"
            f"DOCUMENT METADATA:\n{_document_context(document)}\n\n"
            f"DOCUMENT TEXT:\n{text}"
        )
        result = self._invoke(
            model_id,
            system_prompt,
            user_prompt,
            max_tokens=self._settings.generation_max_tokens,
        )
        return self._with_text(result, self._strip_fences(result.text))

    def generate_client_customization(
        self,
        base_text: str,
        client: Mapping[str, object],
        document: Mapping[str, object],
        tenant: Mapping[str, object],
    ) -> GenerationResult:
        model_id = _model_override(tenant, "customization_model") or self._settings.bedrock_lite_model_id
        is_deck = OutputType(str(tenant.get("output_type"))) is OutputType.SLIDE_DECK

        system_prompt = (
            "You tailor regulatory briefings to one specific client. "
            "Keep the structure, headings, dates, figures and regulatory facts of the base briefing. "
            "Do not assume anything about the client beyond the client context provided."
        )
        format_rule = (
            f"{_SLIDE_SCHEMA_DESCRIPTION} Keep the same slide sequence and return strict JSON only."
            if is_deck
            else "Return the customized memo in markdown with the same '## ' section headings."
        )
        user_prompt = (
            "Rewrite the base briefing so that implications, affected operations and recommended actions speak "
            "to this client's industry and focus areas. Where the client context is silent, keep the base wording.\n"
            f"{format_rule}\n\n"
            f"CLIENT:\n{_client_context(client)}\n\n"
            f"DOCUMENT METADATA:\n{_document_context(document)}\n\n"
            f"BASE BRIEFING:\n{base_text}"
        )
        max_tokens = self._settings.slide_generation_max_tokens if is_deck else self._settings.generation_max_tokens
        result = self._invoke(model_id, system_prompt, user_prompt, max_tokens=max_tokens)
        if is_deck:
            return self._with_text(result, self._validated_slide_json(result.text, model_id))
        return self._with_text(result, self._strip_fences(result.text))

    def generate_slide_deck(self, text: str, instructions: str | None = None) -> GenerationResult:
        truncated = truncate_source_text(text, self._settings.generation_max_input_chars)
        return self._generate_slides(
            self._settings.bedrock_model_id,
            truncated,
            (instructions or "").strip() or DEFAULT_DECK_INSTRUCTIONS,
            document=None,
        )

    def _generate_slides(
        self,
        model_id: str,
        text: str,
        instructions: str,
        *,
        document: Mapping[str, object] | None,
    ) -> GenerationResult:
        system_prompt = (
            "You convert regulatory documents into executive slide decks. Return strict JSON only. "
            "Do not include markdown or prose outside the JSON object."
        )
        metadata_block = f"DOCUMENT METADATA:\n{_document_context(document)}\n\n" if document else ""
        user_prompt = (
            f"{_SLIDE_SCHEMA_DESCRIPTION}\n\n"
            f"TRANSFORMATION RULES:\n{instructions}\n\n"
            f"{metadata_block}"
            f"DOCUMENT TEXT:\n{text}"
        )
        result = self._invoke(
            model_id,
            system_prompt,
            user_prompt,
            max_tokens=self._settings.slide_generation_max_tokens,
        )
        return self._with_text(result, self._validated_slide_json(result.text, model_id))

    def _create_bedrock_client(self) -> Any:
        try:
            import boto3  # type: ignore
            from botocore.config import Config  # type: ignore
        except ImportError as exc:
            raise GenerationError("boto3 is required for the Bedrock runtime.") from exc

        config = Config(
            connect_timeout=self._settings.bedrock_connect_timeout_seconds,
            read_timeout=self._settings.bedrock_read_timeout_seconds,
            retries={"max_attempts": 2, "mode": "standard"},
        )
        return boto3.client("bedrock-runtime", region_name=self._settings.aws_region, config=config)

    def _invoke(self, model_id: str, system_prompt: str, user_prompt: str, *, max_tokens: int) -> GenerationResult:
        if not model_id:
            raise GenerationError("Bedrock model ID is not configured.")

        started = time.perf_counter()
        try:
            response = self._client.converse(
                modelId=model_id,
                system=[{"text": system_prompt}],
                messages=[{"role": "user", "content": [{"text": user_prompt}]}],
                inferenceConfig={
                    "temperature": self._settings.generation_temperature,
                    "maxTokens": max_tokens,
                },
            )
        except Exception as exc:
            duration_ms = round((time.perf_counter() - started) * 1000, 2)
            logger.warning(
                "generation_invoke_failed",
                extra={
                    "event": "generation_invoke_failed",
                    "model_id": model_id,
                    "duration_ms": duration_ms,
                    "error": str(exc),
                },
            )
            raise GenerationError(f"Bedrock invocation failed for model '{model_id}': {exc}") from exc

        text = self._extract_text(response)
        usage = response.get("usage") or {}
        result = GenerationResult(
            text=text,
            tokens_in=int(usage.get("inputTokens") or 0),
            tokens_out=int(usage.get("outputTokens") or 0),
            model_used=model_id,
        )
        logger.info(
            "generation_invoke_completed",
            extra={
                "event": "generation_invoke_completed",
                "model_id": model_id,
                "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                "user_prompt_chars": len(user_prompt),
                "response_chars": len(text),
                "tokens_in": result.tokens_in,
                "tokens_out": result.tokens_out,
                "stop_reason": response.get("stopReason"),
            },
        )
        return result

    @staticmethod
    def _with_text(result: GenerationResult, text: str) -> GenerationResult:
        return GenerationResult(
            text=text,
            tokens_in=result.tokens_in,
            tokens_out=result.tokens_out,
            model_used=result.model_used,
        )

    @staticmethod
    def _extract_text(response: Any) -> str:
        outputs = response.get("output", {}).get("message", {}).get("content", [])
        parts: list[str] = []
        for item in outputs:
            text = item.get("text")
            if isinstance(text, str) and text.strip():
                parts.append(text)
        if not parts:
            raise GenerationError("Model response did not include textual output.")
        return "\n".join(parts).strip()

    @staticmethod
    def _strip_fences(text: str) -> str:
        fenced = re.fullmatch(r"```[a-zA-Z]*\s*\n(.*?)\n?```", text.strip(), flags=re.DOTALL)
        return fenced.group(1).strip() if fenced else text.strip()

    @staticmethod
    def _parse_json_object(raw: str) -> Any:
        candidate = raw.strip()
        try:
            return json.loads(candidate)
        except json.JSONDecodeError:
            pass

        fenced = re.search(r"```(?:json)?\s*(.*?)\s*```", candidate, flags=re.IGNORECASE | re.DOTALL)
        if fenced:
            try:
                return json.loads(fenced.group(1))
            except json.JSONDecodeError:
                pass

        start = candidate.find("{")
        end = candidate.rfind("}")
        if start != -1 and end != -1 and end > start:
            try:
                return json.loads(candidate[start : end + 1])
            except json.JSONDecodeError as exc:
                raise GenerationError("Slide response contained malformed JSON content.") from exc

        raise GenerationError("Slide response was not valid JSON.")

    def _validated_slide_json(self, raw: str, model_id: str) -> str:
        payload = self._parse_json_object(raw)
        try:
            deck = SlideDeck.model_validate(payload)
        except ValidationError as exc:
            raise GenerationError(f"Slide response from '{model_id}' does not match the deck schema: {exc}") from exc
        return deck.model_dump_json(exclude_none=True)
