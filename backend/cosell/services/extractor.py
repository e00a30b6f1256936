"""
Entity and qualification extraction.

The detector only depends on the EntityExtractor protocol; ClaudeEntityExtractor
is the production backend. Any implementation mapping text to
{name, confidence} can be swapped in (rule-based, embeddings, another model).
"""
import json
import logging
from typing import Any, Optional, Protocol

import anthropic
from pydantic import ValidationError

from cosell.core.config import get_settings
from cosell.core.errors import ExtractionFailure
from cosell.models.schemas import (
    Authority, BantFacets, Budget, Contact, Entity, EntityKind, Need,
    SolutionArea, Timeline, Urgency,
)

logger = logging.getLogger(__name__)

MAX_TEXT_CHARS = 4000
MAX_SUMMARY_CHARS = 2000


class EntityExtractor(Protocol):
    async def extract_partner(self, text: str) -> Optional[Entity]: ...

    async def extract_customer(self, text: str) -> Optional[Entity]: ...

    async def extract_solution_area(self, text: str) -> Optional[SolutionArea]: ...

    async def summarize(self, subject: str, text: str) -> str: ...

    async def extract_bant(self, text: str) -> BantFacets: ...


def parse_json_reply(text: str) -> Any:
    """Parse a model reply that should be bare JSON, tolerating markdown fences."""
    result_text = text.strip()
    if result_text.startswith("```"):
        result_text = result_text.split("\n", 1)[-1].rsplit("```", 1)[0].strip()
    try:
        return json.loads(result_text)
    except json.JSONDecodeError as e:
        raise ExtractionFailure(f"Model reply was not JSON: {result_text[:120]!r}") from e


def _clamp(value: Any, default: float) -> float:
    try:
        return min(max(float(value), 0.0), 1.0)
    except (TypeError, ValueError):
        return default


def entity_from_reply(
    result: Any, kind: EntityKind, default_confidence: float
) -> Optional[Entity]:
    """Build an Entity from {"name", "confidence"}; None when no name was found."""
    if not isinstance(result, dict) or not result.get("name"):
        return None
    confidence = result.get("confidence")
    return Entity(
        name=str(result["name"]).strip(),
        kind=kind,
        confidence=default_confidence if confidence is None else _clamp(confidence, default_confidence),
    )


def bant_from_reply(result: Any, default_confidence: float) -> BantFacets:
    """Build BantFacets from the model's JSON. Facets set to null stay absent."""
    if not isinstance(result, dict):
        raise ExtractionFailure("BANT reply was not an object")

    def conf(facet: dict) -> float:
        return _clamp(facet.get("confidence", default_confidence), default_confidence)

    def contact(data: Any) -> Optional[Contact]:
        if not isinstance(data, dict) or not any(data.values()):
            return None
        return Contact(**{k: data.get(k) for k in ("name", "email", "title", "role")})

    try:
        budget = authority = need = timeline = None
        if isinstance(result.get("budget"), dict):
            b = result["budget"]
            budget = Budget(
                amount=b.get("amount"),
                currency=(b.get("currency") or "USD").upper(),
                confidence=conf(b),
            )
        if isinstance(result.get("authority"), dict):
            a = result["authority"]
            authority = Authority(
                customer_contact=contact(a.get("customer_contact")),
                partner_contact=contact(a.get("partner_contact")),
                confidence=conf(a),
            )
        if isinstance(result.get("need"), dict):
            n = result["need"]
            area = n.get("solution_area")
            need = Need(
                description=n.get("description") or "",
                solution_area=area if area in {s.value for s in SolutionArea} else None,
                products=n.get("products") or [],
                services=n.get("services") or [],
                confidence=conf(n),
            )
        if isinstance(result.get("timeline"), dict):
            t = result["timeline"]
            urgency = t.get("urgency")
            timeline = Timeline(
                estimated_close_date=t.get("estimated_close_date"),
                timeframe=t.get("timeframe"),
                urgency=urgency if urgency in {u.value for u in Urgency} else Urgency.MEDIUM,
                confidence=conf(t),
            )
    except ValidationError as e:
        raise ExtractionFailure(f"BANT reply did not validate: {e}") from e

    return BantFacets(budget=budget, authority=authority, need=need, timeline=timeline)


class ClaudeEntityExtractor:
    """Uses Claude to pull partner/customer names, solution area, BANT and a summary."""

    def __init__(self, client: Optional[anthropic.AsyncAnthropic] = None):
        self.settings = get_settings()
        self.client = client
        if self.client is None and self.settings.anthropic_api_key:
            self.client = anthropic.AsyncAnthropic(api_key=self.settings.anthropic_api_key)

    async def _complete(self, prompt: str, max_tokens: Optional[int] = None) -> str:
        if not self.client:
            raise ExtractionFailure("Claude API not configured. Set ANTHROPIC_API_KEY.")
        try:
            response = await self.client.messages.create(
                model=self.settings.anthropic_model,
                max_tokens=max_tokens or self.settings.claude_max_tokens_per_extraction,
                messages=[{"role": "user", "content": prompt}],
            )
        except anthropic.APIError as e:
            raise ExtractionFailure(f"Claude request failed: {e}") from e
        return response.content[0].text.strip()

    async def _extract_entity(self, text: str, kind: EntityKind) -> Optional[Entity]:
        who = (
            "partner company (the Microsoft partner, ISV, SI or reseller)"
            if kind == EntityKind.PARTNER
            else "customer/client company (the end customer buying the solution)"
        )
        prompt = f"""Extract the {who} name from this text. If none is mentioned, use null.

Text: {text[:MAX_TEXT_CHARS]}

Respond with ONLY a JSON object (no markdown, no explanation):
{{"name": "<company name or null>", "confidence": <0-1>}}"""
        result = parse_json_reply(await self._complete(prompt))
        return entity_from_reply(result, kind, self.settings.default_entity_confidence)

    async def extract_partner(self, text: str) -> Optional[Entity]:
        return await self._extract_entity(text, EntityKind.PARTNER)

    async def extract_customer(self, text: str) -> Optional[Entity]:
        return await self._extract_entity(text, EntityKind.CUSTOMER)

    async def extract_solution_area(self, text: str) -> Optional[SolutionArea]:
        areas = ", ".join(s.value for s in SolutionArea)
        prompt = f"""Classify the Microsoft solution area this co-sell conversation is about.

Text: {text[:MAX_TEXT_CHARS]}

Respond with ONLY a JSON object:
{{"solution_area": "<one of: {areas}, or null>"}}"""
        result = parse_json_reply(await self._complete(prompt, max_tokens=50))
        value = result.get("solution_area") if isinstance(result, dict) else None
        try:
            return SolutionArea(value) if value else None
        except ValueError:
            logger.debug(f"Ignoring unknown solution area {value!r}")
            return None

    async def summarize(self, subject: str, text: str) -> str:
        prompt = f"""Summarize this communication in 1-2 sentences, focusing on the co-sell opportunity aspects.

Subject: {subject}
Content: {text[:MAX_SUMMARY_CHARS]}

Provide a concise summary (max 50 words) that captures the key opportunity details."""
        return await self._complete(prompt, max_tokens=150)

    async def extract_bant(self, text: str) -> BantFacets:
        prompt = f"""Extract sales qualification (BANT) details from this co-sell conversation.
Set a facet to null when the text says nothing about it.

Text: {text[:MAX_TEXT_CHARS]}

Respond with ONLY a JSON object:
{{
    "budget": {{"amount": <number>, "currency": "<ISO code>", "confidence": <0-1>}} | null,
    "authority": {{
        "customer_contact": {{"name": "", "email": "", "title": "", "role": ""}} | null,
        "partner_contact": {{"name": "", "email": "", "title": "", "role": ""}} | null,
        "confidence": <0-1>
    }} | null,
    "need": {{"description": "", "solution_area": "<area or null>", "products": [], "services": [], "confidence": <0-1>}} | null,
    "timeline": {{"estimated_close_date": "<YYYY-MM-DD or null>", "timeframe": "", "urgency": "<low|medium|high|critical>", "confidence": <0-1>}} | null
}}"""
        result = parse_json_reply(await self._complete(prompt))
        return bant_from_reply(result, self.settings.default_facet_confidence)
