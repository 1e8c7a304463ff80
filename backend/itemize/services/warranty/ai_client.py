"""AI-backed warranty lookup via Perplexity's OpenAI-compatible API.

The model is asked for a small JSON document describing whether the
product carries a manufacturer warranty.  Models often wrap JSON in a
markdown fence, so the parser accepts either form and treats anything
unparseable as "no warranty found" rather than an error.
"""

from __future__ import annotations

import datetime as dt
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, List, Optional, Protocol

from openai import AsyncOpenAI

from itemize.utils.helpers import clamp_confidence

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You verify consumer product warranty coverage. Return JSON only.
Format:
{
  "hasWarranty": boolean,
  "manufacturer": "string or null",
  "warrantyMonths": number or null,
  "confidence": number between 0 and 1,
  "rationale": "short explanation",
  "sourceUrls": ["url1", "url2"]
}
Rules:
- Set hasWarranty=true only when there is credible evidence.
- Set warrantyMonths to null when unknown.
- Keep rationale under 160 characters.
- Prefer official manufacturer or retailer sources."""

_FENCED_JSON = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)


@dataclass
class WarrantyLookupQuery:
    item_name: str
    description: Optional[str] = None
    merchant: Optional[str] = None
    purchase_date: Optional[dt.date] = None
    total_price_cents: Optional[int] = None


@dataclass
class WarrantyLookupResult:
    has_warranty: bool
    manufacturer: Optional[str] = None
    warranty_months: Optional[int] = None
    confidence: Optional[float] = None
    rationale: Optional[str] = None
    source_urls: List[str] = field(default_factory=list)
    raw_content: str = ""


class WarrantyLookupClient(Protocol):
    provider: str

    async def lookup(self, query: WarrantyLookupQuery) -> WarrantyLookupResult: ...


def build_user_prompt(query: WarrantyLookupQuery) -> str:
    lines = [f"Item: {query.item_name}"]
    if query.description:
        lines.append(f"Description: {query.description}")
    if query.merchant:
        lines.append(f"Merchant: {query.merchant}")
    if query.purchase_date:
        lines.append(f"Purchase date: {query.purchase_date.isoformat()}")
    if query.total_price_cents is not None:
        lines.append(f"Price: ${query.total_price_cents / 100:.2f}")
    return "\n".join(lines)


def _extract_json(content: str) -> Optional[dict]:
    fenced = _FENCED_JSON.search(content or "")
    candidate = fenced.group(1) if fenced else (content or "")
    try:
        parsed = json.loads(candidate.strip())
    except ValueError:
        return None
    return parsed if isinstance(parsed, dict) else None


def parse_lookup_content(content: str, citations: Optional[List[str]] = None) -> WarrantyLookupResult:
    """Turn the model's reply into a :class:`WarrantyLookupResult`.

    ``warrantyMonths`` is kept only when positive (rounded to whole
    months); ``sourceUrls`` falls back to the provider's citations.
    """
    parsed = _extract_json(content) or {}

    months_raw = parsed.get("warrantyMonths")
    months: Optional[int] = None
    if isinstance(months_raw, (int, float)) and not isinstance(months_raw, bool) and months_raw > 0:
        months = int(round(months_raw))

    manufacturer = parsed.get("manufacturer")
    rationale = parsed.get("rationale")
    urls = parsed.get("sourceUrls")
    source_urls = [u for u in urls if isinstance(u, str) and u] if isinstance(urls, list) else []

    return WarrantyLookupResult(
        has_warranty=bool(parsed.get("hasWarranty")),
        manufacturer=manufacturer if isinstance(manufacturer, str) and manufacturer else None,
        warranty_months=months,
        confidence=clamp_confidence(parsed.get("confidence")),
        rationale=rationale if isinstance(rationale, str) and rationale else None,
        source_urls=source_urls or list(citations or []),
        raw_content=content or "",
    )


class PerplexityWarrantyClient:
    provider = "perplexity"

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.perplexity.ai",
        model: str = "sonar",
        timeout: float = 15.0,
        client: Optional[AsyncOpenAI] = None,
    ) -> None:
        if not api_key:
            raise ValueError("PERPLEXITY_API_KEY is not configured")
        self.model = model
        # No SDK retries: a slow provider is a failed tier, not something to wait out.
        self._client = client or AsyncOpenAI(api_key=api_key, base_url=base_url, timeout=timeout, max_retries=0)

    async def lookup(self, query: WarrantyLookupQuery) -> WarrantyLookupResult:
        response: Any = await self._client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": build_user_prompt(query)},
            ],
            temperature=0.1,
            max_tokens=800,
            extra_body={"return_citations": True},
        )
        content = ""
        if response.choices:
            content = response.choices[0].message.content or ""
        citations = getattr(response, "citations", None) or []
        logger.debug("Perplexity warranty lookup item=%r chars=%d", query.item_name, len(content))
        return parse_lookup_content(content, [c for c in citations if isinstance(c, str)])
