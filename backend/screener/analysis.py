"""
Stage analysis functions
========================
visual-search:    SearchAPI.io Google Lens  — visually similar / matching images
                  + Claude                  — Art / Antique classification
origin-analysis:  Claude vision             — original vs reproduction, compared
                                              against the similar images
full-analysis:    OpenAI                    — detailed description (maker, age,
                                              origin, marks, concise description)
find-value:       Valuer agent (HTTP)       — auction-backed value estimate

Each function takes ``StageInputs`` and returns the artifact payload. They
raise on any failure; the invoker records it against the stage.
"""

import asyncio
import json
import logging
import re
from dataclasses import dataclass

import anthropic
import httpx
import requests
from openai import AsyncOpenAI

from .stages import (
    FIND_VALUE,
    FULL_ANALYSIS,
    ORIGIN_ANALYSIS,
    VISUAL_SEARCH,
    Stage,
    StageInputs,
)
from .store import ANALYSIS, DETAILED, ORIGIN, VALUE

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def strip_json(text: str) -> str:
    """Extract JSON from text that may be wrapped in markdown code fences."""
    text = text.strip()
    match = re.search(r"```(?:json)?\s*\n?(.*?)```", text, re.DOTALL)
    if match:
        return match.group(1).strip()
    start = text.find("{")
    end = text.rfind("}")
    if start != -1 and end > start:
        return text[start : end + 1]
    start = text.find("[")
    end = text.rfind("]")
    if start != -1 and end > start:
        return text[start : end + 1]
    return text


def parse_json(raw: str) -> dict:
    """Parse text expected to contain JSON. Returns dict with parse_error on failure."""
    cleaned = strip_json(raw)
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        return {"raw": cleaned, "parse_error": True}


def parse_json_strict(raw: str, what: str) -> dict:
    data = parse_json(raw)
    if not isinstance(data, dict) or data.get("parse_error"):
        raise ValueError(f"{what}: model returned unparseable content")
    return data


@dataclass
class AnalysisClients:
    claude: anthropic.AsyncAnthropic
    claude_model: str
    openai: AsyncOpenAI
    openai_model: str
    http: httpx.AsyncClient
    searchapi_key: str
    valuer_agent_url: str

    @classmethod
    def from_settings(cls, settings, http: httpx.AsyncClient) -> "AnalysisClients":
        return cls(
            claude=anthropic.AsyncAnthropic(api_key=settings.anthropic_api_key or None),
            claude_model=settings.claude_model,
            openai=AsyncOpenAI(api_key=settings.openai_api_key or "missing"),
            openai_model=settings.openai_model,
            http=http,
            searchapi_key=settings.searchapi_key,
            valuer_agent_url=settings.valuer_agent_url.rstrip("/"),
        )

    async def call_claude(self, system: str, user_content, max_tokens: int = 2048) -> str:
        """Call Claude Messages API; API errors propagate to the stage."""
        resp = await self.claude.messages.create(
            model=self.claude_model,
            max_tokens=max_tokens,
            system=system,
            messages=[{"role": "user", "content": user_content}],
        )
        return resp.content[0].text.strip()


def _url_image(url: str) -> dict:
    return {"type": "image", "source": {"type": "url", "url": url}}


# ═══════════════════════════════════════════════════════════════════════════
# VISUAL SEARCH (SearchAPI.io Google Lens + Claude classification)
# Docs: https://www.searchapi.io/docs/google-lens
# ═══════════════════════════════════════════════════════════════════════════

_SEARCHAPI_URL = "https://www.searchapi.io/api/v1/search"

_CLASSIFY_SYSTEM = (
    "You are a vision-enabled art and antiques specialist. "
    "Always respond with ONLY valid JSON — no markdown fences, no commentary."
)

_CLASSIFY_PROMPT = """\
Decide whether the object in this image is "Art" or "Antique" and describe it in one or two words.

Respond with ONLY this JSON:
{"category": "Art" or "Antique", "description": "One or two words describing the object"}"""


def _google_lens(image_url: str, api_key: str) -> dict:
    r = requests.get(
        _SEARCHAPI_URL,
        params={"engine": "google_lens", "url": image_url, "api_key": api_key},
        timeout=30,
    )
    r.raise_for_status()
    return r.json()


def format_lens_results(data: dict) -> dict:
    """Shape a Google Lens response into exact / partial / similar matches."""
    def _matches(items, default_score: float, kind: str) -> list[dict]:
        out = []
        for item in items or []:
            url = item.get("image") or item.get("original") or item.get("thumbnail")
            if not url:
                continue
            out.append({
                "url": url,
                "score": item.get("score", default_score),
                "type": kind,
                "title": item.get("title", ""),
                "source": item.get("link", ""),
            })
        return out

    visual = data.get("visual_matches", [])
    labels = [k.get("title") for k in data.get("knowledge_graph", []) if k.get("title")]
    if not labels:
        labels = [m.get("title") for m in visual[:3] if m.get("title")]
    return {
        "description": {
            "labels": labels,
            "confidence": 1.0 if data.get("knowledge_graph") else 0.5 if labels else 0,
        },
        "matches": {
            "exact": _matches(data.get("exact_matches"), 1.0, "exact"),
            "partial": _matches(data.get("products"), 0.5, "partial"),
            "similar": _matches(visual, 0.3, "similar"),
        },
    }


def make_visual_search(clients: AnalysisClients):
    async def visual_search(inputs: StageInputs) -> dict:
        lens = await asyncio.to_thread(_google_lens, inputs.image_url, clients.searchapi_key)
        vision = format_lens_results(lens)
        m = vision["matches"]
        logger.info("[VISUAL] %s: %d exact, %d partial, %d similar",
                    inputs.session_id, len(m["exact"]), len(m["partial"]), len(m["similar"]))

        raw = await clients.call_claude(
            system=_CLASSIFY_SYSTEM,
            user_content=[_url_image(inputs.image_url), {"type": "text", "text": _CLASSIFY_PROMPT}],
            max_tokens=150,
        )
        return {"vision": vision, "openai": parse_json_strict(raw, "classification")}

    return visual_search


# ═══════════════════════════════════════════════════════════════════════════
# ORIGIN ANALYSIS (Claude vision)
# ═══════════════════════════════════════════════════════════════════════════

_MAX_REFERENCE_IMAGES = 5

_ORIGIN_SYSTEM = (
    "You are an expert art appraiser with access to computer vision technology. "
    "Always respond with ONLY valid JSON — no markdown fences, no commentary."
)

_ORIGIN_PROMPT = """\
The first image is the user's artwork. The following images were found through visual search.

Analyze:
1. The artistic style and technique
2. Any unique characteristics or patterns
3. Compare with the similar images to determine if this is likely an original artwork or a reproduction

Respond with ONLY this JSON:
{
  "originality": "original" or "reproduction",
  "confidence": <number between 0 and 1>,
  "style_analysis": "Brief description of artistic style",
  "unique_characteristics": ["List of unique features"],
  "estimated_era": "Best estimate of the period",
  "estimated_origin": "Likely region or school",
  "material_or_medium": "Material or medium",
  "comparison_notes": "Brief notes on similarities/differences with reference images",
  "recommendation": "Your professional recommendation"
}"""


async def filter_valid_image_urls(http: httpx.AsyncClient, images: list[dict]) -> list[dict]:
    """Keep only references whose URL answers a HEAD with an image content type."""
    async def _check(img: dict) -> bool:
        try:
            r = await http.head(img["url"], timeout=5, follow_redirects=True)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.debug("Dropping reference %s: %s", img.get("url"), e)
            return False
        return r.is_success and r.headers.get("content-type", "").startswith("image/")

    checks = await asyncio.gather(*(_check(i) for i in images))
    return [img for img, ok in zip(images, checks) if ok]


def make_origin_analysis(clients: AnalysisClients):
    async def origin_analysis(inputs: StageInputs) -> dict:
        analysis = inputs.artifacts[ANALYSIS]
        vision = analysis.get("vision", {})
        matches = vision.get("matches", {})

        references = await filter_valid_image_urls(
            clients.http, matches.get("similar", [])[: _MAX_REFERENCE_IMAGES * 2]
        )
        references = references[:_MAX_REFERENCE_IMAGES]
        logger.info("[ORIGIN] %s: comparing against %d reference images",
                    inputs.session_id, len(references))

        content = [_url_image(inputs.image_url)]
        content += [_url_image(r["url"]) for r in references]
        content.append({"type": "text", "text": _ORIGIN_PROMPT})
        raw = await clients.call_claude(system=_ORIGIN_SYSTEM, user_content=content, max_tokens=1500)
        origin = parse_json_strict(raw, "origin analysis")

        description = vision.get("description", {})
        return {
            "matches": matches,
            "originAnalysis": origin,
            "visionLabels": {
                "labels": description.get("labels", []),
                "confidence": description.get("confidence", 0),
            },
            "openaiAnalysis": analysis.get("openai", {}),
            "imageMetadata": {
                "url": inputs.image_url,
                "mimeType": inputs.metadata.get("mimeType"),
                "referenceCount": len(references),
            },
        }

    return origin_analysis


# ═══════════════════════════════════════════════════════════════════════════
# DETAILED ANALYSIS (OpenAI)
# ═══════════════════════════════════════════════════════════════════════════

_DETAILED_SYSTEM = (
    "You are a professional art and antiques expert. You identify makers, periods, "
    "origins and marks precisely. Respond with a single JSON object."
)

_DETAILED_PROMPT = """\
Examine the object in this image and return ONLY this JSON:
{
  "concise_description": "Under 10 words: object type, medium, style and period, suitable as an auction search query",
  "maker_analysis": {"creator_name": "Artist or maker, or 'Unknown'", "reasoning": "Why"},
  "origin_analysis": {"likely_origin": "Region or country", "reasoning": "Why"},
  "age_analysis": {"estimated_date_range": "e.g. 1880-1910", "reasoning": "Why"},
  "style_analysis": {"art_style": "Style or movement", "reasoning": "Why"},
  "visual_search": {"notes": "What the visual evidence suggests"},
  "marks_recognition": {"marks_identified": "Signatures, stamps, hallmarks or 'None visible'"}
}"""


def make_full_analysis(clients: AnalysisClients):
    async def full_analysis(inputs: StageInputs) -> dict:
        completion = await clients.openai.chat.completions.create(
            model=clients.openai_model,
            messages=[
                {"role": "system", "content": _DETAILED_SYSTEM},
                {"role": "user", "content": [
                    {"type": "image_url", "image_url": {"url": inputs.image_url}},
                    {"type": "text", "text": _DETAILED_PROMPT},
                ]},
            ],
            response_format={"type": "json_object"},
            temperature=0.4,
            max_tokens=2048,
        )
        content = completion.choices[0].message.content or ""
        detailed = parse_json_strict(content, "detailed analysis")
        if not detailed.get("concise_description"):
            raise ValueError("detailed analysis is missing concise_description")
        logger.info("[DETAILED] %s: %s", inputs.session_id, detailed["concise_description"])
        return detailed

    return full_analysis


# ═══════════════════════════════════════════════════════════════════════════
# FIND VALUE (valuer agent)
# ═══════════════════════════════════════════════════════════════════════════

def make_find_value(clients: AnalysisClients):
    async def find_value(inputs: StageInputs) -> dict:
        query = inputs.artifacts[DETAILED].get("concise_description")
        if not query:
            raise ValueError("Concise description not found in detailed analysis")
        r = await clients.http.post(
            f"{clients.valuer_agent_url}/api/find-value", json={"text": query}, timeout=60
        )
        r.raise_for_status()
        data = r.json()
        if data.get("success") is False:
            raise ValueError(data.get("error") or "valuer agent reported failure")
        return {"query": query, **data}

    return find_value


def build_stages(clients: AnalysisClients) -> list[Stage]:
    return [
        Stage(VISUAL_SEARCH, ANALYSIS, make_visual_search(clients)),
        Stage(ORIGIN_ANALYSIS, ORIGIN, make_origin_analysis(clients), depends_on=(VISUAL_SEARCH,)),
        Stage(FULL_ANALYSIS, DETAILED, make_full_analysis(clients)),
        Stage(FIND_VALUE, VALUE, make_find_value(clients), depends_on=(FULL_ANALYSIS,)),
    ]
