"""Premium auction data: keyword extraction from the detailed analysis,
auction lookups through the valuer agent, and monthly price trends."""

import json
import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import Optional

import httpx
from openai import AsyncOpenAI, OpenAIError

from .analysis import strip_json
from .errors import PrerequisiteMissing, ScreenerError
from .stages import now_ms
from .store import DETAILED, PREMIUM_DATA, ArtifactStore

logger = logging.getLogger(__name__)

MAX_KEYWORD_QUERIES = 3
PREMIUM_MIN_PRICE = 500
PREMIUM_RESULTS_PER_KEYWORD = 15


class SubscriptionRequired(ScreenerError):
    status_code = 403
    code = "SUBSCRIPTION_REQUIRED"


def extract_keywords(detailed: dict) -> list[str]:
    """Search queries from specific to general, built from the analysis fields.

    Used directly when no language model is configured, and as the fallback
    when the model call or its answer fails.
    """
    description = (detailed.get("concise_description") or "").strip()
    if not description:
        return []
    keywords = [description]
    words = description.split()

    creator = (detailed.get("maker_analysis") or {}).get("creator_name") or ""
    if creator and "unknown" not in creator.lower():
        last_name = creator.split()[-1]
        keywords.append(f"{last_name} {' '.join(words[:2])}")

    if len(words) > 2:
        keywords.append(" ".join(words[:2]))
    return keywords


_KEYWORD_PROMPT = """\
You are an expert in fine art and antiques with deep knowledge of the auction market.

Generate {count} search queries for finding items similar to this object in auction databases.

OBJECT INFORMATION:
- Description: {description}
- Creator: {creator}
- Origin: {origin}
- Period: {period}
- Style: {style}

GUIDELINES:
1. Focus on the most distinctive and valuable aspects
2. Include category, medium, time period and style where applicable
3. Create broad, medium and specific queries, sorted from specific to general
4. Leave out filler words like "the", "a", "an" and any price speculation
5. Return ONLY a JSON array of strings, nothing else

RESPONSE FORMAT:
["specific query with more terms", "medium query", "general query with fewer terms"]
"""


def _field(detailed: dict, section: str, key: str) -> str:
    return ((detailed.get(section) or {}).get(key) or "").strip() or "Unknown"


def keyword_prompt(detailed: dict, count: int = MAX_KEYWORD_QUERIES) -> str:
    return _KEYWORD_PROMPT.format(
        count=count,
        description=detailed["concise_description"].strip(),
        creator=_field(detailed, "maker_analysis", "creator_name"),
        origin=_field(detailed, "origin_analysis", "likely_origin"),
        period=_field(detailed, "age_analysis", "estimated_date_range"),
        style=_field(detailed, "style_analysis", "art_style"),
    )


def parse_keywords(content: str) -> list[str]:
    """The model's JSON array of queries. Raises ValueError for anything else."""
    data = json.loads(strip_json(content))
    if not isinstance(data, list):
        raise ValueError(f"expected a JSON array of queries, got {type(data).__name__}")
    keywords = [k.strip() for k in data if isinstance(k, str) and k.strip()]
    if not keywords:
        raise ValueError("model returned no usable queries")
    return keywords


def price_trends(results: list[dict]) -> Optional[dict]:
    """Average price per month across all auction results that carry a date and price."""
    dated = []
    for r in results:
        amount = (r.get("price") or {}).get("amount")
        try:
            when = datetime.fromisoformat(str(r.get("date", "")).replace("Z", "+00:00"))
        except ValueError:
            continue
        if when.tzinfo is None:
            when = when.replace(tzinfo=timezone.utc)
        if isinstance(amount, (int, float)):
            dated.append((when, amount))
    if not dated:
        return None

    dated.sort(key=lambda d: d[0])
    by_month: dict[str, list[float]] = defaultdict(list)
    for when, amount in dated:
        by_month[f"{when.year}-{when.month}"].append(amount)

    return {
        "trends": [
            {"date": k, "count": len(v), "avgPrice": sum(v) / len(v)}
            for k, v in by_month.items()
        ],
        "earliest": dated[0][0].isoformat(),
        "latest": dated[-1][0].isoformat(),
    }


class PremiumDataService:
    def __init__(self, store: ArtifactStore, http: httpx.AsyncClient, valuer_agent_url: str,
                 subscription_key: str, openai: Optional[AsyncOpenAI] = None,
                 keyword_model: str = "gpt-4o-mini"):
        self.store = store
        self.http = http
        self.valuer_agent_url = valuer_agent_url.rstrip("/")
        self.subscription_key = subscription_key
        self.openai = openai
        self.keyword_model = keyword_model

    def check_subscription(self, key: Optional[str]) -> None:
        if not self.subscription_key or key != self.subscription_key:
            raise SubscriptionRequired("Valid subscription required for premium data")

    async def keywords_for(self, detailed: dict) -> list[str]:
        """Model-written search queries, or the simple extraction when that is not possible."""
        if not (detailed.get("concise_description") or "").strip():
            return []
        if self.openai is None:
            logger.info("No language model configured, using simple keyword extraction")
            return extract_keywords(detailed)
        try:
            completion = await self.openai.chat.completions.create(
                model=self.keyword_model,
                messages=[{"role": "user", "content": keyword_prompt(detailed)}],
                temperature=0.2,
            )
            keywords = parse_keywords(completion.choices[0].message.content or "")
        except (OpenAIError, ValueError) as e:
            logger.warning("Keyword generation failed, using simple extraction: %s", e)
            return extract_keywords(detailed)
        logger.info("Generated keywords: %s", keywords)
        return keywords

    async def auction_results(self, keyword: str) -> list[dict]:
        r = await self.http.post(
            f"{self.valuer_agent_url}/api/auction-results",
            json={"keyword": keyword, "minPrice": PREMIUM_MIN_PRICE, "limit": PREMIUM_RESULTS_PER_KEYWORD},
            timeout=60,
        )
        r.raise_for_status()
        return r.json().get("auctionResults") or []

    async def fetch(self, session_id: str, subscription_key: Optional[str]) -> dict:
        self.check_subscription(subscription_key)
        if not await self.store.exists(session_id, DETAILED):
            raise PrerequisiteMissing(session_id, DETAILED)
        detailed = await self.store.read(session_id, DETAILED)

        keywords = await self.keywords_for(detailed)
        keyword_results = []
        for keyword in keywords[:MAX_KEYWORD_QUERIES]:
            results = await self.auction_results(keyword)
            if results:
                keyword_results.append({"keyword": keyword, "results": results})

        all_results = [r for group in keyword_results for r in group["results"]]
        data = {
            "keywords": keywords,
            "keywordResults": keyword_results,
            "totalResults": len(all_results),
            "priceTrends": price_trends(all_results),
        }
        await self.store.write(session_id, PREMIUM_DATA, {"timestamp": now_ms(), **data})
        logger.info("Premium data for %s: %d results over %d keywords",
                    session_id, data["totalResults"], len(keyword_results))
        return data
