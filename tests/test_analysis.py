"""Tests for the stage analysis helpers that do not need model credentials."""

import json

import httpx
import pytest

from screener.analysis import (
    AnalysisClients,
    build_stages,
    filter_valid_image_urls,
    format_lens_results,
    make_find_value,
    parse_json,
    parse_json_strict,
    strip_json,
)
from screener.stages import FIND_VALUE, ORIGIN_ANALYSIS, StageInputs
from screener.store import DETAILED

from conftest import DETAILED_DOC, METADATA_DOC, SESSION


def test_strip_json_from_fences():
    assert strip_json('```json\n{"a": 1}\n```') == '{"a": 1}'
    assert strip_json('Sure! {"a": 1} hope that helps') == '{"a": 1}'
    assert strip_json("[1, 2]") == "[1, 2]"


def test_parse_json_marks_errors():
    assert parse_json('{"category": "Art"}') == {"category": "Art"}
    bad = parse_json("not json at all")
    assert bad["parse_error"] is True
    with pytest.raises(ValueError):
        parse_json_strict("not json at all", "classification")


def test_format_lens_results():
    data = {
        "knowledge_graph": [{"title": "Ming vase"}],
        "exact_matches": [{"image": "https://a/1.jpg", "title": "Exact", "link": "https://a"}],
        "products": [{"thumbnail": "https://b/2.jpg"}],
        "visual_matches": [{"original": "https://c/3.jpg", "title": "Similar"}, {"title": "no image"}],
    }

    vision = format_lens_results(data)

    assert vision["description"] == {"labels": ["Ming vase"], "confidence": 1.0}
    assert vision["matches"]["exact"][0]["score"] == 1.0
    assert vision["matches"]["partial"][0]["url"] == "https://b/2.jpg"
    assert [m["url"] for m in vision["matches"]["similar"]] == ["https://c/3.jpg"]


def test_format_lens_results_falls_back_to_visual_titles():
    vision = format_lens_results({"visual_matches": [{"title": "Blue vase", "image": "https://x"}]})
    assert vision["description"] == {"labels": ["Blue vase"], "confidence": 0.5}
    assert vision["matches"]["exact"] == []


@pytest.mark.asyncio
async def test_filter_valid_image_urls():
    def handler(request):
        if request.url.host == "img.example":
            return httpx.Response(200, headers={"content-type": "image/jpeg"})
        if request.url.host == "page.example":
            return httpx.Response(200, headers={"content-type": "text/html"})
        raise httpx.ConnectError("unreachable")

    images = [{"url": "https://img.example/a.jpg"}, {"url": "https://page.example/b"},
              {"url": "https://down.example/c.jpg"},
              {"url": "https://img.example/bad\x00name.jpg"}]
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
        valid = await filter_valid_image_urls(http, images)

    assert valid == [{"url": "https://img.example/a.jpg"}]


def _clients(http):
    return AnalysisClients(claude=None, claude_model="m", openai=None, openai_model="m",
                           http=http, searchapi_key="", valuer_agent_url="http://valuer.local")


@pytest.mark.asyncio
async def test_find_value_posts_concise_description():
    seen = []

    def handler(request):
        seen.append(json.loads(request.content))
        return httpx.Response(200, json={"success": True, "minValue": 300, "maxValue": 900})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
        find_value = make_find_value(_clients(http))
        inputs = StageInputs(SESSION, METADATA_DOC, {DETAILED: DETAILED_DOC})
        value = await find_value(inputs)

    assert seen == [{"text": DETAILED_DOC["concise_description"]}]
    assert value["query"] == DETAILED_DOC["concise_description"]
    assert value["minValue"] == 300


@pytest.mark.asyncio
async def test_find_value_reports_valuer_failure():
    def handler(request):
        return httpx.Response(200, json={"success": False, "error": "no comparables"})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
        find_value = make_find_value(_clients(http))
        with pytest.raises(ValueError, match="no comparables"):
            await find_value(StageInputs(SESSION, METADATA_DOC, {DETAILED: DETAILED_DOC}))


def test_build_stages_declares_dependencies():
    stages = {s.name: s for s in build_stages(_clients(None))}
    assert stages[ORIGIN_ANALYSIS].depends_on == ("visual-search",)
    assert stages[FIND_VALUE].depends_on == ("full-analysis",)
    assert stages[FIND_VALUE].artifact == "value"
