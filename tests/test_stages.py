"""Tests for the stage invoker and stage triggers."""

import asyncio
import json

import httpx
import pytest

from screener.errors import PrerequisiteMissing, StageFailure
from screener.stages import (
    FULL_ANALYSIS,
    ORIGIN_ANALYSIS,
    VISUAL_SEARCH,
    HttpStageTrigger,
    LocalStageTrigger,
    Stage,
    StageInvoker,
    StageRegistry,
)
from screener.store import ANALYSIS, DETAILED, ORIGIN

from conftest import ANALYSIS_DOC, SESSION, FakeAnalysis


@pytest.mark.asyncio
async def test_invoke_writes_artifact_with_timestamp(store, invoker, analyses):
    result = await invoker.invoke(SESSION, VISUAL_SEARCH)

    assert result.ok
    assert not result.cached
    assert "timestamp" in result.value
    stored = await store.read(SESSION, ANALYSIS)
    assert stored == result.value
    assert stored["openai"]["category"] == "Antique"
    assert len(analyses[VISUAL_SEARCH].calls) == 1
    assert analyses[VISUAL_SEARCH].calls[0].image_url == "https://example.com/vase.jpg"


@pytest.mark.asyncio
async def test_second_invoke_returns_stored_artifact(store, invoker, analyses):
    first = await invoker.invoke(SESSION, FULL_ANALYSIS)
    second = await invoker.invoke(SESSION, FULL_ANALYSIS)

    assert second.ok
    assert second.cached
    assert second.value == first.value
    assert len(analyses[FULL_ANALYSIS].calls) == 1



@pytest.mark.asyncio
async def test_concurrent_invokes_share_one_run(store, invoker, analyses):
    analyses[VISUAL_SEARCH].delay = 0.05

    first, second = await asyncio.gather(
        invoker.invoke(SESSION, VISUAL_SEARCH),
        invoker.invoke(SESSION, VISUAL_SEARCH),
    )

    assert first.ok and second.ok
    assert first.value == second.value
    assert len(analyses[VISUAL_SEARCH].calls) == 1


@pytest.mark.asyncio
async def test_trigger_joins_in_flight_run(store, invoker, analyses):
    analyses[FULL_ANALYSIS].delay = 0.05
    running = asyncio.ensure_future(invoker.invoke(SESSION, FULL_ANALYSIS))
    await asyncio.sleep(0)

    value = await LocalStageTrigger(invoker).trigger(SESSION, FULL_ANALYSIS)

    assert value == (await running).value
    assert len(analyses[FULL_ANALYSIS].calls) == 1


@pytest.mark.asyncio
async def test_failed_run_is_not_reused(store, invoker, analyses):
    analyses[VISUAL_SEARCH].errors = [RuntimeError("rate limited")]

    first = await invoker.invoke(SESSION, VISUAL_SEARCH)
    second = await invoker.invoke(SESSION, VISUAL_SEARCH)

    assert not first.ok
    assert second.ok and not second.cached
    assert len(analyses[VISUAL_SEARCH].calls) == 2

@pytest.mark.asyncio
async def test_existing_artifact_is_not_recomputed(store, invoker, analyses):
    store.seed(SESSION, DETAILED, {"timestamp": 1, "concise_description": "Old"})

    result = await invoker.invoke(SESSION, FULL_ANALYSIS)

    assert result.cached
    assert result.value == {"timestamp": 1, "concise_description": "Old"}
    assert analyses[FULL_ANALYSIS].calls == []


@pytest.mark.asyncio
async def test_failure_writes_nothing(store, invoker, analyses):
    analyses[VISUAL_SEARCH].always_fail = True

    result = await invoker.invoke(SESSION, VISUAL_SEARCH)

    assert not result.ok
    assert isinstance(result.error, StageFailure)
    assert result.error.stage == VISUAL_SEARCH
    assert "analysis backend unavailable" in result.error.message
    assert result.error.status_code == 500
    assert not await store.exists(SESSION, ANALYSIS)


@pytest.mark.asyncio
async def test_timeout_is_a_stage_failure(store):
    slow = FakeAnalysis({"x": 1}, delay=1.0)
    invoker = StageInvoker(store, StageRegistry([Stage(VISUAL_SEARCH, ANALYSIS, slow)]), timeout_s=0.01)

    result = await invoker.invoke(SESSION, VISUAL_SEARCH)

    assert not result.ok
    assert "timed out" in result.error.message
    assert not await store.exists(SESSION, ANALYSIS)


@pytest.mark.asyncio
async def test_missing_prerequisite_is_a_client_error(store, invoker, analyses):
    result = await invoker.invoke(SESSION, ORIGIN_ANALYSIS)

    assert not result.ok
    assert isinstance(result.error.cause, PrerequisiteMissing)
    assert result.error.cause.artifact == ANALYSIS
    assert result.error.status_code == 400
    assert analyses[ORIGIN_ANALYSIS].calls == []


@pytest.mark.asyncio
async def test_dependency_artifacts_are_passed_in(store, invoker, analyses):
    store.seed(SESSION, ANALYSIS, ANALYSIS_DOC)

    result = await invoker.invoke(SESSION, ORIGIN_ANALYSIS)

    assert result.ok
    inputs = analyses[ORIGIN_ANALYSIS].calls[0]
    assert inputs.artifacts[ANALYSIS] == ANALYSIS_DOC
    assert inputs.metadata["mimeType"] == "image/jpeg"
    assert await store.exists(SESSION, ORIGIN)


@pytest.mark.asyncio
async def test_non_serializable_result_fails(store):
    bad = FakeAnalysis({"when": object()})
    invoker = StageInvoker(store, StageRegistry([Stage(VISUAL_SEARCH, ANALYSIS, bad)]))

    result = await invoker.invoke(SESSION, VISUAL_SEARCH)

    assert not result.ok
    assert "JSON-serializable" in result.error.message
    assert not await store.exists(SESSION, ANALYSIS)


def test_unknown_stage(registry):
    with pytest.raises(ValueError):
        registry.get("make-coffee")
    assert registry.by_artifact(DETAILED).name == FULL_ANALYSIS
    assert len(registry) == 4


# ==================== TRIGGERS ====================

@pytest.mark.asyncio
async def test_local_trigger_raises_stage_failure(invoker, analyses):
    analyses[FULL_ANALYSIS].always_fail = True
    trigger = LocalStageTrigger(invoker)

    with pytest.raises(StageFailure):
        await trigger.trigger(SESSION, FULL_ANALYSIS)


def _http_trigger(handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpStageTrigger("http://screener.local/", client, timeout_s=5), client


@pytest.mark.asyncio
async def test_http_trigger_posts_session_id():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"success": True, "results": {"ok": 1}})

    trigger, client = _http_trigger(handler)
    async with client:
        results = await trigger.trigger(SESSION, VISUAL_SEARCH)

    assert results == {"ok": 1}
    assert str(seen[0].url) == "http://screener.local/visual-search"
    assert json.loads(seen[0].content) == {"sessionId": SESSION}


@pytest.mark.asyncio
@pytest.mark.parametrize("response", [
    httpx.Response(500, json={"success": False, "message": "boom"}),
    httpx.Response(200, json={"success": False, "message": "no image"}),
    httpx.Response(200, text="<html>gateway</html>"),
])
async def test_http_trigger_failures(response):
    trigger, client = _http_trigger(lambda request: response)
    async with client:
        with pytest.raises(StageFailure) as exc_info:
            await trigger.trigger(SESSION, VISUAL_SEARCH)
    assert exc_info.value.stage == VISUAL_SEARCH


@pytest.mark.asyncio
async def test_http_trigger_transport_error():
    def handler(request):
        raise httpx.ConnectError("connection refused")

    trigger, client = _http_trigger(handler)
    async with client:
        with pytest.raises(StageFailure, match="trigger request failed"):
            await trigger.trigger(SESSION, VISUAL_SEARCH)
