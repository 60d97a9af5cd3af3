"""Shared test fixtures: in-memory store, fake stage functions, fake delivery channels."""

import asyncio
import base64

import pytest

from screener.config import Settings
from screener.stages import (
    FIND_VALUE,
    FULL_ANALYSIS,
    ORIGIN_ANALYSIS,
    VISUAL_SEARCH,
    Stage,
    StageInvoker,
    StageRegistry,
)
from screener.store import ANALYSIS, DETAILED, METADATA, ORIGIN, VALUE, InMemoryArtifactStore
from screener.waiter import DependencyWaiter

SESSION = "sess-123"
ENCRYPTION_KEY = base64.b64encode(bytes(range(32))).decode()

METADATA_DOC = {
    "originalName": "vase.jpg",
    "timestamp": 1700000000000,
    "mimeType": "image/jpeg",
    "size": 2048,
    "imageUrl": "https://example.com/vase.jpg",
}

ANALYSIS_DOC = {
    "vision": {"description": {"labels": ["Vase", "Porcelain"], "confidence": 1.0}, "matches": {}},
    "openai": {"category": "Antique", "description": "Vase"},
}
ORIGIN_DOC = {"originAnalysis": {"originality": "original", "confidence": 0.8,
                                 "unique_characteristics": ["Cobalt glaze"]}}
DETAILED_DOC = {
    "concise_description": "Chinese blue and white porcelain vase",
    "maker_analysis": {"creator_name": "Unknown", "reasoning": "No marks"},
}
VALUE_DOC = {"query": "Chinese blue and white porcelain vase", "minValue": 500, "maxValue": 1200}


class FakeAnalysis:
    """Stage function double. ``errors`` are raised on successive calls before succeeding."""

    def __init__(self, value=None, errors=(), always_fail=False, delay=0.0):
        self.value = value if value is not None else {"result": "ok"}
        self.errors = list(errors)
        self.always_fail = always_fail
        self.delay = delay
        self.calls = []

    async def __call__(self, inputs):
        self.calls.append(inputs)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.always_fail:
            raise RuntimeError("analysis backend unavailable")
        if self.errors:
            raise self.errors.pop(0)
        return dict(self.value)


class RecordingSleep:
    """No-op sleep that records each requested delay and yields to the loop once."""

    def __init__(self, on_sleep=None):
        self.delays = []
        self.on_sleep = on_sleep

    async def __call__(self, seconds):
        self.delays.append(seconds)
        if self.on_sleep:
            self.on_sleep(len(self.delays))
        await asyncio.sleep(0)


class FakeMailer:
    def __init__(self, fail_free=False, fail_offer=False):
        self.fail_free = fail_free
        self.fail_offer = fail_offer
        self.free_reports = []
        self.offers = []

    async def send_free_report(self, to_email, report_html):
        if self.fail_free:
            raise RuntimeError("SendGrid returned HTTP 500")
        self.free_reports.append((to_email, report_html))
        return {"recipient": to_email}

    async def schedule_personal_offer(self, to_email, subject, html, send_at):
        if self.fail_offer:
            raise RuntimeError("SendGrid returned HTTP 500")
        self.offers.append({"to": to_email, "subject": subject, "html": html, "sendAt": send_at})
        return {"recipient": to_email, "sendAt": send_at, "subject": subject}


class FakeOfferWriter:
    def __init__(self, fail=False):
        self.fail = fail
        self.seen = []

    async def write(self, detailed):
        self.seen.append(detailed)
        if self.fail:
            raise ValueError("offer writer returned an invalid email structure")
        return {"subject": "Your vase", "content": "<p>Hello</p>"}


class FakeSheets:
    def __init__(self, fail=False):
        self.fail = fail
        self.rows = []

    async def record_submission(self, session_id, email, status):
        if self.fail:
            raise RuntimeError("spreadsheet unavailable")
        self.rows.append((session_id, email, status))
        return True


class FakeCrm:
    def __init__(self, fail=False):
        self.fail = fail
        self.messages = []

    async def publish(self, message):
        if self.fail:
            raise RuntimeError("pubsub unavailable")
        self.messages.append(message)
        return "msg-1"


@pytest.fixture
def settings():
    return Settings(_env_file=None, environment="test", stage_timeout_s=5,
                    wait_max_retries=5, wait_retry_delay_ms=10, encryption_key=ENCRYPTION_KEY)


@pytest.fixture
def store():
    s = InMemoryArtifactStore()
    s.seed(SESSION, METADATA, METADATA_DOC)
    return s


@pytest.fixture
def analyses():
    return {
        VISUAL_SEARCH: FakeAnalysis(ANALYSIS_DOC),
        ORIGIN_ANALYSIS: FakeAnalysis(ORIGIN_DOC),
        FULL_ANALYSIS: FakeAnalysis(DETAILED_DOC),
        FIND_VALUE: FakeAnalysis(VALUE_DOC),
    }


@pytest.fixture
def registry(analyses):
    return StageRegistry([
        Stage(VISUAL_SEARCH, ANALYSIS, analyses[VISUAL_SEARCH]),
        Stage(ORIGIN_ANALYSIS, ORIGIN, analyses[ORIGIN_ANALYSIS], depends_on=(VISUAL_SEARCH,)),
        Stage(FULL_ANALYSIS, DETAILED, analyses[FULL_ANALYSIS]),
        Stage(FIND_VALUE, VALUE, analyses[FIND_VALUE], depends_on=(FULL_ANALYSIS,)),
    ])


@pytest.fixture
def invoker(store, registry):
    return StageInvoker(store, registry, timeout_s=5)


@pytest.fixture
def waiter(store):
    # Real sleeps of 10ms so sibling stages can finish between checks
    return DependencyWaiter(store, max_retries=5, retry_delay_ms=10)
