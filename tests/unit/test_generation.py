"""Tests for scenario, fingerprint and proxy generation."""

import json
import random

import httpx
import pytest

from fleet.config import Settings
from fleet.errors import UpstreamGenerationError
from fleet.generation import (
    FingerprintGenerator,
    ProxyAllocator,
    ScenarioGenerator,
    determine_page_type,
    fingerprint_script,
)
from fleet.generation.scenario import parse_scenario
from fleet.models.automation import PageContext, PageType, Proxy, ProxyStatus, StepType

ARTICLE = PageContext(url="https://example.com/blog/post", page_type=PageType.ARTICLE)

LLM_SCENARIO = {
    "intent": "Read the post",
    "steps": [
        {"type": "scroll", "duration": 3000, "description": "Skim"},
        {"type": "teleport", "duration": 100},
        {"type": "click", "target": "a.more", "duration": 99999, "humanLikeness": 42},
    ],
    "complexity": 12,
}


@pytest.mark.parametrize(
    "url,title,forms,expected",
    [
        ("https://example.com/blog/post-1", "", 0, PageType.ARTICLE),
        ("https://shop.example.com/product/42", "", 0, PageType.PRODUCT),
        ("https://example.com/search?q=x", "", 0, PageType.SEARCH),
        ("https://example.com/x", "", 2, PageType.SEARCH),
        ("https://example.com/home", "", 0, PageType.HOMEPAGE),
        ("https://example.com/about", "", 0, PageType.ABOUT),
        ("https://example.com/contact", "", 0, PageType.CONTACT),
        ("https://example.com/x", "Welcome", 0, PageType.GENERAL),
    ],
)
def test_determine_page_type(url: str, title: str, forms: int, expected: PageType) -> None:
    assert determine_page_type(url, title, forms) == expected


def test_parse_scenario_normalizes_steps() -> None:
    text = "Here you go:\n" + json.dumps(LLM_SCENARIO) + "\nEnjoy"

    scenario = parse_scenario(text, "openai", ARTICLE)

    types = [step.type for step in scenario.steps]
    assert types == [StepType.SCROLL, StepType.WAIT, StepType.CLICK]
    assert [step.duration_ms for step in scenario.steps] == [3000, 500, 15000]
    assert scenario.steps[2].human_likeness == 10
    assert scenario.total_duration_ms == 18500
    assert scenario.complexity == 10
    assert scenario.provider == "openai"
    assert scenario.description == "AI-generated browsing scenario for article"


@pytest.mark.parametrize(
    "text",
    [
        "no json here",
        '{"steps": "nope"',
        '{"intent": "x"}',
        '{"steps": 7}',
        '{"steps": [1, "scroll"]}',
        '{"steps": {"type": "click"}}',
    ],
)
def test_parse_scenario_rejects_unusable_replies(text: str) -> None:
    with pytest.raises(UpstreamGenerationError):
        parse_scenario(text, "gemini", ARTICLE)


def test_parse_scenario_coerces_loose_step_fields() -> None:
    reply = {
        "steps": [
            {"type": "type", "target": "#q", "value": 42},
            {"type": ["click"], "target": {"css": "a"}, "duration": 1e999},
        ],
        "intent": 7,
    }

    scenario = parse_scenario(json.dumps(reply), "openai", ARTICLE)

    assert scenario.steps[0].type == StepType.TYPE
    assert scenario.steps[0].value == "42"
    assert scenario.steps[1].type == StepType.WAIT
    assert scenario.steps[1].target is None
    assert scenario.steps[1].duration_ms == 2000
    assert scenario.intent == "7"


@pytest.mark.parametrize(
    "page_type,length",
    [
        (PageType.ARTICLE, 8),
        (PageType.PRODUCT, 4),
        (PageType.SEARCH, 3),
        (PageType.GENERAL, 3),
        (PageType.HOMEPAGE, 3),
    ],
)
def test_fallback_shape(settings: Settings, page_type: PageType, length: int) -> None:
    generator = ScenarioGenerator(settings, rng=random.Random(1))
    context = PageContext(url="https://example.com", page_type=page_type)

    scenario = generator.fallback(context)

    assert len(scenario.steps) == length
    assert scenario.steps[0].type == StepType.WAIT
    assert 2000 <= scenario.steps[0].duration_ms <= 4000
    assert scenario.total_duration_ms == sum(step.duration_ms for step in scenario.steps)
    assert scenario.provider == "rule-based"


async def test_generate_without_keys_uses_fallback(settings: Settings) -> None:
    scenario = await ScenarioGenerator(settings).generate(ARTICLE, "read it")

    assert scenario.provider == "rule-based"
    assert scenario.intent == "read it"


async def test_generate_with_openai() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        content = json.dumps(LLM_SCENARIO)
        return httpx.Response(200, json={"choices": [{"message": {"content": content}}]})

    settings = Settings(_env_file=None, openai_api_key="sk-test", gemini_api_key=None)
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        scenario = await ScenarioGenerator(settings, client=client).generate(ARTICLE)

    assert scenario.provider == "openai"
    assert len(scenario.steps) == 3
    assert requests[0].headers["Authorization"] == "Bearer sk-test"
    assert "example.com/blog/post" in json.loads(requests[0].content)["messages"][1]["content"]


async def test_upstream_failure_falls_back() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, json={"error": "overloaded"})

    settings = Settings(_env_file=None, openai_api_key=None, gemini_api_key="g-test")
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        scenario = await ScenarioGenerator(settings, client=client).generate(ARTICLE)

    assert scenario.provider == "rule-based"
    assert len(scenario.steps) == 8


@pytest.mark.parametrize(
    "content",
    ['{"steps": 7}', '{"steps": []}', None, 42],
)
async def test_unusable_reply_falls_back(content: object) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"choices": [{"message": {"content": content}}]})

    settings = Settings(_env_file=None, openai_api_key="sk-test", gemini_api_key=None)
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        scenario = await ScenarioGenerator(settings, client=client).generate(ARTICLE)

    assert scenario.provider == "rule-based"
    assert len(scenario.steps) == 8


def test_fingerprint_region_preset() -> None:
    generator = FingerprintGenerator(random.Random(7))

    profile = generator.generate("ASIA")

    assert profile.region == "asia"
    assert profile.language in ("zh-CN", "ja-JP", "ko-KR")
    assert profile.timezone.startswith("Asia/")
    assert len(profile.canvas_fingerprint) == 32


def test_fingerprint_unknown_region_is_random() -> None:
    profile = FingerprintGenerator(random.Random(7)).generate("atlantis")

    assert profile.region is None


def test_fingerprint_script_embeds_profile() -> None:
    profile = FingerprintGenerator(random.Random(3)).generate("us")

    script = fingerprint_script(profile)

    assert "__PROFILE__" not in script
    assert "__OFFSETS__" not in script
    assert json.dumps(profile.user_agent) in script
    assert '"America/New_York": 300' in script


async def test_proxy_allocation_prefers_reliable_and_least_used() -> None:
    allocator = ProxyAllocator(
        [
            Proxy(id="px-low", host="10.0.0.1", port=8080, reliability=60),
            Proxy(id="px-busy", host="10.0.0.2", port=8080, reliability=95, usage_count=9),
            Proxy(id="px-best", host="10.0.0.3", port=8080, reliability=95),
            Proxy(
                id="px-off", host="10.0.0.4", port=8080, reliability=99, status=ProxyStatus.INACTIVE
            ),
        ]
    )

    first = await allocator.allocate("wk-1")
    assert first.id == "px-best"
    assert first.usage_count == 1
    assert first.currently_used_by == "wk-1"

    second = await allocator.allocate("wk-2", exclude_in_use_by=["wk-1"])
    assert second.id == "px-busy"

    assert await allocator.allocate("wk-1", exclude_in_use_by=["wk-1", "wk-2"]) is None

    await allocator.release("px-best", success=False)
    best = allocator.get("px-best")
    assert best.currently_used_by is None
    assert best.failed_requests == 1
    assert best.total_requests == 1
