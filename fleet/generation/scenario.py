"""Human-like interaction scenarios, LLM-backed with a rule-based fallback."""

import json
import random
import re
from typing import Any

import httpx
from pydantic import ValidationError as PydanticValidationError

from fleet.config import Settings
from fleet.errors import UpstreamGenerationError
from fleet.models.automation import PageContext, PageType, Scenario, ScenarioStep, StepType
from fleet.utils.logging import get_logger

logger = get_logger(__name__)

OPENAI_URL = "https://api.openai.com/v1/chat/completions"
GEMINI_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"

MIN_STEP_MS = 500
MAX_STEP_MS = 15000

SYSTEM_PROMPT = (
    "You are an expert in web automation and human behavior simulation. Your task is "
    "to create realistic browsing scenarios that mimic how real users interact with "
    "websites. Focus on natural timing, realistic user goals, and human-like patterns."
)

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


def determine_page_type(url: str, title: str = "", form_count: int = 0) -> PageType:
    """Classify a page from its URL, title and whether it has forms."""
    url_lower = url.lower()
    title_lower = title.lower()

    if url_lower == "/" or "/home" in url_lower or "home" in title_lower:
        return PageType.HOMEPAGE
    if any(part in url_lower for part in ("/article", "/blog", "/news")):
        return PageType.ARTICLE
    if "/product" in url_lower or "/item" in url_lower or "buy" in title_lower:
        return PageType.PRODUCT
    if "/search" in url_lower or "search" in title_lower or form_count > 0:
        return PageType.SEARCH
    if "/about" in url_lower:
        return PageType.ABOUT
    if "/contact" in url_lower:
        return PageType.CONTACT
    return PageType.GENERAL


def _clamp(value: Any, low: int, high: int, default: int) -> int:
    try:
        number = int(value) if value else default
    except (TypeError, ValueError, OverflowError):
        number = default
    return max(low, min(high, number))


def _text(value: Any) -> str | None:
    if value is None or isinstance(value, (dict, list)):
        return None
    return str(value)


def parse_scenario(text: str, provider: str, context: PageContext) -> Scenario:
    """
    Extract and normalize the JSON scenario embedded in an LLM reply.

    Raises:
        UpstreamGenerationError: If no usable JSON object is present
    """
    if not isinstance(text, str):
        raise UpstreamGenerationError(f"{provider} returned no text")
    match = _JSON_OBJECT.search(text)
    if not match:
        raise UpstreamGenerationError(f"No JSON found in {provider} response")
    try:
        parsed = json.loads(match.group(0))
        raw_steps = parsed["steps"]
    except (ValueError, KeyError, TypeError) as e:
        raise UpstreamGenerationError(f"Malformed {provider} response: {e}") from e
    if not isinstance(raw_steps, list):
        raise UpstreamGenerationError(f"{provider} returned steps that are not a list")

    valid_types = {t.value for t in StepType}
    try:
        steps = []
        for raw in raw_steps:
            if not isinstance(raw, dict):
                continue
            step_type = _text(raw.get("type"))
            steps.append(
                ScenarioStep(
                    type=StepType(step_type) if step_type in valid_types else StepType.WAIT,
                    target=_text(raw.get("target")),
                    value=_text(raw.get("value")),
                    duration_ms=_clamp(raw.get("duration"), MIN_STEP_MS, MAX_STEP_MS, 2000),
                    description=_text(raw.get("description")) or "User action",
                    reasoning=_text(raw.get("reasoning")) or "Natural browsing behavior",
                    human_likeness=_clamp(raw.get("humanLikeness"), 1, 10, 7),
                )
            )
        if not steps:
            raise UpstreamGenerationError(f"{provider} returned a scenario without steps")

        return Scenario(
            steps=steps,
            total_duration_ms=sum(step.duration_ms for step in steps),
            description=_text(parsed.get("description"))
            or f"AI-generated browsing scenario for {context.page_type.value}",
            intent=_text(parsed.get("intent")) or "Browse and explore website content",
            complexity=_clamp(parsed.get("complexity"), 1, 10, 5),
            human_likeness=_clamp(parsed.get("humanLikeness"), 1, 10, 7),
            provider=provider,
        )
    except (PydanticValidationError, TypeError, ValueError) as e:
        raise UpstreamGenerationError(f"Unusable {provider} scenario: {e}") from e


class ScenarioGenerator:
    """
    Produces a Scenario for a page, never failing.

    When OpenAI or Gemini keys are configured one of them is asked first;
    any upstream problem falls back to a deterministic-shape, rule-based
    scenario keyed off the page type.
    """

    def __init__(
        self,
        settings: Settings,
        client: httpx.AsyncClient | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.settings = settings
        self._client = client
        self._rng = rng or random.Random()

    @property
    def providers(self) -> list[str]:
        available = []
        if self.settings.openai_api_key:
            available.append("openai")
        if self.settings.gemini_api_key:
            available.append("gemini")
        return available

    async def generate(self, context: PageContext, intent: str | None = None) -> Scenario:
        """
        Generate a scenario for ``context``.

        Args:
            context: What is known about the target page
            intent: Optional browsing goal

        Returns:
            LLM scenario when a provider answered usefully, otherwise the fallback
        """
        providers = self.providers
        if not providers:
            logger.info("No scenario provider configured, using rule-based scenario")
            return self.fallback(context, intent)

        provider = self._rng.choice(providers)
        try:
            if provider == "openai":
                scenario = await self._generate_openai(context, intent)
            else:
                scenario = await self._generate_gemini(context, intent)
        except UpstreamGenerationError as e:
            logger.warning(
                "Scenario generation failed, using fallback",
                provider=provider,
                url=context.url,
                error=e.message,
            )
            return self.fallback(context, intent)

        logger.info(
            "Scenario generated",
            provider=provider,
            url=context.url,
            steps=len(scenario.steps),
            total_duration_ms=scenario.total_duration_ms,
        )
        return scenario

    async def _post(self, url: str, **kwargs: Any) -> dict[str, Any]:
        client = self._client or httpx.AsyncClient(timeout=self.settings.generation_timeout_seconds)
        try:
            response = await client.post(url, **kwargs)
            response.raise_for_status()
            return response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise UpstreamGenerationError(f"Request to {url.split('?')[0]} failed: {e}") from e
        finally:
            if self._client is None:
                await client.aclose()

    async def _generate_openai(self, context: PageContext, intent: str | None) -> Scenario:
        data = await self._post(
            OPENAI_URL,
            headers={"Authorization": f"Bearer {self.settings.openai_api_key}"},
            json={
                "model": self.settings.openai_model,
                "messages": [
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": build_prompt(context, intent)},
                ],
                "max_tokens": 1500,
                "temperature": 0.7,
            },
        )
        try:
            text = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise UpstreamGenerationError("Unexpected OpenAI response shape") from e
        return parse_scenario(text, "openai", context)

    async def _generate_gemini(self, context: PageContext, intent: str | None) -> Scenario:
        data = await self._post(
            GEMINI_URL.format(model=self.settings.gemini_model),
            params={"key": self.settings.gemini_api_key},
            json={
                "contents": [{"parts": [{"text": build_prompt(context, intent, links=8)}]}],
                "generationConfig": {"temperature": 0.7, "maxOutputTokens": 1500},
            },
        )
        try:
            text = data["candidates"][0]["content"]["parts"][0]["text"]
        except (KeyError, IndexError, TypeError) as e:
            raise UpstreamGenerationError("Unexpected Gemini response shape") from e
        return parse_scenario(text, "gemini", context)

    # Rule-based fallback

    def _duration(self, low: int, high: int) -> int:
        return self._rng.randint(low, high)

    def _step(
        self,
        step_type: StepType,
        duration: tuple[int, int],
        description: str,
        reasoning: str,
        human_likeness: int = 8,
        target: str | None = None,
    ) -> ScenarioStep:
        return ScenarioStep(
            type=step_type,
            target=target,
            duration_ms=self._duration(*duration),
            description=description,
            reasoning=reasoning,
            human_likeness=human_likeness,
        )

    def fallback(self, context: PageContext, intent: str | None = None) -> Scenario:
        """Rule-based scenario: land, scroll, then page-type specific behaviour."""
        steps = [
            self._step(
                StepType.WAIT,
                (2000, 4000),
                "User lands on page and takes a moment to assess content",
                "Humans need time to visually process and understand a new page",
                human_likeness=9,
            ),
            self._step(
                StepType.SCROLL,
                (3000, 6000),
                "Scroll down to explore page content",
                "Natural exploration behavior to see what content is available",
            ),
        ]

        page_type = context.page_type
        if page_type == PageType.HOMEPAGE:
            if context.elements.navigation:
                steps.append(
                    self._step(
                        StepType.HOVER,
                        (1500, 3000),
                        "Hover over main navigation to see options",
                        "Users often explore navigation to understand site structure",
                        target="nav",
                    )
                )
            steps.append(
                self._step(
                    StepType.SCROLL,
                    (4000, 7000),
                    "Scroll through main content sections",
                    "Homepage browsing involves getting an overview of all sections",
                )
            )
        elif page_type == PageType.ARTICLE:
            for section in range(1, 4):
                steps.append(
                    self._step(
                        StepType.SCROLL,
                        (3000, 6000),
                        f"Read article content - section {section}",
                        "Article reading involves steady scrolling with pauses to read",
                        human_likeness=9,
                    )
                )
                steps.append(
                    self._step(
                        StepType.WAIT,
                        (5000, 10000),
                        "Pause to read and comprehend content",
                        "Humans need time to process and understand written content",
                        human_likeness=9,
                    )
                )
        elif page_type == PageType.PRODUCT:
            steps.append(
                self._step(
                    StepType.CLICK,
                    (1500, 3000),
                    "Click to view product images in detail",
                    "Visual inspection is crucial for product evaluation",
                    target="img",
                )
            )
            steps.append(
                self._step(
                    StepType.SCROLL,
                    (4000, 8000),
                    "Scroll through product specifications and details",
                    "Buyers need to understand product features and specifications",
                )
            )
        elif page_type == PageType.SEARCH:
            steps.append(
                self._step(
                    StepType.SCROLL,
                    (3000, 5000),
                    "Scroll through search results",
                    "Users scan search results to find relevant information",
                )
            )
        else:
            steps.append(
                self._step(
                    StepType.SCROLL,
                    (3000, 6000),
                    "Continue exploring page content",
                    "General exploration to understand page purpose and content",
                    human_likeness=7,
                )
            )

        return Scenario(
            steps=steps,
            total_duration_ms=sum(step.duration_ms for step in steps),
            description=f"Rule-based browsing scenario for {page_type.value}",
            intent=intent or "Explore and understand website content",
            complexity=5,
            human_likeness=6,
            provider="rule-based",
        )


def build_prompt(context: PageContext, intent: str | None, links: int = 10) -> str:
    """Describe the page and the expected JSON shape to an LLM."""
    elements = context.elements
    link_texts = ", ".join(link.text for link in elements.links[:links])
    button_texts = ", ".join(button.text for button in elements.buttons[:5])
    nav_texts = ", ".join(link.text for link in elements.navigation[:5])
    headings = ", ".join(context.content.headings[:3])
    keywords = ", ".join(context.content.keywords[:5])

    return f"""
Analyze this website and create a realistic browsing scenario that mimics human behavior:

Website: {context.url}
Title: {context.title}
Page type: {context.page_type.value}
Description: {context.description or "N/A"}

Available elements:
- Links: {link_texts}
- Buttons: {button_texts}
- Forms: {len(elements.forms)} form(s) available
- Navigation: {nav_texts}

Content overview:
- Main headings: {headings}
- Key topics: {keywords}

User intent: {intent or "General browsing and exploration"}

Respond with JSON only:
{{
  "intent": "Description of user's browsing goal",
  "steps": [
    {{
      "type": "wait|scroll|click|hover|type",
      "target": "CSS selector",
      "value": "text to type (if applicable)",
      "duration": 2000,
      "description": "What the user is doing",
      "reasoning": "Why a human would do this",
      "humanLikeness": 8
    }}
  ],
  "description": "Overall scenario description",
  "complexity": 7,
  "humanLikeness": 8
}}

Guidelines: reading takes 3-8 seconds, clicks 1-2 seconds; include pauses,
hovering and scrolling back; 8-15 steps, 30-120 seconds in total.
"""
