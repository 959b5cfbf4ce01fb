"""Shapes exchanged with the automation collaborators.

Scenario generation, fingerprint generation and proxy allocation are
external capabilities; these models are their contracts.
"""

from datetime import datetime
from enum import Enum

from pydantic import Field

from fleet.models.base import APIModel, new_id


class PageType(str, Enum):
    """Coarse page classification driving rule-based scenarios."""

    HOMEPAGE = "homepage"
    ARTICLE = "article"
    PRODUCT = "product"
    SEARCH = "search"
    ABOUT = "about"
    CONTACT = "contact"
    GENERAL = "general"


class PageLink(APIModel):
    text: str = ""
    href: str = ""
    visible: bool = True


class PageButton(APIModel):
    text: str = ""
    type: str = "button"
    visible: bool = True


class PageForm(APIModel):
    action: str = ""
    field_names: list[str] = Field(default_factory=list)


class PageElements(APIModel):
    links: list[PageLink] = Field(default_factory=list)
    buttons: list[PageButton] = Field(default_factory=list)
    forms: list[PageForm] = Field(default_factory=list)
    images: list[dict[str, str | bool]] = Field(default_factory=list)
    navigation: list[PageLink] = Field(default_factory=list)


class PageContent(APIModel):
    headings: list[str] = Field(default_factory=list)
    paragraphs: list[str] = Field(default_factory=list)
    keywords: list[str] = Field(default_factory=list)


class PageContext(APIModel):
    """What the scenario generator knows about the target page."""

    url: str
    title: str = "Unknown Page"
    description: str | None = None
    page_type: PageType = PageType.GENERAL
    elements: PageElements = Field(default_factory=PageElements)
    content: PageContent = Field(default_factory=PageContent)


class StepType(str, Enum):
    """Interaction primitive a worker replays."""

    SCROLL = "scroll"
    CLICK = "click"
    HOVER = "hover"
    WAIT = "wait"
    TYPE = "type"
    NAVIGATE = "navigate"


class ScenarioStep(APIModel):
    """One timed, human-like interaction."""

    type: StepType = StepType.WAIT
    target: str | None = None
    value: str | None = None
    duration_ms: int = Field(default=2000, ge=0)
    description: str = "User action"
    reasoning: str = "Natural browsing behavior"
    human_likeness: int = Field(default=7, ge=1, le=10)


class Scenario(APIModel):
    """Ordered interaction script for one page visit."""

    steps: list[ScenarioStep] = Field(default_factory=list)
    total_duration_ms: int = 0
    description: str = ""
    intent: str = ""
    complexity: int = Field(default=5, ge=1, le=10)
    human_likeness: int = Field(default=6, ge=1, le=10)
    provider: str = "rule-based"


class Viewport(APIModel):
    width: int = 1366
    height: int = 768


class ScreenProfile(APIModel):
    width: int
    height: int
    color_depth: int = 24


class WebGLProfile(APIModel):
    vendor: str
    renderer: str


class BrowserPlugin(APIModel):
    name: str
    filename: str
    description: str = ""


class FingerprintProfile(APIModel):
    """Browser/environment characteristics for one synthetic user."""

    user_agent: str
    viewport: Viewport
    screen: ScreenProfile
    timezone: str
    language: str
    platform: str
    webgl: WebGLProfile
    canvas_fingerprint: str
    audio_fingerprint: str
    fonts: list[str] = Field(default_factory=list)
    plugins: list[BrowserPlugin] = Field(default_factory=list)
    hardware_concurrency: int = 4
    device_memory: int = 8
    region: str | None = None


class ProxyProtocol(str, Enum):
    HTTP = "http"
    HTTPS = "https"
    SOCKS4 = "socks4"
    SOCKS5 = "socks5"


class ProxyStatus(str, Enum):
    ACTIVE = "active"
    DEGRADED = "degraded"
    INACTIVE = "inactive"


class Proxy(APIModel):
    """A proxy endpoint tracked by the allocator."""

    id: str = Field(default_factory=lambda: new_id("px-", 6))
    host: str
    port: int
    protocol: ProxyProtocol = ProxyProtocol.HTTP
    username: str | None = None
    password: str | None = None
    country: str | None = None
    status: ProxyStatus = ProxyStatus.ACTIVE
    reliability: float = Field(default=0.0, ge=0, le=100)
    usage_count: int = 0
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    currently_used_by: str | None = None
    last_used: datetime | None = None
