"""Synthetic browser fingerprint profiles."""

import json
import random
import secrets
import string

from fleet.models.automation import (
    BrowserPlugin,
    FingerprintProfile,
    ScreenProfile,
    Viewport,
    WebGLProfile,
)
from fleet.utils.logging import get_logger

logger = get_logger(__name__)

VIEWPORTS = [
    (1366, 768),
    (1920, 1080),
    (1440, 900),
    (1536, 864),
    (1280, 720),
    (1600, 900),
    (1024, 768),
    (1280, 800),
]

SCREENS = [
    (1366, 768),
    (1920, 1080),
    (1440, 900),
    (1536, 864),
    (2560, 1440),
    (1600, 900),
    (1280, 1024),
]

TIMEZONES = [
    "America/New_York",
    "America/Los_Angeles",
    "America/Chicago",
    "Europe/London",
    "Europe/Paris",
    "Europe/Berlin",
    "Asia/Tokyo",
    "Asia/Shanghai",
    "Asia/Seoul",
    "Australia/Sydney",
]

LANGUAGES = [
    "en-US",
    "en-GB",
    "zh-CN",
    "es-ES",
    "fr-FR",
    "de-DE",
    "ja-JP",
    "ko-KR",
    "pt-BR",
    "ru-RU",
]

WEBGL_VENDORS = ["Intel Inc.", "NVIDIA Corporation", "AMD", "Apple Inc.", "Qualcomm"]

WEBGL_RENDERERS = [
    "Intel Iris OpenGL Engine",
    "NVIDIA GeForce GTX 1060",
    "AMD Radeon RX 580",
    "Apple M1",
    "ANGLE (Intel, Intel(R) HD Graphics 630 Direct3D11 vs_5_0 ps_5_0)",
    "ANGLE (NVIDIA, NVIDIA GeForce RTX 3070 Direct3D11 vs_5_0 ps_5_0)",
]

FONTS = [
    "Arial",
    "Arial Black",
    "Comic Sans MS",
    "Courier New",
    "Georgia",
    "Impact",
    "Times New Roman",
    "Trebuchet MS",
    "Verdana",
    "Helvetica",
    "Calibri",
    "Cambria",
    "Consolas",
    "Lucida Console",
    "Segoe UI",
    "Tahoma",
]

PLUGINS = [
    BrowserPlugin(
        name="Chrome PDF Plugin",
        filename="internal-pdf-viewer",
        description="Portable Document Format",
    ),
    BrowserPlugin(name="Chrome PDF Viewer", filename="mhjfbmdgcfjbbpaeojofohoefgiehjai"),
    BrowserPlugin(name="Native Client", filename="internal-nacl-plugin"),
]

USER_AGENTS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/119.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/119.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/118.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.0 Safari/605.1.15",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:109.0) Gecko/20100101 Firefox/119.0",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/119.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/119.0.0.0 Safari/537.36 Edg/119.0.0.0",
]

# Region presets: (languages, timezones)
REGIONS: dict[str, tuple[list[str], list[str]]] = {
    "us": (["en-US"], ["America/New_York", "America/Los_Angeles", "America/Chicago"]),
    "eu": (
        ["en-GB", "fr-FR", "de-DE", "es-ES"],
        ["Europe/London", "Europe/Paris", "Europe/Berlin"],
    ),
    "asia": (["zh-CN", "ja-JP", "ko-KR"], ["Asia/Shanghai", "Asia/Tokyo", "Asia/Seoul"]),
}

# Minutes behind UTC, as Date.prototype.getTimezoneOffset reports them
TIMEZONE_OFFSETS = {
    "America/New_York": 300,
    "America/Los_Angeles": 480,
    "America/Chicago": 360,
    "Europe/London": 0,
    "Europe/Paris": -60,
    "Europe/Berlin": -60,
    "Asia/Tokyo": -540,
    "Asia/Shanghai": -480,
    "Asia/Seoul": -540,
    "Australia/Sydney": -660,
}


def platform_for(user_agent: str) -> str:
    """navigator.platform value consistent with a user agent."""
    if "Windows" in user_agent:
        return "Win32"
    if "Macintosh" in user_agent:
        return "MacIntel"
    if "Android" in user_agent:
        return "Linux armv7l"
    if "Linux" in user_agent:
        return "Linux x86_64"
    return "Win32"


class FingerprintGenerator:
    """Draws coherent fingerprint profiles from common real-world values."""

    def __init__(self, rng: random.Random | None = None) -> None:
        self._rng = rng or random.Random()

    def generate(self, region: str | None = None) -> FingerprintProfile:
        """
        Generate a profile, optionally pinned to a region preset.

        Unknown regions are ignored and yield a fully random profile.
        """
        rng = self._rng
        user_agent = rng.choice(USER_AGENTS)
        viewport_w, viewport_h = rng.choice(VIEWPORTS)
        screen_w, screen_h = rng.choice(SCREENS)
        language = rng.choice(LANGUAGES)
        timezone = rng.choice(TIMEZONES)

        preset = REGIONS.get(region.lower()) if region else None
        if preset:
            language = rng.choice(preset[0])
            timezone = rng.choice(preset[1])

        profile = FingerprintProfile(
            user_agent=user_agent,
            viewport=Viewport(width=viewport_w, height=viewport_h),
            screen=ScreenProfile(width=screen_w, height=screen_h),
            timezone=timezone,
            language=language,
            platform=platform_for(user_agent),
            webgl=WebGLProfile(
                vendor=rng.choice(WEBGL_VENDORS),
                renderer=rng.choice(WEBGL_RENDERERS),
            ),
            canvas_fingerprint="".join(
                secrets.choice(string.ascii_letters + string.digits) for _ in range(32)
            ),
            audio_fingerprint=secrets.token_hex(8),
            fonts=rng.sample(FONTS, rng.randint(10, len(FONTS))),
            plugins=[plugin.model_copy() for plugin in PLUGINS],
            hardware_concurrency=rng.randint(2, 16),
            device_memory=rng.choice([2, 4, 8, 16, 32]),
            region=region.lower() if preset else None,
        )

        logger.debug(
            "Fingerprint generated",
            platform=profile.platform,
            viewport=f"{viewport_w}x{viewport_h}",
            language=profile.language,
            timezone=profile.timezone,
            region=profile.region,
        )
        return profile


_SCRIPT_TEMPLATE = """
(function(profile, offsets) {
  const define = (obj, prop, value) =>
    Object.defineProperty(obj, prop, { get: () => value, configurable: true });

  define(navigator, 'platform', profile.platform);
  define(navigator, 'language', profile.language);
  define(navigator, 'languages', [profile.language, profile.language.split('-')[0]]);
  define(navigator, 'hardwareConcurrency', profile.hardwareConcurrency);
  define(navigator, 'deviceMemory', profile.deviceMemory);
  define(navigator, 'webdriver', undefined);

  define(screen, 'width', profile.screen.width);
  define(screen, 'height', profile.screen.height);
  define(screen, 'availWidth', profile.screen.width);
  define(screen, 'availHeight', profile.screen.height - 40);
  define(screen, 'colorDepth', profile.screen.colorDepth);
  define(screen, 'pixelDepth', profile.screen.colorDepth);

  const OriginalDateTimeFormat = Intl.DateTimeFormat;
  Intl.DateTimeFormat = function(locales, options) {
    return new OriginalDateTimeFormat(locales, { ...options, timeZone: profile.timezone });
  };
  Date.prototype.getTimezoneOffset = () => offsets[profile.timezone] || 0;

  const getParameter = WebGLRenderingContext.prototype.getParameter;
  WebGLRenderingContext.prototype.getParameter = function(parameter) {
    if (parameter === 37445) return profile.webgl.vendor;
    if (parameter === 37446) return profile.webgl.renderer;
    return getParameter.call(this, parameter);
  };

  const toDataURL = HTMLCanvasElement.prototype.toDataURL;
  HTMLCanvasElement.prototype.toDataURL = function(type) {
    const context = this.getContext('2d');
    if (context && this.width && this.height) {
      const image = context.getImageData(0, 0, this.width, this.height);
      for (let i = 0; i < 4; i++) {
        image.data[Math.floor(Math.random() * image.data.length)] = Math.floor(Math.random() * 256);
      }
      context.putImageData(image, 0, 0);
    }
    return toDataURL.call(this, type);
  };

  if (!window.chrome) {
    window.chrome = { runtime: {}, loadTimes: () => {}, csi: () => {}, app: {} };
  }
})(__PROFILE__, __OFFSETS__);
"""


def fingerprint_script(profile: FingerprintProfile) -> str:
    """Render the page script that applies ``profile`` before any site code runs."""
    return _SCRIPT_TEMPLATE.replace(
        "__PROFILE__", profile.model_dump_json(by_alias=True)
    ).replace("__OFFSETS__", json.dumps(TIMEZONE_OFFSETS))
