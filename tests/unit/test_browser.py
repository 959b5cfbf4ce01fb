"""Tests for worker-side browser plumbing."""

import asyncio

from fleet.agent.config import AgentSettings
from fleet.browser import ChromeExecutor, ChromeLauncher, PortPool, chrome_args
from fleet.models.automation import Viewport
from fleet.models.job import BrowserConfig, ProxyConfig


def agent_settings() -> AgentSettings:
    return AgentSettings(_env_file=None, chrome_binary="/opt/chrome", max_concurrent_jobs=2)


def test_chrome_args_headless_defaults() -> None:
    args = chrome_args(agent_settings(), BrowserConfig(), 9222, "/tmp/profile")

    assert args[0] == "/opt/chrome"
    assert "--remote-debugging-port=9222" in args
    assert "--user-data-dir=/tmp/profile" in args
    assert "--window-size=1366,768" in args
    assert "--headless=new" in args
    assert not any(arg.startswith("--proxy-server") for arg in args)


def test_chrome_args_headful_with_proxy_and_user_agent() -> None:
    config = BrowserConfig(
        headless=False,
        viewport=Viewport(width=1920, height=1080),
        user_agent="Mozilla/5.0 Test",
        proxy=ProxyConfig(host="10.1.1.1", port=3128),
    )

    args = chrome_args(agent_settings(), config, 9300, "/tmp/profile")

    assert "--headless=new" not in args
    assert "--window-size=1920,1080" in args
    assert "--user-agent=Mozilla/5.0 Test" in args
    assert "--proxy-server=http://10.1.1.1:3128" in args


async def test_port_pool_hands_out_lowest_free_port() -> None:
    pool = PortPool(9222, 2)

    assert await pool.acquire() == 9222
    assert await pool.acquire() == 9223
    assert await pool.acquire() is None
    assert pool.in_use_count == 2

    await pool.release(9222)
    await pool.release(9999)

    assert pool.available_count == 1
    assert await pool.acquire() == 9222


async def test_concurrent_acquire_never_shares_a_port() -> None:
    pool = PortPool(9222, 5)

    ports = await asyncio.gather(*(pool.acquire() for _ in range(8)))

    taken = [port for port in ports if port is not None]
    assert sorted(taken) == [9222, 9223, 9224, 9225, 9226]
    assert ports.count(None) == 3


class FailingLauncher(ChromeLauncher):
    def __init__(self, settings: AgentSettings) -> None:
        super().__init__(settings)
        self.launched = 0

    async def launch(self, job_id, devtools_port, config, startup_seconds=2.0):
        self.launched += 1
        raise RuntimeError("Failed to launch Chrome: binary missing")


async def test_launch_failure_is_reported_not_raised() -> None:
    settings = agent_settings()
    launcher = FailingLauncher(settings)
    ports = PortPool(9222, 1)
    executor = ChromeExecutor(settings, launcher=launcher, ports=ports)

    result = await executor.execute("job-1", "https://example.com", BrowserConfig())

    assert result.success is False
    assert result.errors == ["Failed to launch Chrome: binary missing"]
    assert launcher.launched == 1
    assert ports.available_count == 1

    results = result.to_results()
    assert results.errors == result.errors
    assert results.screenshot is None


async def test_no_free_port() -> None:
    settings = agent_settings()
    ports = PortPool(9222, 0)
    executor = ChromeExecutor(settings, launcher=FailingLauncher(settings), ports=ports)

    result = await executor.execute("job-1", "https://example.com", BrowserConfig())

    assert result.success is False
    assert result.errors == ["No DevTools port available"]
    assert executor.launcher.launched == 0
