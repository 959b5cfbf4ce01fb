"""Runs one job's browser automation on the worker."""

import asyncio
import random

from pydantic import Field

from fleet.agent.config import AgentSettings
from fleet.browser.cdp import CDPClient, CDPError
from fleet.browser.chrome import ChromeLauncher
from fleet.browser.ports import PortPool
from fleet.models.automation import ScenarioStep, StepType
from fleet.models.base import APIModel
from fleet.models.job import AutomationConfig, BrowserConfig, ExecutionMetrics, JobResults
from fleet.utils.logging import get_logger

logger = get_logger(__name__)

INTERACTIVE_SELECTOR = "a, button, input, select, textarea"


class ExecutionResult(APIModel):
    """Outcome of one browser run as reported back to the coordinator."""

    success: bool
    screenshot: str | None = None
    logs: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    metrics: ExecutionMetrics = Field(default_factory=ExecutionMetrics)

    def to_results(self) -> JobResults:
        return JobResults(
            screenshot=self.screenshot,
            metrics=self.metrics,
            logs=self.logs,
            errors=self.errors,
        )


class ChromeExecutor:
    """
    Launches Chrome for a job, replays its scenario and captures the outcome.

    A run is successful when the page loaded; individual scenario steps that
    fail are counted in the metrics and listed in ``errors`` without failing
    the run.
    """

    def __init__(
        self,
        settings: AgentSettings,
        launcher: ChromeLauncher | None = None,
        ports: PortPool | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.settings = settings
        self.launcher = launcher or ChromeLauncher(settings)
        self.ports = ports or PortPool(settings.devtools_port_base, settings.max_concurrent_jobs)
        self._rng = rng or random.Random()

    async def execute(
        self,
        job_id: str,
        url: str,
        browser: BrowserConfig,
        automation: AutomationConfig | None = None,
    ) -> ExecutionResult:
        """
        Run the automation for ``url``.

        Args:
            job_id: Job being executed, for logs and the profile directory
            url: Page to open
            browser: Launch settings (headless, viewport, user agent, proxy)
            automation: Scenario and fingerprint script, if any

        Returns:
            ExecutionResult; launch and navigation problems are reported in
            it rather than raised
        """
        result = ExecutionResult(success=False)
        port = await self.ports.acquire()
        if port is None:
            result.errors.append("No DevTools port available")
            return result

        chrome = None
        cdp = CDPClient(port)
        try:
            chrome = await self.launcher.launch(job_id, port, browser)
            await cdp.connect()
            await self._prepare_page(cdp, browser, automation)

            await cdp.navigate(url)
            await cdp.wait_for_load(self.settings.page_load_timeout_seconds)
            result.metrics.page_load_time = await cdp.page_load_time_ms()
            result.logs.append(f"Loaded {url} ({await cdp.title()})")

            if automation and automation.scenario:
                for step in automation.scenario.steps:
                    try:
                        await self._perform(cdp, step)
                        result.metrics.actions_performed += 1
                    except CDPError as e:
                        result.metrics.errors_encountered += 1
                        result.errors.append(f"{step.type.value} step failed: {e}")

            result.metrics.elements_found = int(
                await cdp.evaluate(f"document.querySelectorAll('{INTERACTIVE_SELECTOR}').length")
                or 0
            )
            result.screenshot = await cdp.screenshot()
            result.success = True
        except (CDPError, RuntimeError, OSError) as e:
            logger.warning("Browser run failed", job_id=job_id, url=url, error=str(e))
            result.errors.append(str(e))
        finally:
            await cdp.disconnect()
            if chrome is not None:
                await self.launcher.terminate(chrome)
            await self.ports.release(port)

        logger.info(
            "Browser run finished",
            job_id=job_id,
            success=result.success,
            actions=result.metrics.actions_performed,
            step_errors=result.metrics.errors_encountered,
        )
        return result

    async def _prepare_page(
        self,
        cdp: CDPClient,
        browser: BrowserConfig,
        automation: AutomationConfig | None,
    ) -> None:
        await cdp.send("Page.enable")
        await cdp.emulate_viewport(browser.viewport.width, browser.viewport.height)
        if browser.user_agent:
            await cdp.set_user_agent(browser.user_agent)
        if automation and automation.fingerprint_script:
            await cdp.add_init_script(automation.fingerprint_script)

    async def _pause(self, duration_ms: int) -> None:
        await asyncio.sleep(duration_ms / 1000)

    async def _locate(self, cdp: CDPClient, selector: str | None) -> tuple[float, float]:
        if not selector:
            raise CDPError("Step has no target selector")
        point = await cdp.element_center(selector)
        if point is None:
            raise CDPError(f"Element not found: {selector}")
        return point

    async def _perform(self, cdp: CDPClient, step: ScenarioStep) -> None:
        """Replay one step, spending roughly its duration."""
        if step.type == StepType.WAIT:
            await self._pause(step.duration_ms)
        elif step.type == StepType.SCROLL:
            moves = max(1, step.duration_ms // 800)
            for _ in range(moves):
                await cdp.scroll(self._rng.randint(150, 450))
                await self._pause(step.duration_ms // moves)
        elif step.type == StepType.HOVER:
            await cdp.mouse_move(*await self._locate(cdp, step.target))
            await self._pause(step.duration_ms)
        elif step.type == StepType.CLICK:
            await cdp.click(*await self._locate(cdp, step.target))
            await self._pause(step.duration_ms)
        elif step.type == StepType.TYPE:
            await cdp.click(*await self._locate(cdp, step.target))
            text = step.value or ""
            per_char = step.duration_ms // max(1, len(text))
            for char in text:
                await cdp.insert_text(char)
                await self._pause(per_char)
        elif step.type == StepType.NAVIGATE:
            destination = step.value or step.target
            if not destination:
                raise CDPError("Navigate step has no destination")
            await cdp.navigate(destination)
            await cdp.wait_for_load(self.settings.page_load_timeout_seconds)
