"""Chrome process management."""

import asyncio
import shutil
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

from fleet.agent.config import AgentSettings
from fleet.models.job import BrowserConfig
from fleet.utils.logging import get_logger

logger = get_logger(__name__)

# Flags that keep Chrome quiet and predictable under automation
BASE_FLAGS = (
    "--no-first-run",
    "--no-default-browser-check",
    "--disable-background-networking",
    "--disable-client-side-phishing-detection",
    "--disable-default-apps",
    "--disable-extensions",
    "--disable-hang-monitor",
    "--disable-popup-blocking",
    "--disable-prompt-on-repost",
    "--disable-sync",
    "--disable-translate",
    "--metrics-recording-only",
    "--safebrowsing-disable-auto-update",
    "--disable-dev-shm-usage",
    "--disable-blink-features=AutomationControlled",
)


@dataclass
class ChromeProcess:
    """A running Chrome instance bound to one job."""

    job_id: str
    devtools_port: int
    user_data_dir: str
    process: asyncio.subprocess.Process = field(repr=False)

    @property
    def pid(self) -> int:
        return self.process.pid


def chrome_args(
    settings: AgentSettings,
    config: BrowserConfig,
    devtools_port: int,
    user_data_dir: str,
) -> list[str]:
    """Command line for a Chrome run configured by ``config``."""
    viewport = config.viewport
    args = [
        settings.chrome_binary,
        f"--remote-debugging-port={devtools_port}",
        f"--user-data-dir={user_data_dir}",
        f"--window-size={viewport.width},{viewport.height}",
        *BASE_FLAGS,
    ]
    if config.headless:
        args.extend(["--headless=new", "--disable-gpu"])
    if config.user_agent:
        args.append(f"--user-agent={config.user_agent}")
    if config.fingerprint:
        args.append(f"--lang={config.fingerprint.language}")
    if config.proxy:
        args.append(f"--proxy-server={config.proxy.server}")
    return args


class ChromeLauncher:
    """Starts and stops Chrome processes, one per executing job."""

    def __init__(self, settings: AgentSettings) -> None:
        self.settings = settings

    async def launch(
        self,
        job_id: str,
        devtools_port: int,
        config: BrowserConfig,
        startup_seconds: float = 2.0,
    ) -> ChromeProcess:
        """
        Launch Chrome for a job.

        Args:
            job_id: Job the browser runs for; names the profile directory
            devtools_port: Port for the DevTools protocol
            config: Headless flag, viewport, user agent and proxy
            startup_seconds: Grace period before checking the process survived

        Raises:
            RuntimeError: If Chrome exits during startup
        """
        Path(self.settings.chrome_user_data_base).mkdir(parents=True, exist_ok=True)
        user_data_dir = tempfile.mkdtemp(
            prefix=f"chrome_{job_id}_",
            dir=self.settings.chrome_user_data_base,
        )
        args = chrome_args(self.settings, config, devtools_port, user_data_dir)

        logger.info(
            "Launching Chrome",
            job_id=job_id,
            devtools_port=devtools_port,
            headless=config.headless,
            proxy=config.proxy.server if config.proxy else None,
        )

        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
            await asyncio.sleep(startup_seconds)
            if process.returncode is not None:
                stderr = await process.stderr.read() if process.stderr else b""
                raise RuntimeError(
                    f"Chrome exited with code {process.returncode}: {stderr.decode()[:500]}"
                )
        except (OSError, RuntimeError) as e:
            shutil.rmtree(user_data_dir, ignore_errors=True)
            raise RuntimeError(f"Failed to launch Chrome: {e}") from e

        logger.debug("Chrome launched", job_id=job_id, pid=process.pid)
        return ChromeProcess(
            job_id=job_id,
            devtools_port=devtools_port,
            user_data_dir=user_data_dir,
            process=process,
        )

    async def terminate(self, chrome: ChromeProcess, grace_seconds: float = 3.0) -> None:
        """Stop Chrome, killing it if it ignores SIGTERM, and drop its profile."""
        process = chrome.process
        try:
            if process.returncode is None:
                process.terminate()
                try:
                    await asyncio.wait_for(process.wait(), timeout=grace_seconds)
                except TimeoutError:
                    logger.warning("Chrome required force kill", pid=process.pid)
                    process.kill()
                    await process.wait()
        except ProcessLookupError:
            logger.debug("Chrome process already gone", pid=process.pid)
        finally:
            shutil.rmtree(chrome.user_data_dir, ignore_errors=True)
            logger.debug("Chrome stopped", job_id=chrome.job_id)
