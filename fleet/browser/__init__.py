"""Worker-side browser execution."""

from fleet.browser.cdp import CDPClient, CDPError
from fleet.browser.chrome import ChromeLauncher, ChromeProcess, chrome_args
from fleet.browser.executor import ChromeExecutor, ExecutionResult
from fleet.browser.ports import PortPool

__all__ = [
    "CDPClient",
    "CDPError",
    "ChromeExecutor",
    "ChromeLauncher",
    "ChromeProcess",
    "ExecutionResult",
    "PortPool",
    "chrome_args",
]
