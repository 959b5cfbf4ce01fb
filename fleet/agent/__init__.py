"""Worker agent: registers with the coordinator and executes pulled jobs."""

from fleet.agent.client import MasterClient, MasterError
from fleet.agent.config import AgentSettings, agent_settings
from fleet.agent.worker import AutomationWorker

__all__ = [
    "AgentSettings",
    "AutomationWorker",
    "MasterClient",
    "MasterError",
    "agent_settings",
]
