"""HTTP client a worker agent uses to talk to the coordinator."""

from typing import Any

import httpx

from fleet.agent.config import AgentSettings
from fleet.models.job import Job, JobUpdate
from fleet.models.worker import (
    Heartbeat,
    HeartbeatMetrics,
    HeartbeatResponse,
    RegistrationResponse,
    WorkerRegistration,
)
from fleet.utils.logging import get_logger

logger = get_logger(__name__)


class MasterError(Exception):
    """Non-success answer from the coordinator."""

    def __init__(self, status_code: int, code: str, message: str) -> None:
        super().__init__(f"{status_code} {code}: {message}")
        self.status_code = status_code
        self.code = code
        self.message = message

    @property
    def needs_registration(self) -> bool:
        """The coordinator no longer knows this worker or its key."""
        return self.status_code == 401 or self.code == "unknown_worker"


class MasterClient:
    """
    Thin async wrapper over the coordinator API.

    Worker-scoped calls (heartbeat, metrics, job pull) re-register once and
    retry when the coordinator answers 401 or ``unknown_worker``, which is
    what happens after a coordinator restart.
    """

    def __init__(self, settings: AgentSettings, client: httpx.AsyncClient | None = None) -> None:
        self.settings = settings
        self.worker_id = settings.worker_id
        self.api_key = settings.api_key
        self._client = client or httpx.AsyncClient(
            base_url=settings.master_url,
            timeout=settings.request_timeout_seconds,
        )

    @property
    def registered(self) -> bool:
        return bool(self.worker_id and self.api_key)

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        response = await self._client.request(method, path, headers=self._headers(), **kwargs)
        if response.is_success:
            return response.json()
        try:
            body = response.json()
        except ValueError:
            body = {}
        raise MasterError(
            response.status_code,
            body.get("code", "http_error"),
            body.get("error") or response.text[:200],
        )

    async def _worker_request(
        self,
        method: str,
        path: str,
        with_worker_param: bool = False,
        **kwargs: Any,
    ) -> Any:
        async def send() -> Any:
            params = {"workerId": self.worker_id} if with_worker_param else None
            return await self._request(
                method, path.format(worker_id=self.worker_id), params=params, **kwargs
            )

        if not self.registered:
            await self.register()
        try:
            return await send()
        except MasterError as e:
            if not e.needs_registration:
                raise
            logger.warning("Coordinator rejected worker, re-registering", code=e.code)
            await self.register()
            return await send()

    async def register(self) -> str:
        """Register with the coordinator and remember the issued credentials."""
        registration = WorkerRegistration(
            name=self.settings.worker_name,
            ip=self.settings.worker_ip,
            type=self.settings.worker_type,
            port=self.settings.worker_port,
            max_concurrent_jobs=self.settings.max_concurrent_jobs,
            memory=self.settings.memory_mb,
            cpu=self.settings.cpu_cores,
            storage=self.settings.storage_gb,
            region=self.settings.region,
            supported_features=["scenario-replay", "fingerprint-injection", "screenshots"],
        )
        self.api_key = None
        data = await self._request(
            "POST", "/workers", json=registration.model_dump(by_alias=True, exclude_none=True)
        )
        response = RegistrationResponse.model_validate(data)
        self.worker_id = response.worker_id
        self.api_key = response.api_key
        logger.info("Registered with coordinator", worker_id=self.worker_id)
        return self.worker_id

    async def heartbeat(self, beat: Heartbeat) -> HeartbeatResponse:
        data = await self._worker_request(
            "POST",
            "/workers/{worker_id}/heartbeat",
            json=beat.model_dump(by_alias=True, mode="json"),
        )
        return HeartbeatResponse.model_validate(data)

    async def report_metrics(self, metrics: HeartbeatMetrics) -> None:
        await self._worker_request(
            "PUT",
            "/workers/{worker_id}/metrics",
            json={"metrics": metrics.model_dump(by_alias=True, mode="json")},
        )

    async def next_job(self) -> Job | None:
        """Pull the next job assigned to this worker, if any."""
        data = await self._worker_request("GET", "/jobs/next", with_worker_param=True)
        payload = data.get("data")
        return Job.model_validate(payload) if payload else None

    async def update_job(self, job_id: str, update: JobUpdate) -> Job:
        """Report progress or the outcome of a job."""
        data = await self._request(
            "PUT",
            f"/jobs/{job_id}",
            json=update.model_dump(by_alias=True, mode="json", exclude_none=True),
        )
        return Job.model_validate(data)

    async def close(self) -> None:
        await self._client.aclose()
