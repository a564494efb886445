"""External provider adapter contract and its HTTP implementation.

Every generation stage (scenes, clips, music, assembly, image operations)
is an asynchronous job on some third-party service: we submit work, get a
provider job id back, and poll it until it settles.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol

import aiohttp

logger = logging.getLogger(__name__)


class ProviderStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


# Provider-native spellings seen in the wild
STATUS_ALIASES = {
    "in_queue": ProviderStatus.QUEUED,
    "pending": ProviderStatus.QUEUED,
    "in_progress": ProviderStatus.PROCESSING,
    "running": ProviderStatus.PROCESSING,
    "succeeded": ProviderStatus.COMPLETED,
    "success": ProviderStatus.COMPLETED,
    "error": ProviderStatus.FAILED,
}


def parse_status(value: Any) -> ProviderStatus:
    text = str(value or "").lower()
    try:
        return ProviderStatus(text)
    except ValueError:
        return STATUS_ALIASES.get(text, ProviderStatus.PROCESSING)


class ProviderError(Exception):
    """A provider rejected the work or reported a failed job."""

    def __init__(self, provider: str, message: str):
        super().__init__(f"{provider}: {message}")
        self.provider = provider


@dataclass
class ProviderJob:
    provider_job_id: str
    initial_status: ProviderStatus = ProviderStatus.QUEUED


@dataclass
class ProviderPoll:
    status: ProviderStatus
    result: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    progress: Optional[float] = None

    @property
    def settled(self) -> bool:
        return self.status in (ProviderStatus.COMPLETED, ProviderStatus.FAILED)


class ProviderAdapter(Protocol):
    name: str

    async def invoke(self, stage_input: Dict[str, Any]) -> ProviderJob:
        ...

    async def poll(self, provider_job_id: str) -> ProviderPoll:
        ...


class HttpProviderAdapter:
    """Provider reached over HTTP: ``POST {base}/jobs`` and ``GET {base}/jobs/{id}``."""

    def __init__(
        self,
        name: str,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = 30.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.name = name
        self._base_url = base_url.rstrip("/")
        self._headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session

    def _get_session(self) -> aiohttp.ClientSession:
        # Created lazily so it binds to the running event loop
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout, headers=self._headers)
        return self._session

    async def _request(self, method: str, path: str, json_body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        url = f"{self._base_url}{path}"
        try:
            async with self._get_session().request(method, url, json=json_body) as resp:
                if resp.status >= 400:
                    text = await resp.text()
                    logger.error("Provider %s returned %d for %s %s", self.name, resp.status, method, path)
                    raise ProviderError(self.name, f"HTTP {resp.status}: {text[:200]}")
                try:
                    return await resp.json(content_type=None)
                except ValueError as e:
                    raise ProviderError(self.name, "response is not JSON") from e
        except asyncio.TimeoutError as e:
            raise ProviderError(self.name, f"timeout calling {url}") from e
        except aiohttp.ClientError as e:
            raise ProviderError(self.name, f"cannot reach {url}: {e}") from e

    async def invoke(self, stage_input: Dict[str, Any]) -> ProviderJob:
        body = await self._request("POST", "/jobs", json_body=stage_input)
        job_id = body.get("id") or body.get("request_id") or body.get("jobId")
        if not job_id:
            raise ProviderError(self.name, "no job id in submit response")
        return ProviderJob(provider_job_id=str(job_id), initial_status=parse_status(body.get("status")))

    async def poll(self, provider_job_id: str) -> ProviderPoll:
        body = await self._request("GET", f"/jobs/{provider_job_id}")
        progress = body.get("progress")
        return ProviderPoll(
            status=parse_status(body.get("status")),
            result=body.get("result") or {},
            error=body.get("error"),
            progress=float(progress) if progress is not None else None,
        )

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()


async def await_completion(
    adapter: ProviderAdapter,
    job: ProviderJob,
    interval: float = 5.0,
    max_polls: int = 180,
    on_progress: Optional[Callable[[ProviderPoll], Awaitable[None]]] = None,
) -> Dict[str, Any]:
    """Poll a provider job until it settles; returns its result or raises ProviderError."""
    for _ in range(max_polls):
        poll = await adapter.poll(job.provider_job_id)
        if on_progress is not None:
            await on_progress(poll)
        if poll.status == ProviderStatus.COMPLETED:
            return poll.result
        if poll.status == ProviderStatus.FAILED:
            raise ProviderError(adapter.name, poll.error or "job failed")
        await asyncio.sleep(interval)

    raise ProviderError(adapter.name, f"job {job.provider_job_id} did not finish after {max_polls} polls")
