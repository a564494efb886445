"""Pytest configuration and fixtures."""

import asyncio
import os
import sys
import tempfile
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import pytest

# Keep the library (SQLite file, media) out of the home directory
os.environ.setdefault("REEL_LIBRARY_PATH", tempfile.mkdtemp(prefix="reel-tests-"))
os.environ.setdefault("REEL_STORE_BACKEND", "memory")

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

from reel_engine.core.config import Settings  # noqa: E402
from reel_engine.core.container import Services, build_services  # noqa: E402
from reel_engine.services.providers import ProviderJob, ProviderPoll, ProviderStatus  # noqa: E402
from reel_engine.stores.memory import (  # noqa: E402
    MemoryJobRecordStore,
    MemoryProgressCache,
    MemorySubjectDirectory,
    MemoryWorkQueue,
)


def run(coro):
    """Drive a coroutine from a synchronous test."""
    return asyncio.run(coro)


class FakeClock:
    """Manually advanced epoch clock."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ScriptedProvider:
    """Provider fake: every job completes on its first poll with ``result(stage_input)``.

    ``fail_times`` makes the first N invocations fail on poll; ``on_poll``
    runs before each poll answer (used to interleave a cancellation).
    """

    def __init__(
        self,
        name: str,
        result: Callable[[Dict[str, Any]], Dict[str, Any]],
        fail_times: int = 0,
        on_poll: Optional[Callable[[], Any]] = None,
    ):
        self.name = name
        self.result = result
        self.fail_times = fail_times
        self.on_poll = on_poll
        self.inputs: List[Dict[str, Any]] = []
        self._jobs: Dict[str, Dict[str, Any]] = {}

    async def invoke(self, stage_input: Dict[str, Any]) -> ProviderJob:
        self.inputs.append(stage_input)
        job_id = f"{self.name}-{len(self.inputs)}"
        self._jobs[job_id] = stage_input
        return ProviderJob(provider_job_id=job_id)

    async def poll(self, provider_job_id: str) -> ProviderPoll:
        if self.on_poll is not None:
            await self.on_poll()
        if self.fail_times > 0:
            self.fail_times -= 1
            return ProviderPoll(status=ProviderStatus.FAILED, error=f"{self.name} exploded")
        return ProviderPoll(status=ProviderStatus.COMPLETED, result=self.result(self._jobs[provider_job_id]))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(STORE_BACKEND="memory", STORE_TIMEOUT_SECONDS=1.0, STAGGER_INTERVAL_MS=1000)


@pytest.fixture
def services(settings, clock) -> Services:
    """Orchestration services over in-memory stores with two known subjects."""
    subjects = MemorySubjectDirectory({"car-1": "user-1", "car-2": "user-2", "car-3": None})
    return build_services(
        settings,
        MemoryWorkQueue(clock=clock, retry_backoff_ms=1000),
        MemoryProgressCache(),
        MemoryJobRecordStore(),
        subjects,
    )


@pytest.fixture
def video_payload():
    return {
        "marketing_idea": "Family road trip in the new SUV",
        "image_urls": [
            "https://cdn.example.com/car/front.jpg",
            "https://cdn.example.com/car/side.jpg",
            "https://cdn.example.com/car/interior.jpg",
        ],
        "style": "cinematic",
        "theme": "family",
        "platform": "tiktok",
    }


@pytest.fixture
def image_payload():
    return {
        "image_url": "https://cdn.example.com/car/front.jpg",
        "operation": "remove_background",
        "options": {"width": 1024, "height": 768},
    }


@pytest.fixture
def providers():
    """Scripted providers for every pipeline stage."""
    return {
        "scenes": ScriptedProvider("scenes", lambda inp: {
            "scenes": [{"description": f"Scene {i + 1}"} for i in range(inp["scene_count"])],
        }),
        "clips": ScriptedProvider("clips", lambda inp: {
            "video_url": f"https://media.example.com/clip-{inp['scene_index']}.mp4",
        }),
        "music": ScriptedProvider("music", lambda inp: {"audio_url": "https://media.example.com/music.mp3"}),
        "assembly": ScriptedProvider("assembly", lambda inp: {"video_url": "https://media.example.com/final.mp4"}),
        "image": ScriptedProvider("image", lambda inp: {"processed_url": "https://media.example.com/processed.png"}),
    }
