"""Tests for provider polling."""

import pytest

from conftest import ScriptedProvider, run
from reel_engine.services.providers import (
    ProviderError,
    ProviderJob,
    ProviderPoll,
    ProviderStatus,
    await_completion,
    parse_status,
)


@pytest.mark.parametrize("raw,expected", [
    ("COMPLETED", ProviderStatus.COMPLETED),
    ("succeeded", ProviderStatus.COMPLETED),
    ("IN_QUEUE", ProviderStatus.QUEUED),
    ("error", ProviderStatus.FAILED),
    ("warming_up", ProviderStatus.PROCESSING),
    (None, ProviderStatus.PROCESSING),
])
def test_parse_status(raw, expected):
    assert parse_status(raw) == expected


class SlowProvider:
    """Reports progress a few times before completing."""

    name = "slow"

    def __init__(self, polls_before_done):
        self.remaining = polls_before_done

    async def invoke(self, stage_input):
        return ProviderJob(provider_job_id="slow-1")

    async def poll(self, provider_job_id):
        if self.remaining > 0:
            self.remaining -= 1
            return ProviderPoll(status=ProviderStatus.PROCESSING, progress=50.0)
        return ProviderPoll(status=ProviderStatus.COMPLETED, result={"url": "done"})


class TestAwaitCompletion:

    def test_progress_forwarded_until_done(self):
        seen = []

        async def on_progress(poll):
            seen.append(poll.status)

        provider = SlowProvider(polls_before_done=2)
        result = run(await_completion(provider, ProviderJob("slow-1"), interval=0, on_progress=on_progress))

        assert result == {"url": "done"}
        assert seen == [ProviderStatus.PROCESSING, ProviderStatus.PROCESSING, ProviderStatus.COMPLETED]

    def test_failed_job_raises(self):
        provider = ScriptedProvider("music", lambda inp: {}, fail_times=1)
        job = run(provider.invoke({}))

        with pytest.raises(ProviderError) as exc_info:
            run(await_completion(provider, job, interval=0))

        assert str(exc_info.value) == "music: music exploded"

    def test_gives_up_after_max_polls(self):
        provider = SlowProvider(polls_before_done=10)

        with pytest.raises(ProviderError) as exc_info:
            run(await_completion(provider, ProviderJob("slow-1"), interval=0, max_polls=3))

        assert "did not finish after 3 polls" in str(exc_info.value)
