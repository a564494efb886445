"""Per-kind generation pipelines run by the worker."""

import logging
from typing import Any, Dict, List, Optional

from reel_engine.core.errors import StoreUnavailableError
from reel_engine.core.jobs import JobKind, JobStatus, PipelineStage
from reel_engine.services.providers import ProviderAdapter, ProviderError, ProviderPoll, await_completion
from reel_engine.stores.guard import call_store
from reel_engine.stores.interfaces import ProgressCache, QueueEntry

logger = logging.getLogger(__name__)

# Vertical short-form output
OUTPUT_ASPECT_RATIO = "9:16"
OUTPUT_RESOLUTION = "1080x1920"
MUSIC_DURATION_SECONDS = 30


def _result_url(result: Dict[str, Any], *keys: str) -> Optional[str]:
    for key in keys + ("url",):
        value = result.get(key)
        if isinstance(value, dict):
            value = value.get("url")
        if value:
            return value
    return None


class ProgressReporter:
    """Writes progress snapshots for one job. Cache failures never fail the job."""

    def __init__(self, cache: ProgressCache, job_id: str, kind: JobKind, store_timeout: float = 5.0):
        self.cache = cache
        self.job_id = job_id
        self.kind = kind
        self.store_timeout = store_timeout

    async def report(
        self,
        stage: PipelineStage,
        progress: Optional[float],
        current_step: str,
        artifacts: Optional[Dict[str, Any]] = None,
        status: JobStatus = JobStatus.PROCESSING,
    ) -> None:
        try:
            await call_store(
                self.cache.merge(
                    self.job_id,
                    artifacts=artifacts,
                    kind=self.kind.value,
                    status=status.value,
                    stage=stage.value,
                    progress=round(progress, 1) if progress is not None else None,
                    current_step=current_step,
                ),
                "progress cache",
                self.store_timeout,
            )
        except StoreUnavailableError as e:
            logger.warning("Progress update for %s dropped: %s", self.job_id, e)


class Pipeline:
    """Base class: run a queued job to completion and return its artifacts."""

    kind: JobKind

    def __init__(self, poll_interval: float = 5.0, max_polls: int = 180):
        self.poll_interval = poll_interval
        self.max_polls = max_polls

    async def _run_stage(self, adapter: ProviderAdapter, stage_input: Dict[str, Any], on_progress=None) -> Dict[str, Any]:
        job = await adapter.invoke(stage_input)
        logger.debug("Provider %s accepted job %s", adapter.name, job.provider_job_id)
        return await await_completion(adapter, job, self.poll_interval, self.max_polls, on_progress)

    async def run(self, entry: QueueEntry, reporter: ProgressReporter) -> Dict[str, Any]:
        raise NotImplementedError


class VideoGenerationPipeline(Pipeline):
    """Scenes -> one clip per scene -> background music -> final assembly."""

    kind = JobKind.VIDEO_GENERATION

    def __init__(
        self,
        scenes: ProviderAdapter,
        clips: ProviderAdapter,
        music: ProviderAdapter,
        assembly: ProviderAdapter,
        poll_interval: float = 5.0,
        max_polls: int = 180,
    ):
        super().__init__(poll_interval, max_polls)
        self.scenes = scenes
        self.clips = clips
        self.music = music
        self.assembly = assembly

    async def run(self, entry: QueueEntry, reporter: ProgressReporter) -> Dict[str, Any]:
        payload = entry.payload
        image_urls: List[str] = payload["image_urls"]

        await reporter.report(PipelineStage.GENERATING_SCENES, 10, "Generating scenes")
        result = await self._run_stage(self.scenes, {
            "marketing_idea": payload["marketing_idea"],
            "style": payload.get("style"),
            "theme": payload.get("theme"),
            "scene_count": len(image_urls),
        })
        scenes = result.get("scenes") or []
        if not scenes:
            raise ProviderError(self.scenes.name, "no scenes generated")
        await reporter.report(
            PipelineStage.GENERATING_SCENES, 20, f"Generated {len(scenes)} scenes",
            artifacts={"scenes": scenes},
        )

        # Submit every clip up front, then wait on them in order
        await reporter.report(PipelineStage.GENERATING_VIDEOS, 20, "Rendering video clips")
        clip_jobs = []
        for index, scene in enumerate(scenes):
            prompt = scene.get("description") if isinstance(scene, dict) else str(scene)
            clip_jobs.append(await self.clips.invoke({
                "image_url": image_urls[index % len(image_urls)],
                "prompt": prompt,
                "scene_index": index,
            }))

        clip_urls: List[str] = []
        for index, job in enumerate(clip_jobs):
            clip = await await_completion(self.clips, job, self.poll_interval, self.max_polls)
            url = _result_url(clip, "video_url", "video")
            if not url:
                raise ProviderError(self.clips.name, f"clip {index + 1} returned no video")
            clip_urls.append(url)
            await reporter.report(
                PipelineStage.GENERATING_VIDEOS,
                20 + 50 * (index + 1) / len(clip_jobs),
                f"Rendered clip {index + 1}/{len(clip_jobs)}",
                artifacts={"video_clips": [url]},
            )

        await reporter.report(PipelineStage.GENERATING_MUSIC, 75, "Generating background music")
        music = await self._run_stage(self.music, {
            "theme": payload.get("theme"),
            "style": payload.get("style"),
            "duration": MUSIC_DURATION_SECONDS,
        })
        music_url = _result_url(music, "music_url", "audio_url", "audio")
        await reporter.report(
            PipelineStage.GENERATING_MUSIC, 85, "Background music ready",
            artifacts={"music_url": music_url} if music_url else None,
        )

        await reporter.report(PipelineStage.COMPILING, 85, "Assembling final video")
        final = await self._run_stage(self.assembly, {
            "clips": clip_urls,
            "music_url": music_url,
            "aspect_ratio": OUTPUT_ASPECT_RATIO,
            "resolution": OUTPUT_RESOLUTION,
            "platform": payload.get("platform", "youtube"),
        })
        final_url = _result_url(final, "final_video_url", "video_url", "video")
        if not final_url:
            raise ProviderError(self.assembly.name, "assembly returned no video")
        await reporter.report(PipelineStage.COMPILING, 95, "Finalizing", artifacts={"final_video_url": final_url})

        return {
            "scenes": scenes,
            "video_clips": clip_urls,
            "music_url": music_url,
            "final_video_url": final_url,
        }


class ImageProcessingPipeline(Pipeline):
    """Single provider call: background removal, enhancement or thumbnail."""

    kind = JobKind.IMAGE_PROCESSING

    def __init__(self, processor: ProviderAdapter, poll_interval: float = 5.0, max_polls: int = 180):
        super().__init__(poll_interval, max_polls)
        self.processor = processor

    async def run(self, entry: QueueEntry, reporter: ProgressReporter) -> Dict[str, Any]:
        payload = entry.payload
        operation = payload["operation"]
        step = operation.replace("_", " ").capitalize()

        await reporter.report(PipelineStage.PROCESSING_IMAGE, 10, step)

        async def on_progress(poll: ProviderPoll) -> None:
            if poll.progress is not None and not poll.settled:
                await reporter.report(PipelineStage.PROCESSING_IMAGE, 10 + 0.8 * poll.progress, step)

        result = await self._run_stage(self.processor, {
            "image_url": payload["image_url"],
            "operation": operation,
            "options": payload.get("options") or {},
        }, on_progress)
        processed_url = _result_url(result, "processed_url", "image_url", "image")
        if not processed_url:
            raise ProviderError(self.processor.name, "no processed image returned")

        await reporter.report(PipelineStage.PROCESSING_IMAGE, 95, step, artifacts={"processed_url": processed_url})
        return {"processed_url": processed_url}
