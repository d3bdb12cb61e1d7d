"""
Pipeline Orchestrator

Drives one job through its stages:

    parsing     parse     PDF -> doc.md + images.json
    generating  generate  doc.md -> slides.json
    composing   layout    slides.json -> rendered-slides/*.html + layouts.json
    composing   capture   rendered slides -> slides-images/*.png + slides.pdf
    rendering   narrate   transcripts -> tts/slide-NNN.<ext>
    rendering   video     images + audio -> video.mp4 + captions.srt

Every stage has a completion predicate over its artifacts. On each run the
orchestrator checks the predicate right before the stage and skips the stage
when its output is already present and well-formed, so resubmitting a failed
or interrupted job only redoes the missing work. Once a stage has run, every
later stage runs as well, since its inputs changed.

A stage failure marks the job ``failed`` with ``errorStage`` set to the
stage's status name and stops the pipeline.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional

from paperdeck.config import Settings
from paperdeck.errors import ConsistencyError, InputError
from paperdeck.models.schemas import (
    JobRecord,
    JobStatus,
    LayoutManifest,
    RenderedDeck,
    RenderedSlide,
    SlideAudio,
    SlidesJSON,
)
from paperdeck.services.deck_service import DeckService
from paperdeck.services.docling_service import DoclingService
from paperdeck.services.job_store import JobStore
from paperdeck.services.layout_service import LayoutService
from paperdeck.services.llm_service import CompletionService
from paperdeck.services.slides_service import SlidesService
from paperdeck.services.storage import ArtifactStore
from paperdeck.services.tts_service import NarrationService
from paperdeck.services.video_service import VideoService

logger = logging.getLogger(__name__)


@dataclass
class PipelineContext:
    """Artifacts loaded or produced during one run."""
    job: JobRecord
    markdown: Optional[str] = None
    slides: Optional[SlidesJSON] = None
    rendered: Optional[List[RenderedSlide]] = None
    deck: Optional[RenderedDeck] = None
    audio: Optional[List[SlideAudio]] = None

    @property
    def job_id(self) -> str:
        return self.job.id


@dataclass
class Stage:
    name: str
    status: JobStatus
    is_complete: Callable[[PipelineContext], bool]
    run: Callable[[PipelineContext], Awaitable[Dict[str, str]]]
    enabled: Callable[[PipelineContext], bool] = field(default=lambda ctx: True)


class PipelineOrchestrator:
    def __init__(
        self,
        settings: Settings,
        storage: ArtifactStore,
        job_store: JobStore,
        docling: Optional[DoclingService] = None,
        slides: Optional[SlidesService] = None,
        layout: Optional[LayoutService] = None,
        deck: Optional[DeckService] = None,
        narration: Optional[NarrationService] = None,
        video: Optional[VideoService] = None
    ):
        self.settings = settings
        self.storage = storage
        self.job_store = job_store

        completion = None
        if settings.GENERATION_MODE != "offline" and (slides is None or layout is None):
            completion = CompletionService(settings)

        self.docling = docling or DoclingService(settings, storage)
        self.slides = slides or SlidesService(settings, storage, completion)
        self.layout = layout or LayoutService(settings, storage, completion)
        self.deck = deck or DeckService(settings, storage)
        self.narration = narration or NarrationService(settings, storage)
        self.video = video or VideoService(settings, storage)

        self.stages = [
            Stage("parse", JobStatus.PARSING, self._parsed, self._parse),
            Stage("generate", JobStatus.GENERATING, self._generated, self._generate),
            Stage("layout", JobStatus.COMPOSING, self._laid_out, self._layout),
            Stage("capture", JobStatus.COMPOSING, self._captured, self._capture),
            Stage("narrate", JobStatus.RENDERING, self._narrated, self._narrate, self._video_enabled),
            Stage("video", JobStatus.RENDERING, self._assembled, self._assemble, self._video_enabled),
        ]

    def _output(self, job_id: str, *parts: str):
        return self.storage.outputs_dir(job_id).joinpath(*parts)

    # ------------------------------------------------------------------
    # Artifact loading shared by predicates and stages
    # ------------------------------------------------------------------

    def _load_slides(self, ctx: PipelineContext) -> Optional[SlidesJSON]:
        if ctx.slides is None:
            ctx.slides = self.storage.read_model(self._output(ctx.job_id, "slides.json"), SlidesJSON)
        return ctx.slides

    def _require_slides(self, ctx: PipelineContext) -> SlidesJSON:
        slides = self._load_slides(ctx)
        if slides is None:
            raise ConsistencyError("slides.json is missing or invalid.")
        return slides

    def _require_deck(self, ctx: PipelineContext) -> RenderedDeck:
        if ctx.deck is None:
            ctx.deck = self.storage.read_model(self._output(ctx.job_id, "deck", "rendered-slides.json"), RenderedDeck)
        if ctx.deck is None:
            raise ConsistencyError("Rendered deck manifest is missing or invalid.")
        return ctx.deck

    def _require_audio(self, ctx: PipelineContext) -> List[SlideAudio]:
        if ctx.audio is None:
            ctx.audio = self.narration.cached_audio(self._require_slides(ctx), ctx.job_id, ctx.job.config)
        if ctx.audio is None:
            raise ConsistencyError("Narration audio is missing for video assembly.")
        return ctx.audio

    def _files_exist(self, relative_paths: List[str]) -> bool:
        return all(self.storage.resolve(path).is_file() for path in relative_paths)

    # ------------------------------------------------------------------
    # Stage predicates
    # ------------------------------------------------------------------

    def _parsed(self, ctx: PipelineContext) -> bool:
        doc_path = self._output(ctx.job_id, "doc.md")
        if not doc_path.is_file():
            return False
        markdown = doc_path.read_text(encoding="utf-8")
        if not markdown.strip():
            return False
        if self.storage.read_json(self._output(ctx.job_id, "images.json")) is None:
            return False
        ctx.markdown = markdown
        return True

    def _generated(self, ctx: PipelineContext) -> bool:
        return self._load_slides(ctx) is not None

    def _laid_out(self, ctx: PipelineContext) -> bool:
        slides = self._load_slides(ctx)
        manifest = self.storage.read_model(self._output(ctx.job_id, "rendered-slides", "layouts.json"), LayoutManifest)
        if slides is None or manifest is None:
            return False
        if len(manifest.slides) != len(slides.slides):
            return False
        if not self._files_exist([slide.html_path for slide in manifest.slides]):
            return False
        ctx.rendered = manifest.slides
        return True

    def _captured(self, ctx: PipelineContext) -> bool:
        slides = self._load_slides(ctx)
        deck = self.storage.read_model(self._output(ctx.job_id, "deck", "rendered-slides.json"), RenderedDeck)
        if slides is None or deck is None:
            return False
        count = len(slides.slides)
        if len(deck.slides) != count or len(deck.images) != count:
            return False
        if not self._files_exist([deck.pdf] + deck.images):
            return False
        ctx.deck = deck
        return True

    def _narrated(self, ctx: PipelineContext) -> bool:
        slides = self._load_slides(ctx)
        if slides is None:
            return False
        audio = self.narration.cached_audio(slides, ctx.job_id, ctx.job.config)
        if audio is None:
            return False
        ctx.audio = audio
        return True

    def _assembled(self, ctx: PipelineContext) -> bool:
        deck = self._require_deck(ctx)
        audio = self._require_audio(ctx)
        return self.video.is_complete(ctx.job_id, deck.images, audio)

    def _video_enabled(self, ctx: PipelineContext) -> bool:
        return self.settings.VIDEO_ENABLED and ctx.job.config.enable_video

    # ------------------------------------------------------------------
    # Stage bodies; each returns the ``paths`` entries it produced
    # ------------------------------------------------------------------

    async def _parse(self, ctx: PipelineContext) -> Dict[str, str]:
        pdf_relative = ctx.job.paths.get("pdf")
        if not pdf_relative:
            raise InputError("Missing source PDF path.")
        pdf_path = self.storage.resolve(pdf_relative)
        if not pdf_path.is_file():
            raise InputError(f"Source PDF not found: {pdf_relative}")
        parsed = await self.docling.convert(pdf_path, ctx.job_id)
        ctx.markdown = parsed.markdown
        return {"doc": parsed.doc_path}

    async def _generate(self, ctx: PipelineContext) -> Dict[str, str]:
        markdown = ctx.markdown
        if markdown is None:
            markdown = self._output(ctx.job_id, "doc.md").read_text(encoding="utf-8")
        slides = await self.slides.generate(markdown, ctx.job.config, ctx.job_id)
        slides_path = self.slides.write_slides_json(ctx.job_id, slides)
        ctx.slides = slides
        # Downstream artifacts were built from the previous slides
        ctx.rendered = ctx.deck = ctx.audio = None
        return {"slides": slides_path}

    async def _layout(self, ctx: PipelineContext) -> Dict[str, str]:
        ctx.rendered = await self.layout.synthesize(self._require_slides(ctx), ctx.job_id, ctx.job.config)
        ctx.deck = None
        return {}

    async def _capture(self, ctx: PipelineContext) -> Dict[str, str]:
        rendered = ctx.rendered
        if rendered is None:
            raise ConsistencyError("Rendered slide manifest is missing.")
        ctx.deck = await self.deck.render(ctx.job_id, rendered)
        manifest_path = self._output(ctx.job_id, "deck", "rendered-slides.json")
        return {"rendered": self.storage.to_relative(manifest_path), "slidesPdf": ctx.deck.pdf}

    async def _narrate(self, ctx: PipelineContext) -> Dict[str, str]:
        ctx.audio = await self.narration.narrate(self._require_slides(ctx), ctx.job_id, ctx.job.config)
        return {}

    async def _assemble(self, ctx: PipelineContext) -> Dict[str, str]:
        result = await self.video.assemble(
            ctx.job_id,
            self._require_slides(ctx),
            self._require_deck(ctx).images,
            self._require_audio(ctx)
        )
        return {"video": result.video, "captions": result.captions}

    # ------------------------------------------------------------------
    # Driver
    # ------------------------------------------------------------------

    async def _fail(self, job_id: str, stage: Stage, error: Exception) -> None:
        message = str(error) or type(error).__name__
        logger.error(f"Job {job_id} failed in stage '{stage.name}': {message}")
        await self.job_store.update(job_id, {
            "status": JobStatus.FAILED,
            "error": message,
            "errorStage": stage.status.value
        })

    async def run(self, job_id: str) -> Optional[JobRecord]:
        """
        Run every incomplete stage of a job, in order.

        Returns the final job record, or None if the job does not exist.
        Re-raises the stage exception after recording the failure.
        """
        job = await self.job_store.get(job_id)
        if job is None:
            logger.warning(f"Job {job_id} not found; nothing to run")
            return None

        ctx = PipelineContext(job=job)
        active_status = None
        upstream_ran = False
        started = time.monotonic()

        for stage in self.stages:
            if not stage.enabled(ctx):
                logger.info(f"Job {job_id}: stage '{stage.name}' disabled")
                continue

            try:
                if not upstream_ran and stage.is_complete(ctx):
                    logger.info(f"Job {job_id}: stage '{stage.name}' already complete, skipping")
                    continue

                if stage.status != active_status:
                    patch = {"status": stage.status}
                    if active_status is None:
                        patch.update({"error": None, "errorStage": None})
                    ctx.job = await self.job_store.update(job_id, patch) or ctx.job
                    active_status = stage.status

                logger.info(f"Job {job_id}: running stage '{stage.name}'")
                stage_started = time.monotonic()
                paths = await stage.run(ctx)
                logger.info(f"Job {job_id}: stage '{stage.name}' done in {time.monotonic() - stage_started:.1f}s")
            except Exception as e:
                await self._fail(job_id, stage, e)
                raise

            upstream_ran = True
            if paths:
                ctx.job = await self.job_store.update(job_id, {"paths": paths}) or ctx.job

        if ctx.job.status != JobStatus.COMPLETED:
            ctx.job = await self.job_store.update(job_id, {
                "status": JobStatus.COMPLETED,
                "error": None,
                "errorStage": None
            }) or ctx.job
            logger.info(f"Job {job_id} completed in {time.monotonic() - started:.1f}s")
        return ctx.job

    async def start(self, job_id: str) -> None:
        """Background entry point: short delay, then run; failures are already on the record."""
        await asyncio.sleep(self.settings.PIPELINE_START_DELAY_SECONDS)
        try:
            await self.run(job_id)
        except Exception as e:
            logger.error(f"Pipeline for job {job_id} stopped: {e}")
