import pytest

from paperdeck.errors import ConsistencyError, InputError, RenderRuntimeError
from paperdeck.models.schemas import JobStatus, SlidesJSON
from paperdeck.services.deck_service import DeckService
from paperdeck.services.pipeline import PipelineOrchestrator
from paperdeck.services.tts_service import NarrationService
from paperdeck.services.video_service import VideoService

from conftest import PDF_BYTES, FakeDeckSession, FakeRunner, FakeSpeech, make_job


class DroppingNarration(NarrationService):
    """Loses the last slide's audio, as a broken narration step would."""

    async def narrate(self, slides, job_id, config):
        audio = await super().narrate(slides, job_id, config)
        return audio[:-1]


class FailingPdfSession(FakeDeckSession):
    """Captures every slide, then fails while printing the deck."""

    async def export_pdf(self, url):
        raise RenderRuntimeError("Headless browser failed: print aborted")


@pytest.fixture
def speech():
    return FakeSpeech()


@pytest.fixture
def runner():
    return FakeRunner()


def build_orchestrator(settings, storage, job_store, speech, runner, narration=None, deck_session=FakeDeckSession):
    return PipelineOrchestrator(
        settings,
        storage,
        job_store,
        deck=DeckService(settings, storage, session_factory=deck_session),
        narration=narration or NarrationService(settings, storage, speech),
        video=VideoService(settings, storage, runner)
    )


@pytest.fixture
def orchestrator(settings, storage, job_store, speech, runner):
    return build_orchestrator(settings, storage, job_store, speech, runner)


async def test_full_run_completes_with_all_artifacts(orchestrator, job_store, storage, sample_pdf, speech, runner):
    job = await make_job(job_store, storage, sample_pdf, enable_video=True)

    final = await orchestrator.run(job.id)

    assert final.status == JobStatus.COMPLETED
    assert final.error is None and final.error_stage is None
    assert set(final.paths) >= {"pdf", "doc", "slides", "rendered", "slidesPdf", "video", "captions"}
    for relative in final.paths.values():
        assert storage.resolve(relative).is_file()

    slides = storage.read_model(storage.resolve(final.paths["slides"]), SlidesJSON)
    slide_count = len(slides.slides)
    assert len(speech.calls) == slide_count
    segments = [c for c in runner.commands("ffmpeg") if "concat" not in c["args"]]
    assert len(segments) == slide_count
    assert len(FakeDeckSession.instances) == 1
    assert len(FakeDeckSession.instances[0].captured) == slide_count

    stored = await job_store.get(job.id)
    assert stored.status == JobStatus.COMPLETED


async def test_second_run_skips_every_stage(orchestrator, job_store, storage, sample_pdf, speech, runner):
    job = await make_job(job_store, storage, sample_pdf, enable_video=True)
    first = await orchestrator.run(job.id)
    speech_calls, runner_calls = len(speech.calls), len(runner.calls)

    second = await orchestrator.run(job.id)

    assert second.status == JobStatus.COMPLETED
    assert len(speech.calls) == speech_calls
    assert len(runner.calls) == runner_calls
    assert len(FakeDeckSession.instances) == 1
    assert second.updated_at == first.updated_at


async def test_audio_count_mismatch_fails_in_rendering(settings, storage, job_store, sample_pdf, speech, runner):
    broken = build_orchestrator(
        settings, storage, job_store, speech, runner,
        narration=DroppingNarration(settings, storage, speech)
    )
    job = await make_job(job_store, storage, sample_pdf, enable_video=True)

    with pytest.raises(ConsistencyError):
        await broken.run(job.id)

    failed = await job_store.get(job.id)
    assert failed.status == JobStatus.FAILED
    assert failed.error_stage == "rendering"
    assert "does not match" in failed.error
    assert "video" not in failed.paths
    assert not runner.commands("ffmpeg")
    assert failed.model_dump(by_alias=True)["errorStage"] == "rendering"


async def test_resume_after_failure_only_redoes_missing_work(settings, storage, job_store, sample_pdf, speech, runner):
    broken = build_orchestrator(
        settings, storage, job_store, speech, runner,
        narration=DroppingNarration(settings, storage, speech)
    )
    job = await make_job(job_store, storage, sample_pdf, enable_video=True)
    with pytest.raises(ConsistencyError):
        await broken.run(job.id)
    speech_calls = len(speech.calls)

    fixed = build_orchestrator(settings, storage, job_store, speech, runner)
    final = await fixed.run(job.id)

    assert final.status == JobStatus.COMPLETED
    assert final.error is None and final.error_stage is None
    # Narration was cached by the failed run; capture was already complete
    assert len(speech.calls) == speech_calls
    assert len(FakeDeckSession.instances) == 1
    assert "video" in final.paths


async def test_video_disabled_skips_narration(orchestrator, job_store, storage, sample_pdf, speech, runner):
    job = await make_job(job_store, storage, sample_pdf, enable_video=False)

    final = await orchestrator.run(job.id)

    assert final.status == JobStatus.COMPLETED
    assert "slidesPdf" in final.paths
    assert "video" not in final.paths
    assert speech.calls == []
    assert runner.calls == []


async def test_global_video_switch_overrides_job_config(settings, orchestrator, job_store, storage, sample_pdf, speech):
    settings.VIDEO_ENABLED = False
    job = await make_job(job_store, storage, sample_pdf, enable_video=True)

    final = await orchestrator.run(job.id)

    assert final.status == JobStatus.COMPLETED
    assert speech.calls == []


async def test_missing_pdf_fails_in_parsing(orchestrator, job_store, storage):
    job = await make_job(job_store, storage, None)

    with pytest.raises(InputError):
        await orchestrator.run(job.id)

    failed = await job_store.get(job.id)
    assert failed.status == JobStatus.FAILED
    assert failed.error_stage == "parsing"
    assert failed.error == "Missing source PDF path."


async def test_corrupt_deck_manifest_reruns_capture_and_later_stages(
    orchestrator, job_store, storage, sample_pdf, speech, runner
):
    job = await make_job(job_store, storage, sample_pdf, enable_video=True)
    await orchestrator.run(job.id)
    speech_calls, runner_calls = len(speech.calls), len(runner.calls)

    manifest = storage.outputs_dir(job.id) / "deck" / "rendered-slides.json"
    manifest.write_text('{"slides": [')

    final = await orchestrator.run(job.id)

    assert final.status == JobStatus.COMPLETED
    assert len(FakeDeckSession.instances) == 2
    # Same transcripts, so narration comes from the cache; the video is rebuilt from new captures
    assert len(speech.calls) == speech_calls
    assert len(runner.calls) > runner_calls


async def test_regenerated_slides_invalidate_downstream(orchestrator, job_store, storage, sample_pdf, runner):
    job = await make_job(job_store, storage, sample_pdf, enable_video=True)
    await orchestrator.run(job.id)
    (storage.outputs_dir(job.id) / "slides.json").unlink()
    await orchestrator.run(job.id)

    assert len(FakeDeckSession.instances) == 2


async def test_unknown_job_is_ignored(orchestrator):
    assert await orchestrator.run("does-not-exist") is None


async def test_start_records_failure_without_raising(orchestrator, job_store, storage):
    job = await make_job(job_store, storage, None)

    await orchestrator.start(job.id)

    failed = await job_store.get(job.id)
    assert failed.status == JobStatus.FAILED
    assert failed.error_stage == "parsing"


async def test_capture_failing_midway_is_redone_on_resume(settings, storage, job_store, sample_pdf, speech, runner):
    orchestrator = build_orchestrator(settings, storage, job_store, speech, runner)
    job = await make_job(job_store, storage, sample_pdf, enable_video=True)
    await orchestrator.run(job.id)
    output_dir = storage.outputs_dir(job.id)
    (output_dir / "rendered-slides" / "layouts.json").unlink()

    broken = build_orchestrator(settings, storage, job_store, speech, runner, deck_session=FailingPdfSession)
    with pytest.raises(RenderRuntimeError):
        await broken.run(job.id)

    failed = await job_store.get(job.id)
    assert failed.status == JobStatus.FAILED
    assert failed.error_stage == "composing"
    assert not (output_dir / "deck" / "rendered-slides.json").exists()
    assert not (output_dir / "slides.pdf").exists()

    final = await orchestrator.run(job.id)

    assert final.status == JobStatus.COMPLETED
    assert len(FakeDeckSession.instances) == 3
    assert FakeDeckSession.instances[-1].pdf_urls
    assert storage.resolve(final.paths["slidesPdf"]).read_bytes() == PDF_BYTES


async def test_completed_job_is_skipped_with_tts_cache_disabled(settings, orchestrator, job_store, storage,
                                                                 sample_pdf, speech, runner):
    settings.USE_TTS_CACHE = False
    job = await make_job(job_store, storage, sample_pdf, enable_video=True)
    await orchestrator.run(job.id)
    speech_calls, runner_calls = len(speech.calls), len(runner.calls)

    final = await orchestrator.run(job.id)

    assert final.status == JobStatus.COMPLETED
    assert len(speech.calls) == speech_calls
    assert len(runner.calls) == runner_calls
