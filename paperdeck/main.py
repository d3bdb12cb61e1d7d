import logging
import math
import re
import uuid
from typing import Optional

from fastapi import BackgroundTasks, FastAPI, File, Form, HTTPException, UploadFile
from fastapi.responses import FileResponse

from paperdeck.config import settings
from paperdeck.models.schemas import JobConfig, JobRecord
from paperdeck.services.job_store import FileJobStore
from paperdeck.services.pipeline import PipelineOrchestrator
from paperdeck.services.storage import ArtifactStore

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Paper to Slide Video API",
    description="Convert research papers to narrated slide decks and videos",
    version="0.1.0"
)

# Initialize services
storage = ArtifactStore(settings.STORAGE_ROOT)
job_store = FileJobStore(storage)
orchestrator = PipelineOrchestrator(settings, storage, job_store)

JOB_ID_RE = re.compile(r"^[A-Za-z0-9-]{1,64}$")

# Artifact kind -> (content type, download name)
FILE_TYPES = {
    "pdf": ("application/pdf", "paper.pdf"),
    "doc": ("text/markdown", "doc.md"),
    "slides": ("application/json", "slides.json"),
    "pptx": ("application/vnd.openxmlformats-officedocument.presentationml.presentation", "slides.pptx"),
    "rendered": ("application/json", "rendered-slides.json"),
    "slidesPdf": ("application/pdf", "slides.pdf"),
    "video": ("video/mp4", "video.mp4"),
    "captions": ("application/x-subrip", "captions.srt"),
}


def _parse_bool(value: Optional[str]) -> bool:
    return (value or "").strip().lower() == "true"


def _job_response(job: JobRecord) -> dict:
    return job.model_dump(mode="json", by_alias=True)


async def _get_job_or_404(job_id: str) -> JobRecord:
    if not JOB_ID_RE.match(job_id):
        raise HTTPException(status_code=400, detail="Malformed job id")
    job = await job_store.get(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


@app.get("/health")
async def health_check():
    return {"status": "healthy", "version": "0.1.0"}


@app.post("/api/jobs")
async def create_job(
    background_tasks: BackgroundTasks,
    pdf: Optional[UploadFile] = File(None),
    voiceSample: Optional[UploadFile] = File(None),
    model: str = Form("qwen-max"),
    enableVideo: str = Form("false"),
    voiceClone: str = Form("false"),
    ttsSpeed: float = Form(1.0),
    voiceId: Optional[str] = Form(None),
    outputLanguage: Optional[str] = Form(None)
):
    """
    Upload a PDF and start the pipeline.
    Returns the new job record; poll GET /api/jobs/{id} for progress.
    """
    if pdf is None or not pdf.filename:
        raise HTTPException(status_code=400, detail="PDF file is required.")
    if not pdf.filename.lower().endswith(".pdf"):
        raise HTTPException(status_code=400, detail="Only PDF files are accepted")

    pdf_bytes = await pdf.read()
    if not pdf_bytes:
        raise HTTPException(status_code=400, detail="PDF file is empty.")

    job_id = str(uuid.uuid4())
    upload_dir = storage.uploads_dir(job_id)
    pdf_path = storage.write_bytes(upload_dir / "paper.pdf", pdf_bytes)
    paths = {"pdf": storage.to_relative(pdf_path)}

    if voiceSample is not None and voiceSample.filename:
        sample_bytes = await voiceSample.read()
        if sample_bytes:
            sample_path = storage.write_bytes(upload_dir / "voice_sample.wav", sample_bytes)
            paths["voiceSample"] = storage.to_relative(sample_path)

    config = JobConfig(
        model=model.strip() or "qwen-max",
        enable_video=_parse_bool(enableVideo),
        voice_clone=_parse_bool(voiceClone),
        tts_speed=ttsSpeed,
        voice_id=voiceId.strip() if voiceId and voiceId.strip() else None,
        output_language=outputLanguage if outputLanguage in ("zh", "en") else None
    )

    job = await job_store.create(JobRecord(id=job_id, config=config, paths=paths))
    logger.info(f"Created job {job_id} for file: {pdf.filename}")

    background_tasks.add_task(orchestrator.start, job_id)
    return _job_response(job)


@app.get("/api/jobs/{job_id}")
async def get_job(job_id: str):
    return _job_response(await _get_job_or_404(job_id))


@app.post("/api/jobs/{job_id}/resume")
async def resume_job(job_id: str, background_tasks: BackgroundTasks, ttsSpeed: Optional[float] = None):
    """
    Re-run a job. Stages whose artifacts already exist are skipped,
    so only the failed or missing work is redone.

    Passing ttsSpeed changes the narration speed first; narration and
    video are then regenerated at the new rate.
    """
    job = await _get_job_or_404(job_id)
    if ttsSpeed is not None:
        if not math.isfinite(ttsSpeed) or ttsSpeed <= 0:
            raise HTTPException(status_code=400, detail="ttsSpeed must be a positive number")
        job = await job_store.update(job_id, {"config": {"tts_speed": ttsSpeed}}) or job
    logger.info(f"Resuming job {job_id} (status: {job.status.value})")
    background_tasks.add_task(orchestrator.start, job_id)
    return _job_response(job)


@app.get("/api/jobs/{job_id}/files/{kind}")
async def get_job_file(job_id: str, kind: str):
    job = await _get_job_or_404(job_id)
    if kind not in FILE_TYPES:
        raise HTTPException(status_code=404, detail=f"Unknown file type: {kind}")

    relative = job.paths.get(kind)
    if not relative:
        raise HTTPException(status_code=404, detail="File not available.")

    path = storage.resolve(relative)
    if not path.is_file():
        raise HTTPException(status_code=404, detail="File missing.")

    media_type, filename = FILE_TYPES[kind]
    return FileResponse(str(path), media_type=media_type, filename=filename)
