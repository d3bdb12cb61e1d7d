"""Shared fixtures: settings rooted in tmp_path plus fakes for every external collaborator."""

from pathlib import Path
from urllib.parse import urlparse
from urllib.request import url2pathname

import fitz
import pytest

from paperdeck.config import Settings
from paperdeck.models.schemas import JobConfig, JobRecord, Slide, SlideImage, SlidesJSON
from paperdeck.services.command import CommandResult
from paperdeck.services.job_store import FileJobStore
from paperdeck.services.storage import ArtifactStore
from paperdeck.services.tts_service import AudioPayload

PNG_BYTES = b"\x89PNG\r\n\x1a\nfake-slide"
PDF_BYTES = b"%PDF-1.4 fake deck"


class FakeCompletion:
    """Returns queued responses in order and records every prompt."""

    def __init__(self, responses=None):
        self.responses = list(responses or [])
        self.calls = []

    async def complete(self, system_prompt, user_prompt, model=None):
        self.calls.append({"system": system_prompt, "user": user_prompt, "model": model})
        if not self.responses:
            raise AssertionError("FakeCompletion ran out of responses")
        return self.responses.pop(0)


class FakeSpeech:
    def __init__(self, extension="wav"):
        self.extension = extension
        self.calls = []

    async def synthesize(self, text, voice, language_type, speech_rate=None):
        self.calls.append({"text": text, "voice": voice, "language": language_type, "rate": speech_rate})
        return AudioPayload(data=b"RIFF" + text.encode("utf-8"), extension=self.extension)


class FakeDeckSession:
    """Stands in for the Playwright session; counts sections in the deck file."""

    instances = []

    def __init__(self, width, height):
        self.width = width
        self.height = height
        self.captured = []
        self.pdf_urls = []
        self.slide_count = 0
        FakeDeckSession.instances.append(self)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    async def open_deck(self, url):
        deck = Path(url2pathname(urlparse(url).path)).read_text(encoding="utf-8")
        self.slide_count = deck.count("data-slide-index=")

    async def slide_indices(self):
        return [{"h": i, "v": 0} for i in range(self.slide_count)]

    async def capture_slide(self, h, v):
        self.captured.append((h, v))
        return PNG_BYTES

    async def export_pdf(self, url):
        self.pdf_urls.append(url)
        return PDF_BYTES


class FakeRunner:
    """Fake ffmpeg/ffprobe: probes return fixed durations, encodes touch the output file."""

    def __init__(self, durations=None, default_duration=2.5):
        self.durations = list(durations or [])
        self.default_duration = default_duration
        self.calls = []

    async def __call__(self, args, cwd=None, timeout=None):
        self.calls.append({"args": [str(a) for a in args], "cwd": cwd})
        if Path(str(args[0])).name.startswith("ffprobe"):
            duration = self.durations.pop(0) if self.durations else self.default_duration
            return CommandResult(stdout=f"{duration}\n", stderr="")
        output = Path(str(args[-1]))
        if cwd is not None and not output.is_absolute():
            output = Path(cwd) / output
        output.write_bytes(b"fake-mp4")
        return CommandResult(stdout="", stderr="")

    def commands(self, binary):
        return [call for call in self.calls if Path(call["args"][0]).name == binary]


@pytest.fixture
def reveal_dist(tmp_path):
    dist = tmp_path / "reveal" / "dist"
    (dist / "theme").mkdir(parents=True)
    (dist / "reveal.css").write_text("/* reveal */")
    (dist / "theme" / "white.css").write_text("/* theme */")
    (dist / "reveal.js").write_text("window.Reveal = {};")
    return dist


@pytest.fixture
def settings(tmp_path, reveal_dist):
    return Settings(
        _env_file=None,
        STORAGE_ROOT=tmp_path / "storage",
        GENERATION_MODE="offline",
        LLM_PROVIDER=None,
        LLM_API_KEY="",
        OPENAI_API_KEY="",
        ANTHROPIC_API_KEY="",
        GEMINI_API_KEY="",
        QWEN_API_KEY="",
        LLM_MODEL="",
        DOCLING_URL="",
        REVEAL_DIST_DIR=reveal_dist,
        USE_LLM_CACHE=False,
        USE_TTS_CACHE=True,
        VIDEO_ENABLED=True,
        TTS_API_KEY="test-key",
        TRANSITION_SECONDS=1.0,
        PIPELINE_START_DELAY_SECONDS=0
    )


@pytest.fixture
def storage(settings):
    return ArtifactStore(settings.STORAGE_ROOT)


@pytest.fixture
def job_store(storage):
    return FileJobStore(storage)


@pytest.fixture
def fake_speech():
    return FakeSpeech()


@pytest.fixture
def fake_runner():
    return FakeRunner()


@pytest.fixture(autouse=True)
def reset_deck_sessions():
    FakeDeckSession.instances.clear()
    yield
    FakeDeckSession.instances.clear()


@pytest.fixture
def sample_pdf(tmp_path):
    """Three-page PDF with one heading-like line and a few bullet lines per page."""
    path = tmp_path / "paper.pdf"
    doc = fitz.open()
    for page_num, topic in enumerate(["Introduction", "Method", "Results"], 1):
        page = doc.new_page()
        page.insert_text((72, 72), f"{topic} of the study")
        page.insert_text((72, 100), f"- First finding about {topic.lower()}")
        page.insert_text((72, 128), f"- Second finding about {topic.lower()}")
    doc.save(str(path))
    doc.close()
    return path


def make_slides(count=3, with_image=None):
    slides = []
    for i in range(count):
        images = []
        if with_image is not None and i == 0:
            images = [SlideImage(path=with_image, width=800, height=600)]
        slides.append(Slide(
            title=f"Slide {i + 1}",
            text_contents=f"Point A{i + 1}\nPoint B{i + 1}",
            images=images,
            tables=[],
            transcript=f"Narration for slide {i + 1}."
        ))
    return SlidesJSON(slides=slides)


async def make_job(job_store, storage, pdf_path=None, **config):
    job_id = "job-0001"
    paths = {}
    if pdf_path is not None:
        stored = storage.write_bytes(storage.uploads_dir(job_id) / "paper.pdf", Path(pdf_path).read_bytes())
        paths["pdf"] = storage.to_relative(stored)
    return await job_store.create(JobRecord(id=job_id, config=JobConfig(**config), paths=paths))
