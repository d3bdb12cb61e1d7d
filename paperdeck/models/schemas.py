from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class JobStatus(str, Enum):
    PENDING = "pending"
    PARSING = "parsing"
    GENERATING = "generating"
    COMPOSING = "composing"
    RENDERING = "rendering"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = {JobStatus.COMPLETED, JobStatus.FAILED}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobConfig(BaseModel):
    model: str = "qwen-max"
    enable_video: bool = False
    voice_clone: bool = False
    tts_speed: float = 1.0
    voice_id: Optional[str] = None
    output_language: Optional[Literal["zh", "en"]] = None


class JobRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    status: JobStatus = JobStatus.PENDING
    config: JobConfig = Field(default_factory=JobConfig)
    paths: Dict[str, str] = Field(
        default_factory=dict,
        description="Artifact kind -> path relative to the storage root"
    )
    error: Optional[str] = None
    error_stage: Optional[str] = Field(default=None, alias="errorStage")
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class SlideImage(BaseModel):
    path: str = Field(min_length=1)
    width: int = Field(ge=128)
    height: int = Field(ge=128)


class Slide(BaseModel):
    title: str = Field(min_length=1)
    text_contents: str = Field(min_length=1)
    images: List[SlideImage] = Field(default_factory=list)
    tables: List[str] = Field(default_factory=list)
    transcript: str = Field(min_length=1)


class SlidesJSON(BaseModel):
    slides: List[Slide] = Field(min_length=1)


SlotKind = Literal["text", "html", "image"]


class Slot(BaseModel):
    name: str
    kind: SlotKind
    required: bool = True


class LayoutSchema(BaseModel):
    id: str
    template_file: str
    slots: List[Slot]


class LayoutSelection(BaseModel):
    """Validated layout choice for one slide; this is what the layout cache stores."""
    layout: str
    slots: Dict[str, object]


class RenderedSlide(BaseModel):
    index: int
    title: str
    html_path: str
    layout: str


class RenderedDeck(BaseModel):
    slides: List[RenderedSlide]
    deck: str
    style: str
    layouts: List[str]
    images: List[str]
    pdf: str


class SlideAudio(BaseModel):
    index: int
    path: str
    format: str
    transcript: str


class TtsCacheEntry(BaseModel):
    hash: str
    path: str
    format: str


class TtsCache(BaseModel):
    slides: Dict[str, TtsCacheEntry] = Field(default_factory=dict)


class VideoSegment(BaseModel):
    index: int
    image: str
    audio: str
    audio_duration: float
    duration: float
    segment: str


class VideoManifest(BaseModel):
    inputs: List[str] = Field(description="Fingerprint of the image/audio inputs the video was built from")
    transition_seconds: float
    segments: List[VideoSegment]
    video: str


class LayoutManifest(BaseModel):
    slides: List[RenderedSlide]
