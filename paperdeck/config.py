from pathlib import Path
from typing import Literal, Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Storage root for uploads, outputs and job records
    BASE_DIR: Path = Path(__file__).parent.parent
    STORAGE_ROOT: Path = BASE_DIR / "storage"

    # Text completion provider
    # One of: openai, openai-compatible, anthropic, gemini (guessed from the model if unset)
    LLM_PROVIDER: Optional[str] = None
    LLM_API_KEY: str = ""
    OPENAI_API_KEY: str = ""
    ANTHROPIC_API_KEY: str = ""
    GEMINI_API_KEY: str = ""
    QWEN_API_KEY: str = ""
    LLM_BASE_URL: str = ""
    ANTHROPIC_BASE_URL: str = ""
    GEMINI_BASE_URL: str = "https://generativelanguage.googleapis.com/v1beta"
    LLM_MODEL: str = ""
    LLM_MAX_TOKENS: int = 4096
    LLM_TEMPERATURE: float = 0.2
    LLM_TIMEOUT_SECONDS: float = 120.0

    # Docling document conversion (docling-serve)
    DOCLING_URL: str = ""
    DOCLING_API_KEY: str = ""
    DOCLING_REQUEST_TIMEOUT_SECONDS: float = 30.0
    DOCLING_POLL_INTERVAL_SECONDS: float = 1.0
    DOCLING_POLL_TIMEOUT_SECONDS: float = 600.0

    # Speech synthesis (DashScope multimodal generation API by default)
    TTS_API_KEY: str = ""
    TTS_MODEL_URL: str = "https://dashscope.aliyuncs.com/api/v1/services/aigc/multimodal-generation/generation"
    TTS_MODEL: str = "qwen3-tts-flash"
    TTS_VOICE: str = "Cherry"
    TTS_TIMEOUT_SECONDS: float = 120.0

    # Caches and switches
    USE_LLM_CACHE: bool = False
    # Reuse narration audio while narrating; resumed jobs skip current audio either way
    USE_TTS_CACHE: bool = True
    RENDER_SLIDES_CONCURRENCY: int = 1
    VIDEO_ENABLED: bool = True
    # "offline" skips every text-completion call and builds slides/layouts deterministically
    GENERATION_MODE: Literal["llm", "offline"] = "llm"

    # Slide rendering
    REVEAL_DIST_DIR: Path = BASE_DIR / "node_modules" / "reveal.js" / "dist"
    TEMPLATES_DIR: Path = Path(__file__).parent / "templates" / "reveal"
    SLIDE_WIDTH: int = 1920
    SLIDE_HEIGHT: int = 1080
    SLIDE_STYLE: str = "academic"

    # Video assembly
    FFMPEG_BIN: str = "ffmpeg"
    FFPROBE_BIN: str = "ffprobe"
    TRANSITION_SECONDS: float = 1.0
    COMMAND_TIMEOUT_SECONDS: float = 600.0

    # Delay before a submitted job starts running in the background
    PIPELINE_START_DELAY_SECONDS: float = 0.05

    class Config:
        env_file = ".env"

    @property
    def render_concurrency(self) -> int:
        return max(1, self.RENDER_SLIDES_CONCURRENCY)


settings = Settings()
