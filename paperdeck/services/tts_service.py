"""
Narration Service

Generates one audio file per slide from its transcript using a DashScope-style
speech-synthesis API.

Audio lands in ``outputs/<job_id>/tts/slide-NNN.<ext>``. The index
``tts/tts-cache.json`` maps slide index -> {hash, path, format}, where hash is
a sha256 over the exact generation parameters; any parameter change
(transcript, voice, language, rate, model) is a miss. The index is always
written, so a resumed job skips narration whose audio is current.
USE_TTS_CACHE only controls whether a narration run reuses existing audio;
with it off, every run of the stage synthesizes every slide again.
"""

import base64
import binascii
import hashlib
import json
import logging
from dataclasses import dataclass
from typing import Any, List, Optional

import httpx

from paperdeck.config import Settings
from paperdeck.errors import SlideValidationError, UpstreamServiceError
from paperdeck.models.schemas import JobConfig, SlideAudio, SlidesJSON, TtsCache, TtsCacheEntry
from paperdeck.services.storage import ArtifactStore

logger = logging.getLogger(__name__)

DEFAULT_AUDIO_FORMAT = "wav"
MAX_SPEECH_RATE = 500


@dataclass
class AudioPayload:
    """Decoded audio returned by the speech service."""
    data: bytes
    extension: str


def to_speech_rate(speed: Optional[float]) -> Optional[int]:
    """Map a playback speed multiplier (1.0 = normal) to the API's -500..500 rate."""
    if speed is None:
        return None
    try:
        speed = float(speed)
    except (TypeError, ValueError):
        return None
    if speed != speed or speed in (float("inf"), float("-inf")):
        return None
    rate = round((speed - 1) * 1000)
    return max(-MAX_SPEECH_RATE, min(MAX_SPEECH_RATE, rate))


def normalize_language_type(value: Optional[str]) -> str:
    if not value or not value.strip():
        return "Chinese"
    normalized = value.strip().lower()
    if normalized in ("en", "english"):
        return "English"
    if normalized in ("zh", "chinese", "cn"):
        return "Chinese"
    return value.strip()


def normalize_format(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    lowered = value.strip().lower()
    if "wav" in lowered:
        return "wav"
    if "mp3" in lowered or "mpeg" in lowered:
        return "mp3"
    if "ogg" in lowered:
        return "ogg"
    return None


def format_from_content_type(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    lowered = value.lower()
    if "audio/wav" in lowered or "audio/x-wav" in lowered:
        return "wav"
    if "audio/mpeg" in lowered:
        return "mp3"
    if "audio/ogg" in lowered:
        return "ogg"
    return None


def decode_base64_audio(payload: str) -> tuple:
    """Decode raw base64 or a ``data:audio/...;base64,`` URI -> (bytes, format or None)."""
    payload = payload.strip()
    audio_format = None
    if payload.startswith("data:"):
        meta, _, payload = payload.partition(",")
        audio_format = format_from_content_type(meta[len("data:"):].split(";")[0])
    try:
        return base64.b64decode(payload, validate=False), audio_format
    except (binascii.Error, ValueError):
        raise UpstreamServiceError("TTS response contained undecodable audio data")


def narration_hash(transcript: str, voice: str, language_type: str,
                   speech_rate: Optional[int], model: str) -> str:
    """Content digest over the exact parameters used to synthesize one slide."""
    payload = json.dumps(
        {
            "transcript": transcript,
            "voice": voice,
            "languageType": language_type,
            "speechRate": speech_rate,
            "model": model
        },
        ensure_ascii=False,
        separators=(",", ":")
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class SpeechService:
    """Client for the speech-synthesis API."""

    def __init__(self, settings: Settings):
        self.url = settings.TTS_MODEL_URL
        self.api_key = settings.TTS_API_KEY
        self.model = settings.TTS_MODEL
        self.timeout = settings.TTS_TIMEOUT_SECONDS

    def is_configured(self) -> bool:
        return bool(self.api_key)

    async def synthesize(
        self,
        text: str,
        voice: str,
        language_type: str,
        speech_rate: Optional[int] = None
    ) -> AudioPayload:
        if not self.is_configured():
            raise UpstreamServiceError("Missing TTS_API_KEY configuration.")

        payload_input = {"text": text, "voice": voice, "language_type": language_type}
        if speech_rate is not None:
            payload_input["speech_rate"] = speech_rate

        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json"
        }

        logger.info(f"Synthesizing {len(text)} chars of narration (voice={voice}, rate={speech_rate})")

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    self.url,
                    headers=headers,
                    json={"model": self.model, "input": payload_input}
                )
                if response.status_code != 200:
                    logger.error(f"TTS API error: {response.status_code}")
                    raise UpstreamServiceError("TTS request failed:", endpoint=self.url,
                                               status_code=response.status_code)
                try:
                    body = response.json()
                except ValueError:
                    raise UpstreamServiceError("TTS response was not valid JSON", endpoint=self.url)
                return await self._extract_audio(client, body)
        except httpx.TimeoutException:
            raise UpstreamServiceError("TTS request timed out", endpoint=self.url)
        except httpx.HTTPError as e:
            raise UpstreamServiceError(f"TTS request could not connect ({type(e).__name__})", endpoint=self.url)

    async def _extract_audio(self, client: httpx.AsyncClient, body: Any) -> AudioPayload:
        output = body.get("output") if isinstance(body, dict) else None
        if not isinstance(output, dict):
            raise UpstreamServiceError("TTS response missing audio payload.", endpoint=self.url)

        output_format = normalize_format(output.get("audio_format") if isinstance(output.get("audio_format"), str) else None) \
            or normalize_format(output.get("format") if isinstance(output.get("format"), str) else None)

        audio = output.get("audio")
        if audio is None:
            audio = output.get("audios")
        if isinstance(audio, list):
            audio = audio[0] if audio else None

        if isinstance(audio, str):
            if audio.startswith("http"):
                return await self._download(client, audio)
            data, data_format = decode_base64_audio(audio)
            return AudioPayload(data=data, extension=data_format or output_format or DEFAULT_AUDIO_FORMAT)

        if isinstance(audio, dict):
            audio_format = normalize_format(audio.get("format") if isinstance(audio.get("format"), str) else None) \
                or output_format
            if isinstance(audio.get("url"), str) and audio["url"]:
                return await self._download(client, audio["url"])
            if isinstance(audio.get("data"), str) and audio["data"]:
                data, data_format = decode_base64_audio(audio["data"])
                return AudioPayload(data=data, extension=data_format or audio_format or DEFAULT_AUDIO_FORMAT)

        raise UpstreamServiceError("Unable to extract audio from TTS response.", endpoint=self.url)

    async def _download(self, client: httpx.AsyncClient, url: str) -> AudioPayload:
        response = await client.get(url)
        if response.status_code != 200:
            raise UpstreamServiceError("TTS audio download failed:", endpoint=url,
                                       status_code=response.status_code)
        audio_format = format_from_content_type(response.headers.get("content-type")) \
            or normalize_format(url.split("?")[0].rsplit(".", 1)[-1])
        return AudioPayload(data=response.content, extension=audio_format or DEFAULT_AUDIO_FORMAT)


class NarrationService:
    """Per-slide narration with a content-addressed audio cache."""

    def __init__(self, settings: Settings, storage: ArtifactStore, speech=None):
        self.settings = settings
        self.storage = storage
        self.speech = speech if speech is not None else SpeechService(settings)

    def _tts_dir(self, job_id: str):
        return self.storage.outputs_dir(job_id) / "tts"

    def _cache_path(self, job_id: str):
        return self._tts_dir(job_id) / "tts-cache.json"

    def resolve_voice(self, config: JobConfig) -> str:
        if config.voice_id and config.voice_id.strip():
            return config.voice_id.strip()
        return self.settings.TTS_VOICE

    def slide_hashes(self, slides: SlidesJSON, config: JobConfig) -> List[str]:
        voice = self.resolve_voice(config)
        language_type = normalize_language_type(config.output_language)
        speech_rate = to_speech_rate(config.tts_speed)
        model = self.settings.TTS_MODEL
        return [
            narration_hash(slide.transcript.strip(), voice, language_type, speech_rate, model)
            for slide in slides.slides
        ]

    def load_cache(self, job_id: str) -> TtsCache:
        return self.storage.read_model(self._cache_path(job_id), TtsCache) or TtsCache()

    def _cached_entry(self, cache: TtsCache, index: int, digest: str) -> Optional[TtsCacheEntry]:
        entry = cache.slides.get(str(index))
        if entry is None or entry.hash != digest:
            return None
        if not self.storage.resolve(entry.path).is_file():
            return None
        return entry

    def cached_audio(self, slides: SlidesJSON, job_id: str, config: JobConfig) -> Optional[List[SlideAudio]]:
        """
        Return the audio manifest if every slide has a current index entry.

        Returns None when any slide would need resynthesis.
        """
        cache = self.load_cache(job_id)
        audio = []
        for index, (slide, digest) in enumerate(zip(slides.slides, self.slide_hashes(slides, config))):
            entry = self._cached_entry(cache, index, digest)
            if entry is None:
                return None
            audio.append(SlideAudio(index=index, path=entry.path, format=entry.format,
                                    transcript=slide.transcript.strip()))
        return audio

    def is_complete(self, slides: SlidesJSON, job_id: str, config: JobConfig) -> bool:
        return self.cached_audio(slides, job_id, config) is not None

    async def narrate(self, slides: SlidesJSON, job_id: str, config: JobConfig) -> List[SlideAudio]:
        """Synthesize (or reuse) audio for every slide, in order."""
        use_cache = self.settings.USE_TTS_CACHE
        tts_dir = self._tts_dir(job_id)
        tts_dir.mkdir(parents=True, exist_ok=True)
        cache = self.load_cache(job_id) if use_cache else TtsCache()

        voice = self.resolve_voice(config)
        language_type = normalize_language_type(config.output_language)
        speech_rate = to_speech_rate(config.tts_speed)
        hashes = self.slide_hashes(slides, config)

        results = []
        for index, slide in enumerate(slides.slides):
            transcript = slide.transcript.strip()
            if not transcript:
                raise SlideValidationError(f"Slide {index + 1} transcript is missing.")

            if use_cache:
                entry = self._cached_entry(cache, index, hashes[index])
                if entry is not None:
                    logger.info(f"TTS cache hit for slide {index + 1}")
                    results.append(SlideAudio(index=index, path=entry.path, format=entry.format,
                                              transcript=transcript))
                    continue

            logger.info(f"Generating narration for slide {index + 1}/{len(slides.slides)}")
            audio = await self.speech.synthesize(transcript, voice, language_type, speech_rate)
            if not audio.data:
                raise UpstreamServiceError(f"TTS returned empty audio for slide {index + 1}.")

            path = self.storage.write_bytes(tts_dir / f"slide-{index + 1:03d}.{audio.extension}", audio.data)
            relative = self.storage.to_relative(path)
            cache.slides[str(index)] = TtsCacheEntry(hash=hashes[index], path=relative, format=audio.extension)
            # Index rewritten per slide; an interrupted run keeps finished audio
            self.storage.write_json(self._cache_path(job_id), cache)
            results.append(SlideAudio(index=index, path=relative, format=audio.extension, transcript=transcript))

        logger.info(f"Narration ready for {len(results)} slides")
        return results
