"""
Video Assembly Service

Pairs every slide image with its narration audio and builds the final video
with ffmpeg:

1. ffprobe each audio file for its exact duration
2. Encode one still-image segment per slide, lasting audio + transition pad
   (the audio tail is padded with silence so both streams end together)
3. Concatenate the segments with the concat demuxer (stream copy, no re-encode)

Also writes ``captions.srt`` (one cue per slide, timed from the measured
durations) and ``video/manifest.json``, whose ``inputs`` fingerprint lets a
resumed job skip the stage when nothing upstream changed.
"""

import logging
import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List

from paperdeck.config import Settings
from paperdeck.errors import ConsistencyError
from paperdeck.models.schemas import SlideAudio, SlidesJSON, VideoManifest, VideoSegment
from paperdeck.services.command import run_command
from paperdeck.services.storage import ArtifactStore

logger = logging.getLogger(__name__)

FRAME_RATE = 30
AUDIO_SAMPLE_RATE = 48000


@dataclass
class VideoResult:
    """Relative paths of the assembled artifacts."""
    video: str
    captions: str
    manifest: VideoManifest


def format_seconds(value: float) -> str:
    return f"{value:.3f}"


def format_timestamp(seconds: float) -> str:
    """SRT timestamp, ``HH:MM:SS,mmm``."""
    total_ms = int(round(max(0.0, seconds) * 1000))
    hours, rest = divmod(total_ms, 3_600_000)
    minutes, rest = divmod(rest, 60_000)
    secs, ms = divmod(rest, 1000)
    return f"{hours:02d}:{minutes:02d}:{secs:02d},{ms:03d}"


def build_srt(slides: SlidesJSON, durations: List[float]) -> str:
    cues = []
    cursor = 0.0
    for number, (slide, duration) in enumerate(zip(slides.slides, durations), 1):
        text = " ".join(slide.transcript.split())
        cues.append(f"{number}\n{format_timestamp(cursor)} --> {format_timestamp(cursor + duration)}\n{text}\n")
        cursor += duration
    return "\n".join(cues)


class VideoService:
    def __init__(self, settings: Settings, storage: ArtifactStore, runner: Callable = run_command):
        self.settings = settings
        self.storage = storage
        self.runner = runner

    def _video_dir(self, job_id: str) -> Path:
        return self.storage.outputs_dir(job_id) / "video"

    def _video_path(self, job_id: str) -> Path:
        return self.storage.outputs_dir(job_id) / "video.mp4"

    def _manifest_path(self, job_id: str) -> Path:
        return self._video_dir(job_id) / "manifest.json"

    def fingerprint(self, image_paths: List[str], audio: List[SlideAudio]) -> List[str]:
        """Identify the exact image/audio files a video is built from."""
        entries = []
        for relative in list(image_paths) + [item.path for item in audio]:
            path = self.storage.resolve(relative)
            try:
                stat = path.stat()
            except OSError:
                entries.append(f"{relative}:missing")
                continue
            entries.append(f"{relative}:{stat.st_size}:{stat.st_mtime_ns}")
        return entries

    def is_complete(self, job_id: str, image_paths: List[str], audio: List[SlideAudio]) -> bool:
        if not self._video_path(job_id).is_file():
            return False
        manifest = self.storage.read_model(self._manifest_path(job_id), VideoManifest)
        if manifest is None:
            return False
        return manifest.inputs == self.fingerprint(image_paths, audio)

    def check_inputs(self, slides: SlidesJSON, image_paths: List[str], audio: List[SlideAudio]) -> None:
        """Fail before any encoding when images, audio and slides do not line up."""
        if not image_paths:
            raise ConsistencyError("No slide images available to render video.")
        if not audio:
            raise ConsistencyError("No slide narration audio available to render video.")
        if len(image_paths) != len(audio) or len(audio) != len(slides.slides):
            raise ConsistencyError(
                f"Slide image count ({len(image_paths)}) does not match audio count ({len(audio)}) "
                f"and slide count ({len(slides.slides)})."
            )
        for relative in list(image_paths) + [item.path for item in audio]:
            if not self.storage.resolve(relative).is_file():
                raise ConsistencyError(f"Missing video input {relative}.")

    async def probe_duration(self, audio_path: Path) -> float:
        result = await self.runner(
            [
                self.settings.FFPROBE_BIN,
                "-v", "error",
                "-show_entries", "format=duration",
                "-of", "default=noprint_wrappers=1:nokey=1",
                str(audio_path)
            ],
            timeout=self.settings.COMMAND_TIMEOUT_SECONDS
        )
        try:
            duration = float(result.stdout.strip())
        except ValueError:
            duration = 0.0
        if not duration > 0 or duration == float("inf"):
            raise ConsistencyError(f"Invalid audio duration for {audio_path.name}.")
        return duration

    async def assemble(
        self,
        job_id: str,
        slides: SlidesJSON,
        image_paths: List[str],
        audio: List[SlideAudio]
    ) -> VideoResult:
        self.check_inputs(slides, image_paths, audio)

        transition = self.settings.TRANSITION_SECONDS
        video_dir = self._video_dir(job_id)
        shutil.rmtree(video_dir, ignore_errors=True)
        video_dir.mkdir(parents=True, exist_ok=True)

        segments = []
        for index, (image_rel, slide_audio) in enumerate(zip(image_paths, audio)):
            image_path = self.storage.resolve(image_rel).resolve()
            audio_path = self.storage.resolve(slide_audio.path).resolve()
            audio_duration = await self.probe_duration(audio_path)
            duration = audio_duration + transition

            segment_name = f"segment-{index + 1:03d}.mp4"
            logger.info(f"Encoding segment {index + 1}/{len(image_paths)} ({format_seconds(duration)}s)")
            await self.runner(
                [
                    self.settings.FFMPEG_BIN, "-y",
                    "-loop", "1",
                    "-t", format_seconds(duration),
                    "-i", str(image_path),
                    "-i", str(audio_path),
                    "-c:v", "libx264",
                    "-tune", "stillimage",
                    "-r", str(FRAME_RATE),
                    "-pix_fmt", "yuv420p",
                    "-c:a", "aac",
                    "-ar", str(AUDIO_SAMPLE_RATE),
                    "-ac", "2",
                    "-af", f"apad=pad_dur={format_seconds(transition)}",
                    "-shortest",
                    str(video_dir / segment_name)
                ],
                timeout=self.settings.COMMAND_TIMEOUT_SECONDS
            )
            segments.append(VideoSegment(
                index=index,
                image=image_rel,
                audio=slide_audio.path,
                audio_duration=audio_duration,
                duration=duration,
                segment=self.storage.to_relative(video_dir / segment_name)
            ))

        concat_list = "\n".join(f"file '{Path(segment.segment).name}'" for segment in segments) + "\n"
        concat_path = self.storage.write_text(video_dir / "concat.txt", concat_list)

        partial_path = video_dir / "video.partial.mp4"
        logger.info(f"Concatenating {len(segments)} segments")
        await self.runner(
            [
                self.settings.FFMPEG_BIN, "-y",
                "-f", "concat",
                "-safe", "0",
                "-i", concat_path.name,
                "-c", "copy",
                partial_path.name
            ],
            cwd=video_dir,
            timeout=self.settings.COMMAND_TIMEOUT_SECONDS
        )
        video_path = self._video_path(job_id)
        os.replace(partial_path, video_path)

        output_dir = self.storage.outputs_dir(job_id)
        captions_path = self.storage.write_text(
            output_dir / "captions.srt",
            build_srt(slides, [segment.duration for segment in segments])
        )

        manifest = VideoManifest(
            inputs=self.fingerprint(image_paths, audio),
            transition_seconds=transition,
            segments=segments,
            video=self.storage.to_relative(video_path)
        )
        self.storage.write_json(self._manifest_path(job_id), manifest)

        total = sum(segment.duration for segment in segments)
        logger.info(f"Video assembled: {len(segments)} segments, {total:.1f}s")
        return VideoResult(
            video=manifest.video,
            captions=self.storage.to_relative(captions_path),
            manifest=manifest
        )
