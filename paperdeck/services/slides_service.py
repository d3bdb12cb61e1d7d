import json
import logging
import math
import re
from typing import Any, Dict, List, Optional

from paperdeck.config import Settings
from paperdeck.errors import SlideValidationError
from paperdeck.models.schemas import JobConfig, SlidesJSON
from paperdeck.services.storage import ArtifactStore

logger = logging.getLogger(__name__)

MAX_MARKDOWN_CHARS = 25000
MIN_IMAGE_SIZE = 128
MAX_OFFLINE_SLIDES = 6

LANGUAGE_HINTS = {"zh": "Chinese.", "en": "English."}

SYSTEM_PROMPT = """You turn research papers into narrated slide decks.

## INPUT
You receive the paper as markdown, followed by a catalog of the figures it contains
(each with its path as referenced in the markdown, and its pixel width/height).

## YOUR TASK
Summarize the paper into 6-12 slides that tell its story in order:
problem, background, method, key results, limitations, takeaway.

## SLIDE RULES
- title: short headline, max 8 words
- text_contents: the on-slide text. 3-5 short bullet lines separated by newlines.
  Plain text only, no markup.
- images: figures from the catalog that belong on this slide (0-1 per slide).
  Copy path, width and height exactly from the catalog. Never invent paths.
- tables: markdown or HTML tables copied from the paper when a slide is about numbers.
- transcript: what the narrator says while the slide is shown.
  3-6 conversational sentences, no bullet points, no markup.

## OUTPUT FORMAT
Return ONLY a JSON object, no prose and no code fences:
{
  "slides": [
    {
      "title": "Short Title",
      "text_contents": "First point\\nSecond point\\nThird point",
      "images": [{"path": "artifacts/image_000001.png", "width": 800, "height": 600}],
      "tables": [],
      "transcript": "Narration for this slide."
    }
  ]
}

CRITICAL: every slide MUST have a non-empty title, text_contents and transcript."""


def extract_json(text: str) -> Optional[str]:
    """
    Recover the outermost balanced ``{...}`` object from a model response.

    Handles prose before/after the object and markdown code fences. Braces
    inside JSON strings are ignored while balancing.
    """
    if not text:
        return None
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for pos in range(start, len(text)):
            char = text[pos]
            if in_string:
                if escaped:
                    escaped = False
                elif char == "\\":
                    escaped = True
                elif char == '"':
                    in_string = False
                continue
            if char == '"':
                in_string = True
            elif char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    return text[start:pos + 1]
        # Unbalanced from this brace; try the next opening brace
        start = text.find("{", start + 1)
    return None


def parse_json_object(text: str) -> Optional[Dict[str, Any]]:
    span = extract_json(text)
    if span is None:
        return None
    try:
        data = json.loads(span)
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


def escape_html(text: str) -> str:
    return text.replace("<", "&lt;").replace(">", "&gt;")


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def normalize_images(images: Any) -> List[dict]:
    """Keep only well-formed image entries at or above the minimum size."""
    if not isinstance(images, list):
        return []
    result = []
    for item in images:
        if not isinstance(item, dict):
            continue
        path = item.get("path")
        width = item.get("width")
        height = item.get("height")
        if not isinstance(path, str) or not path.strip():
            continue
        if not _is_number(width) or not _is_number(height):
            continue
        if width < MIN_IMAGE_SIZE or height < MIN_IMAGE_SIZE:
            continue
        result.append({"path": path.strip(), "width": int(round(width)), "height": int(round(height))})
    return result


def _text_field(raw: dict, key: str, escape: bool) -> str:
    value = raw.get(key)
    if not isinstance(value, str):
        return ""
    value = value.strip()
    return escape_html(value) if escape else value


def normalize_slides(payload: Any) -> Optional[SlidesJSON]:
    """
    Convert an untyped payload into SlidesJSON.

    Slides missing title, text_contents or transcript are dropped; if no
    slide survives, the whole document is rejected (None). Only trimming and
    HTML-escaping are applied; nothing is filled in.
    """
    if not isinstance(payload, dict):
        return None
    raw_slides = payload.get("slides")
    if not isinstance(raw_slides, list):
        return None

    slides = []
    for position, raw in enumerate(raw_slides, 1):
        if not isinstance(raw, dict):
            logger.warning(f"Dropping slide {position}: not an object")
            continue
        title = _text_field(raw, "title", escape=True)
        text_contents = _text_field(raw, "text_contents", escape=True)
        transcript = _text_field(raw, "transcript", escape=False)
        missing = [name for name, value in (
            ("title", title), ("text_contents", text_contents), ("transcript", transcript)
        ) if not value]
        if missing:
            logger.warning(f"Dropping slide {position}: missing {', '.join(missing)}")
            continue

        tables = raw.get("tables")
        tables = [t.strip() for t in tables if isinstance(t, str) and t.strip()] if isinstance(tables, list) else []

        slides.append({
            "title": title,
            "text_contents": text_contents,
            "images": normalize_images(raw.get("images")),
            "tables": tables,
            "transcript": transcript
        })

    if not slides:
        return None
    return SlidesJSON.model_validate({"slides": slides})


def parse_slides_response(text: str) -> SlidesJSON:
    """Validate a completion response; raises SlideValidationError on rejection."""
    payload = parse_json_object(text)
    if payload is None:
        raise SlideValidationError("Slide generation response did not contain a JSON object.")
    slides = normalize_slides(payload)
    if slides is None:
        raise SlideValidationError("Slide generation response contained no valid slides.")
    return slides


def restore_image_paths(slides: SlidesJSON, mapping: Dict[str, str]) -> SlidesJSON:
    """Swap markdown image references for stored artifact paths."""
    for slide in slides.slides:
        for image in slide.images:
            image.path = mapping.get(image.path, image.path)
    return slides


HEADING_RE = re.compile(r"^#+\s*(.*)$")
IMAGE_REF_RE = re.compile(r"!\[[^\]]*\]\(([^)\s]+)\)")


def build_offline_slides(markdown: str, images: List[dict], config: JobConfig) -> Dict[str, Any]:
    """
    Deterministic slide payload built from markdown headings and bullets.

    Used only in offline mode. The result still goes through
    ``normalize_slides`` like any model response.
    """
    use_chinese = config.output_language == "zh"
    catalog = {image["path"]: image for image in images}

    sections = []
    current = None
    for line in markdown.splitlines():
        stripped = line.strip()
        match = HEADING_RE.match(stripped)
        if match and match.group(1).strip():
            current = {"title": match.group(1).strip(), "lines": []}
            sections.append(current)
        elif current is not None:
            current["lines"].append(stripped)

    if not sections:
        titles = ["概述", "方法", "结果", "结论"] if use_chinese else ["Overview", "Method", "Results", "Conclusion"]
        sections = [{"title": t, "lines": []} for t in titles]

    slides = []
    for section in sections[:MAX_OFFLINE_SLIDES]:
        title = section["title"]
        lines = section["lines"]
        bullets = [l[2:].strip() for l in lines if l.startswith("- ") and l[2:].strip()][:4]
        if not bullets:
            prose = " ".join(l for l in lines if l and not l.startswith(("![", "|")))
            bullets = [prose[:280]] if prose else []
        if not bullets:
            bullets = ["关键结论一", "关键结论二", "关键结论三"] if use_chinese else \
                ["Key insight one", "Key insight two", "Key insight three"]

        refs = IMAGE_REF_RE.findall("\n".join(lines))
        slide_images = [catalog[ref] for ref in refs if ref in catalog][:1]
        tables = []
        table_lines = [l for l in lines if l.startswith("|")]
        if table_lines:
            tables.append("\n".join(table_lines))

        transcript = f"用 30-45 秒讲述 {title} 的要点。" if use_chinese else \
            f"Here are the key points for {title}. " + " ".join(bullets)

        slides.append({
            "title": title,
            "text_contents": "\n".join(bullets),
            "images": slide_images,
            "tables": tables,
            "transcript": transcript
        })

    return {"slides": slides}


class SlidesService:
    """Generates the SlidesJSON document for a job from its markdown."""

    def __init__(self, settings: Settings, storage: ArtifactStore, completion=None):
        self.settings = settings
        self.storage = storage
        self.completion = completion

    def _build_system_prompt(self, config: JobConfig) -> str:
        hint = LANGUAGE_HINTS.get(config.output_language or "")
        if hint:
            return f"{SYSTEM_PROMPT}\n\nOutput language: {hint}"
        return SYSTEM_PROMPT

    def _build_user_prompt(self, markdown: str, images: List[dict]) -> str:
        if len(markdown) > MAX_MARKDOWN_CHARS:
            markdown = markdown[:MAX_MARKDOWN_CHARS] + "\n\n[Content truncated...]"
            logger.info(f"Markdown truncated to {MAX_MARKDOWN_CHARS} characters")
        catalog = json.dumps(images, indent=2, ensure_ascii=False)
        return f"""Here is a research paper:

---
{markdown}
---

Figure catalog (JSON):
{catalog}

Create the slide deck. Valid JSON only."""

    async def generate(self, markdown: str, config: JobConfig, job_id: str) -> SlidesJSON:
        output_dir = self.storage.outputs_dir(job_id)
        images = self.storage.read_json(output_dir / "images.json") or []
        mapping = self.storage.read_json(output_dir / "image-mapping.json") or {}

        if self.settings.GENERATION_MODE == "offline":
            logger.info("Building slides deterministically (offline mode)")
            slides = normalize_slides(build_offline_slides(markdown, images, config))
            if slides is None:
                raise SlideValidationError("Offline slide generation produced no valid slides.")
        else:
            if self.completion is None:
                raise SlideValidationError("No text-completion service configured for slide generation.")
            logger.info(f"Requesting slides for {len(markdown)} chars of markdown")
            response_text = await self.completion.complete(
                system_prompt=self._build_system_prompt(config),
                user_prompt=self._build_user_prompt(markdown, images),
                model=config.model
            )
            slides = parse_slides_response(response_text)

        slides = restore_image_paths(slides, mapping)
        logger.info(f"Generated {len(slides.slides)} slides")
        return slides

    def write_slides_json(self, job_id: str, slides: SlidesJSON) -> str:
        path = self.storage.write_json(self.storage.outputs_dir(job_id) / "slides.json", slides)
        return self.storage.to_relative(path)
