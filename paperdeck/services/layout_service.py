"""
Layout Synthesis Service

For each slide:
1. Ask the text-completion service to pick a registered layout and fill its slots
2. Validate the slots against the layout's schema (no default layout, no guessing)
3. Render the layout's HTML template with the validated slots

Slides are processed by a small worker pool; results keep the original slide
order regardless of which worker finishes first.
"""

import asyncio
import html
import json
import logging
import math
import re
import shutil
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, TypeVar

from paperdeck.config import Settings
from paperdeck.errors import LayoutValidationError, RenderRuntimeError
from paperdeck.models.schemas import (
    JobConfig,
    LayoutManifest,
    LayoutSchema,
    LayoutSelection,
    RenderedSlide,
    Slide,
    SlidesJSON,
)
from paperdeck.services.layouts import LAYOUT_SCHEMAS, get_layout
from paperdeck.services.slides_service import LANGUAGE_HINTS, parse_json_object
from paperdeck.services.storage import ArtifactStore

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

PLACEHOLDER_RE = re.compile(r"{{\s*([a-zA-Z0-9_.-]+)\s*}}")
CODE_FENCE_RE = re.compile(r"```(?:html)?\s*([\s\S]*?)```", re.IGNORECASE)
DOCUMENT_TAG_RE = re.compile(r"</?(html|body)[^>]*>", re.IGNORECASE)

SYSTEM_PROMPT = """You lay out one presentation slide at a time.

You receive the slide's content as JSON: title, text_contents, tables, images
(browser-loadable file URLs with pixel width/height) and the canvas size.

Pick exactly ONE layout from the list below and fill its slots.

## LAYOUTS
{layouts}

## SLOT KINDS
- text: plain text, no markup
- html: an HTML fragment (<ul><li>, <p>, <b>, <table> ...). No <html> or <body> tags.
- image: an object {{"path": <image src from the input>, "width": <px>, "height": <px>, "caption": <optional text>}}

## RULES
- Use only layouts from the list. Fill every required slot.
- Only use images that appear in the input. Copy src, width and height exactly.
- A slide without images must not use an image layout.
- Keep text short enough to fit a {width}x{height} canvas.

## OUTPUT FORMAT
Return ONLY JSON, no prose:
{{"layout": "<layout id>", "slots": {{"<slot name>": <value>, ...}}}}"""


def describe_layouts() -> str:
    lines = []
    for schema in LAYOUT_SCHEMAS.values():
        slots = ", ".join(
            f"{slot.name} ({slot.kind}{'' if slot.required else ', optional'})" for slot in schema.slots
        )
        lines.append(f"- {schema.id}: {slots}")
    return "\n".join(lines)


def escape_text(value: str) -> str:
    # Unescape first so text that was already escaped upstream is not escaped twice
    return html.escape(html.unescape(value), quote=False)


def sanitize_html(value: str) -> str:
    fenced = CODE_FENCE_RE.search(value)
    if fenced and fenced.group(1):
        value = fenced.group(1)
    return DOCUMENT_TAG_RE.sub("", value.strip()).strip()


def _to_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def resolve_slots(schema: LayoutSchema, raw_slots: Any) -> Dict[str, Any]:
    """
    Validate raw slot values against a layout schema.

    Raises LayoutValidationError when a required slot is missing or an image
    slot lacks path/width/height.
    """
    raw_slots = raw_slots if isinstance(raw_slots, dict) else {}
    slots: Dict[str, Any] = {}

    for slot in schema.slots:
        raw_value = raw_slots.get(slot.name)

        if slot.kind == "image":
            if not isinstance(raw_value, dict):
                if slot.required:
                    raise LayoutValidationError(f'Layout "{schema.id}" requires slot "{slot.name}".')
                slots[slot.name] = None
                continue
            path = raw_value.get("path")
            path = path.strip() if isinstance(path, str) else ""
            width = _to_number(raw_value.get("width"))
            height = _to_number(raw_value.get("height"))
            if not path or width is None or height is None:
                raise LayoutValidationError(
                    f'Layout "{schema.id}" requires image slot "{slot.name}" with path, width, height.'
                )
            caption = raw_value.get("caption")
            caption = caption.strip() if isinstance(caption, str) else ""
            slots[slot.name] = {
                "path": path,
                "width": int(round(width)),
                "height": int(round(height)),
                "caption": escape_text(caption) if caption else ""
            }
            continue

        if raw_value is None:
            value = ""
        elif isinstance(raw_value, str):
            value = raw_value
        else:
            value = str(raw_value)

        if slot.required and not value.strip():
            raise LayoutValidationError(f'Layout "{schema.id}" requires slot "{slot.name}".')

        slots[slot.name] = escape_text(value.strip()) if slot.kind == "text" else sanitize_html(value)

    return slots


def parse_layout_response(text: str) -> LayoutSelection:
    """Turn a completion response into a validated layout selection."""
    payload = parse_json_object(text)
    if payload is None:
        raise LayoutValidationError("Layout response did not contain a JSON object.")
    layout_name = payload.get("layout")
    layout_name = layout_name.strip().lower() if isinstance(layout_name, str) else ""
    schema = get_layout(layout_name)
    if schema is None:
        raise LayoutValidationError(f'Missing or unknown layout template "{layout_name or "unknown"}".')
    return LayoutSelection(layout=schema.id, slots=resolve_slots(schema, payload.get("slots")))


def _resolve_path(data: Dict[str, Any], key: str) -> Any:
    current: Any = data
    for part in key.split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        else:
            return None
    return current


def render_template(template: str, slots: Dict[str, Any]) -> str:
    """Substitute ``{{ slot }}`` / ``{{ slot.field }}`` placeholders."""
    def replace(match):
        value = _resolve_path(slots, match.group(1))
        return "" if value is None else str(value)
    return PLACEHOLDER_RE.sub(replace, template)


def markdown_table_to_html(table: str) -> str:
    """Minimal pipe-table conversion for offline layouts; HTML tables pass through."""
    if "<table" in table.lower():
        return table
    rows = []
    for line in table.splitlines():
        line = line.strip()
        if not line.startswith("|"):
            continue
        cells = [cell.strip() for cell in line.strip("|").split("|")]
        if all(re.fullmatch(r":?-{2,}:?", cell) for cell in cells if cell):
            continue
        rows.append(cells)
    if not rows:
        return f"<pre>{escape_text(table)}</pre>"
    head = "".join(f"<th>{escape_text(c)}</th>" for c in rows[0])
    body = "".join(
        "<tr>" + "".join(f"<td>{escape_text(c)}</td>" for c in row) + "</tr>" for row in rows[1:]
    )
    return f"<table><thead><tr>{head}</tr></thead><tbody>{body}</tbody></table>"


async def run_with_concurrency(
    items: Sequence[T],
    limit: int,
    worker: Callable[[T, int], Awaitable[R]]
) -> List[R]:
    """
    Process items with at most ``limit`` workers in flight.

    Workers pull the next unprocessed index until the list is exhausted;
    each result is stored at its item's original index.
    """
    results: List[Optional[R]] = [None] * len(items)
    next_index = 0

    async def run_worker():
        nonlocal next_index
        while next_index < len(items):
            current = next_index
            next_index += 1
            results[current] = await worker(items[current], current)

    tasks = [asyncio.create_task(run_worker()) for _ in range(min(max(1, limit), len(items)))]
    try:
        await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise
    return results  # type: ignore[return-value]


class LayoutService:
    def __init__(self, settings: Settings, storage: ArtifactStore, completion=None):
        self.settings = settings
        self.storage = storage
        self.completion = completion
        self.layouts_dir = settings.TEMPLATES_DIR / "layouts"

    def _system_prompt(self, config: JobConfig) -> str:
        prompt = SYSTEM_PROMPT.format(
            layouts=describe_layouts(),
            width=self.settings.SLIDE_WIDTH,
            height=self.settings.SLIDE_HEIGHT
        )
        hint = LANGUAGE_HINTS.get(config.output_language or "")
        return f"{prompt}\n\nOutput language: {hint}" if hint else prompt

    def _user_prompt(self, slide: Slide) -> str:
        payload = {
            "title": slide.title,
            "text_contents": slide.text_contents,
            "tables": slide.tables,
            "images": [
                {
                    "src": self.storage.resolve(image.path).resolve().as_uri(),
                    "width": image.width,
                    "height": image.height
                }
                for image in slide.images
            ],
            "canvas": {"width": self.settings.SLIDE_WIDTH, "height": self.settings.SLIDE_HEIGHT}
        }
        return f"Slide data (JSON):\n{json.dumps(payload, indent=2, ensure_ascii=False)}"

    def _offline_selection(self, slide: Slide) -> LayoutSelection:
        """Deterministic layout choice used in offline mode."""
        body = "<ul>" + "".join(
            f"<li>{line.strip()}</li>" for line in slide.text_contents.splitlines() if line.strip()
        ) + "</ul>"
        if slide.images:
            image = slide.images[0]
            schema = LAYOUT_SCHEMAS["image-right"]
            raw = {
                "title": slide.title,
                "body": body,
                "image": {
                    "path": self.storage.resolve(image.path).resolve().as_uri(),
                    "width": image.width,
                    "height": image.height
                }
            }
        elif slide.tables:
            schema = LAYOUT_SCHEMAS["table-focus"]
            raw = {"title": slide.title, "table": markdown_table_to_html(slide.tables[0]), "note": body}
        else:
            schema = LAYOUT_SCHEMAS["text-focus"]
            raw = {"title": slide.title, "body": body}
        return LayoutSelection(layout=schema.id, slots=resolve_slots(schema, raw))

    def _cache_path(self, job_id: str, index: int) -> Path:
        return self.storage.outputs_dir(job_id) / "llm-cache" / f"slide-{index}.json"

    async def select_layout(self, slide: Slide, index: int, job_id: str, config: JobConfig) -> LayoutSelection:
        """
        Resolve the layout and slots for one slide.

        With USE_LLM_CACHE the selection is cached by slide index only; the
        cache does not notice edits to the slide's content.
        """
        use_cache = self.settings.USE_LLM_CACHE
        cache_path = self._cache_path(job_id, index)

        if use_cache:
            cached = self.storage.read_model(cache_path, LayoutSelection)
            if cached is not None:
                if get_layout(cached.layout) is None:
                    raise LayoutValidationError(f'Missing or unknown layout template "{cached.layout}".')
                logger.info(f"Slide {index + 1}: using cached layout '{cached.layout}'")
                return cached
            logger.debug(f"Slide {index + 1}: layout cache miss")

        if self.settings.GENERATION_MODE == "offline":
            selection = self._offline_selection(slide)
        else:
            if self.completion is None:
                raise LayoutValidationError("No text-completion service configured for layout synthesis.")
            response_text = await self.completion.complete(
                system_prompt=self._system_prompt(config),
                user_prompt=self._user_prompt(slide),
                model=config.model
            )
            if not response_text or not response_text.strip():
                raise LayoutValidationError("LLM returned an empty response for slide layout.")
            selection = parse_layout_response(response_text)

        logger.info(f"Slide {index + 1}: selected layout '{selection.layout}'")
        if use_cache:
            self.storage.write_json(cache_path, selection)
        return selection

    def render_selection(self, selection: LayoutSelection) -> str:
        schema = get_layout(selection.layout)
        if schema is None:
            raise LayoutValidationError(f'Unknown layout template "{selection.layout}".')
        template_path = self.layouts_dir / schema.template_file
        if not template_path.is_file():
            raise RenderRuntimeError(f"Missing layout template file {schema.template_file}.")
        return render_template(template_path.read_text(encoding="utf-8"), selection.slots)

    async def synthesize(self, slides: SlidesJSON, job_id: str, config: JobConfig) -> List[RenderedSlide]:
        """Render every slide to an HTML fragment and write the layout manifest."""
        if not self.layouts_dir.is_dir():
            raise RenderRuntimeError("Missing slide layout templates.")

        render_dir = self.storage.outputs_dir(job_id) / "rendered-slides"
        shutil.rmtree(render_dir, ignore_errors=True)
        render_dir.mkdir(parents=True, exist_ok=True)

        async def render_one(slide: Slide, index: int) -> RenderedSlide:
            logger.info(f"Rendering slide {index + 1}/{len(slides.slides)}")
            start = time.monotonic()
            selection = await self.select_layout(slide, index, job_id, config)
            fragment = self.render_selection(selection)
            html_path = self.storage.write_text(render_dir / f"slide-{index + 1:03d}.html", fragment)
            logger.debug(f"Slide {index + 1} laid out in {time.monotonic() - start:.2f}s")
            return RenderedSlide(
                index=index,
                title=slide.title,
                html_path=self.storage.to_relative(html_path),
                layout=selection.layout
            )

        rendered = await run_with_concurrency(slides.slides, self.settings.render_concurrency, render_one)

        self.storage.write_json(render_dir / "layouts.json", LayoutManifest(slides=rendered))
        logger.info(f"Laid out {len(rendered)} slides (concurrency {self.settings.render_concurrency})")
        return rendered
