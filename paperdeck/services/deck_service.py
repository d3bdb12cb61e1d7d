"""
Deck Rendering Service

Assembles the per-slide HTML fragments into one reveal.js deck, opens it in
headless Chromium (Playwright), screenshots every slide at the canvas size
and prints the deck to PDF.

Outputs under ``outputs/<job_id>/``:
    deck/slides.html            the assembled deck
    deck/styles/                copied stylesheets
    slides-images/slide-NNN.png one screenshot per slide (wiped every run)
    slides.pdf                  print-pdf export of the deck
    deck/rendered-slides.json   manifest, written last
"""

import logging
import shutil
from pathlib import Path
from typing import Callable, List

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import async_playwright

from paperdeck.config import Settings
from paperdeck.errors import ConsistencyError, RenderRuntimeError
from paperdeck.models.schemas import RenderedDeck, RenderedSlide
from paperdeck.services.layout_service import render_template
from paperdeck.services.storage import ArtifactStore

logger = logging.getLogger(__name__)

SLIDE_SETTLE_MS = 100
READY_CHECK = "() => window.Reveal && typeof Reveal.isReady === 'function' && Reveal.isReady()"


class PlaywrightDeckSession:
    """One headless Chromium page driving a reveal.js deck."""

    def __init__(self, width: int, height: int):
        self.width = width
        self.height = height
        self._playwright = None
        self._browser = None
        self.page = None

    async def __aenter__(self):
        self._playwright = await async_playwright().start()
        try:
            self._browser = await self._playwright.chromium.launch(args=["--no-sandbox"])
            self.page = await self._browser.new_page(
                viewport={"width": self.width, "height": self.height}
            )
        except BaseException:
            await self._playwright.stop()
            raise
        return self

    async def __aexit__(self, exc_type, exc, tb):
        try:
            if self._browser is not None:
                await self._browser.close()
        finally:
            await self._playwright.stop()

    async def open_deck(self, url: str) -> None:
        await self.page.goto(url, wait_until="networkidle")
        await self.page.wait_for_function(READY_CHECK)
        await self.page.evaluate(
            """() => {
                document.documentElement.classList.add('export-images');
                Reveal.configure({ transition: 'none', backgroundTransition: 'none' });
            }"""
        )

    async def slide_indices(self) -> List[dict]:
        return await self.page.evaluate("() => Reveal.getSlides().map(s => Reveal.getIndices(s))")

    async def capture_slide(self, h: int, v: int) -> bytes:
        await self.page.evaluate("([h, v]) => Reveal.slide(h, v)", [h, v])
        await self.page.wait_for_timeout(SLIDE_SETTLE_MS)
        return await self.page.screenshot(
            type="png",
            clip={"x": 0, "y": 0, "width": self.width, "height": self.height}
        )

    async def export_pdf(self, url: str) -> bytes:
        await self.page.goto(f"{url}?print-pdf", wait_until="networkidle")
        await self.page.emulate_media(media="screen")
        await self.page.wait_for_function(READY_CHECK)
        return await self.page.pdf(
            print_background=True,
            width=f"{self.width}px",
            height=f"{self.height}px"
        )


class DeckService:
    def __init__(
        self,
        settings: Settings,
        storage: ArtifactStore,
        session_factory: Callable = PlaywrightDeckSession
    ):
        self.settings = settings
        self.storage = storage
        self.session_factory = session_factory

    def _deck_template(self) -> Path:
        template = self.settings.TEMPLATES_DIR / "deck.html"
        if not template.is_file():
            raise RenderRuntimeError("Missing reveal.js deck template.")
        return template

    def _style_files(self) -> List[Path]:
        styles_dir = self.settings.TEMPLATES_DIR / "styles"
        style = styles_dir / f"{self.settings.SLIDE_STYLE}.css"
        if not style.is_file():
            raise RenderRuntimeError(f"Unknown slide style '{self.settings.SLIDE_STYLE}'.")
        return [styles_dir / "layout.css", style]

    def _reveal_assets(self) -> dict:
        dist = Path(self.settings.REVEAL_DIST_DIR)
        assets = {
            "revealCss": dist / "reveal.css",
            "revealThemeCss": dist / "theme" / "white.css",
            "revealJs": dist / "reveal.js",
        }
        missing = [path.name for path in assets.values() if not path.is_file()]
        if missing:
            raise RenderRuntimeError(
                f"reveal.js runtime not found in {dist} (missing {', '.join(missing)})."
            )
        return {key: path.resolve().as_uri() for key, path in assets.items()}

    def build_deck(self, job_id: str, rendered: List[RenderedSlide]) -> Path:
        """Write deck/slides.html from the rendered slide fragments."""
        template = self._deck_template().read_text(encoding="utf-8")
        reveal = self._reveal_assets()
        style_files = self._style_files()

        deck_dir = self.storage.outputs_dir(job_id) / "deck"
        styles_dir = deck_dir / "styles"
        styles_dir.mkdir(parents=True, exist_ok=True)
        for style_file in style_files:
            shutil.copyfile(style_file, styles_dir / style_file.name)

        sections = []
        for slide in rendered:
            fragment = self.storage.resolve(slide.html_path).read_text(encoding="utf-8")
            sections.append(
                f'<section data-slide-index="{slide.index}" data-layout="{slide.layout}">\n{fragment}\n</section>'
            )

        html = render_template(template, {
            **reveal,
            "layoutCss": f"styles/{style_files[0].name}",
            "styleCss": f"styles/{style_files[1].name}",
            "width": self.settings.SLIDE_WIDTH,
            "height": self.settings.SLIDE_HEIGHT,
            "sections": "\n".join(sections),
        })
        return self.storage.write_text(deck_dir / "slides.html", html)

    async def render(self, job_id: str, rendered: List[RenderedSlide]) -> RenderedDeck:
        """Capture one PNG per slide plus a PDF of the whole deck."""
        if not rendered:
            raise RenderRuntimeError("No rendered slides to capture.")

        deck_path = self.build_deck(job_id, rendered)
        deck_url = deck_path.resolve().as_uri()
        output_dir = self.storage.outputs_dir(job_id)
        manifest_path = deck_path.parent / "rendered-slides.json"
        pdf_path = output_dir / "slides.pdf"
        # Manifest and PDF exist only after a capture run finishes
        manifest_path.unlink(missing_ok=True)
        pdf_path.unlink(missing_ok=True)

        images_dir = output_dir / "slides-images"
        shutil.rmtree(images_dir, ignore_errors=True)
        images_dir.mkdir(parents=True, exist_ok=True)

        image_paths = []
        try:
            async with self.session_factory(self.settings.SLIDE_WIDTH, self.settings.SLIDE_HEIGHT) as session:
                await session.open_deck(deck_url)
                indices = await session.slide_indices()
                if len(indices) != len(rendered):
                    raise ConsistencyError(
                        f"Deck has {len(indices)} slides but {len(rendered)} were rendered."
                    )

                for position, index in enumerate(indices, 1):
                    data = await session.capture_slide(index.get("h", 0), index.get("v", 0))
                    if not data:
                        raise RenderRuntimeError(f"Empty screenshot for slide {position}.")
                    path = self.storage.write_bytes(images_dir / f"slide-{position:03d}.png", data)
                    image_paths.append(self.storage.to_relative(path))
                    logger.info(f"Captured slide {position}/{len(indices)}")

                pdf_bytes = await session.export_pdf(deck_url)
        except PlaywrightError as e:
            raise RenderRuntimeError(f"Headless browser failed: {e.message}")

        if not pdf_bytes:
            raise RenderRuntimeError("PDF export produced no data.")
        self.storage.write_bytes(pdf_path, pdf_bytes)

        deck = RenderedDeck(
            slides=rendered,
            deck=self.storage.to_relative(deck_path),
            style=self.settings.SLIDE_STYLE,
            layouts=[slide.layout for slide in rendered],
            images=image_paths,
            pdf=self.storage.to_relative(pdf_path)
        )
        self.storage.write_json(manifest_path, deck)
        logger.info(f"Rendered deck with {len(image_paths)} slide images")
        return deck
