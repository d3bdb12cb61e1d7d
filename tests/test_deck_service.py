import json

import pytest

from paperdeck.errors import ConsistencyError, RenderRuntimeError
from paperdeck.models.schemas import RenderedSlide
from paperdeck.services.deck_service import DeckService

from conftest import PDF_BYTES, PNG_BYTES, FakeDeckSession


def _fragments(storage, job_id, count):
    rendered = []
    for i in range(count):
        path = storage.write_text(
            storage.outputs_dir(job_id) / "rendered-slides" / f"slide-{i + 1:03d}.html",
            f'<div class="layout-text-focus"><h1>Slide {i + 1}</h1></div>'
        )
        rendered.append(RenderedSlide(index=i, title=f"Slide {i + 1}", html_path=storage.to_relative(path),
                                      layout="text-focus"))
    return rendered


class ShortDeckSession(FakeDeckSession):
    async def slide_indices(self):
        return (await super().slide_indices())[:-1]


def test_build_deck_inlines_sections_and_assets(settings, storage, reveal_dist):
    deck = DeckService(settings, storage).build_deck("job-deck", _fragments(storage, "job-deck", 2))

    html = deck.read_text()
    assert html.count("<section data-slide-index=") == 2
    assert (reveal_dist / "reveal.js").resolve().as_uri() in html
    assert "styles/academic.css" in html
    assert (deck.parent / "styles" / "layout.css").is_file()
    assert "{{" not in html


async def test_render_writes_images_pdf_and_manifest(settings, storage):
    service = DeckService(settings, storage, session_factory=FakeDeckSession)
    rendered = _fragments(storage, "job-deck", 3)

    deck = await service.render("job-deck", rendered)

    assert deck.images == [f"outputs/job-deck/slides-images/slide-{i:03d}.png" for i in range(1, 4)]
    assert all(storage.resolve(p).read_bytes() == PNG_BYTES for p in deck.images)
    assert storage.resolve(deck.pdf).read_bytes() == PDF_BYTES
    assert deck.layouts == ["text-focus"] * 3

    session = FakeDeckSession.instances[0]
    assert (session.width, session.height) == (settings.SLIDE_WIDTH, settings.SLIDE_HEIGHT)
    assert session.captured == [(0, 0), (1, 0), (2, 0)]

    manifest = json.loads((storage.outputs_dir("job-deck") / "deck" / "rendered-slides.json").read_text())
    assert manifest["pdf"] == "outputs/job-deck/slides.pdf"


async def test_stale_screenshots_are_removed(settings, storage):
    service = DeckService(settings, storage, session_factory=FakeDeckSession)
    await service.render("job-deck", _fragments(storage, "job-deck", 3))

    await service.render("job-deck", _fragments(storage, "job-deck", 2))

    images = sorted(p.name for p in (storage.outputs_dir("job-deck") / "slides-images").iterdir())
    assert images == ["slide-001.png", "slide-002.png"]


async def test_slide_count_mismatch(settings, storage):
    service = DeckService(settings, storage, session_factory=ShortDeckSession)

    with pytest.raises(ConsistencyError, match="Deck has 1 slides but 2"):
        await service.render("job-short", _fragments(storage, "job-short", 2))

    assert not (storage.outputs_dir("job-short") / "deck" / "rendered-slides.json").exists()


async def test_missing_reveal_runtime_fails_before_browser(settings, storage, reveal_dist):
    (reveal_dist / "reveal.js").unlink()
    service = DeckService(settings, storage, session_factory=FakeDeckSession)

    with pytest.raises(RenderRuntimeError, match="reveal.js"):
        await service.render("job-noreveal", _fragments(storage, "job-noreveal", 1))

    assert FakeDeckSession.instances == []


async def test_no_slides(settings, storage):
    with pytest.raises(RenderRuntimeError):
        await DeckService(settings, storage, session_factory=FakeDeckSession).render("job-empty", [])


async def test_failed_export_leaves_no_manifest_or_pdf(settings, storage):
    class FailingPdfSession(FakeDeckSession):
        async def export_pdf(self, url):
            raise RenderRuntimeError("Headless browser failed: print aborted")

    rendered = _fragments(storage, "job-retry", 2)
    await DeckService(settings, storage, session_factory=FakeDeckSession).render("job-retry", rendered)

    with pytest.raises(RenderRuntimeError):
        await DeckService(settings, storage, session_factory=FailingPdfSession).render("job-retry", rendered)

    output_dir = storage.outputs_dir("job-retry")
    assert not (output_dir / "deck" / "rendered-slides.json").exists()
    assert not (output_dir / "slides.pdf").exists()
