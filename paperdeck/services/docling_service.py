"""
Document Conversion Service

Turns the uploaded PDF into markdown plus extracted figure images.

Two backends:
- docling-serve (async API): submit the PDF, poll the task until it is
  terminal, download the zip and unpack markdown + image artifacts.
- local PyMuPDF extraction, used in offline mode or when no DOCLING_URL is
  configured.

Outputs under ``outputs/<job_id>/``:
    doc/                extracted images
    images.json         [{path, width, height}] with path as referenced in the markdown
    image-mapping.json  {markdown reference -> stored relative path}
    doc.md              the markdown (written last)
"""

import asyncio
import io
import logging
import shutil
import zipfile
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Dict, List, Optional

import fitz  # PyMuPDF
import httpx

from paperdeck.config import Settings
from paperdeck.errors import UpstreamServiceError
from paperdeck.services.storage import ArtifactStore

logger = logging.getLogger(__name__)

IMAGE_SUFFIXES = (".png", ".jpg", ".jpeg", ".webp")
TERMINAL_TASK_STATUSES = {"success", "failure", "revoked"}


@dataclass
class ParsedDocument:
    """Result of converting one PDF."""
    markdown: str
    doc_path: str
    images: List[dict] = field(default_factory=list)
    image_mapping: Dict[str, str] = field(default_factory=dict)


def measure_image(path: Path) -> Optional[tuple]:
    """Return (width, height) of an image file, or None if it cannot be read."""
    try:
        pix = fitz.Pixmap(str(path))
        return pix.width, pix.height
    except Exception as e:
        logger.warning(f"Could not read image {path.name}: {e}")
        return None


class DoclingService:
    def __init__(self, settings: Settings, storage: ArtifactStore):
        self.settings = settings
        self.storage = storage
        self.base_url = settings.DOCLING_URL.rstrip("/")

    @property
    def use_remote(self) -> bool:
        return bool(self.base_url) and self.settings.GENERATION_MODE != "offline"

    def _headers(self) -> dict:
        if self.settings.DOCLING_API_KEY:
            return {"X-Api-Key": self.settings.DOCLING_API_KEY}
        return {}

    async def convert(self, pdf_path: Path, job_id: str) -> ParsedDocument:
        """Convert a PDF and persist markdown + images for a job."""
        output_dir = self.storage.outputs_dir(job_id)
        images_dir = output_dir / "doc"
        shutil.rmtree(images_dir, ignore_errors=True)
        images_dir.mkdir(parents=True, exist_ok=True)

        if self.use_remote:
            logger.info(f"Converting {pdf_path.name} with docling-serve")
            archive = await self._convert_remote(pdf_path)
            markdown, extracted = self._unpack_archive(archive, images_dir)
        else:
            logger.info(f"Converting {pdf_path.name} locally with PyMuPDF")
            markdown, extracted = self._convert_local(pdf_path, images_dir)

        images = []
        mapping = {}
        for reference, stored_path in extracted.items():
            size = measure_image(stored_path)
            if size is None:
                continue
            relative = self.storage.to_relative(stored_path)
            mapping[reference] = relative
            images.append({"path": reference, "width": size[0], "height": size[1]})

        self.storage.write_json(output_dir / "images.json", images)
        self.storage.write_json(output_dir / "image-mapping.json", mapping)
        doc_path = self.storage.write_text(output_dir / "doc.md", markdown)

        logger.info(f"Converted document: {len(markdown)} chars, {len(images)} images")
        return ParsedDocument(
            markdown=markdown,
            doc_path=self.storage.to_relative(doc_path),
            images=images,
            image_mapping=mapping
        )

    async def _convert_remote(self, pdf_path: Path) -> bytes:
        pdf_bytes = pdf_path.read_bytes()
        submit_url = f"{self.base_url}/v1/convert/file/async"

        try:
            async with httpx.AsyncClient(timeout=self.settings.DOCLING_REQUEST_TIMEOUT_SECONDS) as client:
                response = await client.post(
                    submit_url,
                    headers=self._headers(),
                    files={"files": (pdf_path.name, pdf_bytes, "application/pdf")},
                    data={
                        "to_formats": "md",
                        "image_export_mode": "referenced",
                        "target_type": "zip"
                    }
                )
                if response.status_code != 200:
                    raise UpstreamServiceError("Docling conversion request failed:", endpoint=submit_url,
                                               status_code=response.status_code)
                try:
                    task_id = response.json()["task_id"]
                except (ValueError, KeyError, TypeError):
                    raise UpstreamServiceError("Docling response missing task_id", endpoint=submit_url)

                logger.info(f"Docling task {task_id} submitted")
                await self._wait_for_task(client, task_id)

                result_url = f"{self.base_url}/v1/result/{task_id}"
                result = await client.get(result_url, headers=self._headers())
                if result.status_code != 200:
                    raise UpstreamServiceError("Docling result download failed:", endpoint=result_url,
                                               status_code=result.status_code)
                return result.content
        except httpx.TimeoutException:
            raise UpstreamServiceError("Docling request timed out", endpoint=submit_url)
        except httpx.HTTPError as e:
            raise UpstreamServiceError(f"Docling request could not connect ({type(e).__name__})", endpoint=submit_url)

    async def _wait_for_task(self, client: httpx.AsyncClient, task_id: str) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.DOCLING_POLL_TIMEOUT_SECONDS
        poll_url = f"{self.base_url}/v1/status/poll/{task_id}"

        while True:
            response = await client.get(poll_url, headers=self._headers())
            if response.status_code != 200:
                raise UpstreamServiceError("Docling status poll failed:", endpoint=poll_url,
                                           status_code=response.status_code)
            try:
                status = str(response.json().get("task_status", "")).lower()
            except (ValueError, AttributeError):
                raise UpstreamServiceError("Docling status response was not valid JSON", endpoint=poll_url)

            if status in TERMINAL_TASK_STATUSES:
                if status != "success":
                    raise UpstreamServiceError(f"Docling task ended with status '{status}'", endpoint=poll_url)
                return

            if loop.time() >= deadline:
                raise UpstreamServiceError(
                    f"Docling task did not finish within {self.settings.DOCLING_POLL_TIMEOUT_SECONDS:.0f}s",
                    endpoint=poll_url
                )
            await asyncio.sleep(self.settings.DOCLING_POLL_INTERVAL_SECONDS)

    def _unpack_archive(self, archive: bytes, images_dir: Path) -> tuple:
        """Extract markdown and images from a docling result zip."""
        try:
            bundle = zipfile.ZipFile(io.BytesIO(archive))
        except zipfile.BadZipFile:
            raise UpstreamServiceError("Docling result was not a zip archive")

        with bundle:
            names = bundle.namelist()
            markdown_names = [n for n in names if n.lower().endswith(".md")]
            if not markdown_names:
                raise UpstreamServiceError("Docling result did not contain markdown")
            markdown_name = markdown_names[0]
            markdown = bundle.read(markdown_name).decode("utf-8", errors="replace")
            markdown_dir = PurePosixPath(markdown_name).parent

            extracted = {}
            for name in names:
                if not name.lower().endswith(IMAGE_SUFFIXES):
                    continue
                member = PurePosixPath(name)
                try:
                    reference = str(member.relative_to(markdown_dir))
                except ValueError:
                    reference = name
                target = images_dir / member.name
                target.write_bytes(bundle.read(name))
                extracted[reference] = target

        return markdown, extracted

    def _convert_local(self, pdf_path: Path, images_dir: Path) -> tuple:
        """Plain text extraction, one section per page, with embedded images."""
        parts = []
        extracted = {}
        doc = fitz.open(str(pdf_path))
        try:
            title = ""
            for page_index, page in enumerate(doc):
                page_num = page_index + 1
                text = page.get_text("text").strip()
                if not title and text:
                    title = text.splitlines()[0].strip()
                section = [f"## Page {page_num}", "", text]

                for image_num, image in enumerate(page.get_images(full=True), 1):
                    xref = image[0]
                    try:
                        pix = fitz.Pixmap(doc, xref)
                        if pix.n - pix.alpha >= 4:
                            pix = fitz.Pixmap(fitz.csRGB, pix)
                        name = f"page-{page_num:03d}-{image_num:02d}.png"
                        target = images_dir / name
                        pix.save(str(target))
                    except Exception as e:
                        logger.warning(f"Skipping image {xref} on page {page_num}: {e}")
                        continue
                    reference = f"doc/{name}"
                    extracted[reference] = target
                    section.append(f"\n![Figure {page_num}.{image_num}]({reference})")

                parts.append("\n".join(section))
                logger.info(f"Extracted page {page_num}/{len(doc)}")
        finally:
            doc.close()

        header = f"# {title or pdf_path.stem}"
        return "\n\n".join([header] + parts), extracted
