# backend/app/services/images.py
"""
Watermarked preview pipeline (Pillow).

Originals stay private; families only ever see a small WebP with a
"MUESTRA" watermark. Previews are tuned for the Supabase free tier: longest
side <= PREVIEW_MAX_DIMENSION and ~PREVIEW_TARGET_KB per file.
"""

from __future__ import annotations

import hashlib
import io
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from PIL import Image, ImageDraw, ImageFont, ImageOps, UnidentifiedImageError

from backend.app.config import settings

log = logging.getLogger(__name__)

QUALITY_STEP = 10
BRAND_MARK = "LookEscolar.com"


@dataclass
class PreviewResult:
    data: bytes
    width: int
    height: int
    quality: int
    size_kb: float
    mime_type: str = "image/webp"


@dataclass
class BatchItem:
    data: bytes
    original_name: str
    content_type: str = "image/jpeg"


@dataclass
class BatchResult:
    original_name: str
    checksum: str
    original: bytes
    preview: PreviewResult
    index: int
    content_type: str = "image/jpeg"


@dataclass
class BatchOutcome:
    results: List[BatchResult] = field(default_factory=list)
    errors: List[Dict[str, str]] = field(default_factory=list)
    duplicates: List[Dict[str, str]] = field(default_factory=list)


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def validate_image(data: bytes) -> bool:
    """True when Pillow can identify and verify the bytes as an image."""
    if not data:
        return False
    try:
        with Image.open(io.BytesIO(data)) as img:
            img.verify()
            w, h = img.size
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError):
        return False
    return 0 < w <= settings.MAX_IMAGE_DIMENSION and 0 < h <= settings.MAX_IMAGE_DIMENSION


def image_dimensions(data: bytes) -> Tuple[int, int]:
    with Image.open(io.BytesIO(data)) as img:
        img = ImageOps.exif_transpose(img)
        return img.size


def _font(size: int) -> ImageFont.ImageFont:
    return ImageFont.load_default(size=size)


def _draw_watermark(img: Image.Image, text: str) -> Image.Image:
    width, height = img.size
    font_size = max(12, min(width, height) // 25)

    # diagonal mark rendered on its own layer, rotated and composited centred
    diag_font = _font(int(font_size * 1.5))
    diag_text = f"MUESTRA - {text}"
    measure = ImageDraw.Draw(Image.new("RGBA", (1, 1)))
    left, top, right, bottom = measure.textbbox((0, 0), diag_text, font=diag_font)
    tw, th = right - left + 8, bottom - top + 8
    layer = Image.new("RGBA", (tw, th), (255, 255, 255, 0))
    ImageDraw.Draw(layer).text(
        (4 - left, 4 - top),
        diag_text,
        font=diag_font,
        fill=(255, 255, 255, 115),
        stroke_width=1,
        stroke_fill=(0, 0, 0, 76),
    )
    layer = layer.rotate(30, expand=True, resample=Image.Resampling.BICUBIC)

    overlay = Image.new("RGBA", img.size, (255, 255, 255, 0))
    overlay.paste(layer, ((width - layer.width) // 2, (height - layer.height) // 2), layer)

    draw = ImageDraw.Draw(overlay)
    corner_font = _font(font_size)
    fill = (255, 255, 255, 89)
    stroke = (0, 0, 0, 51)

    left, top, right, bottom = draw.textbbox((0, 0), text, font=corner_font)
    draw.text(
        (width - (right - left) - 15, height - (bottom - top) - 15),
        text,
        font=corner_font,
        fill=fill,
        stroke_width=1,
        stroke_fill=stroke,
    )
    draw.text((15, 10), BRAND_MARK, font=corner_font, fill=fill, stroke_width=1, stroke_fill=stroke)

    return Image.alpha_composite(img.convert("RGBA"), overlay).convert("RGB")


def _encode_webp(img: Image.Image, quality: int) -> bytes:
    buf = io.BytesIO()
    img.save(buf, format="WEBP", quality=quality, method=4)
    return buf.getvalue()


def create_preview(
    data: bytes,
    watermark_text: Optional[str] = None,
    *,
    max_dimension: Optional[int] = None,
    quality: Optional[int] = None,
    target_kb: Optional[int] = None,
) -> PreviewResult:
    """
    Orientation-corrected, shrunk, watermarked WebP.

    Quality starts at PREVIEW_QUALITY and drops by 10 (floor PREVIEW_MIN_QUALITY)
    until the file fits PREVIEW_TARGET_KB; the last attempt is kept even when
    it is still over target.
    """
    text = watermark_text or settings.WATERMARK_TEXT
    max_dimension = max_dimension or settings.PREVIEW_MAX_DIMENSION
    quality = quality or settings.PREVIEW_QUALITY
    target_bytes = (target_kb or settings.PREVIEW_TARGET_KB) * 1024
    floor = settings.PREVIEW_MIN_QUALITY

    try:
        with Image.open(io.BytesIO(data)) as src:
            img = ImageOps.exif_transpose(src)
            img = img.convert("RGB")
    except (UnidentifiedImageError, OSError) as e:
        raise ValueError(f"invalid image: {e}") from e

    # thumbnail() never enlarges
    img.thumbnail((max_dimension, max_dimension), Image.Resampling.LANCZOS)
    img = _draw_watermark(img, text)

    q = quality
    out = _encode_webp(img, q)
    while len(out) > target_bytes and q - QUALITY_STEP >= floor:
        q -= QUALITY_STEP
        out = _encode_webp(img, q)

    return PreviewResult(
        data=out,
        width=img.width,
        height=img.height,
        quality=q,
        size_kb=round(len(out) / 1024, 1),
    )


def process_batch(
    items: Sequence[BatchItem],
    watermark_text: str,
    concurrency: Optional[int] = None,
) -> BatchOutcome:
    """
    Watermark a batch in a bounded thread pool.

    Duplicates (same sha256 within the batch) are reported against the first
    occurrence and not processed. Results keep input order.
    """
    concurrency = max(1, concurrency or settings.UPLOAD_CONCURRENCY)
    outcome = BatchOutcome()

    seen: Dict[str, str] = {}
    work: List[Tuple[int, BatchItem, str]] = []
    for idx, item in enumerate(items):
        digest = sha256_hex(item.data)
        if digest in seen:
            outcome.duplicates.append(
                {"original_name": item.original_name, "duplicate_of": seen[digest], "hash": digest}
            )
            continue
        seen[digest] = item.original_name
        work.append((idx, item, digest))

    def _one(entry: Tuple[int, BatchItem, str]):
        idx, item, digest = entry
        try:
            preview = create_preview(item.data, watermark_text)
            return BatchResult(item.original_name, digest, item.data, preview, idx, item.content_type), None
        except Exception as e:
            log.warning(f"[images] preview failed for {item.original_name}: {e}")
            return None, {"original_name": item.original_name, "error": str(e)}

    with ThreadPoolExecutor(max_workers=concurrency) as pool:
        for result, error in pool.map(_one, work):
            if result is not None:
                outcome.results.append(result)
            else:
                outcome.errors.append(error)

    log.info(
        f"[images] batch done: {len(outcome.results)} ok, {len(outcome.errors)} failed, "
        f"{len(outcome.duplicates)} duplicates (concurrency={concurrency})"
    )
    return outcome
