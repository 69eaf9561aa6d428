"""Image operation pipeline.

Turns raw upload bytes plus an ordered list of operations into re-encoded
output bytes:

1. Decode, then auto-rotate from the EXIF orientation tag. Re-encoding at the
   end writes no EXIF, ICC comment or GPS fields, so nothing from the
   original's metadata survives.
2. Crop and resize are applied immediately, in the order given.
   Convert and quality are pipeline-wide settings: the last one wins.
3. Encode with the chosen format (default jpeg) and quality (default 80).

Quality is handed to each encoder as-is. It means something different for
JPEG and WEBP and nothing at all for PNG (which is lossless and always
encoded at maximum compression), so treat it as "compress harder", not as a
perceptual scale shared across formats.

Decode and encode are CPU-bound. OperationPipeline.run() moves them onto a
bounded thread pool and applies a timeout so one pathological image cannot
hold a request forever.
"""
import asyncio
import io
import logging
import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Sequence

from PIL import Image, ImageColor, ImageOps

from image_service.schemas.operation import (
    ConvertOperation,
    CropOperation,
    Operation,
    QualityOperation,
    CropParams,
    ResizeOperation,
    ResizeParams,
)
from image_service.services.errors import ProcessingError, safe_error_message

logger = logging.getLogger(__name__)

DEFAULT_FORMAT = "jpeg"
DEFAULT_QUALITY = 80

_RESAMPLE = Image.Resampling.LANCZOS


@dataclass
class PipelineResult:
    data: bytes
    format: str
    quality: int
    width: int
    height: int

    @property
    def byte_size(self) -> int:
        return len(self.data)


# ── Geometry ─────────────────────────────────────────────────────

def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _scaled(width: int, height: int, ratio: float) -> tuple[int, int]:
    return max(1, _round_half_up(width * ratio)), max(1, _round_half_up(height * ratio))


def _letterbox_color(mode: str):
    return ImageColor.getcolor("black", mode)


def resize_image(img: Image.Image, params: ResizeParams) -> Image.Image:
    """Resize honouring ``params.fit``. Enlargement is allowed."""
    src_w, src_h = img.size
    target_w, target_h = params.width, params.height

    if target_w is None and target_h is None:
        return img

    # One dimension given: keep aspect ratio, fit mode is irrelevant
    if target_w is None:
        return img.resize(_scaled(src_w, src_h, target_h / src_h), _RESAMPLE)
    if target_h is None:
        return img.resize(_scaled(src_w, src_h, target_w / src_w), _RESAMPLE)

    fit = params.fit
    if fit == "fill":
        return img.resize((target_w, target_h), _RESAMPLE)
    if fit == "cover":
        return ImageOps.fit(img, (target_w, target_h), method=_RESAMPLE)
    if fit == "contain":
        return ImageOps.pad(
            img, (target_w, target_h), method=_RESAMPLE, color=_letterbox_color(img.mode)
        )
    if fit == "inside":
        ratio = min(target_w / src_w, target_h / src_h)
        return img.resize(_scaled(src_w, src_h, ratio), _RESAMPLE)
    if fit == "outside":
        ratio = max(target_w / src_w, target_h / src_h)
        return img.resize(_scaled(src_w, src_h, ratio), _RESAMPLE)
    raise ProcessingError(f"Unsupported resize fit: {fit}")


def crop_image(img: Image.Image, params: CropParams) -> Image.Image:
    """Extract a rectangle. Rectangles reaching past the image are rejected, not clamped."""
    left = _round_half_up(params.x)
    top = _round_half_up(params.y)
    width = _round_half_up(params.width)
    height = _round_half_up(params.height)

    if width <= 0 or height <= 0:
        raise ProcessingError(f"Crop area must be at least 1x1 pixel, got {width}x{height}")
    if left < 0 or top < 0 or left + width > img.width or top + height > img.height:
        raise ProcessingError(
            f"Crop area ({left},{top} {width}x{height}) is outside the "
            f"{img.width}x{img.height} image"
        )
    return img.crop((left, top, left + width, top + height))


# ── Codec ────────────────────────────────────────────────────────

def _decode(raw: bytes) -> Image.Image:
    img = Image.open(io.BytesIO(raw))
    img.load()
    img = ImageOps.exif_transpose(img)
    # Palette and exotic modes are normalised up front so every transform
    # and encoder sees RGB(A) or greyscale
    if img.mode not in ("RGB", "RGBA", "L", "LA"):
        has_alpha = "A" in img.getbands() or "transparency" in img.info
        img = img.convert("RGBA" if has_alpha else "RGB")
    # Drop EXIF, XMP, ICC and comments so no encoder can carry them over
    img = img.copy()
    img.info = {}
    return img


def _flatten(img: Image.Image) -> Image.Image:
    """Composite onto white for encoders that have no alpha channel."""
    if img.mode in ("RGB", "L"):
        return img
    rgba = img.convert("RGBA")
    background = Image.new("RGB", rgba.size, (255, 255, 255))
    background.paste(rgba, mask=rgba.getchannel("A"))
    return background


def _encode(img: Image.Image, fmt: str, quality: int) -> bytes:
    out = io.BytesIO()
    if fmt == "jpeg":
        _flatten(img).save(out, format="JPEG", quality=quality, optimize=True, progressive=True)
    elif fmt == "png":
        img.save(out, format="PNG", optimize=True, compress_level=9)
    elif fmt == "webp":
        if img.mode in ("L", "LA"):
            img = img.convert("RGBA" if img.mode == "LA" else "RGB")
        img.save(out, format="WEBP", quality=quality, method=6)
    else:
        raise ProcessingError(f"Unsupported output format: {fmt}")
    return out.getvalue()


# ── Pipeline ─────────────────────────────────────────────────────

def apply_operations(raw: bytes, operations: Sequence[Operation]) -> PipelineResult:
    """Decode ``raw``, apply ``operations`` and re-encode. Pure and synchronous."""
    try:
        img = _decode(raw)
    except (OSError, ValueError, SyntaxError, Image.DecompressionBombError) as e:
        raise ProcessingError(f"Could not decode image: {safe_error_message(e)}") from e

    output_format = DEFAULT_FORMAT
    output_quality = DEFAULT_QUALITY

    for op in operations:
        try:
            if isinstance(op, CropOperation):
                img = crop_image(img, op.params)
            elif isinstance(op, ResizeOperation):
                img = resize_image(img, op.params)
            elif isinstance(op, ConvertOperation):
                output_format = op.params.format
            elif isinstance(op, QualityOperation):
                output_quality = op.params.quality
            else:
                logger.warning(f"Unknown operation type: {getattr(op, 'type', type(op).__name__)}")
        except ProcessingError:
            raise
        except (OSError, ValueError, MemoryError) as e:
            raise ProcessingError(
                f"Operation {op.type} failed: {safe_error_message(e)}"
            ) from e

    try:
        data = _encode(img, output_format, output_quality)
    except ProcessingError:
        raise
    except (OSError, ValueError, KeyError) as e:
        raise ProcessingError(
            f"Could not encode image as {output_format}: {safe_error_message(e)}"
        ) from e

    return PipelineResult(
        data=data,
        format=output_format,
        quality=output_quality,
        width=img.width,
        height=img.height,
    )


class OperationPipeline:
    """Runs apply_operations() on a bounded worker pool with a timeout."""

    def __init__(self, max_workers: int = 2, timeout: float = 30.0):
        self.timeout = timeout
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="image-pipeline"
        )

    async def run(self, raw: bytes, operations: Sequence[Operation]) -> PipelineResult:
        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(self._executor, apply_operations, raw, list(operations))
        try:
            result = await asyncio.wait_for(future, timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise ProcessingError(f"Image processing timed out after {self.timeout}s") from e

        logger.info(
            f"Pipeline produced {result.format} {result.width}x{result.height} "
            f"q={result.quality} ({result.byte_size} bytes)"
        )
        return result

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
