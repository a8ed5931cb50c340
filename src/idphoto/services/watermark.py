"""Preview watermarking with Pillow."""

import asyncio
import io

import structlog
from PIL import Image, ImageDraw, ImageFont, ImageOps

logger = structlog.get_logger(__name__)

PREVIEW_TEXT = "PREVIEW"
WATERMARK_ANGLE = 30
TEXT_FILL = (128, 128, 128, 102)
STROKE_FILL = (80, 80, 80, 64)


def resolve_output_format(mime_type: str | None, detected_format: str | None) -> tuple[str, str]:
    """Pick (Pillow format, MIME type) for the output, PNG unless JPEG was given."""
    normalized = (mime_type or "").lower()
    if "png" in normalized:
        return "PNG", "image/png"
    if "jpeg" in normalized or "jpg" in normalized:
        return "JPEG", "image/jpeg"
    if detected_format == "JPEG":
        return "JPEG", "image/jpeg"
    return "PNG", "image/png"


def _draw_watermark(image_bytes: bytes, text: str, mime_type: str | None) -> tuple[bytes, str]:
    with Image.open(io.BytesIO(image_bytes)) as source:
        output_format, output_mime = resolve_output_format(mime_type, source.format)
        base = ImageOps.exif_transpose(source).convert("RGBA")

    width, height = base.size
    font_size = int(max(min(width, height) * 0.1, 36))
    stroke_width = int(max(font_size * 0.08, 3))
    font = ImageFont.load_default(size=font_size)

    # Tile the text on an oversized layer so the rotated pattern still covers every corner
    diagonal = int((width**2 + height**2) ** 0.5)
    layer = Image.new("RGBA", (diagonal, diagonal), (0, 0, 0, 0))
    draw = ImageDraw.Draw(layer)
    step_x = max(int(width * 0.5), 1)
    step_y = max(int(height * 0.35), 1)
    for y in range(0, diagonal, step_y):
        for x in range(0, diagonal, step_x):
            draw.text(
                (x, y),
                text,
                font=font,
                fill=TEXT_FILL,
                stroke_width=stroke_width,
                stroke_fill=STROKE_FILL,
            )

    layer = layer.rotate(WATERMARK_ANGLE, resample=Image.Resampling.BICUBIC)
    left = (diagonal - width) // 2
    top = (diagonal - height) // 2
    layer = layer.crop((left, top, left + width, top + height))

    watermarked = Image.alpha_composite(base, layer)

    output = io.BytesIO()
    if output_format == "JPEG":
        watermarked.convert("RGB").save(output, format="JPEG", quality=95)
    else:
        watermarked.save(output, format="PNG")
    return output.getvalue(), output_mime


class WatermarkService:
    """Applies the diagonal preview watermark shown before purchase."""

    def __init__(self, image_semaphore: asyncio.Semaphore):
        self.image_semaphore = image_semaphore

    async def apply_watermark(
        self, image_bytes: bytes, text: str, mime_type: str | None = None
    ) -> tuple[bytes, str]:
        """Overlay repeated diagonal ``text``, keeping the image dimensions.

        Returns:
            (watermarked bytes, output MIME type)
        """
        async with self.image_semaphore:
            result, output_mime = await asyncio.to_thread(
                _draw_watermark, image_bytes, text, mime_type
            )

        logger.debug(
            "watermark.applied",
            text=text,
            mime_type=output_mime,
            size_bytes=len(result),
        )
        return result, output_mime

    async def apply_preview_watermark(
        self, image_bytes: bytes, mime_type: str | None = None
    ) -> tuple[bytes, str]:
        return await self.apply_watermark(image_bytes, PREVIEW_TEXT, mime_type)
