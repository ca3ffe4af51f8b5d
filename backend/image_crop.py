import base64
import io
import logging
import re
from typing import Tuple, Union

from PIL import Image, ImageOps

logger = logging.getLogger(__name__)

FACE_CROP_JPEG_QUALITY = 0.95
DATA_URL_PATTERN = re.compile(r"^data:(image/[\w.+-]+);base64,(.+)$", re.DOTALL)

ImageSource = Union[bytes, bytearray, str, Image.Image]


def decode_data_url(data_url: str) -> bytes:
    match = DATA_URL_PATTERN.match((data_url or "").strip())
    if not match:
        raise ValueError("Invalid image data URL")
    return base64.b64decode(match.group(2))


def to_data_url(payload: bytes, mime_type: str = "image/jpeg") -> str:
    return f"data:{mime_type};base64,{base64.b64encode(payload).decode('ascii')}"


def data_url_size(data_url: str) -> int:
    """Approximate decoded size in bytes of a base64 data URL."""
    parts = (data_url or "").split(",", 1)
    if len(parts) < 2 or not parts[1]:
        return 0
    return int(len(parts[1]) * 0.75)


def open_image(source: ImageSource) -> Image.Image:
    if isinstance(source, Image.Image):
        return source
    if isinstance(source, str):
        source = decode_data_url(source)
    try:
        image = Image.open(io.BytesIO(source))
        image.load()
    except (OSError, ValueError, Image.DecompressionBombError) as exc:
        raise ValueError("Failed to load image") from exc
    return ImageOps.exif_transpose(image)


def cover_crop_box(
    src_width: float, src_height: float, target_width: float, target_height: float
) -> Tuple[float, float, float, float]:
    """Return the centered source rectangle ``(sx, sy, sw, sh)`` for a cover crop.

    The source is scaled by the larger of the two target/source ratios so the
    target is completely filled; the overflowing axis is trimmed equally on
    both sides.
    """
    if min(src_width, src_height, target_width, target_height) <= 0:
        raise ValueError("Crop dimensions must be positive")

    scale = max(target_width / src_width, target_height / src_height)
    crop_width = min(src_width, target_width / scale)
    crop_height = min(src_height, target_height / scale)
    sx = (src_width - crop_width) / 2
    sy = (src_height - crop_height) / 2
    return sx, sy, crop_width, crop_height


def cover_crop(source: ImageSource, target_width: int, target_height: int) -> Image.Image:
    image = open_image(source)
    sx, sy, sw, sh = cover_crop_box(image.width, image.height, target_width, target_height)
    return image.resize(
        (int(target_width), int(target_height)),
        Image.Resampling.LANCZOS,
        box=(sx, sy, sx + sw, sy + sh),
    )


def encode_jpeg(image: Image.Image, quality: float) -> bytes:
    if image.mode != "RGB":
        image = image.convert("RGB")
    buffer = io.BytesIO()
    # Canvas-style qualities are 0..1; Pillow expects 1..95.
    pillow_quality = max(1, min(95, int(round(quality * 100))))
    image.save(buffer, "JPEG", quality=pillow_quality, optimize=True)
    return buffer.getvalue()


def encode_png(image: Image.Image) -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, "PNG")
    return buffer.getvalue()


def cover_crop_to_data_url(
    source: ImageSource,
    target_width: int,
    target_height: int,
    quality: float = FACE_CROP_JPEG_QUALITY,
) -> str:
    cropped = cover_crop(source, target_width, target_height)
    return to_data_url(encode_jpeg(cropped, quality))


def fit_within(width: int, height: int, max_width: int, max_height: int) -> Tuple[int, int]:
    if width <= max_width and height <= max_height:
        return width, height
    if width / height > max_width / max_height:
        return max_width, int(round(height * max_width / width))
    return int(round(width * max_height / height)), max_height


def compress_image(
    source: ImageSource,
    max_width: int = 800,
    max_height: int = 800,
    quality: float = 0.8,
) -> str:
    image = open_image(source)
    width, height = fit_within(image.width, image.height, max_width, max_height)
    if (width, height) != image.size:
        image = image.resize((width, height), Image.Resampling.LANCZOS)
    return to_data_url(encode_jpeg(image, quality))


def compress_to_target_size(source: ImageSource, target_size_kb: int = 200) -> str:
    """Progressively shrink quality and dimensions until under ``target_size_kb``.

    Gives up after five extra attempts and returns the last result.
    """
    image = open_image(source)
    target_bytes = target_size_kb * 1024

    quality = 0.9
    max_dimension = 1600
    result = compress_image(image, max_dimension, max_dimension, quality)
    size = data_url_size(result)

    attempts = 0
    while size > target_bytes and attempts < 5:
        attempts += 1
        if size > target_bytes * 3:
            max_dimension = int(max_dimension * 0.7)
            quality = max(0.7, quality - 0.1)
        elif size > target_bytes * 1.5:
            max_dimension = int(max_dimension * 0.85)
            quality = max(0.6, quality - 0.15)
        else:
            quality = max(0.5, quality - 0.1)

        result = compress_image(image, max_dimension, max_dimension, quality)
        size = data_url_size(result)

    logger.debug(
        "Compressed image to %d bytes after %d attempts (quality %.2f, max %dpx)",
        size,
        attempts,
        quality,
        max_dimension,
    )
    return result
