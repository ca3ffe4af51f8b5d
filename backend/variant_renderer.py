import logging
from typing import Dict, List, Optional, Tuple

import requests
from PIL import Image, ImageDraw

from .grid_variants import GridVariant
from .image_crop import cover_crop, encode_png, open_image, to_data_url

logger = logging.getLogger(__name__)

# 8.5" x 11" at 300 DPI.
CANVAS_WIDTH = 2550
CANVAS_HEIGHT = 3300
CANVAS_MARGIN = 75
DEFAULT_GAP_PX = 4
BACKGROUND_COLOR = (255, 255, 255)
PLACEHOLDER_COLOR = (229, 231, 235)
PLACEHOLDER_MARK_COLOR = (156, 163, 175)
PHOTO_FETCH_TIMEOUT_SECONDS = 30
RENDERER_USER_AGENT = "SignatureDay-Renderer/1.0"


def load_photo(
    photo: Optional[str],
    session: Optional[requests.Session] = None,
    timeout: float = PHOTO_FETCH_TIMEOUT_SECONDS,
) -> Optional[Image.Image]:
    source = str(photo or "").strip()
    if not source:
        return None

    try:
        if source.startswith("data:"):
            return open_image(source)
        if source.startswith(("http://", "https://")):
            http = session or requests
            response = http.get(
                source, timeout=timeout, headers={"User-Agent": RENDERER_USER_AGENT}
            )
            response.raise_for_status()
            return open_image(response.content)
    except requests.RequestException as exc:
        logger.warning("Photo fetch failed for %s: %s", source[:50], exc)
        return None
    except ValueError as exc:
        logger.warning("Photo could not be decoded (%s): %s", source[:50], exc)
        return None

    logger.warning("Unsupported photo source: %s", source[:50])
    return None


def compute_cell_boxes(
    cols: int,
    rows: int,
    canvas_width: int = CANVAS_WIDTH,
    canvas_height: int = CANVAS_HEIGHT,
    gap: int = DEFAULT_GAP_PX,
    margin: int = CANVAS_MARGIN,
) -> List[Tuple[int, int, int, int]]:
    """Row-major ``(x, y, width, height)`` boxes for square cells centered on the canvas."""
    available_width = canvas_width - 2 * margin - gap * (cols - 1)
    available_height = canvas_height - 2 * margin - gap * (rows - 1)
    cell_size = max(1, min(available_width // cols, available_height // rows))

    grid_width = cell_size * cols + gap * (cols - 1)
    grid_height = cell_size * rows + gap * (rows - 1)
    origin_x = (canvas_width - grid_width) // 2
    origin_y = (canvas_height - grid_height) // 2

    boxes = []
    for row in range(rows):
        for col in range(cols):
            boxes.append(
                (
                    origin_x + col * (cell_size + gap),
                    origin_y + row * (cell_size + gap),
                    cell_size,
                    cell_size,
                )
            )
    return boxes


def draw_placeholder(canvas: Image.Image, box: Tuple[int, int, int, int]) -> None:
    x, y, width, height = box
    draw = ImageDraw.Draw(canvas)
    draw.rectangle((x, y, x + width - 1, y + height - 1), fill=PLACEHOLDER_COLOR)
    inset = max(1, min(width, height) // 3)
    draw.ellipse(
        (x + inset, y + inset, x + width - inset, y + height - inset),
        outline=PLACEHOLDER_MARK_COLOR,
        width=max(1, inset // 8),
    )


def render_variant(
    variant: GridVariant,
    settings: Optional[Dict] = None,
    session: Optional[requests.Session] = None,
    canvas_size: Tuple[int, int] = (CANVAS_WIDTH, CANVAS_HEIGHT),
) -> Image.Image:
    settings = settings or {}
    try:
        gap = max(0, int(settings.get("gapPx", DEFAULT_GAP_PX)))
    except (TypeError, ValueError):
        gap = DEFAULT_GAP_PX

    canvas_width, canvas_height = canvas_size
    canvas = Image.new("RGB", (canvas_width, canvas_height), BACKGROUND_COLOR)
    dimensions = variant.grid_dimensions
    boxes = compute_cell_boxes(
        dimensions["cols"], dimensions["rows"], canvas_width, canvas_height, gap
    )

    for position, member in enumerate(variant.members):
        if member is None or position >= len(boxes):
            continue
        box = boxes[position]
        photo = load_photo(member.get("photo"), session=session)
        if photo is None:
            draw_placeholder(canvas, box)
            continue
        x, y, width, height = box
        canvas.paste(cover_crop(photo, width, height).convert("RGB"), (x, y))

    logger.info(
        "Rendered %s with %d positions on %dx%d canvas",
        variant.id,
        len(variant.members),
        canvas_width,
        canvas_height,
    )
    return canvas


def render_variant_to_data_url(
    variant: GridVariant,
    settings: Optional[Dict] = None,
    session: Optional[requests.Session] = None,
) -> str:
    return to_data_url(encode_png(render_variant(variant, settings, session)), "image/png")
