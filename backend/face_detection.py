"""Face detection entry points.

Face-aware cropping is intentionally disabled: every call below keeps its
signature so callers do not have to change, but detection always reports no
faces and cropping falls through to a centered cover crop.
"""

import logging
from typing import List, Optional

from .image_crop import FACE_CROP_JPEG_QUALITY, ImageSource, cover_crop_to_data_url, open_image

logger = logging.getLogger(__name__)


def load_face_detection_models(model_url: Optional[str] = None) -> None:
    logger.debug("Face detection disabled; ignoring model load from %s", model_url)


def detect_faces(source: ImageSource) -> List[dict]:
    return []


def crop_face(source: ImageSource, target_width: int, target_height: int) -> str:
    detect_faces(source)
    return cover_crop_to_data_url(
        source, target_width, target_height, quality=FACE_CROP_JPEG_QUALITY
    )


def center_crop_face(source: ImageSource, container_width: int, container_height: int) -> str:
    # Crops at the source's natural resolution, never downscaled.
    image = open_image(source)
    return crop_face(image, image.width, image.height)
