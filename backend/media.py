import logging
import os
from typing import Optional

import cloudinary
import cloudinary.uploader

logger = logging.getLogger(__name__)

MEMBER_PHOTO_FOLDER = "signature-day/members"


def cloudinary_configured() -> bool:
    return bool(os.getenv("CLOUDINARY_URL") or os.getenv("CLOUDINARY_CLOUD_NAME"))


def configure_cloudinary() -> bool:
    if not cloudinary_configured():
        return False
    if os.getenv("CLOUDINARY_URL"):
        cloudinary.config(secure=True)
    else:
        cloudinary.config(
            cloud_name=os.getenv("CLOUDINARY_CLOUD_NAME"),
            api_key=os.getenv("CLOUDINARY_API_KEY"),
            api_secret=os.getenv("CLOUDINARY_API_SECRET"),
            secure=True,
        )
    return True


def upload_image(source, folder: str = MEMBER_PHOTO_FOLDER) -> Optional[str]:
    """Upload a file, path or data URL and return its hosted URL, or ``None``."""
    if not cloudinary_configured():
        return None
    try:
        result = cloudinary.uploader.upload(
            source,
            folder=folder,
            resource_type="image",
            overwrite=False,
            unique_filename=True,
        )
    except Exception as exc:
        logger.warning("Cloudinary upload to %s failed: %s", folder, exc)
        return None
    return result.get("secure_url") or result.get("url")
