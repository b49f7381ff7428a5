"""
Cover image uploads to Cloudinary using an unsigned upload preset.
"""
import logging
import os
from typing import Optional

import httpx

logger = logging.getLogger(__name__)

UPLOAD_URL = "https://api.cloudinary.com/v1_1/{cloud_name}/image/upload"
TIMEOUT_SECONDS = 30.0


class UploadError(Exception):
    pass


def upload_image(content: bytes, filename: str = "image.jpg", content_type: str = "image/*",
                 cloud_name: Optional[str] = None, upload_preset: Optional[str] = None,
                 client: Optional[httpx.Client] = None) -> str:
    """Upload an image and return its secure URL."""
    cloud_name = cloud_name or os.getenv("CLOUDINARY_CLOUD_NAME")
    upload_preset = upload_preset or os.getenv("CLOUDINARY_UPLOAD_PRESET")
    if not cloud_name or not upload_preset:
        raise UploadError("Cloudinary is not configured (CLOUDINARY_CLOUD_NAME, CLOUDINARY_UPLOAD_PRESET)")

    url = UPLOAD_URL.format(cloud_name=cloud_name)
    data = {"upload_preset": upload_preset}
    files = {"file": (filename, content, content_type)}
    try:
        if client is not None:
            response = client.post(url, data=data, files=files)
        else:
            with httpx.Client(timeout=TIMEOUT_SECONDS) as owned:
                response = owned.post(url, data=data, files=files)
    except httpx.HTTPError as e:
        logger.warning("Image upload failed: %s", e)
        raise UploadError(f"Image upload failed: {e}") from e

    if not response.is_success:
        raise UploadError(f"Image upload failed: {response.status_code}")
    try:
        return response.json()["secure_url"]
    except (ValueError, KeyError) as e:
        raise UploadError("Upload response has no secure_url") from e
