"""
Product image uploads to Cloudinary through an unsigned upload preset.
"""
import logging
import os
from typing import IO

import cloudinary
import cloudinary.uploader
from cloudinary.exceptions import Error as CloudinaryError

logger = logging.getLogger("atozdpolify")

CLOUDINARY_CLOUD_NAME = os.getenv("CLOUDINARY_CLOUD_NAME")
CLOUDINARY_UPLOAD_PRESET = os.getenv("CLOUDINARY_UPLOAD_PRESET")
UPLOAD_FOLDER = os.getenv("CLOUDINARY_FOLDER", "products")

if CLOUDINARY_CLOUD_NAME:
    cloudinary.config(cloud_name=CLOUDINARY_CLOUD_NAME, secure=True)


class UploadError(Exception):
    pass


def uploads_configured() -> bool:
    return bool(CLOUDINARY_CLOUD_NAME and CLOUDINARY_UPLOAD_PRESET)


def upload_image(file: IO[bytes], filename: str) -> str:
    """Upload an image and return its hosted https URL."""
    try:
        result = cloudinary.uploader.unsigned_upload(
            file,
            CLOUDINARY_UPLOAD_PRESET,
            folder=UPLOAD_FOLDER,
            resource_type="image",
            filename_override=filename,
        )
    except CloudinaryError as exc:
        logger.error("Image upload failed for %s: %s", filename, exc)
        raise UploadError(str(exc)) from exc
    url = result.get("secure_url") or result.get("url")
    if not url:
        raise UploadError("Upload response did not include a URL")
    logger.info("Uploaded image %s -> %s", filename, url)
    return url
