"""Image hosting on Cloudinary."""
import logging
from typing import Dict

import cloudinary
import cloudinary.uploader
from fastapi import HTTPException

from settings import settings

logger = logging.getLogger(__name__)

_configured = False


def _configure():
    global _configured
    if _configured:
        return
    if not settings.CLOUDINARY_CLOUD_NAME:
        raise HTTPException(status_code=500, detail="Image hosting is not configured")
    cloudinary.config(
        cloud_name=settings.CLOUDINARY_CLOUD_NAME,
        api_key=settings.CLOUDINARY_API_KEY,
        api_secret=settings.CLOUDINARY_API_SECRET,
        secure=True,
    )
    _configured = True


def upload_image(content: bytes, public_id: str = None) -> Dict[str, str]:
    _configure()
    result = cloudinary.uploader.upload(
        content,
        folder=settings.CLOUDINARY_FOLDER,
        resource_type="image",
        public_id=public_id,
        overwrite=True,
    )
    return {"url": result["secure_url"], "public_id": result["public_id"]}


def delete_image(public_id: str) -> bool:
    _configure()
    result = cloudinary.uploader.destroy(public_id)
    return result.get("result") == "ok"


def delete_images_quietly(public_ids) -> None:
    """Best-effort cleanup used when the owning document is removed."""
    for public_id in public_ids or []:
        if not public_id:
            continue
        try:
            delete_image(public_id)
        except Exception:
            logger.exception("Failed to delete image %s", public_id)
