import logging
import os
from typing import Dict, List, Optional

from bson import ObjectId
from fastapi import HTTPException, UploadFile

from config import UPLOAD_DIR, UPLOAD_URL_PREFIX

logger = logging.getLogger(__name__)

MAX_IMAGES = 5
MAX_IMAGE_BYTES = 5 * 1024 * 1024
ALLOWED_EXTENSIONS = {".jpg", ".jpeg", ".png", ".gif", ".webp"}


class LocalImageStore:
    """Keeps item images on local disk and serves them under ``url_prefix``."""

    def __init__(self, root: str = UPLOAD_DIR, url_prefix: str = UPLOAD_URL_PREFIX):
        self.root = root
        self.url_prefix = url_prefix.rstrip("/")

    def save(self, upload: UploadFile, caption: str = "") -> Dict[str, str]:
        if not (upload.content_type or "").startswith("image/"):
            raise HTTPException(status_code=400, detail=f"{upload.filename or 'file'} is not an image")
        ext = os.path.splitext(upload.filename or "")[1].lower()
        if ext not in ALLOWED_EXTENSIONS:
            ext = ".jpg"
        data = upload.file.read(MAX_IMAGE_BYTES + 1)
        if len(data) > MAX_IMAGE_BYTES:
            raise HTTPException(status_code=400, detail="Images must be 5MB or smaller")
        os.makedirs(self.root, exist_ok=True)
        storage_id = f"{ObjectId()}{ext}"
        with open(os.path.join(self.root, storage_id), "wb") as fh:
            fh.write(data)
        return {"url": f"{self.url_prefix}/{storage_id}", "storageId": storage_id, "caption": caption or ""}

    def save_all(self, uploads: List[UploadFile], captions: Optional[List[str]] = None) -> List[Dict[str, str]]:
        """Store every upload or none of them."""
        if len(uploads) > MAX_IMAGES:
            raise HTTPException(status_code=400, detail=f"At most {MAX_IMAGES} images are allowed")
        captions = captions or []
        saved: List[Dict[str, str]] = []
        try:
            for i, upload in enumerate(uploads):
                caption = captions[i] if i < len(captions) else ""
                saved.append(self.save(upload, caption))
        except Exception:
            self.delete_all(saved)
            raise
        return saved

    def delete(self, storage_id: str):
        path = os.path.join(self.root, os.path.basename(storage_id))
        try:
            os.remove(path)
        except FileNotFoundError:
            logger.warning("Image %s already gone", storage_id)

    def delete_all(self, images: List[Dict[str, str]]):
        for image in images:
            if image.get("storageId"):
                self.delete(image["storageId"])


image_store = LocalImageStore()


def get_image_store() -> LocalImageStore:
    return image_store
