import os
import uuid
from pathlib import Path
from typing import Optional

from starlette.concurrency import run_in_threadpool
from starlette.datastructures import UploadFile

from .errors import ValidationError

URL_PREFIX = "/uploads"
ALLOWED_EXTENSIONS = {".png", ".jpg", ".jpeg", ".gif", ".webp"}
MAX_BYTES = 5 * 1024 * 1024


async def save_attachment(upload: UploadFile, upload_dir: str) -> str:
    """Store a proof-of-payment image, return the URL it is served under."""
    ext = os.path.splitext(upload.filename or "")[1].lower()
    if ext not in ALLOWED_EXTENSIONS:
        raise ValidationError("screenshot must be a png, jpg, gif or webp image")
    data = await upload.read(MAX_BYTES + 1)
    if len(data) > MAX_BYTES:
        raise ValidationError("screenshot is larger than 5 MB")
    if not data:
        raise ValidationError("screenshot is empty")

    name = f"{uuid.uuid4().hex}{ext}"
    await run_in_threadpool((Path(upload_dir) / name).write_bytes, data)
    return f"{URL_PREFIX}/{name}"


def remove_attachment(url: Optional[str], upload_dir: str) -> None:
    if not url or not url.startswith(URL_PREFIX + "/"):
        return
    # only ever a bare file name inside upload_dir
    name = Path(url[len(URL_PREFIX) + 1:]).name
    if name:
        (Path(upload_dir) / name).unlink(missing_ok=True)
