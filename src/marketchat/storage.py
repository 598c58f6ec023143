from __future__ import annotations

import mimetypes
import uuid
from dataclasses import dataclass
from pathlib import PurePosixPath

from .backend import Backend
from .errors import InvalidRequest

MAX_ATTACHMENT_BYTES = 5 * 1024 * 1024


@dataclass(frozen=True)
class Attachment:
    filename: str
    data: bytes
    content_type: str | None = None

    @property
    def extension(self) -> str:
        suffix = PurePosixPath(self.filename).suffix.lstrip(".").lower()
        return suffix or "bin"

    def guessed_content_type(self) -> str | None:
        if self.content_type:
            return self.content_type
        return mimetypes.guess_type(self.filename)[0]


def storage_path(owner_id: str, attachment: Attachment) -> str:
    """Objects live under the owner's folder with a random name: ``<owner>/<uuid>.<ext>``."""

    return f"{owner_id}/{uuid.uuid4()}.{attachment.extension}"


async def upload_attachment(backend: Backend, bucket: str, owner_id: str, attachment: Attachment) -> str:
    if not attachment.data:
        raise InvalidRequest("You must select an image to upload.")
    if len(attachment.data) > MAX_ATTACHMENT_BYTES:
        raise InvalidRequest("attachment is too large")
    path = storage_path(owner_id, attachment)
    return await backend.upload_blob(bucket, path, attachment.data, attachment.guessed_content_type())
