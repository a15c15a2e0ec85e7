import logging

from directmsg import config
from directmsg.errors import AttachmentTooLarge, UploadFailed
from directmsg.repositories.attachment_repository import AttachmentStore
from directmsg.schemas.message import Attachment, AttachmentType


logger = logging.getLogger(__name__)


def classify(content_type: str | None) -> AttachmentType:
    if content_type and content_type.lower().startswith("image/"):
        return "image"
    return "file"


class AttachmentService:

    def __init__(self, store: AttachmentStore, max_bytes: int = config.MAX_ATTACHMENT_BYTES) -> None:
        self._store = store
        self.max_bytes = max_bytes

    def check_size(self, size: int) -> None:
        if size > self.max_bytes:
            limit_mb = self.max_bytes / (1024 * 1024)
            raise AttachmentTooLarge(f"Maximum file size is {limit_mb:g}MB")

    async def upload(self, user_id: str, filename: str | None, content_type: str | None, data: bytes) -> Attachment:
        self.check_size(len(data))
        name = (filename or "").strip() or "attachment"
        content_type = content_type or "application/octet-stream"
        try:
            url = await self._store.put(user_id, name, content_type, data)
        except Exception as exc:
            logger.warning("Attachment upload for %s failed: %s", user_id, exc, exc_info=True)
            raise UploadFailed("Attachment upload failed, try again") from exc
        return Attachment(url=url, type=classify(content_type), name=name)
