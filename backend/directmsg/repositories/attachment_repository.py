import logging
import secrets
from typing import AsyncIterator, Optional, Protocol, Tuple

from bson.errors import InvalidId
from gridfs.errors import NoFile
from motor.motor_asyncio import AsyncIOMotorDatabase, AsyncIOMotorGridFSBucket

from directmsg import config
from directmsg.repositories.conversation_repository import to_object_id
from directmsg.utils.clock import to_millis, utcnow


logger = logging.getLogger(__name__)


class AttachmentStore(Protocol):

    async def put(self, owner_id: str, filename: str, content_type: str, data: bytes) -> str:
        """Store the blob and return a URL it can be fetched from."""


def object_name(owner_id: str, filename: str) -> str:
    ext = filename.rsplit(".", 1)[-1].lower() if "." in filename else "bin"
    return f"{owner_id}/{to_millis(utcnow())}-{secrets.token_hex(4)}.{ext}"


class GridFSAttachmentStore:

    def __init__(self, db: AsyncIOMotorDatabase, base_url: str = config.ATTACHMENT_BASE_URL) -> None:
        self._bucket = AsyncIOMotorGridFSBucket(db, bucket_name="attachments")
        self._base_url = base_url

    async def put(self, owner_id: str, filename: str, content_type: str, data: bytes) -> str:
        file_id = await self._bucket.upload_from_stream(
            object_name(owner_id, filename),
            data,
            metadata={"owner_id": owner_id, "content_type": content_type, "display_name": filename},
        )
        return f"{self._base_url}/{file_id}"

    async def open(self, file_id: str) -> Optional[Tuple[str, AsyncIterator[bytes]]]:
        oid = to_object_id(file_id)
        if oid is None:
            return None
        try:
            stream = await self._bucket.open_download_stream(oid)
        except (NoFile, InvalidId):
            return None
        metadata = stream.metadata or {}

        async def chunks() -> AsyncIterator[bytes]:
            while True:
                chunk = await stream.readchunk()
                if not chunk:
                    break
                yield chunk

        return metadata.get("content_type") or "application/octet-stream", chunks()
