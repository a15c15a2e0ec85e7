from fastapi import APIRouter, Depends, File, HTTPException, UploadFile, status
from fastapi.responses import StreamingResponse

from directmsg.errors import MessagingError, http_error
from directmsg.repositories.attachment_repository import GridFSAttachmentStore
from directmsg.schemas.message import Attachment
from directmsg.services.attachment_service import AttachmentService
from directmsg.utils.dependencies import get_attachment_service, get_attachment_store, get_current_user


router = APIRouter(prefix="/attachments", tags=["attachments"])


@router.post("", response_model=Attachment, status_code=status.HTTP_201_CREATED)
async def upload_attachment(file: UploadFile = File(...), current_user: dict = Depends(get_current_user), service: AttachmentService = Depends(get_attachment_service)):
    try:
        if file.size is not None:
            service.check_size(file.size)
        # read one byte past the limit so oversize bodies without a size are caught too
        data = await file.read(service.max_bytes + 1)
        return await service.upload(current_user["_id"], file.filename, file.content_type, data)
    except MessagingError as exc:
        raise http_error(exc)
    finally:
        await file.close()


@router.get("/{file_id}")
async def download_attachment(file_id: str, store: GridFSAttachmentStore = Depends(get_attachment_store)):
    found = await store.open(file_id)
    if found is None:
        raise HTTPException(status_code=404, detail="Attachment not found")
    content_type, chunks = found
    return StreamingResponse(chunks, media_type=content_type)
