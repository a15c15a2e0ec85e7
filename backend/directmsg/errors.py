import logging
from contextlib import contextmanager
from typing import Iterator

from fastapi import HTTPException
from pymongo.errors import PyMongoError


logger = logging.getLogger(__name__)


class MessagingError(Exception):

    status_code = 400

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail


class EmptyMessage(MessagingError):
    pass


class InvalidUserId(MessagingError):
    pass


class AttachmentTooLarge(MessagingError):

    status_code = 413


class ConversationNotFound(MessagingError):

    status_code = 404


class NotParticipant(MessagingError):

    status_code = 403


class StorageUnavailable(MessagingError):
    """Storage or network failure; the caller may retry."""

    status_code = 503


class UploadFailed(MessagingError):

    status_code = 502


@contextmanager
def storage_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except PyMongoError as exc:
        logger.warning("%s failed: %s", operation, exc)
        raise StorageUnavailable(f"{operation} failed, try again") from exc


def http_error(exc: MessagingError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.detail)
