import unittest

from directmsg.errors import AttachmentTooLarge, UploadFailed
from directmsg.repositories.attachment_repository import object_name
from directmsg.services.attachment_service import AttachmentService, classify

from tests.helpers import ALICE, MemoryAttachmentStore


class ClassifyTests(unittest.TestCase):
    def test_images_by_content_type(self):
        self.assertEqual(classify("image/png"), "image")
        self.assertEqual(classify("IMAGE/JPEG"), "image")

    def test_everything_else_is_a_file(self):
        for content_type in ("application/pdf", "text/plain", "", None):
            with self.subTest(content_type=content_type):
                self.assertEqual(classify(content_type), "file")

    def test_object_names_are_scoped_to_the_owner(self):
        name = object_name(ALICE, "holiday photo.JPG")

        self.assertTrue(name.startswith(f"{ALICE}/"))
        self.assertTrue(name.endswith(".jpg"))
        self.assertNotEqual(name, object_name(ALICE, "holiday photo.JPG"))


class AttachmentServiceTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.store = MemoryAttachmentStore()
        self.service = AttachmentService(self.store, max_bytes=1024)

    async def test_oversize_file_is_rejected_before_upload(self):
        with self.assertRaises(AttachmentTooLarge):
            await self.service.upload(ALICE, "big.bin", "application/octet-stream", b"x" * 1025)

        self.assertEqual(self.store.calls, [])

    async def test_file_at_the_limit_is_accepted(self):
        attachment = await self.service.upload(ALICE, "exact.bin", "application/octet-stream", b"x" * 1024)

        self.assertEqual(attachment.type, "file")
        self.assertEqual(len(self.store.blobs), 1)

    async def test_image_upload(self):
        attachment = await self.service.upload(ALICE, "cat.png", "image/png", b"\x89PNG")

        self.assertEqual(attachment.type, "image")
        self.assertEqual(attachment.name, "cat.png")
        self.assertTrue(attachment.url.startswith("https://files.example/"))
        self.assertIn(b"\x89PNG", self.store.blobs.values())

    async def test_missing_name_falls_back(self):
        attachment = await self.service.upload(ALICE, None, None, b"data")

        self.assertEqual(attachment.name, "attachment")
        self.assertEqual(attachment.type, "file")

    async def test_store_failure_is_reported_as_upload_failure(self):
        service = AttachmentService(MemoryAttachmentStore(fail=True), max_bytes=1024)

        with self.assertLogs("directmsg.services.attachment_service", level="WARNING"):
            with self.assertRaises(UploadFailed):
                await service.upload(ALICE, "notes.txt", "text/plain", b"notes")

    def test_size_message_names_the_limit(self):
        service = AttachmentService(self.store, max_bytes=10 * 1024 * 1024)

        with self.assertRaises(AttachmentTooLarge) as ctx:
            service.check_size(10 * 1024 * 1024 + 1)

        self.assertEqual(ctx.exception.detail, "Maximum file size is 10MB")
        self.assertEqual(ctx.exception.status_code, 413)
