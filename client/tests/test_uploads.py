import hashlib
import unittest

import pytest
from aiohttp.test_utils import TestServer

from chatsync.api_client import ApiError, ChatApi
from chatsync.auth import StaticTokenSource
from chatsync.uploads import (
    STEP_COMPLETE,
    STEP_GRANT,
    STEP_RESOLVE,
    STEP_TRANSFER,
    StorageTransferError,
    UploadFailed,
    UploadSaga,
    UploadSource,
    UploadTarget,
    attachment_message_text,
    normalize_etag,
    send_attachment,
)
from helpers.fake_backend import FakeBackend

PNG = UploadSource("photo.png", "image/png", b"\x89PNG\r\n\x1a\nfake")
PDF = UploadSource("report.pdf", "application/pdf", b"%PDF-1.7 fake")


class UploadSagaTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.backend = FakeBackend()
        self.server = TestServer(self.backend.make_app())
        await self.server.start_server()
        self.api = ChatApi(str(self.server.make_url("/")), StaticTokenSource("tok-1"))
        self.saga = UploadSaga(self.api)

    async def asyncTearDown(self):
        await self.api.close()
        await self.server.close()

    def complete_calls(self):
        return self.backend.calls_to("POST", "/files/complete")

    async def test_image_attachment_resolves_inline(self):
        result = await self.saga.upload_attachment(PNG, "w1", "c1")

        self.assertEqual(result.disposition, "inline")
        self.assertIn("disposition=inline", result.href)
        self.assertEqual(result.record.purpose, "message_attachment")
        self.assertTrue(result.record.is_image)
        self.assertEqual(self.backend.objects[result.record.storage_key], PNG.data)

        complete = self.complete_calls()[0].json
        self.assertEqual(complete["etag"], "abc123")
        self.assertEqual(complete["workspace_id"], "w1")
        self.assertEqual(complete["channel_id"], "c1")
        self.assertEqual(complete["size_bytes"], len(PNG.data))
        self.assertIsNone(complete["sha256_hex"])

    async def test_storage_put_carries_content_type_but_no_bearer(self):
        await self.saga.upload_attachment(PNG, "w1", "c1")

        put = self.backend.calls_to("PUT", "/storage/")[0]
        self.assertEqual(put.headers["Content-Type"], "image/png")
        self.assertNotIn("Authorization", put.headers)
        self.assertIn("X-Amz-Signature", put.query)

    async def test_non_image_resolves_as_attachment(self):
        result = await self.saga.upload_attachment(PDF, "w1", "c1")

        self.assertEqual(result.disposition, "attachment")
        self.assertEqual(self.backend.calls_to("GET", "/files/")[0].query, {"disposition": "attachment"})

    async def test_steps_run_in_order(self):
        await self.saga.upload_attachment(PDF, "w1", "c1")

        order = [(c.method, c.path.split("/")[1]) for c in self.backend.calls]
        self.assertEqual(
            order,
            [("POST", "workspaces"), ("PUT", "storage"), ("POST", "files"), ("GET", "files")],
        )

    async def test_grant_failure_stops_everything(self):
        self.backend.fail.add("sign")
        with self.assertRaises(UploadFailed) as ctx:
            await self.saga.upload_attachment(PDF, "w1", "c1")

        self.assertEqual(ctx.exception.step, STEP_GRANT)
        self.assertIsInstance(ctx.exception.__cause__, ApiError)
        self.assertEqual(ctx.exception.__cause__.status, 413)
        self.assertEqual(self.backend.calls_to("PUT", "/storage/"), [])

    async def test_transfer_failure_never_completes(self):
        self.backend.fail.add("storage")
        with self.assertRaises(UploadFailed) as ctx:
            await self.saga.upload_attachment(PNG, "w1", "c1")

        self.assertEqual(ctx.exception.step, STEP_TRANSFER)
        self.assertEqual(ctx.exception.filename, "photo.png")
        self.assertIsInstance(ctx.exception.__cause__, StorageTransferError)
        self.assertEqual(ctx.exception.__cause__.status, 403)
        self.assertEqual(self.complete_calls(), [])
        self.assertEqual(self.backend.discarded, [])

    async def test_complete_failure_discards_stored_object(self):
        self.backend.fail.add("complete")
        with self.assertRaises(UploadFailed) as ctx:
            await self.saga.upload_attachment(PDF, "w1", "c1")

        self.assertEqual(ctx.exception.step, STEP_COMPLETE)
        self.assertEqual(len(self.backend.discarded), 1)
        discarded = self.backend.discarded[0]
        self.assertTrue(discarded["storage_key"].startswith("ws/w1/ch/c1/"))
        self.assertTrue(discarded["file_id"].startswith("pending-"))
        self.assertEqual(self.backend.objects, {})

    async def test_resolve_failure_discards_with_record_id(self):
        self.backend.fail.add("resolve")
        with self.assertRaises(UploadFailed) as ctx:
            await self.saga.upload_attachment(PDF, "w1", "c1")

        self.assertEqual(ctx.exception.step, STEP_RESOLVE)
        record_id = next(iter(self.backend.files))
        self.assertEqual(self.backend.discarded[0]["file_id"], record_id)

    async def test_failed_discard_does_not_mask_original_failure(self):
        self.backend.fail.update({"complete", "discard"})
        with self.assertLogs("chatsync.uploads", level="WARNING") as logs:
            with self.assertRaises(UploadFailed) as ctx:
                await self.saga.upload_attachment(PDF, "w1", "c1")

        self.assertEqual(ctx.exception.step, STEP_COMPLETE)
        self.assertTrue(any("could not discard" in line for line in logs.output))

    async def test_missing_discard_endpoint_is_not_a_warning(self):
        self.backend.fail.update({"complete", "discard_missing"})
        with self.assertLogs("chatsync.uploads", level="INFO") as logs:
            with self.assertRaises(UploadFailed) as ctx:
                await self.saga.upload_attachment(PDF, "w1", "c1")

        self.assertEqual(ctx.exception.step, STEP_COMPLETE)
        self.assertTrue(any("no discard endpoint" in line for line in logs.output))
        self.assertFalse(any("could not discard" in line for line in logs.output))
        self.assertEqual(self.backend.discarded, [])

    async def test_compensation_can_be_disabled(self):
        self.backend.fail.add("complete")
        saga = UploadSaga(self.api, compensate=False)
        with self.assertRaises(UploadFailed):
            await saga.upload_attachment(PDF, "w1", "c1")
        self.assertEqual(self.backend.calls_to("POST", "/files/discard"), [])

    async def test_failure_log_redacts_presigned_secret(self):
        async def broken_transfer(url, body, content_type):
            raise StorageTransferError(500, f"could not reach {url}")

        saga = UploadSaga(self.api, transfer=broken_transfer)
        with self.assertLogs("chatsync.uploads", level="WARNING") as logs:
            with self.assertRaises(UploadFailed):
                await saga.upload_attachment(PDF, "w1", "c1")

        self.assertNotIn("X-Amz-Signature=sig", "\n".join(logs.output))

    async def test_avatar_upload_uses_avatar_purpose(self):
        result = await self.saga.upload_avatar(PNG)

        self.assertEqual(result.record.purpose, "avatar")
        self.assertEqual(result.disposition, "inline")
        self.assertEqual(len(self.backend.calls_to("POST", "/users/me/avatar/sign-upload")), 1)
        complete = self.complete_calls()[0].json
        self.assertIsNone(complete["workspace_id"])
        self.assertIsNone(complete["channel_id"])

    async def test_sha256_sent_when_enabled(self):
        saga = UploadSaga(self.api, compute_sha256=True)
        await saga.upload_attachment(PDF, "w1", "c1")

        self.assertEqual(self.complete_calls()[0].json["sha256_hex"], hashlib.sha256(PDF.data).hexdigest())

    async def test_send_attachment_posts_labelled_link(self):
        result, message = await send_attachment(self.saga, self.api, PDF, "w1", "c1")

        self.assertEqual(message.channel_id, "c1")
        self.assertEqual(message.text, f"(file) report.pdf\n{result.href}")


def test_normalize_etag_strips_quotes():
    assert normalize_etag('"abc123"') == "abc123"
    assert normalize_etag('W/"abc"') == "W/abc"
    assert normalize_etag(None) == ""


def test_attachment_message_text_labels_images():
    assert attachment_message_text("a.png", "image/png", "https://x") == "(image) a.png\nhttps://x"
    assert attachment_message_text("a.zip", "application/zip", "https://x") == "(file) a.zip\nhttps://x"


def test_attachment_target_requires_workspace_and_channel():
    with pytest.raises(ValueError):
        UploadTarget.attachment("", "c1")
    with pytest.raises(ValueError):
        UploadTarget.attachment("w1", None)


def test_upload_source_from_path_guesses_type(tmp_path):
    image = tmp_path / "cat.jpg"
    image.write_bytes(b"jpeg")
    blob = tmp_path / "data.unknownext"
    blob.write_bytes(b"??")

    assert UploadSource.from_path(image).content_type == "image/jpeg"
    assert UploadSource.from_path(blob).content_type == "application/octet-stream"
    assert UploadSource.from_path(blob, "text/plain").size_bytes == 2
