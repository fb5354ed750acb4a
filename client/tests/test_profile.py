import unittest

from aiohttp.test_utils import TestServer

from chatsync.api_client import ChatApi
from chatsync.auth import StaticTokenSource
from chatsync.profile import AvatarURLCache, ProfileDraft
from chatsync.uploads import UploadFailed, UploadSource
from helpers.fake_backend import FakeBackend

AVATAR = UploadSource("me.png", "image/png", b"\x89PNGme")


class ProfileDraftTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.backend = FakeBackend()
        self.server = TestServer(self.backend.make_app())
        await self.server.start_server()
        self.api = ChatApi(str(self.server.make_url("/")), StaticTokenSource("tok-1"))
        self.draft = ProfileDraft(self.api)

    async def asyncTearDown(self):
        await self.api.close()
        await self.server.close()

    async def test_load_populates_draft(self):
        profile = await self.draft.load()

        self.assertEqual(profile.email, "ada@example.test")
        self.assertEqual(self.draft.display_name, "Ada")
        self.assertIsNone(self.draft.pending_avatar_file_id)
        self.assertFalse(self.draft.dirty)

    async def test_uploaded_avatar_stays_pending_until_save(self):
        await self.draft.load()
        result = await self.draft.upload_avatar(AVATAR)

        self.assertTrue(self.draft.dirty)
        self.assertEqual(self.draft.pending_avatar_file_id, result.record.id)
        self.assertEqual(self.draft.avatar_url, result.href)
        self.assertIsNone(self.backend.profile["avatar_file_id"])
        self.assertEqual(self.backend.calls_to("PUT", "/users/me"), [])

        await self.draft.save()

        self.assertEqual(self.backend.profile["avatar_file_id"], result.record.id)
        self.assertFalse(self.draft.dirty)

    async def test_clear_avatar_sends_empty_string(self):
        self.backend.profile["avatar_file_id"] = "f-old"
        await self.draft.load()

        self.draft.clear_avatar()
        self.assertTrue(self.draft.dirty)
        await self.draft.save()

        put = self.backend.calls_to("PUT", "/users/me")[0]
        self.assertEqual(put.json["avatar_file_id_or_null"], "")
        self.assertIsNone(self.backend.profile["avatar_file_id"])
        self.assertIsNone(self.draft.pending_avatar_file_id)
        self.assertFalse(self.draft.dirty)

    async def test_rename_keeps_current_avatar(self):
        self.backend.profile["avatar_file_id"] = "f-old"
        await self.draft.load()

        self.draft.display_name = "Ada L."
        await self.draft.save()

        self.assertEqual(self.backend.profile["display_name"], "Ada L.")
        self.assertEqual(self.backend.profile["avatar_file_id"], "f-old")
        self.assertEqual(self.backend.calls_to("PUT", "/users/me")[0].json["avatar_file_id_or_null"], "f-old")

    async def test_failed_upload_leaves_draft_untouched(self):
        await self.draft.load()
        self.backend.fail.add("storage")

        with self.assertRaises(UploadFailed):
            await self.draft.upload_avatar(AVATAR)

        self.assertIsNone(self.draft.pending_avatar_file_id)
        self.assertFalse(self.draft.dirty)


class AvatarURLCacheTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.backend = FakeBackend()
        self.server = TestServer(self.backend.make_app())
        await self.server.start_server()
        self.api = ChatApi(str(self.server.make_url("/")), StaticTokenSource("tok-1"))
        self.cache = AvatarURLCache(self.api)

    async def asyncTearDown(self):
        await self.api.close()
        await self.server.close()

    async def test_resolves_inline_once_per_file(self):
        self.backend.files["f1"] = {"id": "f1"}

        first = await self.cache.resolve("f1")
        second = await self.cache.resolve("f1")

        self.assertEqual(first, second)
        self.assertIn("disposition=inline", first)
        self.assertEqual(len(self.backend.calls_to("GET", "/files/f1/url")), 1)

    async def test_forget_forces_refresh(self):
        self.backend.files["f1"] = {"id": "f1"}
        await self.cache.resolve("f1")
        self.cache.forget("f1")
        await self.cache.resolve("f1")

        self.assertEqual(len(self.backend.calls_to("GET", "/files/f1/url")), 2)

    async def test_unknown_or_missing_file_is_none(self):
        self.assertIsNone(await self.cache.resolve(None))
        self.assertIsNone(await self.cache.resolve("missing"))


if __name__ == "__main__":
    unittest.main()
