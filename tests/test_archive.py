import unittest

from marketchat.archive import RELEASED_DESCRIPTION, RELEASED_TITLE, ArchiveCoordinator, NotStarted
from marketchat.errors import TransientError
from marketchat.local import Datastore
from marketchat.notices import DESTRUCTIVE, NoticeBoard
from marketchat.rows import ARCHIVED_CONVERSATIONS, MESSAGES

from .util import settle, signed_in


class ArchiveCoordinatorTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.datastore = Datastore.in_memory()
        self.u1 = signed_in(self.datastore, "u1", recording=True)
        self.u2 = signed_in(self.datastore, "u2")
        self.notices = NoticeBoard()
        self.released = []
        self.archive = ArchiveCoordinator(self.u1, self.notices, on_released=self.released.append)
        await self.archive.start("u1")

    async def asyncTearDown(self):
        await self.archive.stop()

    async def test_archive_is_idempotent(self):
        await self.archive.archive("u2")
        await self.archive.archive("u2")
        await settle(self.archive)

        self.assertEqual(self.archive.archived_ids, ["u2"])
        self.assertEqual(self.u1.count("upsert"), 1)
        self.assertEqual(len(self.datastore.query(ARCHIVED_CONVERSATIONS, {"user_id": "u1"})), 1)

    async def test_inbound_message_releases_archived_sender_once(self):
        await self.archive.archive("u2")

        await self.u2.insert(MESSAGES, {"sender_id": "u2", "recipient_id": "u1", "content": "one"})
        await self.u2.insert(MESSAGES, {"sender_id": "u2", "recipient_id": "u1", "content": "two"})
        await settle(self.archive)

        self.assertEqual(self.archive.archived_ids, [])
        self.assertEqual(self.u1.count("delete", ARCHIVED_CONVERSATIONS), 1)
        titles = [notice.title for notice in self.notices.history]
        self.assertEqual(titles, [RELEASED_TITLE])
        self.assertEqual(self.notices.history[0].description, RELEASED_DESCRIPTION)
        self.assertEqual(self.released, ["u2"])

    async def test_message_from_other_sender_changes_nothing(self):
        u3 = signed_in(self.datastore, "u3")
        await self.archive.archive("u2")

        await u3.insert(MESSAGES, {"sender_id": "u3", "recipient_id": "u1", "content": "hey"})
        await settle(self.archive)

        self.assertEqual(self.archive.archived_ids, ["u2"])
        self.assertEqual(self.notices.history, [])

    async def test_release_already_done_elsewhere_shows_no_notice(self):
        await self.archive.archive("u2")
        # Another tab removed the row without this coordinator hearing about it yet.
        self.datastore.tables.delete(ARCHIVED_CONVERSATIONS, [])

        await self.u2.insert(MESSAGES, {"sender_id": "u2", "recipient_id": "u1", "content": "hi"})
        await settle(self.archive)

        self.assertEqual(self.archive.archived_ids, [])
        self.assertEqual(self.notices.history, [])
        self.assertEqual(self.released, [])

    async def test_failed_release_restores_membership(self):
        await self.archive.archive("u2")
        self.u1.fail.add("delete")

        await self.u2.insert(MESSAGES, {"sender_id": "u2", "recipient_id": "u1", "content": "hi"})
        await settle(self.archive)

        self.assertEqual(self.archive.archived_ids, ["u2"])
        self.assertEqual(self.notices.history[-1].variant, DESTRUCTIVE)
        self.assertEqual(self.released, [])

    async def test_failed_archive_surfaces_notice(self):
        self.u1.fail.add("upsert")

        with self.assertRaises(TransientError):
            await self.archive.archive("u2")

        self.assertEqual(self.archive.archived_ids, [])
        self.assertEqual(self.notices.history[-1].title, "Could not archive conversation")

    async def test_unarchive_and_cross_tab_reload(self):
        other_tab = signed_in(self.datastore, "u1")
        await other_tab.upsert(
            ARCHIVED_CONVERSATIONS, {"user_id": "u1", "archived_user_id": "u3"}, ("user_id", "archived_user_id")
        )
        await settle(self.archive)
        self.assertEqual(self.archive.archived_ids, ["u3"])

        await self.archive.unarchive("u3")
        await self.archive.unarchive("u3")
        await settle(self.archive)

        self.assertEqual(self.archive.archived_ids, [])

    async def test_operations_require_start(self):
        await self.archive.stop()

        with self.assertRaises(NotStarted):
            await self.archive.archive("u2")
        self.assertEqual(self.archive.archived_ids, [])


if __name__ == "__main__":
    unittest.main()
