import unittest

from marketchat.archive import RELEASED_TITLE
from marketchat.backend import AuthUser
from marketchat.client import MessagingClient
from marketchat.config import SyncConfig
from marketchat.errors import AccountRestricted, TransientError
from marketchat.local import Datastore, LocalBackend
from marketchat.notifications import GRANTED, HeadlessPlatform
from marketchat.policy import OwnerPolicy
from marketchat.rows import MESSAGES, PROFILES

from .util import settle


class RecordingPlatform(HeadlessPlatform):
    def __init__(self):
        super().__init__(GRANTED, visible=False)
        self.shown = []

    def show(self, title, body):
        self.shown.append(body)


class FlakyUnreadBackend(LocalBackend):
    """Fails the first unread-count query, then behaves."""

    def __init__(self, datastore):
        super().__init__(datastore)
        self.failures = 1

    async def query(self, table, where=None, **kwargs):
        if table == MESSAGES and isinstance(where, dict) and where.get("is_read") is False and self.failures:
            self.failures -= 1
            raise TransientError("query unavailable")
        return await super().query(table, where, **kwargs)


class MessagingClientTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.datastore = Datastore.in_memory(policy=OwnerPolicy())
        self.config = SyncConfig(reconcile_interval_seconds=0)
        self.clients = []

    async def asyncTearDown(self):
        for client in self.clients:
            await client.close()

    async def start_client(self, user_id, platform=None):
        backend = LocalBackend(self.datastore)
        client = MessagingClient(backend, config=self.config, platform=platform)
        self.clients.append(client)
        backend.sign_in(AuthUser(id=user_id, email=f"{user_id}@example.com"))
        await client.start()
        await self.settle()
        return client

    async def settle(self):
        await settle(*self.clients)

    async def test_unread_then_open_conversation(self):
        platform = RecordingPlatform()
        u1 = await self.start_client("u1", platform)
        u2 = await self.start_client("u2")

        await u2.send_message("u1", "hi")
        await self.settle()

        self.assertEqual(u1.unread.unread_counts, {"u2": 1})
        self.assertEqual(u1.unread.total_unread_count, 1)
        self.assertEqual(platform.shown, ["You have 1 new unread message."])

        store = await u1.open_conversation("u2")
        await self.settle()

        self.assertEqual([(m.content, m.is_read) for m in store.messages], [("hi", True)])
        self.assertEqual(u1.unread.unread_counts, {})
        self.assertEqual(u1.unread.total_unread_count, 0)
        self.assertEqual(len(platform.shown), 1)

    async def test_archived_conversation_returns_to_inbox(self):
        u1 = await self.start_client("u1")
        u2 = await self.start_client("u2")
        await u1.send_message("u2", "is this still available?")
        await u1.archive.archive("u2")
        await self.settle()
        self.assertEqual((await u1.inbox()).archived, ["u2"])

        await u2.send_message("u1", "yes")
        await self.settle()

        self.assertEqual(u1.archive.archived_ids, [])
        self.assertEqual([notice.title for notice in u1.notices.history], [RELEASED_TITLE])
        inbox = await u1.inbox()
        self.assertEqual((inbox.inbox, inbox.archived), (["u2"], []))
        self.assertEqual(u1.unread.unread_counts, {"u2": 1})

    async def test_sending_through_open_conversation_shows_message_once(self):
        u1 = await self.start_client("u1")
        await self.start_client("u2")
        store = await u1.open_conversation("u2")

        message = await u1.send_message("u2", "offer: 20")
        await self.settle()

        self.assertEqual([m.id for m in store.messages], [message.id])

    async def test_user_switch_restarts_components(self):
        u1 = await self.start_client("u1")
        u2 = await self.start_client("u2")
        await u1.open_conversation("u2")
        await u2.send_message("u1", "for u1")
        await u2.send_message("u3", "for u3")
        await self.settle()

        u1.backend.sign_in(AuthUser(id="u3"))
        await self.settle()

        self.assertEqual(u1.active_user, "u3")
        self.assertIsNone(u1.conversation)
        self.assertEqual(u1.unread.unread_counts, {"u2": 1})
        self.assertEqual(u1.unread.self_id, "u3")
        self.assertEqual(u1.notifications.previous_total, 1)

    async def test_sign_out_stops_messaging(self):
        u1 = await self.start_client("u1")
        backend = u1.backend

        backend.sign_out()
        await self.settle()

        self.assertIsNone(u1.active_user)
        self.assertEqual(backend.subscription_count(), 0)
        self.assertEqual(u1.unread.unread_counts, {})

    async def test_banned_user_gets_no_messaging(self):
        self.datastore.tables.insert(PROFILES, {"id": "u1", "username": "u1", "is_banned": True})

        u1 = await self.start_client("u1")

        self.assertIsNone(u1.active_user)
        self.assertIsNotNone(u1.session.restriction)
        self.assertEqual(u1.backend.subscription_count(), 0)
        with self.assertRaises(AccountRestricted):
            await u1.open_conversation("u2")

    async def test_lifted_ban_starts_messaging(self):
        self.datastore.tables.insert(PROFILES, {"id": "u1", "username": "u1", "is_banned": True})
        u1 = await self.start_client("u1")
        admin_backend = LocalBackend(self.datastore)
        self.datastore.tables.insert(PROFILES, {"id": "admin", "is_admin": True})
        admin_backend.sign_in(AuthUser(id="admin"))
        await admin_backend.update(PROFILES, {"id": "u1"}, {"is_banned": False})

        await u1.session.refresh()
        await self.settle()

        self.assertEqual(u1.active_user, "u1")


    async def test_failed_start_is_retried_on_next_session_event(self):
        backend = FlakyUnreadBackend(self.datastore)
        client = MessagingClient(backend, config=self.config)
        self.clients.append(client)
        backend.sign_in(AuthUser(id="u1"))

        with self.assertRaises(TransientError):
            await client.start()
        backend.emit_session_event()
        await self.settle()

        self.assertEqual(client.active_user, "u1")
        await client.archive.archive("u2")
        self.assertEqual(client.archive.archived_ids, ["u2"])
        self.assertEqual(client.unread.self_id, "u1")


if __name__ == "__main__":
    unittest.main()
