import asyncio
import unittest
from datetime import timedelta

from marketchat.backend import AuthUser
from marketchat.errors import AccountRestricted
from marketchat.local import Datastore, LocalBackend
from marketchat.policy import OwnerPolicy
from marketchat.rows import PROFILES, format_timestamp, utcnow
from marketchat.session import ANONYMOUS, AUTHENTICATED, UNRESOLVED, SessionContext, default_username

from .util import RecordingBackend, settle


class DefaultUsernameTests(unittest.TestCase):
    def test_prefers_metadata_then_email(self):
        self.assertEqual(default_username(AuthUser("u1", "ann@example.com", {"username": " annie "})), "annie")
        self.assertEqual(default_username(AuthUser("u1", "ann@example.com")), "ann")
        self.assertEqual(default_username(AuthUser("0123456789")), "user-01234567")


class SessionContextTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.datastore = Datastore.in_memory(policy=OwnerPolicy())
        self.backend = RecordingBackend(self.datastore)
        self.session = SessionContext(self.backend)
        self.transitions = []
        self.session.add_listener(lambda ctx: self.transitions.append((ctx.state, ctx.profile is not None)))

    async def asyncTearDown(self):
        await self.session.close()

    def sign_in(self, user_id="u1", **metadata):
        self.backend.sign_in(AuthUser(id=user_id, email=f"{user_id}@example.com", metadata=metadata))

    def seed_profile(self, user_id="u1", **columns):
        self.datastore.tables.insert(PROFILES, {"id": user_id, "username": user_id, **columns})

    async def test_without_session_resolves_anonymous(self):
        self.assertEqual(self.session.state, UNRESOLVED)

        await self.session.start()

        self.assertEqual(self.session.state, ANONYMOUS)
        self.assertIsNone(self.session.user)
        self.assertIsNone(self.session.restriction)
        self.assertEqual(self.backend.count("query"), 0)

    async def test_profile_is_created_on_first_sign_in(self):
        await self.session.start()

        self.sign_in(username="seller")
        await settle(self.session)

        self.assertEqual(self.session.state, AUTHENTICATED)
        self.assertEqual(self.session.profile.username, "seller")
        self.assertEqual(self.backend.count("insert", PROFILES), 1)
        self.assertEqual(self.transitions[-2:], [(AUTHENTICATED, False), (AUTHENTICATED, True)])

    async def test_existing_profile_is_loaded_not_recreated(self):
        self.seed_profile(username="existing")
        self.sign_in()

        await self.session.start()

        self.assertEqual(self.session.profile.username, "existing")
        self.assertEqual(self.backend.count("insert"), 0)

    async def test_permanent_ban_restricts_access(self):
        self.seed_profile(is_banned=True)
        self.sign_in()
        await self.session.start()

        restriction = self.session.restriction

        self.assertTrue(restriction.permanent)
        self.assertIn("permanently", restriction.describe())
        with self.assertRaises(AccountRestricted) as caught:
            self.session.require_access()
        self.assertIsNone(caught.exception.banned_until)

    async def test_future_ban_restricts_until_expiry(self):
        until = utcnow() + timedelta(days=2)
        self.seed_profile(is_banned=True, banned_until=format_timestamp(until))
        self.sign_in()
        await self.session.start()

        self.assertEqual(self.session.restriction.until, until)
        self.assertEqual(self.backend.count("update"), 0)

    async def test_expired_ban_is_lifted_with_one_update(self):
        self.seed_profile(is_banned=True, banned_until=format_timestamp(utcnow() - timedelta(hours=1)))
        self.sign_in()

        await self.session.start()
        await self.session.refresh()

        self.assertIsNone(self.session.restriction)
        self.session.require_access()
        self.assertFalse(self.session.profile.is_banned)
        self.assertIsNone(self.session.profile.banned_until)
        self.assertEqual(self.backend.count("update", PROFILES), 1)

    async def test_temporary_ban_is_cleared_when_it_runs_out(self):
        self.now = utcnow()
        session = SessionContext(self.backend, clock=lambda: self.now)
        self.addAsyncCleanup(session.close)
        self.seed_profile(is_banned=True, banned_until=format_timestamp(self.now + timedelta(milliseconds=50)))
        self.sign_in()
        await session.start()
        self.assertIsNotNone(session.restriction)

        self.now += timedelta(minutes=10)
        for _ in range(100):
            if session.profile is not None and not session.profile.is_banned:
                break
            await asyncio.sleep(0.02)

        self.assertIsNone(session.restriction)
        self.assertIsNone(session.profile.banned_until)
        self.assertFalse(self.datastore.query(PROFILES, {"id": "u1"})[0]["is_banned"])
        self.assertEqual(self.backend.count("update", PROFILES), 1)

    async def test_closing_cancels_the_ban_timer(self):
        self.seed_profile(is_banned=True, banned_until=format_timestamp(utcnow() + timedelta(days=2)))
        self.sign_in()
        await self.session.start()
        timer = self.session._ban_timer
        self.assertIsNotNone(timer)

        await self.session.close()

        self.assertTrue(timer.cancelled())

    async def test_sign_out_and_user_switch(self):
        self.sign_in("u1")
        await self.session.start()

        self.backend.sign_in(AuthUser(id="u2"))
        await settle(self.session)
        self.assertEqual(self.session.user.id, "u2")
        self.assertEqual(self.session.profile.id, "u2")

        self.backend.sign_out()
        await settle(self.session)
        self.assertEqual(self.session.state, ANONYMOUS)
        self.assertIsNone(self.session.profile)

    async def test_closed_context_ignores_auth_events(self):
        await self.session.start()
        await self.session.close()

        self.sign_in()
        await settle(self.session)

        self.assertEqual(self.session.state, ANONYMOUS)


class SharedBackendTests(unittest.IsolatedAsyncioTestCase):
    async def test_two_contexts_create_one_profile(self):
        datastore = Datastore.in_memory(policy=OwnerPolicy())
        backend = LocalBackend(datastore)
        backend.sign_in(AuthUser(id="u1"))
        first, second = SessionContext(backend), SessionContext(backend)

        await first.start()
        await second.start()

        self.assertEqual(first.profile, second.profile)
        self.assertEqual(len(datastore.query(PROFILES)), 1)
        await first.close()
        await second.close()


if __name__ == "__main__":
    unittest.main()
