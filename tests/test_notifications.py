import unittest

from marketchat.notifications import (
    DEFAULT,
    DENIED,
    GRANTED,
    UNSUPPORTED,
    HeadlessPlatform,
    NotificationBridge,
    NotificationPlatform,
)


class RecordingPlatform(HeadlessPlatform):
    def __init__(self, permission=GRANTED, visible=False):
        super().__init__(permission, visible)
        self.shown = []

    def show(self, title, body):
        self.shown.append((title, body))


class NotificationBridgeTests(unittest.IsolatedAsyncioTestCase):
    async def test_first_observation_only_sets_baseline(self):
        platform = RecordingPlatform()
        bridge = NotificationBridge(platform)

        self.assertFalse(bridge.notify_if_increased(4))
        self.assertEqual(bridge.previous_total, 4)
        self.assertEqual(platform.shown, [])

    async def test_fires_only_on_increase_with_delta(self):
        platform = RecordingPlatform()
        bridge = NotificationBridge(platform)
        bridge.notify_if_increased(1)

        self.assertTrue(bridge.notify_if_increased(3))
        self.assertFalse(bridge.notify_if_increased(3))
        self.assertFalse(bridge.notify_if_increased(0))
        self.assertTrue(bridge.notify_if_increased(1))

        self.assertEqual(
            platform.shown,
            [("New messages", "You have 2 new unread messages."), ("New message", "You have 1 new unread message.")],
        )

    async def test_visible_app_or_missing_permission_suppresses(self):
        platform = RecordingPlatform(visible=True)
        bridge = NotificationBridge(platform)
        bridge.notify_if_increased(0)

        self.assertFalse(bridge.notify_if_increased(2))
        platform.visible = False
        platform._permission = DENIED
        self.assertFalse(bridge.notify_if_increased(5))
        self.assertEqual(bridge.previous_total, 5)
        self.assertEqual(platform.shown, [])

    async def test_request_grants_default_permission(self):
        bridge = NotificationBridge(RecordingPlatform(permission=DEFAULT))

        self.assertEqual(bridge.permission, DEFAULT)
        self.assertEqual(await bridge.request(), GRANTED)

    async def test_unsupported_platform_never_fires(self):
        bridge = NotificationBridge(NotificationPlatform())
        bridge.notify_if_increased(0)

        self.assertEqual(bridge.permission, UNSUPPORTED)
        self.assertEqual(await bridge.request(), UNSUPPORTED)
        self.assertFalse(bridge.notify_if_increased(3))

    async def test_reset_forgets_baseline(self):
        platform = RecordingPlatform()
        bridge = NotificationBridge(platform)
        bridge.on_counts({"u2": 1}, 1)
        bridge.reset()

        bridge.on_counts({"u2": 3}, 3)

        self.assertEqual(platform.shown, [])


if __name__ == "__main__":
    unittest.main()
