import unittest

from marketchat.config import SyncConfig
from marketchat.errors import AccountRestricted, Conflict, InvalidRequest, NotFound, PermissionDenied
from marketchat.local import Datastore
from marketchat.market import DELETE_PRODUCT_FAILED, CatalogService, RatingService, parse_price
from marketchat.policy import OwnerPolicy
from marketchat.rows import PRODUCTS, PROFILES, RATINGS
from marketchat.session import SessionContext
from marketchat.storage import Attachment

from .util import at, signed_in

LAMP = {
    "name": "Desk lamp",
    "description": "Brass lamp with a linen shade",
    "price": "$29.99",
    "category": "Home",
    "stock": 3,
    "image": "https://img.example.com/lamp.png",
    "info": "Ships within two days",
}


class PriceTests(unittest.TestCase):
    def test_accepts_two_decimal_places_and_a_dollar_sign(self):
        self.assertEqual(parse_price("$29.99"), 29.99)
        self.assertEqual(parse_price("7"), 7.0)
        self.assertEqual(parse_price(12.5), 12.5)

    def test_rejects_malformed_prices(self):
        for value in ("29.999", "abc", "-3", "", True, -1, 1.005):
            with self.subTest(value=value):
                with self.assertRaises(InvalidRequest):
                    parse_price(value)


class MarketTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.datastore = Datastore.in_memory(policy=OwnerPolicy())
        tables = self.datastore.tables
        for user_id in ("s1", "s2", "u1", "u2"):
            tables.insert(PROFILES, {"id": user_id, "username": user_id})
        tables.insert(PROFILES, {"id": "u3", "username": "u3", "is_banned": True})
        self.contexts = []

    async def asyncTearDown(self):
        for context in self.contexts:
            await context.close()

    async def services_for(self, user_id):
        backend = signed_in(self.datastore, user_id)
        session = SessionContext(backend)
        await session.start()
        self.contexts.append(session)
        return CatalogService(backend, session), RatingService(backend, session, SyncConfig())

    async def test_list_product_validates_and_stamps_seller(self):
        catalog, _ = await self.services_for("s1")

        product = await catalog.list_product(**LAMP)

        self.assertEqual((product.seller_id, product.price, product.stock), ("s1", 29.99, 3))
        self.assertIsNone(product.link)
        self.assertEqual(await catalog.get(product.id), product)
        for bad in ({"stock": 0}, {"price": "29.999"}, {"image": "lamp.png"}, {"name": "L"}, {"info": "short"}):
            with self.subTest(bad=bad):
                with self.assertRaises(InvalidRequest):
                    await catalog.list_product(**{**LAMP, **bad})
        with self.assertRaises(InvalidRequest):
            await catalog.list_product(name="Desk lamp")

    async def test_update_and_delete_only_own_products(self):
        catalog, _ = await self.services_for("s1")
        other, _ = await self.services_for("s2")
        product = await catalog.list_product(**LAMP)

        updated = await catalog.update_product(product.id, price="12.50", stock=1)
        with self.assertRaises(NotFound):
            await other.update_product(product.id, price="1")
        with self.assertRaises(NotFound) as caught:
            await other.delete_product(product.id)

        self.assertEqual((updated.price, updated.stock), (12.5, 1))
        self.assertEqual(str(caught.exception), DELETE_PRODUCT_FAILED)
        await catalog.delete_product(product.id)
        self.assertEqual(await catalog.seller_products(), [])

    async def test_seller_products_are_newest_first(self):
        catalog, _ = await self.services_for("s1")
        tables = self.datastore.tables
        for index, seller in enumerate(("s1", "s2", "s1")):
            tables.insert(
                PRODUCTS,
                {"id": f"p{index}", "seller_id": seller, "name": "Item", "price": 1.0, "created_at": at(index)},
            )

        products = await catalog.seller_products("s1")

        self.assertEqual([product.id for product in products], ["p2", "p0"])

    async def test_banned_users_cannot_list_or_rate(self):
        catalog, ratings = await self.services_for("u3")

        with self.assertRaises(AccountRestricted):
            await catalog.list_product(**LAMP)
        with self.assertRaises(AccountRestricted):
            await ratings.rate_seller("s1", 5)

    async def test_rate_product_once_with_image(self):
        catalog, _ = await self.services_for("s1")
        _, ratings = await self.services_for("u1")
        product = await catalog.list_product(**LAMP)

        rating = await ratings.rate_product(product.id, 5, "Lovely", Attachment("lamp.jpg", b"\xff\xd8"))

        self.assertTrue(rating.image_url.startswith("memory://storage/rating-images/u1/"))
        self.assertTrue(await ratings.has_rated(product.id))
        with self.assertRaises(Conflict):
            await ratings.rate_product(product.id, 4)
        with self.assertRaises(NotFound):
            await ratings.rate_product("missing", 4)

    async def test_rating_bounds_and_comment_length(self):
        catalog, _ = await self.services_for("s1")
        _, ratings = await self.services_for("u1")
        product = await catalog.list_product(**LAMP)

        for score in (0, 6, True):
            with self.subTest(score=score):
                with self.assertRaises(InvalidRequest):
                    await ratings.rate_product(product.id, score)
        with self.assertRaises(InvalidRequest):
            await ratings.rate_product(product.id, 3, "x" * 1001)
        self.assertFalse(await ratings.has_rated(product.id))

    async def test_sellers_cannot_rate_themselves(self):
        catalog, ratings = await self.services_for("s1")
        product = await catalog.list_product(**LAMP)

        with self.assertRaises(PermissionDenied):
            await ratings.rate_product(product.id, 5)
        with self.assertRaises(PermissionDenied):
            await ratings.rate_seller("s1", 5)
        self.assertEqual(self.datastore.query(RATINGS), [])

    async def test_update_keeps_image_and_delete_is_author_only(self):
        _, ratings = await self.services_for("u1")
        _, other = await self.services_for("u2")
        rating = await ratings.rate_seller("s1", 2, "Slow")
        self.datastore.tables.update(RATINGS, [], {"image_url": "memory://storage/rating-images/u1/a.png"})

        updated = await ratings.update_rating(rating.id, 4, "Sorted out")
        with self.assertRaises(NotFound):
            await other.update_rating(rating.id, 1)
        with self.assertRaises(NotFound):
            await other.delete_rating(rating.id)

        self.assertEqual((updated.rating, updated.comment), (4, "Sorted out"))
        self.assertEqual(updated.image_url, "memory://storage/rating-images/u1/a.png")
        await ratings.delete_rating(rating.id)
        self.assertEqual(await ratings.seller_ratings("s1"), [])

    async def test_seller_ratings_cover_products_and_seller(self):
        _, ratings = await self.services_for("u1")
        tables = self.datastore.tables
        tables.insert(PRODUCTS, {"id": "p1", "seller_id": "s1", "name": "Lamp", "price": 1.0})
        tables.insert(PRODUCTS, {"id": "p2", "seller_id": "s2", "name": "Rug", "price": 1.0})
        tables.insert(RATINGS, {"id": "r1", "user_id": "u1", "product_id": "p1", "rating": 4, "created_at": at(1)})
        tables.insert(RATINGS, {"id": "r2", "user_id": "u2", "rated_seller_id": "s1", "rating": 2, "created_at": at(3)})
        tables.insert(RATINGS, {"id": "r3", "user_id": "u2", "product_id": "p2", "rating": 1, "created_at": at(2)})
        tables.insert(RATINGS, {"id": "r4", "user_id": "u2", "product_id": "p1", "rating": 5, "created_at": at(0)})

        seller = await ratings.seller_ratings("s1")
        summary = await ratings.seller_summary("s1")
        empty = await ratings.seller_summary("u2")
        on_product = await ratings.product_ratings("p1")

        self.assertEqual([rating.id for rating in seller], ["r2", "r1", "r4"])
        self.assertEqual((summary.count, summary.average), (3, 3.67))
        self.assertEqual((empty.count, empty.average), (0, None))
        self.assertEqual([rating.id for rating in on_product], ["r1", "r4"])


if __name__ == "__main__":
    unittest.main()
