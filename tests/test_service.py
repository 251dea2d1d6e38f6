import unittest
from datetime import timedelta

from reviewhub.auth import AuthExpired, AuthRequired
from reviewhub.directory import InMemoryStoreDirectory
from reviewhub.gbp_client import GBPAPIError
from reviewhub.service import InvalidReplyInput, ReviewService, StoreNotFound
from tests.fakes import NOW, USER_ID, FakeDirectoryAPI, build_service, fixed_clock, make_store, upstream_review

REVIEW_NAME = "accounts/100/locations/loc-1/reviews/r1"


class ReviewServiceTest(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.api = FakeDirectoryAPI()
        self.api.locations["loc-1"] = [
            upstream_review(REVIEW_NAME, "FIVE", created=NOW - timedelta(hours=2), reply="Thank you"),
            upstream_review("accounts/100/locations/loc-1/reviews/r2", "TWO", created=NOW - timedelta(hours=1)),
        ]
        self.api.locations["loc-2"] = 403
        self.stores = [
            make_store("s1", "loc-1"),
            make_store("s2", "loc-2"),
            make_store("s3", "loc-3", owner="someone-else"),
        ]
        self.service, self.tokens = build_service(self.api, self.stores)

    async def asyncTearDown(self):
        await self.service.client.http.aclose()

    async def test_list_reviews_metadata(self):
        resp = await self.service.list_reviews(USER_ID)

        self.assertEqual(resp.count, 3)
        self.assertEqual(resp.total_count, 3)
        self.assertEqual(resp.real_reviews_count, 2)
        self.assertEqual(resp.system_messages_count, 1)
        self.assertEqual(resp.stores_checked, 2)
        self.assertTrue(resp.has_system_messages)
        self.assertTrue(resp.is_real_data)
        self.assertEqual(resp.message, "Fetched 2 reviews.")
        self.assertEqual(self.api.calls["reviews:loc-3"], 0)

    async def test_list_reviews_for_one_store_unreplied(self):
        resp = await self.service.list_reviews(USER_ID, store_id="s1", unreplied_only=True)

        self.assertEqual([r.id for r in resp.reviews], ["accounts/100/locations/loc-1/reviews/r2"])
        self.assertEqual(resp.stores_checked, 1)
        self.assertEqual(resp.store_id, "s1")
        self.assertTrue(resp.unreplied)
        self.assertEqual(resp.message, "Fetched 1 unreplied reviews.")

    async def test_only_system_messages(self):
        resp = await self.service.list_reviews(USER_ID, store_id="s2")

        self.assertEqual(resp.real_reviews_count, 0)
        self.assertFalse(resp.is_real_data)
        self.assertIn("system messages", resp.message)

    async def test_store_of_another_owner_is_not_listed(self):
        resp = await self.service.list_reviews(USER_ID, store_id="s3")

        self.assertEqual(resp.reviews, [])
        self.assertEqual(resp.stores_checked, 0)
        self.assertEqual(self.api.calls["accounts"], 0)

    async def test_missing_identity_or_token(self):
        with self.assertRaises(AuthRequired):
            await self.service.list_reviews("  ")

        self.tokens.clear(USER_ID)
        with self.assertRaises(AuthRequired):
            await self.service.get_analytics(USER_ID)
        self.assertEqual(self.api.calls["accounts"], 0)

    async def test_analytics(self):
        snap = await self.service.get_analytics(USER_ID)

        self.assertEqual(snap.period_days, 30)
        self.assertEqual(snap.total_stores, 2)
        self.assertEqual(snap.total_reviews, 2)
        self.assertEqual(snap.average_rating, 3.5)
        self.assertEqual(snap.unanswered_reviews, 1)
        self.assertEqual(snap.response_rate, 50)
        self.assertEqual(snap.today_reviews, 2)
        self.assertEqual([s.store_id for s in snap.per_store_stats], ["s1", "s2"])

    async def test_token_manager_is_shared_per_user(self):
        self.assertIs(self.service.token_manager(USER_ID), self.service.token_manager(USER_ID))
        self.assertIsNot(self.service.token_manager(USER_ID), self.service.token_manager("u2"))

    async def test_token_manager_registry_is_bounded(self):
        service = ReviewService(
            InMemoryStoreDirectory(self.stores), self.service.client, self.tokens, clock=fixed_clock, max_token_managers=2
        )
        first = service.token_manager("u1")
        second = service.token_manager("u2")
        service.token_manager("u1")
        service.token_manager("u3")

        self.assertIs(service.token_manager("u1"), first)
        self.assertIsNot(service.token_manager("u2"), second)

    async def test_token_manager_is_dropped_when_auth_fails(self):
        manager = self.service.token_manager(USER_ID)
        self.tokens.clear(USER_ID)

        with self.assertRaises(AuthRequired):
            await self.service.list_reviews(USER_ID)

        self.assertIsNot(self.service.token_manager(USER_ID), manager)

    async def test_token_manager_is_dropped_when_refresh_is_revoked(self):
        manager = self.service.token_manager(USER_ID)
        self.api.valid_tokens = set()
        self.api.refresh_status = 400

        with self.assertRaises(AuthExpired):
            await self.service.list_reviews(USER_ID)

        self.assertIsNot(self.service.token_manager(USER_ID), manager)

    async def test_reply_to_owned_review(self):
        payload = await self.service.reply_to_review(USER_ID, REVIEW_NAME, "  Thanks for visiting!  ")

        self.assertEqual(payload["comment"], "Thanks for visiting!")
        path, body = self.api.replies[0]
        self.assertEqual(path, f"/v4/{REVIEW_NAME}/reply")
        self.assertEqual(body, {"comment": "Thanks for visiting!"})

    async def test_reply_retries_after_refresh(self):
        self.api.valid_tokens = set()

        await self.service.reply_to_review(USER_ID, REVIEW_NAME, "ok")

        self.assertEqual(self.api.calls["token"], 1)
        self.assertEqual(self.api.calls["reply"], 2)

    async def test_reply_to_foreign_review(self):
        with self.assertRaises(StoreNotFound):
            await self.service.reply_to_review(USER_ID, "accounts/100/locations/loc-3/reviews/x", "hi")
        with self.assertRaises(StoreNotFound):
            await self.service.reply_to_review(USER_ID, "reviews/x", "hi")
        self.assertEqual(self.api.calls["reply"], 0)

    async def test_reply_validation(self):
        with self.assertRaises(InvalidReplyInput):
            await self.service.reply_to_review(USER_ID, REVIEW_NAME, "   ")

    async def test_reply_upstream_failure(self):
        self.api.reply_status = 400

        with self.assertRaises(GBPAPIError) as ctx:
            await self.service.reply_to_review(USER_ID, REVIEW_NAME, "hi")

        self.assertEqual(ctx.exception.status, 400)


if __name__ == "__main__":
    unittest.main()
