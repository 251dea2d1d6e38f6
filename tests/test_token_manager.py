import asyncio
import unittest
from datetime import timedelta

import httpx

from reviewhub.auth import (
    AuthExpired,
    AuthRequired,
    MemoryTokenStore,
    RefreshRetryPolicy,
    TokenManager,
)
from tests.fakes import NOW, TEST_CONFIG, USER_ID, FakeDirectoryAPI, build_stack, fixed_clock, token_state


class _GatedTransport(httpx.AsyncBaseTransport):
    """Token endpoint that blocks until released, counting requests."""

    def __init__(self) -> None:
        self.release = asyncio.Event()
        self.calls = 0

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        self.calls += 1
        await self.release.wait()
        return httpx.Response(200, json={"access_token": "fresh", "expires_in": 3600}, request=request)


class TokenManagerTest(unittest.IsolatedAsyncioTestCase):
    async def test_missing_token_requires_auth(self):
        api = FakeDirectoryAPI()
        http = httpx.AsyncClient(transport=httpx.MockTransport(api.handler))
        manager = TokenManager(USER_ID, MemoryTokenStore(), http, TEST_CONFIG, clock=fixed_clock)

        with self.assertRaises(AuthRequired):
            await manager.get_valid_token()
        self.assertEqual(api.calls["token"], 0)
        await http.aclose()

    async def test_valid_token_is_returned_without_refresh(self):
        api = FakeDirectoryAPI()
        _client, _store, manager, _policy = build_stack(api)

        self.assertEqual(await manager.get_valid_token(), "token-1")
        self.assertEqual(api.calls["token"], 0)

    async def test_expired_token_is_refreshed_and_persisted(self):
        api = FakeDirectoryAPI()
        _client, store, manager, _policy = build_stack(api, state=token_state(ttl=timedelta(seconds=-5)))

        token = await manager.get_valid_token()

        self.assertEqual(token, "token-2")
        self.assertEqual(api.calls["token"], 1)
        saved = store.load(USER_ID)
        self.assertEqual(saved.access_token, "token-2")
        self.assertEqual(saved.refresh_token, "refresh-1")
        self.assertEqual(saved.expires_at, NOW + timedelta(seconds=3599))

    async def test_token_inside_skew_window_counts_as_expired(self):
        api = FakeDirectoryAPI()
        _client, _store, manager, _policy = build_stack(api, state=token_state(ttl=timedelta(seconds=30)))

        self.assertEqual(await manager.get_valid_token(), "token-2")

    async def test_concurrent_refreshes_share_one_exchange(self):
        transport = _GatedTransport()
        http = httpx.AsyncClient(transport=transport)
        store = MemoryTokenStore({USER_ID: token_state()})
        manager = TokenManager(USER_ID, store, http, TEST_CONFIG, clock=fixed_clock)

        waiters = [asyncio.create_task(manager.refresh()) for _ in range(5)]
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        transport.release.set()
        tokens = await asyncio.gather(*waiters)

        self.assertEqual(tokens, ["fresh"] * 5)
        self.assertEqual(transport.calls, 1)
        await http.aclose()

    async def test_stale_rejection_reuses_already_refreshed_token(self):
        api = FakeDirectoryAPI()
        _client, _store, manager, _policy = build_stack(api)

        first = await manager.refresh(rejected_token="token-1")
        second = await manager.refresh(rejected_token="token-1")

        self.assertEqual(first, "token-2")
        self.assertEqual(second, "token-2")
        self.assertEqual(api.calls["token"], 1)

    async def test_failed_refresh_raises_auth_expired_and_invalidates(self):
        api = FakeDirectoryAPI(refresh_status=400)
        _client, store, manager, _policy = build_stack(api)

        with self.assertRaises(AuthExpired):
            await manager.refresh(rejected_token="token-1")
        self.assertIsNone(store.load(USER_ID))

        # после инвалидации нужен новый OAuth, а не повторный refresh
        with self.assertRaises(AuthRequired):
            await manager.get_valid_token()
        self.assertEqual(api.calls["token"], 1)

    async def test_missing_refresh_token_is_auth_expired_without_request(self):
        api = FakeDirectoryAPI()
        _client, _store, manager, _policy = build_stack(api, state=token_state(refresh=None))

        with self.assertRaises(AuthExpired):
            await manager.refresh()
        self.assertEqual(api.calls["token"], 0)

    async def test_refresh_timeout_is_auth_expired(self):
        def _timeout(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        http = httpx.AsyncClient(transport=httpx.MockTransport(_timeout))
        manager = TokenManager(USER_ID, MemoryTokenStore({USER_ID: token_state()}), http, TEST_CONFIG, clock=fixed_clock)

        with self.assertRaises(AuthExpired):
            await manager.refresh()
        await http.aclose()


class RefreshRetryPolicyTest(unittest.IsolatedAsyncioTestCase):
    async def test_401_refreshes_and_retries_once(self):
        api = FakeDirectoryAPI()
        _client, _store, manager, policy = build_stack(api)
        seen: list[str] = []

        async def call(token: str):
            seen.append(token)
            return (200, {"ok": True}) if token == "token-2" else (401, None)

        status, payload = await policy.run(call)

        self.assertEqual(status, 200)
        self.assertEqual(payload, {"ok": True})
        self.assertEqual(seen, ["token-1", "token-2"])

    async def test_second_401_is_returned_as_is(self):
        api = FakeDirectoryAPI()
        _client, _store, _manager, policy = build_stack(api)
        calls = 0

        async def call(token: str):
            nonlocal calls
            calls += 1
            return 401, None

        status, _ = await policy.run(call)

        self.assertEqual(status, 401)
        self.assertEqual(calls, 2)
        self.assertEqual(api.calls["token"], 1)

    async def test_other_statuses_are_not_retried(self):
        api = FakeDirectoryAPI()
        _client, _store, manager, _policy = build_stack(api)
        policy = RefreshRetryPolicy(tokens=manager, max_refreshes=1)
        calls = 0

        async def call(token: str):
            nonlocal calls
            calls += 1
            return 403, None

        status, _ = await policy.run(call)

        self.assertEqual(status, 403)
        self.assertEqual(calls, 1)
        self.assertEqual(api.calls["token"], 0)


if __name__ == "__main__":
    unittest.main()
