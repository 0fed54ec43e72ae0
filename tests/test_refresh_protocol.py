"""
End-to-end tests of the credential refresh protocol.

Every call runs through ApiClient -> dispatcher -> failure interceptor with
the backend mocked by respx.
"""

import asyncio
import io
import json

import httpx
import pytest

from mydoctor_client.client import ApiClient
from mydoctor_client.credential_store import Credential, CredentialStore
from mydoctor_client.error_handler import RefreshFailedError, RetryExhaustedError

from conftest import (
    BASE_URL,
    NEW_TOKEN,
    OLD_TOKEN,
    REFRESH_URL,
    api_url,
    wait_until,
)


class TestTransparentRefresh:
    @pytest.mark.asyncio
    async def test_expired_call_is_refreshed_and_replayed(self, client, api_mock, items_route):
        refresh_route = api_mock.post(REFRESH_URL).mock(
            return_value=httpx.Response(200, json={"data": {"token": NEW_TOKEN}})
        )

        payload = await client.get("/items/1")

        assert payload == {"id": "1"}
        assert refresh_route.call_count == 1
        assert items_route.call_count == 2
        assert items_route.calls[0].request.headers["Authorization"] == f"Bearer {OLD_TOKEN}"
        assert items_route.calls[1].request.headers["Authorization"] == f"Bearer {NEW_TOKEN}"
        assert client.store.get().access_token == NEW_TOKEN

    @pytest.mark.asyncio
    async def test_refresh_request_carries_refresh_token_without_bearer(
        self, client, api_mock, items_route
    ):
        refresh_route = api_mock.post(REFRESH_URL).mock(
            return_value=httpx.Response(200, json={"token": NEW_TOKEN})
        )

        await client.get("/items/1")

        refresh_request = refresh_route.calls[0].request
        assert json.loads(refresh_request.content) == {"refreshToken": "refresh-1"}
        assert "Authorization" not in refresh_request.headers

    @pytest.mark.asyncio
    @pytest.mark.parametrize("num_calls", [1, 5, 50])
    async def test_single_refresh_for_concurrent_expiries(
        self, client, api_mock, items_route, num_calls
    ):
        refresh_route = api_mock.post(REFRESH_URL).mock(
            return_value=httpx.Response(200, json={"data": {"token": NEW_TOKEN}})
        )

        results = await asyncio.gather(
            *(client.get(f"/items/{i}") for i in range(num_calls))
        )

        assert refresh_route.call_count == 1
        assert results == [{"id": str(i)} for i in range(num_calls)]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("num_calls", [1, 5, 50])
    async def test_concurrent_expiries_queue_behind_one_driver(
        self, make_client, gated_refresher, items_route, num_calls
    ):
        refresher = gated_refresher(Credential(access_token=NEW_TOKEN))
        client = make_client(refresher)

        calls = asyncio.gather(*(client.get(f"/items/{i}") for i in range(num_calls)))
        await wait_until(
            lambda: client.coordinator.is_refreshing()
            and client.coordinator.get_pending_count() == num_calls - 1
        )
        refresher.release.set()
        results = await calls

        assert len(refresher.calls) == 1
        assert results == [{"id": str(i)} for i in range(num_calls)]

    @pytest.mark.asyncio
    async def test_each_waiter_gets_its_own_payload(
        self, make_client, gated_refresher, items_route
    ):
        """C0 drives the refresh; C1 and C2 expire meanwhile and are replayed."""
        refresher = gated_refresher(Credential(access_token=NEW_TOKEN))
        client = make_client(refresher)

        c0 = asyncio.create_task(client.get("/items/0"))
        await wait_until(client.coordinator.is_refreshing)
        c1 = asyncio.create_task(client.get("/items/1"))
        c2 = asyncio.create_task(client.get("/items/2"))
        await wait_until(lambda: client.coordinator.get_pending_count() == 2)
        refresher.release.set()

        assert await c0 == {"id": "0"}
        assert await c1 == {"id": "1"}
        assert await c2 == {"id": "2"}
        replayed = [
            call.request for call in items_route.calls
            if call.request.headers["Authorization"] == f"Bearer {NEW_TOKEN}"
        ]
        assert sorted(r.url.path for r in replayed) == [
            "/api/items/0", "/api/items/1", "/api/items/2"
        ]

    @pytest.mark.asyncio
    async def test_explicit_refresh_shares_in_flight_refresh(
        self, make_client, gated_refresher, items_route
    ):
        refresher = gated_refresher(Credential(access_token=NEW_TOKEN))
        client = make_client(refresher)

        call = asyncio.create_task(client.get("/items/7"))
        await wait_until(client.coordinator.is_refreshing)
        explicit = asyncio.create_task(client.refresh_credential())
        await wait_until(lambda: client.coordinator.get_pending_count() == 1)
        refresher.release.set()

        assert await call == {"id": "7"}
        assert (await explicit).access_token == NEW_TOKEN
        assert len(refresher.calls) == 1


class TestRefreshFailure:
    @pytest.mark.asyncio
    async def test_transport_error_on_refresh_rejects_driver_and_waiter(
        self, make_client, gated_refresher, items_route, session_file
    ):
        """C0 drives, C1 queues, the refresh call fails at the transport."""
        refresher = gated_refresher(httpx.ConnectError("connection refused"))
        client = make_client(refresher)

        c0 = asyncio.create_task(client.get("/items/0"))
        await wait_until(client.coordinator.is_refreshing)
        c1 = asyncio.create_task(client.get("/items/1"))
        await wait_until(lambda: client.coordinator.get_pending_count() == 1)
        refresher.release.set()

        results = await asyncio.gather(c0, c1, return_exceptions=True)

        assert all(isinstance(r, RefreshFailedError) for r in results)
        assert isinstance(results[0].__cause__, httpx.ConnectError)
        assert client.store.get() is None
        assert CredentialStore(session_file).get() is None
        # Nothing was replayed
        assert items_route.call_count == 2

    @pytest.mark.asyncio
    async def test_rejected_refresh_clears_session(self, client, api_mock, items_route):
        api_mock.post(REFRESH_URL).mock(
            return_value=httpx.Response(401, json={"message": "Refresh token revoked"})
        )

        with pytest.raises(RefreshFailedError) as excinfo:
            await client.get("/items/1")

        assert isinstance(excinfo.value.__cause__, httpx.HTTPStatusError)
        assert client.store.get() is None
        assert client.store.get_user() is None

    @pytest.mark.asyncio
    async def test_refresh_without_token_in_body_fails(self, client, api_mock, items_route):
        api_mock.post(REFRESH_URL).mock(
            return_value=httpx.Response(200, json={"data": {"user": {"id": "u-1"}}})
        )

        with pytest.raises(RefreshFailedError):
            await client.get("/items/1")

        assert client.store.get() is None


class TestNoRecursion:
    @pytest.mark.asyncio
    async def test_unauthorized_refresh_call_is_surfaced_unmodified(self, client, api_mock):
        """Issuing the refresh endpoint through the pipeline never refreshes."""
        refresh_route = api_mock.post(REFRESH_URL).mock(
            return_value=httpx.Response(401, json={"message": "invalid"})
        )

        with pytest.raises(httpx.HTTPStatusError) as excinfo:
            await client.post("/auth/refresh-token", json={"refreshToken": "x"})

        assert not isinstance(excinfo.value, RetryExhaustedError)
        assert excinfo.value.response.status_code == 401
        assert refresh_route.call_count == 1
        assert client.coordinator.get_status()["stats"]["total"] == 0
        assert client.store.get().access_token == OLD_TOKEN


class TestNoDoubleRetry:
    @pytest.mark.asyncio
    async def test_second_expiry_after_replay_is_surfaced(self, client, api_mock):
        profile_route = api_mock.get(api_url("/users/me")).mock(
            return_value=httpx.Response(401, json={"message": "Token expired"})
        )
        refresh_route = api_mock.post(REFRESH_URL).mock(
            return_value=httpx.Response(200, json={"data": {"token": NEW_TOKEN}})
        )

        with pytest.raises(RetryExhaustedError) as excinfo:
            await client.get("/users/me")

        assert excinfo.value.response.status_code == 401
        assert isinstance(excinfo.value, httpx.HTTPStatusError)
        assert refresh_route.call_count == 1
        assert profile_route.call_count == 2
        # The refresh itself worked, so the session stays
        assert client.store.get().access_token == NEW_TOKEN


class TestPassThrough:
    @pytest.mark.asyncio
    async def test_other_statuses_are_not_intercepted(self, client, api_mock):
        api_mock.get(api_url("/orders/9")).mock(
            return_value=httpx.Response(404, json={"message": "Not found"})
        )
        refresh_route = api_mock.post(REFRESH_URL)

        with pytest.raises(httpx.HTTPStatusError) as excinfo:
            await client.get("/orders/9")

        assert excinfo.value.response.status_code == 404
        assert refresh_route.call_count == 0

    @pytest.mark.asyncio
    async def test_transport_errors_are_not_intercepted(self, client, api_mock):
        api_mock.get(api_url("/orders")).mock(side_effect=httpx.ReadTimeout("timed out"))

        with pytest.raises(httpx.ReadTimeout):
            await client.get("/orders")

        assert client.store.get().access_token == OLD_TOKEN

    @pytest.mark.asyncio
    async def test_anonymous_unauthorized_call_is_surfaced(self, session_file, api_mock):
        login_route = api_mock.post(api_url("/auth/login")).mock(
            return_value=httpx.Response(401, json={"message": "Invalid credentials"})
        )
        async with ApiClient(base_url=BASE_URL, store=CredentialStore(session_file)) as client:
            with pytest.raises(httpx.HTTPStatusError) as excinfo:
                await client.post("/auth/login", json={"email": "a@b.c", "password": "x"})

        assert not isinstance(excinfo.value, RefreshFailedError)
        assert excinfo.value.response.status_code == 401
        assert login_route.call_count == 1

    @pytest.mark.asyncio
    async def test_payload_decoding(self, client, api_mock):
        api_mock.get(api_url("/health")).mock(return_value=httpx.Response(200, text="ok"))
        api_mock.delete(api_url("/favorites/3")).mock(return_value=httpx.Response(204))

        assert await client.get("/health") == "ok"
        assert await client.delete("/favorites/3") is None


def _body_length_when_fresh(request: httpx.Request) -> httpx.Response:
    """401 unless sent with the new token, then the received body length."""
    body = request.read()
    if request.headers.get("Authorization") != f"Bearer {NEW_TOKEN}":
        return httpx.Response(401, json={"message": "Token expired"})
    return httpx.Response(200, json={"len": len(body)})


class TestBodyReplay:
    @pytest.mark.asyncio
    async def test_async_streamed_body_is_resent_on_replay(self, client, api_mock):
        api_mock.post(REFRESH_URL).mock(
            return_value=httpx.Response(200, json={"data": {"token": NEW_TOKEN}})
        )
        raw_route = api_mock.post(api_url("/raw")).mock(side_effect=_body_length_when_fresh)

        async def chunks():
            yield b"abc"
            yield b"def"

        payload = await client.post("/raw", content=chunks())

        assert payload == {"len": 6}
        assert [call.request.content for call in raw_route.calls] == [b"abcdef", b"abcdef"]

    @pytest.mark.asyncio
    async def test_sync_iterator_body_is_resent_on_replay(self, client, api_mock):
        api_mock.post(REFRESH_URL).mock(
            return_value=httpx.Response(200, json={"data": {"token": NEW_TOKEN}})
        )
        raw_route = api_mock.post(api_url("/raw")).mock(side_effect=_body_length_when_fresh)

        payload = await client.post("/raw", content=iter([b"abc", b"def"]))

        assert payload == {"len": 6}
        assert raw_route.calls[1].request.content == b"abcdef"

    @pytest.mark.asyncio
    async def test_upload_is_replayed_with_full_multipart_body(self, client, api_mock):
        refresh_route = api_mock.post(REFRESH_URL).mock(
            return_value=httpx.Response(200, json={"data": {"token": NEW_TOKEN}})
        )
        upload_route = api_mock.post(api_url("/upload/pharmacy")).mock(
            side_effect=_body_length_when_fresh
        )

        payload = await client.upload(
            "/upload/pharmacy",
            files={"file": ("logo.png", io.BytesIO(b"logo-bytes"), "image/png")},
            fields={"type": "logo"},
        )

        assert refresh_route.call_count == 1
        assert upload_route.call_count == 2
        first, replayed = (call.request for call in upload_route.calls)
        assert first.headers["Authorization"] == f"Bearer {OLD_TOKEN}"
        assert replayed.headers["Authorization"] == f"Bearer {NEW_TOKEN}"
        assert replayed.headers["Content-Type"].startswith("multipart/form-data; boundary=")
        assert b"logo-bytes" in replayed.content
        assert b'name="type"' in replayed.content
        assert len(replayed.content) == len(first.content)
        assert payload == {"len": len(replayed.content)}
