import asyncio

import pytest

from mediabridge.errors import AuthenticationError, UpstreamTransportError, UpstreamUnavailable
from mediabridge.upstream import UpstreamClient


@pytest.mark.asyncio
async def test_concurrent_callers_share_one_authentication(upstream, fake_jellyfin):
    fake_jellyfin.auth_gate = asyncio.Event()

    waiters = [asyncio.create_task(upstream.ensure_authenticated()) for _ in range(5)]
    await asyncio.sleep(0.05)
    assert fake_jellyfin.auth_calls == 1

    fake_jellyfin.auth_gate.set()
    credentials = await asyncio.gather(*waiters)

    assert fake_jellyfin.auth_calls == 1
    assert {c.token for c in credentials} == {"token-1"}
    assert credentials[0].user_id == "user-1"
    assert credentials[0].user_name == "tester"


@pytest.mark.asyncio
async def test_failed_authentication_reaches_every_waiter(upstream, fake_jellyfin):
    fake_jellyfin.auth_status = 401
    fake_jellyfin.auth_gate = asyncio.Event()

    waiters = [asyncio.create_task(upstream.ensure_authenticated()) for _ in range(3)]
    await asyncio.sleep(0.05)
    fake_jellyfin.auth_gate.set()
    results = await asyncio.gather(*waiters, return_exceptions=True)

    assert fake_jellyfin.auth_calls == 1
    assert all(isinstance(r, AuthenticationError) for r in results)
    assert upstream.credential is None
    assert "401" in upstream.last_auth_error

    # The next call starts a fresh attempt.
    fake_jellyfin.auth_status = 200
    fake_jellyfin.auth_gate = None
    credential = await upstream.ensure_authenticated()
    assert fake_jellyfin.auth_calls == 2
    assert credential.token == "token-2"
    assert upstream.last_auth_error is None


@pytest.mark.asyncio
async def test_cached_credential_is_reused_until_it_expires(upstream, fake_jellyfin, clock):
    first = await upstream.ensure_authenticated()
    clock.advance(1800)
    assert await upstream.ensure_authenticated() is first
    assert fake_jellyfin.auth_calls == 1

    clock.advance(1801)
    assert upstream.needs_authentication()
    second = await upstream.ensure_authenticated()
    assert second.token != first.token
    assert fake_jellyfin.auth_calls == 2


@pytest.mark.asyncio
async def test_authentication_request_shape(upstream, fake_jellyfin):
    await upstream.authenticate()

    request = fake_jellyfin.requests[0]
    assert request.method == "POST"
    assert request.url.path == "/Users/AuthenticateByName"
    authorization = request.headers["x-emby-authorization"]
    assert authorization.startswith("MediaBrowser ")
    assert 'Client="ResoniteAPI"' in authorization
    assert 'DeviceId="jellyfin-resonite-api"' in authorization


@pytest.mark.asyncio
async def test_unreachable_upstream_maps_to_unavailable(upstream, fake_jellyfin):
    fake_jellyfin.auth_status = 500

    with pytest.raises(UpstreamUnavailable):
        await upstream.require_credential()
    with pytest.raises(UpstreamUnavailable):
        await upstream.get_json("/System/Info")


@pytest.mark.asyncio
async def test_rejected_token_triggers_one_reauthentication(upstream, fake_jellyfin):
    await upstream.ensure_authenticated()
    fake_jellyfin.reject_next_token = True

    info = await upstream.system_info()

    assert info["ServerName"] == "fake-jellyfin"
    assert fake_jellyfin.auth_calls == 2
    assert upstream.credential.token == "token-2"


@pytest.mark.asyncio
async def test_transport_errors_are_retried(fake_jellyfin, test_settings, clock):
    settings = test_settings.model_copy(update={"upstream_retry_attempts": 2})
    client = UpstreamClient(settings, transport=fake_jellyfin.transport, clock=clock)
    try:
        await client.ensure_authenticated()
        fake_jellyfin.transport_failures = 1
        assert (await client.system_info())["Version"] == "10.9.11"

        fake_jellyfin.transport_failures = 2
        with pytest.raises(UpstreamTransportError):
            await client.system_info()
    finally:
        await client.aclose()


@pytest.mark.asyncio
async def test_start_never_raises_and_stops_cleanly(fake_jellyfin, test_settings, clock):
    fake_jellyfin.auth_status = 500
    settings = test_settings.model_copy(update={"auth_refresh_interval": 60})
    client = UpstreamClient(settings, transport=fake_jellyfin.transport, clock=clock)

    await client.start()
    assert client.credential is None
    assert client._refresh_task is not None

    await client.aclose()
    assert client._refresh_task is None
    assert client.http.is_closed


@pytest.mark.asyncio
async def test_live_authentication(live_settings):
    client = UpstreamClient(live_settings)
    try:
        credential = await client.ensure_authenticated()
        assert credential.token
        info = await client.system_info()
        assert "Version" in info
    finally:
        await client.aclose()
