import asyncio

import pytest

from mediabridge.playback import PlaybackSession, SessionRegistry, run_periodic_sweep


def _session(clock, **kwargs) -> PlaybackSession:
    return PlaybackSession(item_id=kwargs.pop("item_id", "movie-h264"), start_time=clock(), **kwargs)


def test_register_touch_and_deregister(clock):
    registry = SessionRegistry(clock=clock)
    session = registry.register(_session(clock, item_name="Big Buck Bunny", quality="high"))

    registry.touch(session.session_id, 1000)
    registry.touch(session.session_id, 500)

    assert registry.active_count == 1
    assert registry.get(session.session_id).bytes_transferred == 1500
    assert registry.total_bytes == 1500
    assert registry.total_streams == 1

    assert registry.deregister(session.session_id) is not None
    assert registry.deregister(session.session_id) is None
    assert registry.active_count == 0
    # Totals survive the session.
    assert registry.snapshot() == {"total_streams": 1, "total_bytes": 1500, "active": 0}


def test_bytes_after_deregistration_only_count_globally(clock):
    registry = SessionRegistry(clock=clock)
    session = registry.register(_session(clock))
    registry.deregister(session.session_id)

    registry.touch(session.session_id, 42)
    registry.add_bandwidth(8)

    assert registry.total_bytes == 50
    assert registry.get(session.session_id) is None


def test_get_returns_a_copy(clock):
    registry = SessionRegistry(clock=clock)
    session = registry.register(_session(clock, transcode_reasons=["container remux"]))

    copy = registry.get(session.session_id)
    copy.transcode_reasons.append("mutated")
    copy.bytes_transferred = 99

    stored = registry.get(session.session_id)
    assert stored.transcode_reasons == ["container remux"]
    assert stored.bytes_transferred == 0


def test_list_active_shape(clock):
    registry = SessionRegistry(clock=clock)
    registry.register(_session(clock, item_name="Sintel", is_direct_play=True, client_ip="10.0.0.5"))
    clock.advance(90)

    [entry] = registry.list_active()

    assert entry["itemName"] == "Sintel"
    assert entry["isDirectPlay"] is True
    assert entry["clientIP"] == "10.0.0.5"
    assert entry["duration"] == 90
    assert entry["sessionId"].startswith("stream-")


def test_sweep_removes_only_stale_sessions(clock):
    registry = SessionRegistry(clock=clock)
    old = registry.register(_session(clock, item_id="old"))
    clock.advance(3000)
    fresh = registry.register(_session(clock, item_id="fresh"))
    clock.advance(700)

    assert registry.sweep_stale(3600) == [old.session_id]
    assert registry.sweep_stale(3600) == []
    assert registry.get(fresh.session_id) is not None
    assert registry.get(old.session_id) is None
    # A late close of a swept session is a no-op.
    assert registry.deregister(old.session_id) is None


@pytest.mark.asyncio
async def test_periodic_sweep_runs_until_cancelled(clock):
    registry = SessionRegistry(clock=clock)
    registry.register(_session(clock))
    clock.advance(10)

    task = asyncio.create_task(run_periodic_sweep(registry, 0.01, 5))
    await asyncio.sleep(0.05)
    task.cancel()
    await asyncio.gather(task, return_exceptions=True)

    assert registry.active_count == 0
    assert task.done()
