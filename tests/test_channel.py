import asyncio
import threading

import pytest

from backplane import events as ev
from backplane.channel import ChannelClosed, EventChannel

from conftest import make_record, make_sample


def test_stats_coalesce_to_newest_and_move_to_back():
    channel = EventChannel()
    channel.put(ev.StatsSampled("a", make_sample(1.0)))
    channel.put(ev.ContainerAdded(make_record("x")))
    channel.put(ev.StatsSampled("a", make_sample(2.0)))

    batch = channel.drain()
    assert [type(e) for e in batch] == [ev.ContainerAdded, ev.StatsSampled]
    assert batch[1].sample.timestamp == 2.0
    assert channel.coalesced == 1


def test_stats_unavailable_replaces_pending_sample():
    channel = EventChannel()
    channel.put(ev.StatsSampled("a", make_sample(1.0)))
    channel.put(ev.StatsUnavailable("a", "gone"))
    channel.put(ev.StatsSampled("b", make_sample(1.0)))
    assert [type(e) for e in channel.drain()] == [ev.StatsUnavailable, ev.StatsSampled]


def test_ordered_events_are_never_dropped():
    channel = EventChannel()
    for i in range(500):
        channel.put(ev.LogLineReceived("logs-1", str(i)))
    channel.put(ev.HostMetricsSampled(None))
    channel.put(ev.HostMetricsSampled(None))

    lines = [e.line for e in channel.drain() if isinstance(e, ev.LogLineReceived)]
    assert lines == [str(i) for i in range(500)]


def test_drain_respects_limit():
    channel = EventChannel()
    for i in range(5):
        channel.put(ev.SelectionMoved(i))
    assert len(channel.drain(3)) == 3
    assert channel.pending == 2


def test_discard_drops_matching_events():
    channel = EventChannel()
    channel.put(ev.LogLineReceived("logs-1", "a"))
    channel.put(ev.LogLineReceived("logs-2", "b"))
    channel.put(ev.SelectionMoved(1))

    dropped = channel.discard(lambda e: getattr(e, "session_id", None) == "logs-1")
    assert dropped == 1
    assert [type(e) for e in channel.drain()] == [ev.LogLineReceived, ev.SelectionMoved]


def test_put_after_close_is_ignored():
    channel = EventChannel()
    channel.close()
    channel.put(ev.SelectionMoved(1))
    assert channel.pending == 0


def test_get_raises_once_closed_and_empty():
    async def scenario():
        channel = EventChannel()
        channel.put(ev.SelectionMoved(1))
        channel.close()
        assert isinstance(await channel.get(), ev.SelectionMoved)
        with pytest.raises(ChannelClosed):
            await channel.get()

    asyncio.run(scenario())


def test_wait_times_out_when_idle():
    async def scenario():
        channel = EventChannel()
        assert await channel.wait(0.01) is False
        channel.put(ev.SelectionMoved(1))
        assert await channel.wait(0.01) is True

    asyncio.run(scenario())


def test_put_threadsafe_wakes_the_consumer():
    async def scenario():
        channel = EventChannel(asyncio.get_running_loop())
        thread = threading.Thread(target=channel.put_threadsafe, args=(ev.LogLineReceived("logs-1", "hi"),))
        thread.start()
        event = await asyncio.wait_for(channel.get(), 1.0)
        thread.join()
        assert event.line == "hi"

    asyncio.run(scenario())


def test_put_threadsafe_requires_a_loop():
    with pytest.raises(RuntimeError):
        EventChannel().put_threadsafe(ev.SelectionMoved(1))
