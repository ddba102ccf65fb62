# -*- coding: utf-8 -*-
"""
tests/test_poller.py
一轮 poll 的行为：旧的先发、第二轮不重复、无代币信息直接跳过、失败不标记。
"""
import asyncio

from launchhub.main import Poller
from launchhub.models import CandidateItem, EnrichedItem
from launchhub.storage import JsonSeenStore


class FakeCollector:
    def __init__(self, items):
        self.items = list(items)

    async def fetch(self):
        return list(self.items)


class FakeEnricher:
    def __init__(self):
        self.calls = []

    async def enrich(self, item):
        self.calls.append(item.id)
        return EnrichedItem(item=item, creator_handle="h")


class FakeNotifier:
    def __init__(self, results=None):
        self.delivered = []
        self.results = list(results or [])

    async def deliver(self, caption, image_url=""):
        self.delivered.append(caption)
        return self.results.pop(0) if self.results else True


def _items(*ids):
    return [CandidateItem(id=i, symbol=i.upper(), name=i, address="Mint" + i) for i in ids]


def _poller(tmp_path, items, notifier=None, max_attempts=3):
    store = JsonSeenStore(tmp_path / "processed.json")
    enricher = FakeEnricher()
    notifier = notifier or FakeNotifier()
    poller = Poller(store, FakeCollector(items), enricher, notifier,
                    interval_ms=10, max_delivery_attempts=max_attempts)
    return poller, store, enricher, notifier


def test_oldest_first(tmp_path):
    poller, store, enricher, notifier = _poller(tmp_path, _items("c", "b", "a"))
    assert asyncio.run(poller.poll_once()) == 3
    assert enricher.calls == ["a", "b", "c"]
    assert ["$A" in c for c in notifier.delivered] == [True, False, False]
    assert "$C" in notifier.delivered[2]


def test_second_cycle_is_idempotent(tmp_path):
    poller, store, enricher, notifier = _poller(tmp_path, _items("c", "b", "a"))

    async def run():
        await store.load_all()
        await poller.poll_once()
        return await poller.poll_once()

    assert asyncio.run(run()) == 0
    assert len(notifier.delivered) == 3


def test_seen_survives_restart(tmp_path):
    poller, store, _, _ = _poller(tmp_path, _items("x"))
    asyncio.run(poller.poll_once())

    restarted, store2, enricher2, notifier2 = _poller(tmp_path, _items("x"))

    async def run():
        await store2.load_all()
        return await restarted.poll_once()

    assert asyncio.run(run()) == 0
    assert store2.has("x")
    assert enricher2.calls == []
    assert notifier2.delivered == []


def test_missing_token_info_is_marked_without_calls(tmp_path):
    empty = CandidateItem(id="tx0")
    poller, store, enricher, notifier = _poller(tmp_path, [empty])
    asyncio.run(poller.poll_once())
    assert store.has("tx0")
    assert enricher.calls == []
    assert notifier.delivered == []


def test_failed_delivery_is_retried_then_given_up(tmp_path):
    notifier = FakeNotifier(results=[False, False, True])
    poller, store, enricher, _ = _poller(tmp_path, _items("a"), notifier=notifier, max_attempts=2)

    asyncio.run(poller.poll_once())
    assert not store.has("a")

    asyncio.run(poller.poll_once())
    # 连续两轮失败 => 判定为不可投递
    assert store.has("a")

    asyncio.run(poller.poll_once())
    assert len(notifier.delivered) == 2


def test_failed_delivery_recovers(tmp_path):
    notifier = FakeNotifier(results=[False, True])
    poller, store, _, _ = _poller(tmp_path, _items("a"), notifier=notifier)
    asyncio.run(poller.poll_once())
    asyncio.run(poller.poll_once())
    assert store.has("a")
    assert len(notifier.delivered) == 2


def test_item_error_does_not_mark_or_stop_cycle(tmp_path):
    class FlakyEnricher(FakeEnricher):
        async def enrich(self, item):
            if item.id == "a":
                raise RuntimeError("boom")
            return await super().enrich(item)

    poller, store, _, notifier = _poller(tmp_path, _items("b", "a"))
    poller.enricher = FlakyEnricher()
    asyncio.run(poller.poll_once())
    assert not store.has("a")
    assert store.has("b")
    assert len(notifier.delivered) == 1


def test_mark_happens_after_own_delivery(tmp_path):
    order = []

    class TracingStore(JsonSeenStore):
        async def mark_seen(self, item_id):
            order.append(("mark", item_id))
            await super().mark_seen(item_id)

    class TracingNotifier(FakeNotifier):
        async def deliver(self, caption, image_url=""):
            order.append(("deliver", caption.split("$")[1][0]))
            return True

    poller, _, _, _ = _poller(tmp_path, _items("b", "a"), notifier=TracingNotifier())
    poller.store = TracingStore(tmp_path / "p2.json")
    asyncio.run(poller.poll_once())
    assert order == [("deliver", "A"), ("mark", "a"), ("deliver", "B"), ("mark", "b")]


def test_run_forever_never_overlaps(tmp_path):
    active = []
    peak = []

    class SlowCollector(FakeCollector):
        async def fetch(self):
            active.append(1)
            peak.append(len(active))
            await asyncio.sleep(0.03)
            active.pop()
            return []

    poller, _, _, _ = _poller(tmp_path, [])
    poller.collector = SlowCollector([])

    async def run():
        task = asyncio.create_task(poller.run_forever())
        await asyncio.sleep(0.2)
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    asyncio.run(run())
    assert len(peak) >= 2
    assert max(peak) == 1


def test_repeated_id_in_one_snapshot_counts_one_cycle(tmp_path):
    notifier = FakeNotifier(results=[False, False, False])
    poller, store, enricher, _ = _poller(tmp_path, _items("a", "a"), notifier=notifier, max_attempts=2)

    asyncio.run(poller.poll_once())
    assert not store.has("a")
    assert len(notifier.delivered) == 1

    asyncio.run(poller.poll_once())
    assert store.has("a")
    assert len(notifier.delivered) == 2


def test_failure_counts_dropped_when_item_leaves_feed(tmp_path):
    notifier = FakeNotifier(results=[False])
    poller, store, _, _ = _poller(tmp_path, _items("a"), notifier=notifier)
    asyncio.run(poller.poll_once())
    assert poller._failures == {"a": 1}

    poller.collector = FakeCollector(_items("b"))
    asyncio.run(poller.poll_once())
    assert poller._failures == {}
    assert store.has("b")


def test_failure_counts_kept_when_fetch_returns_nothing(tmp_path):
    notifier = FakeNotifier(results=[False])
    poller, _, _, _ = _poller(tmp_path, _items("a"), notifier=notifier)
    asyncio.run(poller.poll_once())

    poller.collector = FakeCollector([])
    asyncio.run(poller.poll_once())
    assert poller._failures == {"a": 1}


def test_unpersisted_mark_is_retried_next_cycle(tmp_path):
    class FlakyDiskStore(JsonSeenStore):
        def __init__(self, path):
            super().__init__(path)
            self.fail_next = True

        def _flush(self, ids):
            if self.fail_next:
                self.fail_next = False
                raise OSError("disk full")
            super()._flush(ids)

    poller, _, _, notifier = _poller(tmp_path, _items("a"))
    store = FlakyDiskStore(tmp_path / "flaky.json")
    poller.store = store

    asyncio.run(poller.poll_once())
    assert not store.has("a")

    asyncio.run(poller.poll_once())
    assert store.has("a")
    assert len(notifier.delivered) == 2
