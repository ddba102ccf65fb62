# -*- coding: utf-8 -*-
"""
tests/test_collector.py
fetch() 永不抛异常：5xx 冷却后返回空，其他错误直接返回空。
"""
import asyncio

import httpx

from launchhub.collector import FeedCollector

CFG = {"feed_url": "https://feed.example/api/coins", "server_error_cooldown_sec": 1.0}


def _fetch(handler, cfg=CFG):
    sleeps = []

    async def fake_sleep(sec):
        sleeps.append(sec)

    async def run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await FeedCollector(cfg, client=client, sleep=fake_sleep).fetch()

    return asyncio.run(run()), sleeps


def test_fetch_ok():
    def handler(request):
        assert str(request.url) == CFG["feed_url"]
        return httpx.Response(200, json={"tokens": [
            {"id": "3", "symbol": "C"}, {"id": "2", "symbol": "B"}, {"id": "1", "symbol": "A"},
        ]})

    items, sleeps = _fetch(handler)
    assert [i.id for i in items] == ["3", "2", "1"]
    assert sleeps == []


def test_server_error_cools_down():
    items, sleeps = _fetch(lambda request: httpx.Response(503, text="down"))
    assert items == []
    assert sleeps == [1.0]


def test_client_error_returns_immediately():
    items, sleeps = _fetch(lambda request: httpx.Response(404, text="nope"))
    assert items == []
    assert sleeps == []


def test_malformed_shape():
    items, sleeps = _fetch(lambda request: httpx.Response(200, json={"tokens": "x"}))
    assert items == []
    assert sleeps == []


def test_invalid_json():
    items, _ = _fetch(lambda request: httpx.Response(200, text="<html>oops</html>"))
    assert items == []


def test_network_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    items, sleeps = _fetch(handler)
    assert items == []
    assert sleeps == []


def test_custom_items_field():
    cfg = {**CFG, "items_field": "coins"}
    items, _ = _fetch(lambda request: httpx.Response(200, json={"coins": [{"id": "a", "name": "A"}]}), cfg)
    assert [i.id for i in items] == ["a"]


def test_out_of_range_count_does_not_lose_the_snapshot():
    # json 把 1e400 读成 inf
    body = (b'{"tokens": [{"id": "good", "symbol": "G"},'
            b' {"id": "bad", "symbol": "B", "metadata": {"creator":'
            b' {"twitterUsername": "b", "followersCount": 1e400}}}]}')
    items, sleeps = _fetch(lambda request: httpx.Response(200, content=body))
    assert [i.id for i in items] == ["good", "bad"]
    assert items[1].creator.followers == 0
    assert sleeps == []


def test_close_only_closes_own_client():
    async def run():
        own = FeedCollector(CFG)
        created = own._client_get()
        await own.close()

        async with httpx.AsyncClient() as shared:
            borrowed = FeedCollector(CFG, client=shared)
            await borrowed.close()
            shared_open = not shared.is_closed
        return created.is_closed, shared_open

    assert asyncio.run(run()) == (True, True)
