from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional

import httpx

from launchhub.models import CandidateItem
from launchhub.parsers.coin_feed import parse_feed

# -------------------- 单源：coin feed 拉取 --------------------

class FeedCollector:
    """
    拉取上游 feed 的当前快照。fetch() 从不抛异常：
    - 网络错误 / 非 JSON / 形状不对 => 返回 []
    - 5xx 额外冷却 server_error_cooldown_sec 再返回 []，避免连续打挂掉的上游
    """

    def __init__(self, cfg: Dict[str, Any], client: Optional[httpx.AsyncClient] = None,
                 sleep=asyncio.sleep):
        self._url = cfg.get("feed_url", "")
        self._items_field = cfg.get("items_field") or "tokens"
        self._timeout = float(cfg.get("http_timeout_sec", 10))
        self._cooldown = float(cfg.get("server_error_cooldown_sec", 1.0))
        self._client = client
        self._own_client = client is None
        self._sleep = sleep

    def _client_get(self) -> httpx.AsyncClient:
        """没传 client 时自建一个并复用，close() 时关闭。"""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self._timeout, headers={"User-Agent": "launch-hub/1.0"}
            )
        return self._client

    async def close(self):
        if self._own_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    async def fetch(self) -> List[CandidateItem]:
        try:
            resp = await self._client_get().get(self._url, timeout=self._timeout)
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            print(f"[collector] fetch error status={status} {self._url}")
            # 上游 5xx：冷却一下
            if status >= 500:
                await self._sleep(self._cooldown)
            return []
        except httpx.HTTPError as e:
            print(f"[collector] fetch error: {e!r}")
            return []
        except ValueError as e:
            # resp.json() 解析失败
            print(f"[collector] 非 JSON 响应: {e}")
            return []

        items = parse_feed(data, self._items_field)
        if items is None:
            print(f"[collector] invalid JSON shape (缺少数组字段 {self._items_field!r}): {str(data)[:200]}")
            return []
        return items
