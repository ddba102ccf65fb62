"""
launchhub/enricher.py
条目加工：元数据 -> 图片 -> 创建者身份 -> 声誉分
每一步单独兜底，任何一步失败都只退回默认值（"" / 0），不会让整条失败。
"""

from __future__ import annotations
from typing import Any, Dict, List, Optional, Tuple

import httpx

from launchhub.models import CandidateItem, EnrichedItem
from launchhub.utils import is_http_url, to_int


DEFAULT_IPFS_GATEWAYS = [
    "https://ipfs.io/ipfs/",
    "https://cloudflare-ipfs.com/ipfs/",
    "https://gateway.pinata.cloud/ipfs/",
    "https://dweb.link/ipfs/",
]


def ipfs_path(uri: Optional[str]) -> Optional[str]:
    """
    从内容寻址 URI 中取出 "<cid>/<path>" 部分；不是 IPFS 地址返回 None。
    支持 ipfs://<cid>、ipfs://ipfs/<cid>、https://任意网关/ipfs/<cid>
    """
    if not uri:
        return None
    u = uri.strip()
    if u.lower().startswith("ipfs://"):
        rest = u[len("ipfs://"):]
        if rest.startswith("ipfs/"):
            rest = rest[len("ipfs/"):]
        return rest.lstrip("/") or None
    if is_http_url(u) and "/ipfs/" in u:
        rest = u.split("/ipfs/", 1)[1]
        return rest.lstrip("/") or None
    return None


class Enricher:
    def __init__(self, cfg: Dict[str, Any], client: Optional[httpx.AsyncClient] = None):
        ecfg = cfg.get("enrichment") or {}
        self._timeout = float(cfg.get("http_timeout_sec", 10))
        self._gateways: List[str] = list(ecfg.get("ipfs_gateways") or DEFAULT_IPFS_GATEWAYS)
        self._identity_url: str = ecfg.get("identity_url") or ""
        self._reputation_url: str = ecfg.get("reputation_url") or ""
        self._client = client
        self._own_client = client is None

    def _client_get(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self._timeout, headers={"User-Agent": "launch-hub/1.0"}
            )
        return self._client

    async def close(self):
        if self._own_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    # --------------- 主入口 ---------------

    async def enrich(self, item: CandidateItem) -> EnrichedItem:
        """不抛异常；每一步的失败都在各自内部吞掉。"""
        meta = await self.resolve_metadata(item)
        image = self.pick_image(meta, item)
        handle, followers, smart = await self.lookup_identity(item)
        # 没有 handle 就不去查声誉
        reputation = await self.lookup_reputation(handle) if handle else 0
        return EnrichedItem(
            item=item,
            image_url=image,
            creator_handle=handle,
            followers=followers,
            smart_followers=smart,
            reputation=reputation,
        )

    # --------------- 元数据 ---------------

    async def _get_json(self, url: str) -> Optional[Dict[str, Any]]:
        try:
            r = await self._client_get().get(url, timeout=self._timeout)
            r.raise_for_status()
            data = r.json()
        except (httpx.HTTPError, ValueError) as e:
            print(f"[enricher] GET {url} 失败: {e!r}")
            return None
        return data if isinstance(data, dict) else None

    def metadata_urls(self, uri: str) -> List[str]:
        """按顺序尝试的地址：各网关 + 原始 URI 兜底"""
        urls: List[str] = []
        path = ipfs_path(uri)
        if path:
            for gw in self._gateways:
                urls.append(gw.rstrip("/") + "/" + path)
        if is_http_url(uri) and uri not in urls:
            urls.append(uri)
        return urls

    async def resolve_metadata(self, item: CandidateItem) -> Dict[str, Any]:
        if not item.metadata_uri:
            return dict(item.metadata or {})
        for url in self.metadata_urls(item.metadata_uri):
            data = await self._get_json(url)
            if data is not None:
                # 内嵌字段打底，拉到的元数据覆盖
                return {**(item.metadata or {}), **data}
        print(f"[enricher] 元数据全部失败 id={item.id} uri={item.metadata_uri}")
        return dict(item.metadata or {})

    @staticmethod
    def pick_image(meta: Dict[str, Any], item: CandidateItem) -> str:
        """元数据里的图片优先，其次 feed 自带；只接受绝对 http(s) 链接"""
        for cand in (meta.get("image"), meta.get("imageUrl"), meta.get("image_uri"), item.image_url):
            if isinstance(cand, str) and is_http_url(cand):
                return cand.strip()
        return ""

    # --------------- 创建者身份 ---------------

    async def lookup_identity(self, item: CandidateItem) -> Tuple[str, int, int]:
        """
        新版 feed 自带 creator，直接用；
        否则拿合约地址去身份服务查。失败一律 ("", 0, 0)。
        """
        if item.creator is not None:
            c = item.creator
            return c.handle, c.followers, c.smart_followers
        if not self._identity_url or not item.address:
            return "", 0, 0
        try:
            r = await self._client_get().get(
                self._identity_url, params={"address": item.address}, timeout=self._timeout
            )
            r.raise_for_status()
            data = r.json()
        except (httpx.HTTPError, ValueError) as e:
            print(f"[enricher] identity 查询失败 address={item.address}: {e!r}")
            return "", 0, 0
        if not isinstance(data, dict):
            return "", 0, 0
        # 有的服务把字段包在 creator / data 里
        for key in ("creator", "data"):
            if isinstance(data.get(key), dict):
                data = data[key]
                break
        handle = data.get("twitterUsername") or data.get("username") or data.get("handle") or ""
        return (
            str(handle).strip(),
            to_int(data.get("followersCount")),
            to_int(data.get("smartFollowersCount")),
        )

    # --------------- 声誉分 ---------------

    async def lookup_reputation(self, handle: str) -> float:
        if not handle or not self._reputation_url:
            return 0
        try:
            r = await self._client_get().post(
                self._reputation_url,
                json={"usernames": [handle]},
                timeout=self._timeout,
            )
            r.raise_for_status()
            data = r.json()
            score = (data.get("scores") or {}).get(handle.lower())
        except (httpx.HTTPError, ValueError, AttributeError) as e:
            print(f"[enricher] ethos 查询失败 @{handle}: {e!r}")
            return 0
        if isinstance(score, bool) or not isinstance(score, (int, float)):
            return 0
        return score
