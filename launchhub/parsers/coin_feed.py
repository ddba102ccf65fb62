# -*- coding: utf-8 -*-
"""
coin_feed.py
上游 coin feed 解析器：不管哪种形状，统一产出 CandidateItem。

两种条目形状：
1) 内嵌形（新版）：
    {
        "id": "...", "symbol": "ABC", "name": "Abc", "address": "Mint...",
        "imageUrl": "https://...",
        "metadata": {"creator": {"twitterUsername": "x", "followersCount": 1, "smartFollowersCount": 0}}
    }
2) 指针形（旧版）：元数据只给一个 URI，代币字段可能包在 "token" 里
    {
        "id": "...",
        "token": {"symbol": "ABC", "name": "Abc", "mint": "Mint...", "uri": "ipfs://Qm..."},
        "timestamp": 1700000000
    }
"""

from typing import Any, Dict, List, Optional

from launchhub.models import CandidateItem, CreatorInfo
from launchhub.utils import to_int


_ID_KEYS = ("id", "signature", "txHash")
_URI_KEYS = ("uri", "metadataUri", "metadata_uri")


def _first(d: Dict[str, Any], *keys: str) -> Any:
    for k in keys:
        v = d.get(k)
        if v not in (None, ""):
            return v
    return None


def _str(v: Any) -> str:
    return "" if v is None else str(v).strip()


def _parse_creator(obj: Any) -> Optional[CreatorInfo]:
    if not isinstance(obj, dict):
        return None
    return CreatorInfo(
        handle=_str(_first(obj, "twitterUsername", "username", "handle")),
        followers=to_int(obj.get("followersCount")),
        smart_followers=to_int(obj.get("smartFollowersCount")),
    )


def _parse_timestamp(v: Any) -> Optional[float]:
    if isinstance(v, bool):
        return None
    if isinstance(v, (int, float)):
        return float(v)
    if isinstance(v, str) and v.strip():
        try:
            return float(v)
        except ValueError:
            pass
        try:
            from datetime import datetime
            return datetime.fromisoformat(v.replace("Z", "+00:00")).timestamp()
        except ValueError:
            return None
    return None


def parse_item(raw: Any) -> Optional[CandidateItem]:
    """
    单条解析。没有 id 的条目无法去重，直接丢弃（返回 None）。
    """
    if not isinstance(raw, dict):
        return None
    item_id = _first(raw, *_ID_KEYS)
    if item_id is None:
        return None

    # 旧版把代币字段包在 "token" 里；token 为空 => 没有代币信息
    if "token" in raw:
        tok = raw.get("token")
        tok = tok if isinstance(tok, dict) else {}
    else:
        tok = raw

    metadata = tok.get("metadata")
    metadata_uri = _first(tok, *_URI_KEYS)
    inline: Optional[Dict[str, Any]] = None
    creator: Optional[CreatorInfo] = None

    if isinstance(metadata, str) and metadata.strip():
        metadata_uri = metadata_uri or metadata.strip()
    elif isinstance(metadata, dict):
        if metadata.get("creator") is not None:
            creator = _parse_creator(metadata.get("creator"))
        # metadata 里也可能只有一个 uri 指针
        metadata_uri = metadata_uri or _first(metadata, *_URI_KEYS)
        rest = {k: v for k, v in metadata.items() if k not in ("creator",) + _URI_KEYS}
        inline = rest or None

    if creator is None and isinstance(tok.get("creator"), dict):
        creator = _parse_creator(tok.get("creator"))

    return CandidateItem(
        id=_str(item_id),
        symbol=_str(_first(tok, "symbol", "ticker")),
        name=_str(tok.get("name")),
        address=_str(_first(tok, "address", "mint", "contractAddress", "ca")),
        metadata_uri=_str(metadata_uri) or None,
        metadata=inline,
        image_url=_str(_first(tok, "imageUrl", "image_url", "image")),
        creator=creator,
        timestamp=_parse_timestamp(_first(raw, "timestamp", "createdAt", "created_at")),
    )


def parse_feed(obj: Any, items_field: str = "tokens") -> Optional[List[CandidateItem]]:
    """
    整包解析。

    参数:
        obj: 解析后的 JSON
        items_field: 存放条目数组的字段名

    返回:
        CandidateItem 列表（保持 feed 原顺序，即新的在前）；
        形状不对（不是对象 / 字段不是数组）返回 None，由调用方按“本轮为空”处理
    """
    if not isinstance(obj, dict):
        return None
    items = obj.get(items_field)
    if not isinstance(items, list):
        return None

    out: List[CandidateItem] = []
    for raw in items:
        item = parse_item(raw)
        if item is None:
            print(f"[coin_feed] 跳过无 id 条目: {str(raw)[:120]}")
            continue
        out.append(item)
    return out
