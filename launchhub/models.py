# -*- coding: utf-8 -*-
"""
models.py
定义 feed 条目与加工后条目的数据模型。
CandidateItem 由 collector 产出，字段抓取后不再修改；
EnrichedItem 由 enricher 每条构造一次，交给 notifier 消费一次。
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class CreatorInfo:
    # 新版 feed 直接内嵌的创建者信息（metadata.creator）
    handle: str = ""
    followers: int = 0
    smart_followers: int = 0


@dataclass(frozen=True)
class CandidateItem:
    # feed 内唯一的条目ID（去重主键）
    id: str

    # 代币信息：符号、显示名、合约地址
    symbol: str = ""
    name: str = ""
    address: str = ""

    # 旧版 feed：指向元数据的 URI（ipfs:// 或 http(s)://）
    metadata_uri: Optional[str] = None
    # 新版 feed：内嵌的元数据对象（compare=False，dict 不可哈希）
    metadata: Optional[Dict[str, Any]] = field(default=None, compare=False, hash=False)

    # feed 自带的图片链接、创建者信息、时间戳（均可缺省）
    image_url: str = ""
    creator: Optional[CreatorInfo] = None
    timestamp: Optional[float] = None

    @property
    def has_token_info(self) -> bool:
        """没有任何代币字段 => 没东西可推"""
        return bool(self.symbol or self.name or self.address)


@dataclass
class EnrichedItem:
    item: CandidateItem

    image_url: str = ""
    creator_handle: str = ""
    followers: int = 0
    smart_followers: int = 0
    # 取不到一律为 0
    reputation: float = 0
