# -*- coding: utf-8 -*-
"""
launchhub/storage.py
已推送条目 ID 的持久化（去重表）：
- JsonSeenStore：一个 JSON 数组文件，每次标记整体重写（临时文件 + os.replace 原子替换）
- SqliteSeenStore：aiosqlite 单表，每次标记一条 INSERT
两种实现接口一致：
    await store.load_all() -> set[str]   # 启动时调用一次
    store.has(id) -> bool                # 查内存集合
    await store.mark_seen(id)            # 落盘后才返回
    await store.close()
"""

from __future__ import annotations
import asyncio
import json
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Union

import aiosqlite

from launchhub.utils import now_ms


class StoreError(Exception):
    """状态文件存在但读不出来；启动时视为致命错误。"""


# --------- JSON 文件实现 ---------
class JsonSeenStore:
    def __init__(self, path: Union[str, Path]):
        self._path = Path(path)
        self._seen: Set[str] = set()
        # 保留写入顺序，文件内容稳定便于人工查看
        self._order: List[str] = []

    @property
    def path(self) -> Path:
        return self._path

    def __len__(self) -> int:
        return len(self._seen)

    async def load_all(self) -> Set[str]:
        self._seen.clear()
        self._order.clear()
        if not self._path.exists():
            return set()
        try:
            data = json.loads(self._path.read_text(encoding="utf-8") or "[]")
        except (OSError, ValueError) as e:
            raise StoreError(f"无法读取状态文件 {self._path}: {e}") from e
        if not isinstance(data, list):
            raise StoreError(f"状态文件 {self._path} 不是 JSON 数组")
        for x in data:
            sid = str(x)
            if sid not in self._seen:
                self._seen.add(sid)
                self._order.append(sid)
        return set(self._seen)

    def has(self, item_id: str) -> bool:
        return item_id in self._seen

    async def mark_seen(self, item_id: str) -> None:
        if item_id in self._seen:
            return
        self._seen.add(item_id)
        self._order.append(item_id)
        try:
            await asyncio.to_thread(self._flush, list(self._order))
        except OSError:
            # 没落盘就不算标记过，下轮还能重试
            self._seen.discard(item_id)
            self._order.pop()
            raise

    def _flush(self, ids: List[str]) -> None:
        """
        先写临时文件再 os.replace：崩溃时磁盘上要么是旧内容要么是新内容，
        最多丢最后一条标记，不会把整个文件写坏。
        """
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_name(self._path.name + ".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(ids, f)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, self._path)

    async def close(self) -> None:
        return


# --------- 建表 SQL ---------
SCHEMA_SEEN = """
CREATE TABLE IF NOT EXISTS seen_items (
    id           TEXT PRIMARY KEY,
    ts_seen_utc  INTEGER NOT NULL
);
"""


# --------- SQLite 实现 ---------
class SqliteSeenStore:
    def __init__(self, path: Union[str, Path]):
        self._path = Path(path)
        self._db: Optional[aiosqlite.Connection] = None
        self._seen: Set[str] = set()

    @property
    def path(self) -> Path:
        return self._path

    def __len__(self) -> int:
        return len(self._seen)

    async def _conn(self) -> aiosqlite.Connection:
        if self._db is None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            db = await aiosqlite.connect(str(self._path))
            await db.execute("PRAGMA journal_mode=WAL;")
            # 每次提交都同步落盘
            await db.execute("PRAGMA synchronous=FULL;")
            await db.execute(SCHEMA_SEEN)
            await db.commit()
            self._db = db
        return self._db

    async def load_all(self) -> Set[str]:
        try:
            db = await self._conn()
            self._seen.clear()
            async with db.execute("SELECT id FROM seen_items;") as cur:
                async for row in cur:
                    self._seen.add(row[0])
        except aiosqlite.DatabaseError as e:
            raise StoreError(f"无法读取状态库 {self._path}: {e}") from e
        return set(self._seen)

    def has(self, item_id: str) -> bool:
        return item_id in self._seen

    async def mark_seen(self, item_id: str) -> None:
        if item_id in self._seen:
            return
        db = await self._conn()
        await db.execute(
            "INSERT OR IGNORE INTO seen_items(id, ts_seen_utc) VALUES(?, ?);",
            (item_id, now_ms()),
        )
        await db.commit()
        self._seen.add(item_id)

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None


SeenStore = Union[JsonSeenStore, SqliteSeenStore]


def open_store(cfg: Dict[str, Any]) -> SeenStore:
    """按 storage.backend 选实现；默认 json。"""
    st = cfg.get("storage") or {}
    backend = (st.get("backend") or "json").strip().lower()
    path = st.get("path") or "processed.json"
    if backend == "sqlite":
        return SqliteSeenStore(path)
    if backend == "json":
        return JsonSeenStore(path)
    raise ValueError(f"unknown storage backend: {backend}")
