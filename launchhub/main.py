# launchhub/main.py
# 串起：collector -> (去重) -> enricher -> notifier -> storage
# 每轮：拉 feed，倒序（旧的先发），逐条处理，完整跑完再等下一轮

from __future__ import annotations
import asyncio
import os
import time
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv

from launchhub.collector import FeedCollector
from launchhub.enricher import DEFAULT_IPFS_GATEWAYS, Enricher
from launchhub.models import CandidateItem
from launchhub.notifier import Notifier, build_notifier, format_caption
from launchhub.storage import SeenStore, StoreError, open_store


ROOT = Path(__file__).resolve().parents[1]

DEFAULT_CFG = {
    "feed_url": "https://believe.xultra.fun/api/coins",
    "items_field": "tokens",
    "poll_interval_ms": 3000,
    "http_timeout_sec": 10,
    "server_error_cooldown_sec": 1.0,
    "max_delivery_attempts": 3,
    "telegram": {
        "token": "",
        "chat_id": "",
        "thread_id": "",
        "api_base": "https://api.telegram.org",
    },
    "enrichment": {
        "ipfs_gateways": DEFAULT_IPFS_GATEWAYS,
        "identity_url": "",
        "reputation_url": "https://believe.xultra.fun/api/ethos",
    },
    "storage": {
        "backend": "json",
        "path": "processed.json",
    },
}

# 嵌套段只做一层合并，避免过度魔法
_SECTIONS = ("telegram", "enrichment", "storage")

# (配置路径, 环境变量名...)，靠前的优先
_ENV_MAP = [
    (("feed_url",), ("FEED_URL",)),
    (("poll_interval_ms",), ("POLL_INTERVAL_MS",)),
    (("telegram", "token"), ("TELEGRAM_TOKEN", "TELEGRAM_BOT_TOKEN")),
    (("telegram", "chat_id"), ("CHAT_ID", "TELEGRAM_CHAT_ID")),
    (("telegram", "thread_id"), ("THREAD_ID", "TELEGRAM_THREAD_ID")),
    (("enrichment", "identity_url"), ("IDENTITY_URL",)),
    (("enrichment", "reputation_url"), ("REPUTATION_URL",)),
    (("storage", "path"), ("STATE_PATH",)),
]


def load_cfg(path: Optional[Path] = None, env: Optional[Dict[str, str]] = None) -> dict:
    """
    ops/config.yml 可选；不存在就用默认。环境变量（含 .env）最后覆盖。
    """
    cfg_path = Path(path) if path else ROOT / "ops" / "config.yml"
    out: Dict[str, Any] = {**DEFAULT_CFG}
    for sec in _SECTIONS:
        out[sec] = dict(DEFAULT_CFG[sec])

    if cfg_path.exists():
        try:
            data = yaml.safe_load(cfg_path.read_text(encoding="utf-8")) or {}
        except (OSError, yaml.YAMLError) as e:
            print(f"[main] 读取 {cfg_path} 失败，使用默认。err={e}")
            data = {}
        for k, v in data.items():
            if k in _SECTIONS:
                out[k] = {**out[k], **(v or {})}
            else:
                out[k] = v

    if env is None:
        load_dotenv()
        env = dict(os.environ)
    for keys, names in _ENV_MAP:
        val = next((env[n].strip() for n in names if env.get(n, "").strip()), None)
        if val is None:
            continue
        if len(keys) == 1:
            out[keys[0]] = val
        else:
            out[keys[0]][keys[1]] = val
    return out


def validate_cfg(cfg: dict, dry_run: bool = False) -> None:
    """缺必填项直接退出（非零状态码），不进入轮询。"""
    problems = []
    tg = cfg.get("telegram") or {}
    if not dry_run:
        if not str(tg.get("token") or "").strip():
            problems.append("TELEGRAM_TOKEN")
        if not str(tg.get("chat_id") or "").strip():
            problems.append("CHAT_ID")
    if not str(cfg.get("feed_url") or "").strip():
        problems.append("FEED_URL")
    try:
        interval = int(cfg.get("poll_interval_ms"))
    except (TypeError, ValueError):
        interval = 0
    if interval <= 0:
        problems.append("POLL_INTERVAL_MS (必须为正整数)")
    if problems:
        raise SystemExit(f"⚠️  Please set {', '.join(problems)}")
    cfg["poll_interval_ms"] = interval


class Poller:
    """
    轮询调度器：持有去重表（唯一写入者），一轮跑完才开始计时下一轮。
    """

    def __init__(self, store: SeenStore, collector: FeedCollector, enricher: Enricher,
                 notifier: Notifier, interval_ms: int = 3000, max_delivery_attempts: int = 3):
        self.store = store
        self.collector = collector
        self.enricher = enricher
        self.notifier = notifier
        self.interval_sec = interval_ms / 1000.0
        self.max_delivery_attempts = max(1, int(max_delivery_attempts))
        # 投递失败计数（仅内存）：id -> 连续失败轮数
        self._failures: Dict[str, int] = {}

    async def process_item(self, item: CandidateItem) -> None:
        if self.store.has(item.id):
            return

        # 没有代币信息：没东西可推，直接记为已处理
        if not item.has_token_info:
            print(f"[poller] 无代币信息，跳过 id={item.id}")
            await self.store.mark_seen(item.id)
            return

        ev = await self.enricher.enrich(item)
        ok = await self.notifier.deliver(format_caption(ev), ev.image_url)
        if ok:
            self._failures.pop(item.id, None)
            await self.store.mark_seen(item.id)
            print(f"[poller] 已推送 ${item.symbol} id={item.id}")
            return

        n = self._failures.get(item.id, 0) + 1
        if n >= self.max_delivery_attempts:
            print(f"[poller] 连续 {n} 轮投递失败，放弃 id={item.id}")
            self._failures.pop(item.id, None)
            await self.store.mark_seen(item.id)
        else:
            self._failures[item.id] = n
            print(f"[poller] 投递失败 ({n}/{self.max_delivery_attempts})，下轮重试 id={item.id}")

    async def poll_once(self) -> int:
        """跑一轮；返回本轮处理的新条目数。"""
        items = await self.collector.fetch()
        handled = 0
        # 同一快照里重复的 id 每轮只处理一次，失败计数按轮累加
        this_cycle = set()
        # feed 新的在前；旧的先发
        for item in reversed(items):
            if item.id in this_cycle or self.store.has(item.id):
                continue
            this_cycle.add(item.id)
            try:
                await self.process_item(item)
                handled += 1
            except Exception as e:
                # 这一条不标记，下轮再来
                print(f"[poller] 处理失败 id={item.id}: {e!r}")

        # 已经不在 feed 里的条目不再计数；拉取失败（空快照）时保留
        if items:
            snapshot = {item.id for item in items}
            self._failures = {k: v for k, v in self._failures.items() if k in snapshot}
        return handled

    async def run_forever(self) -> None:
        print(f"[poller] started, interval={self.interval_sec}s")
        try:
            while True:
                t0 = time.monotonic()
                try:
                    await self.poll_once()
                except Exception as e:
                    print(f"[poller] poll error: {e!r}")
                # 慢的一轮跑完后可能立刻开始下一轮，但两轮绝不并发
                elapsed = time.monotonic() - t0
                await asyncio.sleep(max(0.0, self.interval_sec - elapsed))
        except asyncio.CancelledError:
            print("[poller] cancelled")
            raise


async def main(run_seconds: int = 0, once: bool = False, dry_run: bool = False,
               config_path: Optional[str] = None):
    cfg = load_cfg(Path(config_path) if config_path else None)
    validate_cfg(cfg, dry_run=dry_run)

    store = open_store(cfg)
    try:
        await store.load_all()
    except StoreError as e:
        await store.close()
        raise SystemExit(f"⚠️  {e}")

    collector = FeedCollector(cfg)
    enricher = Enricher(cfg)
    notifier = build_notifier(cfg, dry_run=dry_run)
    poller = Poller(
        store,
        collector,
        enricher,
        notifier,
        interval_ms=cfg["poll_interval_ms"],
        max_delivery_attempts=cfg.get("max_delivery_attempts", 3),
    )
    print(f"[main] 🔔 Bot started (already posted {len(store)} tokens), channel={notifier.channel}")

    try:
        if once:
            n = await poller.poll_once()
            print(f"[main] one cycle done, {n} new item(s)")
        elif run_seconds and run_seconds > 0:
            task = asyncio.create_task(poller.run_forever())
            try:
                await asyncio.sleep(run_seconds)
            finally:
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)
        else:
            # 0 或负数 => 永久运行
            await poller.run_forever()
    except asyncio.CancelledError:
        print("[main] cancelled")
        raise
    finally:
        await notifier.close()
        await enricher.close()
        await collector.close()
        await store.close()
        print("[main] finished")


def cli():
    import argparse
    parser = argparse.ArgumentParser(description="Poll the coin feed and announce new tokens to Telegram.")
    parser.add_argument("--run-seconds", type=int, default=0, help="运行 N 秒后退出；0 = 常驻")
    parser.add_argument("--once", action="store_true", help="只跑一轮")
    parser.add_argument("--dry-run", action="store_true", help="打印到 stdout，不发 Telegram")
    parser.add_argument("--config", default=None, help="YAML 配置文件路径（默认 ops/config.yml）")
    args = parser.parse_args()

    try:
        asyncio.run(main(run_seconds=args.run_seconds, once=args.once,
                         dry_run=args.dry_run, config_path=args.config))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    cli()
