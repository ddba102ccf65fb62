"""
launchhub/notifier.py
推送模块：把加工好的条目格式化成 HTML 文本，发到 Telegram（或 --dry-run 时打印到 stdout）
- 有图先 sendPhoto，失败回退 sendMessage
- 429 限流：按服务端 retry_after + 1 秒等待后原样重试
- 其他失败只打日志，不向上抛
"""

from __future__ import annotations
import asyncio
from typing import Any, Dict, Optional

import httpx

from launchhub.models import EnrichedItem
from launchhub.utils import escape_html, redact


# ------------------------------------------------------------
# 消息格式
# ------------------------------------------------------------

def _fmt_num(n: Any) -> str:
    if isinstance(n, float) and n.is_integer():
        n = int(n)
    if isinstance(n, (int, float)):
        return f"{n:,}"
    return str(n)


def format_caption(ev: EnrichedItem) -> str:
    """统一的消息格式（Telegram HTML）"""
    it = ev.item
    handle = ev.creator_handle
    if handle:
        creator = f'<a href="https://x.com/{escape_html(handle)}">{escape_html(handle)}</a>'
    else:
        creator = "-"
    return "\n".join([
        f"<b>Ticker:</b> ${escape_html(it.symbol)}",
        f"<b>Token Name:</b> {escape_html(it.name)}",
        f"<b>Creator:</b> {creator}",
        f"<b>Followers:</b> {_fmt_num(ev.followers)}",
        f"<b>Smart Followers:</b> {_fmt_num(ev.smart_followers)}",
        f"<b>Ethos:</b> {_fmt_num(ev.reputation)}",
        f"<b>CA:</b> <code>{escape_html(it.address)}</code>",
    ])


# ------------------------------------------------------------
# 渠道适配器
# ------------------------------------------------------------

class SendResult:
    """单次发送结果：ok / 限流（带 retry_after）/ 其他失败"""

    __slots__ = ("ok", "retry_after", "error")

    def __init__(self, ok: bool, retry_after: Optional[int] = None, error: str = ""):
        self.ok = ok
        self.retry_after = retry_after
        self.error = error

    @property
    def rate_limited(self) -> bool:
        return self.retry_after is not None

    def __repr__(self) -> str:
        return f"SendResult(ok={self.ok}, retry_after={self.retry_after}, error={self.error!r})"


class TelegramAdapter:
    def __init__(self, token: str, chat_id: str, thread_id: Optional[str] = None,
                 api_base: str = "https://api.telegram.org", timeout: float = 10.0,
                 client: Optional[httpx.AsyncClient] = None):
        self._token = token
        self._chat_id = chat_id
        self._thread_id = thread_id
        self._api_base = api_base.rstrip("/")
        self._timeout = timeout
        self._client = client
        self._own_client = client is None

    def _client_get(self) -> httpx.AsyncClient:
        # 复用连接池；trust_env 读取系统代理/CERT
        if self._client is None:
            timeout = httpx.Timeout(self._timeout, connect=5.0)
            self._client = httpx.AsyncClient(timeout=timeout, http2=True, trust_env=True)
        return self._client

    def _payload(self, **fields: Any) -> Dict[str, Any]:
        body: Dict[str, Any] = {"chat_id": self._chat_id, "parse_mode": "HTML", **fields}
        if self._thread_id:
            body["message_thread_id"] = self._thread_id
        return body

    async def _post(self, method: str, body: Dict[str, Any]) -> SendResult:
        url = f"{self._api_base}/bot{self._token}/{method}"
        try:
            r = await self._client_get().post(url, json=body)
        except httpx.HTTPError as e:
            return SendResult(False, error=redact(repr(e)))

        # Telegram 非 200 也会给 JSON
        try:
            data = r.json()
        except ValueError:
            data = None
        if not isinstance(data, dict):
            data = {}

        if r.status_code == 200 and data.get("ok", True) is True:
            return SendResult(True)

        if r.status_code == 429 or data.get("error_code") == 429:
            retry_after = (data.get("parameters") or {}).get("retry_after")
            if isinstance(retry_after, (int, float)) and not isinstance(retry_after, bool):
                return SendResult(False, retry_after=int(retry_after), error="rate limited")

        desc = data.get("description") or (r.text or "")[:300]
        return SendResult(False, error=f"http {r.status_code}: {desc}")

    async def send_text(self, text: str) -> SendResult:
        return await self._post("sendMessage", self._payload(text=text))

    async def send_photo(self, photo_url: str, caption: str) -> SendResult:
        return await self._post("sendPhoto", self._payload(photo=photo_url, caption=caption))

    async def close(self):
        if self._own_client and self._client is not None:
            await self._client.aclose()
            self._client = None


class StdoutAdapter:
    async def send_text(self, text: str) -> SendResult:
        print("\n" + text + "\n")
        return SendResult(True)

    async def send_photo(self, photo_url: str, caption: str) -> SendResult:
        print(f"\n[photo] {photo_url}\n{caption}\n")
        return SendResult(True)

    async def close(self):
        return


# ------------------------------------------------------------
# Notifier 主体
# ------------------------------------------------------------

SEND_WITH_IMAGE = "send_with_image"
SEND_TEXT_ONLY = "send_text_only"
DONE = "done"


class Notifier:
    def __init__(self, adapter, sleep=asyncio.sleep):
        self._adapter = adapter
        self._sleep = sleep

    @property
    def channel(self) -> str:
        return "telegram" if isinstance(self._adapter, TelegramAdapter) else "stdout"

    async def deliver(self, caption: str, image_url: str = "") -> bool:
        """
        发送一条消息，总会返回；True 表示有一条（图或文）发出去了。

        状态机：
            SEND_WITH_IMAGE --成功--> DONE
                            --429--> 等 retry_after+1 秒，再次 SEND_WITH_IMAGE
                            --其他失败--> SEND_TEXT_ONLY
            SEND_TEXT_ONLY  --成功--> DONE
                            --429--> 等待后再次 SEND_TEXT_ONLY
                            --其他失败--> DONE（丢弃）
        """
        state = SEND_WITH_IMAGE if image_url else SEND_TEXT_ONLY
        delivered = False

        while state != DONE:
            try:
                if state == SEND_WITH_IMAGE:
                    res = await self._adapter.send_photo(image_url, caption)
                else:
                    res = await self._adapter.send_text(caption)
            except Exception as e:
                res = SendResult(False, error=redact(repr(e)))

            if res.ok:
                delivered = True
                state = DONE
            elif res.rate_limited:
                wait = res.retry_after + 1
                print(f"[notifier] 429 限流，{wait}s 后重试 ({state})")
                await self._sleep(wait)
            elif state == SEND_WITH_IMAGE:
                print(f"[notifier] sendPhoto failed, falling back to sendMessage: {res.error}")
                state = SEND_TEXT_ONLY
            else:
                print(f"[notifier] sendMessage error: {res.error}")
                state = DONE

        return delivered

    async def close(self):
        await self._adapter.close()


def build_notifier(cfg: Dict[str, Any], client: Optional[httpx.AsyncClient] = None,
                   dry_run: bool = False) -> Notifier:
    tg = cfg.get("telegram") or {}
    if dry_run:
        return Notifier(StdoutAdapter())
    adapter = TelegramAdapter(
        token=tg.get("token", ""),
        chat_id=str(tg.get("chat_id", "")),
        thread_id=str(tg["thread_id"]) if tg.get("thread_id") else None,
        api_base=tg.get("api_base") or "https://api.telegram.org",
        timeout=float(cfg.get("http_timeout_sec", 10)),
        client=client,
    )
    return Notifier(adapter)
