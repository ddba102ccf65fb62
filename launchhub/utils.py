import re
import time
from typing import Any, Optional


_TG_BOT_RE = re.compile(r"/bot[^/\s]+/")


def now_ms() -> int:
    """
    获取当前时间的UTC毫秒时间戳

    返回:
        当前时间的毫秒时间戳
    """
    return int(time.time() * 1000)


def escape_html(s: Any) -> str:
    """Telegram HTML parse_mode 只需要转义 & < >"""
    return (
        str(s)
        .replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
    )


def is_http_url(url: Optional[str]) -> bool:
    """绝对 http(s) 链接才算能直接拉取"""
    if not url or not isinstance(url, str):
        return False
    try:
        from urllib.parse import urlparse
        u = urlparse(url.strip())
    except ValueError:
        return False
    return u.scheme in ("http", "https") and bool(u.netloc)


def to_int(v: Any, default: int = 0) -> int:
    try:
        return int(v)
    except (TypeError, ValueError, OverflowError):
        return default


def redact(text: str) -> str:
    """日志里抹掉 bot token（URL 形如 /bot<token>/sendMessage）"""
    return _TG_BOT_RE.sub("/bot***/", text or "")
