from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import cast

import structlog
from redis.asyncio import Redis

logger = structlog.get_logger("core.kill_switch")


def file_tripped(path: str) -> bool:
    """Return True when the on-disk kill switch file exists."""

    return Path(path).exists()


async def redis_tripped(url: str, key: str) -> bool:
    """Return True when Redis key holds the string "1"."""

    client = Redis.from_url(url, encoding="utf-8", decode_responses=True)
    try:
        value = cast(str | None, await client.get(key))
    finally:
        await client.aclose()
    return value == "1"


def trip_file(path: str) -> None:
    """Create the kill switch file, ensuring parent directories exist."""

    file_path = Path(path)
    file_path.parent.mkdir(parents=True, exist_ok=True)
    file_path.touch(exist_ok=True)


def clear_file(path: str) -> None:
    """Remove the kill switch file if present."""

    Path(path).unlink(missing_ok=True)


@dataclass
class KillSwitch:
    """Halts new quoting when either the file flag or the Redis key is set.

    Redis is optional; a Redis failure is logged and treated as not tripped.
    """

    file_path: str
    redis_url: str | None = None
    redis_key: str | None = None

    async def check(self) -> tuple[bool, str | None]:
        if file_tripped(self.file_path):
            return True, "file"
        if self.redis_url is None or self.redis_key is None:
            return False, None
        try:
            tripped = await redis_tripped(self.redis_url, self.redis_key)
        except Exception as exc:  # pragma: no cover - depends on env
            logger.warning("kill_switch_check_failed", error=str(exc))
            return False, None
        if tripped:
            return True, "redis"
        return False, None
