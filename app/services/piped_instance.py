"""
Piped API 镜像实例管理

- PipedInstanceHolder: 进程内"当前实例"，启动时为配置的默认值，
  后台任务在锁内整体替换，提取器每次调用时读取快照
- PipedInstanceRepo: 拉取公共实例列表并测速，挑选延迟最低的实例
"""
import asyncio
import logging
import random
import threading
import time
from dataclasses import dataclass
from typing import List, Optional

import httpx

logger = logging.getLogger(__name__)

_TABLE_START_MARKER = "--- | --- | --- | ---"


@dataclass(frozen=True)
class PipedInstance:
    """单个 Piped API 实例"""
    api_url: str

    def stream_url(self, video_id: str) -> str:
        return f"{self.api_url.rstrip('/')}/streams/{video_id}"

    def channel_url(self, channel_id: str) -> str:
        return f"{self.api_url.rstrip('/')}/channel/{channel_id}"


@dataclass
class PipedInstanceStat:
    """实例测速结果"""
    instance: PipedInstance
    name: str
    countries: List[str]
    latency_ms: Optional[int] = None


class PipedInstanceHolder:
    """当前使用的 Piped 实例 (线程安全的快照读写)"""

    def __init__(self, default: PipedInstance):
        self._lock = threading.Lock()
        self._current = default
        self._refresh_requested = asyncio.Event()

    def current(self) -> PipedInstance:
        with self._lock:
            return self._current

    def replace(self, instance: PipedInstance) -> None:
        with self._lock:
            previous, self._current = self._current, instance
        if previous != instance:
            logger.info(f"[Piped] 当前实例已切换: {previous.api_url} -> {instance.api_url}")

    def request_refresh(self) -> None:
        """提取失败时调用，让后台任务提前刷新"""
        self._refresh_requested.set()

    async def wait_for_refresh_request(self) -> None:
        await self._refresh_requested.wait()
        self._refresh_requested.clear()


def _from_flag_emoji(char: str) -> str:
    """把国旗 emoji 的区域指示符转成 A-Z"""
    code = ord(char)
    if 0x1F1E6 <= code <= 0x1F1FF:
        return chr(code - 0x1F1E6 + ord("A"))
    return char


def parse_instance_table(markdown: str) -> List[PipedInstanceStat]:
    """解析 Piped wiki 中的实例表格，只保留 https 实例"""
    lines = markdown.splitlines()
    start = next(
        (i for i, line in enumerate(lines) if line.strip().startswith(_TABLE_START_MARKER)),
        None,
    )
    if start is None:
        return []

    stats = []
    for line in lines[start + 1:]:
        parts = line.split("|")
        if len(parts) != 5:
            continue

        name = parts[0].strip()
        url = parts[1].strip()
        if not url.startswith("https://"):
            continue

        countries = [
            "".join(_from_flag_emoji(c) for c in country.strip())
            for country in parts[2].split(",")
            if country.strip()
        ]
        stats.append(PipedInstanceStat(PipedInstance(url), name, countries))

    return stats


class PipedInstanceRepo:
    """从公共实例列表中挑选可用的 Piped 实例"""

    def __init__(self, client: httpx.AsyncClient, instances_url: str, probe_timeout: float = 10.0):
        self.client = client
        self.instances_url = instances_url
        self.probe_timeout = probe_timeout

    async def pull_latest(self) -> List[PipedInstanceStat]:
        resp = await self.client.get(self.instances_url)
        resp.raise_for_status()
        stats = parse_instance_table(resp.text)
        random.shuffle(stats)
        return stats

    async def check_latency(self, stats: List[PipedInstanceStat]) -> List[PipedInstanceStat]:
        """并发测速，返回可达实例，按延迟升序"""

        async def probe(stat: PipedInstanceStat) -> PipedInstanceStat:
            start = time.monotonic()
            try:
                resp = await self.client.get(stat.instance.api_url, timeout=self.probe_timeout)
            except httpx.HTTPError as exc:
                logger.debug(f"[Piped] 实例不可达: {stat.instance.api_url} ({exc})")
                return stat
            if resp.is_success:
                stat.latency_ms = int((time.monotonic() - start) * 1000)
            return stat

        probed = await asyncio.gather(*(probe(stat) for stat in stats))
        reachable = [stat for stat in probed if stat.latency_ms is not None]
        reachable.sort(key=lambda stat: stat.latency_ms)
        return reachable

    async def refresh(self, holder: PipedInstanceHolder) -> Optional[PipedInstance]:
        stats = await self.check_latency(await self.pull_latest())
        if not stats:
            logger.warning("[Piped] 没有可用的实例，保留当前实例")
            return None
        holder.replace(stats[0].instance)
        return stats[0].instance

    async def auto_update(self, holder: PipedInstanceHolder, interval: float) -> None:
        """后台循环: 每隔 interval 秒刷新一次，或在提取失败后提前刷新"""
        while True:
            try:
                await self.refresh(holder)
            except httpx.HTTPError as exc:
                logger.warning(f"[Piped] 拉取实例列表失败: {exc}")

            try:
                await asyncio.wait_for(holder.wait_for_refresh_request(), timeout=interval)
            except asyncio.TimeoutError:
                pass
