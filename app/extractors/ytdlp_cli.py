"""
yt-dlp 命令行封装

需要 yt-dlp 可执行文件在 PATH 中 (或通过 YTDLP_BIN 指定)。
- 元数据导出 (-j) 和文件下载共享一个全局并发许可 (默认 1)
- 协程被取消时 (例如竞速落败) 主动杀掉子进程
- yt-dlp 出错时退出码可能仍为 0，因此以 stderr 中的 ERROR: 标记为准
"""
import asyncio
import logging
from asyncio.subprocess import PIPE, DEVNULL
from pathlib import Path
from typing import AsyncIterator, List, Optional, Tuple
from urllib.parse import urlsplit, urlunsplit

from app.exceptions import ToolFailure
from app.extractors.base import watch_url

logger = logging.getLogger(__name__)

AUDIO_FORMAT = "ba[ext=m4a]"
CHUNK_SIZE = 64 * 1024
ERROR_MARKER = "ERROR:"


def redact_proxy(proxy: Optional[str]) -> Optional[str]:
    """隐藏代理地址中的用户名和密码，用于日志输出"""
    if not proxy:
        return proxy
    parts = urlsplit(proxy)
    if not (parts.username or parts.password):
        return proxy
    host = parts.hostname or ""
    if parts.port:
        host = f"{host}:{parts.port}"
    return urlunsplit(parts._replace(netloc=f"***@{host}"))


def check_tool_output(stderr: bytes, returncode: Optional[int]) -> None:
    """检查 yt-dlp 的 stderr 和退出码，失败时抛出 ToolFailure"""
    text = stderr.decode("utf-8", errors="replace").strip()
    if ERROR_MARKER in text:
        raise ToolFailure(text)
    if returncode:
        raise ToolFailure(f"yt-dlp 异常退出 (code={returncode}): {text[-500:]}")


class YtdlpCli:
    """yt-dlp 子进程调用"""

    def __init__(self, binary: str = "yt-dlp", proxy: Optional[str] = None, concurrency: int = 1):
        self.binary = binary
        self.proxy = proxy
        self.concurrency = concurrency
        self._permits = asyncio.Semaphore(concurrency)
        logger.info(
            f"[yt-dlp] 初始化完成: bin={binary}, concurrency={concurrency}, "
            f"proxy={redact_proxy(proxy)}"
        )

    def build_command(self, *args: str) -> List[str]:
        cmd = [self.binary]
        if self.proxy:
            cmd += ["--proxy", self.proxy]
        cmd.extend(args)
        return cmd

    # ==================== 三种调用方式 ====================

    async def dump_json(self, video_id: str) -> bytes:
        """yt-dlp -j: 导出视频信息 JSON (原始 stdout)"""
        cmd = self.build_command("-j", watch_url(video_id))
        async with self._permits:
            stdout, stderr, returncode = await self._run(cmd)
        check_tool_output(stderr, returncode)
        return stdout

    async def download(self, video_id: str, output: Path) -> None:
        """下载最佳 m4a 音频到 output"""
        cmd = self.build_command(
            "-f", AUDIO_FORMAT,
            "--no-progress",
            "-o", str(output),
            "--no-mtime",
            watch_url(video_id),
        )
        async with self._permits:
            _, stderr, returncode = await self._run(cmd, stdout=DEVNULL)
        check_tool_output(stderr, returncode)

    async def stream(self, video_id: str) -> AsyncIterator[bytes]:
        """
        yt-dlp -o -: 启动进程并返回其 stdout 字节流

        流式输出不占用全局许可
        """
        cmd = self.build_command("-f", AUDIO_FORMAT, "-o", "-", watch_url(video_id))
        proc = await self._spawn(cmd, stdout=PIPE)
        return self._read_stdout(proc)

    # ==================== 子进程管理 ====================

    async def _spawn(self, cmd: List[str], stdout=PIPE) -> asyncio.subprocess.Process:
        logger.info(f"[yt-dlp] 执行: {self._describe(cmd)}")
        try:
            return await asyncio.create_subprocess_exec(*cmd, stdout=stdout, stderr=PIPE)
        except OSError as exc:
            raise ToolFailure(f"无法启动 {self.binary}: {exc}") from exc

    async def _run(self, cmd: List[str], stdout=PIPE) -> Tuple[bytes, bytes, Optional[int]]:
        proc = await self._spawn(cmd, stdout=stdout)
        try:
            out, err = await proc.communicate()
        except asyncio.CancelledError:
            await _kill(proc)
            raise
        return out or b"", err or b"", proc.returncode

    async def _read_stdout(self, proc: asyncio.subprocess.Process) -> AsyncIterator[bytes]:
        stderr_task = asyncio.ensure_future(proc.stderr.read())
        try:
            while True:
                chunk = await proc.stdout.read(CHUNK_SIZE)
                if not chunk:
                    break
                yield chunk
            returncode = await proc.wait()
            check_tool_output(await stderr_task, returncode)
        finally:
            await _kill(proc)
            if not stderr_task.done():
                stderr_task.cancel()

    def _describe(self, cmd: List[str]) -> str:
        if not self.proxy:
            return " ".join(cmd)
        return " ".join(redact_proxy(arg) if arg == self.proxy else arg for arg in cmd)


async def _kill(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is not None:
        return
    try:
        proc.kill()
    except ProcessLookupError:
        return
    await proc.wait()
    logger.info(f"[yt-dlp] 已终止子进程: pid={proc.pid}")
