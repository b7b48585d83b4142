"""
音频文件缓存

AudioStore 是单写者 actor: 一个后台 asyncio 任务独占缓存表，
所有修改都通过消息队列串行处理，因此同一个视频 ID 的并发请求
只会分配出同一个 AudioFile。

缓存策略: LRU + 空闲过期 (cachetools.TTLCache)，命中时刷新过期时间。
条目被淘汰后，当最后一个持有者释放引用时同步删除磁盘文件。
"""
import asyncio
import logging
import os
import re
import shutil
import time
import uuid
import weakref
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Awaitable, BinaryIO, Callable, Optional, Union

from cachetools import TTLCache

from app.exceptions import CacheIOError, ToolFailure

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_-]")


def sanitize_video_id(video_id: str) -> str:
    """视频 ID 来自客户端，作为文件名之前只保留 [A-Za-z0-9_-]"""
    return _UNSAFE_CHARS.sub("_", video_id) or "_"


def _remove_file(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as exc:
        raise CacheIOError(f"删除缓存文件失败: {path} ({exc})") from exc


def _destroy_files(video_id: str, *paths: Path) -> None:
    """条目最后一个引用释放时调用，清理失败只记录日志"""
    for path in paths:
        try:
            _remove_file(path)
        except CacheIOError as exc:
            logger.warning(f"[AudioStore] {exc}")
    logger.info(f"[AudioStore] 已清理缓存条目: {video_id}")


class AudioFileState(Enum):
    NEW = "new"
    DOWNLOADING = "downloading"
    READY = "ready"
    ERRORED = "errored"


class AudioFile:
    """
    单个视频的缓存音频

    状态流转: NEW → DOWNLOADING → READY，失败则进入 ERRORED (终态)
    下载过程持有 _lock，同一条目的其他请求在锁上等待，不会重复下载
    """

    def __init__(self, base_dir: Path, video_id: str):
        self.id = video_id
        # 缓存表以原始 ID 为键；文件名为清洗后的 ID 加随机后缀，每个条目独占文件
        stem = f"{sanitize_video_id(video_id)}.{uuid.uuid4().hex[:8]}"
        self.path = base_dir / f"{stem}.m4a"
        self.temp_path = base_dir / f"{stem}.temp.m4a"
        self.created_at = time.time()
        self.state = AudioFileState.NEW
        self._lock = asyncio.Lock()
        # 不能引用 self，否则对象永远不会被回收
        self._finalizer = weakref.finalize(
            self,
            _destroy_files,
            video_id,
            self.temp_path,
            self.temp_path.with_name(self.temp_path.name + ".part"),
            self.path,
        )

    @property
    def ready(self) -> bool:
        return self.state is AudioFileState.READY

    def open(self) -> BinaryIO:
        return open(self.path, "rb")

    async def get_or_download(self, download: Callable[[], Awaitable[None]]) -> BinaryIO:
        """
        已就绪则直接打开，否则执行 download 写入 temp_path，
        成功后原子重命名为最终路径

        :param download: 下载协程工厂，负责写入 self.temp_path
        :return: 打开的音频文件
        """
        async with self._lock:
            if self.state is AudioFileState.READY:
                return self.open()
            if self.state is AudioFileState.ERRORED:
                raise ToolFailure(f"音频下载已失败: {self.id}")

            self.state = AudioFileState.DOWNLOADING
            try:
                await download()
            except asyncio.CancelledError:
                # 被竞速取消，留给下一个请求重新下载
                self.state = AudioFileState.NEW
                raise
            except Exception:
                self.state = AudioFileState.ERRORED
                raise

            if not self.temp_path.exists():
                self.state = AudioFileState.ERRORED
                raise ToolFailure(f"下载结束但未找到音频文件: {self.temp_path}")

            os.replace(self.temp_path, self.path)
            self.state = AudioFileState.READY
            logger.info(f"[AudioStore] 音频就绪: {self.id} -> {self.path}")
            return self.open()

    def __repr__(self) -> str:
        return f"AudioFile(id={self.id!r}, state={self.state.value})"


# -------- actor 消息 --------

@dataclass
class GetOrAllocate:
    video_id: str


@dataclass
class Remove:
    video_id: str


Message = Union[GetOrAllocate, Remove]


class AudioStore:
    """
    音频缓存 actor

    用法:
        store = AudioStore(base_dir)
        async with store:
            audio_file = await store.get_or_allocate(video_id)
    """

    def __init__(
        self,
        base_dir: Union[str, Path],
        capacity: int = 30,
        ttl: float = 600,
        timer: Callable[[], float] = time.monotonic,
    ):
        self.base_dir = Path(base_dir)

        # 不跨进程保留缓存: 启动时清空目录
        shutil.rmtree(self.base_dir, ignore_errors=True)
        self.base_dir.mkdir(parents=True, exist_ok=True)

        self._files: TTLCache = TTLCache(maxsize=capacity, ttl=ttl, timer=timer)
        self._inbox: Optional[asyncio.Queue] = None
        self._task: Optional[asyncio.Task] = None
        logger.info(
            f"[AudioStore] 初始化完成: dir={self.base_dir}, capacity={capacity}, ttl={ttl}s"
        )

    # ==================== 生命周期 ====================

    async def start(self) -> None:
        if self._task is not None:
            return
        self._inbox = asyncio.Queue()
        self._task = asyncio.create_task(self._run(), name="audio-store")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass

        # 队列中未处理的请求直接取消
        while not self._inbox.empty():
            _, reply = self._inbox.get_nowait()
            reply.cancel()

        self._task = None
        self._inbox = None
        self._files.clear()

    async def __aenter__(self) -> "AudioStore":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()

    # ==================== 对外接口 ====================

    async def get_or_allocate(self, video_id: str) -> AudioFile:
        """返回已有条目 (并刷新其过期时间)，不存在则新建一个 NEW 状态条目"""
        return await self._ask(GetOrAllocate(video_id))

    async def remove(self, video_id: str) -> None:
        """无条件淘汰条目；已经持有句柄的读者不受影响"""
        await self._ask(Remove(video_id))

    def __contains__(self, video_id: str) -> bool:
        return video_id in self._files

    def __len__(self) -> int:
        return len(self._files)

    # ==================== actor 内部 ====================

    async def _ask(self, message: Message):
        if self._task is None:
            raise RuntimeError("AudioStore 尚未启动")
        reply = asyncio.get_running_loop().create_future()
        await self._inbox.put((message, reply))
        return await reply

    async def _run(self) -> None:
        while True:
            message, reply = await self._inbox.get()
            if not reply.cancelled():
                try:
                    reply.set_result(self._handle(message))
                except Exception as exc:
                    reply.set_exception(exc)
            # 等待下一条消息时不能继续引用上一个结果，否则被淘汰的条目无法释放
            del message, reply

    def _handle(self, message: Message):
        if isinstance(message, GetOrAllocate):
            return self._get_or_allocate(message.video_id)
        if isinstance(message, Remove):
            return self._remove(message.video_id)
        raise TypeError(f"未知消息类型: {message!r}")

    def _get_or_allocate(self, key: str) -> AudioFile:
        audio_file = self._files.get(key)
        if audio_file is None:
            audio_file = AudioFile(self.base_dir, key)
            logger.info(f"[AudioStore] 分配缓存条目: {key}")
        # 重新写入以刷新 LRU 顺序与过期时间
        self._files[key] = audio_file
        return audio_file

    def _remove(self, key: str) -> None:
        if self._files.pop(key, None) is not None:
            logger.info(f"[AudioStore] 淘汰缓存条目: {key}")
