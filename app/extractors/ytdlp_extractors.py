"""
基于 yt-dlp 命令行的提取器

- YtdlpUrlExtractor:    -j 导出格式列表，挑选 m4a 音频直链 (代理转发)
- YtdlpStreamExtractor: -o - 直接输出字节流
- YtdlpFileExtractor:   下载到本地缓存后按文件返回
"""
import logging

from pydantic import ValidationError

from app.exceptions import ExtractionFailure
from app.extractors.base import Extractor
from app.extractors.ytdlp_cli import YtdlpCli
from app.models.audio import FileExtraction, ProxyExtraction, StreamExtraction
from app.models.upstream import YtdlpFormat, YtdlpInfo
from app.services.audio_store import AudioStore

logger = logging.getLogger(__name__)

AUDIO_MIME_TYPE = "audio/mp4"


def select_audio_format(info: YtdlpInfo) -> YtdlpFormat:
    """只保留单分片的 m4a 纯音频格式，取 quality 最高的一个"""
    candidates = [
        fmt for fmt in info.formats
        if fmt.resolution == "audio only"
        and fmt.audio_ext == "m4a"
        and len(fmt.fragments) <= 1
        and fmt.direct_url
    ]
    if not candidates:
        raise ExtractionFailure(f"没有可用的 m4a 音频格式: {info.id}")
    return max(candidates, key=lambda fmt: fmt.quality or 0.0)


class YtdlpUrlExtractor(Extractor):
    """yt-dlp -j 获取音频直链"""

    name = "local-url"

    def __init__(self, cli: YtdlpCli):
        self.cli = cli

    async def extract(self, video_id: str) -> ProxyExtraction:
        output = await self.cli.dump_json(video_id)
        try:
            info = YtdlpInfo.model_validate_json(output)
        except ValidationError as exc:
            raise ExtractionFailure(f"yt-dlp 输出无法解析: {video_id}") from exc

        fmt = select_audio_format(info)
        logger.info(f"[yt-dlp] 选中格式: {video_id} format={fmt.format_id} quality={fmt.quality}")
        return ProxyExtraction(url=fmt.direct_url, headers=dict(fmt.http_headers))


class YtdlpStreamExtractor(Extractor):
    """yt-dlp 输出到 stdout，边下边转发"""

    name = "local-stream"

    def __init__(self, cli: YtdlpCli):
        self.cli = cli

    async def extract(self, video_id: str) -> StreamExtraction:
        chunks = await self.cli.stream(video_id)
        return StreamExtraction(chunks=chunks, mime_type=AUDIO_MIME_TYPE)


class YtdlpFileExtractor(Extractor):
    """
    下载到 AudioStore 管理的缓存文件

    同一视频的并发请求共享一个缓存条目，只会触发一次下载；
    下载失败时淘汰条目，下一次请求重新开始
    """

    name = "local-file"

    def __init__(self, cli: YtdlpCli, store: AudioStore):
        self.cli = cli
        self.store = store

    async def extract(self, video_id: str) -> FileExtraction:
        audio_file = await self.store.get_or_allocate(video_id)
        attempted = False

        async def download() -> None:
            nonlocal attempted
            attempted = True
            logger.info(f"[yt-dlp] 开始下载: {video_id} -> {audio_file.temp_path}")
            await self.cli.download(video_id, audio_file.temp_path)

        try:
            file = await audio_file.get_or_download(download)
        except Exception as exc:
            # 只有真正执行下载的请求负责淘汰，等待者不能误删别人新建的条目
            if attempted:
                logger.warning(f"[yt-dlp] 下载失败，淘汰缓存: {video_id} ({exc})")
                await self.store.remove(video_id)
            # 异常的 traceback 会保留本帧，释放条目引用以便立即清理文件
            audio_file = None
            raise

        return FileExtraction(file=file, mime_type=AUDIO_MIME_TYPE, audio_file=audio_file)
