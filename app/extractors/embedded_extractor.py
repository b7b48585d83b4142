"""
内嵌 yt-dlp 库的提取器
不启动子进程，直接在工作线程中解析视频页面并解出音频直链
"""
import asyncio
import logging
from typing import Any, Dict, List, Optional

import yt_dlp
from yt_dlp.utils import DownloadError

from app.exceptions import ExtractionFailure
from app.extractors.base import Extractor, watch_url
from app.models.audio import ProxyExtraction

logger = logging.getLogger(__name__)

# 直链默认只返回一小段，附加一个足够大的 range 参数取完整音频
FULL_RANGE_PARAM = "range=0-999999999999"


def select_best_audio(formats: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """从 yt-dlp 格式列表中选出码率最高的纯音频直链格式"""
    candidates = [
        fmt for fmt in formats
        if fmt.get("vcodec") == "none"
        and fmt.get("acodec") not in (None, "none")
        and fmt.get("url")
        and fmt.get("protocol", "https") in ("http", "https")
    ]
    if not candidates:
        return None
    return max(candidates, key=lambda fmt: fmt.get("abr") or fmt.get("tbr") or 0)


def with_full_range(url: str) -> str:
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}{FULL_RANGE_PARAM}"


class EmbeddedExtractor(Extractor):
    """yt-dlp 库内提取 (无外部进程)"""

    name = "embedded"

    def __init__(self, proxy: Optional[str] = None):
        self.ydl_opts = {
            "noplaylist": True,
            "quiet": True,
            "no_warnings": True,
            "skip_download": True,
        }
        if proxy:
            self.ydl_opts["proxy"] = proxy

    async def extract(self, video_id: str) -> ProxyExtraction:
        info = await asyncio.to_thread(self._extract_info, video_id)

        fmt = select_best_audio(info.get("formats") or [])
        if fmt is None:
            raise ExtractionFailure(f"没有找到纯音频流: {video_id}")

        logger.info(
            f"[Embedded] 选中格式: {video_id} format={fmt.get('format_id')} "
            f"abr={fmt.get('abr')}"
        )
        return ProxyExtraction(url=with_full_range(fmt["url"]), headers={})

    def _extract_info(self, video_id: str) -> Dict[str, Any]:
        try:
            with yt_dlp.YoutubeDL(self.ydl_opts) as ydl:
                return ydl.extract_info(watch_url(video_id), download=False)
        except DownloadError as exc:
            raise ExtractionFailure(f"yt-dlp 解析失败: {video_id} ({exc})") from exc
        except Exception as exc:
            # 站点解析器的内部错误 (KeyError 等) 会原样抛出
            logger.warning(f"[Embedded] yt-dlp 内部错误: {video_id} ({type(exc).__name__}: {exc})")
            raise ExtractionFailure(f"yt-dlp 解析异常: {video_id} ({type(exc).__name__}: {exc})") from exc
