"""
音频 API 路由

  GET /audio/{video_id}?extractor=...   — 返回音频字节流或代理上游

extractor 可选值:
  piped / embedded / local-url / local-stream / local-file / race
  缺省或未知值时使用 local-file (yt-dlp 下载 + 本地缓存)
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request
from starlette.responses import Response

from app.exceptions import MalformedInputError
from app.services.audio_service import AudioService

logger = logging.getLogger(__name__)
router = APIRouter(tags=["音频"])


def get_audio_service(request: Request) -> AudioService:
    """由 lifespan 创建的全局 AudioService"""
    return request.app.state.audio_service


@router.get("/audio/{video_id}", summary="获取视频音频")
async def get_audio(
    video_id: str,
    request: Request,
    extractor: Optional[str] = None,
    service: AudioService = Depends(get_audio_service),
) -> Response:
    """
    提取视频音频并返回

    支持 Range 请求头 (bytes=<start>-<end>)，本地文件返回 200 / 206
    视频 ID 原样透传给提取器，只拒绝空白 ID
    """
    if not video_id.strip():
        raise MalformedInputError("video_id 不能为空")

    user_agent = request.headers.get("user-agent", "unknown")
    logger.info(
        f"[API] 请求音频: video_id={video_id}, extractor={extractor or '-'}, "
        f"range={request.headers.get('range', '-')}, ua={user_agent}"
    )
    return await service.serve(video_id, request.headers, extractor)
