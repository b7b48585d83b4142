"""
基于 Piped API 镜像的提取器
请求 /streams/{video_id}，取上游标记的第一条音频流
"""
import logging

import httpx
from pydantic import ValidationError

from app.exceptions import ExtractionFailure, UpstreamTransportError
from app.extractors.base import Extractor
from app.models.audio import ProxyExtraction
from app.models.upstream import PipedStreams
from app.services.piped_instance import PipedInstanceHolder

logger = logging.getLogger(__name__)

USER_AGENT = "Mozilla/5.0"


class PipedExtractor(Extractor):
    """
    Piped API 提取器

    每次调用时读取当前实例快照；请求失败时通知后台任务提前切换实例
    """

    name = "piped"

    def __init__(self, client: httpx.AsyncClient, holder: PipedInstanceHolder):
        self.client = client
        self.holder = holder

    async def extract(self, video_id: str) -> ProxyExtraction:
        instance = self.holder.current()
        url = instance.stream_url(video_id)

        try:
            resp = await self.client.get(url, headers={"User-Agent": USER_AGENT})
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            self.holder.request_refresh()
            raise UpstreamTransportError(f"请求 Piped 失败: {url} ({exc})") from exc

        try:
            streams = PipedStreams.model_validate_json(resp.content)
        except ValidationError as exc:
            self.holder.request_refresh()
            raise ExtractionFailure(f"Piped 响应缺少 audioStreams: {url}") from exc

        if not streams.audioStreams:
            raise ExtractionFailure(f"Piped 没有返回音频流: {video_id}")

        stream = streams.audioStreams[0]
        logger.info(f"[Piped] 获取音频流: {video_id} mime={stream.mimeType} @ {instance.api_url}")
        return ProxyExtraction(url=stream.url, headers={})
