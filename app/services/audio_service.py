"""
音频分发服务

编排流程: 选择提取器 → 有序竞速 → 按结果类型生成 HTTP 响应
  - ProxyExtraction   → 回源代理，保留上游状态码和响应头
  - StreamExtraction  → 按 Range 裁剪字节流
  - FileExtraction    → 按 Range 定位文件切片 (200 / 206)
"""
import logging
import os
from typing import BinaryIO, Iterable, Iterator, List, Mapping, Optional, Tuple

import httpx
from starlette.background import BackgroundTask
from starlette.responses import Response, StreamingResponse

from app.exceptions import UpstreamTransportError
from app.extractors.base import Extractor
from app.models.audio import (
    ExtractionResult,
    FileExtraction,
    ProxyExtraction,
    StreamExtraction,
)
from app.utils.byte_range import byte_range, parse_range_header
from app.utils.race import race_ordered_first_ok

logger = logging.getLogger(__name__)

# 竞速时的优先顺序: 越快越省的越靠前
RACE_ORDER = ("piped", "embedded", "local-url", "local-file")
RACE = "race"
DEFAULT_EXTRACTOR = "local-file"

FILE_CHUNK_SIZE = 64 * 1024

HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailer",
    "transfer-encoding",
    "upgrade",
}


def resolve_file_range(
    start: Optional[int],
    end: Optional[int],
    size: int,
) -> Tuple[int, int]:
    """
    把请求的区间收敛到文件范围内，返回闭区间 (first, last)

    start 缺省为 0，end 缺省为文件末尾；空文件返回 (0, -1)
    """
    if size <= 0:
        return 0, -1
    last_byte = size - 1
    first = 0 if start is None else min(start, last_byte)
    last = last_byte if end is None else min(end, last_byte)
    return first, max(first, last)


def iter_file_slice(
    file: BinaryIO,
    offset: int,
    length: int,
    owner: object = None,
) -> Iterator[bytes]:
    """
    读取文件的 [offset, offset + length) 区间，读完后关闭文件

    owner 是缓存条目，生成器存活期间保持对它的引用，防止文件被提前清理
    """
    with file:
        file.seek(offset)
        remaining = length
        while remaining > 0:
            chunk = file.read(min(FILE_CHUNK_SIZE, remaining))
            if not chunk:
                break
            remaining -= len(chunk)
            yield chunk
    del owner


class AudioService:
    """音频提取与分发"""

    def __init__(
        self,
        extractors: Iterable[Extractor],
        client: httpx.AsyncClient,
        race_concurrency: int = 10,
    ):
        self.extractors = {extractor.name: extractor for extractor in extractors}
        self.client = client
        self.race_concurrency = race_concurrency
        logger.info(f"[AudioService] 初始化完成: extractors={list(self.extractors)}")

    # ==================== 提取 ====================

    def resolve(self, name: Optional[str] = None) -> List[Extractor]:
        """
        选择参与本次请求的提取器

        - race: 按 RACE_ORDER 全部参与竞速
        - 已知名称: 只用该提取器
        - 缺省或未知: 回退到本地下载 (local-file)
        """
        if name == RACE:
            return [self.extractors[n] for n in RACE_ORDER if n in self.extractors]
        if name in self.extractors:
            return [self.extractors[name]]
        return [self.extractors[DEFAULT_EXTRACTOR]]

    async def extract(self, video_id: str, extractor: Optional[str] = None) -> ExtractionResult:
        chosen = self.resolve(extractor)
        logger.info(f"[AudioService] 提取音频: {video_id} via {[e.name for e in chosen]}")
        return await race_ordered_first_ok(
            [e.extract(video_id) for e in chosen],
            limit=self.race_concurrency,
            errors=(Exception,),
        )

    # ==================== 响应 ====================

    async def serve(
        self,
        video_id: str,
        request_headers: Mapping[str, str],
        extractor: Optional[str] = None,
    ) -> Response:
        """提取音频并按结果类型生成响应"""
        result = await self.extract(video_id, extractor)
        range_header = request_headers.get("range")

        if isinstance(result, ProxyExtraction):
            return await self._serve_proxy(result, request_headers)
        if isinstance(result, StreamExtraction):
            return self._serve_stream(result, range_header)
        if isinstance(result, FileExtraction):
            return self._serve_file(result, range_header)
        raise TypeError(f"未知的提取结果类型: {type(result).__name__}")

    async def _serve_proxy(
        self,
        result: ProxyExtraction,
        request_headers: Mapping[str, str],
    ) -> Response:
        headers = httpx.Headers(
            [(k, v) for k, v in request_headers.items() if k.lower() != "host"]
        )
        for key, value in result.headers.items():
            headers[key] = value

        request = self.client.build_request("GET", result.url, headers=headers)
        try:
            upstream = await self.client.send(request, stream=True, follow_redirects=True)
        except httpx.HTTPError as exc:
            raise UpstreamTransportError(f"回源失败: {exc}") from exc

        logger.info(f"[AudioService] 代理上游: status={upstream.status_code}")
        response = StreamingResponse(
            upstream.aiter_raw(),
            status_code=upstream.status_code,
            background=BackgroundTask(upstream.aclose),
        )
        # 逐条追加，保留上游重复出现的响应头
        for key, value in upstream.headers.multi_items():
            if key.lower() not in HOP_BY_HOP_HEADERS:
                response.headers.append(key, value)
        return response

    def _serve_stream(self, result: StreamExtraction, range_header: Optional[str]) -> Response:
        start, end = parse_range_header(range_header)
        total = result.filesize
        headers = {}

        if start is None:
            if total is not None:
                headers["Content-Length"] = str(total)
            return StreamingResponse(result.chunks, media_type=result.mime_type, headers=headers)

        if total is not None:
            start, end = resolve_file_range(start, end, total)
            headers["Accept-Ranges"] = "bytes"
            headers["Content-Length"] = str(end - start + 1)
            headers["Content-Range"] = f"bytes {start}-{end}/{total}" if total > 0 else "bytes */0"
        elif end is not None:
            headers["Content-Range"] = f"bytes {start}-{end}/*"
        limit = None if end is None else end - start + 1

        return StreamingResponse(
            byte_range(result.chunks, skip=start, limit=limit),
            status_code=206,
            media_type=result.mime_type,
            headers=headers,
        )

    def _serve_file(self, result: FileExtraction, range_header: Optional[str]) -> Response:
        size = os.fstat(result.file.fileno()).st_size
        start, end = parse_range_header(range_header)
        first, last = resolve_file_range(start, end, size)
        length = last - first + 1
        partial = size > 0 and (first, last) != (0, size - 1)

        headers = {
            "Accept-Ranges": "bytes",
            "Content-Length": str(length),
            "Content-Range": f"bytes {first}-{last}/{size}" if size > 0 else "bytes */0",
        }
        return StreamingResponse(
            iter_file_slice(result.file, first, length, owner=result.audio_file),
            status_code=206 if partial else 200,
            media_type=result.mime_type,
            headers=headers,
        )
