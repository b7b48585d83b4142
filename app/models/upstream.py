"""
上游 JSON 的反序列化模型 (Pydantic)

字段缺失时抛出 ValidationError，由提取器转换为 ExtractionFailure
"""
from typing import Dict, List, Optional

from pydantic import BaseModel


# -------- Piped API: GET /streams/{video_id} --------

class PipedAudioStream(BaseModel):
    """Piped 返回的单条音频流"""
    url: str
    mimeType: Optional[str] = None
    bitrate: Optional[int] = None


class PipedStreams(BaseModel):
    """Piped /streams 响应 (只关心音频流)"""
    audioStreams: List[PipedAudioStream]


# -------- yt-dlp -j 输出 --------

class YtdlpFragment(BaseModel):
    url: str


class YtdlpFormat(BaseModel):
    """yt-dlp 描述的单个可下载格式"""
    format_id: str = ""
    url: Optional[str] = None
    quality: Optional[float] = None
    resolution: Optional[str] = None
    audio_ext: Optional[str] = None
    fragments: List[YtdlpFragment] = []
    http_headers: Dict[str, str] = {}

    @property
    def direct_url(self) -> Optional[str]:
        """单分片格式取分片地址，否则取格式自身地址"""
        if self.fragments:
            return self.fragments[0].url
        return self.url


class YtdlpInfo(BaseModel):
    """yt-dlp -j 输出的视频信息 (只关心 formats)"""
    id: Optional[str] = None
    title: Optional[str] = None
    formats: List[YtdlpFormat]
