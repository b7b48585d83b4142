"""
提取器抽象基类
所有音频来源都需要继承此类并实现 extract 方法
"""
from abc import ABC, abstractmethod

from app.models.audio import ExtractionResult


def watch_url(video_id: str) -> str:
    return f"https://youtube.com/watch?v={video_id}"


class Extractor(ABC):
    """音频提取器基类"""

    name: str = ""

    @abstractmethod
    async def extract(self, video_id: str) -> ExtractionResult:
        """
        为视频找到可播放的音频来源

        视频 ID 原样透传，不做格式校验；也不设置整体超时

        :param video_id: 视频 ID
        :return: ProxyExtraction / StreamExtraction / FileExtraction 之一
        """
        ...

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"
