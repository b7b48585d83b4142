"""
音频提取结果数据模型

ExtractionResult 是封闭的三选一类型，只在 AudioService 中被消费:
  - ProxyExtraction   远程 URL + 需要转发的请求头
  - StreamExtraction  正在产生的字节流 (只能读取一次)
  - FileExtraction    已下载完成的本地文件
"""
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, BinaryIO, Dict, Optional, Union


@dataclass
class ProxyExtraction:
    """由服务端重新代理的远程音频地址"""
    url: str                                              # 音频直链
    headers: Dict[str, str] = field(default_factory=dict) # 回源时附加的请求头


@dataclass
class StreamExtraction:
    """进行中的音频字节流"""
    chunks: AsyncIterator[bytes]    # 字节块序列
    mime_type: str                  # Content-Type
    filesize: Optional[int] = None  # 总大小 (未知则为 None)


@dataclass
class FileExtraction:
    """本地缓存中的完整音频文件"""
    file: BinaryIO                  # 已打开的文件句柄
    mime_type: str                  # Content-Type
    audio_file: Any = None          # 缓存条目引用，响应读完之前保持其存活


ExtractionResult = Union[ProxyExtraction, StreamExtraction, FileExtraction]
