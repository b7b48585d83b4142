"""
错误类型

HTTP 层根据 status_code 映射响应状态码:
  - 上游 / 提取 / 外部工具失败 → 502
  - 客户端输入错误 → 400
  - 其他未分类异常 → 500 (由 FastAPI 默认处理)
"""


class AudioFeedError(Exception):
    """所有业务错误的基类"""

    status_code: int = 500


class UpstreamTransportError(AudioFeedError):
    """请求 API 镜像或源站时的网络错误 / 非 2xx 响应"""

    status_code = 502


class ExtractionFailure(AudioFeedError):
    """找不到合适的音频流，或提取器输出无法解析"""

    status_code = 502


class ToolFailure(AudioFeedError):
    """yt-dlp 在 stderr 输出 ERROR: 标记，或异常退出"""

    status_code = 502


class CacheIOError(AudioFeedError):
    """缓存文件清理失败 (只记录日志，不返回给调用方)"""


class MalformedInputError(AudioFeedError):
    """无法处理的客户端输入"""

    status_code = 400
