"""
AudioFeed 配置模块
从 .env 文件加载所有配置项，提供全局单例 settings
"""
import os
from pathlib import Path
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

BASE_DIR = Path(__file__).resolve().parent.parent

DEFAULT_PIPED_INSTANCE = "https://pipedapi.kavin.rocks"
PIPED_INSTANCES_URL = "https://raw.githubusercontent.com/wiki/TeamPiped/Piped/Instances.md"


@dataclass
class Settings:
    """全局配置"""

    # 服务
    host: str = os.getenv("HOST", "0.0.0.0")
    port: int = int(os.getenv("PORT", "8080"))

    # 音频缓存 (启动时会清空该目录)
    cache_dir: Path = Path(os.getenv("AUDIO_CACHE_DIR", str(BASE_DIR / "data" / "audio")))
    cache_capacity: int = int(os.getenv("AUDIO_CACHE_CAPACITY", "30"))
    cache_ttl_sec: int = int(os.getenv("AUDIO_CACHE_TTL_SEC", "600"))

    # yt-dlp 命令行
    ytdlp_bin: str = os.getenv("YTDLP_BIN", "yt-dlp")
    ytdlp_concurrency: int = int(os.getenv("YTDLP_CONCURRENCY", "1"))
    ytdlp_proxy: Optional[str] = os.getenv("YTDLP_PROXY") or None

    # Piped API 镜像
    piped_instance: str = os.getenv("PIPED_INSTANCE", DEFAULT_PIPED_INSTANCE)
    piped_instances_url: str = os.getenv("PIPED_INSTANCES_URL", PIPED_INSTANCES_URL)
    piped_refresh_interval_sec: int = int(os.getenv("PIPED_REFRESH_INTERVAL_SEC", "0"))

    # 提取器竞速 / 出站 HTTP
    race_concurrency: int = int(os.getenv("RACE_CONCURRENCY", "10"))
    http_timeout_sec: float = float(os.getenv("HTTP_TIMEOUT_SEC", "30"))

    def __post_init__(self):
        self.cache_dir = Path(self.cache_dir)
        if self.ytdlp_concurrency < 1:
            raise ValueError(f"YTDLP_CONCURRENCY 必须 >= 1，当前: {self.ytdlp_concurrency}")


settings = Settings()
