"""
AudioFeed — YouTube 视频音频网关

启动命令:
    python main.py
    或
    uvicorn main:app --host 0.0.0.0 --port 8080
"""
import logging

import uvicorn

from app import create_app
from app.config import settings
from app.extractors.ytdlp_cli import redact_proxy

# 配置日志
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s │ %(levelname)-7s │ %(name)s │ %(message)s",
    datefmt="%H:%M:%S",
)

logger = logging.getLogger("audiofeed")

app = create_app()

if __name__ == "__main__":
    logger.info(f"🚀 AudioFeed 启动中 http://{settings.host}:{settings.port}")
    logger.info(f"📖 API 文档: http://127.0.0.1:{settings.port}/docs")
    logger.info(f"🗂️ 音频缓存: {settings.cache_dir} (容量 {settings.cache_capacity}, 过期 {settings.cache_ttl_sec}s)")
    logger.info(f"🎧 yt-dlp: {settings.ytdlp_bin} 并发={settings.ytdlp_concurrency} 代理={redact_proxy(settings.ytdlp_proxy)}")

    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        reload=False,
    )
