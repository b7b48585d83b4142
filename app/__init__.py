"""
AudioFeed - YouTube 频道音频网关
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse

from app.config import Settings
from app.exceptions import AudioFeedError
from app.extractors.ytdlp_cli import YtdlpCli

logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None, ytdlp: Optional[YtdlpCli] = None) -> FastAPI:
    """
    创建应用

    :param settings: 配置，缺省使用全局 settings
    :param ytdlp: yt-dlp 命令行封装，缺省按配置创建 (测试时可替换)
    """
    from app.config import settings as default_settings
    from app.routers import audio, health

    settings = settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        from app.extractors.embedded_extractor import EmbeddedExtractor
        from app.extractors.piped_extractor import PipedExtractor
        from app.extractors.ytdlp_extractors import (
            YtdlpFileExtractor,
            YtdlpStreamExtractor,
            YtdlpUrlExtractor,
        )
        from app.services.audio_service import AudioService
        from app.services.audio_store import AudioStore
        from app.services.piped_instance import (
            PipedInstance,
            PipedInstanceHolder,
            PipedInstanceRepo,
        )

        cli = ytdlp or YtdlpCli(
            binary=settings.ytdlp_bin,
            proxy=settings.ytdlp_proxy,
            concurrency=settings.ytdlp_concurrency,
        )
        store = AudioStore(
            settings.cache_dir,
            capacity=settings.cache_capacity,
            ttl=settings.cache_ttl_sec,
        )
        holder = PipedInstanceHolder(PipedInstance(settings.piped_instance))

        async with httpx.AsyncClient(timeout=settings.http_timeout_sec) as client, store:
            app.state.piped_holder = holder
            app.state.audio_store = store
            app.state.audio_service = AudioService(
                [
                    PipedExtractor(client, holder),
                    EmbeddedExtractor(proxy=settings.ytdlp_proxy),
                    YtdlpUrlExtractor(cli),
                    YtdlpStreamExtractor(cli),
                    YtdlpFileExtractor(cli, store),
                ],
                client,
                race_concurrency=settings.race_concurrency,
            )

            refresher = None
            if settings.piped_refresh_interval_sec > 0:
                repo = PipedInstanceRepo(client, settings.piped_instances_url)
                refresher = asyncio.create_task(
                    repo.auto_update(holder, settings.piped_refresh_interval_sec)
                )
                logger.info(f"[Piped] 实例自动刷新: 每 {settings.piped_refresh_interval_sec}s")

            try:
                yield
            finally:
                if refresher is not None:
                    refresher.cancel()

    app = FastAPI(
        title="AudioFeed",
        description="YouTube 视频音频网关 — 多种提取方式竞速，本地缓存 yt-dlp 下载结果",
        version="0.1.0",
        lifespan=lifespan,
    )

    @app.exception_handler(AudioFeedError)
    async def handle_audio_feed_error(request: Request, exc: AudioFeedError):
        logger.warning(f"[API] 请求失败: {request.url.path} ({type(exc).__name__}: {exc})")
        return PlainTextResponse(str(exc), status_code=exc.status_code)

    app.include_router(health.router)
    app.include_router(audio.router)
    return app
