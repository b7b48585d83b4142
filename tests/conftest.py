import asyncio
import gc
import json
import stat
import sys
from pathlib import Path

import pytest

from app.config import Settings
from app.exceptions import ToolFailure
from app.extractors.ytdlp_cli import YtdlpCli

AUDIO_BYTES = bytes(range(256)) * 40


class FakeYtdlpCli(YtdlpCli):
    """不启动子进程的 yt-dlp，记录调用次数"""

    def __init__(self, payload: bytes = AUDIO_BYTES, info: dict = None, fail: bool = False, delay: float = 0):
        super().__init__(binary="yt-dlp-fake")
        self.payload = payload
        self.info = info or {"id": "abc", "formats": []}
        self.fail = fail
        self.delay = delay
        self.downloads = []
        self.dumps = []

    async def dump_json(self, video_id):
        self.dumps.append(video_id)
        return json.dumps(self.info).encode()

    async def download(self, video_id, output):
        self.downloads.append(video_id)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            Path(output).write_bytes(b"partial")
            raise ToolFailure("ERROR: [youtube] abc: Video unavailable")
        Path(output).write_bytes(self.payload)

    async def stream(self, video_id):
        async def chunks():
            for i in range(0, len(self.payload), 1000):
                yield self.payload[i:i + 1000]

        return chunks()


FAKE_YTDLP_SCRIPT = """#!{python}
import json
import os
import sys

args = sys.argv[1:]
mode = os.environ.get("FAKE_YTDLP_MODE", "ok")
payload = bytes(range(256)) * 40

if mode == "error":
    sys.stderr.write("ERROR: [youtube] abc: Video unavailable\\n")
    sys.exit(0)
if mode == "crash":
    sys.exit(2)

if "-j" in args:
    print(json.dumps({{
        "id": "abc",
        "formats": [
            {{"format_id": "139", "url": "https://cdn.example/139", "quality": 2.0,
              "resolution": "audio only", "audio_ext": "m4a",
              "http_headers": {{"User-Agent": "yt-dlp"}}}},
            {{"format_id": "140", "url": "https://cdn.example/140", "quality": 3.0,
              "resolution": "audio only", "audio_ext": "m4a",
              "http_headers": {{"User-Agent": "yt-dlp"}}}},
        ],
    }}))
elif "-o" in args:
    target = args[args.index("-o") + 1]
    if target == "-":
        sys.stdout.buffer.write(payload)
    else:
        with open(target, "wb") as fh:
            fh.write(payload)
"""


@pytest.fixture()
def settings(tmp_path):
    return Settings(
        cache_dir=tmp_path / "audio",
        cache_capacity=30,
        cache_ttl_sec=600,
        ytdlp_bin="yt-dlp",
        ytdlp_concurrency=1,
        ytdlp_proxy=None,
        piped_instance="https://piped.example",
        piped_refresh_interval_sec=0,
    )


@pytest.fixture()
def gc_disabled():
    """关闭循环垃圾回收，缓存文件只能靠引用计数及时释放"""
    gc.collect()
    gc.disable()
    yield
    gc.enable()


@pytest.fixture()
def fake_cli():
    return FakeYtdlpCli()


@pytest.fixture()
def fake_ytdlp_bin(tmp_path):
    script = tmp_path / "yt-dlp"
    script.write_text(FAKE_YTDLP_SCRIPT.format(python=sys.executable))
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return str(script)
