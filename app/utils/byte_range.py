"""
字节区间过滤

在任意字节块序列上实现 HTTP Range 请求所需的 skip / limit 裁剪
"""
import re
from typing import AsyncIterable, AsyncIterator, Optional, Tuple

_RANGE_PATTERN = re.compile(r"^\s*bytes=(\d+)-(\d*)\s*$")


async def byte_range(
    chunks: AsyncIterable[bytes],
    skip: int = 0,
    limit: Optional[int] = None,
) -> AsyncIterator[bytes]:
    """
    裁剪字节流: 丢弃前 skip 个字节，最多输出 limit 个字节

    :param chunks: 上游字节块序列，其异常原样向外抛出
    :param skip: 需要跳过的字节数 (可跨越多个块)
    :param limit: 最多输出的字节数，None 表示不限制
    """
    if limit is not None and limit <= 0:
        return

    remaining = limit
    async for chunk in chunks:
        if skip:
            if len(chunk) <= skip:
                skip -= len(chunk)
                continue
            chunk = chunk[skip:]
            skip = 0

        if remaining is not None:
            if len(chunk) >= remaining:
                yield chunk[:remaining]
                return
            remaining -= len(chunk)

        if chunk:
            yield chunk


def parse_range_header(value: Optional[str]) -> Tuple[Optional[int], Optional[int]]:
    """
    解析 Range 请求头，仅支持 bytes=<start>-<end?> 形式

    后缀区间 (bytes=-N)、多段区间和无法解析的值都视为未请求区间
    """
    if not value:
        return None, None

    match = _RANGE_PATTERN.match(value)
    if not match:
        return None, None

    start = int(match.group(1))
    end = int(match.group(2)) if match.group(2) else None
    if end is not None and end < start:
        return None, None
    return start, end
