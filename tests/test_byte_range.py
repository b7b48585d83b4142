import asyncio

import pytest

from app.utils.byte_range import byte_range, parse_range_header


async def _source(chunks):
    for chunk in chunks:
        yield chunk


def collect(chunks, skip=0, limit=None):
    async def run():
        return [c async for c in byte_range(_source(chunks), skip=skip, limit=limit)]

    return asyncio.run(run())


@pytest.mark.parametrize(
    "chunks, expected, skip, limit",
    [
        ([b"hello", b"world"], [b"hello", b"world"], 0, None),
        ([b"hello", b"world"], [b"llo", b"world"], 2, None),
        ([b"hello", b"world"], [b"hello", b"w"], 0, 6),
        ([b"hello", b"world"], [b"llo", b"wor"], 2, 6),
        ([b"hello", b"world"], [b"world"], 5, None),
        ([b"hello", b"world"], [b"orld"], 6, None),
        ([b"hello", b"world"], [b"hel"], 0, 3),
        ([b"hello", b"world"], [b"hello"], 0, 5),
        ([b"hello", b"world"], [], 0, 0),
        ([b"hello", b"world"], [], 100, None),
        ([b"hello", b"world"], [b"hello", b"world"], 0, 100),
        ([b"hello", b"world"], [], 100, 100),
        ([], [], 0, None),
        ([], [], 100, None),
        ([], [], 0, 100),
        ([], [], 100, 100),
    ],
)
def test_byte_range_trims_chunks(chunks, expected, skip, limit):
    assert collect(chunks, skip=skip, limit=limit) == expected


def test_byte_range_skip_spans_many_small_chunks():
    chunks = [b"ab", b"cd", b"ef", b"gh"]
    assert b"".join(collect(chunks, skip=5)) == b"fgh"
    assert b"".join(collect(chunks, skip=3, limit=4)) == b"defg"


def test_byte_range_limit_zero_does_not_pull_source():
    pulled = []

    async def source():
        pulled.append(True)
        yield b"data"

    async def run():
        return [c async for c in byte_range(source(), limit=0)]

    assert asyncio.run(run()) == []
    assert pulled == []


def test_byte_range_propagates_source_error():
    received = []

    async def source():
        yield b"first"
        raise OSError("upstream broke")

    async def run():
        async for chunk in byte_range(source(), skip=1):
            received.append(chunk)

    with pytest.raises(OSError, match="upstream broke"):
        asyncio.run(run())
    assert received == [b"irst"]


@pytest.mark.parametrize(
    "value, expected",
    [
        ("bytes=0-99", (0, 99)),
        ("bytes=100-", (100, None)),
        ("bytes=7-7", (7, 7)),
        (" bytes=3-10 ", (3, 10)),
        ("bytes=-50", (None, None)),
        ("bytes=-", (None, None)),
        ("bytes=10-5", (None, None)),
        ("bytes=0-1,5-9", (None, None)),
        ("items=0-10", (None, None)),
        ("garbage", (None, None)),
        ("", (None, None)),
        (None, (None, None)),
    ],
)
def test_parse_range_header(value, expected):
    assert parse_range_header(value) == expected
