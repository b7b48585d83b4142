"""
有序竞速

并发执行多个提取尝试，按输入顺序取第一个成功的结果
"""
import asyncio
import inspect
import logging
from collections import deque
from typing import Awaitable, Deque, List, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def race_ordered_first_ok(
    aws: List[Awaitable[T]],
    limit: int = 10,
    errors: Tuple[Type[BaseException], ...] = (Exception,),
) -> T:
    """
    并发运行 aws (同时最多 limit 个)，按输入顺序消费结果

    - 返回顺序上第一个没有抛出 errors 中异常的结果
      (即使后面的尝试更早完成，也要等前面的尝试有结论)
    - 全部失败时抛出最后一个错误
    - 选出结果后取消仍在运行的尝试，关闭尚未启动的协程

    :param aws: 协程 / Future 列表，顺序即优先级
    :param limit: 并发窗口大小
    :param errors: 视为"失败，继续尝试下一个"的异常类型
    """
    if not aws:
        raise ValueError("race_ordered_first_ok 需要至少一个待执行对象")
    if limit < 1:
        raise ValueError(f"并发窗口必须 >= 1，当前: {limit}")

    pending = deque(aws)
    running: Deque[asyncio.Future] = deque()

    def fill() -> None:
        while pending and len(running) < limit:
            running.append(asyncio.ensure_future(pending.popleft()))

    head = last_error = None
    try:
        fill()
        while running:
            head = running.popleft()
            try:
                return await head
            except errors as exc:
                logger.debug(f"[Race] 尝试失败: {exc!r}")
                last_error = exc
            fill()
        raise last_error
    finally:
        _discard(running, pending)
        # 抛出的异常通过 traceback 引用本帧，不能再让本帧引用它
        head = last_error = None


def _discard(running: Deque[asyncio.Future], pending: Deque[Awaitable]) -> None:
    for task in running:
        if not task.done():
            task.cancel()
        elif not task.cancelled():
            # 已结束的失败尝试: 取走异常，避免 "never retrieved" 告警
            task.exception()
    for aw in pending:
        if inspect.iscoroutine(aw):
            aw.close()
