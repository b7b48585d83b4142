"""健康检查"""
from fastapi import APIRouter
from fastapi.responses import PlainTextResponse

router = APIRouter(tags=["系统"])


@router.get("/health", summary="健康检查", response_class=PlainTextResponse)
def health():
    return "ok"
