"""
请求截止时间中间件

为每个请求创建 Deadline 并挂到 request.state.deadline，由依赖注入传给应用服务。
"""
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from core.config import settings
from core.deadline import Deadline


class RequestDeadlineMiddleware(BaseHTTPMiddleware):

    def __init__(self, app: ASGIApp, timeout_seconds: float | None = None):
        super().__init__(app)
        self.timeout_seconds = timeout_seconds or settings.REQUEST_TIMEOUT_SECONDS

    async def dispatch(self, request: Request, call_next):
        deadline = Deadline.after(self.timeout_seconds)
        request.state.deadline = deadline
        try:
            return await call_next(request)
        finally:
            # 响应已发出，后续仍在运行的协作方不再继续
            deadline.cancel()
