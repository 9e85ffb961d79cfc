from .request_id import RequestIDMiddleware, get_request_id
from .logging import LoggingMiddleware
from .deadline import RequestDeadlineMiddleware

__all__ = [
    "RequestIDMiddleware",
    "LoggingMiddleware",
    "RequestDeadlineMiddleware",
    "get_request_id",
]
