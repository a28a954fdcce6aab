from app.middleware.backpressure import BackpressureMiddleware
from app.middleware.request_log import RequestLoggingMiddleware

__all__ = ["BackpressureMiddleware", "RequestLoggingMiddleware"]
