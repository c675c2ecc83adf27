"""
请求/响应日志中间件

记录方法、路径、状态码与耗时；请求体按开关记录并脱敏。
网关回调的原文只交给签名校验，这里只记录长度。
"""
import json
import re
import time
from typing import Any
from urllib.parse import parse_qs

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from core.config import settings
from core.logging_config import get_logger


logger = get_logger(__name__)

# 13-19 位连续数字视为卡号，只保留后四位
_PAN_RE = re.compile(r"\b\d{9,15}(\d{4})\b")


class LoggingMiddleware(BaseHTTPMiddleware):
    SKIP_PATHS = {"/health", "/docs", "/redoc", "/openapi.json"}

    SENSITIVE_FIELDS = {
        "password", "token", "secret", "api_key", "access_token", "authorization",
        "client_secret", "card_no", "card_number", "cvc", "cvv", "md5sig", "hash", "merchant_secret",
    }

    SKIP_BODY_PATH_MARKERS = ("/webhooks/",)

    def __init__(self, app: ASGIApp):
        super().__init__(app)
        self.enable_body_log_default: bool = settings.LOG_REQUEST_BODY_ENABLE_BY_DEFAULT
        self.max_body_log_bytes: int = settings.LOG_REQUEST_BODY_MAX_BYTES

    async def dispatch(self, request: Request, call_next):
        if request.url.path in self.SKIP_PATHS:
            return await call_next(request)

        started = time.perf_counter()
        request_info = await self._request_info(request)
        logger.info("request_started", **request_info)

        try:
            response = await call_next(request)
        except Exception as exc:
            logger.error(
                "request_failed",
                duration_ms=round((time.perf_counter() - started) * 1000, 1),
                error_type=type(exc).__name__,
                **request_info,
                exc_info=True,
            )
            raise

        duration = time.perf_counter() - started
        self._log_response(response, duration, request_info)
        response.headers["X-Process-Time"] = f"{duration:.3f}"
        return response

    async def _request_info(self, request: Request) -> dict:
        info: dict[str, Any] = {
            "method": request.method,
            "path": request.url.path,
        }
        if request.query_params:
            info["query_params"] = dict(request.query_params)
        if request.method not in ("POST", "PUT", "PATCH"):
            return info

        if self._is_webhook(request):
            # 读取后 Starlette 会缓存 body，路由仍能拿到同一份原始字节
            info["body_bytes"] = len(await request.body())
        elif self._should_log_body(request):
            body = await self._sanitized_body(request)
            if body is not None:
                info["body"] = body
        return info

    def _is_webhook(self, request: Request) -> bool:
        return any(marker in request.url.path for marker in self.SKIP_BODY_PATH_MARKERS)

    def _should_log_body(self, request: Request) -> bool:
        # X-Log-Body: true/false 可按请求覆盖
        header = (request.headers.get("X-Log-Body") or "").lower()
        if header in {"true", "1", "yes"}:
            return True
        if header in {"false", "0", "no"}:
            return False
        return bool(self.enable_body_log_default and settings.DEBUG)

    async def _sanitized_body(self, request: Request) -> Any:
        body = await request.body()
        if not body:
            return None
        text = body[: self.max_body_log_bytes].decode("utf-8", errors="ignore")
        content_type = request.headers.get("content-type", "").lower()
        parsed: Any = text
        if "application/json" in content_type:
            try:
                parsed = json.loads(text)
            except ValueError:
                parsed = text
        elif "application/x-www-form-urlencoded" in content_type:
            parsed = {k: v if len(v) > 1 else v[0] for k, v in parse_qs(text).items()}
        return self._sanitize(parsed)

    def _sanitize(self, data: Any) -> Any:
        if isinstance(data, dict):
            return {k: ("***" if str(k).lower() in self.SENSITIVE_FIELDS else self._sanitize(v)) for k, v in data.items()}
        if isinstance(data, (list, tuple)):
            return [self._sanitize(v) for v in data]
        if isinstance(data, str):
            return _PAN_RE.sub(lambda m: "*" * (len(m.group(0)) - 4) + m.group(1), data)
        return data

    def _log_response(self, response: Response, duration: float, request_info: dict):
        log_data = {
            "status_code": response.status_code,
            "duration_ms": round(duration * 1000, 1),
            "method": request_info["method"],
            "path": request_info["path"],
        }
        if response.status_code < 400:
            logger.info("request_completed", **log_data)
        elif response.status_code < 500:
            logger.warning("request_client_error", **log_data)
        else:
            logger.error("request_server_error", **log_data)
