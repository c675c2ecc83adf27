"""内部协作方 HTTP 客户端基础设施"""
from .base import APIError, APIResponse, AuthenticationError, BaseAPIClient, NotFoundError, TransientAPIError

__all__ = [
    "APIError",
    "APIResponse",
    "AuthenticationError",
    "BaseAPIClient",
    "NotFoundError",
    "TransientAPIError",
]
