"""Order collaborator client."""
from .client import OrderServiceClient

__all__ = ["OrderServiceClient"]
