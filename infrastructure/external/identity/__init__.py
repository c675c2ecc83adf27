"""Identity collaborator adapters."""
from .jwt_identity import JWTIdentityProvider

__all__ = ["JWTIdentityProvider"]
