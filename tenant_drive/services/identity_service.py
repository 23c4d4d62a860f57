"""Resolves verified identity-provider tokens into principals."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from ..errors import AuthenticationError, returns_result
from ..models import Principal
from ..tokens import TokenError, decode_token, encode_token
from .base import BaseService
from .metadata_service import MetadataService

logger = logging.getLogger(__name__)


@dataclass
class IdentityService(BaseService):
    metadata_service: MetadataService

    @returns_result
    def authenticate(self, authorization: Optional[str]) -> Principal:
        if not authorization or not authorization.lower().startswith("bearer "):
            raise AuthenticationError("Missing bearer token")
        token = authorization.split(" ", 1)[1].strip()
        try:
            claims = decode_token(token, self.config.auth.token_secret)
        except TokenError as exc:
            logger.info("Rejected bearer token: %s", exc)
            raise AuthenticationError(str(exc)) from exc
        return self._resolve(claims)

    def issue_token(self, user_id: str, email: str, tenant_id: Optional[str], ttl_seconds: int = 3600) -> str:
        """Mint a bearer token the way the identity provider does; used by tooling and tests."""
        return encode_token(
            {"sub": user_id, "email": email, "tenant_id": tenant_id},
            self.config.auth.token_secret,
            ttl_seconds=ttl_seconds,
        )

    def _resolve(self, claims: Dict[str, Any]) -> Principal:
        user_id = claims.get("sub")
        email = claims.get("email")
        if not user_id or not email:
            raise AuthenticationError("Token is missing subject or email")
        # the stored role wins over any role claim
        _, created = self.metadata_service.ensure_user(str(user_id), str(email), claims.get("tenant_id"))
        if created:
            logger.info("Registered principal %s on first sight", user_id)
        principal = self.metadata_service.principal_snapshot(str(user_id))
        if principal is None:
            raise AuthenticationError("Principal could not be resolved")
        return principal
