"""
Supabase JWT validation service.

Access tokens are signed either with the project's shared HS256 secret
or with an asymmetric key published in the project's JWKS. The JWKS is
cached to avoid repeated network calls.
"""

import logging
from typing import Any, Dict, Optional

import httpx
from cachetools import TTLCache
from jose import JWTError, jwt
from jose.exceptions import ExpiredSignatureError

from tigube_api.config import Settings
from tigube_api.services.errors import AuthenticationFailure

logger = logging.getLogger(__name__)

ASYMMETRIC_ALGORITHMS = ["RS256", "ES256"]


class AuthService:
    """
    Validates bearer tokens issued by Supabase auth.

    Handles:
    - Fetching and caching JWKS (JSON Web Key Set)
    - Validating signature, expiration, audience and issuer
    - Extracting the caller's id and email
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        # Cache JWKS for 1 hour
        self._jwks_cache: TTLCache = TTLCache(maxsize=1, ttl=3600)
        self._http_client: Optional[httpx.AsyncClient] = None

    async def _get_http_client(self) -> httpx.AsyncClient:
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(timeout=10.0)
        return self._http_client

    async def _fetch_jwks(self) -> Dict[str, Any]:
        """
        Fetch the project's JWKS.

        Raises:
            AuthenticationFailure: If the JWKS cannot be fetched.
        """
        cache_key = "jwks"
        if cache_key in self._jwks_cache:
            return self._jwks_cache[cache_key]

        try:
            client = await self._get_http_client()
            response = await client.get(self.settings.supabase_jwks_url)
            response.raise_for_status()
            jwks = response.json()
        except httpx.HTTPError as e:
            logger.error(f"Failed to fetch JWKS: {e}")
            raise AuthenticationFailure("Unable to verify token") from e

        self._jwks_cache[cache_key] = jwks
        logger.info("Fetched and cached Supabase JWKS")
        return jwks

    def _get_signing_key(self, jwks: Dict[str, Any], token: str) -> Optional[Dict[str, Any]]:
        """Find the JWKS key matching the token's kid."""
        try:
            kid = jwt.get_unverified_header(token).get("kid")
        except JWTError as e:
            logger.warning(f"Error parsing token header: {e}")
            return None

        if not kid:
            logger.warning("Token missing 'kid' header")
            return None
        for key in jwks.get("keys", []):
            if key.get("kid") == kid:
                return key
        logger.warning(f"No matching key found for kid: {kid}")
        return None

    async def validate_token(self, token: str) -> Dict[str, Any]:
        """
        Validate a Supabase access token and return its claims.

        Raises:
            AuthenticationFailure: If the token is invalid or expired.
        """
        if self.settings.supabase_jwt_secret:
            key: Any = self.settings.supabase_jwt_secret
            algorithms = ["HS256"]
        else:
            key = self._get_signing_key(await self._fetch_jwks(), token)
            if not key:
                raise AuthenticationFailure("Unable to find appropriate signing key")
            algorithms = ASYMMETRIC_ALGORITHMS

        options = {
            "verify_signature": True,
            "verify_aud": True,
            "verify_exp": True,
            "require_exp": True,
            "require_sub": True,
            "verify_iss": bool(self.settings.supabase_url),
        }
        try:
            claims = jwt.decode(
                token,
                key,
                algorithms=algorithms,
                audience=self.settings.supabase_jwt_audience,
                issuer=self.settings.supabase_issuer if self.settings.supabase_url else None,
                options=options,
            )
        except ExpiredSignatureError:
            logger.warning("Token has expired")
            raise AuthenticationFailure("Token has expired")
        except JWTError as e:
            logger.warning(f"JWT validation failed: {e}")
            raise AuthenticationFailure("Token validation failed")

        logger.debug(f"Validated token for user: {claims.get('sub')}")
        return claims

    async def get_user_info(self, token: str) -> Dict[str, str]:
        """
        Extract the caller's id and email from a validated token.

        Returns:
            Dict with 'sub' (user ID) and 'email' keys.
        """
        claims = await self.validate_token(token)
        sub = claims.get("sub")
        if not sub:
            raise AuthenticationFailure("Token missing 'sub' claim")
        return {
            "sub": sub,
            "email": claims.get("email") or "",
        }

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()
