from __future__ import annotations

import logging
from typing import Optional

import httpx

from integration.base import TokenEndpoint, TokenGrant
from sync.errors import AuthError, TransientApiError

logger = logging.getLogger(__name__)

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"


class GoogleTokenEndpoint(TokenEndpoint):
    def __init__(
        self,
        token_url: str = GOOGLE_TOKEN_URL,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.token_url = token_url
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def refresh(
        self, refresh_token: str, client_id: Optional[str], client_secret: Optional[str]
    ) -> TokenGrant:
        payload = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": client_id or "",
            "client_secret": client_secret or "",
        }

        try:
            r = await self._client.post(self.token_url, data=payload)
        except httpx.TransportError as e:
            raise TransientApiError(f"Token refresh network error: {e}") from e

        if r.status_code == 429 or r.status_code >= 500:
            raise TransientApiError(
                f"Token refresh failed: {r.status_code} - {r.text}", status=r.status_code
            )

        if r.status_code >= 400:
            try:
                data = r.json()
            except ValueError:
                data = {}
            reason = data.get("error") or str(r.status_code)
            description = data.get("error_description") or r.text
            raise AuthError(
                f"Token refresh rejected ({r.status_code}): {reason} - {description}"
            )

        data = r.json()
        return TokenGrant(
            access_token=data["access_token"],
            expires_in=int(data.get("expires_in", 3600)),
            refresh_token=data.get("refresh_token"),
        )
