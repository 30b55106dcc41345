"""External identity provider verification.

Learn: Exchanging an authorization code for a provider access token is
the HTTP layer's business. This module starts one step later: given a
provider access token, ask the provider who it belongs to and return a
verified (provider, subject, email) triple, or fail with
ProviderVerificationFailed. Only addresses the provider itself reports
as verified are accepted.
"""

from dataclasses import dataclass
from typing import Any, Optional, Protocol

import httpx
import structlog

from warden.config import Settings, settings as default_settings
from warden.db.models import SocialProvider
from warden.errors import ProviderVerificationFailed

logger = structlog.get_logger()


@dataclass(frozen=True)
class ProviderIdentity:
    provider: SocialProvider
    subject: str
    email: str


class ProviderVerifier(Protocol):
    async def verify(self, provider: SocialProvider, artifact: str) -> ProviderIdentity: ...


class UserinfoVerifier:
    """Resolves a provider access token through the provider's userinfo API."""

    def __init__(
        self,
        cfg: Settings | None = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.cfg = cfg or default_settings
        self._client = client

    async def verify(self, provider: SocialProvider, artifact: str) -> ProviderIdentity:
        url = self.cfg.provider_userinfo_urls.get(provider.value)
        if not url:
            raise ProviderVerificationFailed(f"Provider {provider.value} is not configured")

        if self._client is not None:
            return await self._verify_with(self._client, provider, url, artifact)
        async with httpx.AsyncClient(timeout=self.cfg.provider_timeout_seconds) as client:
            return await self._verify_with(client, provider, url, artifact)

    async def _verify_with(
        self,
        client: httpx.AsyncClient,
        provider: SocialProvider,
        url: str,
        artifact: str,
    ) -> ProviderIdentity:
        data = await self._get_json(client, url, artifact)
        subject = data.get("sub") or data.get("id")
        if subject is None:
            raise ProviderVerificationFailed("Provider returned no subject")

        email = _verified_email(provider, data)
        if email is None and provider is SocialProvider.GITHUB:
            # Private GitHub addresses only show up on /user/emails.
            emails = await self._get_json(client, f"{url.rstrip('/')}/emails", artifact)
            email = next(
                (
                    e.get("email")
                    for e in emails
                    if isinstance(e, dict) and e.get("primary") and e.get("verified")
                ),
                None,
            )
        if not email:
            raise ProviderVerificationFailed("Provider returned no verified email")

        return ProviderIdentity(provider=provider, subject=str(subject), email=email)

    async def _get_json(self, client: httpx.AsyncClient, url: str, artifact: str) -> Any:
        try:
            resp = await client.get(
                url,
                headers={
                    "Authorization": f"Bearer {artifact}",
                    "Accept": "application/json",
                    "User-Agent": "warden",
                },
            )
        except httpx.HTTPError as e:
            logger.warning("provider.request_failed", url=url, error=type(e).__name__)
            raise ProviderVerificationFailed()
        if resp.status_code != 200:
            logger.warning("provider.rejected", url=url, status=resp.status_code)
            raise ProviderVerificationFailed()
        try:
            return resp.json()
        except ValueError:
            raise ProviderVerificationFailed("Provider returned invalid JSON")


def _verified_email(provider: SocialProvider, data: dict) -> Optional[str]:
    email = data.get("email")
    if not email:
        return None
    if provider is SocialProvider.GOOGLE:
        return email if data.get("email_verified") is True else None
    if provider is SocialProvider.DISCORD:
        return email if data.get("verified") is True else None
    # GitHub's public profile email and Facebook's email are confirmed
    # addresses by those providers' rules.
    return email
