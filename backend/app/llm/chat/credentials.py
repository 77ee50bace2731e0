"""Provider credential resolution with user/system fallback and retry."""

import asyncio
import logging
from typing import Any

import httpx

from app.llm.chat.errors import ConfigResolutionError
from app.llm.chat.models import Identity

logger = logging.getLogger(__name__)

USER_KEYS_PATH = "/api/auth/user/api-keys"
SYSTEM_KEYS_PATH = "/api/auth/system/api-keys"

# Fixed retry policy, no backoff growth
MAX_ATTEMPTS = 3
RETRY_DELAY = 1.0  # seconds


def has_valid_keys(keys: dict[str, str]) -> bool:
    """Whether at least one provider has a non-empty key."""
    return any(value != "" for value in keys.values())


class CredentialResolver:
    """Resolves the provider->key mapping used to authorize backend calls.

    The identity's own keys take precedence; when it has none the shared
    system keys are used. The resolver holds no state between calls, so
    sessions are expected to cache its result.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        max_attempts: int = MAX_ATTEMPTS,
        retry_delay: float = RETRY_DELAY,
    ):
        self._client = client
        self._max_attempts = max_attempts
        self._retry_delay = retry_delay

    async def resolve(self, identity: Identity) -> dict[str, str]:
        """Resolve credentials for an identity. Never raises.

        Returns:
            The credential set, or an empty dict if nothing could be fetched.
        """
        for attempt in range(self._max_attempts):
            user_failed = False
            system_failed = False

            try:
                keys = await self._fetch(USER_KEYS_PATH, identity)
                if keys is not None and has_valid_keys(keys):
                    logger.info(f"Using user API keys for providers: {sorted(keys)}")
                    return keys
                logger.info(f"User {identity.user_id} has no valid API keys, trying system keys")
            except ConfigResolutionError as e:
                user_failed = True
                logger.warning(f"Failed to fetch user API keys: {e}")

            try:
                keys = await self._fetch(SYSTEM_KEYS_PATH, identity)
                if keys is not None:
                    logger.info(f"Using system API keys for providers: {sorted(keys)}")
                    return keys
            except ConfigResolutionError as e:
                system_failed = True
                logger.warning(f"Failed to fetch system API keys: {e}")

            if not (user_failed and system_failed):
                # At least one endpoint answered; retrying would not change the answer
                break

            if attempt + 1 < self._max_attempts:
                logger.warning(
                    f"Credential fetch failed (attempt {attempt + 1}/{self._max_attempts}), "
                    f"retrying in {self._retry_delay}s..."
                )
                await asyncio.sleep(self._retry_delay)

        logger.warning(f"Could not fetch any valid API keys for user {identity.user_id}")
        return {}

    async def _fetch(self, path: str, identity: Identity) -> dict[str, str] | None:
        """Fetch one credential endpoint.

        Returns:
            The keys when the endpoint reports success, None otherwise.

        Raises:
            ConfigResolutionError: On transport, HTTP status or decoding failure.
        """
        headers = {}
        if identity.auth_token:
            headers["Authorization"] = f"Bearer {identity.auth_token}"

        try:
            response = await self._client.get(
                path, params={"userId": identity.user_id}, headers=headers
            )
            response.raise_for_status()
            body: dict[str, Any] = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise ConfigResolutionError(f"{path}: {e}", retriable=True) from e

        if not isinstance(body, dict) or not body.get("success"):
            return None

        raw_keys = body.get("apiKeys") or {}
        if not isinstance(raw_keys, dict):
            return None
        return {str(k): str(v) for k, v in raw_keys.items() if v is not None}
