"""WeChat Work messaging: access-token cache and text notifications."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

import httpx

from imagesync.exceptions import WeChatAPIError

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)

_REQUEST_TIMEOUT = 10.0
# Tokens are refreshed this many seconds before the server-side expiry.
_EXPIRY_MARGIN = 200
_DEFAULT_EXPIRES_IN = 7200
_TOKEN_ERRCODES = frozenset({40001, 40014, 42001})


@runtime_checkable
class Notifier(Protocol):
    """Anything that can deliver a text message to a user."""

    async def send_message(self, user_id: str, text: str) -> bool:
        """Deliver ``text``. Returns False on failure instead of raising."""
        ...


@dataclass(frozen=True)
class AccessCredential:
    """Bearer token for the messaging API and its local expiry time."""

    value: str
    expires_at: float


class AccessTokenProvider:
    """Lazily fetches and caches the application access token.

    Concurrent callers may refresh at the same time; the last writer wins,
    which is harmless since every fetched token is valid.
    """

    def __init__(
        self,
        corp_id: str,
        secret: str,
        client: httpx.AsyncClient,
        api_base: str = "https://qyapi.weixin.qq.com",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._corp_id = corp_id
        self._secret = secret
        self._client = client
        self._api_base = api_base.rstrip("/")
        self._clock = clock
        self._credential: AccessCredential | None = None

    @property
    def credential(self) -> AccessCredential | None:
        return self._credential

    def invalidate(self) -> None:
        self._credential = None

    async def get_token(self) -> str:
        """Return a valid token, refreshing when missing or expired.

        Raises WeChatAPIError or httpx.HTTPError when the refresh fails.
        """
        credential = self._credential
        if credential is not None and self._clock() < credential.expires_at:
            return credential.value
        return await self.refresh()

    async def refresh(self) -> str:
        resp = await self._client.get(
            f"{self._api_base}/cgi-bin/gettoken",
            params={"corpid": self._corp_id, "corpsecret": self._secret},
            timeout=_REQUEST_TIMEOUT,
        )
        resp.raise_for_status()
        data = resp.json()
        errcode = int(data.get("errcode", 0))
        if errcode != 0:
            raise WeChatAPIError(errcode, str(data.get("errmsg", "")))
        token = data.get("access_token")
        if not isinstance(token, str) or not token:
            raise WeChatAPIError(errcode, "gettoken response carried no access_token")

        expires_in = int(data.get("expires_in") or _DEFAULT_EXPIRES_IN)
        ttl = max(expires_in - _EXPIRY_MARGIN, 0)
        self._credential = AccessCredential(
            value=token,
            expires_at=self._clock() + ttl,
        )
        logger.info("Fetched new WeChat access token, cached for %d seconds", ttl)
        return self._credential.value


class WeChatNotifier:
    """Sends text messages to application users. Never raises."""

    def __init__(
        self,
        token_provider: AccessTokenProvider,
        agent_id: int,
        client: httpx.AsyncClient,
        api_base: str = "https://qyapi.weixin.qq.com",
    ) -> None:
        self._tokens = token_provider
        self._agent_id = agent_id
        self._client = client
        self._api_base = api_base.rstrip("/")

    async def _post_text(self, user_id: str, text: str) -> dict[str, Any]:
        token = await self._tokens.get_token()
        resp = await self._client.post(
            f"{self._api_base}/cgi-bin/message/send",
            params={"access_token": token},
            json={
                "touser": user_id,
                "msgtype": "text",
                "agentid": self._agent_id,
                "text": {"content": text},
            },
            timeout=_REQUEST_TIMEOUT,
        )
        resp.raise_for_status()
        data: dict[str, Any] = resp.json()
        return data

    async def send_message(self, user_id: str, text: str) -> bool:
        """Send ``text`` to ``user_id``. Returns True when the API accepted it."""
        try:
            data = await self._post_text(user_id, text)
            errcode = int(data.get("errcode", 0))
            if errcode in _TOKEN_ERRCODES:
                logger.info("WeChat access token rejected (%d), refreshing", errcode)
                self._tokens.invalidate()
                data = await self._post_text(user_id, text)
                errcode = int(data.get("errcode", 0))
        except WeChatAPIError as exc:
            logger.error("Could not obtain WeChat access token: %s", exc)
            return False
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("Sending WeChat message to %s failed: %s", user_id, exc)
            return False

        if errcode != 0:
            logger.error(
                "Sending WeChat message to %s failed: %s (%d)",
                user_id,
                data.get("errmsg", ""),
                errcode,
            )
            return False
        logger.info("Sent WeChat message to %s", user_id)
        return True
