"""Refresh-and-retry handling for rejected API keys."""

from __future__ import annotations

import logging
import re
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import TypeVar

from callai.errors import AuthenticationError

logger = logging.getLogger(__name__)

T = TypeVar("T")

RefreshCallback = Callable[[str], Awaitable[str]]

_KEY_PROBLEM = re.compile(
    r"api[ -]?key|unauthori[sz]ed|forbidden|authenticat|not authorized|invalid key"
    r"|incorrect key|billing|payment|insufficient credits",
    re.IGNORECASE,
)


def is_key_error(status: int | None, message: str = "") -> bool:
    """Whether an HTTP failure means the API key itself was rejected."""
    if status in (401, 403):
        return True
    if status is not None and 400 <= status < 500 and status != 429:
        return bool(_KEY_PROBLEM.search(message or ""))
    return False


class KeyState(Enum):
    ACTIVE = "active"
    REFRESHING = "refreshing"
    EXHAUSTED = "exhausted"


class KeyRefreshCoordinator:
    """Retries a request once with a refreshed token after an auth failure.

    ``ACTIVE`` -> (auth failure, callback configured) -> ``REFRESHING`` ->
    (callback returns) -> retry -> ``ACTIVE`` on success.  A second auth
    failure moves to ``EXHAUSTED`` and is raised; nothing is retried a
    third time.  One coordinator serves a whole request: the callback runs
    at most once even when :meth:`run` is called again for a later attempt.

    Args:
        api_key: Key used for the first attempt.
        refresh_token: Token handed to the callback; defaults to the key.
        update_refresh_token: ``async (old_token) -> new_token``.
        enabled: ``False`` surfaces auth failures without refreshing.
    """

    def __init__(
        self,
        api_key: str,
        refresh_token: str | None = None,
        update_refresh_token: RefreshCallback | None = None,
        enabled: bool = True,
    ):
        self.api_key = api_key
        self.refresh_token = refresh_token
        self.update_refresh_token = update_refresh_token
        self.enabled = enabled
        self.state = KeyState.ACTIVE
        self.attempts = 0
        self.refreshed = False

    async def run(self, attempt: Callable[[str], Awaitable[T]]) -> T:
        """Call ``attempt(api_key)``, refreshing and retrying once on auth failure."""
        self.attempts += 1
        try:
            return await attempt(self.api_key)
        except AuthenticationError as e:
            if self.refreshed or not self.enabled or self.update_refresh_token is None:
                self.state = KeyState.EXHAUSTED
                raise
            first_failure = e

        self.state = KeyState.REFRESHING
        self.refreshed = True
        old_token = self.refresh_token or self.api_key
        logger.info("API key rejected; requesting a refreshed token")
        try:
            new_token = await self.update_refresh_token(old_token)
        except Exception as refresh_error:
            self.state = KeyState.EXHAUSTED
            first_failure.refresh_error = refresh_error
            raise first_failure from refresh_error
        if not new_token:
            self.state = KeyState.EXHAUSTED
            raise first_failure

        self.api_key = new_token
        self.refresh_token = new_token
        self.attempts += 1
        try:
            result = await attempt(self.api_key)
        except AuthenticationError:
            self.state = KeyState.EXHAUSTED
            logger.warning("Refreshed API key was rejected as well")
            raise
        self.state = KeyState.ACTIVE
        return result
