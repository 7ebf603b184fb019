"""Unit tests for the key refresh coordinator."""

import pytest

from callai.errors import APIError, AuthenticationError
from callai.keys import KeyRefreshCoordinator, KeyState, is_key_error


class Attempts:
    """Fails with an auth error for the first *failures* calls."""

    def __init__(self, failures: int):
        self.failures = failures
        self.keys: list[str] = []

    async def __call__(self, api_key: str) -> str:
        self.keys.append(api_key)
        if len(self.keys) <= self.failures:
            raise AuthenticationError("Invalid API key", status=401)
        return f"ok with {api_key}"


class Refresher:
    def __init__(self, token: str = "new-key", error: Exception | None = None):
        self.token = token
        self.error = error
        self.calls: list[str] = []

    async def __call__(self, old: str) -> str:
        self.calls.append(old)
        if self.error is not None:
            raise self.error
        return self.token


class TestIsKeyError:
    @pytest.mark.parametrize("status", [401, 403])
    def test_auth_statuses(self, status):
        assert is_key_error(status, "")

    @pytest.mark.parametrize("message", [
        "Invalid API key",
        "Insufficient credits on this key",
        "Billing limit reached",
    ])
    def test_other_4xx_naming_key_problem(self, message):
        assert is_key_error(402, message)

    def test_plain_bad_request(self):
        assert not is_key_error(400, "messages must not be empty")

    def test_rate_limit_is_not_key_error(self):
        assert not is_key_error(429, "API key rate limited")

    def test_server_error(self):
        assert not is_key_error(500, "invalid api key")


class TestKeyRefreshCoordinator:
    @pytest.mark.asyncio
    async def test_success_without_refresh(self):
        attempt = Attempts(failures=0)
        refresher = Refresher()
        coord = KeyRefreshCoordinator("old-key", update_refresh_token=refresher)

        assert await coord.run(attempt) == "ok with old-key"
        assert refresher.calls == []
        assert coord.state is KeyState.ACTIVE

    @pytest.mark.asyncio
    async def test_refresh_then_exactly_one_retry(self):
        attempt = Attempts(failures=1)
        refresher = Refresher("new-key")
        coord = KeyRefreshCoordinator("old-key", update_refresh_token=refresher)

        assert await coord.run(attempt) == "ok with new-key"
        assert attempt.keys == ["old-key", "new-key"]
        assert refresher.calls == ["old-key"]
        assert coord.state is KeyState.ACTIVE
        assert coord.api_key == coord.refresh_token == "new-key"

    @pytest.mark.asyncio
    async def test_second_auth_failure_surfaces(self):
        attempt = Attempts(failures=2)
        coord = KeyRefreshCoordinator("old-key", update_refresh_token=Refresher())

        with pytest.raises(AuthenticationError):
            await coord.run(attempt)
        assert len(attempt.keys) == 2
        assert coord.state is KeyState.EXHAUSTED

    @pytest.mark.asyncio
    async def test_refresh_token_passed_to_callback(self):
        refresher = Refresher()
        coord = KeyRefreshCoordinator("key", refresh_token="rt-1", update_refresh_token=refresher)
        await coord.run(Attempts(failures=1))
        assert refresher.calls == ["rt-1"]

    @pytest.mark.asyncio
    async def test_no_callback_raises_immediately(self):
        attempt = Attempts(failures=1)
        with pytest.raises(AuthenticationError):
            await KeyRefreshCoordinator("key").run(attempt)
        assert len(attempt.keys) == 1

    @pytest.mark.asyncio
    async def test_disabled_raises_immediately(self):
        refresher = Refresher()
        coord = KeyRefreshCoordinator("key", update_refresh_token=refresher, enabled=False)
        with pytest.raises(AuthenticationError):
            await coord.run(Attempts(failures=1))
        assert refresher.calls == []

    @pytest.mark.asyncio
    async def test_failing_callback_sets_refresh_error(self):
        boom = RuntimeError("refresh endpoint down")
        coord = KeyRefreshCoordinator("key", update_refresh_token=Refresher(error=boom))

        with pytest.raises(AuthenticationError) as exc_info:
            await coord.run(Attempts(failures=1))
        assert exc_info.value.refresh_error is boom
        assert coord.state is KeyState.EXHAUSTED

    @pytest.mark.asyncio
    async def test_other_errors_not_refreshed(self):
        refresher = Refresher()

        async def attempt(api_key):
            raise APIError("server error", status=500)

        with pytest.raises(APIError):
            await KeyRefreshCoordinator("key", update_refresh_token=refresher).run(attempt)
        assert refresher.calls == []

    @pytest.mark.asyncio
    async def test_callback_runs_once_across_runs(self):
        refresher = Refresher("new-key")
        coord = KeyRefreshCoordinator("old-key", update_refresh_token=refresher)
        assert await coord.run(Attempts(failures=1)) == "ok with new-key"

        later = Attempts(failures=1)
        with pytest.raises(AuthenticationError):
            await coord.run(later)

        assert refresher.calls == ["old-key"]
        assert later.keys == ["new-key"]
        assert coord.state is KeyState.EXHAUSTED
