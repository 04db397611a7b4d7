"""UrllibClient 单元测试 — 重试、鉴权、协议校验"""

from __future__ import annotations

import io
import urllib.error

import pytest

import depkit.utils.http as httpmod
from depkit.core.exceptions import AuthRequiredError, FetchError, ValidationError
from depkit.utils.http import UrllibClient

URL = "https://example.com/foo/bar/archive/master.tar.gz"


class _Response(io.BytesIO):
    def __enter__(self):
        return self

    def __exit__(self, *exc) -> None:
        self.close()


def _http_error(code: int) -> urllib.error.HTTPError:
    return urllib.error.HTTPError(URL, code, "err", {}, None)


class _ScriptedOpener:
    """按顺序返回预置结果的 urlopen 替身"""

    def __init__(self, *outcomes) -> None:
        self.outcomes = list(outcomes)
        self.requests = []

    def __call__(self, req, timeout=None):
        self.requests.append((req, timeout))
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return _Response(outcome)


@pytest.fixture(autouse=True)
def _no_sleep(monkeypatch: pytest.MonkeyPatch) -> list[float]:
    slept: list[float] = []
    monkeypatch.setattr(httpmod.time, "sleep", slept.append)
    return slept


def _install(monkeypatch: pytest.MonkeyPatch, *outcomes) -> _ScriptedOpener:
    opener = _ScriptedOpener(*outcomes)
    monkeypatch.setattr(httpmod.urllib.request, "urlopen", opener)
    return opener


class TestUrllibClient:
    def test_success(self, monkeypatch: pytest.MonkeyPatch) -> None:
        opener = _install(monkeypatch, b"payload")
        assert UrllibClient(timeout=7).get(URL) == b"payload"
        assert opener.requests[0][1] == 7
        assert opener.requests[0][0].get_header("Authorization") is None

    def test_bearer_token(self, monkeypatch: pytest.MonkeyPatch) -> None:
        opener = _install(monkeypatch, b"ok")
        UrllibClient().get(URL, token="abc")
        assert opener.requests[0][0].get_header("Authorization") == "Bearer abc"

    def test_retries_server_errors(self, monkeypatch: pytest.MonkeyPatch, _no_sleep) -> None:
        opener = _install(monkeypatch, _http_error(503), _http_error(502), b"ok")
        assert UrllibClient(retries=2, backoff=1).get(URL) == b"ok"
        assert len(opener.requests) == 3
        assert _no_sleep == [1, 2]

    def test_gives_up_after_retries(self, monkeypatch: pytest.MonkeyPatch) -> None:
        _install(monkeypatch, _http_error(500), _http_error(500))
        with pytest.raises(FetchError, match="HTTP 500"):
            UrllibClient(retries=1).get(URL)

    def test_connection_error_retried(self, monkeypatch: pytest.MonkeyPatch) -> None:
        opener = _install(monkeypatch, urllib.error.URLError("refused"), b"ok")
        assert UrllibClient(retries=1).get(URL) == b"ok"
        assert len(opener.requests) == 2

    def test_not_found_not_retried(self, monkeypatch: pytest.MonkeyPatch) -> None:
        opener = _install(monkeypatch, _http_error(404), b"never")
        with pytest.raises(FetchError, match="HTTP 404"):
            UrllibClient(retries=2).get(URL)
        assert len(opener.requests) == 1

    @pytest.mark.parametrize("code", [401, 403])
    def test_auth_status(self, monkeypatch: pytest.MonkeyPatch, code: int) -> None:
        _install(monkeypatch, _http_error(code))
        with pytest.raises(AuthRequiredError, match=f"HTTP {code}"):
            UrllibClient().get(URL)

    def test_rejects_file_scheme(self, monkeypatch: pytest.MonkeyPatch) -> None:
        opener = _install(monkeypatch)
        with pytest.raises(ValidationError):
            UrllibClient().get("file:///etc/passwd")
        assert opener.requests == []
