from __future__ import annotations

import json
from typing import Dict, List, Optional

import pytest
import requests

from xkcd_paper import SourceError, XkcdSource


class FakeResponse:
    def __init__(self, body: bytes = b"", status: int = 200):
        self.content = body
        self.status_code = status

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def json(self):
        return json.loads(self.content.decode("utf-8"))


class FakeSession:
    """Serves canned responses by URL and records every request."""

    def __init__(self, routes: Dict[str, FakeResponse], fail: Optional[Exception] = None):
        self.routes = routes
        self.fail = fail
        self.calls: List[str] = []

    def get(self, url: str, timeout: float = None) -> FakeResponse:
        self.calls.append(url)
        if self.fail is not None:
            raise self.fail
        if url not in self.routes:
            return FakeResponse(b"not found", status=404)
        return self.routes[url]


def _json(data) -> FakeResponse:
    return FakeResponse(json.dumps(data).encode("utf-8"))


def _source(routes: Dict[str, FakeResponse], **kwargs) -> XkcdSource:
    return XkcdSource(base_url="https://xkcd.test/", session=FakeSession(routes, **kwargs))


def test_latest_index() -> None:
    source = _source({"https://xkcd.test/info.0.json": _json({"num": 2900, "img": "x"})})
    assert source.latest_index() == 2900


def test_image_bytes_follows_img_url() -> None:
    source = _source({
        "https://xkcd.test/353/info.0.json": _json({"num": 353, "img": "https://imgs.test/python.png"}),
        "https://imgs.test/python.png": FakeResponse(b"\x89PNG fake"),
    })

    assert source.image_bytes(353) == b"\x89PNG fake"
    assert source.session.calls == [
        "https://xkcd.test/353/info.0.json",
        "https://imgs.test/python.png",
    ]


def test_unreachable_host() -> None:
    source = _source({}, fail=requests.ConnectionError("no route to host"))
    with pytest.raises(SourceError, match="couldn't reach"):
        source.latest_index()


def test_http_error_status() -> None:
    source = _source({})
    with pytest.raises(SourceError):
        source.image_bytes(404)


def test_malformed_json() -> None:
    source = _source({"https://xkcd.test/info.0.json": FakeResponse(b"<html>")})
    with pytest.raises(SourceError, match="JSON"):
        source.latest_index()


@pytest.mark.parametrize("payload", [{"img": "x"}, {"num": "12"}, {"num": 0}, [1, 2]])
def test_missing_comic_number(payload) -> None:
    source = _source({"https://xkcd.test/info.0.json": _json(payload)})
    with pytest.raises(SourceError):
        source.latest_index()


def test_empty_image_body() -> None:
    source = _source({
        "https://xkcd.test/1/info.0.json": _json({"num": 1, "img": "https://imgs.test/1.png"}),
        "https://imgs.test/1.png": FakeResponse(b""),
    })
    with pytest.raises(SourceError, match="empty"):
        source.image_bytes(1)


def test_default_session_sends_user_agent() -> None:
    source = XkcdSource()
    assert source.session.headers["User-Agent"].startswith("xkcd-paper/")
    assert source.base_url == "https://xkcd.com"
