"""Fixtures for testing."""
from urllib.parse import parse_qs, urlparse

import pytest

from ampeco_client import UpstreamError
from report_config import ReportConfig, Station


BASE_URL = "https://cp.example.test"


class FakeAmpeco:
    """Stands in for AmpecoClient: routes GETs to handlers by path.

    A handler gets (url, params) and returns a payload or raises.  Calls are
    recorded in ``calls`` as (path_or_url, params).
    """

    def __init__(self, base_url=BASE_URL):
        self.base = base_url
        self.routes = []
        self.calls = []

    def route(self, path, handler, when=None):
        self.routes.append((path, when, handler))
        return self

    def resolve(self, path_or_url):
        if path_or_url.startswith(("http://", "https://")):
            return path_or_url
        return self.base + "/" + path_or_url.lstrip("/")

    def get_json(self, path_or_url, params=None):
        self.calls.append((path_or_url, dict(params) if params is not None else None))
        path = urlparse(path_or_url).path
        for route_path, when, handler in self.routes:
            if path != route_path:
                continue
            if when is not None and not when(params or {}):
                continue
            result = handler(path_or_url, params)
            if isinstance(result, Exception):
                raise result
            return result
        raise UpstreamError(f"HTTP 404 Not Found: {path}", status=404)

    def calls_to(self, path):
        return [c for c in self.calls if urlparse(c[0]).path == path]

    def close(self):
        pass


def cursor_pages(records, page_size=None):
    """Handler serving *records* through meta.next_cursor pagination ("p<n>")."""
    def handler(url, params):
        params = params or {}
        size = page_size or int(params.get("per_page", 100))
        cursor = params.get("cursor")
        index = int(cursor[1:]) if cursor and cursor.startswith("p") else 0
        chunk = records[index * size:(index + 1) * size]
        more = (index + 1) * size < len(records)
        return {"data": chunk, "meta": {"next_cursor": f"p{index + 1}" if more else None}}
    return handler


def link_pages(records, page_size, path):
    """Handler serving *records* through relative links.next URLs (?page=<n>)."""
    def handler(url, params):
        query = parse_qs(urlparse(url).query)
        page = int(query.get("page", ["1"])[0])
        chunk = records[(page - 1) * page_size:page * page_size]
        more = page * page_size < len(records)
        return {
            "data": chunk,
            "links": {"next": f"{path}?page={page + 1}" if more else None},
        }
    return handler


def empty_page(url, params):
    return {"data": [], "meta": {"next_cursor": None}}


@pytest.fixture
def fake_client():
    return FakeAmpeco()


@pytest.fixture
def stations():
    return (Station(326, "Vadim Čiurlionio 84A"), Station(218, "Ignė Čiurlionio g. 84A"))


@pytest.fixture
def config(stations):
    return ReportConfig(
        base_url=BASE_URL,
        token="test-token",
        stations=stations,
        backoff_base=0.3,
        backoff_cap=5.0,
    )
