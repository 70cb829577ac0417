"""Shared fixtures: a fake Omniscope server and config builder."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from typing import Any

import httpx
import pytest

from omniscope_mcp.config import ServerConfig

BASE_URL = "http://omni.test"


class FakeUpstream:
    """Records every request and answers from a (method, path) route table."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.routes: dict[tuple[str, str], httpx.Response] = {}
        self.delay_s = 0.0

    def route(self, method: str, path: str, status: int = 200, json_body: Any = None, text: str | None = None) -> None:
        if text is not None:
            self.routes[(method, path)] = httpx.Response(status, text=text)
        elif json_body is not None:
            self.routes[(method, path)] = httpx.Response(status, json=json_body)
        else:
            self.routes[(method, path)] = httpx.Response(status)

    async def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        response = self.routes.get((request.method, request.url.path))
        if response is None:
            return httpx.Response(404, json={"message": f"No route for {request.url.path}"})
        return httpx.Response(response.status_code, content=response.content, headers=response.headers)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self._handle)

    def last_json(self) -> Any:
        return json.loads(self.requests[-1].content)


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture
def make_config() -> Callable[..., ServerConfig]:
    def _make(**overrides: Any) -> ServerConfig:
        values: dict[str, Any] = {
            "default_base_url": BASE_URL,
            "allowed_base_urls": (BASE_URL,),
            "log_tools": False,
        }
        values.update(overrides)
        return ServerConfig(**values)

    return _make
