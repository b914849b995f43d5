import json
from typing import Any, Dict, List, Optional, Tuple

import httpx
import pytest

from metabase_mcp import MetabaseConfig, MetabaseContext, create_context

BASE_URL = "https://metabase.example.com"


class FakeMetabase:
    """Canned Metabase API that records every request it receives.

    Each route holds a queue of responses; the last one is repeated once the
    queue is down to a single entry.
    """

    def __init__(self) -> None:
        self.routes: Dict[Tuple[str, str], List[httpx.Response]] = {}
        self.requests: List[httpx.Request] = []

    def add(self, method: str, path: str, *responses: httpx.Response) -> None:
        self.routes[(method.upper(), path)] = list(responses)

    def add_json(self, method: str, path: str, body: Any, status: int = 200) -> None:
        self.add(method, path, httpx.Response(status, json=body))

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self.routes.get((request.method, request.url.path))
        if not queue:
            return httpx.Response(
                404, json={"message": f"No route for {request.method} {request.url.path}"}
            )
        canned = queue.pop(0) if len(queue) > 1 else queue[0]
        return httpx.Response(
            canned.status_code, headers=canned.headers, content=canned.content
        )

    def calls(self, method: Optional[str] = None, path: Optional[str] = None) -> List[httpx.Request]:
        return [
            request
            for request in self.requests
            if (method is None or request.method == method)
            and (path is None or request.url.path == path)
        ]

    @staticmethod
    def body(request: httpx.Request) -> Any:
        return json.loads(request.content)


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def fake_metabase() -> FakeMetabase:
    return FakeMetabase()


@pytest.fixture
def api_key_config() -> MetabaseConfig:
    return MetabaseConfig(url=BASE_URL, api_key="mb_test_key")


@pytest.fixture
def password_config() -> MetabaseConfig:
    return MetabaseConfig(url=BASE_URL, username="analyst@example.com", password="s3cret")


@pytest.fixture
def metabase_ctx(api_key_config: MetabaseConfig, fake_metabase: FakeMetabase) -> MetabaseContext:
    return create_context(api_key_config, transport=httpx.MockTransport(fake_metabase.handler))


@pytest.fixture
def password_ctx(password_config: MetabaseConfig, fake_metabase: FakeMetabase) -> MetabaseContext:
    return create_context(password_config, transport=httpx.MockTransport(fake_metabase.handler))
