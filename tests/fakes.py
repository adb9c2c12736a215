"""测试用的假时钟与 httpx MockTransport 路由。"""

import json
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx

# BIP39 / BIP84 公开测试向量
TEST_MNEMONIC = (
    "abandon abandon abandon abandon abandon abandon "
    "abandon abandon abandon abandon abandon about"
)
OTHER_MNEMONIC = "legal winner thank year wave sausage worth useful legal winner thank yellow"


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


async def no_sleep(_seconds: float) -> None:
    return None


Responder = Callable[[httpx.Request], httpx.Response]


class Router:
    """
    按 "主机+路径前缀" 或 JSON-RPC 方法名分发请求，并记录所有调用。

    未匹配的请求返回 404，便于断言 "不应被调用" 的服务商。
    """

    def __init__(self) -> None:
        self.routes: List[Tuple[str, Responder]] = []
        self.rpc_routes: Dict[Tuple[str, str], Responder] = {}
        self.calls: List[httpx.Request] = []

    def add(self, url_prefix: str, responder: Responder) -> "Router":
        self.routes.append((url_prefix, responder))
        return self

    def add_json(self, url_prefix: str, payload: Any, status_code: int = 200) -> "Router":
        return self.add(url_prefix, lambda request: httpx.Response(status_code, json=payload))

    def add_status(self, url_prefix: str, status_code: int) -> "Router":
        return self.add(url_prefix, lambda request: httpx.Response(status_code, text="error"))

    def add_rpc(self, host: str, method: str, result: Any = None, error: Optional[Dict[str, Any]] = None) -> "Router":
        def respond(request: httpx.Request) -> httpx.Response:
            body: Dict[str, Any] = {"jsonrpc": "2.0", "id": 1}
            if error is not None:
                body["error"] = error
            else:
                body["result"] = result
            return httpx.Response(200, json=body)

        self.rpc_routes[(host, method)] = respond
        return self

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        url = str(request.url)
        if request.method == "POST" and request.headers.get("content-type", "").startswith("application/json"):
            try:
                method = json.loads(request.content).get("method")
            except (ValueError, AttributeError):
                method = None
            if method is not None:
                responder = self.rpc_routes.get((request.url.host, method))
                if responder is not None:
                    return responder(request)
        for prefix, responder in self.routes:
            if url.startswith(prefix):
                return responder(request)
        return httpx.Response(404, text="no route")

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    def hosts(self) -> List[str]:
        return [request.url.host for request in self.calls]

    def rpc_methods(self) -> List[str]:
        methods = []
        for request in self.calls:
            try:
                methods.append(json.loads(request.content).get("method"))
            except (ValueError, AttributeError):
                continue
        return methods

    def count(self, url_prefix: str) -> int:
        return sum(1 for request in self.calls if str(request.url).startswith(url_prefix))
