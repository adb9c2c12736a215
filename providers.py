"""服务商调用基础设施：固定窗口限流、HTTP/JSON-RPC 请求与有序回退组合器。"""

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, TypeVar

import httpx

from config import RATE_LIMIT_BACKOFF, RATE_LIMIT_MAX_CALLS, RATE_LIMIT_WINDOW, USER_AGENT
from errors import ProviderUnavailableError, RateLimitedError, RequestTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class ProviderEndpoint:
    """单个服务商端点。url 可带 {address}/{txid} 占位符。"""

    name: str
    url: str

    def format(self, **kwargs: str) -> str:
        return self.url.format(**kwargs)


def endpoints_from(table: Sequence[Tuple[str, str]]) -> List[ProviderEndpoint]:
    """把配置中的 (名称, URL) 列表转换为端点对象。"""
    return [ProviderEndpoint(name=name, url=url) for name, url in table]


@dataclass
class WindowCounter:
    """某个 (服务商, 操作) 的限流记录。"""

    window_start: float
    call_count: int


class RateLimiter:
    """
    固定窗口限流器：每个键在窗口内最多放行 max_calls 次。

    超限时立即返回 False，由调用方跳到下一个服务商，而不是阻塞等待。
    """

    def __init__(
        self,
        max_calls: int = RATE_LIMIT_MAX_CALLS,
        window: float = RATE_LIMIT_WINDOW,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self._max_calls = max_calls
        self._window = window
        self._clock = clock or time.monotonic
        self._counters: Dict[str, WindowCounter] = {}
        self._lock = threading.Lock()

    def try_acquire(self, key: str) -> bool:
        with self._lock:
            now = self._clock()
            counter = self._counters.get(key)
            if counter is None or now - counter.window_start >= self._window:
                self._counters[key] = WindowCounter(window_start=now, call_count=1)
                return True
            if counter.call_count >= self._max_calls:
                return False
            counter.call_count += 1
            return True

    def remaining(self, key: str) -> int:
        with self._lock:
            counter = self._counters.get(key)
            if counter is None or self._clock() - counter.window_start >= self._window:
                return self._max_calls
            return max(self._max_calls - counter.call_count, 0)

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()


class JsonRpcError(Exception):
    """节点返回了 JSON-RPC error 字段。"""

    def __init__(self, code: Any, message: str) -> None:
        self.rpc_code = code
        super().__init__(f"RPC {code}: {message}")


async def request_json(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    timeout: float,
    **kwargs: Any,
) -> Any:
    """发起请求并解析 JSON；非 2xx 抛 httpx.HTTPStatusError，超时抛 RequestTimeoutError。"""
    response = await request_raw(client, method, url, timeout, **kwargs)
    return response.json()


async def request_raw(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    timeout: float,
    **kwargs: Any,
) -> httpx.Response:
    headers = {"User-Agent": USER_AGENT}
    headers.update(kwargs.pop("headers", None) or {})
    try:
        response = await client.request(method, url, timeout=timeout, headers=headers, **kwargs)
    except httpx.TimeoutException as exc:
        raise RequestTimeoutError(f"请求超时 ({timeout}s): {url}") from exc
    response.raise_for_status()
    return response


async def rpc_call(
    client: httpx.AsyncClient,
    url: str,
    method: str,
    params: List[Any],
    timeout: float,
) -> Any:
    """JSON-RPC 2.0 调用，返回 result 字段（缺失时为 None）。"""
    payload = {"jsonrpc": "2.0", "id": 1, "method": method, "params": params}
    data = await request_json(client, "POST", url, timeout, json=payload)
    if not isinstance(data, dict):
        raise ValueError("JSON-RPC 响应格式无效")
    error = data.get("error")
    if error:
        if isinstance(error, dict):
            raise JsonRpcError(error.get("code"), str(error.get("message", error)))
        raise JsonRpcError(None, str(error))
    return data.get("result")


# 视为“该服务商失败，换下一个”的异常
PROVIDER_FAILURES = (
    httpx.HTTPError,
    RequestTimeoutError,
    JsonRpcError,
    ValueError,
    KeyError,
    TypeError,
)


def _describe(exc: BaseException) -> str:
    if isinstance(exc, httpx.HTTPStatusError):
        return f"HTTP {exc.response.status_code}"
    return f"{type(exc).__name__}: {exc}"


async def first_success(
    operation: str,
    endpoints: Sequence[ProviderEndpoint],
    call: Callable[[ProviderEndpoint], Awaitable[T]],
    limiter: RateLimiter,
    backoff: float = RATE_LIMIT_BACKOFF,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> Tuple[T, ProviderEndpoint]:
    """
    按顺序依次尝试服务商，返回第一个成功结果及其端点。

    不并发竞速：广播场景下竞速可能造成重复提交。
    限流耗尽的服务商直接跳过；HTTP 429 短暂退避后换下一个；其他失败直接换下一个。
    全部失败时抛出 ProviderUnavailableError（全部因限流失败时为 RateLimitedError）。
    """
    failures: List[Tuple[str, str]] = []
    rate_limited = 0
    for endpoint in endpoints:
        key = f"{endpoint.name}:{operation}"
        if not limiter.try_acquire(key):
            logger.warning("%s 已达限流上限，跳过 %s", endpoint.name, operation)
            failures.append((endpoint.name, "rate limited"))
            rate_limited += 1
            continue
        try:
            result = await call(endpoint)
        except PROVIDER_FAILURES as exc:
            reason = _describe(exc)
            failures.append((endpoint.name, reason))
            if isinstance(exc, httpx.HTTPStatusError) and exc.response.status_code == 429:
                rate_limited += 1
                logger.warning("%s 返回 429，退避 %.1fs 后尝试下一个服务商", endpoint.name, backoff)
                if backoff > 0:
                    await sleep(backoff)
            else:
                logger.warning("%s %s 失败：%s", endpoint.name, operation, reason)
            continue
        logger.debug("%s 由 %s 完成", operation, endpoint.name)
        return result, endpoint

    if endpoints and rate_limited == len(endpoints):
        raise RateLimitedError(operation, failures)
    raise ProviderUnavailableError(operation, failures)
