import httpx

from quotawatch.errors import (
    AuthFailed,
    NetworkError,
    ParseError,
    RateLimited,
    TokenExpired,
)

USER_AGENT = "quotawatch/0.1"
DEFAULT_RETRY_AFTER = 60


def new_client(timeout: "float" = 10.0, **kwargs: "object") -> "httpx.AsyncClient":
    headers = {"User-Agent": USER_AGENT}
    headers.update(kwargs.pop("headers", {}) or {})
    return httpx.AsyncClient(timeout=timeout, headers=headers, **kwargs)


async def send(
    client: "httpx.AsyncClient",
    method: "str",
    url: "str",
    **kwargs: "object",
) -> "httpx.Response":
    """
    issues a request and turns transport failures into NetworkError.
    Status codes are left to check_status().
    """
    try:
        return await client.request(method, url, **kwargs)
    except httpx.HTTPError as e:
        raise NetworkError(f"{type(e).__name__}: {e}") from e


def _retry_after(resp: "httpx.Response") -> "int":
    raw = resp.headers.get("retry-after", "")
    try:
        return max(0, int(raw))
    except ValueError:
        return DEFAULT_RETRY_AFTER


def check_status(resp: "httpx.Response", forbidden: "str" = "Access denied") -> "None":
    """
    maps provider HTTP statuses onto the shared failure taxonomy.
    """
    code = resp.status_code
    if code == 401:
        raise TokenExpired()
    if code == 403:
        raise AuthFailed(forbidden)
    if code == 429:
        raise RateLimited(_retry_after(resp))
    if code >= 400:
        raise NetworkError(f"HTTP {code} from {resp.url}")


def decode_json(resp: "httpx.Response") -> "dict":
    try:
        data = resp.json()
    except ValueError as e:
        raise ParseError(f"invalid JSON from {resp.url}: {e}") from e
    if not isinstance(data, dict):
        raise ParseError(f"unexpected payload type {type(data).__name__} from {resp.url}")
    return data


def sub_object(data: "dict", key: "str") -> "dict":
    """
    returns the nested object stored under key. A missing or null value
    reads as empty; any other non-object value is a ParseError.
    """
    value = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ParseError(f"'{key}' is a {type(value).__name__}, expected an object")
    return value
