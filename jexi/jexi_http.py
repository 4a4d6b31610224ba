import asyncio
import json
from typing import Optional, Dict, Any
import httpx

from jexi.jexi_serialize import deserialize, to_builtin


async def http_request(method: str, url: str, *, config: Optional[Dict] = None, data: Any = None) -> Any:
    """
    Core HTTP helper.

    Returns the deserialized body on 2xx and raises RuntimeError otherwise.
    With config 'full': true it returns {status, value, headers} without raising.
    Non-string request data is sent as JSON.
    """
    cfg = dict(config or {})
    timeout = float(cfg.pop('timeout', 5.0))
    retries = int(cfg.pop('retries', 2))
    backoff = float(cfg.pop('backoff', 0.2))
    headers = dict(cfg.pop('headers', {}))
    params = dict(cfg.pop('params', {}))
    full = bool(cfg.pop('full', False))

    body = None
    if data is not None:
        if isinstance(data, (bytes, bytearray)):
            body = bytes(data)
        elif isinstance(data, str):
            body = data.encode('utf-8')
            headers.setdefault("Content-Type", "text/plain; charset=utf-8")
        else:
            body = json.dumps(to_builtin(data)).encode('utf-8')
            headers.setdefault("Content-Type", "application/json")

    async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
        last_exc = None
        for attempt in range(retries + 1):
            try:
                resp = await client.request(
                    method.upper(),
                    url,
                    headers=headers,
                    params=params,
                    content=body,
                )
                ct = resp.headers.get("Content-Type")
                value = deserialize(resp.content, content_type=ct)
                if full:
                    # Lower-case header keys for consistent lookups
                    headers_map = {str(k).lower(): v for k, v in resp.headers.items()}
                    return {"status": int(resp.status_code), "value": value, "headers": headers_map}
                if 200 <= resp.status_code < 300:
                    return value
                # Non-2xx → raise
                preview = (resp.text or "")[:200]
                raise RuntimeError(f"HTTP {resp.status_code} for {url}: {preview}")
            except Exception as e:
                last_exc = e
                if attempt < retries:
                    await asyncio.sleep(backoff * (2 ** attempt))
                    continue
                raise last_exc


async def http_get(url: str, config: Optional[Dict] = None) -> Any:
    return await http_request('GET', url, config=config)


async def http_post(url: str, data: Any, config: Optional[Dict] = None) -> Any:
    return await http_request('POST', url, config=config, data=data)
