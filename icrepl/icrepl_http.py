import asyncio
from typing import Optional, Dict, Any

import httpx

CBOR_CONTENT_TYPE = "application/cbor"


def normalize_response_mode(cfg: dict) -> Optional[str]:
    """
    Returns 'lite' or None based on cfg['response-mode'] (or the legacy `lite` flag).
    """
    mode = cfg.get('response-mode')
    if mode is None:
        return 'lite' if cfg.get('lite') is True else None
    if isinstance(mode, str):
        s = mode.strip().lower()
        return 'lite' if s == 'lite' else None
    return None


async def http_request(method: str, url: str, *, config: Optional[Dict] = None,
                       data: Optional[bytes | str] = None) -> Any:
    """
    Core HTTP helper.

    config keys: timeout, retries, backoff, headers, params, response-mode.

    response-mode (enum):
      - `lite`  -> return (status: int, value: Any, headers: dict[str,str]) without raising on non-2xx
      - unset -> default behavior: return deserialized body on 2xx; raise on non-2xx
    """
    cfg = dict(config or {})
    timeout = float(cfg.pop('timeout', 5.0))
    retries = int(cfg.pop('retries', 2))
    backoff = float(cfg.pop('backoff', 0.2))
    headers = dict(cfg.pop('headers', {}))
    params = dict(cfg.pop('params', {}))

    mode = normalize_response_mode(cfg)

    async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
        last_exc = None
        for attempt in range(retries + 1):
            try:
                body = (data.encode('utf-8') if isinstance(data, str) else data) if data is not None else None
                if body is not None:
                    headers = {**headers}
                    headers.setdefault("Content-Type", "text/plain; charset=utf-8")
                resp = await client.request(
                    method.upper(),
                    url,
                    headers=headers,
                    params=params,
                    content=body,
                )
                from icrepl.icrepl_serialize import deserialize
                ct = resp.headers.get("Content-Type")
                if mode == 'lite':
                    value = deserialize(resp.content, content_type=ct) if resp.content else None
                    # Lower-case header keys for consistent lookups
                    headers_map = {str(k).lower(): v for k, v in resp.headers.items()}
                    return (int(resp.status_code), value, headers_map)
                if 200 <= resp.status_code < 300:
                    return deserialize(resp.content, content_type=ct) if resp.content else None
                preview = (resp.text or "")[:200]
                raise RuntimeError(f"HTTP {resp.status_code} for {url}: {preview}")
            except Exception as e:
                last_exc = e
                if attempt < retries:
                    await asyncio.sleep(backoff * (2 ** attempt))
                    continue
                raise last_exc


async def http_post_cbor(url: str, data: bytes, config: Optional[Dict] = None) -> Any:
    cfg = dict(config or {})
    cfg['headers'] = {**cfg.get('headers', {}), "Content-Type": CBOR_CONTENT_TYPE}
    return await http_request('POST', url, config=cfg, data=data)
