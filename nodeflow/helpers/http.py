"""HTTP client for node code (helpers.http).

One HttpHelper (and one httpx.AsyncClient) is created per run by
RuntimeServices. Responses are plain dicts:
{"status", "status_text", "headers", "data", "ok"}.
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import re
from typing import Any
from urllib.parse import parse_qsl, urlencode

import httpx

from nodeflow.core.retry import RetryHandler

logger = logging.getLogger(__name__)

RETRY_STATUS_CODES = (408, 429, 500, 502, 503, 504)
_NEXT_LINK = re.compile(r'<([^>]+)>;\s*rel="next"')


def build_query_string(params: dict[str, Any]) -> str:
    """Encode params; None values are dropped and lists repeat the key."""
    pairs: list[tuple[str, str]] = []
    for key, value in params.items():
        if value is None:
            continue
        if isinstance(value, list | tuple):
            pairs.extend((key, str(v)) for v in value)
        else:
            pairs.append((key, str(value)))
    return urlencode(pairs)


def parse_query_string(query: str) -> dict[str, Any]:
    """Decode a query string; repeated keys become lists."""
    result: dict[str, Any] = {}
    for key, value in parse_qsl(query.lstrip("?"), keep_blank_values=True):
        if key not in result:
            result[key] = value
        elif isinstance(result[key], list):
            result[key].append(value)
        else:
            result[key] = [result[key], value]
    return result


def _extract_path(data: Any, path: str) -> Any:
    for part in path.split("."):
        data = data.get(part) if isinstance(data, dict) else None
    return data


class HttpHelper:
    """Async HTTP requests with optional retry, auth and pagination."""

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._client = client or httpx.AsyncClient(transport=transport, follow_redirects=True)
        self._owns_client = client is None

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def request(
        self,
        url: str,
        method: str = "GET",
        headers: dict[str, str] | None = None,
        body: Any = None,
        json_body: bool = True,
        timeout: float = 30.0,
        retry: int | dict[str, Any] | None = None,
        auth: dict[str, str] | None = None,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """
        Send one request.

        Args:
            retry: Retry count, or {"max_retries", "delay", "backoff", "retry_on"}
            auth: {"type": "basic", "username", "password"} or {"type": "bearer", "token"}

        Raises:
            TimeoutError: Request exceeded timeout
            httpx.HTTPError: Transport failure
            RuntimeError: Retries exhausted
        """
        final_headers = dict(headers or {})
        if auth:
            if auth.get("type") == "basic" and auth.get("username") and auth.get("password"):
                credentials = f"{auth['username']}:{auth['password']}".encode()
                final_headers["Authorization"] = f"Basic {base64.b64encode(credentials).decode()}"
            elif auth.get("type") == "bearer" and auth.get("token"):
                final_headers["Authorization"] = f"Bearer {auth['token']}"

        kwargs: dict[str, Any] = {"headers": final_headers, "params": params, "timeout": timeout}
        if body is not None:
            if json_body and not isinstance(body, str | bytes):
                final_headers.setdefault("Content-Type", "application/json")
                kwargs["content"] = json.dumps(body, default=str)
            else:
                kwargs["content"] = body

        if retry:
            options = {"max_retries": retry} if isinstance(retry, int) else dict(retry)
            return await self._retry_request(method.upper(), url, kwargs, options)
        return await self._send(method.upper(), url, kwargs)

    async def _send(self, method: str, url: str, kwargs: dict[str, Any]) -> dict[str, Any]:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise TimeoutError(f"Request timeout after {kwargs.get('timeout')}s") from e
        return self._to_dict(response)

    @staticmethod
    def _to_dict(response: httpx.Response) -> dict[str, Any]:
        content_type = response.headers.get("content-type", "")
        if "application/json" in content_type:
            try:
                data: Any = response.json()
            except ValueError:
                data = response.text
        elif content_type.startswith("text/") or not response.content:
            data = response.text
        else:
            data = response.content
        return {
            "status": response.status_code,
            "status_text": response.reason_phrase,
            "headers": dict(response.headers),
            "data": data,
            "ok": response.is_success,
        }

    async def _retry_request(
        self, method: str, url: str, kwargs: dict[str, Any], options: dict[str, Any]
    ) -> dict[str, Any]:
        max_retries = int(options.get("max_retries", 3))
        delay = float(options.get("delay", 1.0))
        backoff = options.get("backoff", "exponential")
        retry_on = tuple(options.get("retry_on", RETRY_STATUS_CODES))

        last_error: Exception | None = None
        attempt = 0
        while attempt <= max_retries:
            try:
                response = await self._send(method, url, kwargs)
                if not response["ok"] and response["status"] in retry_on and attempt < max_retries:
                    raise RuntimeError(f"HTTP {response['status']}: {response['status_text']}")
                return response
            except (RuntimeError, TimeoutError, httpx.HTTPError) as e:
                last_error = e
                attempt += 1
                if attempt <= max_retries:
                    wait = RetryHandler.calculate_delay(attempt, delay, backoff)
                    logger.info(f"HTTP retry attempt {attempt}/{max_retries} after {wait:.2f}s")
                    await asyncio.sleep(wait)

        raise RuntimeError(f"Request failed after {max_retries} retries: {last_error}")

    async def get(self, url: str, **options: Any) -> dict[str, Any]:
        return await self.request(url, method="GET", **options)

    async def post(self, url: str, body: Any = None, **options: Any) -> dict[str, Any]:
        return await self.request(url, method="POST", body=body, **options)

    async def put(self, url: str, body: Any = None, **options: Any) -> dict[str, Any]:
        return await self.request(url, method="PUT", body=body, **options)

    async def patch(self, url: str, body: Any = None, **options: Any) -> dict[str, Any]:
        return await self.request(url, method="PATCH", body=body, **options)

    async def delete(self, url: str, **options: Any) -> dict[str, Any]:
        return await self.request(url, method="DELETE", **options)

    async def paginate(
        self,
        url: str,
        type: str = "page",
        max_pages: int = 10,
        page_size: int = 100,
        cursor_key: str = "cursor",
        offset_key: str = "offset",
        page_key: str = "page",
        limit_key: str = "limit",
        response_data_path: str = "data",
        headers: dict[str, str] | None = None,
    ) -> list[Any]:
        """
        Collect results across pages.

        Pagination types: cursor (next_cursor/nextCursor in the body), offset,
        page, and link (Link header with rel="next").

        Raises:
            RuntimeError: A page failed or did not contain a list
        """
        results: list[Any] = []
        page, offset, cursor = 1, 0, None
        next_url: str | None = url
        fetched = 0

        while next_url and fetched < max_pages:
            params: dict[str, Any] = {}
            if type == "offset":
                params = {offset_key: offset, limit_key: page_size}
            elif type == "page":
                params = {page_key: page, limit_key: page_size}
            elif type == "cursor":
                params = {limit_key: page_size}
                if cursor:
                    params[cursor_key] = cursor

            try:
                response = await self.get(next_url, headers=headers, params=params or None)
                if not response["ok"]:
                    raise RuntimeError(f"HTTP {response['status']}: {response['status_text']}")
                page_data = _extract_path(response["data"], response_data_path) if response_data_path else response["data"]
                if not isinstance(page_data, list):
                    raise RuntimeError("Response data is not an array")
            except (RuntimeError, TimeoutError, httpx.HTTPError) as e:
                raise RuntimeError(f"Pagination failed at page {fetched + 1}: {e}") from e

            results.extend(page_data)
            fetched += 1

            if type == "link":
                match = _NEXT_LINK.search(response["headers"].get("link", ""))
                next_url = match.group(1) if match else None
                continue
            if len(page_data) < page_size:
                break
            if type == "cursor":
                body = response["data"] if isinstance(response["data"], dict) else {}
                cursor = body.get("next_cursor") or body.get("nextCursor")
                if not cursor:
                    break
            elif type == "offset":
                offset += page_size
            else:
                page += 1

        return results

    async def download_file(self, url: str, **options: Any) -> bytes:
        response = await self.request(url, json_body=False, **options)
        if not response["ok"]:
            raise RuntimeError(f"Failed to download file: {response['status_text']}")
        data = response["data"]
        return data if isinstance(data, bytes) else str(data).encode("utf-8")

    async def upload_file(
        self,
        url: str,
        content: bytes,
        field_name: str = "file",
        filename: str = "upload.bin",
        additional_fields: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        timeout: float = 30.0,
    ) -> dict[str, Any]:
        """POST a multipart form with one file field."""
        data = {
            key: json.dumps(value) if isinstance(value, dict | list) else str(value)
            for key, value in (additional_fields or {}).items()
        }
        try:
            response = await self._client.post(
                url,
                files={field_name: (filename, content)},
                data=data,
                headers=headers,
                timeout=timeout,
            )
        except httpx.TimeoutException as e:
            raise TimeoutError(f"Request timeout after {timeout}s") from e
        return self._to_dict(response)

    build_query_string = staticmethod(build_query_string)
    parse_query_string = staticmethod(parse_query_string)
