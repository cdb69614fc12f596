from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional
from urllib.parse import urljoin


@dataclass(frozen=True)
class RequestSpec:
    name: str
    method: str
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    params: dict[str, Any] = field(default_factory=dict)
    auth: bool = False

    def with_cookie(self, cookie: str) -> RequestSpec:
        headers = dict(self.headers)
        headers["cookie"] = cookie.strip()
        return RequestSpec(
            name=self.name,
            method=self.method,
            url=self.url,
            headers=headers,
            params=dict(self.params),
            auth=self.auth,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "method": self.method,
            "url": self.url,
            "headers": dict(self.headers),
            "params": dict(self.params),
            "auth": self.auth,
        }


def _resolve_url(base_url: Optional[str], url: str) -> str:
    if not base_url:
        return url
    if url.startswith(("http://", "https://")):
        return url
    return urljoin(base_url.rstrip("/") + "/", url.lstrip("/"))


def _parse_entry(name: str, entry: Any, base_url: Optional[str]) -> RequestSpec:
    if not isinstance(entry, dict):
        raise ValueError(f"Test definition '{name}' must be an object")

    url = entry.get("url")
    if not isinstance(url, str) or not url.strip():
        raise ValueError(f"Test definition '{name}' is missing a url")

    method = entry.get("method", "GET")
    if not isinstance(method, str) or not method.strip():
        raise ValueError(f"Test definition '{name}' has an invalid method: {method!r}")

    headers = entry.get("headers") or {}
    if not isinstance(headers, dict):
        raise ValueError(f"Test definition '{name}' headers must be an object")

    params = entry.get("params") or {}
    if not isinstance(params, dict):
        raise ValueError(f"Test definition '{name}' params must be an object")

    return RequestSpec(
        name=name,
        method=method.strip().upper(),
        url=_resolve_url(base_url, url.strip()),
        headers={str(key): str(value) for key, value in headers.items()},
        params=dict(params),
        auth=bool(entry.get("auth", False)),
    )


def parse_test_definitions(payload: Any) -> dict[str, RequestSpec]:
    if not isinstance(payload, dict):
        raise ValueError("Test definitions must be a JSON object")
    base_url = payload.get("base_url")
    if base_url is not None and not isinstance(base_url, str):
        raise ValueError("base_url must be a string")
    tests = payload.get("tests")
    if not isinstance(tests, dict) or not tests:
        raise ValueError("Test definitions must contain a non-empty 'tests' object")
    return {
        str(name): _parse_entry(str(name), entry, base_url)
        for name, entry in tests.items()
    }


def load_test_definitions(path: Path) -> dict[str, RequestSpec]:
    with path.open("r", encoding="utf-8") as f:
        try:
            payload = json.load(f)
        except json.JSONDecodeError as exc:
            raise ValueError(f"Invalid JSON in {path}: {exc}") from exc
    return parse_test_definitions(payload)
