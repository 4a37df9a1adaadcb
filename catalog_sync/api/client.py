from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import requests

from ..models.config_models import ApiConfig

"""REST API client for the catalog back office.

Endpoints (per resource path, e.g. "products"):
  GET    /<path>?page&limit&search -> {results, page, limit, totalPages, totalResults}
  POST   /<path>                   -> create
  PATCH  /<path>/<id>              -> update (partial)
  DELETE /<path>/<id>              -> delete

Non-2xx responses carry {"message": ..., "errors": [...]}; the message is kept
verbatim in ApiError. Transport failures (connection reset, timeout) are
raised as ApiError as well so callers treat both the same way.
"""

__all__ = [
    "ApiError",
    "Page",
    "ApiClient",
]

logger = logging.getLogger(__name__)


class ApiError(Exception):
    """Write / read failure reported by the API or the transport."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


@dataclass(frozen=True)
class Page:
    results: list[dict[str, Any]] = field(default_factory=list)
    page: int = 1
    limit: int = 10
    total_pages: int = 1
    total_results: int = 0


def _error_message(resp: requests.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and body.get("message"):
        message = str(body["message"])
        errors = body.get("errors")
        if isinstance(errors, list) and errors:
            message += f" ({'; '.join(str(e) for e in errors)})"
        return message
    text = (resp.text or "").strip()[:200]
    return f"HTTP {resp.status_code}" + (f": {text}" if text else "")


class ApiClient:
    """Thin wrapper around a requests.Session bound to one base URL."""

    def __init__(self, config: ApiConfig, session: requests.Session | None = None) -> None:
        self.base_url = config.base_url.rstrip("/")
        self.timeout = config.timeout_seconds
        self.session = session or requests.Session()
        self.session.headers.update({"Accept": "application/json"})
        if config.token:
            self.session.headers.update({"Authorization": f"Bearer {config.token}"})

    def _url(self, path: str, ident: Any = None) -> str:
        url = f"{self.base_url}/{path.strip('/')}"
        if ident is not None:
            url += f"/{ident}"
        return url

    def _request(self, method: str, url: str, **kwargs: Any) -> Any:
        logger.debug("%s %s", method, url)
        try:
            resp = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise ApiError(f"{type(e).__name__}: {e}") from e
        if not resp.ok:
            raise ApiError(_error_message(resp), resp.status_code)
        if resp.status_code == 204 or not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as e:
            raise ApiError(f"invalid JSON response from {url}") from e

    def list_page(self, path: str, page: int = 1, limit: int = 10, search: str | None = None) -> Page:
        params: dict[str, Any] = {"page": page, "limit": limit}
        if search:
            params["search"] = search
        data = self._request("GET", self._url(path), params=params) or {}
        if isinstance(data, list):  # ページング無し API
            return Page(results=data, page=1, limit=limit, total_pages=1, total_results=len(data))
        results = data.get("results") or []
        return Page(
            results=list(results),
            page=int(data.get("page", page)),
            limit=int(data.get("limit", limit)),
            total_pages=int(data.get("totalPages", 1) or 1),
            total_results=int(data.get("totalResults", len(results))),
        )

    def list_all(self, path: str, limit: int = 1000) -> list[dict[str, Any]]:
        """Every entity of a collection, following totalPages."""
        first = self.list_page(path, page=1, limit=limit)
        entities = list(first.results)
        for page in range(2, first.total_pages + 1):
            entities.extend(self.list_page(path, page=page, limit=limit).results)
        return entities

    def create(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        return self._request("POST", self._url(path), json=payload) or {}

    def update(self, path: str, ident: Any, payload: dict[str, Any]) -> dict[str, Any]:
        return self._request("PATCH", self._url(path, ident), json=payload) or {}

    def delete(self, path: str, ident: Any) -> None:
        self._request("DELETE", self._url(path, ident))

    def close(self) -> None:
        self.session.close()
