"""HTTP client for the webmail administration API with an explicit query cache."""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

import httpx

from .api import API_PREFIX

CacheKey = Tuple[str, Tuple[Tuple[str, str], ...]]


def _normalize_base_url(base_url: str) -> str:
    cleaned = (base_url or "").strip()
    if not cleaned:
        raise ValueError("API base URL must not be empty")
    return cleaned.rstrip("/")


def _extract_error_message(payload: object, default: str) -> str:
    if isinstance(payload, dict):
        for key in ("message", "detail", "error"):
            value = payload.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    if isinstance(payload, str) and payload.strip():
        return payload.strip()
    return default


def _clean_params(params: Optional[Mapping[str, object]]) -> Dict[str, str]:
    cleaned: Dict[str, str] = {}
    for key, value in (params or {}).items():
        if value is None:
            continue
        if isinstance(value, bool):
            cleaned[key] = "true" if value else "false"
        else:
            cleaned[key] = str(value)
    return cleaned


class MailAdminClientError(Exception):
    """Raised when the API answers with an error status."""

    def __init__(self, status_code: int, message: str, errors: Optional[List[Dict[str, str]]] = None) -> None:
        super().__init__(f"{status_code}: {message}")
        self.status_code = status_code
        self.message = message
        self.errors = errors or []


class QueryCache:
    """Results of GET requests keyed by path and query parameters.

    Entries live until :meth:`invalidate` drops their path prefix; the client
    calls it after every successful mutation.
    """

    def __init__(self) -> None:
        self._entries: Dict[CacheKey, Any] = {}

    @staticmethod
    def key(path: str, params: Optional[Mapping[str, object]] = None) -> CacheKey:
        return path, tuple(sorted(_clean_params(params).items()))

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: CacheKey) -> Any:
        return self._entries.get(key)

    def put(self, key: CacheKey, value: Any) -> None:
        self._entries[key] = value

    def invalidate(self, prefix: str) -> int:
        """Drop entries whose path is ``prefix`` or lies below it."""

        stale = [
            key
            for key in self._entries
            if not prefix or key[0] == prefix or key[0].startswith(prefix.rstrip("/") + "/")
        ]
        for key in stale:
            del self._entries[key]
        return len(stale)

    def clear(self) -> None:
        self._entries.clear()


def _api_path(path: str) -> str:
    if not path.startswith("/"):
        path = "/" + path
    return f"{API_PREFIX}{path}"


class MailAdminClient:
    """Session-cookie client for the JSON API."""

    def __init__(
        self,
        base_url: str = "",
        *,
        http: Optional[httpx.Client] = None,
        timeout: float = 10.0,
        cache: Optional[QueryCache] = None,
    ) -> None:
        if http is None:
            http = httpx.Client(base_url=_normalize_base_url(base_url), timeout=timeout)
            self._owns_http = True
        else:
            self._owns_http = False
        self._http = http
        self.cache = cache if cache is not None else QueryCache()

    def __enter__(self) -> "MailAdminClient":
        return self

    def __exit__(self, *_exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        if self._owns_http:
            self._http.close()

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------
    def login(self, username: str, password: str) -> Dict[str, Any]:
        user = self._request("POST", "/login", json={"username": username, "password": password})
        self.cache.clear()
        return user

    def logout(self) -> None:
        self._request("POST", "/logout")
        self.cache.clear()

    def current_user(self) -> Dict[str, Any]:
        return self._query("/user")

    def health(self) -> Dict[str, Any]:
        return self._request("GET", "/health")

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------
    def list_users(self, *, role: Optional[str] = None, search: Optional[str] = None) -> List[Dict[str, Any]]:
        return self._query("/users", {"role": role, "search": search})

    def user_stats(self) -> Dict[str, Any]:
        return self._query("/users/stats")

    def create_user(
        self,
        *,
        username: str,
        email: str,
        role: str,
        temp_password: str,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        domain_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "username": username,
            "email": email,
            "role": role,
            "tempPassword": temp_password,
        }
        if first_name is not None:
            payload["firstName"] = first_name
        if last_name is not None:
            payload["lastName"] = last_name
        if domain_id is not None:
            payload["domainId"] = domain_id
        return self._mutate("POST", "/users", payload, invalidates=("/users", "/audit-logs"))

    def update_user(self, user_id: str, **patch: Any) -> Dict[str, Any]:
        """Send a partial update; keyword names use the wire format (``isActive``)."""

        return self._mutate(
            "PATCH",
            f"/users/{user_id}",
            patch,
            invalidates=("/users", "/user", "/audit-logs"),
        )

    def reset_password(self, user_id: str, password: str) -> Dict[str, Any]:
        return self._mutate(
            "POST",
            f"/users/{user_id}/password",
            {"password": password},
            invalidates=("/users", "/audit-logs"),
        )

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------
    def list_emails(self, folder: str = "inbox") -> List[Dict[str, Any]]:
        return self._query("/emails", {"folder": folder})

    def send_email(self, *, recipient: str, subject: str, body: str) -> Dict[str, Any]:
        return self._mutate(
            "POST",
            "/emails",
            {"recipient": recipient, "subject": subject, "body": body},
            invalidates=("/emails",),
        )

    def set_email_status(
        self,
        email_id: str,
        *,
        is_read: Optional[bool] = None,
        is_starred: Optional[bool] = None,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {}
        if is_read is not None:
            payload["isRead"] = is_read
        if is_starred is not None:
            payload["isStarred"] = is_starred
        return self._mutate("PATCH", f"/emails/{email_id}/status", payload, invalidates=("/emails",))

    def move_email(self, email_id: str, folder: str) -> Dict[str, Any]:
        return self._mutate("PATCH", f"/emails/{email_id}/folder", {"folder": folder}, invalidates=("/emails",))

    # ------------------------------------------------------------------
    # Domains and audit log
    # ------------------------------------------------------------------
    def list_domains(self) -> List[Dict[str, Any]]:
        return self._query("/domains")

    def create_domain(self, domain: str, description: Optional[str] = None) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"domain": domain}
        if description is not None:
            payload["description"] = description
        return self._mutate("POST", "/domains", payload, invalidates=("/domains", "/audit-logs"))

    def set_domain_active(self, domain_id: str, is_active: bool) -> Dict[str, Any]:
        return self._mutate(
            "PATCH",
            f"/domains/{domain_id}/status",
            {"isActive": is_active},
            invalidates=("/domains", "/audit-logs"),
        )

    def audit_logs(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        return self._query("/audit-logs", {"limit": limit})

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _query(self, path: str, params: Optional[Mapping[str, object]] = None) -> Any:
        key = QueryCache.key(_api_path(path), params)
        if key in self.cache:
            return self.cache.get(key)
        data = self._request("GET", path, params=params)
        self.cache.put(key, data)
        return data

    def _mutate(
        self,
        method: str,
        path: str,
        payload: Mapping[str, Any],
        *,
        invalidates: Iterable[str],
    ) -> Any:
        data = self._request(method, path, json=dict(payload))
        for prefix in invalidates:
            self.cache.invalidate(_api_path(prefix))
        return data

    def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Mapping[str, Any]] = None,
        params: Optional[Mapping[str, object]] = None,
    ) -> Any:
        try:
            response = self._http.request(method, _api_path(path), json=json, params=_clean_params(params))
        except httpx.RequestError as exc:  # pragma: no cover - network failure
            raise MailAdminClientError(0, f"Failed to contact the API: {exc}") from exc

        if response.status_code >= 400:
            try:
                parsed = response.json()
            except ValueError:
                parsed = response.text
            message = _extract_error_message(parsed, f"API request failed with status {response.status_code}")
            errors = parsed.get("errors") if isinstance(parsed, dict) else None
            raise MailAdminClientError(response.status_code, message, errors if isinstance(errors, list) else None)

        try:
            return response.json()
        except ValueError as exc:
            raise MailAdminClientError(response.status_code, "API returned an invalid response") from exc


__all__ = ["MailAdminClient", "MailAdminClientError", "QueryCache"]
