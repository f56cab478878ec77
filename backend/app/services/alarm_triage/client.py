"""Alarm-source HTTP client.

Responsibilities:
- Login (POST /login) to get a short-lived bearer token
- Fetch a bounded page of current alarms (GET /alarms/)
- Push a triage note back to the source (POST /notes)
- Map transport/HTTP problems onto the source error taxonomy

Does NOT know about lineages or triage.
"""
import logging
from urllib.parse import urlsplit

import httpx

logger = logging.getLogger("triage.client")


class AlarmSourceError(Exception):
    """Alarm-source API error."""
    def __init__(self, code: str, message: str):
        self.code = code
        self.message = message
        super().__init__(f"[{code}] {message}")


class SourceAuthError(AlarmSourceError):
    """Login rejected or no token returned."""
    pass


class SourceFetchError(AlarmSourceError):
    """Alarm list request failed or returned garbage."""
    pass


class MirrorNotifyError(AlarmSourceError):
    """Note push failed. Always swallowed by the caller."""
    pass


def normalize_base_url(raw: str) -> str:
    """'10.2.1.100' -> 'https://10.2.1.100/api'; keeps explicit paths as-is."""
    base = (raw or "").strip()
    if not base:
        return ""
    if not base.startswith(("http://", "https://", "/")):
        base = f"https://{base}"
    base = base.rstrip("/")
    if base.startswith("/"):
        return base
    if urlsplit(base).path in ("", "/"):
        base = f"{base}/api"
    return base


def _describe_response(resp: httpx.Response) -> str:
    text = resp.text.strip() if resp.content else ""
    return f"HTTP {resp.status_code} {text[:200]}".strip()


class AlarmSourceClient:

    def __init__(
        self,
        base_url: str,
        username: str,
        password: str,
        *,
        timeout: float = 15.0,
        verify: bool = True,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = normalize_base_url(base_url)
        self.username = username
        self.password = password
        self._client = httpx.AsyncClient(
            timeout=timeout, verify=verify, transport=transport,
        )

    async def __aenter__(self) -> "AlarmSourceClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def login(self) -> str:
        """Authenticate and return the access token."""
        url = f"{self.base_url}/login"
        try:
            resp = await self._client.post(
                url, json={"username": self.username, "password": self.password},
            )
        except httpx.HTTPError as exc:
            raise SourceAuthError("CONNECTION", f"login request failed: {exc}") from exc

        if resp.status_code >= 400:
            raise SourceAuthError("LOGIN_REJECTED", _describe_response(resp))

        try:
            token = resp.json().get("accessToken")
        except (ValueError, AttributeError):
            token = None
        if not token:
            raise SourceAuthError("NO_TOKEN", "login response has no accessToken")
        return token

    async def list_alarms(
        self,
        token: str,
        page_size: int,
        *,
        is_acknowledged: bool | None = None,
        is_discarded: bool | None = None,
    ) -> dict:
        """Fetch one page of alarms: {"total": int, "items": [...]}."""
        params: dict[str, str] = {"pageSize": str(page_size)}
        if is_acknowledged is not None:
            params["isAcknowledged"] = str(is_acknowledged).lower()
        if is_discarded is not None:
            params["isDiscarded"] = str(is_discarded).lower()

        try:
            resp = await self._client.get(
                f"{self.base_url}/alarms/",
                params=params,
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.HTTPError as exc:
            raise SourceFetchError("CONNECTION", f"alarm request failed: {exc}") from exc

        if resp.status_code in (401, 403):
            raise SourceAuthError("TOKEN_REJECTED", _describe_response(resp))
        if resp.status_code >= 400:
            raise SourceFetchError("HTTP_ERROR", _describe_response(resp))

        try:
            data = resp.json()
        except ValueError as exc:
            raise SourceFetchError("BAD_BODY", "alarm response is not JSON") from exc
        if not isinstance(data, dict) or not isinstance(data.get("items", []), list):
            raise SourceFetchError("BAD_BODY", "alarm response has no items list")

        items = data.get("items") or []
        return {"total": data.get("total", len(items)), "items": items}

    async def push_note(self, token: str, payload: dict) -> None:
        """Send a triage note. Raises MirrorNotifyError on any failure."""
        try:
            resp = await self._client.post(
                f"{self.base_url}/notes",
                json=payload,
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.HTTPError as exc:
            raise MirrorNotifyError("CONNECTION", str(exc)) from exc
        if resp.status_code >= 400:
            raise MirrorNotifyError("HTTP_ERROR", _describe_response(resp))

    async def test_connection(self) -> dict:
        """Login + fetch one alarm, report outcome."""
        try:
            token = await self.login()
            result = await self.list_alarms(token, 1)
            return {"success": True, "total": result["total"]}
        except AlarmSourceError as exc:
            return {"success": False, "error": str(exc)}

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()
