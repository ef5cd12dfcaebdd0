"""REST client for the fax backend.

The backend authenticates with HTTP Basic credentials on ``GET /login`` and
answers with an ``rf-auth`` session cookie that must accompany every later
call. The client keeps that cookie itself and sends it as an explicit
``Cookie`` header; aiohttp's own cookie jar is disabled because it refuses
cookies from bare IP hosts, which is how many on-premise fax servers are
addressed.

Read calls (job status, documents, activities) are idempotent and are retried
on timeouts, connection errors, HTTP 429 and 5xx responses using exponential
backoff with jitter. Uploads and job creation are never retried: a repeated
``POST /SendJobs`` would send the same fax twice.
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Final, Self

import aiohttp

from fax_dispatch.core.config import BackendConfig
from fax_dispatch.errors import AuthenticationError, FaxApiError
from fax_dispatch.types.models import (
    DocumentActivity,
    FaxDocument,
    JobStatus,
    SendJobRequest,
    SessionInfo,
)
from fax_dispatch.utils.logging import get_logger, log_with_context
from fax_dispatch.utils.sanitization import sanitize_exception, sanitize_text

__all__ = ["SESSION_COOKIE_NAME", "FaxApiClient"]

SESSION_COOKIE_NAME: Final[str] = "rf-auth"

# Longest response excerpt embedded in an error message
_ERROR_BODY_LIMIT: Final[int] = 200


@dataclass(slots=True, frozen=True)
class _ApiResponse:
    """Fully read HTTP response."""

    status: int
    body: object
    headers: Mapping[str, str]
    session_cookie: str | None = None


def _parse_body(raw: str) -> object:
    if not raw:
        return None
    try:
        return json.loads(raw)  # pyright: ignore[reportAny]  # JSON boundary
    except ValueError:
        return raw


def _body_excerpt(body: object) -> str:
    text = body if isinstance(body, str) else json.dumps(body, default=str)
    return sanitize_text(text[:_ERROR_BODY_LIMIT])


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    return str(value)


def _optional_int(value: object) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value)
    return None


def _parse_timestamp(value: object) -> datetime | None:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC.

    Examples:
        >>> _parse_timestamp("2024-05-01T09:30:00Z").isoformat()
        '2024-05-01T09:30:00+00:00'
        >>> _parse_timestamp("yesterday") is None
        True
    """
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


class FaxApiClient:
    """aiohttp-based implementation of the FaxBackend protocol.

    Example:
        >>> async with FaxApiClient("https://fax.example.com/api", "ops", "pw") as client:
        ...     _ = await client.login()
        ...     ref = await client.upload_attachment(Path("letter.pdf"))
    """

    def __init__(
        self,
        base_url: str,
        username: str,
        password: str,
        *,
        request_timeout: float = 30.0,
        read_retries: int = 3,
        max_backoff_seconds: float = 30.0,
        jitter_percent: float = 20.0,
        logger_obj: logging.Logger | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            base_url: API root, without a trailing slash
            username: Basic-auth user for login
            password: Basic-auth password for login
            request_timeout: Total timeout per HTTP request in seconds
            read_retries: Retries for idempotent reads after the first attempt
            max_backoff_seconds: Upper bound of a single backoff delay
            jitter_percent: Random spread applied to each backoff delay
            logger_obj: Logger to use (defaults to this module's logger)
        """
        self._base_url: str = base_url.rstrip("/")
        self._username: str = username
        self._password: str = password
        self._request_timeout: float = request_timeout
        self._read_retries: int = read_retries
        self._max_backoff_seconds: float = max_backoff_seconds
        self._jitter_percent: float = jitter_percent
        self._logger: logging.Logger = logger_obj or get_logger(__name__)

        self._session: aiohttp.ClientSession | None = None
        self._session_cookie: str | None = None
        self._login_lock: asyncio.Lock = asyncio.Lock()

    @classmethod
    def from_config(cls, config: BackendConfig, *, logger_obj: logging.Logger | None = None) -> Self:
        return cls(
            config.base_url,
            config.username,
            config.password.get_secret_value(),
            request_timeout=config.request_timeout,
            read_retries=config.read_retries,
            logger_obj=logger_obj,
        )

    async def __aenter__(self) -> Self:
        self._session = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self._request_timeout),
            headers={"Accept": "application/json"},
            cookie_jar=aiohttp.DummyCookieJar(),
        )
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        await self.close()

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None
        self._session_cookie = None

    def is_logged_in(self) -> bool:
        return self._session_cookie is not None

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    async def login(self) -> SessionInfo:
        """Authenticate with Basic credentials and keep the session cookie.

        Raises:
            AuthenticationError: If the backend rejects the credentials or
                returns no ``rf-auth`` cookie
            FaxApiError: If the backend cannot be reached
        """
        response = await self._send_once(
            "GET",
            "/login",
            operation="login",
            auth=aiohttp.BasicAuth(self._username, self._password),
            with_cookie=False,
        )
        if response.status != 200:
            msg = f"Login failed with status {response.status}"
            raise AuthenticationError(msg, operation="login", status=response.status)
        if response.session_cookie is None:
            msg = "No session cookie received from server"
            raise AuthenticationError(msg, operation="login", status=response.status)

        self._session_cookie = response.session_cookie
        body = response.body if isinstance(response.body, dict) else {}
        info = SessionInfo(
            user=_optional_str(body.get("User")),  # pyright: ignore[reportUnknownMemberType, reportUnknownArgumentType]  # JSON boundary
            account=_optional_str(body.get("Account")),  # pyright: ignore[reportUnknownMemberType, reportUnknownArgumentType]  # JSON boundary
            server=_optional_str(body.get("Server")),  # pyright: ignore[reportUnknownMemberType, reportUnknownArgumentType]  # JSON boundary
            server_version=_optional_str(body.get("ServerVersion")),  # pyright: ignore[reportUnknownMemberType, reportUnknownArgumentType]  # JSON boundary
        )
        log_with_context(
            self._logger,
            logging.INFO,
            "Logged in to fax server",
            extra={"user": info.user, "server": info.server, "server_version": info.server_version},
        )
        return info

    async def logout(self) -> bool:
        """End the session; the local cookie is dropped either way."""
        try:
            response = await self._send_once("GET", "/logout", operation="logout")
        except FaxApiError as exc:
            self._logger.warning("Logout failed: %s", sanitize_exception(exc))
            self._session_cookie = None
            return False

        self._session_cookie = None
        if response.status >= 400:
            self._logger.warning("Logout returned status %d", response.status)
            return False
        self._logger.info("Logged out from fax server")
        return True

    # ------------------------------------------------------------------
    # Writes (never retried)
    # ------------------------------------------------------------------

    async def upload_attachment(self, file_path: Path) -> str:
        """Upload the document once; the returned reference is reused by every job.

        Raises:
            FaxApiError: If the file cannot be read or the upload is rejected
        """
        try:
            content = await asyncio.to_thread(file_path.read_bytes)
        except OSError as exc:
            msg = f"Cannot read attachment {file_path}: {exc}"
            raise FaxApiError(msg, operation="upload_attachment") from exc

        form = aiohttp.FormData()
        form.add_field(
            file_path.name,
            content,
            filename=file_path.name,
            content_type="application/binary",
        )
        response = await self._send_once("POST", "/Attachments", operation="upload_attachment", data=form)
        if response.status != 201:
            self._raise_for_status(response, "upload_attachment")

        location = response.headers.get("Location") or response.headers.get("location")
        reference = location or response.body
        if not isinstance(reference, str) or not reference.strip():
            msg = "Upload succeeded but no attachment reference was returned"
            raise FaxApiError(msg, operation="upload_attachment", status=response.status)

        self._logger.info("Uploaded attachment %s (%d bytes)", file_path.name, len(content))
        return reference.strip()

    async def create_job(self, request: SendJobRequest) -> str:
        """Create one send job and return the backend job ID (the fax handle)."""
        payload: dict[str, object] = {
            "Recipients": [{"Name": request.recipient_name, "Destination": request.destination}],
            "AttachmentUrls": [request.attachment_ref],
            "Priority": request.priority,
            "HoldForPreview": request.hold_for_preview,
            "BillingCode1": request.billing_code1,
            "BillingCode2": request.billing_code2,
        }
        if request.coversheet_template_id:
            payload["CoversheetTemplateId"] = request.coversheet_template_id

        response = await self._send_once("POST", "/SendJobs", operation="create_job", json_body=payload)
        if response.status != 201:
            self._raise_for_status(response, "create_job")

        body = response.body
        job_id = body.get("Id") if isinstance(body, dict) else None  # pyright: ignore[reportUnknownMemberType, reportUnknownVariableType]  # JSON boundary
        if job_id is None:
            msg = "Send job created but the response carried no Id"
            raise FaxApiError(msg, operation="create_job", status=response.status)
        return str(job_id)  # pyright: ignore[reportUnknownArgumentType]  # JSON boundary

    # ------------------------------------------------------------------
    # Reads (retried)
    # ------------------------------------------------------------------

    async def get_job_status(self, job_id: str) -> JobStatus:
        body = await self._read(f"/SendJobs/{job_id}", operation="get_job_status")
        if not isinstance(body, dict):
            msg = f"Unexpected job status payload for {job_id}"
            raise FaxApiError(msg, operation="get_job_status")
        return JobStatus(
            job_id=job_id,
            status=str(body.get("Status", "")),  # pyright: ignore[reportUnknownMemberType, reportUnknownArgumentType]  # JSON boundary
            condition=_optional_str(body.get("Condition")),  # pyright: ignore[reportUnknownMemberType, reportUnknownArgumentType]  # JSON boundary
        )

    async def get_documents_for_job(self, job_id: str) -> list[FaxDocument]:
        body = await self._read(
            "/Documents",
            operation="get_documents_for_job",
            params={"filter": "job", "jobid": job_id},
        )
        return [
            FaxDocument(
                document_id=str(item.get("Id", "")),
                condition=_optional_str(item.get("Condition")),
                page_count=_optional_int(item.get("PageCount")),
            )
            for item in self._items(body)
        ]

    async def get_activities(self, document_id: str) -> list[DocumentActivity]:
        body = await self._read(
            "/DocumentActivities",
            operation="get_activities",
            params={"documentId": document_id},
        )
        return [
            DocumentActivity(
                activity_id=_optional_str(item.get("Id")),
                message=str(item.get("Message") or ""),
                timestamp=_parse_timestamp(item.get("Timestamp")),
                user_id=_optional_str(item.get("UserId")),
                user_display_name=_optional_str(item.get("UserDisplayName")),
                condition=_optional_str(item.get("Condition")),
                status=_optional_str(item.get("Status")),
                is_diagnostic=bool(item.get("IsDiagnostic", False)),
            )
            for item in self._items(body)
        ]

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    @staticmethod
    def _items(body: object) -> list[dict[str, object]]:
        """Extract the ``Items`` list of a collection response."""
        if not isinstance(body, dict):
            return []
        items = body.get("Items")  # pyright: ignore[reportUnknownMemberType, reportUnknownVariableType]  # JSON boundary
        if not isinstance(items, list):
            return []
        return [item for item in items if isinstance(item, dict)]  # pyright: ignore[reportUnknownVariableType]  # JSON boundary

    def _raise_for_status(self, response: _ApiResponse, operation: str) -> None:
        msg = f"{operation} failed with status {response.status}: {_body_excerpt(response.body)}"
        if response.status in (401, 403):
            raise AuthenticationError(msg, operation=operation, status=response.status)
        raise FaxApiError(msg, operation=operation, status=response.status)

    async def _send_once(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        params: Mapping[str, str] | None = None,
        json_body: Mapping[str, object] | None = None,
        data: aiohttp.FormData | None = None,
        auth: aiohttp.BasicAuth | None = None,
        with_cookie: bool = True,
    ) -> _ApiResponse:
        """Perform a single request and read the whole response.

        Raises:
            FaxApiError: On timeout or any transport error
            RuntimeError: If the client is used outside ``async with``
        """
        if self._session is None:
            msg = "Fax API client session not initialized. Use 'async with' context manager."
            raise RuntimeError(msg)

        headers: dict[str, str] = {}
        if with_cookie and self._session_cookie is not None:
            headers["Cookie"] = f"{SESSION_COOKIE_NAME}={self._session_cookie}"

        url = f"{self._base_url}{path}"
        self._logger.debug("%s %s", method, path)
        try:
            async with asyncio.timeout(self._request_timeout):
                async with self._session.request(
                    method,
                    url,
                    params=params,
                    json=json_body,
                    data=data,
                    auth=auth,
                    headers=headers,
                ) as response:
                    raw = await response.text()
                    morsel = response.cookies.get(SESSION_COOKIE_NAME)
                    return _ApiResponse(
                        status=response.status,
                        body=_parse_body(raw),
                        headers=dict(response.headers),
                        session_cookie=morsel.value if morsel is not None and morsel.value else None,
                    )
        except TimeoutError as exc:
            msg = f"{operation} timed out after {self._request_timeout:.1f}s"
            raise FaxApiError(msg, operation=operation) from exc
        except aiohttp.ClientError as exc:
            msg = f"{operation} failed: {sanitize_exception(exc)}"
            raise FaxApiError(msg, operation=operation) from exc

    async def _read(
        self,
        path: str,
        *,
        operation: str,
        params: Mapping[str, str] | None = None,
    ) -> object:
        """GET with retries; a 401 triggers one re-login and a final retry."""
        stale_cookie = self._session_cookie
        response = await self._get_with_retry(path, operation=operation, params=params)

        if response.status == 401 and self._username:
            await self._relogin(stale_cookie)
            response = await self._get_with_retry(path, operation=operation, params=params)

        if response.status != 200:
            self._raise_for_status(response, operation)
        return response.body

    async def _relogin(self, stale_cookie: str | None) -> None:
        """Log in again unless a concurrent caller already renewed the session."""
        async with self._login_lock:
            if self._session_cookie is not None and self._session_cookie != stale_cookie:
                return
            self._logger.warning("Session expired, logging in again")
            self._session_cookie = None
            _ = await self.login()

    async def _get_with_retry(
        self,
        path: str,
        *,
        operation: str,
        params: Mapping[str, str] | None = None,
    ) -> _ApiResponse:
        attempts = self._read_retries + 1
        for attempt in range(attempts):
            try:
                response = await self._send_once("GET", path, operation=operation, params=params)
            except FaxApiError as exc:
                if attempt + 1 >= attempts:
                    raise
                delay = self._calculate_backoff_delay(attempt)
                self._logger.warning(
                    "%s failed (%s), retrying in %.1fs (attempt %d/%d)",
                    operation,
                    exc,
                    delay,
                    attempt + 1,
                    attempts,
                )
                await asyncio.sleep(delay)
                continue

            if self._is_retryable_status(response.status) and attempt + 1 < attempts:
                delay = self._calculate_backoff_delay(attempt)
                self._logger.warning(
                    "%s returned status %d, retrying in %.1fs (attempt %d/%d)",
                    operation,
                    response.status,
                    delay,
                    attempt + 1,
                    attempts,
                )
                await asyncio.sleep(delay)
                continue
            return response

        # Unreachable: the final attempt either returns or raises
        msg = f"All retry attempts exhausted for {operation}"
        raise FaxApiError(msg, operation=operation)

    def _calculate_backoff_delay(self, attempt: int) -> float:
        """Exponential backoff ``2^attempt`` seconds with ±jitter, capped."""
        base_delay = min(pow(2.0, attempt), self._max_backoff_seconds)
        jitter_factor = 1.0 + random.uniform(
            -self._jitter_percent / 100.0,
            self._jitter_percent / 100.0,
        )
        return min(base_delay * jitter_factor, self._max_backoff_seconds)

    @staticmethod
    def _is_retryable_status(status: int) -> bool:
        return status == 429 or status >= 500
