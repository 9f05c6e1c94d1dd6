# app/services/tiktok_api.py
from __future__ import annotations

"""
TikTok Display API client (async, httpx):
    * get_account_info()     -> GET  /v2/user/info/    (data.user)
    * list_content_page()    -> POST /v2/video/list/   (data.videos + cursor/has_more)
    * fetch_all_content()    -> cursor pagination over list_content_page(), capped
    * refresh_access_token() -> POST /v2/oauth/token/  (grant_type=refresh_token)
429/5xx and transport errors are retried with exponential jitter; 401/403 and
token error codes surface as TikTokAuthError.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

import httpx
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential_jitter,
    retry_if_exception_type,
)

from app.core.config import settings


logger = logging.getLogger("tthubs.tiktok.http")


USER_INFO_PATH = "/v2/user/info/"
VIDEO_LIST_PATH = "/v2/video/list/"
TOKEN_PATH = "/v2/oauth/token/"

USER_INFO_FIELDS = (
    "open_id",
    "display_name",
    "avatar_url",
    "follower_count",
    "following_count",
    "likes_count",
    "video_count",
)
VIDEO_FIELDS = (
    "id",
    "title",
    "create_time",
    "cover_image_url",
    "share_url",
    "video_description",
    "like_count",
    "comment_count",
    "share_count",
    "view_count",
)

_MAX_PAGE_SIZE = 20  # upstream cap for video/list

AUTH_ERROR_CODES = frozenset(
    {
        "access_token_invalid",
        "access_token_expired",
        "invalid_token",
        "scope_not_authorized",
        "scope_permission_missing",
        "invalid_grant",
    }
)
_RETRYABLE_STATUS = (429, 500, 502, 503, 504)


# --------------------------- errors ---------------------------


class TikTokApiError(Exception):
    """Business-level error (``error.code`` other than ``ok``) or non-retryable HTTP failure."""

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        status: int | None = None,
        log_id: str | None = None,
        payload: Any = None,
    ):
        super().__init__(message)
        self.code = code
        self.status = status
        self.log_id = log_id
        self.payload = payload


class TikTokAuthError(TikTokApiError):
    """Credential rejected upstream; the account needs to be reconnected."""


class TikTokHttpError(TikTokApiError):
    """Retryable HTTP failure (429/5xx)."""

    def __init__(self, status: int, message: str, *, payload: Any = None):
        super().__init__(f"HTTP {status}: {message}", code="http_error", status=status, payload=payload)


def is_auth_failure(exc: BaseException) -> bool:
    if isinstance(exc, TikTokAuthError):
        return True
    if isinstance(exc, TikTokApiError):
        return exc.status in (401, 403) or (exc.code or "") in AUTH_ERROR_CODES
    return False


def is_transient_failure(exc: BaseException) -> bool:
    if isinstance(exc, TikTokHttpError):
        return True
    if isinstance(exc, TikTokApiError):
        return exc.status is not None and exc.status >= 500
    return isinstance(exc, (httpx.TransportError, TimeoutError))


# --------------------------- payloads ---------------------------


def _int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def _from_unix(value: Any) -> Optional[datetime]:
    if value in (None, "", 0):
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


@dataclass(frozen=True, slots=True)
class AccountInfo:
    open_id: str
    display_name: str
    avatar_url: str
    follower_count: int
    following_count: int
    likes_count: int
    video_count: int

    @classmethod
    def from_payload(cls, user: Dict[str, Any]) -> "AccountInfo":
        return cls(
            open_id=str(user.get("open_id") or ""),
            display_name=str(user.get("display_name") or ""),
            avatar_url=str(user.get("avatar_url") or ""),
            follower_count=_int(user.get("follower_count")),
            following_count=_int(user.get("following_count")),
            likes_count=_int(user.get("likes_count")),
            video_count=_int(user.get("video_count")),
        )


@dataclass(frozen=True, slots=True)
class ContentItem:
    video_id: str
    description: str
    create_time: Optional[datetime]
    view_count: int
    like_count: int
    comment_count: int
    share_count: int
    cover_image_url: str
    share_url: str

    @classmethod
    def from_payload(cls, video: Dict[str, Any]) -> "ContentItem":
        return cls(
            video_id=str(video.get("id") or ""),
            description=str(video.get("video_description") or video.get("title") or ""),
            create_time=_from_unix(video.get("create_time")),
            view_count=_int(video.get("view_count")),
            like_count=_int(video.get("like_count")),
            comment_count=_int(video.get("comment_count")),
            share_count=_int(video.get("share_count")),
            cover_image_url=str(video.get("cover_image_url") or ""),
            share_url=str(video.get("share_url") or ""),
        )


@dataclass(frozen=True, slots=True)
class ContentPage:
    items: List[ContentItem]
    cursor: Optional[int]
    has_more: bool


@dataclass(frozen=True, slots=True)
class TokenGrant:
    access_token: str
    refresh_token: str
    open_id: str
    expires_at: datetime
    refresh_expires_at: Optional[datetime]
    scope: str


# --------------------------- client ---------------------------


class TikTokApiClient:
    def __init__(
        self,
        *,
        base_url: str | None = None,
        timeout: float | None = None,
        client_key: str | None = None,
        client_secret: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base = (base_url or settings.TIKTOK_API_BASE).rstrip("/")
        self._timeout = float(timeout or settings.HTTP_CLIENT_TIMEOUT_SECONDS)
        self._client_key = client_key if client_key is not None else settings.TIKTOK_CLIENT_KEY
        self._client_secret = client_secret if client_secret is not None else settings.TIKTOK_CLIENT_SECRET
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    # ---------- request primitive ----------

    @retry(
        retry=retry_if_exception_type((TikTokHttpError, httpx.TransportError)),
        wait=wait_exponential_jitter(initial=0.5, max=8.0),
        stop=stop_after_attempt(4),
        reraise=True,
    )
    async def _request_json(
        self,
        method: str,
        path: str,
        *,
        access_token: str,
        params: Dict[str, Any] | None = None,
        json_body: Dict[str, Any] | None = None,
    ) -> Dict[str, Any]:
        url = f"{self._base}{path}"
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        async with self._client() as client:
            resp = await client.request(method, url, params=params, json=json_body, headers=headers)

        status = resp.status_code
        if status in _RETRYABLE_STATUS:
            raise TikTokHttpError(status, "retryable", payload=resp.text[:1000])

        try:
            data = resp.json()
        except ValueError:
            data = None

        error = data.get("error") if isinstance(data, dict) else None
        code = error.get("code") if isinstance(error, dict) else None
        message = (error.get("message") if isinstance(error, dict) else None) or f"HTTP {status}"
        log_id = error.get("log_id") if isinstance(error, dict) else None

        if status in (401, 403) or (code or "") in AUTH_ERROR_CODES:
            logger.warning(
                "TikTok auth error method=%s path=%s status=%s code=%s log_id=%s",
                method, path, status, code, log_id,
            )
            raise TikTokAuthError(message, code=code or "http_error", status=status, log_id=log_id, payload=data)

        if status >= 400:
            logger.error(
                "TikTok HTTP non-retryable error method=%s path=%s status=%s body=%s",
                method, path, status, resp.text[:1000],
            )
            raise TikTokApiError(message, code=code or "http_error", status=status, log_id=log_id, payload=data)

        if not isinstance(data, dict):
            raise TikTokApiError("invalid json response", status=status, payload=resp.text[:1000])

        if code and code != "ok":
            if code == "rate_limit_exceeded":
                raise TikTokHttpError(429, message, payload=data)
            logger.error(
                "TikTok API business error method=%s path=%s code=%s log_id=%s",
                method, path, code, log_id,
            )
            raise TikTokApiError(message, code=code, status=status, log_id=log_id, payload=data)
        return data

    # ---------- readers ----------

    async def get_account_info(self, access_token: str) -> AccountInfo:
        payload = await self._request_json(
            "GET",
            USER_INFO_PATH,
            access_token=access_token,
            params={"fields": ",".join(USER_INFO_FIELDS)},
        )
        user = (payload.get("data") or {}).get("user") or {}
        return AccountInfo.from_payload(user)

    async def list_content_page(
        self,
        access_token: str,
        *,
        cursor: int | None = None,
        page_size: int = _MAX_PAGE_SIZE,
    ) -> ContentPage:
        body: Dict[str, Any] = {"max_count": max(1, min(int(page_size), _MAX_PAGE_SIZE))}
        if cursor:
            body["cursor"] = cursor
        payload = await self._request_json(
            "POST",
            VIDEO_LIST_PATH,
            access_token=access_token,
            params={"fields": ",".join(VIDEO_FIELDS)},
            json_body=body,
        )
        data = payload.get("data") or {}
        videos = data.get("videos") or []
        if not isinstance(videos, list):
            videos = []
        items = [ContentItem.from_payload(v) for v in videos if isinstance(v, dict) and v.get("id")]
        next_cursor = data.get("cursor")
        return ContentPage(
            items=items,
            cursor=int(next_cursor) if next_cursor not in (None, "") else None,
            has_more=bool(data.get("has_more")),
        )

    async def fetch_all_content(
        self,
        access_token: str,
        *,
        max_items: int | None = None,
        max_pages: int | None = None,
        page_size: int | None = None,
        on_progress: Callable[[int], Any] | None = None,
    ) -> List[ContentItem]:
        """Walk the cursor until ``has_more`` is false or a cap is reached."""
        limit = int(max_items or settings.SYNC_MAX_VIDEOS)
        page_cap = int(max_pages or settings.SYNC_MAX_VIDEO_PAGES)
        size = int(page_size or settings.SYNC_VIDEO_PAGE_SIZE)

        items: List[ContentItem] = []
        cursor: int | None = None
        pages = 0
        while len(items) < limit:
            page = await self.list_content_page(access_token, cursor=cursor, page_size=size)
            items.extend(page.items)
            pages += 1
            if on_progress is not None:
                on_progress(len(items))
            if not page.has_more or page.cursor is None:
                break
            if pages >= page_cap:
                logger.warning("video pagination stopped at page cap", extra={"pages": pages})
                break
            cursor = page.cursor

        logger.debug("fetched content", extra={"videos": len(items), "pages": pages})
        return items[:limit]

    # ---------- oauth ----------

    @retry(
        retry=retry_if_exception_type((TikTokHttpError, httpx.TransportError)),
        wait=wait_exponential_jitter(initial=0.5, max=8.0),
        stop=stop_after_attempt(3),
        reraise=True,
    )
    async def refresh_access_token(self, refresh_token: str) -> TokenGrant:
        if not self._client_key or not self._client_secret:
            raise TikTokApiError("TikTok client credentials are not configured", code="config_error")

        async with self._client() as client:
            resp = await client.post(
                f"{self._base}{TOKEN_PATH}",
                data={
                    "client_key": self._client_key,
                    "client_secret": self._client_secret,
                    "grant_type": "refresh_token",
                    "refresh_token": refresh_token,
                },
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )

        status = resp.status_code
        if status in _RETRYABLE_STATUS:
            raise TikTokHttpError(status, "token endpoint unavailable")
        if status in (400, 401, 403):
            raise TikTokAuthError("token refresh rejected", code="invalid_grant", status=status)
        if status >= 400:
            raise TikTokApiError(f"token refresh failed: HTTP {status}", code="http_error", status=status)

        try:
            data = resp.json()
        except ValueError:
            raise TikTokApiError("invalid json response", status=status)

        if not isinstance(data, dict) or not data.get("access_token"):
            code = str((data or {}).get("error") or "invalid_grant") if isinstance(data, dict) else "invalid_grant"
            description = (data or {}).get("error_description") if isinstance(data, dict) else None
            raise TikTokAuthError(description or "token refresh rejected", code=code, status=status)

        now = datetime.now(timezone.utc).replace(tzinfo=None)
        refresh_expires_in = data.get("refresh_expires_in")
        return TokenGrant(
            access_token=str(data["access_token"]),
            refresh_token=str(data.get("refresh_token") or refresh_token),
            open_id=str(data.get("open_id") or ""),
            expires_at=now + timedelta(seconds=_int(data.get("expires_in"))),
            refresh_expires_at=(now + timedelta(seconds=_int(refresh_expires_in))) if refresh_expires_in else None,
            scope=str(data.get("scope") or ""),
        )
