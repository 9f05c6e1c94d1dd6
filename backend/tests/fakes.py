"""Test doubles shared across the suite."""
from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Dict, List


def token_for(store_code: str) -> str:
    return f"tok-{store_code}"


class FakeTikTokApi:
    """
    In-memory stand-in for ``TikTokApiClient``.

    ``accounts`` maps an access token to an ``AccountInfo`` or to an exception
    to raise; ``videos`` maps a token to its content list. ``delay`` makes each
    call yield to the event loop so concurrent syncs really overlap.
    """

    def __init__(self, *, delay: float = 0.0) -> None:
        self.accounts: Dict[str, Any] = {}
        self.videos: Dict[str, Any] = {}
        self.grants: Dict[str, Any] = {}
        self.delay = delay
        self.calls: List[tuple[str, str]] = []
        self.in_flight = 0
        self.peak_in_flight = 0

    async def _enter(self, name: str, token: str) -> None:
        self.calls.append((name, token))
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
        finally:
            self.in_flight -= 1

    async def get_account_info(self, access_token: str):
        await self._enter("account", access_token)
        value = self.accounts.get(access_token)
        if isinstance(value, BaseException):
            raise value
        if value is None:
            from app.services.tiktok_api import TikTokAuthError

            raise TikTokAuthError("Access token is invalid", code="access_token_invalid", status=401)
        return value

    async def fetch_all_content(self, access_token: str, *, max_items=None, on_progress=None, **_: Any):
        await self._enter("content", access_token)
        value = self.videos.get(access_token, [])
        if isinstance(value, BaseException):
            raise value
        items = list(value)[: max_items or None]
        if on_progress is not None:
            on_progress(len(items))
        return items

    async def refresh_access_token(self, refresh_token: str):
        await self._enter("refresh", refresh_token)
        value = self.grants.get(refresh_token)
        if isinstance(value, BaseException):
            raise value
        if value is None:
            from app.services.tiktok_api import TikTokAuthError

            raise TikTokAuthError("token refresh rejected", code="invalid_grant", status=400)
        return value


def account_info(followers: int = 100, videos: int = 3, name: str = "shop"):
    from app.services.tiktok_api import AccountInfo

    return AccountInfo(
        open_id=f"open-{name}",
        display_name=name,
        avatar_url="https://example.com/a.png",
        follower_count=followers,
        following_count=5,
        likes_count=1000,
        video_count=videos,
    )


def content_item(video_id: str, views: int = 10):
    from app.services.tiktok_api import ContentItem

    return ContentItem(
        video_id=video_id,
        description=f"video {video_id}",
        create_time=datetime(2026, 1, 1, 12, 0, 0),
        view_count=views,
        like_count=views // 10,
        comment_count=1,
        share_count=0,
        cover_image_url="",
        share_url=f"https://example.com/v/{video_id}",
    )


