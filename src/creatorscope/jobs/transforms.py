"""
Pure transforms between actor outputs.

Discovery: search results -> profile handles -> keyword-matching profiles.
Metrics: raw posts -> per-handle 30-day totals (plain sums, no scoring).
"""

import re
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any

_PROFILE_URL_PATTERNS = {
    "instagram": re.compile(r"instagram\.com/([A-Za-z0-9_.]{1,30})(?=[/?#]|$)", re.IGNORECASE),
    "tiktok": re.compile(r"tiktok\.com/@([A-Za-z0-9_.]{2,24})(?=[/?#]|$)", re.IGNORECASE),
}
_MENTION = re.compile(r"(?<![\w@])@([A-Za-z0-9_.]{2,30})")

# First path segments that are not profiles
_RESERVED_PATHS = frozenset(
    {"p", "reel", "reels", "explore", "stories", "tv", "accounts", "about", "developer", "legal", "tags"}
)


def normalize_handle(raw: str) -> str:
    """Trim, strip a leading '@' and lowercase."""
    return raw.strip().lstrip("@").strip().lower()


def parse_handles(raw: str | Iterable[str]) -> list[str]:
    """Split newline/comma separated input into unique normalized handles."""
    parts = re.split(r"[\n,]", raw) if isinstance(raw, str) else list(raw)
    return _unique(normalize_handle(p) for p in parts if isinstance(p, str))


def parse_keywords(raw: str | Iterable[str]) -> list[str]:
    parts = raw.splitlines() if isinstance(raw, str) else list(raw)
    return _unique(p.strip() for p in parts if isinstance(p, str))


def _unique(values: Iterable[str]) -> list[str]:
    seen: dict[str, None] = {}
    for value in values:
        if value and value not in seen:
            seen[value] = None
    return list(seen)


def _search_texts(item: dict[str, Any]) -> Iterable[tuple[str, str]]:
    """(url, text) pairs of a search item, flat or with nested organicResults."""
    results = item.get("organicResults")
    if isinstance(results, list):
        for result in results:
            if isinstance(result, dict):
                yield from _search_texts(result)
        return
    text = " ".join(str(item.get(key) or "") for key in ("title", "description"))
    yield str(item.get("url") or ""), text


def extract_handles(search_items: list[dict[str, Any]], platform: str = "instagram") -> list[str]:
    """Profile handles found in search results, de-duplicated in discovery order."""
    try:
        url_pattern = _PROFILE_URL_PATTERNS[platform]
    except KeyError:
        raise ValueError(f"Unsupported platform: {platform}") from None

    found = []
    for item in search_items:
        for url, text in _search_texts(item):
            match = url_pattern.search(url)
            if match and match.group(1).lower() not in _RESERVED_PATHS:
                found.append(match.group(1))
            found.extend(_MENTION.findall(text))
    return _unique(normalize_handle(h).rstrip(".") for h in found)


def filter_profiles(profiles: list[dict[str, Any]], keywords: list[str]) -> list[dict[str, Any]]:
    """Profiles mentioning any keyword (case-insensitive) in their public fields."""
    needles = [k.lower() for k in keywords if k.strip()]
    if not needles:
        return list(profiles)

    matched = []
    for profile in profiles:
        haystack = " ".join(
            str(profile.get(key) or "")
            for key in ("username", "fullName", "biography", "businessCategoryName")
        ).lower()
        if any(needle in haystack for needle in needles):
            matched.append(profile)
    return matched


def _post_time(post: dict[str, Any]) -> datetime | None:
    iso = post.get("createTimeISO")
    if isinstance(iso, str):
        try:
            parsed = datetime.fromisoformat(iso.replace("Z", "+00:00"))
        except ValueError:
            parsed = None
        if parsed is not None:
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    epoch = post.get("createTime")
    if isinstance(epoch, (int, float)):
        return datetime.fromtimestamp(epoch, UTC)
    return None


def _count(post: dict[str, Any], key: str) -> int:
    value = post.get(key)
    return int(value) if isinstance(value, (int, float)) else 0


def reduce_metrics(
    posts: list[dict[str, Any]], handles: list[str], since: datetime
) -> list[dict[str, Any]]:
    """Per-handle totals over posts created at or after `since`.

    Every requested handle gets a row, zeros included. Posts by other authors
    and undated posts are ignored.
    """
    totals: dict[str, dict[str, Any]] = {
        handle: {
            "username": handle,
            "followerCount": None,
            "posts30d": 0,
            "viewsTotal": 0,
            "likesTotal": 0,
            "commentsTotal": 0,
            "sharesTotal": 0,
        }
        for handle in handles
    }

    for post in posts:
        author = post.get("authorMeta") or {}
        row = totals.get(normalize_handle(str(author.get("name") or "")))
        if row is None:
            continue
        if row["followerCount"] is None and isinstance(author.get("fans"), int):
            row["followerCount"] = author["fans"]

        created = _post_time(post)
        if created is None or created < since:
            continue
        row["posts30d"] += 1
        row["viewsTotal"] += _count(post, "playCount")
        row["likesTotal"] += _count(post, "diggCount")
        row["commentsTotal"] += _count(post, "commentCount")
        row["sharesTotal"] += _count(post, "shareCount")

    return list(totals.values())
