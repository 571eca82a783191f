"""Stateless prefetch tokens and page-window arithmetic.

A token is ``base64url(json payload) + "." + base64url(HMAC-SHA256)``. It is
never stored: the summary call re-verifies the signature, the age and the
filter fingerprint, then recomputes totals against the same predicate.
"""
from __future__ import annotations

import base64
import hashlib
import hmac
import json
import math
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any

from ghactivity import config
from ghactivity.date_utils import format_utc, parse_datetime, utc_now
from ghactivity.errors import FilterFingerprintMismatchError, InvalidTokenError, TokenExpiredError

DEFAULT_PER_PAGE = 25
MAX_PER_PAGE = 100


@dataclass(frozen=True)
class PrefetchWindow:
    page: int
    per_page: int
    requested_pages: int

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.per_page

    @property
    def fetch_limit(self) -> int:
        """Rows to request: the whole window plus one look-ahead row."""
        return self.per_page * self.requested_pages + 1

    def buffered_pages(self, row_count: int) -> int:
        usable = min(row_count, self.per_page * self.requested_pages)
        return math.ceil(usable / self.per_page) if usable else 0

    def has_more(self, row_count: int) -> bool:
        return row_count > self.per_page * self.requested_pages

    def split(self, rows: list[Any]) -> list[list[Any]]:
        usable = rows[: self.per_page * self.requested_pages]
        return [usable[start:start + self.per_page] for start in range(0, len(usable), self.per_page)]


@dataclass(frozen=True)
class PrefetchToken:
    filterFingerprint: str
    page: int
    perPage: int
    requestedPages: int
    bufferedPages: int
    createdAt: str


def clamp_prefetch_pages(value: Any) -> int:
    try:
        pages = int(value)
    except (TypeError, ValueError):
        pages = 1
    return max(1, min(config.MAX_PREFETCH_PAGES, pages))


def clamp_per_page(value: Any) -> int:
    try:
        per_page = int(value)
    except (TypeError, ValueError):
        per_page = DEFAULT_PER_PAGE
    return max(1, min(MAX_PER_PAGE, per_page))


def build_window(page: Any, per_page: Any, prefetch_pages: Any) -> PrefetchWindow:
    try:
        page_number = max(1, int(page))
    except (TypeError, ValueError):
        page_number = 1
    return PrefetchWindow(
        page=page_number,
        per_page=clamp_per_page(per_page),
        requested_pages=clamp_prefetch_pages(prefetch_pages),
    )


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64decode(text: str) -> bytes:
    padding = "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(text + padding)


def _signature(body: str, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), body.encode("ascii"), hashlib.sha256).digest()
    return _b64encode(digest)


def sign_token(token: PrefetchToken, secret: str | None = None) -> str:
    payload = json.dumps(asdict(token), sort_keys=True, separators=(",", ":"))
    body = _b64encode(payload.encode("utf-8"))
    return f"{body}.{_signature(body, secret or config.PREFETCH_TOKEN_SECRET)}"


def issue_token(
    window: PrefetchWindow,
    fingerprint: str,
    buffered_pages: int,
    *,
    now: datetime | None = None,
    secret: str | None = None,
) -> tuple[str, PrefetchToken]:
    token = PrefetchToken(
        filterFingerprint=fingerprint,
        page=window.page,
        perPage=window.per_page,
        requestedPages=window.requested_pages,
        bufferedPages=buffered_pages,
        createdAt=format_utc(now or utc_now()),
    )
    return sign_token(token, secret), token


def token_expires_at(token: PrefetchToken) -> str | None:
    created = parse_datetime(token.createdAt)
    if created is None:
        return None
    return format_utc(created + timedelta(seconds=config.PREFETCH_TOKEN_TTL_SECONDS))


def verify_token(
    value: str | None,
    fingerprint: str,
    *,
    now: datetime | None = None,
    secret: str | None = None,
    ttl_seconds: int | None = None,
) -> PrefetchToken:
    """Check signature, age and filter fingerprint, in that order."""
    text = (value or "").strip()
    body, _, signature = text.partition(".")
    if not body or not signature or not text.isascii():
        raise InvalidTokenError("Malformed prefetch token")
    expected = _signature(body, secret or config.PREFETCH_TOKEN_SECRET)
    if not hmac.compare_digest(expected, signature):
        raise InvalidTokenError("Prefetch token signature mismatch")
    try:
        payload = json.loads(_b64decode(body))
        token = PrefetchToken(**payload)
    except (ValueError, TypeError) as exc:
        raise InvalidTokenError("Prefetch token payload is not readable") from exc

    created = parse_datetime(token.createdAt)
    if created is None:
        raise InvalidTokenError("Prefetch token has no creation time")
    ttl = config.PREFETCH_TOKEN_TTL_SECONDS if ttl_seconds is None else ttl_seconds
    if ((now or utc_now()) - created).total_seconds() > ttl:
        raise TokenExpiredError("Prefetch token expired; reload the list")
    if not hmac.compare_digest(token.filterFingerprint, fingerprint):
        raise FilterFingerprintMismatchError("Filters changed since the prefetch token was issued")
    return token


def total_pages(total_count: int, per_page: int) -> int:
    if total_count <= 0:
        return 0
    return math.ceil(total_count / per_page)
