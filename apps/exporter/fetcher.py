"""
Paginated Fetcher - Remote Record API Client

Pulls single pages of records from the remote API under one of two pagination
regimes, selected by record kind:

- OffsetPagination (conversations): numeric skip offset; more data is inferred
  from page fullness.
- CursorPagination (messages): opaque cursor returned by the API; more data
  requires both a next cursor and a full page.

HTTP failures are classified here, once, into AuthExpiredError /
TransientError / PermanentError.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional, Union

import httpx

from apps.exporter.errors import AuthExpiredError, PermanentError, TransientError
from utils.config import settings
from utils.schemas import RecordKind

logger = logging.getLogger(__name__)

Position = Union[int, str, None]

DATE_FILTERS = ("startDate", "endDate")
TRANSIENT_STATUSES = {408, 425, 429}


@dataclass(frozen=True)
class Page:
    """One page of remote records and where the next page starts."""

    records: list[dict[str, Any]]
    next_position: Position
    has_more: bool


def _to_epoch_ms(value: Any) -> Any:
    """Convert a date filter to epoch milliseconds; leave numbers untouched."""
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


def build_filter_params(filters: dict[str, Any]) -> dict[str, Any]:
    """Drop unset filters and send date bounds as epoch milliseconds."""
    params: dict[str, Any] = {}
    for key, value in filters.items():
        if value is None or value == "":
            continue
        params[key] = _to_epoch_ms(value) if key in DATE_FILTERS else value
    return params


class PaginationRegime(ABC):
    """How positions are encoded, sent and advanced for one record kind."""

    path: str
    records_key: str

    @property
    @abstractmethod
    def page_size(self) -> int:
        ...

    @abstractmethod
    def decode_position(self, raw: Optional[str]) -> Position:
        """Turn the persisted checkpoint cursor into a fetch position."""

    @abstractmethod
    def encode_position(self, position: Position) -> Optional[str]:
        """Turn a fetch position into the persisted checkpoint cursor."""

    @abstractmethod
    def position_params(self, position: Position) -> dict[str, Any]:
        ...

    @abstractmethod
    def parse(self, body: dict[str, Any], position: Position) -> Page:
        ...


class OffsetPagination(PaginationRegime):
    path = "/conversations/search"
    records_key = "conversations"

    @property
    def page_size(self) -> int:
        return settings.CONVERSATION_PAGE_SIZE

    def decode_position(self, raw: Optional[str]) -> int:
        return int(raw) if raw else 0

    def encode_position(self, position: Position) -> Optional[str]:
        return str(int(position or 0))

    def position_params(self, position: Position) -> dict[str, Any]:
        return {"skip": int(position or 0)}

    def parse(self, body: dict[str, Any], position: Position) -> Page:
        records = body.get(self.records_key) or []
        return Page(
            records=records,
            next_position=int(position or 0) + len(records),
            has_more=len(records) == self.page_size,
        )


class CursorPagination(PaginationRegime):
    path = "/conversations/messages/export"
    records_key = "messages"

    @property
    def page_size(self) -> int:
        return settings.MESSAGE_PAGE_SIZE

    def decode_position(self, raw: Optional[str]) -> Optional[str]:
        return raw or None

    def encode_position(self, position: Position) -> Optional[str]:
        return str(position) if position else None

    def position_params(self, position: Position) -> dict[str, Any]:
        return {"cursor": position} if position else {}

    def parse(self, body: dict[str, Any], position: Position) -> Page:
        records = body.get(self.records_key) or []
        next_cursor = body.get("nextCursor") or None
        has_more = next_cursor is not None and len(records) == self.page_size
        return Page(
            records=records,
            next_position=next_cursor if has_more else None,
            has_more=has_more,
        )


_REGIMES: dict[RecordKind, PaginationRegime] = {
    RecordKind.CONVERSATIONS: OffsetPagination(),
    RecordKind.MESSAGES: CursorPagination(),
}


def regime_for(record_kind: RecordKind) -> PaginationRegime:
    return _REGIMES[record_kind]


def classify_status(response: httpx.Response) -> None:
    """Raise the tagged error matching a non-2xx response."""
    status = response.status_code
    if status < 400:
        return
    detail = f"HTTP {status} from {response.request.url.path}"
    if status == 401:
        raise AuthExpiredError(detail)
    if status >= 500 or status in TRANSIENT_STATUSES:
        raise TransientError(detail)
    raise PermanentError(f"{detail}: {response.text[:500]}")


class PaginatedFetcher:
    """Fetches single pages from the remote record API."""

    def __init__(self, client: httpx.AsyncClient, base_url: str | None = None) -> None:
        """
        Initialize fetcher.

        Args:
            client: Shared async HTTP client
            base_url: Record API base, defaults to settings.RECORD_API_BASE
        """
        self.client = client
        self.base_url = (base_url or settings.RECORD_API_BASE).rstrip("/")

    async def fetch_page(
        self,
        tenant_id: str,
        record_kind: RecordKind,
        filters: dict[str, Any],
        position: Position,
        access_token: str,
    ) -> Page:
        """
        Fetch one page of records.

        Args:
            tenant_id: Location whose records are read
            record_kind: Selects the pagination regime
            filters: Opaque query filters stored on the job
            position: Offset (conversations) or cursor (messages)
            access_token: Bearer credential

        Returns:
            Page with records, next position and has_more flag

        Raises:
            AuthExpiredError: On HTTP 401
            TransientError: On network errors, throttling or 5xx
            PermanentError: On any other 4xx
        """
        regime = regime_for(record_kind)
        params = {
            "locationId": tenant_id,
            "limit": regime.page_size,
            **build_filter_params(filters),
            **regime.position_params(position),
        }
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
            "Version": settings.RECORD_API_VERSION,
        }

        try:
            response = await self.client.get(
                f"{self.base_url}{regime.path}",
                params=params,
                headers=headers,
                timeout=settings.API_TIMEOUT,
            )
        except httpx.TransportError as e:
            raise TransientError(f"Record API request failed: {e}") from e

        classify_status(response)

        try:
            body = response.json()
        except ValueError as e:
            raise TransientError(f"Record API returned invalid JSON: {e}") from e

        page = regime.parse(body, position)
        logger.debug(
            "Fetched page: tenant_id=%s, kind=%s, records=%d, has_more=%s",
            tenant_id, record_kind.value, len(page.records), page.has_more,
        )
        return page
