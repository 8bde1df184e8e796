from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Protocol
from zoneinfo import ZoneInfo


PROVIDER_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"
# Gateway timestamps are naive Beijing wall-clock times.
PROVIDER_TZ = ZoneInfo("Asia/Shanghai")


@dataclass(frozen=True)
class QueryWindow:
    start: str
    end: str

    @classmethod
    def trailing(cls, *, now: datetime, days_back: int) -> QueryWindow:
        now = now.astimezone(PROVIDER_TZ) if now.tzinfo is not None else now
        # Ends tomorrow to absorb clock skew and late-arriving complaints.
        start = now - timedelta(days=days_back)
        end = now + timedelta(days=1)
        return cls(start=start.strftime(PROVIDER_TIME_FORMAT), end=end.strftime(PROVIDER_TIME_FORMAT))


@dataclass(frozen=True)
class ComplaintListItem:
    complaint_id: int
    task_id: str
    status: str = ""
    complainant_id: str = ""
    gmt_create: str = ""
    gmt_modified: str = ""


@dataclass(frozen=True)
class ComplaintPage:
    items: list[ComplaintListItem]
    total: int


@dataclass(frozen=True)
class OrderLine:
    merchant_order_no: str
    platform_order_no: str = ""
    amount: Decimal = Decimal("0")
    complaint_amount: Decimal = Decimal("0")


@dataclass(frozen=True)
class ComplaintDetailResult:
    task_id: str
    status: str
    complainant_id: str = ""
    complainant_name: str = ""
    reason: str = ""
    gmt_create: str = ""
    gmt_modified: str = ""
    order_lines: list[OrderLine] = field(default_factory=list)


class ComplaintProvider(Protocol):
    async def list_complaints(self, window: QueryWindow, page: int, page_size: int) -> ComplaintPage:
        ...

    async def get_complaint_detail(self, complaint_id: int) -> ComplaintDetailResult:
        ...


def parse_provider_time(value: str) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.strptime(value.strip(), PROVIDER_TIME_FORMAT).replace(tzinfo=PROVIDER_TZ)
    except ValueError:
        return None
