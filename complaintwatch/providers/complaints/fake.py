from __future__ import annotations

from complaintwatch.core.errors import ProviderCallFailed
from complaintwatch.providers.complaints.base import (
    ComplaintDetailResult,
    ComplaintListItem,
    ComplaintPage,
    QueryWindow,
)
from complaintwatch.providers.complaints.alipay import BATCH_QUERY_METHOD, DETAIL_QUERY_METHOD


class FakeComplaintProvider:
    """Deterministic in-memory provider for local runs and tests."""

    def __init__(
        self,
        items: list[ComplaintListItem] | None = None,
        details: dict[int, ComplaintDetailResult] | None = None,
        *,
        fail_on_page: int | None = None,
    ) -> None:
        self.items = list(items or [])
        self.details = dict(details or {})
        self.fail_on_page = fail_on_page
        self.list_calls: list[tuple[QueryWindow, int, int]] = []
        self.detail_calls: list[int] = []

    async def list_complaints(self, window: QueryWindow, page: int, page_size: int) -> ComplaintPage:
        self.list_calls.append((window, page, page_size))
        if self.fail_on_page is not None and page >= self.fail_on_page:
            raise ProviderCallFailed(BATCH_QUERY_METHOD, "simulated outage")
        start = (page - 1) * page_size
        return ComplaintPage(items=self.items[start : start + page_size], total=len(self.items))

    async def get_complaint_detail(self, complaint_id: int) -> ComplaintDetailResult:
        self.detail_calls.append(complaint_id)
        detail = self.details.get(complaint_id)
        if detail is None:
            raise ProviderCallFailed(DETAIL_QUERY_METHOD, f"complaint {complaint_id} not found", code="40004")
        return detail
