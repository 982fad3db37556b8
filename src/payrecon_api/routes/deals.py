"""Marketer deal endpoints.

Deal updates are optimistic: the write is conditional on the version the
caller read (``expectedVersion`` in the body or an ``If-Match`` header) and
a lost race answers 409 instead of overwriting.
"""

from fastapi import APIRouter, Depends, Header, HTTPException, Response
from starlette.status import HTTP_422_UNPROCESSABLE_ENTITY

from payrecon.models.deal import DealWriteStatus
from payrecon.models.enums import DealStatus
from payrecon.models.errors import ErrorCode, ErrorResponse, ReconciliationError
from payrecon.services.deal_reconciler import DealReconciler
from payrecon_api.dependencies import get_deal_reconciler
from payrecon_api.models.deals import DealResponse, DealUpdateRequest

router = APIRouter(tags=["deals"])


def _parse_if_match(value: str | None) -> int | None:
    if value is None:
        return None
    tag = value.strip()
    if tag.startswith("W/"):
        tag = tag[2:]
    try:
        return int(tag.strip('"'))
    except ValueError:
        raise HTTPException(
            status_code=HTTP_422_UNPROCESSABLE_ENTITY,
            detail="If-Match must carry the deal version",
        ) from None


@router.get(
    "/marketer/deals/{deal_id}",
    summary="Get deal",
    response_model=DealResponse,
    responses={404: {"description": "Deal not found", "model": ErrorResponse}},
)
def get_deal(
    deal_id: str,
    response: Response,
    reconciler: DealReconciler = Depends(get_deal_reconciler),
) -> DealResponse:
    deal = reconciler.get_deal(deal_id)
    if deal is None:
        raise ReconciliationError(ErrorCode.DEAL_NOT_FOUND, details={"deal_id": deal_id})
    response.headers["ETag"] = f'"{deal.version}"'
    return DealResponse.from_deal(deal)


@router.patch(
    "/marketer/deals/{deal_id}",
    summary="Update deal status",
    description="""
Cancel or complete a deal.

**Cancel** is rejected with 409 once money has moved for the deal; request
a refund instead. **Complete** requires a paid deal.

Send the version from the last read as `expectedVersion` or `If-Match`.
If the deal changed in between, the update is not applied and 409 is
returned so the caller can re-fetch and decide.
""",
    response_model=DealResponse,
    responses={
        404: {"description": "Deal not found", "model": ErrorResponse},
        409: {"description": "Version conflict or invalid transition", "model": ErrorResponse},
    },
)
def update_deal(
    deal_id: str,
    body: DealUpdateRequest,
    response: Response,
    if_match: str | None = Header(default=None),
    reconciler: DealReconciler = Depends(get_deal_reconciler),
) -> DealResponse:
    expected_version = body.expected_version
    if expected_version is None:
        expected_version = _parse_if_match(if_match)

    written = reconciler.update_deal(deal_id, DealStatus(body.status), expected_version)
    if written.status == DealWriteStatus.CONFLICT:
        details = {"reason": written.reason or ""}
        if written.deal is not None:
            details["current_version"] = str(written.deal.version)
        raise ReconciliationError(ErrorCode.CONCURRENT_MODIFICATION, details=details)
    if written.status == DealWriteStatus.REJECTED:
        raise ReconciliationError(
            written.error_code or ErrorCode.INVALID_DEAL_TRANSITION,
            details={"deal_id": deal_id, "reason": written.reason or ""},
        )

    if written.deal is None:
        raise ReconciliationError(ErrorCode.DEAL_NOT_FOUND, details={"deal_id": deal_id})
    response.headers["ETag"] = f'"{written.deal.version}"'
    return DealResponse.from_deal(written.deal)
