"""API endpoints for merchant loyalty programs, balances, and redemptions."""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, List, Literal, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_engine.api.dependencies.security import require_loyalty_api_key
from loyalty_engine.db.session import get_session
from loyalty_engine.models.loyalty import (
    KickbackEvent,
    LoyaltyPointTransaction,
    LoyaltyProgram,
    LoyaltyRedemption,
    LoyaltyTransactionType,
)
from loyalty_engine.services.loyalty import (
    AdjustmentService,
    AlreadyCancelledError,
    AlreadyExistsError,
    BalanceSnapshot,
    BelowMinimumError,
    ContentionError,
    EarningEngine,
    EarningSkipped,
    InsufficientBalanceError,
    LedgerReconciliation,
    LedgerStore,
    LoyaltyError,
    LoyaltyValidationError,
    NotFoundError,
    ProgramInactiveError,
    ProgramRegistry,
    RedemptionWorkflow,
    TransactionFilter,
    UnauthorizedAdjustmentError,
)


router = APIRouter(
    prefix="/loyalty",
    tags=["loyalty"],
    dependencies=[Depends(require_loyalty_api_key)],
)


_STATUS_BY_ERROR: list[tuple[type[LoyaltyError], int]] = [
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (AlreadyExistsError, status.HTTP_409_CONFLICT),
    (InsufficientBalanceError, status.HTTP_409_CONFLICT),
    (AlreadyCancelledError, status.HTTP_409_CONFLICT),
    (ProgramInactiveError, status.HTTP_409_CONFLICT),
    (BelowMinimumError, status.HTTP_422_UNPROCESSABLE_CONTENT),
    (LoyaltyValidationError, status.HTTP_422_UNPROCESSABLE_CONTENT),
    (UnauthorizedAdjustmentError, status.HTTP_403_FORBIDDEN),
    (ContentionError, status.HTTP_503_SERVICE_UNAVAILABLE),
]


def _to_http_error(exc: LoyaltyError) -> HTTPException:
    status_code = status.HTTP_400_BAD_REQUEST
    for error_type, mapped in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            status_code = mapped
            break
    headers = {"Retry-After": "1"} if exc.retryable else None
    return HTTPException(
        status_code=status_code,
        detail={"code": exc.code, "message": str(exc)},
        headers=headers,
    )


def _ensure_aware(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _money(value: Any) -> float:
    return float(Decimal(value))


_PROGRAM_FIELDS = {
    "pointsPerDollar": "points_per_dollar",
    "minimumPurchase": "minimum_purchase",
    "minimumRedemption": "minimum_redemption",
    "redemptionValue": "redemption_value",
    "pointExpirationDays": "point_expiration_days",
    "allowCombineWithDeals": "allow_combine_with_deals",
    "earnOnDiscounted": "earn_on_discounted",
}


class ProgramConfigRequest(BaseModel):
    pointsPerDollar: Optional[Decimal] = Field(None, description="Points awarded per currency unit")
    minimumPurchase: Optional[Decimal] = Field(None, description="Smallest purchase that earns points")
    minimumRedemption: Optional[int] = Field(None, description="Smallest redeemable point amount")
    redemptionValue: Optional[Decimal] = Field(None, description="Currency value of one point")
    pointExpirationDays: Optional[int] = Field(None, description="Days before credits expire; null never expires")
    allowCombineWithDeals: Optional[bool] = None
    earnOnDiscounted: Optional[bool] = None

    def to_config(self) -> dict[str, Any]:
        provided = self.model_dump(exclude_unset=True)
        return {_PROGRAM_FIELDS[key]: value for key, value in provided.items()}


class ProgramStatusRequest(BaseModel):
    isActive: bool


class ProgramResponse(BaseModel):
    id: UUID
    merchantId: UUID
    isActive: bool
    pointsPerDollar: float
    minimumPurchase: float
    minimumRedemption: int
    redemptionValue: float
    pointExpirationDays: Optional[int]
    allowCombineWithDeals: bool
    earnOnDiscounted: bool
    createdAt: Optional[datetime]
    updatedAt: Optional[datetime]

    @classmethod
    def from_model(cls, program: LoyaltyProgram) -> "ProgramResponse":
        return cls(
            id=program.id,
            merchantId=program.merchant_id,
            isActive=program.is_active,
            pointsPerDollar=_money(program.points_per_dollar),
            minimumPurchase=_money(program.minimum_purchase),
            minimumRedemption=program.minimum_redemption,
            redemptionValue=_money(program.redemption_value),
            pointExpirationDays=program.point_expiration_days,
            allowCombineWithDeals=program.allow_combine_with_deals,
            earnOnDiscounted=program.earn_on_discounted,
            createdAt=_ensure_aware(program.created_at),
            updatedAt=_ensure_aware(program.updated_at),
        )


class BalanceResponse(BaseModel):
    userId: UUID
    merchantId: UUID
    currentBalance: int
    lifetimeEarned: int
    lifetimeRedeemed: int
    lastEarnedAt: Optional[datetime]
    lastRedeemedAt: Optional[datetime]
    tier: Optional[str]
    transactionCount: int

    @classmethod
    def from_snapshot(cls, snapshot: BalanceSnapshot) -> "BalanceResponse":
        return cls(
            userId=snapshot.user_id,
            merchantId=snapshot.merchant_id,
            currentBalance=snapshot.current_balance,
            lifetimeEarned=snapshot.lifetime_earned,
            lifetimeRedeemed=snapshot.lifetime_redeemed,
            lastEarnedAt=_ensure_aware(snapshot.last_earned_at),
            lastRedeemedAt=_ensure_aware(snapshot.last_redeemed_at),
            tier=snapshot.tier,
            transactionCount=snapshot.transaction_count,
        )


class TransactionResponse(BaseModel):
    id: UUID
    userId: UUID
    merchantId: UUID
    loyaltyProgramId: UUID
    userLoyaltyId: UUID
    sequence: int
    type: LoyaltyTransactionType
    points: int
    balanceBefore: int
    balanceAfter: int
    description: str
    metadata: dict[str, Any]
    orderId: Optional[str]
    redemptionId: Optional[UUID]
    kickbackEventId: Optional[UUID]
    createdAt: datetime

    @classmethod
    def from_model(cls, entry: LoyaltyPointTransaction) -> "TransactionResponse":
        return cls(
            id=entry.id,
            userId=entry.user_id,
            merchantId=entry.merchant_id,
            loyaltyProgramId=entry.loyalty_program_id,
            userLoyaltyId=entry.user_loyalty_id,
            sequence=entry.sequence,
            type=entry.type,
            points=entry.points,
            balanceBefore=entry.balance_before,
            balanceAfter=entry.balance_after,
            description=entry.description,
            metadata=dict(entry.metadata_json or {}),
            orderId=entry.order_id,
            redemptionId=entry.redemption_id,
            kickbackEventId=entry.kickback_event_id,
            createdAt=_ensure_aware(entry.created_at),
        )


class TransactionPageResponse(BaseModel):
    transactions: List[TransactionResponse]
    total: int
    limit: int
    offset: int
    hasMore: bool


class ReconciliationResponse(BaseModel):
    userId: UUID
    merchantId: UUID
    consistent: bool
    snapshotBalance: int
    replayedBalance: int
    snapshotTransactionCount: int
    transactionCount: int
    brokenLinks: List[UUID]

    @classmethod
    def from_result(cls, result: LedgerReconciliation) -> "ReconciliationResponse":
        return cls(
            userId=result.user_id,
            merchantId=result.merchant_id,
            consistent=result.is_consistent,
            snapshotBalance=result.snapshot_balance,
            replayedBalance=result.replayed_balance,
            snapshotTransactionCount=result.snapshot_transaction_count,
            transactionCount=result.transaction_count,
            brokenLinks=list(result.broken_links),
        )


class PurchaseAwardRequest(BaseModel):
    userId: UUID
    purchaseAmount: Decimal = Field(..., ge=0, description="Completed purchase total")
    isDiscounted: bool = False
    orderId: Optional[str] = Field(None, description="Order reference from checkout")
    description: Optional[str] = None


class PurchaseAwardResponse(BaseModel):
    awarded: bool
    skipReason: Optional[str] = None
    detail: Optional[str] = None
    transaction: Optional[TransactionResponse] = None


class KickbackRequest(BaseModel):
    referrerUserId: UUID
    dealId: Optional[str] = None
    inviteeSpendTotal: Decimal = Field(..., ge=0)
    inviteeCount: int = Field(..., ge=0)
    kickbackRate: Decimal = Field(..., ge=0, le=1)


class KickbackResponse(BaseModel):
    id: UUID
    merchantId: UUID
    userId: UUID
    dealId: Optional[str]
    sourceAmountSpent: float
    kickbackRate: float
    amountEarned: float
    inviteeCount: int
    createdAt: datetime

    @classmethod
    def from_model(cls, event: KickbackEvent) -> "KickbackResponse":
        return cls(
            id=event.id,
            merchantId=event.merchant_id,
            userId=event.user_id,
            dealId=event.deal_id,
            sourceAmountSpent=_money(event.source_amount_spent),
            kickbackRate=_money(event.kickback_rate),
            amountEarned=_money(event.amount_earned),
            inviteeCount=event.invitee_count,
            createdAt=_ensure_aware(event.created_at),
        )


class KickbackConversionRequest(BaseModel):
    points: Optional[int] = Field(None, gt=0, description="Override for the converted point amount")


class RedemptionQuoteResponse(BaseModel):
    points: int
    discountValue: float
    minimumRedemption: int
    meetsMinimum: bool
    calculation: str


class RedemptionCreateRequest(BaseModel):
    userId: UUID
    points: int = Field(..., gt=0)
    orderId: Optional[str] = None
    orderAmount: Optional[Decimal] = Field(None, ge=0)


class RedemptionCancelRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)


class RedemptionResponse(BaseModel):
    id: UUID
    userId: UUID
    merchantId: UUID
    pointsRedeemed: int
    discountValue: float
    redemptionTransactionId: UUID
    orderId: Optional[str]
    status: str
    cancelledAt: Optional[datetime]
    cancellationReason: Optional[str]
    createdAt: datetime

    @classmethod
    def from_model(cls, redemption: LoyaltyRedemption) -> "RedemptionResponse":
        return cls(
            id=redemption.id,
            userId=redemption.user_id,
            merchantId=redemption.merchant_id,
            pointsRedeemed=redemption.points_redeemed,
            discountValue=_money(redemption.discount_value),
            redemptionTransactionId=redemption.redemption_transaction_id,
            orderId=redemption.order_id,
            status=redemption.status.value,
            cancelledAt=_ensure_aware(redemption.cancelled_at),
            cancellationReason=redemption.cancellation_reason,
            createdAt=_ensure_aware(redemption.created_at),
        )


class CancellationResponse(BaseModel):
    redemption: RedemptionResponse
    refundTransaction: TransactionResponse


class AdjustmentRequest(BaseModel):
    userId: UUID
    points: int
    reason: str = Field(..., description="Why the balance is being adjusted")
    type: Optional[Literal["BONUS", "ADJUSTED", "REFUNDED"]] = None


@router.post(
    "/programs/{merchant_id}",
    response_model=ProgramResponse,
    status_code=status.HTTP_201_CREATED,
)
async def initialize_program(
    merchant_id: UUID,
    request: ProgramConfigRequest,
    db: AsyncSession = Depends(get_session),
) -> ProgramResponse:
    """Create the merchant's loyalty program; omitted fields take defaults."""

    try:
        program = await ProgramRegistry(db).initialize(merchant_id, request.to_config())
    except LoyaltyError as exc:
        raise _to_http_error(exc) from exc
    return ProgramResponse.from_model(program)


@router.get("/programs/{merchant_id}", response_model=ProgramResponse)
async def get_program(
    merchant_id: UUID,
    db: AsyncSession = Depends(get_session),
) -> ProgramResponse:
    try:
        program = await ProgramRegistry(db).get(merchant_id)
    except LoyaltyError as exc:
        raise _to_http_error(exc) from exc
    return ProgramResponse.from_model(program)


@router.patch("/programs/{merchant_id}", response_model=ProgramResponse)
async def update_program(
    merchant_id: UUID,
    request: ProgramConfigRequest,
    db: AsyncSession = Depends(get_session),
) -> ProgramResponse:
    try:
        program = await ProgramRegistry(db).update(merchant_id, request.to_config())
    except LoyaltyError as exc:
        raise _to_http_error(exc) from exc
    return ProgramResponse.from_model(program)


@router.post("/programs/{merchant_id}/status", response_model=ProgramResponse)
async def set_program_status(
    merchant_id: UUID,
    request: ProgramStatusRequest,
    db: AsyncSession = Depends(get_session),
) -> ProgramResponse:
    try:
        program = await ProgramRegistry(db).set_status(merchant_id, request.isActive)
    except LoyaltyError as exc:
        raise _to_http_error(exc) from exc
    return ProgramResponse.from_model(program)


@router.get(
    "/merchants/{merchant_id}/users/{user_id}/balance",
    response_model=BalanceResponse,
)
async def get_balance(
    merchant_id: UUID,
    user_id: UUID,
    db: AsyncSession = Depends(get_session),
) -> BalanceResponse:
    snapshot = await LedgerStore(db).get_balance(user_id, merchant_id)
    return BalanceResponse.from_snapshot(snapshot)


@router.get("/users/{user_id}/balances", response_model=List[BalanceResponse])
async def list_user_balances(
    user_id: UUID,
    db: AsyncSession = Depends(get_session),
) -> List[BalanceResponse]:
    snapshots = await LedgerStore(db).list_balances(user_id)
    return [BalanceResponse.from_snapshot(snapshot) for snapshot in snapshots]


@router.get("/transactions", response_model=TransactionPageResponse)
async def list_transactions(
    merchant_id: Optional[UUID] = Query(None, alias="merchantId"),
    user_id: Optional[UUID] = Query(None, alias="userId"),
    types: Optional[List[LoyaltyTransactionType]] = Query(None, alias="type"),
    created_from: Optional[datetime] = Query(None, alias="createdFrom"),
    created_to: Optional[datetime] = Query(None, alias="createdTo"),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    order: Literal["asc", "desc"] = Query("desc"),
    db: AsyncSession = Depends(get_session),
) -> TransactionPageResponse:
    """Filtered ledger page ordered by creation time."""

    criteria = TransactionFilter(
        merchant_id=merchant_id,
        user_id=user_id,
        types=types,
        created_from=_ensure_aware(created_from),
        created_to=_ensure_aware(created_to),
        limit=limit,
        offset=offset,
        ascending=order == "asc",
    )
    try:
        page = await LedgerStore(db).list_transactions(criteria)
    except LoyaltyError as exc:
        raise _to_http_error(exc) from exc
    return TransactionPageResponse(
        transactions=[TransactionResponse.from_model(entry) for entry in page.transactions],
        total=page.total,
        limit=page.limit,
        offset=page.offset,
        hasMore=page.has_more,
    )


@router.get(
    "/merchants/{merchant_id}/users/{user_id}/reconciliation",
    response_model=ReconciliationResponse,
)
async def reconcile_balance(
    merchant_id: UUID,
    user_id: UUID,
    db: AsyncSession = Depends(get_session),
) -> ReconciliationResponse:
    """Replay the ledger chain and compare it with the stored snapshot."""

    result = await LedgerStore(db).reconcile(user_id, merchant_id)
    return ReconciliationResponse.from_result(result)


@router.post("/merchants/{merchant_id}/purchases", response_model=PurchaseAwardResponse)
async def award_purchase_points(
    merchant_id: UUID,
    request: PurchaseAwardRequest,
    db: AsyncSession = Depends(get_session),
) -> PurchaseAwardResponse:
    """Award points for a completed purchase, or report why none were earned."""

    try:
        outcome = await EarningEngine(db).award_purchase_points(
            request.userId,
            merchant_id,
            request.purchaseAmount,
            request.isDiscounted,
            order_id=request.orderId,
            description=request.description,
        )
    except LoyaltyError as exc:
        raise _to_http_error(exc) from exc

    if isinstance(outcome, EarningSkipped):
        return PurchaseAwardResponse(
            awarded=False,
            skipReason=outcome.reason.value,
            detail=outcome.detail,
        )
    return PurchaseAwardResponse(awarded=True, transaction=TransactionResponse.from_model(outcome))


@router.post(
    "/merchants/{merchant_id}/kickbacks",
    response_model=KickbackResponse,
    status_code=status.HTTP_201_CREATED,
)
async def record_kickback(
    merchant_id: UUID,
    request: KickbackRequest,
    db: AsyncSession = Depends(get_session),
) -> KickbackResponse:
    try:
        event = await EarningEngine(db).award_kickback(
            merchant_id,
            request.referrerUserId,
            request.dealId,
            request.inviteeSpendTotal,
            request.inviteeCount,
            request.kickbackRate,
        )
    except LoyaltyError as exc:
        raise _to_http_error(exc) from exc
    return KickbackResponse.from_model(event)


@router.get("/merchants/{merchant_id}/kickbacks", response_model=List[KickbackResponse])
async def list_kickbacks(
    merchant_id: UUID,
    user_id: Optional[UUID] = Query(None, alias="userId"),
    db: AsyncSession = Depends(get_session),
) -> List[KickbackResponse]:
    events = await EarningEngine(db).list_kickback_events(merchant_id, user_id)
    return [KickbackResponse.from_model(event) for event in events]


@router.post(
    "/kickbacks/{kickback_event_id}/convert",
    response_model=TransactionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def convert_kickback(
    kickback_event_id: UUID,
    request: KickbackConversionRequest,
    db: AsyncSession = Depends(get_session),
) -> TransactionResponse:
    """Credit a kickback to the referrer as an explicit bonus transaction."""

    try:
        transaction = await AdjustmentService(db).convert_kickback(kickback_event_id, request.points)
    except LoyaltyError as exc:
        raise _to_http_error(exc) from exc
    return TransactionResponse.from_model(transaction)


@router.get(
    "/merchants/{merchant_id}/redemptions/quote",
    response_model=RedemptionQuoteResponse,
)
async def quote_redemption(
    merchant_id: UUID,
    points: int = Query(..., gt=0),
    db: AsyncSession = Depends(get_session),
) -> RedemptionQuoteResponse:
    try:
        quote = await RedemptionWorkflow(db).quote(merchant_id, points)
    except LoyaltyError as exc:
        raise _to_http_error(exc) from exc
    return RedemptionQuoteResponse(
        points=quote.points,
        discountValue=_money(quote.discount_value),
        minimumRedemption=quote.minimum_redemption,
        meetsMinimum=quote.meets_minimum,
        calculation=quote.calculation,
    )


@router.post(
    "/merchants/{merchant_id}/redemptions",
    response_model=RedemptionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def redeem_points(
    merchant_id: UUID,
    request: RedemptionCreateRequest,
    db: AsyncSession = Depends(get_session),
) -> RedemptionResponse:
    try:
        redemption = await RedemptionWorkflow(db).redeem(
            request.userId,
            merchant_id,
            request.points,
            order_id=request.orderId,
            order_amount=request.orderAmount,
        )
    except LoyaltyError as exc:
        raise _to_http_error(exc) from exc
    return RedemptionResponse.from_model(redemption)


@router.get(
    "/merchants/{merchant_id}/users/{user_id}/redemptions",
    response_model=List[RedemptionResponse],
)
async def list_user_redemptions(
    merchant_id: UUID,
    user_id: UUID,
    db: AsyncSession = Depends(get_session),
) -> List[RedemptionResponse]:
    redemptions = await RedemptionWorkflow(db).list_for_user(user_id, merchant_id)
    return [RedemptionResponse.from_model(item) for item in redemptions]


@router.get("/redemptions/{redemption_id}", response_model=RedemptionResponse)
async def get_redemption(
    redemption_id: UUID,
    db: AsyncSession = Depends(get_session),
) -> RedemptionResponse:
    try:
        redemption = await RedemptionWorkflow(db).get(redemption_id)
    except LoyaltyError as exc:
        raise _to_http_error(exc) from exc
    return RedemptionResponse.from_model(redemption)


@router.post("/redemptions/{redemption_id}/cancel", response_model=CancellationResponse)
async def cancel_redemption(
    redemption_id: UUID,
    request: RedemptionCancelRequest,
    db: AsyncSession = Depends(get_session),
) -> CancellationResponse:
    """Cancel an active redemption and refund its points."""

    try:
        result = await RedemptionWorkflow(db).cancel(redemption_id, request.reason)
    except LoyaltyError as exc:
        raise _to_http_error(exc) from exc
    return CancellationResponse(
        redemption=RedemptionResponse.from_model(result.redemption),
        refundTransaction=TransactionResponse.from_model(result.refund_transaction),
    )


@router.post(
    "/merchants/{merchant_id}/adjustments",
    response_model=TransactionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def adjust_points(
    merchant_id: UUID,
    request: AdjustmentRequest,
    db: AsyncSession = Depends(get_session),
) -> TransactionResponse:
    """Manually credit or debit an existing customer's balance."""

    try:
        transaction = await AdjustmentService(db).adjust(
            merchant_id,
            request.userId,
            request.points,
            request.reason,
            request.type,
        )
    except LoyaltyError as exc:
        raise _to_http_error(exc) from exc
    return TransactionResponse.from_model(transaction)
