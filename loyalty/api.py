import base64
import binascii
from datetime import datetime, timezone
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .auth import require_user
from .config import get_settings
from .errors import InsufficientFundsError, InvalidRewardRequestError, UnknownTierError
from .models import (
    BalanceResponse,
    ReasonCode,
    RedeemRewardRequest,
    RedeemRewardResponse,
    RedemptionStatus,
    RewardHistoryResponse,
    RewardSummary,
    UploadReceiptRequest,
    UploadReceiptResponse,
    ValidateRewardRequest,
)
from .observability import get_logger
from .redemption import resolve_tier
from .service import LoyaltyServices, get_services

logger = get_logger(__name__)

STANDALONE_REJECTIONS = (ReasonCode.DUPLICATE_RECEIPT, ReasonCode.DAILY_LIMIT_REACHED)

app = FastAPI(
    title="Crown Loyalty API",
    description="Earn points from purchase receipts and redeem them for one-time rewards",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    body = exc.detail if isinstance(exc.detail, dict) else {"error": exc.detail}
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(body), headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    problems = []
    for error in exc.errors():
        field = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        problems.append(f"{field}: {error.get('msg')}" if field else str(error.get("msg")))
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": "INVALID_REQUEST", "message": "; ".join(problems) or "Invalid request body"},
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "INTERNAL_ERROR", "message": "An internal error occurred. Please try again later."},
    )


def _decode_image(file_base64: str) -> bytes:
    payload = file_base64.strip()
    if payload.startswith("data:") and "," in payload:
        payload = payload.split(",", 1)[1]
    try:
        image = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError):
        image = b""
    if not image:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "INVALID_IMAGE", "message": "fileBase64 is not a valid base64 image"},
        )
    return image


@app.get("/health", tags=["System"])
def health_check():
    return {
        "status": "ok",
        "service": get_settings().service_name,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@app.get("/balance", response_model=BalanceResponse, tags=["Account"])
def get_balance(
    user_id: str = Depends(require_user),
    services: LoyaltyServices = Depends(get_services),
) -> BalanceResponse:
    account = services.ledger.get_balance(user_id)
    return BalanceResponse(user_id=account.user_id, points=account.points)


@app.get("/rewards", response_model=RewardHistoryResponse, tags=["Rewards"])
def get_rewards(
    user_id: str = Depends(require_user),
    services: LoyaltyServices = Depends(get_services),
) -> RewardHistoryResponse:
    rewards = services.redemption.list_rewards(user_id)
    return RewardHistoryResponse(rewards=[RewardSummary.model_validate(r) for r in rewards])


@app.post("/upload-receipt", response_model=UploadReceiptResponse, tags=["Receipts"])
def upload_receipt(
    request: UploadReceiptRequest,
    user_id: str = Depends(require_user),
    services: LoyaltyServices = Depends(get_services),
) -> UploadReceiptResponse:
    image = _decode_image(request.file_base64)
    result = services.receipts.submit(user_id, image, request.file_name, request.content_type)
    outcome = result.outcome
    extraction = outcome.extraction

    if not result.accepted:
        blocking = outcome.blocking_reasons
        if len(blocking) == 1 and blocking[0].code in STANDALONE_REJECTIONS:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={"error": blocking[0].code.value, "message": blocking[0].message},
            )
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "error": "RECEIPT_REJECTED",
                "reasons": [r.model_dump(by_alias=True) for r in outcome.reasons],
                "amount": float(outcome.amount) if outcome.amount is not None else None,
                "transactionDate": extraction.transaction_date,
                "rawDateText": extraction.raw_date_text,
                "merchantName": extraction.merchant_name,
            },
        )

    receipt = result.receipt
    return UploadReceiptResponse(
        user_id=user_id,
        amount=float(receipt.amount),
        points_earned=receipt.points_earned,
        new_balance=result.account.points,
        receipt_id=receipt.id,
        receipt_blob_url=receipt.blob_url,
        transaction_date=receipt.transaction_date,
        raw_date_text=receipt.raw_date_text,
        merchant_name=receipt.merchant_name,
        warnings=outcome.warnings,
    )


@app.post("/redeem-reward", response_model=RedeemRewardResponse, tags=["Rewards"])
def redeem_reward(
    request: Optional[RedeemRewardRequest] = None,
    user_id: str = Depends(require_user),
    services: LoyaltyServices = Depends(get_services),
) -> RedeemRewardResponse:
    request = request or RedeemRewardRequest()
    try:
        config = resolve_tier(request.tier, request.reward_name, request.points_cost, services.settings)
        issued = services.redemption.issue_reward(user_id, config)
    except UnknownTierError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail={"error": "UNKNOWN_TIER", "message": str(e)})
    except InvalidRewardRequestError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail={"error": "INVALID_REQUEST", "message": str(e)})
    except InsufficientFundsError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "NOT_ENOUGH_POINTS", "message": "Not enough points to redeem this reward."},
        )

    reward = issued.reward
    return RedeemRewardResponse(
        reward_id=reward.id,
        reward_name=reward.name,
        points_cost=reward.points_cost,
        new_balance=issued.account.points,
        qr_payload=issued.qr_payload,
        tier=reward.tier,
    )


@app.api_route("/validate-reward", methods=["GET", "POST"], tags=["Rewards"])
def validate_reward(
    payload: Optional[ValidateRewardRequest] = None,
    reward_id: Optional[str] = Query(default=None, alias="rewardId"),
    services: LoyaltyServices = Depends(get_services),
):
    reward_id = (payload.reward_id if payload else None) or reward_id
    if not reward_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail={"valid": False, "reason": "MISSING_ID"})

    result = services.redemption.redeem_reward(reward_id)
    if result.status == RedemptionStatus.NOT_FOUND:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail={"valid": False, "reason": "NOT_FOUND"})
    if result.status == RedemptionStatus.ALREADY_REDEEMED:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"valid": False, "reason": "ALREADY_REDEEMED", "rewardName": result.reward.name},
        )
    return {"valid": True, "rewardName": result.reward.name, "userId": result.reward.user_id}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
