from decimal import Decimal
from typing import Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger
from pydantic import BaseModel, Field

from claim_db import (
    claim_cashback_db,
    claim_commission_db,
    claim_db,
    get_claimable_balance_db,
    get_earnings_db,
)
from claim_engine import serialize_amounts
from errors import (
    AlreadyProcessed,
    NotFound,
    NotOwner,
    ReferralError,
    SerializationConflict,
    TransactionFailed,
)
from logging_setup import setup_logging
from referral_db import generate_referral_code_db, register_referral_db
from tokens import TokenType
from trade_engine import serialize_trade_result
from trade_engine_db import process_trade_db, record_trade_db

setup_logging()

app = FastAPI(title="Referral Commission Ledger", version="0.2.0")

# CORS middleware to allow frontend to call the API
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------
# pydantic models (requests)
# ---------

class ReferralRegisterRequest(BaseModel):
    child_user_id: int = Field(..., description="ID of the user being referred")
    referral_code: str = Field(..., min_length=1, max_length=20, description="Referral code used on signup")

class ReferralGenerateRequest(BaseModel):
    user_id: int = Field(..., description="User ID to generate or fetch referral code for")

class TradeWebhookRequest(BaseModel):
    user_id: int
    # decimal strings; floats would already have lost precision
    volume: str = Field(..., pattern=r"^\d+(\.\d+)?$")
    token_type: TokenType
    fee_tier: Optional[str] = Field(None, pattern=r"^\d+(\.\d+)?$", description="Override the user's fee tier")

class ClaimRequest(BaseModel):
    user_id: int = Field(..., description="User ID attempting to claim")
    token_type: TokenType = Field(TokenType.USDC_ARBITRUM, description="Token to claim in")

class ClaimCommissionRequest(BaseModel):
    user_id: int
    commission_id: str

class ClaimCashbackRequest(BaseModel):
    user_id: int
    cashback_id: str


# ---------
# error mapping
# ---------

def _http_error(exc: Exception) -> HTTPException:
    """normalize engine errors into HTTP errors."""
    if isinstance(exc, NotFound):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, NotOwner):
        return HTTPException(status_code=403, detail=str(exc))
    if isinstance(exc, AlreadyProcessed):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, ReferralError):
        # business rule violations (already has referrer, invalid input, cycle, etc.)
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, (TransactionFailed, SerializationConflict)):
        return HTTPException(status_code=503, detail="Transaction failed, please retry")
    logger.exception("Unexpected error")
    return HTTPException(status_code=500, detail="Internal server error")


# ---------
# endpoints
# ---------


@app.post("/api/referral/register")
def referral_register(payload: ReferralRegisterRequest):
    """
    attach a child user to a referrer using a referral_code.
    """
    try:
        return register_referral_db(
            child_id=payload.child_user_id,
            referral_code=payload.referral_code,
        )
    except Exception as e:
        raise _http_error(e)


@app.post("/api/referral/generate")
def referral_generate(payload: ReferralGenerateRequest):
    """
    return the user's referral code, generating one if they don't have it yet.
    """
    try:
        return generate_referral_code_db(payload.user_id)
    except Exception as e:
        raise _http_error(e)


@app.post("/api/webhook/trade")
def webhook_trade(payload: TradeWebhookRequest):
    """
    record a trade and distribute its fee.
    fee_tier is optional: without it the user's own tier applies.
    """
    try:
        result = record_trade_db(
            payload.user_id,
            Decimal(payload.volume),
            payload.token_type,
            fee_tier=Decimal(payload.fee_tier) if payload.fee_tier is not None else None,
        )
    except Exception as e:
        raise _http_error(e)

    return serialize_trade_result(result)


@app.post("/api/trades/{trade_id}/process")
def trade_process(trade_id: str):
    """
    distribute a pending trade. processing it twice returns 409.
    """
    try:
        result = process_trade_db(trade_id)
    except Exception as e:
        raise _http_error(e)

    return serialize_trade_result(result)


@app.post("/api/referral/claim")
def referral_claim(payload: ClaimRequest):
    """
    claim every unclaimed commission + cashback row for user/token.
    nothing to claim is a normal response with zero totals.
    """
    try:
        result = claim_db(payload.user_id, payload.token_type)
    except Exception as e:
        raise _http_error(e)

    return serialize_amounts(result)


@app.post("/api/referral/claim/commission")
def referral_claim_commission(payload: ClaimCommissionRequest):
    try:
        result = claim_commission_db(payload.user_id, payload.commission_id)
    except Exception as e:
        raise _http_error(e)

    return serialize_amounts(result)


@app.post("/api/referral/claim/cashback")
def referral_claim_cashback(payload: ClaimCashbackRequest):
    try:
        result = claim_cashback_db(payload.user_id, payload.cashback_id)
    except Exception as e:
        raise _http_error(e)

    return serialize_amounts(result)


@app.get("/api/referral/claimable")
def referral_claimable(
    user_id: int = Query(..., description="User ID to fetch claimable balance for"),
):
    try:
        balances = get_claimable_balance_db(user_id)
    except Exception as e:
        raise _http_error(e)

    return {"user_id": user_id, "balances": serialize_amounts(balances)}


@app.get("/api/referral/earnings")
def referral_earnings(
    user_id: int = Query(..., description="User ID to fetch earnings for"),
    token_type: Optional[TokenType] = Query(None, description="Restrict to one token type"),
):
    """
    total / claimed / unclaimed commissions (also per level) and cashback.
    """
    try:
        earnings = get_earnings_db(user_id, token_type)
    except Exception as e:
        raise _http_error(e)

    return {
        "user_id": user_id,
        "token_type": token_type.value if token_type is not None else None,
        **serialize_amounts(earnings),
    }
