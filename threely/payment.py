# payment.py
"""
Token ledger backed by Stripe.

Users buy token packs (pricing tiers) through Stripe PaymentIntents and
spend one token per model generation. Purchases are credited either by
the Stripe webhook or by the client confirming the intent; both paths go
through `credit_payment_intent`, which credits each intent at most once.
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Optional, Tuple

import stripe
from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from threely.auth import get_current_user, require_admin
from threely.db import get_db
from threely.models import TokenTransaction, TokenUsage, UNLIMITED_TOKENS, User
from threely.schemas import (
    ConfirmPaymentRequest, ConsumeTokenRequest, CreatePaymentIntentRequest, GrantTokensRequest, parse_uuid,
)
from threely.settings import settings

log = logging.getLogger(__name__)

# ===================================================================
# CONFIGURATION
# ===================================================================

stripe.api_key = settings.STRIPE_SECRET_KEY
if not settings.STRIPE_SECRET_KEY:
    log.warning("STRIPE_SECRET_KEY env var not set. Payments will fail.")

router = APIRouter(prefix="/payment", tags=["Payment"])

CURRENCY = "eur"
COST_PER_GENERATION = 0.18

PRICING_TIERS = {
    "starter": {"id": "starter", "name": "Starter Pack", "tokens": 3, "price": 2.99, "profit": 2.45},
    "popular": {"id": "popular", "name": "Popular Pack", "tokens": 10, "price": 7.99, "profit": 6.19},
    "pro": {"id": "pro", "name": "Pro Pack", "tokens": 25, "price": 16.99, "profit": 12.49},
    "studio": {"id": "studio", "name": "Studio Pack", "tokens": 60, "price": 34.99, "profit": 24.19},
}


# ===================================================================
# Ledger Helpers
# ===================================================================

def estimate_profit(amount: float) -> float:
    """Net after Stripe fees (2.9% + 0.30) and an 18% tax/overhead share."""
    stripe_fee = amount * 0.029 + 0.30
    return round((amount - stripe_fee) * 0.82, 2)


async def consume_token(db: AsyncSession, user_id: uuid.UUID) -> Optional[int]:
    """
    Atomically spends one token. Returns the new balance, or None when the
    user had no tokens left.
    """
    result = await db.execute(
        update(User)
        .where(User.id == user_id, User.tokens > 0)
        .values(tokens=User.tokens - 1)
        .returning(User.tokens)
    )
    return result.scalar_one_or_none()


async def credit_payment_intent(db: AsyncSession, intent: Any, source: str) -> Tuple[Optional[User], bool]:
    """
    Credits the tokens bought with a succeeded PaymentIntent.

    Returns (user, credited). `credited` is False when the intent was
    already recorded, in which case nothing changes.
    """
    intent_id = intent.id
    existing = await db.scalar(
        select(TokenTransaction.id).where(TokenTransaction.stripe_payment_intent_id == intent_id)
    )

    metadata = intent.metadata or {}
    try:
        user_id = uuid.UUID(str(metadata.get("userId")))
        tokens = int(metadata.get("tokens"))
    except (TypeError, ValueError):
        log.error(f"PaymentIntent {intent_id} has invalid metadata: {metadata}")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Payment metadata is invalid")

    user = await db.get(User, user_id)
    if user is None:
        log.error(f"PaymentIntent {intent_id} references unknown user {user_id}")
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")

    if existing is not None:
        log.info(f"PaymentIntent {intent_id} already processed ({source}).")
        return user, False

    amount = (intent.amount or 0) / 100
    methods = getattr(intent, "payment_method_types", None) or ["card"]
    try:
        db.add(
            TokenTransaction(
                user_id=user.id,
                type="purchase",
                tier_id=metadata.get("tierId"),
                tokens=tokens,
                amount=amount,
                currency=CURRENCY,
                status="completed",
                stripe_payment_intent_id=intent_id,
                payment_method=methods[0],
                profit=estimate_profit(amount),
            )
        )
        await db.execute(
            update(User)
            .where(User.id == user.id)
            .values(
                tokens=User.tokens + tokens,
                total_spent=User.total_spent + amount,
                last_token_purchase=datetime.now(timezone.utc),
            )
        )
        await db.commit()
    except IntegrityError:
        # A concurrent confirm/webhook recorded the same intent first.
        await db.rollback()
        log.info(f"PaymentIntent {intent_id} credited concurrently ({source}).")
        return user, False

    await db.refresh(user)
    log.info(f"Credited {tokens} tokens to {user.username} for {intent_id} ({source}).")
    return user, True


# ===================================================================
# User Endpoints
# ===================================================================

@router.get("/pricing")
async def get_pricing():
    return {
        "success": True,
        "currency": CURRENCY,
        "tiers": list(PRICING_TIERS.values()),
        "publishableKey": settings.STRIPE_PUBLISHABLE_KEY or None,
    }


@router.get("/user-tokens")
async def get_user_tokens(current_user: User = Depends(get_current_user)):
    return {
        "success": True,
        "tokens": UNLIMITED_TOKENS if current_user.has_unlimited_tokens else current_user.tokens,
        "isAdmin": bool(current_user.is_admin),
        "totalSpent": current_user.total_spent or 0.0,
    }


@router.post("/create-payment-intent")
async def create_payment_intent(
    body: CreatePaymentIntentRequest, current_user: User = Depends(get_current_user)
):
    tier = PRICING_TIERS.get(body.tier_id or "")
    if tier is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid pricing tier")

    amount_cents = int(round(tier["price"] * 100))
    try:
        intent = stripe.PaymentIntent.create(
            amount=amount_cents,
            currency=CURRENCY,
            automatic_payment_methods={"enabled": True},
            metadata={
                "userId": str(current_user.id),
                "userEmail": current_user.email,
                "tierId": tier["id"],
                "tokens": str(tier["tokens"]),
            },
            description=f"{tier['name']} - {tier['tokens']} tokens",
        )
    except stripe.error.StripeError as e:
        log.error(f"Stripe PaymentIntent creation failed for {current_user.username}: {e}")
        raise HTTPException(status_code=500, detail="Failed to create payment intent")

    log.info(f"PaymentIntent {intent.id} created for {current_user.username} ({tier['id']}).")
    return {
        "success": True,
        "clientSecret": intent.client_secret,
        "amount": amount_cents,
        "tokens": tier["tokens"],
        "tierId": tier["id"],
    }


@router.post("/confirm-payment")
async def confirm_payment(
    body: ConfirmPaymentRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Credits a succeeded PaymentIntent. Safe to call repeatedly."""
    if not body.payment_intent_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Payment intent ID is required")

    try:
        intent = stripe.PaymentIntent.retrieve(body.payment_intent_id)
    except stripe.error.StripeError as e:
        log.error(f"Failed to retrieve PaymentIntent {body.payment_intent_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to verify payment")

    if intent.status != "succeeded":
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Payment not completed")
    if str((intent.metadata or {}).get("userId")) != str(current_user.id):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Payment does not belong to this user")

    try:
        user, credited = await credit_payment_intent(db, intent, source="confirm-payment")
    except SQLAlchemyError:
        await db.rollback()
        log.error(f"Database error confirming {body.payment_intent_id}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to credit tokens")

    return {
        "success": True,
        "message": "Tokens added successfully" if credited else "Payment already processed",
        "alreadyProcessed": not credited,
        "tokensAdded": int((intent.metadata or {}).get("tokens", 0)) if credited else 0,
        "tokens": user.tokens,
    }


@router.post("/consume-token")
async def consume_token_endpoint(
    body: Optional[ConsumeTokenRequest] = None,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Spends one token for a generation. Admins are never charged."""
    options = body or ConsumeTokenRequest()
    if current_user.has_unlimited_tokens:
        return {"success": True, "tokensRemaining": UNLIMITED_TOKENS, "unlimited": True}

    try:
        remaining = await consume_token(db, current_user.id)
        if remaining is None:
            await db.rollback()
            return JSONResponse(
                status_code=status.HTTP_402_PAYMENT_REQUIRED,
                content={"error": "Insufficient tokens", "tokensRemaining": 0},
            )
        db.add(TokenUsage(user_id=current_user.id, action=options.action, task_id=options.task_id))
        await db.commit()
    except SQLAlchemyError:
        await db.rollback()
        log.error(f"Failed to consume token for {current_user.username}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to consume token")

    log.info(f"{current_user.username} consumed a token ({remaining} left).")
    return {"success": True, "tokensRemaining": remaining}


@router.get("/transactions")
async def list_transactions(current_user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    result = await db.execute(
        select(TokenTransaction)
        .where(TokenTransaction.user_id == current_user.id)
        .order_by(TokenTransaction.date.desc())
        .limit(50)
    )
    return {
        "success": True,
        "transactions": [t.to_dict() for t in result.scalars().all()],
        "totalSpent": current_user.total_spent or 0.0,
    }


# ===================================================================
# Stripe Webhook
# ===================================================================

@router.post("/stripe-webhook")
async def stripe_webhook(request: Request, db: AsyncSession = Depends(get_db)):
    if not settings.STRIPE_WEBHOOK_SECRET:
        log.error("Stripe webhook secret missing.")
        raise HTTPException(status_code=500, detail="Webhook secret missing")

    payload = await request.body()
    sig_header = request.headers.get("stripe-signature", "")
    try:
        event = stripe.Webhook.construct_event(payload, sig_header, settings.STRIPE_WEBHOOK_SECRET)
    except ValueError:
        log.warning("Stripe hook invalid payload.")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid payload")
    except stripe.error.SignatureVerificationError:
        log.warning("Stripe hook invalid signature.")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid signature")

    intent = event.data.object
    if event.type == "payment_intent.succeeded":
        user, credited = await credit_payment_intent(db, intent, source="webhook")
        return {"received": True, "credited": credited}
    elif event.type == "payment_intent.payment_failed":
        error = getattr(intent, "last_payment_error", None)
        message = getattr(error, "message", None) if error else None
        log.warning(f"PaymentIntent {intent.id} failed: {message or 'Unknown Stripe failure'}")
    else:
        log.info(f"Received unhandled Stripe event type: {event.type}")

    return {"received": True}


# ===================================================================
# Admin Endpoints
# ===================================================================

@router.post("/admin/grant-tokens")
async def grant_tokens(
    body: GrantTokensRequest,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    if body.user_id:
        user = await db.get(User, parse_uuid(body.user_id, "Invalid user id"))
    elif body.email:
        user = await User.find_by_email(db, body.email)
    else:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="userId or email is required")
    if user is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")

    db.add(
        TokenTransaction(
            user_id=user.id,
            type="grant",
            tokens=body.tokens,
            amount=0.0,
            status="completed",
            payment_method="admin_grant",
            reason=body.reason or "Admin grant",
            granted_by=admin.id,
        )
    )
    await db.execute(update(User).where(User.id == user.id).values(tokens=User.tokens + body.tokens))
    try:
        await db.commit()
    except SQLAlchemyError:
        await db.rollback()
        log.error(f"Failed to grant tokens to {user.id}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to grant tokens")

    await db.refresh(user)
    log.info(f"Admin {admin.username} granted {body.tokens} tokens to {user.username}.")
    return {
        "success": True,
        "message": f"Granted {body.tokens} tokens to {user.username}",
        "user": {"id": str(user.id), "username": user.username, "tokens": user.tokens},
    }


@router.get("/admin/analytics")
async def payment_analytics(admin: User = Depends(require_admin), db: AsyncSession = Depends(get_db)):
    purchases = (
        select(
            TokenTransaction.tier_id,
            func.count(TokenTransaction.id).label("purchases"),
            func.coalesce(func.sum(TokenTransaction.amount), 0.0).label("revenue"),
            func.coalesce(func.sum(TokenTransaction.profit), 0.0).label("profit"),
            func.coalesce(func.sum(TokenTransaction.tokens), 0).label("tokens"),
        )
        .where(TokenTransaction.type == "purchase", TokenTransaction.status == "completed")
        .group_by(TokenTransaction.tier_id)
    )
    rows = (await db.execute(purchases)).all()

    by_tier = {
        row.tier_id or "unknown": {
            "purchases": row.purchases,
            "revenue": round(row.revenue, 2),
            "profit": round(row.profit, 2),
            "tokens": row.tokens,
        }
        for row in rows
    }
    tokens_consumed = await db.scalar(select(func.count(TokenUsage.id)))
    paying_users = await db.scalar(
        select(func.count(func.distinct(TokenTransaction.user_id))).where(TokenTransaction.type == "purchase")
    )

    total_revenue = round(sum(t["revenue"] for t in by_tier.values()), 2)
    return {
        "success": True,
        "analytics": {
            "totalRevenue": total_revenue,
            "totalProfit": round(sum(t["profit"] for t in by_tier.values()), 2),
            "tokensSold": sum(t["tokens"] for t in by_tier.values()),
            "purchaseCount": sum(t["purchases"] for t in by_tier.values()),
            "tokensConsumed": tokens_consumed or 0,
            "generationCost": round((tokens_consumed or 0) * COST_PER_GENERATION, 2),
            "payingUsers": paying_users or 0,
            "byTier": by_tier,
        },
    }
