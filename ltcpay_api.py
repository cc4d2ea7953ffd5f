from decimal import Decimal
from typing import Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from ltcpay_node import (
    CONFIG,
    LOG,
    AddressCollisionError,
    ChainUnavailableError,
    ElectrumError,
    PaymentNotFound,
    SettlementEngine,
    ValidationError,
    coins_to_sats,
    sats_to_coins,
)


class PaymentCreate(BaseModel):
    amount: Optional[Decimal] = None  # coins, up to 8 decimals
    amount_sats: Optional[int] = None


def create_app(engine: SettlementEngine) -> FastAPI:
    app = FastAPI(title="ltcpay node", version=CONFIG["VERSION"])
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    service = engine.service

    @app.post("/payments")
    def create_payment(body: PaymentCreate):
        try:
            if body.amount_sats is not None:
                amount_sats = body.amount_sats
            elif body.amount is not None:
                amount_sats = coins_to_sats(body.amount)
            else:
                raise ValidationError("amount is required")
            created = service.create_payment(amount_sats)
        except ValidationError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except AddressCollisionError as e:
            LOG.error(f"Address collision while creating payment: {e}")
            raise HTTPException(status_code=500, detail="could not allocate a payment address")
        created["amount"] = sats_to_coins(created["amount_sats"])
        return created

    @app.get("/payments/{payment_id}")
    async def get_payment(payment_id: str):
        try:
            view = await service.get_payment_view(payment_id)
        except PaymentNotFound:
            raise HTTPException(status_code=404, detail="payment not found")
        except (ChainUnavailableError, ElectrumError) as e:
            LOG.warning(f"Payment {payment_id}: chain lookup failed: {e}")
            raise HTTPException(status_code=502, detail="blockchain backend unavailable")
        view["amount"] = sats_to_coins(view["requested_amount"])
        view["received"] = sats_to_coins(view["received_amount"])
        return view

    return app
