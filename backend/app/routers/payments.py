# backend/app/routers/payments.py
from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from backend.app.config import settings
from backend.app.db import get_db
from backend.app.limiter import limiter
from backend.app.services import mercadopago as mp
from backend.app.services import payments
from backend.app.telemetry import telemetry
from backend.app.utils.security import mask_id

logger = logging.getLogger(__name__)

router = APIRouter()


def _payment_id(payload: Dict[str, Any], request: Request) -> Optional[str]:
    data = payload.get("data") or {}
    if isinstance(data, dict):
        pid = data.get("id") or data.get("payment_id")
        if pid:
            return str(pid)
    pid = request.query_params.get("data.id") or request.query_params.get("id")
    return str(pid) if pid else None


def _topic(payload: Dict[str, Any], request: Request) -> str:
    return str(
        payload.get("type")
        or payload.get("topic")
        or request.query_params.get("type")
        or request.query_params.get("topic")
        or ""
    )


@router.post("/api/payments/webhook")
@limiter.limit(settings.RATE_LIMIT_WEBHOOK)
async def webhook(request: Request, db: Session = Depends(get_db)):
    telemetry.increment("webhooks_total")
    body = await request.body()
    try:
        payload = json.loads(body or b"{}")
    except ValueError:
        payload = {}
    if not isinstance(payload, dict):
        payload = {}

    payment_id = _payment_id(payload, request)

    if settings.MP_WEBHOOK_SECRET:
        ok = mp.verify_webhook_signature(
            body,
            request.headers.get("x-signature"),
            data_id=payment_id,
            request_id=request.headers.get("x-request-id"),
        )
        if not ok:
            logger.warning("[payments] webhook signature rejected")
            return JSONResponse({"ok": False, "error": "Firma inválida"}, status_code=401)
    elif settings.is_production:
        logger.error("[payments] MP_WEBHOOK_SECRET missing in production; rejecting webhook")
        return JSONResponse({"ok": False, "error": "Firma inválida"}, status_code=401)
    else:
        logger.warning("[payments] MP_WEBHOOK_SECRET not set; skipping signature check")

    topic = _topic(payload, request)
    if topic and topic != "payment":
        return {"ok": True, "ignored": topic}
    if not payment_id:
        return {"ok": False, "message": "Notificación sin id de pago"}

    try:
        outcome = payments.process_payment_notification(db, payment_id)
    except mp.MercadoPagoError as e:
        if e.status == 404:
            # answered 200 so MP stops retrying an id it does not know
            logger.warning(f"[payments] payment={mask_id(payment_id)} not found at MP")
            return {"ok": False, "message": "Pago no encontrado en Mercado Pago"}
        telemetry.set_error(f"webhook payment={mask_id(payment_id)}: {e}")
        logger.error(f"[payments] gateway error for payment={mask_id(payment_id)}: {e}")
        return JSONResponse({"ok": False, "error": "Error consultando el pago"}, status_code=502)

    return {
        "ok": outcome.success,
        "message": outcome.message,
        "duplicate": outcome.duplicate,
        "status": outcome.status,
    }
