# backend/app/services/mercadopago.py
"""
Minimal Mercado Pago REST client (requests).

Only the three calls the store needs: create a Checkout Pro preference, read
a payment, verify a webhook signature. Retries are bounded and the sleep is
injectable so tests never wait.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import random
import secrets
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import requests

from backend.app.config import settings
from backend.app.errors import UpstreamError
from backend.app.utils.security import mask_id

log = logging.getLogger(__name__)

STATUS_MAPPING = {
    "approved": "approved",
    "pending": "pending",
    "in_process": "pending",
    "in_mediation": "pending",
    "rejected": "failed",
    "cancelled": "failed",
    "refunded": "failed",
    "charged_back": "failed",
}

PREFERENCE_RETRIES = 2
PAYMENT_RETRIES = 3


class MercadoPagoError(UpstreamError):
    default_message = "Error comunicándose con Mercado Pago"

    def __init__(self, message: Optional[str] = None, *, status: Optional[int] = None, **kw):
        super().__init__(message, **kw)
        self.status = status


def map_status(mp_status: Optional[str]) -> str:
    """Gateway status -> internal order status; unknown values stay pending."""
    return STATUS_MAPPING.get((mp_status or "").lower(), "pending")


@dataclass
class Preference:
    id: str
    init_point: str
    sandbox_init_point: str

    def redirect_url(self, production: bool) -> str:
        return self.init_point if production else self.sandbox_init_point


def _headers(idempotency_key: Optional[str] = None) -> Dict[str, str]:
    token = settings.MP_ACCESS_TOKEN
    if not token:
        raise MercadoPagoError("MP_ACCESS_TOKEN no configurado")
    headers = {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}
    if idempotency_key:
        headers["X-Idempotency-Key"] = idempotency_key
    return headers


def _is_retryable(status: Optional[int]) -> bool:
    return status is None or status == 429 or status >= 500


def create_preference(
    order_id: str,
    items: List[Dict[str, Any]],
    payer: Dict[str, Any],
    *,
    sleep: Callable[[float], None] = time.sleep,
) -> Preference:
    """
    POST /checkout/preferences. ``items`` are ``{title, quantity, unit_price}``
    with unit_price in pesos. Retries PREFERENCE_RETRIES times with
    min(1s * 2^n, 5s) between attempts; one idempotency key per order.
    """
    base = settings.APP_BASE_URL.rstrip("/")
    body: Dict[str, Any] = {
        "items": [
            {
                "title": it["title"],
                "quantity": int(it["quantity"]),
                "unit_price": float(it["unit_price"]),
                "currency_id": it.get("currency_id", settings.CURRENCY),
            }
            for it in items
        ],
        "payer": {k: v for k, v in payer.items() if v},
        "back_urls": {
            "success": f"{base}/f/success",
            "failure": f"{base}/f/error",
            "pending": f"{base}/f/pending",
        },
        "external_reference": order_id,
    }
    if base.startswith("https://"):
        # MP rejects auto_return and notification_url pointing at plain http/localhost
        body["auto_return"] = "approved"
        body["notification_url"] = f"{base}{settings.MP_NOTIFICATION_PATH}"

    idempotency_key = secrets.token_hex(16)
    url = f"{settings.MP_API_URL.rstrip('/')}/checkout/preferences"
    last_error: Optional[Exception] = None

    for attempt in range(PREFERENCE_RETRIES + 1):
        try:
            resp = requests.post(url, json=body, headers=_headers(idempotency_key), timeout=settings.MP_TIMEOUT_S)
            if resp.status_code >= 400:
                raise MercadoPagoError(f"MP respondió {resp.status_code}", status=resp.status_code)
            data = resp.json()
            if not data.get("id") or not data.get("init_point") or not data.get("sandbox_init_point"):
                raise MercadoPagoError("Respuesta incompleta de Mercado Pago")
            log.info(f"[mp] preference created order={mask_id(order_id)} attempt={attempt + 1}")
            return Preference(data["id"], data["init_point"], data["sandbox_init_point"])
        except (requests.RequestException, ValueError, MercadoPagoError) as e:
            last_error = e
            log.warning(f"[mp] create_preference attempt {attempt + 1} failed order={mask_id(order_id)}: {e}")
            if attempt < PREFERENCE_RETRIES:
                sleep(min(1.0 * 2**attempt, 5.0))

    raise MercadoPagoError("Error al crear preferencia de pago después de reintentos") from last_error


def get_payment(
    payment_id: str,
    *,
    sleep: Callable[[float], None] = time.sleep,
) -> Dict[str, Any]:
    """
    GET /v1/payments/{id}. Retries PAYMENT_RETRIES times on 429, 5xx and
    connection errors (jittered backoff, capped at 10 s); other 4xx fail fast.
    """
    url = f"{settings.MP_API_URL.rstrip('/')}/v1/payments/{payment_id}"
    last_error: Optional[Exception] = None

    for attempt in range(PAYMENT_RETRIES + 1):
        status: Optional[int] = None
        try:
            resp = requests.get(url, headers=_headers(), timeout=settings.MP_TIMEOUT_S)
            status = resp.status_code
            if status >= 400:
                raise MercadoPagoError(f"MP respondió {status}", status=status)
            data = resp.json()
            if not data:
                raise MercadoPagoError("Pago no encontrado en Mercado Pago", status=404)
            return data
        except (requests.RequestException, ValueError) as e:
            last_error = e
        except MercadoPagoError as e:
            last_error = e
            status = e.status
        log.warning(f"[mp] get_payment attempt {attempt + 1} failed payment={mask_id(payment_id)}: {last_error}")
        if attempt < PAYMENT_RETRIES and _is_retryable(status):
            sleep(min(1.0 * 2**attempt + random.random(), 10.0))
            continue
        break

    raise MercadoPagoError(
        f"Error al obtener información del pago después de {attempt + 1} intentos",
        status=getattr(last_error, "status", None),
    ) from last_error


def _parse_signature(signature: str) -> Dict[str, str]:
    parts: Dict[str, str] = {}
    for chunk in signature.split(","):
        if "=" in chunk:
            k, v = chunk.split("=", 1)
            parts[k.strip()] = v.strip()
    return parts


def verify_webhook_signature(
    body: bytes,
    signature: Optional[str],
    secret: Optional[str] = None,
    *,
    data_id: Optional[str] = None,
    request_id: Optional[str] = None,
) -> bool:
    """
    Two accepted forms of the ``x-signature`` header:
      * ``v1=<hex>`` or ``<hex>``: HMAC-SHA256 of the raw body
      * ``ts=<ts>,v1=<hex>``: HMAC-SHA256 of ``id:<data.id>;request-id:<x-request-id>;ts:<ts>;``
    """
    secret = settings.MP_WEBHOOK_SECRET if secret is None else secret
    if not secret or not signature:
        return False
    key = secret.encode("utf-8")
    parts = _parse_signature(signature)

    if "ts" in parts and "v1" in parts:
        manifest = ""
        if data_id:
            manifest += f"id:{str(data_id).lower()};"
        if request_id:
            manifest += f"request-id:{request_id};"
        manifest += f"ts:{parts['ts']};"
        expected = hmac.new(key, manifest.encode("utf-8"), hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected, parts["v1"].lower())

    provided = parts.get("v1", signature.strip()).lower()
    expected = hmac.new(key, body or b"", hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, provided)
