from __future__ import annotations
from contextlib import asynccontextmanager
from typing import Optional, Union

import httpx
import orjson
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import ORJSONResponse
from pydantic import BaseModel, Field
from starlette.middleware.sessions import SessionMiddleware

from .config import Settings, SettingsStore
from .errors import (
    CapacityError, PersistenceError, ProvisioningError, ValidationError,
)
from .gateway import SIGNATURE_HEADER, MockPay, PaymentAdapter, sign
from .handoff import Handoff
from .helpers import ct_equal, from_cents, to_cents, to_iso
from .infra.log import configure_logging, get_logger
from .infra.sql import make_async_engine, unit_of_work
from .infra.timings import aggregates, timeit
from .model.activation import CodeEdit, CustomerInput, SaleDetails
from .model.card import CardInput
from .model.db import create_schema
from .model.payment import CheckoutDetails
from .notify import NotificationQueue, Notifier, LogNotifier, build_notifier
from .provisioning import Coordinator
from .webhooks import WebhookGuard

log = get_logger("server")


# ----------------------------
# Services
# ----------------------------
class Services:
    """Everything the endpoints need, built from one SettingsStore.

    `start()`/`stop()` run in the app lifespan; tests
    that drive the app without a lifespan call them directly.
    """

    def __init__(self, settings: SettingsStore, *,
                 http: Optional[httpx.AsyncClient] = None,
                 notifier: Optional[Notifier] = None,
                 adapter: Optional[PaymentAdapter] = None) -> None:
        s = settings.current
        self.settings = settings
        self.engine, SessionAsync, gated = make_async_engine(s.database_url)
        self.unit = unit_of_work(SessionAsync, gated)
        self.adapter = adapter or MockPay()
        self.http = http
        self._own_http = http is None
        self._fixed_notifier = notifier is not None
        self.notifications = NotificationQueue(notifier or LogNotifier())
        self.handoff = Handoff(s.session_secret)
        self.coordinator = Coordinator(
            self.unit,
            settings,
            self.notifications,
            self.handoff,
            self.adapter,
        )
        self.webhooks = WebhookGuard(
            self.unit, self.coordinator, self.adapter, settings
        )

    async def start(self) -> None:
        s = self.settings.current
        configure_logging(s.log_level, s.log_format)
        async with self.engine.begin() as conn:
            await create_schema(conn)
        if self.http is None:
            self.http = httpx.AsyncClient(
                timeout=5.0,
                limits=httpx.Limits(
                    max_connections=512, max_keepalive_connections=512
                ),
            )
        self._apply(s)
        log.info("cardpass_started", database=self.engine.url.drivername)

    def _apply(self, s: Settings) -> None:
        if not self._fixed_notifier:
            self.notifications.notifier = build_notifier(s, self.http)

    def reload(self) -> Settings:
        s = self.settings.reload()
        configure_logging(s.log_level, s.log_format)
        self._apply(s)
        log.info("settings_reloaded")
        return s

    async def stop(self) -> None:
        await self.notifications.drain()
        if self.http is not None and self._own_http:
            await self.http.aclose()
            self.http = None
        await self.engine.dispose()


def services(request: Request) -> Services:
    return request.app.state.services


# ----------------------------
# Request bodies
# ----------------------------
class CustomerIn(BaseModel):
    name: str = ""
    email: str = ""
    phone: Optional[str] = None
    document: Optional[str] = None


class CheckoutIn(BaseModel):
    plan: str = ""
    payment_method: str = ""
    customer: CustomerIn = Field(default_factory=CustomerIn)


class RedeemIn(BaseModel):
    name: str = ""
    email: Optional[str] = None
    phone: Optional[str] = None
    accept_terms: bool = False


class ProfileIn(BaseModel):
    name: str = ""
    email: Optional[str] = None
    phone: Optional[str] = None
    whatsapp: Optional[str] = None
    job_title: Optional[str] = None
    company: Optional[str] = None
    website: Optional[str] = None
    bio: Optional[str] = None
    color_theme: str = "blue"

    def to_input(self) -> CardInput:
        return CardInput(**self.model_dump())


class CardIn(BaseModel):
    handoff_token: str = ""
    profile: ProfileIn = Field(default_factory=ProfileIn)


class ActivateCardIn(RedeemIn):
    profile: ProfileIn = Field(default_factory=ProfileIn)


class BulkIn(BaseModel):
    quantity: int = 0
    plan: str = "basic"


class SaleIn(BaseModel):
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    amount: Optional[Union[str, float]] = None
    payment_method: Optional[str] = None
    notes: Optional[str] = None

    def to_sale(self) -> SaleDetails:
        return SaleDetails(
            customer_name=self.customer_name,
            customer_email=self.customer_email,
            customer_phone=self.customer_phone,
            amount_cents=None if self.amount is None else to_cents(self.amount),
            payment_method=self.payment_method,
            notes=self.notes,
        )


class CodeEditIn(SaleIn):
    plan: Optional[str] = None

    def to_edit(self) -> CodeEdit:
        sale = self.to_sale()
        return CodeEdit(
            customer_name=sale.customer_name,
            customer_email=sale.customer_email,
            customer_phone=sale.customer_phone,
            plan=self.plan,
            amount_cents=sale.amount_cents,
            payment_method=sale.payment_method,
            notes=sale.notes,
        )


class ManualIn(SaleIn):
    quantity: int = 1
    plan: str = "basic"


class LoginIn(BaseModel):
    username: str = ""
    password: str = ""


class EmitIn(BaseModel):
    status: str = "approved"


# ----------------------------
# Views
# ----------------------------
def _money(cents: Optional[int]) -> Optional[str]:
    amount = from_cents(cents)
    return None if amount is None else str(amount)


def payment_view(p) -> dict:
    return {
        "payment_id": p.payment_id,
        "status": p.status,
        "plan": p.plan,
        "amount": _money(p.amount_cents),
        "currency": p.currency,
        "payment_method": p.payment_method,
        "customer_name": p.customer_name,
        "customer_email": p.customer_email,
        "pix_code": p.pix_code,
        "expires_at": to_iso(p.expires_at),
        "activation_code": p.activation_code,
        "artifact_id": p.artifact_id,
        "created_at": to_iso(p.created_at),
        "paid_at": to_iso(p.paid_at),
    }


def code_view(c) -> dict:
    return {
        "code": c.code,
        "status": c.status,
        "plan": c.plan,
        "amount": _money(c.amount_cents),
        "customer_name": c.customer_name,
        "customer_email": c.customer_email,
        "payment_method": c.payment_method,
        "payment_id": c.payment_id,
        "created_at": to_iso(c.created_at),
        "sold_at": to_iso(c.sold_at),
        "activated_at": to_iso(c.activated_at),
    }


def card_view(card) -> dict:
    return {
        "id": card.id,
        "code": card.code,
        "slug": card.slug,
        "activation_code": card.activation_code,
        "plan": card.plan,
        "name": card.name,
        "email": card.email,
        "phone": card.phone,
        "whatsapp": card.whatsapp,
        "job_title": card.job_title,
        "company": card.company,
        "website": card.website,
        "bio": card.bio,
        "color_theme": card.color_theme,
        "created_at": to_iso(card.created_at),
    }


def event_view(e) -> dict:
    return {
        "id": e.id,
        "payment_id": e.payment_id,
        "reported_status": e.reported_status,
        "outcome": e.outcome,
        "review_reason": e.review_reason,
        "received_at": to_iso(e.received_at),
    }


# ----------------------------
# Helpers
# ----------------------------
def is_admin(request: Request) -> bool:
    return bool(request.session.get("admin_user"))


def require_admin(request: Request) -> None:
    if not is_admin(request):
        raise HTTPException(status_code=401, detail="admin login required")


def _customer(body: RedeemIn) -> CustomerInput:
    if not body.accept_terms:
        raise ValidationError("you must accept the terms of use")
    return CustomerInput(
        name=body.name.strip(),
        email=(body.email or "").strip() or None,
        phone=(body.phone or "").strip() or None,
    )


# ----------------------------
# App
# ----------------------------
def create_app(settings: Union[Settings, SettingsStore, None] = None, *,
               http: Optional[httpx.AsyncClient] = None,
               notifier: Optional[Notifier] = None) -> FastAPI:
    if settings is None:
        store = SettingsStore()
    elif isinstance(settings, Settings):
        store = SettingsStore(settings)
    else:
        store = settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await app.state.services.start()
        try:
            yield
        finally:
            await app.state.services.stop()

    app = FastAPI(
        title="cardpass",
        default_response_class=ORJSONResponse,
        lifespan=lifespan,
    )
    app.add_middleware(
        SessionMiddleware, secret_key=store.current.session_secret
    )
    app.state.services = Services(store, http=http, notifier=notifier)

    @app.exception_handler(ProvisioningError)
    async def _provisioning_error(request: Request, exc: ProvisioningError):
        if isinstance(exc, (PersistenceError, CapacityError)):
            log.error(
                "request_failed",
                path=request.url.path,
                kind=exc.kind,
                detail=getattr(exc, "detail", None) or exc.message,
            )
        return ORJSONResponse(
            {"status": "error", "error": exc.kind, "message": exc.user_message},
            status_code=exc.status_code,
        )

    # ----------------------------
    # Checkout & payments
    # ----------------------------
    @app.get("/api/plans")
    async def list_plans(svc: Services = Depends(services)):
        s = svc.settings.current
        return {
            "currency": s.currency,
            "plans": [
                {"key": p.key, "name": p.name, "price": _money(p.price_cents)}
                for p in s.plans.values()
            ],
        }

    @app.post("/api/checkout")
    async def create_checkout(body: CheckoutIn,
                              svc: Services = Depends(services)):
        result = await svc.coordinator.open_payment(CheckoutDetails(
            plan=body.plan,
            payment_method=body.payment_method,
            customer_name=body.customer.name,
            customer_email=body.customer.email,
            customer_phone=body.customer.phone,
            customer_document=body.customer.document,
        ))
        out = payment_view(result.payment)
        out["activation_code"] = result.activation_code or out["activation_code"]
        return out

    @app.get("/api/payments/{payment_id}")
    async def get_payment_status(payment_id: str,
                                 svc: Services = Depends(services)):
        return payment_view(await svc.coordinator.payment_status(payment_id))

    # ----------------------------
    # Webhook endpoint
    # ----------------------------
    @app.post("/payments/webhook")
    async def payments_webhook(request: Request,
                               svc: Services = Depends(services)):
        payload = await request.body()
        try:
            async with timeit("webhooks.ingest"):
                ack = await svc.webhooks.ingest(payload, request.headers)
        except ValidationError:
            raise
        except ProvisioningError as e:
            log.error(
                "webhook_failed",
                kind=e.kind,
                detail=getattr(e, "detail", None) or e.message,
            )
            return ORJSONResponse({"status": "error"}, status_code=500)
        except Exception:
            log.exception("webhook_failed", kind="internal")
            return ORJSONResponse({"status": "error"}, status_code=500)
        return ack.body

    # ----------------------------
    # MockPay
    # ----------------------------
    @app.post("/mockpay/{payment_id}/emit")
    async def mockpay_emit(payment_id: str, body: EmitIn,
                           svc: Services = Depends(services)):
        payment = await svc.coordinator.payment_status(payment_id)
        event = svc.adapter.build_event(
            payment.payment_id, body.status, payment.amount_cents,
            payment.currency,
        )
        s = svc.settings.current
        payload = orjson.dumps(event)
        headers = {"content-type": "application/json"}
        if s.webhook_secret:
            headers[SIGNATURE_HEADER] = sign(s.webhook_secret, payload)
        try:
            r = await svc.http.post(
                s.mock_webhook_url, content=payload, headers=headers
            )
        except httpx.HTTPError as e:
            # the operator can emit again
            log.warning(
                "mockpay_delivery_failed", payment_id=payment_id, error=str(e)
            )
            return {"delivered": False, "event_id": event["event_id"]}
        return {
            "delivered": r.is_success,
            "status_code": r.status_code,
            "event_id": event["event_id"],
        }

    # ----------------------------
    # Codes, redemption & cards
    # ----------------------------
    @app.get("/api/codes/{code}")
    async def lookup_code(code: str, svc: Services = Depends(services)):
        row = await svc.coordinator.lookup_code(code)
        return {
            "code": row.code,
            "status": row.status,
            "plan": row.plan,
            "customer_name": row.customer_name,
            "customer_email": row.customer_email,
        }

    @app.post("/api/codes/{code}/redeem")
    async def redeem_code(code: str, body: RedeemIn,
                          svc: Services = Depends(services)):
        result = await svc.coordinator.redeem_code(code, _customer(body))
        return {
            "code": result.code,
            "status": "activated",
            "plan": result.plan,
            "activated_at": to_iso(result.activated_at),
            "handoff_token": result.handoff_token,
            "next": "/api/cards",
        }

    @app.post("/api/cards")
    async def create_card(body: CardIn, svc: Services = Depends(services)):
        result = await svc.coordinator.create_card(
            body.handoff_token, body.profile.to_input()
        )
        return ORJSONResponse(
            {"created": result.created, "card": card_view(result.card)},
            status_code=201 if result.created else 200,
        )

    @app.post("/api/codes/{code}/activate-card")
    async def activate_card(code: str, body: ActivateCardIn,
                            svc: Services = Depends(services)):
        result = await svc.coordinator.redeem_and_create(
            code, _customer(body), body.profile.to_input()
        )
        return ORJSONResponse(
            {"created": True, "card": card_view(result.card)},
            status_code=201,
        )

    # ----------------------------
    # Admin
    # ----------------------------
    @app.post("/api/admin/login")
    async def admin_login(body: LoginIn, request: Request,
                          svc: Services = Depends(services)):
        s = svc.settings.current
        ok_user = ct_equal(body.username.strip(), s.admin_username)
        ok_pass = ct_equal(body.password, s.admin_password)
        if not (ok_user and ok_pass):
            log.warning("admin_login_failed", username=body.username.strip())
            raise HTTPException(status_code=401, detail="invalid credentials")
        request.session["admin_user"] = body.username.strip()
        return {"status": "ok"}

    @app.post("/api/admin/logout")
    async def admin_logout(request: Request):
        request.session.clear()
        return {"status": "ok"}

    admin = [Depends(require_admin)]

    @app.get("/api/admin/payments", dependencies=admin)
    async def admin_payments(status: Optional[str] = None, limit: int = 200,
                             svc: Services = Depends(services)):
        items = await svc.coordinator.list_payments(status, limit)
        return {"items": [payment_view(p) for p in items], "limit": limit}

    @app.get("/api/admin/payments/{payment_id}", dependencies=admin)
    async def admin_payment_detail(payment_id: str,
                                   svc: Services = Depends(services)):
        payment, events = await svc.coordinator.payment_history(payment_id)
        out = payment_view(payment)
        out["webhook_events"] = [event_view(e) for e in events]
        return out

    @app.post("/api/admin/payments/{payment_id}/confirm", dependencies=admin)
    async def admin_confirm(payment_id: str,
                            svc: Services = Depends(services)):
        issued = await svc.coordinator.confirm_payment(
            payment_id, {"manually_confirmed": True}
        )
        return {
            "payment_id": issued.payment_id,
            "status": "paid",
            "activation_code": issued.code,
            "created": issued.created,
        }

    @app.post("/api/admin/payments/{payment_id}/cancel", dependencies=admin)
    async def admin_cancel(payment_id: str,
                           svc: Services = Depends(services)):
        payment = await svc.coordinator.fail_payment(
            payment_id, {"manually_cancelled": True}
        )
        return payment_view(payment)

    @app.post("/api/admin/payments/{payment_id}/refund", dependencies=admin)
    async def admin_refund(payment_id: str,
                           svc: Services = Depends(services)):
        result = await svc.coordinator.refund_payment(
            payment_id, {"manually_refunded": True}
        )
        out = payment_view(result.payment)
        out.update(code_status=result.code_status,
                   needs_review=result.needs_review)
        return out

    @app.post("/api/admin/codes/bulk", dependencies=admin)
    async def admin_codes_bulk(body: BulkIn,
                               svc: Services = Depends(services)):
        codes = await svc.coordinator.issue_bulk(body.quantity, body.plan)
        return {"quantity": len(codes), "plan": body.plan, "codes": codes}

    @app.post("/api/admin/codes", dependencies=admin)
    async def admin_codes_manual(body: ManualIn,
                                 svc: Services = Depends(services)):
        codes = await svc.coordinator.issue_manual(
            body.quantity, body.plan, body.to_sale()
        )
        return {"quantity": len(codes), "plan": body.plan, "codes": codes}

    @app.post("/api/admin/codes/{code}/sell", dependencies=admin)
    async def admin_code_sell(code: str, body: SaleIn,
                              svc: Services = Depends(services)):
        return code_view(await svc.coordinator.sell_code(code, body.to_sale()))

    @app.post("/api/admin/codes/{code}/expire", dependencies=admin)
    async def admin_code_expire(code: str, svc: Services = Depends(services)):
        return code_view(await svc.coordinator.expire_code(code))

    @app.put("/api/admin/codes/{code}", dependencies=admin)
    async def admin_code_edit(code: str, body: CodeEditIn,
                              svc: Services = Depends(services)):
        return code_view(await svc.coordinator.edit_code(code, body.to_edit()))

    @app.delete("/api/admin/codes/{code}", dependencies=admin)
    async def admin_code_delete(code: str, svc: Services = Depends(services)):
        await svc.coordinator.delete_code(code)
        return {"status": "ok", "deleted": code.strip().upper()}

    @app.get("/api/admin/codes", dependencies=admin)
    async def admin_codes(status: Optional[str] = None, limit: int = 200,
                          svc: Services = Depends(services)):
        items = await svc.coordinator.list_codes(status, limit)
        return {"items": [code_view(c) for c in items], "limit": limit}

    @app.get("/api/admin/stats", dependencies=admin)
    async def admin_stats(svc: Services = Depends(services)):
        stats = await svc.coordinator.stats()
        stats["revenue"] = _money(stats.pop("revenue_cents"))
        return stats

    @app.get("/api/admin/reconciliation", dependencies=admin)
    async def admin_reconciliation(svc: Services = Depends(services)):
        r = await svc.coordinator.reconciliation()
        return {
            "activated_without_card": [
                code_view(c) for c in r["activated_without_card"]
            ],
            "flagged_webhooks": [event_view(e) for e in r["flagged_webhooks"]],
            "refunded_after_activation": [
                payment_view(p) for p in r["refunded_after_activation"]
            ],
            "unprocessed_webhooks": [
                event_view(e) for e in r["unprocessed_webhooks"]
            ],
        }

    @app.get("/api/admin/timings", dependencies=admin)
    async def admin_timings():
        return aggregates()

    @app.post("/api/admin/settings/reload", dependencies=admin)
    async def admin_settings_reload(svc: Services = Depends(services)):
        s = svc.reload()
        return {
            "status": "ok",
            "plans": sorted(s.plans),
            "webhook_signed": bool(s.webhook_secret),
            "notify": "http" if s.notify_url else "log",
        }

    return app
