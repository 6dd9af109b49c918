"""
HTTP surface of the share ledger.

``/shares`` and ``/cofounder`` expose the same purchase flows for their share
class; webhooks and catalog administration live under ``/shares`` only.
"""
import json
import logging
import time
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, File, Form, Header, HTTPException, Request, UploadFile
from fastapi.responses import StreamingResponse

from common.circuit_breaker import get_all_circuit_breakers
from common.error_handling import BusinessLogicError, ErrorCodes, add_error_handlers
from common.schemas import (
    AdminDecisionRequest, CalculateRequest, CancelRequest, CardInitiateRequest, GrantRequest,
    InvoiceInitiateRequest, InvoiceToggle, OnchainInitiateRequest, OnchainVerifyRequest, RatioUpdate,
    ReverseRequest, TierPriceUpdate, WalletUpdate,
)
from common.security import InvalidCredentials, claims_from_authorization, is_admin
from common.tracing import share_ledger_tracer, tracing_middleware
from share_ledger_service.calculator import REASON_INSUFFICIENT_SUPPLY
from share_ledger_service.domain import (
    AdminDecision, Currency, MANUAL_RAILS, Rail, Rejected, SettlementSource, ShareClass, TxStatus,
    UserContext, parse_rail,
)
from share_ledger_service.errors import (
    InsufficientSupply, InvalidInput, InvalidSignature, PermissionDenied, TransactionNotFound,
)
from share_ledger_service.projector import public_info
from share_ledger_service.rails.card import verify_paystack_signature
from share_ledger_service.rails.invoice import verify_centiiv_signature
from share_ledger_service.rails.manual import rail_for_method
from share_ledger_service.rails.onchain import USDT_CONTRACT
from share_ledger_service.runtime import Runtime

logger = logging.getLogger(__name__)


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


async def current_user(authorization: Optional[str] = Header(None)) -> UserContext:
    try:
        claims = claims_from_authorization(authorization)
    except InvalidCredentials as e:
        raise HTTPException(401, str(e))
    return UserContext(user_id=str(claims["sub"]), email=claims.get("email"), name=claims.get("name"),
                       is_admin=is_admin(claims))


async def admin_user(user: UserContext = Depends(current_user)) -> UserContext:
    if not user.is_admin:
        raise PermissionDenied()
    return user


def parse_currency(value: str) -> Currency:
    try:
        return Currency(value.lower())
    except ValueError:
        raise InvalidInput("Currency must be naira or usdt", field="currency")


def parse_rail_param(value: str) -> Rail:
    try:
        return parse_rail(value)
    except ValueError:
        raise InvalidInput(f"Unknown payment method {value}", field="paymentMethod")


def settlement_response(result) -> dict:
    return {"success": result.status == TxStatus.COMPLETED, **result.to_dict()}


def share_router(share_class: ShareClass) -> APIRouter:
    router = APIRouter()

    @router.get("/info")
    async def info(runtime: Runtime = Depends(get_runtime)):
        cached = runtime.cache.get_cached_share_info(share_class.value) if runtime.cache else None
        if cached is not None:
            return {"success": True, **cached}
        data = public_info(runtime.engine.catalog(), share_class)
        if runtime.cache:
            runtime.cache.cache_share_info(share_class.value, data)
        return {"success": True, **data}

    @router.post("/calculate")
    async def calculate(body: CalculateRequest, runtime: Runtime = Depends(get_runtime)):
        quote = runtime.engine.quote(share_class, body.quantity, parse_currency(body.currency))
        if not quote.success:
            if quote.reason == REASON_INSUFFICIENT_SUPPLY:
                raise InsufficientSupply(context={"requested": body.quantity, "available": quote.available})
            raise InvalidInput(quote.reason, field="quantity")
        return {"success": True, "purchase_details": quote.model_dump(mode="json")}

    @router.get("/payment-config")
    async def payment_config(runtime: Runtime = Depends(get_runtime)):
        catalog = runtime.engine.catalog()
        rails = [r.value for r in runtime.engine.rails if r != Rail.ADMIN_GRANT]
        if not catalog.invoice_enabled and Rail.INVOICE.value in rails:
            rails.remove(Rail.INVOICE.value)
        return {
            "success": True,
            "company_wallet": catalog.company_wallet_address,
            "token_contract": USDT_CONTRACT,
            "network": "BSC",
            "rails": rails,
            "invoice_enabled": catalog.invoice_enabled,
        }

    @router.post("/paystack/initiate")
    async def paystack_initiate(body: CardInitiateRequest, user: UserContext = Depends(current_user),
                                runtime: Runtime = Depends(get_runtime)):
        initiation = await runtime.engine.initiate_purchase(
            user, share_class, body.quantity, Currency.NAIRA, Rail.CARD, {"email": body.email})
        return {"success": True, "data": initiation.to_dict()}

    @router.get("/paystack/verify/{reference}")
    async def paystack_verify(reference: str, user: UserContext = Depends(current_user),
                              runtime: Runtime = Depends(get_runtime)):
        txn = runtime.engine.get_transaction(reference)
        if txn.user_id != user.user_id and not user.is_admin:
            raise PermissionDenied("Transaction belongs to another user")
        result = await runtime.engine.settle_by_reference(reference, SettlementSource.USER_VERIFY, actor=user)
        return settlement_response(result)

    @router.post("/centiiv/initiate")
    async def centiiv_initiate(body: InvoiceInitiateRequest, user: UserContext = Depends(current_user),
                               runtime: Runtime = Depends(get_runtime)):
        initiation = await runtime.engine.initiate_purchase(
            user, share_class, body.quantity, Currency.NAIRA, Rail.INVOICE,
            {"email": body.email, "customer_name": body.customer_name})
        return {"success": True, "data": initiation.to_dict()}

    @router.post("/web3/initiate")
    async def web3_initiate(body: OnchainInitiateRequest, user: UserContext = Depends(current_user),
                            runtime: Runtime = Depends(get_runtime)):
        initiation = await runtime.engine.initiate_purchase(
            user, share_class, body.quantity, Currency.USDT, Rail.ONCHAIN)
        return {"success": True, "data": initiation.to_dict()}

    @router.post("/web3/verify")
    async def web3_verify(body: OnchainVerifyRequest, user: UserContext = Depends(current_user),
                          runtime: Runtime = Depends(get_runtime)):
        result = await runtime.engine.submit_onchain_claim(
            user, body.tx_hash, body.wallet_address, share_class, body.quantity, body.reference)
        if isinstance(result.outcome, Rejected):
            raise BusinessLogicError(ErrorCodes.VERIFICATION_FAILED, result.diagnostic or result.outcome.reason,
                                     field="txHash",
                                     context={"reference": result.reference, "status": result.status.value})
        return settlement_response(result)

    @router.post("/manual/submit")
    async def manual_submit(quantity: int = Form(...), paymentMethod: str = Form(...),
                            currency: str = Form("naira"), bankName: Optional[str] = Form(None),
                            accountName: Optional[str] = Form(None), reference: Optional[str] = Form(None),
                            paymentProof: Optional[UploadFile] = File(None),
                            user: UserContext = Depends(current_user), runtime: Runtime = Depends(get_runtime)):
        rail = rail_for_method(paymentMethod)
        if paymentProof is None:
            raise InvalidInput("Payment proof is required", field="paymentProof")
        handle = runtime.proof_store.save(await paymentProof.read(), paymentProof.content_type,
                                          paymentProof.filename)
        try:
            initiation = await runtime.engine.initiate_purchase(
                user, share_class, quantity, parse_currency(currency), rail,
                {"proof_handle": handle, "proof_content_type": paymentProof.content_type,
                 "bank_name": bankName, "account_name": accountName, "payer_reference": reference})
        except Exception:
            runtime.proof_store.delete(handle)
            raise
        return {"success": True, "data": initiation.to_dict()}

    @router.post("/cancel/{reference}")
    async def cancel(reference: str, body: Optional[CancelRequest] = None,
                     user: UserContext = Depends(current_user), runtime: Runtime = Depends(get_runtime)):
        result = await runtime.engine.cancel_purchase(reference, user, body.reason if body else None)
        return {"success": True, **result.to_dict()}

    @router.get("/user")
    async def user_shares(user: UserContext = Depends(current_user), runtime: Runtime = Depends(get_runtime)):
        return {"success": True, **runtime.projector.user_view(user.user_id, share_class).to_dict()}

    @router.get("/payment-proof/{reference}")
    async def payment_proof(reference: str, user: UserContext = Depends(current_user),
                            runtime: Runtime = Depends(get_runtime)):
        txn = runtime.engine.get_transaction(reference)
        if txn.user_id != user.user_id and not user.is_admin:
            raise PermissionDenied("Transaction belongs to another user")
        handle = txn.rail_payload.get("proof_handle")
        if not handle:
            raise HTTPException(404, "No payment proof for this transaction")
        try:
            stream, content_type = runtime.proof_store.open(handle)
        except FileNotFoundError:
            raise HTTPException(404, "Payment proof file is missing")
        return StreamingResponse(stream, media_type=content_type)

    # Administration

    async def admin_decide(body: AdminDecisionRequest, admin: UserContext, runtime: Runtime, rails) -> dict:
        txn = runtime.engine.get_transaction(body.transaction_id)
        # reversed transactions of any rail come back through an admin decision
        if txn.rail not in rails and not txn.admin_hold:
            raise InvalidInput(f"Transaction uses the {txn.rail.value} rail", field="transactionId")
        decision = AdminDecision(approved=body.approved, actor_id=admin.user_id, note=body.admin_note)
        result = await runtime.engine.settle_by_reference(
            body.transaction_id, SettlementSource.ADMIN_DECISION, proof=decision, actor=admin)
        return settlement_response(result)

    @router.post("/admin/manual/verify")
    async def admin_manual_verify(body: AdminDecisionRequest, admin: UserContext = Depends(admin_user),
                                  runtime: Runtime = Depends(get_runtime)):
        return await admin_decide(body, admin, runtime, MANUAL_RAILS)

    @router.post("/admin/web3/verify")
    async def admin_web3_verify(body: AdminDecisionRequest, admin: UserContext = Depends(admin_user),
                                runtime: Runtime = Depends(get_runtime)):
        return await admin_decide(body, admin, runtime, (Rail.ONCHAIN,))

    @router.post("/admin/resettle")
    async def admin_resettle(body: AdminDecisionRequest, admin: UserContext = Depends(admin_user),
                             runtime: Runtime = Depends(get_runtime)):
        return await admin_decide(body, admin, runtime, ())

    @router.post("/admin/grant")
    async def admin_grant(body: GrantRequest, admin: UserContext = Depends(admin_user),
                          runtime: Runtime = Depends(get_runtime)):
        result = await runtime.engine.grant_shares(admin, body.user_id, share_class, body.shares, body.note,
                                                   body.email, body.name)
        return settlement_response(result)

    @router.post("/admin/reverse")
    async def admin_reverse(body: ReverseRequest, admin: UserContext = Depends(admin_user),
                            runtime: Runtime = Depends(get_runtime)):
        result = await runtime.engine.reverse_settlement(body.transaction_id, admin, body.reason,
                                                         TxStatus(body.target_status))
        return {"success": True, **result.to_dict()}

    @router.get("/admin/transactions")
    async def admin_transactions(status: Optional[str] = None, paymentMethod: Optional[str] = None,
                                 page: int = 1, limit: int = 20, admin: UserContext = Depends(admin_user),
                                 runtime: Runtime = Depends(get_runtime)):
        try:
            status_filter = TxStatus(status) if status else None
        except ValueError:
            raise InvalidInput(f"Unknown status {status}", field="status")
        if paymentMethod == "manual":
            rails = list(MANUAL_RAILS)
        else:
            rails = [parse_rail_param(paymentMethod)] if paymentMethod else None
        return {"success": True,
                **runtime.projector.list_transactions(status_filter, rails, share_class, page, limit)}

    @router.get("/admin/pending/{rail}")
    async def admin_pending(rail: str, admin: UserContext = Depends(admin_user),
                            runtime: Runtime = Depends(get_runtime)):
        rows = runtime.projector.pending_for_rail(parse_rail_param(rail))
        return {"success": True,
                "transactions": [r for r in rows if r["share_class"] == share_class.value]}

    @router.get("/admin/statistics")
    async def admin_statistics(admin: UserContext = Depends(admin_user), runtime: Runtime = Depends(get_runtime)):
        return {"success": True, "statistics": runtime.projector.admin_statistics()}

    @router.delete("/admin/transactions/{reference}")
    async def admin_delete(reference: str, reason: str, admin: UserContext = Depends(admin_user),
                           runtime: Runtime = Depends(get_runtime)):
        await runtime.engine.delete_transaction(reference, admin, reason)
        return {"success": True, "reference": reference, "deleted": True}

    return router


def catalog_router() -> APIRouter:
    router = APIRouter()

    def respond(snapshot) -> dict:
        return {"success": True,
                "regular": public_info(snapshot, ShareClass.REGULAR),
                "cofounder": public_info(snapshot, ShareClass.CO_FOUNDER),
                "version": snapshot.version}

    @router.put("/admin/pricing/tier/{tier}")
    async def update_tier(tier: int, body: TierPriceUpdate, admin: UserContext = Depends(admin_user),
                          runtime: Runtime = Depends(get_runtime)):
        return respond(runtime.engine.administer_catalog(
            admin, lambda c: c.update_tier_price(tier, body.price_naira, body.price_usdt)))

    @router.put("/admin/pricing/cofounder")
    async def update_co_founder(body: TierPriceUpdate, admin: UserContext = Depends(admin_user),
                                runtime: Runtime = Depends(get_runtime)):
        return respond(runtime.engine.administer_catalog(
            admin, lambda c: c.update_co_founder_price(body.price_naira, body.price_usdt)))

    @router.put("/admin/pricing/ratio")
    async def update_ratio(body: RatioUpdate, admin: UserContext = Depends(admin_user),
                           runtime: Runtime = Depends(get_runtime)):
        return respond(runtime.engine.administer_catalog(admin, lambda c: c.update_ratio(body.ratio)))

    @router.put("/admin/wallet")
    async def update_wallet(body: WalletUpdate, admin: UserContext = Depends(admin_user),
                            runtime: Runtime = Depends(get_runtime)):
        return respond(runtime.engine.administer_catalog(admin, lambda c: c.update_company_wallet(body.address)))

    @router.put("/admin/invoice")
    async def toggle_invoice(body: InvoiceToggle, admin: UserContext = Depends(admin_user),
                             runtime: Runtime = Depends(get_runtime)):
        return respond(runtime.engine.administer_catalog(admin, lambda c: c.set_invoice_enabled(body.enabled)))

    return router


def webhook_router() -> APIRouter:
    router = APIRouter()

    def load(raw: bytes) -> dict:
        try:
            return json.loads(raw or b"{}")
        except ValueError:
            raise InvalidInput("Webhook body is not JSON")

    @router.post("/paystack/webhook")
    async def paystack_webhook(request: Request, x_paystack_signature: Optional[str] = Header(None),
                               runtime: Runtime = Depends(get_runtime)):
        raw = await request.body()
        if not verify_paystack_signature(raw, x_paystack_signature):
            raise InvalidSignature()
        event = load(raw)
        data = event.get("data") or {}
        if event.get("event") != "charge.success" or not data.get("reference"):
            logger.info(f"Ignoring Paystack event {event.get('event')}")
            return {"received": True}
        try:
            result = await runtime.engine.settle_by_reference(data["reference"], SettlementSource.WEBHOOK, proof=data)
        except TransactionNotFound:
            logger.warning(f"Paystack webhook for unknown reference {data['reference']}")
            return {"received": True}
        return {"received": True, "status": result.status.value}

    @router.post("/centiiv/webhook")
    async def centiiv_webhook(request: Request, reference: Optional[str] = None,
                              x_centiiv_signature: Optional[str] = Header(None),
                              runtime: Runtime = Depends(get_runtime)):
        raw = await request.body()
        if not verify_centiiv_signature(raw, x_centiiv_signature):
            raise InvalidSignature()
        body = load(raw)
        data = body.get("data") or {}
        order_id = body.get("orderId") or body.get("order_id") or data.get("order_id") or data.get("id")
        status = body.get("status") or data.get("status")
        try:
            if order_id:
                reference = runtime.engine.reference_for_external_id(Rail.INVOICE, str(order_id))
            if not reference:
                raise TransactionNotFound(str(order_id))
            result = await runtime.engine.settle_by_reference(
                reference, SettlementSource.WEBHOOK, proof={"status": status, "order_id": order_id})
        except TransactionNotFound:
            logger.warning(f"Centiiv webhook for unknown order {order_id} (reference={reference})")
            return {"received": True}
        return {"received": True, "status": result.status.value}

    return router


def create_app(runtime: Runtime = None) -> FastAPI:
    app = FastAPI(title="Share Ledger Service", version="1.0.0")
    if runtime is None:
        from share_ledger_service.runtime import build_runtime
        runtime = build_runtime()
    app.state.runtime = runtime

    @app.middleware("http")
    async def add_tracing(request: Request, call_next):
        return await tracing_middleware(request, call_next, share_ledger_tracer)

    add_error_handlers(app)
    app.include_router(webhook_router(), prefix="/shares", tags=["webhooks"])
    app.include_router(catalog_router(), prefix="/shares", tags=["catalog"])
    app.include_router(share_router(ShareClass.REGULAR), prefix="/shares", tags=["shares"])
    app.include_router(share_router(ShareClass.CO_FOUNDER), prefix="/cofounder", tags=["cofounder"])

    @app.get("/health")
    async def health():
        return {"ok": True, "service": "share_ledger"}

    @app.get("/redis/health")
    async def redis_health():
        """Cache connectivity and statistics"""
        if runtime.cache is None:
            return {"redis": {"connected": False}, "cache_enabled": False}
        return {
            "redis": runtime.cache.get_cache_stats(),
            "cache_enabled": runtime.cache.ping(),
        }

    @app.get("/circuit-breakers")
    async def circuit_breaker_status():
        return {
            "circuit_breakers": get_all_circuit_breakers(),
            "timestamp": time.time(),
        }

    return app
