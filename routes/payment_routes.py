from __future__ import annotations

import hmac

from flask import Blueprint, current_app, jsonify, request

from extensions import db, limiter
from models import Payment, PaymentPlan, as_decimal
from utils.auth import current_profile, ensure_parent_owns_student, parent_for, requires
from utils.errors import AuthenticationError, AuthorizationError, GatewayError, NotFoundError, ValidationError
from utils.fee_rates import effective_fee_percentage
from utils.ledger import (
    calculate_fee,
    create_fee_snapshot,
    create_pending_payment,
    get_payment,
    mark_failed,
    record_gateway_result,
)
from utils.mpesa import (
    MpesaClient,
    build_conversation_id,
    build_transaction_reference,
    normalize_msisdn,
    validate_msisdn,
)
from utils.reconcile import PARTIAL, ReconcileResult, apply_confirmation, apply_gateway_callback, simulated_payload
from utils.roles import Capability

payments_bp = Blueprint("payments", __name__, url_prefix="/payments")

MOBILE_METHODS = {"mobile_money", "mpesa", "m-pesa"}


def _reconcile_response(result: ReconcileResult):
    body = {"ok": True, **result.to_dict()}
    if result.outcome == PARTIAL:
        current_app.logger.error("Partial reconciliation for payment %s: %s", result.payment.id, result.error)
        return jsonify(body), 202
    return jsonify(body)


def _installment_context(plan: PaymentPlan, data: dict) -> dict:
    ctx = {"payment_plan_id": plan.id, "fee_structure_id": plan.structure_id}
    raw_number = data.get("installmentNumber")
    month = str(data.get("selectedMonth") or "").strip()
    if raw_number not in (None, ""):
        try:
            number = int(raw_number)
        except (TypeError, ValueError):
            raise ValidationError("installmentNumber must be an integer")
        if plan.installments and plan.installment(number) is None:
            raise ValidationError("Installment not found on this payment plan", {"installmentNumber": number})
        ctx["installment_number"] = number
        inst = plan.installment(number)
        if inst and inst.get("label"):
            ctx["installment_label"] = inst["label"]
    elif month:
        ctx["installment_label"] = month
    elif plan.is_single_payment:
        ctx["installment_label"] = "Full Payment"
    return ctx


@payments_bp.route("/initiate", methods=["POST"])
@limiter.limit("10 per minute")
@requires(Capability.PAY_FEES)
async def initiate():
    data = request.get_json(silent=True) or {}
    profile = current_profile()
    parent, student = ensure_parent_owns_student(profile, data.get("studentId"))

    try:
        amount = as_decimal(data.get("amount"))
    except (ArithmeticError, ValueError, TypeError):
        raise ValidationError("amount must be a number")
    if amount <= 0:
        raise ValidationError("amount must be greater than zero")

    method = (data.get("paymentMethod") or "mobile_money").strip().lower()
    if method not in MOBILE_METHODS:
        raise ValidationError(f"Unsupported payment method: {method}")

    plan_id = data.get("paymentPlanId")
    if not plan_id:
        raise ValidationError("paymentPlanId is required")
    plan = db.session.get(PaymentPlan, plan_id)
    if plan is None or plan.structure is None or plan.structure.school_id != student.school_id:
        raise ValidationError("Payment plan not found for this student's school", {"paymentPlanId": plan_id})

    prefix = current_app.config.get("MPESA_MSISDN_PREFIX", "243")
    msisdn = validate_msisdn(normalize_msisdn(str(data.get("phoneNumber") or ""), prefix))
    ctx = _installment_context(plan, data)

    pct, rate = effective_fee_percentage(student.school_id)
    fee = calculate_fee(amount, pct)
    reference = build_transaction_reference(student.id)
    conversation_id = build_conversation_id(parent.id)
    description = (data.get("description") or f"School fees - {student.full_name}")[:255]
    ctx.update(
        transaction_reference=reference,
        third_party_conversation_id=conversation_id,
        description=description,
    )

    payment = create_pending_payment(student.id, parent.id, amount, "mobile_money", ctx)
    snapshot = create_fee_snapshot(payment, student.school_id, pct, rate.id if rate else None)

    client = MpesaClient.from_app()
    try:
        result = await client.initiate_collection(
            msisdn, fee["total_amount"], reference, description[:40], conversation_id
        )
    except GatewayError as e:
        mark_failed(payment.id, e.message, e.details)
        current_app.logger.warning("Gateway error for payment %s: %s", payment.id, e.message)
        raise

    payment = record_gateway_result(payment.id, result)
    if not result.success:
        return (
            jsonify(
                {
                    "ok": False,
                    "success": False,
                    "paymentId": payment.id,
                    "responseCode": result.response_code,
                    "error": result.response_desc or "Payment was rejected by M-Pesa",
                }
            ),
            400,
        )

    body = {
        "ok": True,
        "success": True,
        "paymentId": payment.id,
        "transactionId": result.transaction_id,
        "conversationId": result.conversation_id,
        "responseCode": result.response_code,
        "message": result.response_desc,
        "feeInfo": snapshot.fee_info(),
    }
    if current_app.config.get("AUTO_SIMULATE_WEBHOOK"):
        confirmation = apply_confirmation(payment.id, simulated_payload(payment))
        body["reconciliation"] = confirmation.outcome
        if confirmation.warning:
            body["warning"] = confirmation.warning
    return jsonify(body)


@payments_bp.route("/simulate-webhook", methods=["POST"])
def simulate_webhook():
    cfg = current_app.config
    if not cfg.get("ENABLE_WEBHOOK_SIMULATION"):
        raise NotFoundError("Webhook simulation is disabled")
    secret = cfg.get("TEST_WEBHOOK_SECRET") or ""
    if secret and not hmac.compare_digest(request.headers.get("X-Test-Secret", ""), secret):
        raise AuthenticationError("Invalid test secret")

    data = request.get_json(silent=True) or {}
    payment_id = request.args.get("paymentId") or data.get("paymentId")
    if not payment_id:
        raise ValidationError("paymentId is required")
    payment = get_payment(payment_id)
    return _reconcile_response(apply_confirmation(payment.id, simulated_payload(payment)))


@payments_bp.route("/webhook", methods=["POST"])
def webhook():
    payload = request.get_json(silent=True) or {}
    result = apply_gateway_callback(payload)
    if result.outcome == PARTIAL:
        current_app.logger.error("Partial reconciliation for payment %s: %s", result.payment.id, result.error)
    return (
        jsonify(
            {
                "output_OriginalConversationID": payload.get("input_OriginalConversationID"),
                "output_ResponseCode": "0",
                "output_ResponseDesc": "Successfully Accepted Result",
                "output_ThirdPartyConversationID": payload.get("input_ThirdPartyConversationID"),
            }
        ),
        202 if result.outcome == PARTIAL else 200,
    )


def _owned_payment(payment_id: str) -> Payment:
    payment = get_payment(payment_id)
    parent = parent_for(current_profile())
    if payment.parent_id != parent.id:
        raise AuthorizationError("This payment does not belong to you")
    return payment


@payments_bp.route("/<payment_id>/status", methods=["GET"])
@requires(Capability.PAY_FEES)
async def payment_status(payment_id):
    payment = _owned_payment(payment_id)
    body = {"ok": True, "payment": payment.to_dict()}
    if payment.transaction_reference:
        body["gateway"] = await MpesaClient.from_app().query_status(payment.transaction_reference)
    return jsonify(body)


@payments_bp.route("/history", methods=["GET"])
@requires(Capability.VIEW_OWN_STUDENTS)
def history():
    student_id = request.args.get("studentId") or request.args.get("student_id")
    parent, student = ensure_parent_owns_student(current_profile(), student_id)
    rows = (
        Payment.query.filter_by(student_id=student.id, parent_id=parent.id)
        .order_by(Payment.created_at.desc())
        .all()
    )
    items = []
    for p in rows:
        item = p.to_dict()
        item["feeInfo"] = p.fee_snapshot.fee_info() if p.fee_snapshot else None
        items.append(item)
    return jsonify({"ok": True, "payments": items})
