import json
import logging
import os
from datetime import datetime, timedelta
from typing import Dict, Optional
from urllib.parse import urljoin

import click
from dotenv import load_dotenv
from flask import Flask, Response, jsonify, request
from flask_cors import CORS
from flask_jwt_extended import (
    JWTManager,
    create_access_token,
    get_jwt,
    get_jwt_identity,
    jwt_required,
)
from flask_pymongo import PyMongo
from werkzeug.middleware.proxy_fix import ProxyFix

from .auth import MIN_PASSWORD_LENGTH, check_password, hash_password, require_admin
from .emails import OrderMailer
from .errors import InvalidSignature, OrderNotFound, ShopError, ValidationError
from .events import OrderEventHub
from .gateways import PaymentReport, build_gateways
from .orders import (
    GATEWAY_PAYMENT,
    PHONEPE,
    RAZORPAY,
    PricingRules,
    build_order_document,
    email_regex,
    normalize_email,
    serialize_order,
    utcnow,
)
from .reconciliation import ReconciliationEngine
from .store import OrderStore

load_dotenv()


def _pricing_from_config(config) -> PricingRules:
    shipping_rates = config.get("SHIPPING_RATES")
    coupons = config.get("COUPONS")
    if isinstance(shipping_rates, dict):
        shipping_rates = json.dumps(shipping_rates)
    if isinstance(coupons, dict):
        coupons = json.dumps(coupons)
    return PricingRules.from_json(
        (shipping_rates or "").strip() or None, (coupons or "").strip() or None
    )


def create_app(test_config: Optional[Dict] = None, db=None) -> Flask:
    """Create and configure the Flask application."""
    app = Flask(__name__)

    trusted_proxy_hops_raw = os.getenv("TRUSTED_PROXY_HOPS", "1")
    try:
        trusted_proxy_hops = max(0, int(trusted_proxy_hops_raw))
    except (TypeError, ValueError):
        trusted_proxy_hops = 1
    if trusted_proxy_hops:
        app.wsgi_app = ProxyFix(
            app.wsgi_app,
            x_for=trusted_proxy_hops,
            x_proto=trusted_proxy_hops,
            x_host=trusted_proxy_hops,
            x_port=trusted_proxy_hops,
        )

    # --- Configuration ---
    app.config["JWT_SECRET_KEY"] = os.getenv("JWT_SECRET_KEY", "change-me-in-production")
    app.config["JWT_ACCESS_TOKEN_EXPIRES"] = timedelta(hours=1)
    app.config["MONGO_URI"] = os.getenv("MONGO_URI", "mongodb://localhost:27017/nisargmaitri")
    app.config["LOG_LEVEL"] = os.getenv("LOG_LEVEL", "INFO").upper()
    app.config["FRONTEND_URL"] = os.getenv("FRONTEND_URL", "").strip()
    app.config["PAYMENT_REDIRECT_URL"] = os.getenv("PAYMENT_REDIRECT_URL", "").strip()
    app.config["PAYMENT_GATEWAY"] = os.getenv("PAYMENT_GATEWAY", RAZORPAY).strip().lower()

    app.config["PHONEPE_MERCHANT_ID"] = os.getenv("PHONEPE_MERCHANT_ID", "")
    app.config["PHONEPE_SALT_KEY"] = os.getenv("PHONEPE_SALT_KEY", "")
    app.config["PHONEPE_SALT_INDEX"] = os.getenv("PHONEPE_SALT_INDEX", "1")
    app.config["PHONEPE_ENV"] = os.getenv("PHONEPE_ENV", "sandbox").strip().lower()
    app.config["RAZORPAY_KEY_ID"] = os.getenv("RAZORPAY_KEY_ID", "")
    app.config["RAZORPAY_KEY_SECRET"] = os.getenv("RAZORPAY_KEY_SECRET", "")
    app.config["RAZORPAY_WEBHOOK_SECRET"] = os.getenv("RAZORPAY_WEBHOOK_SECRET", "")
    app.config["GATEWAY_TIMEOUT_SECONDS"] = float(os.getenv("GATEWAY_TIMEOUT_SECONDS", "30"))
    app.config["GATEWAY_STATUS_ATTEMPTS"] = int(os.getenv("GATEWAY_STATUS_ATTEMPTS", "3"))
    app.config["GATEWAY_RETRY_BACKOFF"] = float(os.getenv("GATEWAY_RETRY_BACKOFF", "0.5"))

    app.config["ORDER_VALIDITY_MINUTES"] = int(os.getenv("ORDER_VALIDITY_MINUTES", "30"))
    app.config["ORDER_RETENTION_HOURS"] = int(os.getenv("ORDER_RETENTION_HOURS", "24"))
    app.config["SHIPPING_RATES"] = os.getenv("SHIPPING_RATES", "")
    app.config["COUPONS"] = os.getenv("COUPONS", "")

    app.config["RESEND_API_KEY"] = (os.getenv("RESEND_API_KEY") or "").strip()
    app.config["ORDER_EMAIL_SENDER"] = os.getenv("ORDER_EMAIL_SENDER", "orders@nisargmaitri.in")
    app.config["ADMIN_ORDER_EMAIL"] = os.getenv("ADMIN_ORDER_EMAIL", "")

    if test_config:
        app.config.update(test_config)

    app.logger.setLevel(app.config["LOG_LEVEL"])
    logging.getLogger("nisarg_store").setLevel(app.config["LOG_LEVEL"])

    # --- Initialize extensions ---
    allowed_origins = [
        "http://localhost:3000",
        "http://localhost:5173",
        "https://www.nisargmaitri.in",
        app.config["FRONTEND_URL"],
    ]
    cors_extra = os.getenv("CORS_ORIGINS", "")
    if cors_extra:
        for origin in cors_extra.split(","):
            trimmed = origin.strip()
            if trimmed:
                allowed_origins.append(trimmed)
    allowed_origins = [origin for origin in allowed_origins if origin]

    CORS(app, supports_credentials=True, origins=allowed_origins or "*")
    JWTManager(app)

    if db is None:
        mongo = PyMongo(app)
        db = mongo.db

    order_store = OrderStore(db.orders)
    order_store.ensure_indexes()
    users_collection = db.users
    try:
        users_collection.create_index("email", unique=True)
    except Exception as exc:
        app.logger.warning("Unable to ensure index for users: %s", exc)

    order_events = OrderEventHub()
    gateways = build_gateways(app.config)
    if not gateways:
        app.logger.warning("No payment gateway is configured; only COD orders can be placed.")
    engine = ReconciliationEngine(
        order_store,
        gateways,
        _pricing_from_config(app.config),
        mailer=OrderMailer(
            app.config["RESEND_API_KEY"],
            app.config["ORDER_EMAIL_SENDER"],
            app.config["ADMIN_ORDER_EMAIL"],
        ),
        events=order_events,
        validity=timedelta(minutes=app.config["ORDER_VALIDITY_MINUTES"]),
        retention=timedelta(hours=app.config["ORDER_RETENTION_HOURS"]),
    )
    app.extensions["order_engine"] = engine
    app.extensions["order_events"] = order_events

    # --- Helpers ---

    def parse_day(value: Optional[str]):
        candidate = str(value or "").strip()
        if not candidate:
            return None
        try:
            return datetime.strptime(candidate, "%Y-%m-%d")
        except ValueError:
            raise ValidationError("Invalid date format")

    def payment_redirect_url() -> str:
        if app.config["PAYMENT_REDIRECT_URL"]:
            return app.config["PAYMENT_REDIRECT_URL"]
        if app.config["FRONTEND_URL"]:
            return urljoin(app.config["FRONTEND_URL"], "/payment-status")
        return urljoin(request.host_url, "/payment-status")

    def outcome_response(outcome):
        payload = {
            "success": outcome.success,
            "paymentStatus": outcome.status,
            "order": serialize_order(outcome.order),
        }
        if not outcome.success:
            payload["error"] = (
                "Payment is still pending" if outcome.status == "pending" else "Payment failed"
            )
        return jsonify(payload)

    @app.errorhandler(ShopError)
    def handle_shop_error(error: ShopError):
        if isinstance(error, InvalidSignature):
            app.logger.warning(
                "Rejected payment report on %s from %s",
                request.path,
                request.headers.get("X-Forwarded-For", request.remote_addr),
            )
        elif error.status_code >= 500:
            app.logger.error("%s on %s: %s", error.code, request.path, error.message)
        return jsonify(error.to_dict()), error.status_code

    # --- Auth ---

    @app.route("/api/auth/login", methods=["POST"])
    def login():
        payload = request.get_json(silent=True) or {}
        email = normalize_email(payload.get("email"))
        password = str(payload.get("password", ""))

        if not email or not password:
            return jsonify({"error": "Email and password are required"}), 400
        if not email_regex.match(email):
            return jsonify({"error": "Invalid email format"}), 400

        user = users_collection.find_one({"email": email})
        if not user or not check_password(password, user.get("password_hash")):
            app.logger.warning("Login failed for %s", email)
            return jsonify({"error": "Invalid email or password"}), 401

        users_collection.update_one(
            {"_id": user["_id"]}, {"$set": {"last_login_at": utcnow()}}
        )
        is_admin = bool(user.get("is_admin"))
        token = create_access_token(identity=email, additional_claims={"is_admin": is_admin})
        app.logger.info("Login successful for %s", email)
        return jsonify({"token": token, "isAdmin": is_admin, "email": email, "success": True})

    @app.route("/api/auth/check-admin", methods=["GET"])
    @jwt_required()
    def check_admin():
        return jsonify(
            {"isAdmin": bool(get_jwt().get("is_admin")), "email": get_jwt_identity()}
        )

    # --- Orders ---

    @app.route("/api/orders", methods=["POST"])
    def create_order():
        payload = request.get_json(silent=True) or {}
        idempotency_key = str(
            request.headers.get("Idempotency-Key") or payload.get("idempotencyKey") or ""
        ).strip()

        document = build_order_document(payload, engine.pricing, app.config["PAYMENT_GATEWAY"])
        if document["payment_method"] == GATEWAY_PAYMENT and document.get("gateway") not in gateways:
            raise ValidationError(
                f"Payment method {document.get('gateway')} is not available.",
                available=sorted(gateways),
            )

        order, created = engine.create_order(document, idempotency_key or None)
        response_payload = {
            "message": "Order created." if created else "Order already recorded.",
            "order": serialize_order(order),
            "paymentRequired": order.get("payment_status") == "pending",
        }
        return jsonify(response_payload), 201 if created else 200

    @app.route("/api/orders/initiate-payment", methods=["POST"])
    def initiate_payment():
        payload = request.get_json(silent=True) or {}
        order_id = str(payload.get("orderId") or "").strip()
        if not order_id:
            return jsonify({"error": "Missing orderId"}), 400

        initiation = engine.initiate(
            order_id,
            redirect_url=str(payload.get("redirectUrl") or payment_redirect_url()),
            callback_url=str(
                payload.get("callbackUrl")
                or urljoin(request.host_url, "/api/orders/phonepe-callback")
            ),
            mobile_number=str(payload.get("mobileNumber") or ""),
            merchant_user_id=str(payload.get("merchantUserId") or ""),
        )
        return jsonify(
            {
                "orderId": order_id,
                "provider": initiation.provider,
                "transactionRef": initiation.transaction_ref,
                "paymentUrl": initiation.action_url,
                **initiation.client_payload,
            }
        )

    @app.route("/api/orders/phonepe-callback", methods=["POST"])
    def phonepe_callback():
        payload = request.get_json(silent=True) or {}
        report = PaymentReport(
            provider=PHONEPE,
            kind="callback",
            body=payload,
            signature=request.headers.get("X-VERIFY"),
        )
        outcome = engine.confirm(report)
        return jsonify({"status": "OK", "paymentStatus": outcome.status}), 200

    @app.route("/api/orders/razorpay-webhook", methods=["POST"])
    def razorpay_webhook():
        report = PaymentReport(
            provider=RAZORPAY,
            kind="webhook",
            signature=request.headers.get("X-Razorpay-Signature"),
            raw_body=request.get_data(),
        )
        try:
            outcome = engine.confirm(report)
        except OrderNotFound as exc:
            app.logger.warning("Razorpay webhook for unknown order: %s", exc.details)
            return jsonify({"status": "ignored"}), 200
        return jsonify({"status": "ok", "paymentStatus": outcome.status}), 200

    @app.route("/api/orders/verify-payment", methods=["POST"])
    def verify_payment():
        payload = request.get_json(silent=True) or {}
        order_id = str(payload.get("orderId") or "").strip()
        transaction_ref = str(
            payload.get("transactionRef")
            or payload.get("transactionId")
            or payload.get("razorpayOrderId")
            or ""
        ).strip()
        if not order_id or not transaction_ref:
            return jsonify({"error": "Missing orderId or transactionRef"}), 400

        payment_ref = str(payload.get("razorpayPaymentId") or "").strip()
        signature = str(payload.get("razorpaySignature") or "").strip()
        if payment_ref or signature:
            report = PaymentReport(
                provider=RAZORPAY,
                kind="checkout",
                body={
                    "razorpay_order_id": transaction_ref,
                    "razorpay_payment_id": payment_ref,
                },
                signature=signature,
            )
            outcome = engine.confirm(report, expected_order_id=order_id)
        else:
            outcome = engine.verify(order_id, transaction_ref)
        return outcome_response(outcome)

    @app.route("/api/orders", methods=["GET"])
    @jwt_required()
    def list_orders():
        admin_error = require_admin()
        if admin_error:
            return admin_error

        day = parse_day(request.args.get("date"))
        order_id_fragment = request.args.get("orderId")
        if order_id_fragment is not None and not order_id_fragment.strip():
            return jsonify({"error": "Invalid orderId"}), 400

        documents = order_store.list_orders(
            day, order_id_fragment.strip() if order_id_fragment else None
        )
        orders = [serialize_order(document) for document in documents]
        app.logger.info("Fetched %s orders", len(orders))
        return jsonify({"orders": orders})

    @app.route("/api/orders/stream", methods=["GET"])
    @jwt_required()
    def stream_orders():
        admin_error = require_admin()
        if admin_error:
            return admin_error

        listener = order_events.register()
        return Response(
            order_events.stream(listener),
            mimetype="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    @app.route("/api/orders/<order_id>", methods=["GET"])
    @jwt_required()
    def get_order(order_id: str):
        admin_error = require_admin()
        if admin_error:
            return admin_error

        order_document = order_store.get(order_id)
        if not order_document:
            return jsonify({"error": "Order not found"}), 404
        return jsonify({"order": serialize_order(order_document)})

    @app.route("/api/orders/<order_id>/status", methods=["POST"])
    @jwt_required()
    def override_order_status(order_id: str):
        admin_error = require_admin()
        if admin_error:
            return admin_error

        payload = request.get_json(silent=True) or {}
        outcome = engine.override(order_id, payload.get("status"), get_jwt_identity())
        return jsonify({"order": serialize_order(outcome.order), "emailSent": outcome.email_sent})

    @app.route("/health")
    def health():
        try:
            db.command("ping")
            mongo_connected = True
        except Exception as exc:
            app.logger.warning("MongoDB ping failed: %s", exc)
            mongo_connected = False
        return jsonify(
            {
                "status": "OK",
                "message": "Server is running",
                "timestamp": f"{utcnow().isoformat()}Z",
                "mongoConnected": mongo_connected,
                "gateways": sorted(gateways),
            }
        ), 200

    # --- CLI ---

    @app.cli.command("create-admin")
    @click.argument("email")
    @click.password_option()
    def create_admin_command(email: str, password: str):
        """Create an admin user or reset its password."""
        normalized_email = normalize_email(email)
        if not email_regex.match(normalized_email):
            raise click.BadParameter("Invalid email format", param_hint="EMAIL")
        if len(password) < MIN_PASSWORD_LENGTH:
            raise click.BadParameter(
                f"Password must be at least {MIN_PASSWORD_LENGTH} characters"
            )
        result = users_collection.update_one(
            {"email": normalized_email},
            {
                "$set": {
                    "email": normalized_email,
                    "password_hash": hash_password(password),
                    "is_admin": True,
                    "updated_at": utcnow(),
                },
                "$setOnInsert": {"created_at": utcnow()},
            },
            upsert=True,
        )
        action = "created" if result.upserted_id else "updated"
        click.echo(f"Admin user {normalized_email} {action}.")

    @app.cli.command("expire-orders")
    def expire_orders_command():
        """Fail pending orders that outlived the validity window."""
        summary = engine.expire_stale()
        click.echo(f"Expired {summary['expired']} orders, settled {summary['paid']} as paid.")

    @app.cli.command("purge-orders")
    def purge_orders_command():
        """Delete pending/failed orders past the retention window."""
        deleted = engine.purge_stale()
        click.echo(f"Cleaned up {deleted} old pending/failed orders.")

    @app.cli.command("retry-emails")
    def retry_emails_command():
        """Resend confirmation emails that failed for paid orders."""
        delivered = engine.retry_pending_emails()
        click.echo(f"Delivered {delivered} pending confirmation emails.")

    return app
