import hashlib
import hmac
import json
import logging
import math
import os
import re
import secrets
import time
from datetime import datetime, timedelta
from logging.handlers import RotatingFileHandler
from typing import Dict, List, Optional, Tuple

import bcrypt
import requests
import resend
from bson import ObjectId
from bson.errors import InvalidId
from dotenv import load_dotenv
from flask import Flask, jsonify, render_template, request
from flask_cors import CORS
from flask_jwt_extended import (
    JWTManager,
    create_access_token,
    get_jwt_identity,
    jwt_required,
    verify_jwt_in_request,
)
from flask_jwt_extended.exceptions import JWTExtendedException
from flask_pymongo import PyMongo
from jwt.exceptions import PyJWTError
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError
from werkzeug.middleware.proxy_fix import ProxyFix
from werkzeug.utils import secure_filename

from .grid_center import SUPPORTED_GRID_TEMPLATES, can_generate_variants, member_has_photo
from .grid_variants import generate_grid_variants, resolve_member_id
from .image_crop import compress_to_target_size, data_url_size
from .media import configure_cloudinary, upload_image
from .phone_validation import standardize_phone_number, to_phone10, validate_phone_india
from .pricing import calculate_pricing, calculate_reward
from .render_flow import (
    FETCH_TIMEOUT_MS,
    RENDER_TIMEOUT_MS,
    RenderBootstrap,
    RenderCanvas,
    RenderFlowError,
)

load_dotenv()

_configured_admin_email = os.getenv(
    "DEFAULT_ADMIN_EMAIL", "admin@signatureday.in"
) or "admin@signatureday.in"
DEFAULT_ADMIN_EMAIL = _configured_admin_email.strip().lower()
DEFAULT_ADMIN_NAME = (
    os.getenv("DEFAULT_ADMIN_NAME", "Signature Day Admin") or "Signature Day Admin"
).strip()

WAITLIST_STATUSES = ("pending", "approved", "rejected")
ORDER_STATUSES = ("new", "in_progress", "ready", "shipped")
REWARD_STATUSES = ("pending", "paid")
MEMBER_VOTES = {"square", "hexagonal", "circle"}
MEMBER_SIZES = {"s", "m", "l", "xl", "xxl"}
ALLOWED_USER_ROLES = {"admin", "standard"}


def configure_logging(app: Flask) -> None:
    level = str(app.config.get("LOG_LEVEL") or "INFO").upper()
    package_logger = logging.getLogger(__package__ or "backend")
    app.logger.setLevel(level)
    package_logger.setLevel(level)

    log_dir = app.config.get("LOG_DIR")
    if not log_dir:
        return
    os.makedirs(log_dir, exist_ok=True)
    log_path = os.path.abspath(os.path.join(log_dir, "app.log"))
    for existing in package_logger.handlers:
        if getattr(existing, "baseFilename", None) == log_path:
            return

    # app.logger ("backend.app") propagates into the package logger.
    handler = RotatingFileHandler(log_path, maxBytes=2_000_000, backupCount=3)
    handler.setLevel(level)
    handler.setFormatter(
        logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
    )
    package_logger.addHandler(handler)


def create_app(test_config: Optional[Dict] = None, database=None) -> Flask:
    """Create and configure the Flask application."""
    app = Flask(__name__)

    # Honor proxy headers so generated links keep the public HTTPS origin.
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
    app.config["JWT_SECRET_KEY"] = os.getenv(
        "JWT_SECRET_KEY", "change-me-in-production"
    )
    app.config["JWT_ACCESS_TOKEN_EXPIRES"] = timedelta(hours=12)
    app.config["MONGO_URI"] = os.getenv(
        "MONGO_URI", "mongodb://localhost:27017/signatureday"
    )
    max_upload_mb = int(os.getenv("MAX_UPLOAD_SIZE_MB", "16"))
    app.config["MAX_CONTENT_LENGTH"] = max_upload_mb * 1024 * 1024
    app.config["PHOTO_ALLOWED_EXTENSIONS"] = {"png", "jpg", "jpeg", "gif", "webp"}
    app.config["PHOTO_TARGET_SIZE_KB"] = int(os.getenv("PHOTO_TARGET_SIZE_KB", "200"))
    app.config["LOG_LEVEL"] = os.getenv("LOG_LEVEL", "INFO")
    app.config["LOG_DIR"] = os.getenv("LOG_DIR", "").strip()
    app.config["ENVIRONMENT"] = os.getenv("APP_ENV", "development").strip().lower()
    app.config["FRONTEND_ORIGIN"] = (
        os.getenv("FRONTEND_ORIGIN", "http://localhost:8080").strip().rstrip("/")
    )
    app.config["APP_BASE_URL"] = (
        os.getenv("APP_BASE_URL", app.config["FRONTEND_ORIGIN"]).strip().rstrip("/")
    )
    app.config["RENDER_TOKEN"] = (os.getenv("RENDER_TOKEN") or "").strip()
    app.config["RENDER_API_BASE"] = (os.getenv("RENDER_API_BASE") or "").strip()
    app.config["RENDER_FETCH_TIMEOUT_MS"] = FETCH_TIMEOUT_MS
    app.config["RENDER_TIMEOUT_MS"] = RENDER_TIMEOUT_MS
    app.config["RENDER_HTTP_SESSION"] = None
    app.config["JOIN_FEE"] = float(os.getenv("JOIN_FEE", "200"))
    app.config["AMBASSADOR_SHARE"] = float(os.getenv("AMBASSADOR_SHARE", "0.10"))
    app.config["TSHIRT_PRICE"] = float(os.getenv("TSHIRT_PRICE", "28"))
    app.config["PRINT_PRICE"] = float(os.getenv("PRINT_PRICE", "10.10"))
    app.config["GST_RATE"] = float(os.getenv("GST_RATE", "0.05"))
    app.config["RAZORPAY_KEY_ID"] = (os.getenv("RAZORPAY_KEY_ID") or "").strip()
    app.config["RAZORPAY_KEY_SECRET"] = (os.getenv("RAZORPAY_KEY_SECRET") or "").strip()
    app.config["RAZORPAY_API_BASE"] = (
        os.getenv("RAZORPAY_API_BASE", "https://api.razorpay.com/v1").strip().rstrip("/")
    )
    app.config["OTP_VERIFIED_MAX_AGE_MINUTES"] = int(
        os.getenv("OTP_VERIFIED_MAX_AGE_MINUTES", "30")
    )
    app.config["REFERRAL_COOKIE_NAME"] = os.getenv("REFERRAL_COOKIE_NAME", "sd_ref")
    app.config["REFERRAL_COOKIE_TTL_DAYS"] = int(
        os.getenv("REFERRAL_COOKIE_TTL_DAYS", "7")
    )
    app.config["COOKIE_DOMAIN"] = (os.getenv("COOKIE_DOMAIN") or "").strip() or None
    app.config["MSG91_AUTH_KEY"] = (os.getenv("MSG91_AUTH_KEY") or "").strip()
    app.config["MSG91_SENDER_ID"] = (os.getenv("MSG91_SENDER_ID") or "").strip()
    app.config["MSG91_OTP_TEMPLATE_ID"] = (
        os.getenv("MSG91_OTP_TEMPLATE_ID") or ""
    ).strip()
    app.config["RESEND_API_KEY"] = (os.getenv("RESEND_API_KEY") or "").strip()
    app.config["AMBASSADOR_EMAIL_SENDER"] = (
        os.getenv("AMBASSADOR_EMAIL_SENDER", "team@signatureday.in")
        or "team@signatureday.in"
    )
    app.config["DEFAULT_ADMIN_PASSWORD"] = os.getenv("DEFAULT_ADMIN_PASSWORD", "")

    if test_config:
        app.config.update(test_config)

    configure_logging(app)

    # --- Initialize extensions ---
    allowed_origins = [
        "http://localhost:8080",
        "http://localhost:5173",
        "http://localhost:3000",
        app.config["FRONTEND_ORIGIN"],
        app.config["APP_BASE_URL"],
    ]
    cors_extra = os.getenv("CORS_ALLOWED_ORIGINS", "")
    if cors_extra:
        for origin in cors_extra.split(","):
            trimmed = origin.strip()
            if trimmed:
                allowed_origins.append(trimmed)
    allowed_origins = [origin for origin in allowed_origins if origin]

    CORS(app, supports_credentials=True, origins=allowed_origins or "*")

    JWTManager(app)
    if database is None:
        mongo = PyMongo(app)
        db = mongo.db
    else:
        db = database

    if configure_cloudinary():
        app.logger.info("Cloudinary uploads enabled.")

    waitlist_collection = db.ambassador_waitlist
    ambassadors_collection = db.ambassadors
    rewards_collection = db.ambassador_rewards
    referral_clicks_collection = db.referral_clicks
    otp_collection = db.otp_verifications
    orders_collection = db.orders
    groups_collection = db.groups

    try:
        waitlist_collection.create_index("email", unique=True)
        waitlist_collection.create_index("phone", unique=True)
        waitlist_collection.create_index([("status", 1), ("created_at", -1)])
        ambassadors_collection.create_index("email", unique=True)
        ambassadors_collection.create_index("phone", unique=True)
        ambassadors_collection.create_index("referral_code", unique=True)
        rewards_collection.create_index(
            [("ambassador_id", 1), ("order_id", 1)], unique=True
        )
        rewards_collection.create_index([("status", 1), ("created_at", -1)])
        referral_clicks_collection.create_index(
            "created_at", expireAfterSeconds=90 * 24 * 60 * 60
        )
        otp_collection.create_index("expires_at", expireAfterSeconds=0)
        otp_collection.create_index([("phone", 1), ("created_at", -1)])
        orders_collection.create_index([("created_at", -1)])
        orders_collection.create_index("status")
        groups_collection.create_index([("created_at", -1)])
        groups_collection.create_index("year_of_passing")
    except Exception as exc:
        app.logger.warning("Unable to ensure indexes: %s", exc)

    email_regex = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    waitlist_phone_regex = re.compile(r"^[0-9+\-\s]{8,15}$")
    upi_regex = re.compile(r"^[\w.\-]{2,256}@[a-zA-Z]{2,64}$")
    otp_code_length = 6
    otp_expiration_minutes = 5
    otp_cooldown_seconds = 60
    max_failed_otp_attempts = 5
    sms_timeout_seconds = 10
    payment_timeout_seconds = 15

    # --- Helpers ---

    def normalize_email(value: Optional[str]) -> str:
        return str(value or "").strip().lower()

    def is_valid_email(value: Optional[str]) -> bool:
        normalized = normalize_email(value)
        return bool(normalized and email_regex.match(normalized))

    def clean_text(value) -> str:
        return str(value or "").strip()

    def normalize_role(value: Optional[str]) -> str:
        normalized = str(value or "").strip().lower()
        return normalized if normalized in ALLOWED_USER_ROLES else "standard"

    def get_user_role(user_document) -> str:
        if not user_document:
            return "standard"

        email = normalize_email(user_document.get("email"))
        if email == DEFAULT_ADMIN_EMAIL:
            return "admin"

        return normalize_role(user_document.get("role", "standard"))

    def require_admin_user():
        current_email = get_jwt_identity()
        current_user = db.users.find_one({"email": current_email})
        if get_user_role(current_user) == "admin":
            return current_user, None

        return (
            None,
            (
                jsonify(
                    {"message": "You need additional permissions to perform this action."}
                ),
                403,
            ),
        )

    def ensure_default_admin():
        password = app.config.get("DEFAULT_ADMIN_PASSWORD") or ""
        if not password or db.users.find_one({"email": DEFAULT_ADMIN_EMAIL}):
            return
        db.users.insert_one(
            {
                "email": DEFAULT_ADMIN_EMAIL,
                "name": DEFAULT_ADMIN_NAME,
                "password": bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()),
                "role": "admin",
                "created_at": datetime.utcnow(),
            }
        )
        app.logger.info("Seeded default administrator %s", DEFAULT_ADMIN_EMAIL)

    def parse_object_id(value) -> Optional[ObjectId]:
        if isinstance(value, ObjectId):
            return value
        try:
            return ObjectId(str(value))
        except (InvalidId, TypeError):
            return None

    def safe_float(value, default=0.0):
        try:
            numeric = float(value)
        except (TypeError, ValueError):
            return default
        if math.isfinite(numeric):
            return numeric
        return default

    def safe_positive_int(value, default=0):
        try:
            numeric = int(float(value))
        except (TypeError, ValueError):
            return default
        return max(default, numeric)

    def parse_pagination(default_limit: int = 20, max_limit: int = 100) -> Tuple[int, int]:
        page = safe_positive_int(request.args.get("page"), 1)
        limit = safe_positive_int(request.args.get("limit"), 0) or default_limit
        return page, min(limit, max_limit)

    def pagination_payload(page: int, limit: int, total: int, returned: int) -> Dict:
        skip = (page - 1) * limit
        return {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": math.ceil(total / limit) if total else 0,
            "has_more": skip + returned < total,
        }

    def isoformat(value) -> Optional[str]:
        if not isinstance(value, datetime):
            return None
        if value.tzinfo is not None:
            return value.isoformat()
        return f"{value.isoformat()}Z"

    def hash_identifier(value: Optional[str]) -> Optional[str]:
        if not value:
            return None
        return hashlib.sha256(str(value).encode("utf-8")).hexdigest()[:16]

    def client_ip() -> str:
        forwarded = request.headers.get("X-Forwarded-For", "")
        return forwarded.split(",")[0].strip() if forwarded else (request.remote_addr or "")

    # --- Email ---

    def send_email_via_resend(payload: Dict[str, object], api_key: str):
        configured_api_key = (api_key or "").strip()
        if not configured_api_key:
            return False, "Resend API key is not configured."

        previous_api_key = getattr(resend, "api_key", None)
        resend.api_key = configured_api_key
        try:
            response = resend.Emails.send(payload)
        except Exception as exc:
            return False, str(exc)
        finally:
            resend.api_key = previous_api_key

        if not isinstance(response, dict) or not response.get("id"):
            return False, str(response)

        return True, None

    def send_ambassador_approval_email(waitlist_entry, ambassador, linked_existing: bool):
        dashboard_url = f"{app.config['APP_BASE_URL']}/ambassador/{ambassador['_id']}"
        referral_link = build_referral_link(ambassador.get("referral_code"))
        html_body = render_template(
            "emails/ambassador_approved.html",
            name=waitlist_entry.get("name") or "there",
            referral_code=ambassador.get("referral_code"),
            referral_link=referral_link,
            dashboard_url=dashboard_url,
            linked_existing=linked_existing,
            year=datetime.utcnow().year,
        )
        text_body = (
            f"Hi {waitlist_entry.get('name') or 'there'},\n\n"
            "Your Campus Ambassador application has been approved.\n"
            f"Referral code: {ambassador.get('referral_code')}\n"
            f"Referral link: {referral_link}\n"
            f"Dashboard: {dashboard_url}\n\n"
            "The Signature Day Team"
        )
        payload: Dict[str, object] = {
            "from": f"Signature Day <{app.config['AMBASSADOR_EMAIL_SENDER']}>",
            "to": [waitlist_entry.get("email")],
            "subject": "Your Campus Ambassador Application Has Been Approved!",
            "html": html_body,
            "text": text_body,
        }
        return send_email_via_resend(payload, app.config["RESEND_API_KEY"])

    # --- SMS / OTP ---

    def generate_otp_code(length: int = otp_code_length) -> str:
        upper_bound = 10**length
        return f"{secrets.randbelow(upper_bound):0{length}d}"

    def send_otp_sms(phone: str, otp: str, source: str):
        auth_key = app.config["MSG91_AUTH_KEY"]
        sender_id = app.config["MSG91_SENDER_ID"]
        flow_id = app.config["MSG91_OTP_TEMPLATE_ID"]
        if not (auth_key and sender_id and flow_id):
            app.logger.info("[OTP][DEV][%s] %s -> %s", source, phone, otp)
            return True, None

        payload = {
            "flow_id": flow_id,
            "sender": sender_id,
            "short_url": "1",
            "recipients": [
                {
                    "mobiles": phone.replace("+", ""),
                    "otp": otp,
                    "VAR1": otp,
                    "source": source,
                    "VAR2": source,
                }
            ],
        }
        try:
            response = requests.post(
                "https://control.msg91.com/api/v5/flow/",
                json=payload,
                headers={"authkey": auth_key, "Content-Type": "application/json"},
                timeout=sms_timeout_seconds,
            )
        except requests.RequestException as exc:
            return False, str(exc)

        if not response.ok:
            return False, f"MSG91 responded with {response.status_code}: {response.text}"
        return True, None

    # --- Serialization ---

    def build_referral_link(code: Optional[str]) -> str:
        return f"{app.config['FRONTEND_ORIGIN']}/ref/{code or ''}"

    def serialize_waitlist_entry(document) -> Dict:
        ambassador_id = document.get("ambassador_id")
        return {
            "id": str(document.get("_id")),
            "name": document.get("name") or "",
            "email": document.get("email") or "",
            "phone": document.get("phone") or "",
            "college": document.get("college") or "",
            "city": document.get("city") or "",
            "state": document.get("state") or "",
            "graduationYear": document.get("graduation_year") or "",
            "status": document.get("status") or "pending",
            "reviewedAt": isoformat(document.get("reviewed_at")),
            "rejectionReason": document.get("rejection_reason") or None,
            "ambassadorId": str(ambassador_id) if ambassador_id else None,
            "createdAt": isoformat(document.get("created_at")),
        }

    def serialize_ambassador(document) -> Dict:
        payout = document.get("payout_method") or {}
        return {
            "id": str(document.get("_id")),
            "name": document.get("name") or "",
            "email": document.get("email") or "",
            "phone": document.get("phone") or "",
            "college": document.get("college") or "",
            "city": document.get("city") or "",
            "state": document.get("state") or "",
            "graduationYear": document.get("graduation_year") or "",
            "referralCode": document.get("referral_code") or "",
            "referralLink": build_referral_link(document.get("referral_code")),
            "upiId": payout.get("upi_id") or None,
            "createdAt": isoformat(document.get("created_at")),
        }

    def serialize_reward(document) -> Dict:
        return {
            "id": str(document.get("_id")),
            "ambassadorId": str(document.get("ambassador_id") or ""),
            "orderId": str(document.get("order_id") or ""),
            "orderLabel": document.get("order_label_snapshot") or "",
            "memberCount": document.get("member_count_snapshot") or 0,
            "rewardAmount": document.get("reward_amount") or 0,
            "orderValue": document.get("order_value"),
            "status": document.get("status") or "pending",
            "paidAt": isoformat(document.get("paid_at")),
            "paidTxRef": document.get("paid_tx_ref") or None,
            "paidVia": document.get("paid_via") or None,
            "createdAt": isoformat(document.get("created_at")),
        }

    def public_order_id(document) -> str:
        return str(document.get("client_order_id") or document.get("_id"))

    def serialize_order(document) -> Optional[Dict]:
        if not document:
            return None
        ambassador_id = document.get("ambassador_id")
        return {
            "id": public_order_id(document),
            "objectId": str(document.get("_id")),
            "clientOrderId": document.get("client_order_id") or None,
            "status": document.get("status") or "new",
            "paid": bool(document.get("paid")),
            "paymentId": document.get("payment_id") or None,
            "paidAt": isoformat(document.get("paid_at")),
            "description": document.get("description") or "",
            "gridTemplate": document.get("grid_template") or "square",
            "members": document.get("members") or [],
            "shipping": document.get("shipping") or {},
            "settings": document.get("settings") or {},
            "pricing": document.get("pricing") or {},
            "ambassadorId": str(ambassador_id) if ambassador_id else None,
            "referralCode": document.get("referral_code") or None,
            "centerVariantImages": document.get("center_variant_images") or [],
            "createdAt": isoformat(document.get("created_at")),
            "updatedAt": isoformat(document.get("updated_at")),
        }

    # --- Domain helpers ---

    def find_order(order_identifier: str):
        order_document = orders_collection.find_one(
            {"client_order_id": order_identifier}
        )
        if order_document:
            return order_document
        object_id = parse_object_id(order_identifier)
        if object_id is None:
            return None
        return orders_collection.find_one({"_id": object_id})

    def generate_referral_code() -> str:
        while True:
            code = f"SD-CA-{secrets.randbelow(90000) + 10000}"
            if not ambassadors_collection.find_one({"referral_code": code}):
                return code

    def resolve_referral_code(code: Optional[str]):
        normalized = clean_text(code).upper()
        if not normalized:
            return None
        return ambassadors_collection.find_one({"referral_code": normalized})

    def incoming_referral_code(payload: Dict) -> str:
        cookie_code = request.cookies.get(app.config["REFERRAL_COOKIE_NAME"])
        if cookie_code:
            return cookie_code.strip().upper()
        return clean_text(payload.get("referralCode")).upper()

    def normalize_member(payload, index: int):
        if not isinstance(payload, dict):
            return None, f"Member {index + 1} is invalid."
        name = clean_text(payload.get("name"))
        if not name:
            return None, f"Member {index + 1} needs a name."
        vote = clean_text(payload.get("vote")).lower()
        if vote and vote not in MEMBER_VOTES:
            return None, f"Member {index + 1} has an unsupported vote."
        size = clean_text(payload.get("size")).lower()
        if size and size not in MEMBER_SIZES:
            return None, f"Member {index + 1} has an unsupported size."

        member = {
            "id": resolve_member_id(payload, index),
            "name": name,
            "memberRollNumber": clean_text(payload.get("memberRollNumber")),
            "photo": clean_text(payload.get("photo")),
            "joinedAt": clean_text(payload.get("joinedAt")) or isoformat(datetime.utcnow()),
        }
        if vote:
            member["vote"] = vote
        if size:
            member["size"] = size
        if clean_text(payload.get("phone")):
            member["phone"] = clean_text(payload.get("phone"))
        return member, None

    def normalize_shipping(payload):
        if not isinstance(payload, dict):
            return None, "Shipping details are required."
        shipping = {
            key: clean_text(payload.get(key))
            for key in (
                "name",
                "phone",
                "email",
                "line1",
                "line2",
                "city",
                "state",
                "postalCode",
                "country",
            )
        }
        missing = [
            key
            for key in ("name", "line1", "city", "postalCode", "country")
            if not shipping[key]
        ]
        if missing:
            return None, f"Shipping is missing: {', '.join(missing)}."
        return {key: value for key, value in shipping.items() if value}, None

    def normalize_settings(payload):
        if not isinstance(payload, dict):
            return None, "Canvas settings are required."
        width = safe_positive_int(payload.get("widthPx"), 0)
        height = safe_positive_int(payload.get("heightPx"), 0)
        if not width or not height:
            return None, "Canvas settings need positive widthPx and heightPx."
        return (
            {
                "widthPx": width,
                "heightPx": height,
                "keepAspect": bool(payload.get("keepAspect", True)),
                "gapPx": safe_positive_int(payload.get("gapPx", 4), 0),
                "cellScale": safe_float(payload.get("cellScale"), 1.0) or 1.0,
                "dpi": safe_positive_int(payload.get("dpi"), 0) or 300,
            },
            None,
        )

    def upsert_reward_for_order(order_document):
        ambassador_id = order_document.get("ambassador_id")
        if not ambassador_id:
            return None
        member_count = len(order_document.get("members") or [])
        reward_amount = calculate_reward(
            member_count, app.config["JOIN_FEE"], app.config["AMBASSADOR_SHARE"]
        )
        now = datetime.utcnow()
        order_value = safe_float((order_document.get("pricing") or {}).get("total"), 0.0)
        return rewards_collection.find_one_and_update(
            {"ambassador_id": ambassador_id, "order_id": order_document["_id"]},
            {
                "$set": {
                    "order_label_snapshot": order_document.get("description")
                    or public_order_id(order_document),
                    "member_count_snapshot": member_count,
                    "reward_amount": reward_amount,
                    "order_value": order_value or None,
                    "updated_at": now,
                },
                "$setOnInsert": {"status": "pending", "created_at": now},
            },
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )

    def reward_totals(query: Dict) -> Dict[str, float]:
        totals = {"total": 0.0, "pending": 0.0, "paid": 0.0, "count": 0}
        for reward in rewards_collection.find(query):
            amount = safe_float(reward.get("reward_amount"), 0.0)
            totals["total"] += amount
            totals["count"] += 1
            if reward.get("status") == "paid":
                totals["paid"] += amount
            else:
                totals["pending"] += amount
        return totals

    def ambassador_stats(ambassador_id: ObjectId) -> Dict:
        referred_orders = list(orders_collection.find({"ambassador_id": ambassador_id}))
        totals = reward_totals({"ambassador_id": ambassador_id})
        return {
            "referredOrders": len(referred_orders),
            "totalMembers": sum(len(order.get("members") or []) for order in referred_orders),
            "completedOrders": sum(1 for order in referred_orders if order.get("paid")),
            "totalRewards": totals["total"],
            "pendingRewards": totals["pending"],
            "paidRewards": totals["paid"],
        }

    def render_api_base() -> str:
        configured = app.config.get("RENDER_API_BASE")
        if configured:
            return configured
        return f"{request.host_url.rstrip('/')}/api"

    def supplied_render_token() -> Optional[str]:
        if request.args.get("token"):
            return str(request.args.get("token"))
        if request.headers.get("X-Render-Token"):
            return str(request.headers.get("X-Render-Token"))
        authorization = request.headers.get("Authorization", "")
        if authorization.startswith("Bearer "):
            return authorization[7:]
        return None

    def require_render_access():
        secret = app.config.get("RENDER_TOKEN") or ""
        supplied = supplied_render_token()
        if secret and supplied and secrets.compare_digest(supplied, secret):
            return None

        try:
            verify_jwt_in_request(optional=True)
        except (JWTExtendedException, PyJWTError):
            return jsonify({"message": "Not authorized to access render data."}), 401
        if not get_jwt_identity():
            return jsonify({"message": "Not authorized to access render data."}), 401

        _, admin_error = require_admin_user()
        return admin_error

    ensure_default_admin()

    # --- Routes ---

    @app.route("/health")
    def health():
        return {"status": "ok"}, 200

    @app.route("/api/login", methods=["POST"])
    def login():
        payload = request.get_json(silent=True) or {}
        email = normalize_email(payload.get("email"))
        password = str(payload.get("password", ""))

        if not email or not password:
            return jsonify({"message": "Email and password are required."}), 400

        user = db.users.find_one({"email": email})
        if not user or not bcrypt.checkpw(password.encode("utf-8"), user["password"]):
            return jsonify({"message": "Invalid credentials"}), 401

        db.users.update_one(
            {"_id": user["_id"]},
            {"$set": {"last_login_at": datetime.utcnow()}},
        )
        token = create_access_token(identity=email)
        return jsonify(
            {
                "access_token": token,
                "user": {
                    "email": email,
                    "name": user.get("name") or "",
                    "role": get_user_role(user),
                },
            }
        )

    # OTP

    @app.route("/api/otp/send", methods=["POST"])
    def send_phone_otp():
        payload = request.get_json(silent=True) or {}
        raw_phone = clean_text(payload.get("phone"))
        purpose = clean_text(payload.get("purpose")) or "generic"

        valid, error = validate_phone_india(raw_phone)
        if not valid:
            return jsonify({"message": error}), 400

        phone10 = to_phone10(raw_phone)
        phone = f"+91{phone10}"
        now = datetime.utcnow()

        last_record = otp_collection.find_one(
            {"phone": phone}, sort=[("last_sent_at", -1)]
        )
        last_sent_at = last_record.get("last_sent_at") if last_record else None
        if isinstance(last_sent_at, datetime):
            elapsed = (now - last_sent_at).total_seconds()
            if elapsed < otp_cooldown_seconds:
                remaining = int(math.ceil(otp_cooldown_seconds - elapsed))
                return (
                    jsonify(
                        {
                            "message": f"Please wait {remaining}s before requesting OTP again.",
                            "retry_after": remaining,
                        }
                    ),
                    429,
                )

        otp = generate_otp_code()
        insert_result = otp_collection.insert_one(
            {
                "phone": phone,
                "phone10": phone10,
                "purpose": purpose,
                "otp_hash": bcrypt.hashpw(otp.encode("utf-8"), bcrypt.gensalt()),
                "expires_at": now + timedelta(minutes=otp_expiration_minutes),
                "attempts": 0,
                "last_sent_at": now,
                "created_at": now,
                "verified": False,
            }
        )

        sent, error_details = send_otp_sms(phone, otp, purpose)
        if not sent:
            otp_collection.delete_one({"_id": insert_result.inserted_id})
            app.logger.error("OTP dispatch failed for %s: %s", phone, error_details)
            return (
                jsonify(
                    {
                        "message": "We could not send the OTP. Please try again in a moment.",
                        "error": error_details,
                    }
                ),
                502,
            )

        return jsonify(
            {
                "message": "OTP sent.",
                "otp_length": otp_code_length,
                "expires_in_seconds": otp_expiration_minutes * 60,
            }
        )

    @app.route("/api/otp/verify", methods=["POST"])
    def verify_phone_otp():
        payload = request.get_json(silent=True) or {}
        phone10 = to_phone10(clean_text(payload.get("phone")))
        otp = re.sub(r"\D", "", str(payload.get("otp", "")))
        purpose = clean_text(payload.get("purpose")) or "generic"

        if not phone10 or len(otp) != otp_code_length:
            return jsonify({"message": "Invalid OTP"}), 400

        record = otp_collection.find_one(
            {"phone": f"+91{phone10}", "purpose": purpose},
            sort=[("created_at", -1)],
        )
        if not record:
            return jsonify({"message": "Invalid OTP"}), 400

        expires_at = record.get("expires_at")
        if not isinstance(expires_at, datetime) or expires_at < datetime.utcnow():
            return jsonify({"message": "OTP expired. Please resend."}), 400

        attempts = int(record.get("attempts", 0) or 0)
        if attempts >= max_failed_otp_attempts:
            return jsonify({"message": "Invalid OTP"}), 400

        stored_hash = record.get("otp_hash")
        if not stored_hash or not bcrypt.checkpw(otp.encode("utf-8"), stored_hash):
            otp_collection.update_one(
                {"_id": record["_id"]}, {"$set": {"attempts": attempts + 1}}
            )
            return jsonify({"message": "Invalid OTP"}), 400

        verified_at = datetime.utcnow()
        # Keep verified records alive for the window in which they can be consumed.
        verified_expires_at = verified_at + timedelta(
            minutes=app.config["OTP_VERIFIED_MAX_AGE_MINUTES"]
        )
        otp_collection.update_one(
            {"_id": record["_id"]},
            {
                "$set": {
                    "verified": True,
                    "verified_at": verified_at,
                    "expires_at": max(expires_at, verified_expires_at),
                }
            },
        )
        return jsonify(
            {
                "message": "Phone verified successfully.",
                "verified": True,
                "verified_at": isoformat(verified_at),
            }
        )

    # Ambassadors

    @app.route("/api/ambassadors", methods=["POST"])
    def create_ambassador_application():
        payload = request.get_json(silent=True) or {}
        name = clean_text(payload.get("name"))
        email = normalize_email(payload.get("email"))
        phone = clean_text(payload.get("phone"))

        if not name or not email or not phone:
            return jsonify({"message": "Name, email and phone are required"}), 400
        if not is_valid_email(email):
            return jsonify({"message": "Please provide a valid email"}), 400
        if not waitlist_phone_regex.match(phone):
            return jsonify({"message": "Please provide a valid phone number"}), 400

        existing_ambassador = ambassadors_collection.find_one(
            {"$or": [{"email": email}, {"phone": phone}]}
        )
        if existing_ambassador:
            return (
                jsonify(
                    {
                        "message": "An ambassador with this email or phone already exists.",
                        "ambassadorId": str(existing_ambassador["_id"]),
                    }
                ),
                409,
            )

        existing_entry = waitlist_collection.find_one(
            {"$or": [{"email": email}, {"phone": phone}]}
        )
        if existing_entry:
            duplicate_field = "email" if existing_entry.get("email") == email else "phone"
            status = existing_entry.get("status") or "pending"
            return (
                jsonify(
                    {
                        "message": f"Application with this {duplicate_field} already exists. Status: {status}",
                        "status": status,
                        "waitlistId": str(existing_entry["_id"]),
                    }
                ),
                409,
            )

        now = datetime.utcnow()
        entry = {
            "name": name,
            "email": email,
            "phone": phone,
            "college": clean_text(payload.get("college")),
            "city": clean_text(payload.get("city")),
            "state": clean_text(payload.get("state")),
            "graduation_year": clean_text(payload.get("graduationYear")),
            "status": "pending",
            "ambassador_id": None,
            "created_at": now,
            "updated_at": now,
        }
        try:
            insert_result = waitlist_collection.insert_one(entry)
        except DuplicateKeyError:
            return jsonify({"message": "Application with this email or phone already exists."}), 409

        app.logger.info("Waitlist entry created: %s", insert_result.inserted_id)
        return (
            jsonify(
                {
                    "message": "Application received. We will review it shortly.",
                    "status": "pending",
                    "waitlistId": str(insert_result.inserted_id),
                }
            ),
            201,
        )

    @app.route("/api/ambassadors/<ambassador_id>", methods=["GET"])
    def get_ambassador(ambassador_id: str):
        object_id = parse_object_id(ambassador_id)
        ambassador = (
            ambassadors_collection.find_one({"_id": object_id}) if object_id else None
        )
        if not ambassador:
            return jsonify({"message": "Ambassador not found"}), 404
        return jsonify({"ambassador": serialize_ambassador(ambassador)})

    @app.route("/api/ambassadors/<ambassador_id>/payout", methods=["PUT"])
    def update_payout_method(ambassador_id: str):
        payload = request.get_json(silent=True) or {}
        payout_type = clean_text(payload.get("type")).lower()
        upi_id = clean_text(payload.get("upiId"))

        if payout_type != "upi" or not upi_regex.match(upi_id):
            return (
                jsonify({"message": "Payout type 'upi' and valid upiId are required"}),
                400,
            )

        object_id = parse_object_id(ambassador_id)
        if object_id is None:
            return jsonify({"message": "Ambassador not found"}), 404

        ambassador = ambassadors_collection.find_one_and_update(
            {"_id": object_id},
            {
                "$set": {
                    "payout_method": {
                        "type": "upi",
                        "upi_id": upi_id,
                        "updated_at": datetime.utcnow(),
                    }
                }
            },
            return_document=ReturnDocument.AFTER,
        )
        if not ambassador:
            return jsonify({"message": "Ambassador not found"}), 404

        return jsonify({"ambassador": serialize_ambassador(ambassador)})

    @app.route("/api/ambassadors/<ambassador_id>/summary", methods=["GET"])
    def get_ambassador_summary(ambassador_id: str):
        object_id = parse_object_id(ambassador_id)
        ambassador = (
            ambassadors_collection.find_one({"_id": object_id}) if object_id else None
        )
        if not ambassador:
            return jsonify({"message": "Ambassador not found"}), 404

        recent_rewards = rewards_collection.find({"ambassador_id": object_id}).sort(
            [("created_at", -1), ("_id", -1)]
        ).limit(5)
        pending_payouts = rewards_collection.find(
            {"ambassador_id": object_id, "status": "pending"}
        ).sort("created_at", -1)
        return jsonify(
            {
                "ambassador": serialize_ambassador(ambassador),
                "stats": ambassador_stats(object_id),
                "recentRewards": [serialize_reward(reward) for reward in recent_rewards],
                "pendingPayouts": [serialize_reward(reward) for reward in pending_payouts],
            }
        )

    @app.route("/api/ambassadors/<ambassador_id>/rewards", methods=["GET"])
    def list_ambassador_rewards(ambassador_id: str):
        object_id = parse_object_id(ambassador_id)
        if object_id is None:
            return jsonify({"message": "Invalid ambassador identifier."}), 400

        page, limit = parse_pagination(default_limit=10)
        query = {"ambassador_id": object_id}
        cursor = (
            rewards_collection.find(query)
            .sort([("created_at", -1), ("_id", -1)])
            .skip((page - 1) * limit)
            .limit(limit)
        )
        items = [serialize_reward(reward) for reward in cursor]
        total = rewards_collection.count_documents(query)
        return jsonify(
            {"items": items, "pagination": pagination_payload(page, limit, total, len(items))}
        )

    # Referrals

    @app.route("/api/referrals/<code>", methods=["GET"])
    def resolve_referral(code: str):
        ambassador = resolve_referral_code(code)
        if not ambassador:
            return jsonify({"message": "Referral code not found."}), 404

        referral_code = ambassador["referral_code"]
        referral_clicks_collection.insert_one(
            {
                "ambassador_id": ambassador["_id"],
                "referral_code": referral_code,
                "ip_hash": hash_identifier(client_ip()),
                "ua_hash": hash_identifier(request.headers.get("User-Agent")),
                "created_at": datetime.utcnow(),
            }
        )

        response = jsonify(
            {
                "referralCode": referral_code,
                "ambassador": {
                    "id": str(ambassador["_id"]),
                    "name": ambassador.get("name") or "",
                    "college": ambassador.get("college") or "",
                },
            }
        )
        response.set_cookie(
            app.config["REFERRAL_COOKIE_NAME"],
            referral_code,
            max_age=app.config["REFERRAL_COOKIE_TTL_DAYS"] * 24 * 60 * 60,
            httponly=True,
            secure=app.config["ENVIRONMENT"] == "production",
            samesite="Lax",
            domain=app.config["COOKIE_DOMAIN"],
        )
        return response

    # Orders

    @app.route("/api/orders", methods=["POST"])
    @jwt_required(optional=True)
    def create_order():
        payload = request.get_json(silent=True) or {}

        grid_template = clean_text(payload.get("gridTemplate")).lower()
        if grid_template not in SUPPORTED_GRID_TEMPLATES:
            return jsonify({"message": "gridTemplate must be square, hexagonal or circle."}), 400

        raw_members = payload.get("members")
        if not isinstance(raw_members, list) or not raw_members:
            return jsonify({"message": "An order needs at least one member."}), 400
        members: List[Dict] = []
        seen_member_ids = set()
        for index, entry in enumerate(raw_members):
            member, member_error = normalize_member(entry, index)
            if member_error:
                return jsonify({"message": member_error}), 400
            if member["id"] in seen_member_ids:
                return jsonify({"message": f"Duplicate member id: {member['id']}"}), 400
            seen_member_ids.add(member["id"])
            members.append(member)

        shipping, shipping_error = normalize_shipping(payload.get("shipping"))
        if shipping_error:
            return jsonify({"message": shipping_error}), 400
        settings, settings_error = normalize_settings(payload.get("settings"))
        if settings_error:
            return jsonify({"message": settings_error}), 400

        pricing = calculate_pricing(
            len(members),
            tshirt_price=app.config["TSHIRT_PRICE"],
            print_price=app.config["PRINT_PRICE"],
            gst_rate=app.config["GST_RATE"],
        )

        now = datetime.utcnow()
        order_document = {
            "client_order_id": clean_text(payload.get("clientOrderId")) or None,
            "status": "new",
            "paid": False,
            "description": clean_text(payload.get("description")),
            "grid_template": grid_template,
            "members": members,
            "shipping": shipping,
            "settings": settings,
            "pricing": pricing,
            "center_variant_images": [],
            "user": normalize_email(get_jwt_identity()) or None,
            "created_at": now,
            "updated_at": now,
        }

        ambassador = resolve_referral_code(incoming_referral_code(payload))
        if ambassador:
            order_document["ambassador_id"] = ambassador["_id"]
            order_document["referral_code"] = ambassador["referral_code"]

        insert_result = orders_collection.insert_one(order_document)
        order_document["_id"] = insert_result.inserted_id
        app.logger.info(
            "Order %s created with %d members", insert_result.inserted_id, len(members)
        )
        return jsonify({"order": serialize_order(order_document)}), 201

    @app.route("/api/admin/orders", methods=["GET"])
    @jwt_required()
    def list_orders_admin():
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        page, limit = parse_pagination()
        query: Dict[str, object] = {}
        status = clean_text(request.args.get("status")).lower()
        if status:
            if status not in ORDER_STATUSES:
                return jsonify({"message": "Unknown order status filter."}), 400
            query["status"] = status
        search_term = clean_text(request.args.get("search"))
        if search_term:
            regex = re.compile(re.escape(search_term), re.IGNORECASE)
            query["$or"] = [
                {"client_order_id": regex},
                {"description": regex},
                {"shipping.name": regex},
                {"members.name": regex},
            ]

        cursor = (
            orders_collection.find(query)
            .sort([("created_at", -1), ("_id", -1)])
            .skip((page - 1) * limit)
            .limit(limit)
        )
        orders = [serialize_order(document) for document in cursor]
        total = orders_collection.count_documents(query)
        return jsonify(
            {"orders": orders, "pagination": pagination_payload(page, limit, total, len(orders))}
        )

    @app.route("/api/admin/orders/<order_identifier>", methods=["GET"])
    @jwt_required()
    def get_order_admin(order_identifier: str):
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        order_document = find_order(order_identifier)
        if not order_document:
            return jsonify({"message": "Order not found."}), 404
        return jsonify({"order": serialize_order(order_document)})

    @app.route("/api/admin/orders/<order_identifier>/status", methods=["PUT"])
    @jwt_required()
    def update_order_status(order_identifier: str):
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        payload = request.get_json(silent=True) or {}
        desired_status = clean_text(payload.get("status")).lower()
        if desired_status not in ORDER_STATUSES:
            return (
                jsonify({"message": f"Status must be one of: {', '.join(ORDER_STATUSES)}."}),
                400,
            )

        order_document = find_order(order_identifier)
        if not order_document:
            return jsonify({"message": "Order not found."}), 404

        updated = orders_collection.find_one_and_update(
            {"_id": order_document["_id"]},
            {"$set": {"status": desired_status, "updated_at": datetime.utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        return jsonify(
            {"message": f"Order marked {desired_status}.", "order": serialize_order(updated)}
        )

    @app.route("/api/admin/orders/<order_identifier>/mark-paid", methods=["POST"])
    @jwt_required()
    def mark_order_paid(order_identifier: str):
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        payload = request.get_json(silent=True) or {}
        order_document = find_order(order_identifier)
        if not order_document:
            return jsonify({"message": "Order not found."}), 404

        now = datetime.utcnow()
        updated = orders_collection.find_one_and_update(
            {"_id": order_document["_id"]},
            {
                "$set": {
                    "paid": True,
                    "paid_at": order_document.get("paid_at") or now,
                    "payment_id": clean_text(payload.get("paymentId"))
                    or order_document.get("payment_id"),
                    "updated_at": now,
                }
            },
            return_document=ReturnDocument.AFTER,
        )
        reward = upsert_reward_for_order(updated)
        return jsonify(
            {
                "message": "Order marked as paid.",
                "order": serialize_order(updated),
                "reward": serialize_reward(reward) if reward else None,
            }
        )

    @app.route("/api/admin/orders/<order_identifier>/variants", methods=["GET"])
    @jwt_required()
    def list_order_variants(order_identifier: str):
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        order_document = find_order(order_identifier)
        if not order_document:
            return jsonify({"message": "Order not found."}), 404

        order = serialize_order(order_document)
        can_generate, reason = can_generate_variants(order)
        if not can_generate:
            return jsonify({"message": reason, "variants": []}), 400

        try:
            variants = generate_grid_variants(order)
        except ValueError as exc:
            return jsonify({"message": str(exc), "variants": []}), 400
        return jsonify({"variants": [variant.to_dict() for variant in variants]})

    @app.route("/api/admin/orders/<order_identifier>/variant-images", methods=["POST"])
    @jwt_required()
    def save_variant_image(order_identifier: str):
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        payload = request.get_json(silent=True) or {}
        variant_id = clean_text(payload.get("variantId"))
        image_url = clean_text(payload.get("imageUrl"))
        if not variant_id or not image_url:
            return jsonify({"message": "variantId and imageUrl are required."}), 400

        order_document = find_order(order_identifier)
        if not order_document:
            return jsonify({"message": "Order not found."}), 404

        entry = {
            "variantId": variant_id,
            "imageUrl": image_url,
            "centerMemberName": clean_text(payload.get("centerMemberName")),
        }
        images = [
            image
            for image in order_document.get("center_variant_images") or []
            if image.get("variantId") != variant_id
        ]
        images.append(entry)
        orders_collection.update_one(
            {"_id": order_document["_id"]},
            {"$set": {"center_variant_images": images, "updated_at": datetime.utcnow()}},
        )
        return jsonify({"message": "Variant image saved.", "variantImages": images})

    # Admin: waitlist

    @app.route("/api/admin/ambassadors/waitlist", methods=["GET"])
    @jwt_required()
    def list_waitlist():
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        page, limit = parse_pagination()
        status = clean_text(request.args.get("status")).lower() or "pending"
        if status not in WAITLIST_STATUSES:
            return jsonify({"message": "Unknown waitlist status."}), 400

        query: Dict[str, object] = {"status": status}
        search_term = clean_text(request.args.get("search"))
        if search_term:
            regex = re.compile(re.escape(search_term), re.IGNORECASE)
            query["$or"] = [
                {"name": regex},
                {"email": regex},
                {"phone": regex},
                {"college": regex},
            ]

        cursor = (
            waitlist_collection.find(query)
            .sort("created_at", -1)
            .skip((page - 1) * limit)
            .limit(limit)
        )
        items = [serialize_waitlist_entry(document) for document in cursor]
        total = waitlist_collection.count_documents(query)
        return jsonify(
            {"items": items, "pagination": pagination_payload(page, limit, total, len(items))}
        )

    def load_pending_waitlist_entry(waitlist_id: str):
        object_id = parse_object_id(waitlist_id)
        entry = waitlist_collection.find_one({"_id": object_id}) if object_id else None
        if not entry:
            return None, (jsonify({"message": "Waitlist entry not found"}), 404)
        if entry.get("status") != "pending":
            return None, (
                jsonify({"message": f"Waitlist entry is already {entry.get('status')}"}),
                400,
            )
        return entry, None

    @app.route("/api/admin/ambassadors/waitlist/<waitlist_id>/approve", methods=["POST"])
    @jwt_required()
    def approve_waitlist_entry(waitlist_id: str):
        admin_user, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        entry, entry_error = load_pending_waitlist_entry(waitlist_id)
        if entry_error:
            return entry_error

        ambassador = ambassadors_collection.find_one(
            {"$or": [{"email": entry["email"]}, {"phone": entry["phone"]}]}
        )
        linked_existing = ambassador is not None
        if not linked_existing:
            ambassador = {
                "name": entry.get("name"),
                "email": entry.get("email"),
                "phone": entry.get("phone"),
                "college": entry.get("college") or "",
                "city": entry.get("city") or "",
                "state": entry.get("state") or "",
                "graduation_year": entry.get("graduation_year") or "",
                "referral_code": generate_referral_code(),
                "payout_method": {"type": "upi", "upi_id": None, "updated_at": None},
                "created_at": datetime.utcnow(),
            }
            ambassador["_id"] = ambassadors_collection.insert_one(ambassador).inserted_id
            app.logger.info("Ambassador %s created from waitlist", ambassador["_id"])

        now = datetime.utcnow()
        waitlist_collection.update_one(
            {"_id": entry["_id"]},
            {
                "$set": {
                    "status": "approved",
                    "reviewed_at": now,
                    "reviewed_by": admin_user.get("_id") if admin_user else None,
                    "ambassador_id": ambassador["_id"],
                    "updated_at": now,
                }
            },
        )

        sent, email_error = send_ambassador_approval_email(entry, ambassador, linked_existing)
        if not sent:
            app.logger.warning(
                "Approval email to %s failed: %s", entry.get("email"), email_error
            )

        return jsonify(
            {
                "message": "Waitlist entry approved and linked to existing ambassador"
                if linked_existing
                else "Waitlist entry approved and ambassador created",
                "ambassador": serialize_ambassador(ambassador),
                "waitlistId": str(entry["_id"]),
                "emailSent": sent,
            }
        )

    @app.route("/api/admin/ambassadors/waitlist/<waitlist_id>/reject", methods=["POST"])
    @jwt_required()
    def reject_waitlist_entry(waitlist_id: str):
        admin_user, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        entry, entry_error = load_pending_waitlist_entry(waitlist_id)
        if entry_error:
            return entry_error

        payload = request.get_json(silent=True) or {}
        now = datetime.utcnow()
        update = {
            "status": "rejected",
            "reviewed_at": now,
            "reviewed_by": admin_user.get("_id") if admin_user else None,
            "updated_at": now,
        }
        reason = clean_text(payload.get("reason"))
        if reason:
            update["rejection_reason"] = reason
        waitlist_collection.update_one({"_id": entry["_id"]}, {"$set": update})

        return jsonify(
            {"message": "Waitlist entry rejected", "waitlistId": str(entry["_id"])}
        )

    # Admin: rewards and stats

    @app.route("/api/admin/rewards", methods=["GET"])
    @jwt_required()
    def list_rewards_admin():
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        page, limit = parse_pagination()
        query: Dict[str, object] = {}
        status = clean_text(request.args.get("status")).lower()
        if status:
            if status not in REWARD_STATUSES:
                return jsonify({"message": "Unknown reward status."}), 400
            query["status"] = status

        cursor = (
            rewards_collection.find(query)
            .sort([("created_at", -1), ("_id", -1)])
            .skip((page - 1) * limit)
            .limit(limit)
        )
        items = [serialize_reward(reward) for reward in cursor]
        total = rewards_collection.count_documents(query)
        return jsonify(
            {"items": items, "pagination": pagination_payload(page, limit, total, len(items))}
        )

    @app.route("/api/admin/rewards/<reward_id>/pay", methods=["POST"])
    @jwt_required()
    def mark_reward_paid(reward_id: str):
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        object_id = parse_object_id(reward_id)
        reward = rewards_collection.find_one({"_id": object_id}) if object_id else None
        if not reward:
            return jsonify({"message": "Reward not found."}), 404
        if reward.get("status") == "paid":
            return jsonify({"message": "Reward is already paid."}), 400

        payload = request.get_json(silent=True) or {}
        updated = rewards_collection.find_one_and_update(
            {"_id": object_id},
            {
                "$set": {
                    "status": "paid",
                    "paid_at": datetime.utcnow(),
                    "paid_tx_ref": clean_text(payload.get("txRef")) or None,
                    "paid_via": clean_text(payload.get("via")) or "upi",
                }
            },
            return_document=ReturnDocument.AFTER,
        )
        return jsonify({"message": "Reward marked as paid.", "reward": serialize_reward(updated)})

    @app.route("/api/admin/stats", methods=["GET"])
    @jwt_required()
    def admin_stats():
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        orders_by_status = {
            status: orders_collection.count_documents({"status": status})
            for status in ORDER_STATUSES
        }
        paid_revenue = sum(
            safe_float((order.get("pricing") or {}).get("total"), 0.0)
            for order in orders_collection.find({"paid": True})
        )
        waitlist_counts = {
            status: waitlist_collection.count_documents({"status": status})
            for status in WAITLIST_STATUSES
        }
        totals = reward_totals({})
        return jsonify(
            {
                "orders": {
                    "total": sum(orders_by_status.values()),
                    "byStatus": orders_by_status,
                    "paid": orders_collection.count_documents({"paid": True}),
                    "paidRevenue": round(paid_revenue, 2),
                },
                "waitlist": waitlist_counts,
                "ambassadors": ambassadors_collection.count_documents({}),
                "rewards": {
                    "total": totals["total"],
                    "pending": totals["pending"],
                    "paid": totals["paid"],
                    "count": totals["count"],
                },
            }
        )

    # Uploads

    def allowed_image_extension(filename: str) -> bool:
        extension = os.path.splitext(filename)[1].lower().lstrip(".")
        if not extension:
            return False
        return extension in app.config["PHOTO_ALLOWED_EXTENSIONS"]

    @app.route("/api/uploads/member-photo", methods=["POST"])
    def upload_member_photo():
        image_file = request.files.get("photo")
        if not image_file or not getattr(image_file, "filename", ""):
            return jsonify({"message": "A photo file is required."}), 400

        filename = secure_filename(image_file.filename)
        if not filename or not allowed_image_extension(filename):
            return (
                jsonify(
                    {
                        "message": "Unsupported image format. Upload PNG, JPG, JPEG, GIF, or WEBP files."
                    }
                ),
                400,
            )

        try:
            data_url = compress_to_target_size(
                image_file.read(), app.config["PHOTO_TARGET_SIZE_KB"]
            )
        except ValueError:
            return jsonify({"message": "We could not read that image."}), 400

        hosted_url = upload_image(data_url)
        return jsonify(
            {
                "url": hosted_url or data_url,
                "hosted": bool(hosted_url),
                "size": data_url_size(data_url),
            }
        )

    # Groups

    def current_user_document():
        identity = normalize_email(get_jwt_identity())
        if not identity:
            return None
        return db.users.find_one({"email": identity})

    def require_group_leader(group_document, message: str):
        current_user = current_user_document()
        if (
            current_user
            and current_user.get("is_leader")
            and current_user.get("group_id") == group_document["_id"]
        ):
            return current_user, None
        return None, (jsonify({"message": message}), 403)

    def find_group(group_identifier):
        object_id = parse_object_id(group_identifier)
        if object_id is None:
            return None
        return groups_collection.find_one({"_id": object_id})

    def serialize_group_member(member, include_photo: bool = True) -> Dict:
        serialized = dict(member)
        if not include_photo:
            serialized.pop("photo", None)
        return serialized

    def serialize_group(document, include_photos: bool = True) -> Dict:
        group_id = str(document.get("_id"))
        ambassador_id = document.get("ambassador_id")
        members = document.get("members") or []
        return {
            "id": group_id,
            "name": document.get("name") or "",
            "yearOfPassing": document.get("year_of_passing") or "",
            "totalMembers": document.get("total_members") or 0,
            "memberCount": len(members),
            "gridTemplate": document.get("grid_template") or "square",
            "status": document.get("status") or "created",
            "shareLink": f"/join/{group_id}",
            "members": [serialize_group_member(member, include_photos) for member in members],
            "votes": document.get("votes") or empty_votes(),
            "ambassadorId": str(ambassador_id) if ambassador_id else None,
            "referralCode": document.get("referral_code") or None,
            "referredAt": isoformat(document.get("referred_at")),
            "createdAt": isoformat(document.get("created_at")),
            "updatedAt": isoformat(document.get("updated_at")),
        }

    def empty_votes() -> Dict[str, int]:
        return {"hexagonal": 0, "square": 0, "circle": 0, "any": 0}

    def push_group_member(group_document, member: Dict):
        # member_count mirrors len(members) so capacity can be checked atomically.
        query = {
            "_id": group_document["_id"],
            "member_count": {"$lt": int(group_document.get("total_members") or 0)},
            "members.memberRollNumber": {"$ne": member["memberRollNumber"]},
        }
        return groups_collection.find_one_and_update(
            query,
            {
                "$push": {"members": member},
                "$inc": {"member_count": 1, f"votes.{member['vote']}": 1},
                "$set": {"updated_at": datetime.utcnow()},
            },
            return_document=ReturnDocument.AFTER,
        )

    def group_is_full(group_document) -> bool:
        return len(group_document.get("members") or []) >= int(
            group_document.get("total_members") or 0
        )

    def has_roll_number(group_document, roll_number: str) -> bool:
        return any(
            member.get("memberRollNumber") == roll_number
            for member in group_document.get("members") or []
        )

    def winning_template(votes: Dict, current: str) -> str:
        winner = current
        highest = 0
        for template in ("hexagonal", "square", "circle"):
            count = int((votes or {}).get(template) or 0)
            if count > highest:
                highest = count
                winner = template
        return winner

    @app.route("/api/groups", methods=["POST"])
    @jwt_required()
    def create_group():
        current_user = current_user_document()
        if not current_user:
            return jsonify({"message": "User not found."}), 401

        payload = request.get_json(silent=True) or {}
        name = clean_text(payload.get("name"))
        year_of_passing = clean_text(payload.get("yearOfPassing"))
        total_members = safe_positive_int(payload.get("totalMembers"), 0)
        grid_template = clean_text(payload.get("gridTemplate")).lower() or "square"

        if not name:
            return jsonify({"message": "Group name is required"}), 400
        if not year_of_passing:
            return jsonify({"message": "Year of passing is required"}), 400
        if total_members < 1:
            return jsonify({"message": "Total members must be a positive number"}), 400
        if grid_template not in SUPPORTED_GRID_TEMPLATES:
            return jsonify({"message": "gridTemplate must be square, hexagonal or circle."}), 400

        now = datetime.utcnow()
        group_document = {
            "name": name,
            "year_of_passing": year_of_passing,
            "total_members": total_members,
            "grid_template": grid_template,
            "members": [],
            "member_count": 0,
            "votes": empty_votes(),
            "status": "created",
            "ambassador_id": None,
            "referral_code": None,
            "referred_at": None,
            "created_by_user_id": current_user["_id"],
            "created_at": now,
            "updated_at": now,
        }
        ambassador = resolve_referral_code(incoming_referral_code(payload))
        if ambassador:
            group_document["ambassador_id"] = ambassador["_id"]
            group_document["referral_code"] = ambassador["referral_code"]
            group_document["referred_at"] = now

        insert_result = groups_collection.insert_one(group_document)
        group_document["_id"] = insert_result.inserted_id
        db.users.update_one(
            {"_id": current_user["_id"]},
            {"$set": {"is_leader": True, "group_id": insert_result.inserted_id}},
        )
        app.logger.info("Group %s created by %s", insert_result.inserted_id, current_user["email"])
        return jsonify(serialize_group(group_document)), 201

    @app.route("/api/groups", methods=["GET"])
    @jwt_required()
    def list_groups():
        current_user = current_user_document()
        if not current_user or not (
            current_user.get("is_leader") or get_user_role(current_user) == "admin"
        ):
            return jsonify({"message": "Not authorized as a leader"}), 403

        page, limit = parse_pagination(default_limit=10)
        sort_fields = {
            "createdAt": "created_at",
            "name": "name",
            "yearOfPassing": "year_of_passing",
            "totalMembers": "total_members",
        }
        sort_field = sort_fields.get(request.args.get("sortBy") or "createdAt", "created_at")
        sort_order = 1 if request.args.get("sortOrder") == "asc" else -1

        query: Dict[str, object] = {}
        year_of_passing = clean_text(request.args.get("yearOfPassing"))
        if year_of_passing:
            query["year_of_passing"] = year_of_passing
        search = clean_text(request.args.get("search"))
        if search:
            query["name"] = {"$regex": re.escape(search), "$options": "i"}

        total = groups_collection.count_documents(query)
        cursor = (
            groups_collection.find(query)
            .sort(sort_field, sort_order)
            .skip((page - 1) * limit)
            .limit(limit)
        )
        groups = [serialize_group(document, include_photos=False) for document in cursor]
        return jsonify(
            {"groups": groups, "pagination": pagination_payload(page, limit, total, len(groups))}
        )

    @app.route("/api/groups/<group_identifier>", methods=["GET"])
    def get_group(group_identifier: str):
        group_document = find_group(group_identifier)
        if not group_document:
            return jsonify({"message": "Group not found"}), 404
        return jsonify(serialize_group(group_document))

    @app.route("/api/groups/<group_identifier>/members", methods=["GET"])
    def list_group_members(group_identifier: str):
        group_document = find_group(group_identifier)
        if not group_document:
            return jsonify({"message": "Group not found"}), 404

        page, limit = parse_pagination(default_limit=10)
        members = list(group_document.get("members") or [])

        search = clean_text(request.args.get("search")).lower()
        if search:
            members = [
                member
                for member in members
                if search in str(member.get("name") or "").lower()
                or search in str(member.get("memberRollNumber") or "").lower()
            ]

        sort_by = request.args.get("sortBy") or "joinedAt"
        if sort_by in ("joinedAt", "name", "memberRollNumber"):
            members.sort(
                key=lambda member: str(member.get(sort_by) or "").lower(),
                reverse=request.args.get("sortOrder") != "asc",
            )

        total = len(members)
        skip = (page - 1) * limit
        page_members = [serialize_group_member(member) for member in members[skip : skip + limit]]
        return jsonify(
            {
                "members": page_members,
                "pagination": pagination_payload(page, limit, total, len(page_members)),
            }
        )

    @app.route("/api/groups/<group_identifier>/join", methods=["POST"])
    @jwt_required(optional=True)
    def join_group(group_identifier: str):
        payload = request.get_json(silent=True) or {}
        name = clean_text(payload.get("name"))
        roll_number = clean_text(payload.get("memberRollNumber"))
        photo = clean_text(payload.get("photo"))
        vote = clean_text(payload.get("vote")).lower()
        size = clean_text(payload.get("size")).lower() or "m"

        if not name:
            return jsonify({"message": "Name is required"}), 400
        if not roll_number:
            return jsonify({"message": "Member roll number is required"}), 400
        if not photo:
            return jsonify({"message": "Photo is required"}), 400
        if vote not in MEMBER_VOTES:
            return jsonify({"message": "Vote must be one of: hexagonal, square, circle"}), 400
        if size not in MEMBER_SIZES:
            return jsonify({"message": "Unsupported size."}), 400

        normalized_phone = standardize_phone_number(clean_text(payload.get("phone")))
        if not normalized_phone:
            return jsonify({"message": "Valid phone number is required"}), 400

        otp_record = otp_collection.find_one(
            {"phone": normalized_phone, "verified": True},
            sort=[("verified_at", -1)],
        )
        verified_window = timedelta(minutes=app.config["OTP_VERIFIED_MAX_AGE_MINUTES"])
        verified_at = (otp_record or {}).get("verified_at")
        if (
            not otp_record
            or not isinstance(verified_at, datetime)
            or datetime.utcnow() - verified_at > verified_window
            or otp_record.get("used_at")
        ):
            return (
                jsonify(
                    {"message": "Phone number has not been verified. Please complete OTP verification."}
                ),
                400,
            )

        group_document = find_group(group_identifier)
        if not group_document:
            return jsonify({"message": "Group not found"}), 404
        if group_is_full(group_document):
            return jsonify({"message": "Group is already full"}), 400
        if has_roll_number(group_document, roll_number):
            return jsonify({"message": "Member with this roll number already exists"}), 400

        member = {
            "id": str(ObjectId()),
            "name": name,
            "memberRollNumber": roll_number,
            "photo": photo,
            "vote": vote,
            "size": size,
            "zoomLevel": safe_float(payload.get("zoomLevel"), 0.4),
            "phone": normalized_phone,
            "joinedAt": isoformat(datetime.utcnow()),
        }
        if not push_group_member(group_document, member):
            return jsonify({"message": "Group is already full"}), 400

        current_user = current_user_document()
        if current_user:
            leads_this_group = bool(
                current_user.get("is_leader")
                and current_user.get("group_id") == group_document["_id"]
            )
            db.users.update_one(
                {"_id": current_user["_id"]},
                {"$set": {"group_id": group_document["_id"], "is_leader": leads_this_group}},
            )

        otp_collection.update_one(
            {"_id": otp_record["_id"]},
            {"$set": {"used_at": datetime.utcnow(), "verified": False}},
        )
        app.logger.info("Member %s joined group %s", member["id"], group_document["_id"])
        return (
            jsonify(
                {
                    "groupId": str(group_document["_id"]),
                    "member": member,
                    "message": "Successfully joined group",
                }
            ),
            201,
        )

    @app.route("/api/groups/<group_identifier>/join-paid", methods=["POST"])
    @jwt_required()
    def join_group_paid(group_identifier: str):
        payload = request.get_json(silent=True) or {}
        member_payload = payload.get("member")
        payment = payload.get("payment")
        if not isinstance(member_payload, dict) or not isinstance(payment, dict):
            return jsonify({"message": "Missing member or payment payload"}), 400

        member, member_error = build_paid_member(member_payload, payment, require_email=False)
        if member_error:
            return jsonify({"message": "Invalid member payload"}), 400

        signature_error = check_payment_signature(payment)
        if signature_error:
            return jsonify({"message": signature_error[0]}), signature_error[1]

        group_document = find_group(group_identifier)
        if not group_document:
            return jsonify({"message": "Group not found"}), 404

        phone = member.get("phone")
        for existing in group_document.get("members") or []:
            same_person = existing.get("memberRollNumber") == member["memberRollNumber"] or (
                phone and existing.get("phone") == phone
            )
            if same_person and existing.get("paidDeposit"):
                return jsonify(
                    {
                        "message": "Already joined with deposit",
                        "groupId": str(group_document["_id"]),
                        "member": existing,
                    }
                )
        if has_roll_number(group_document, member["memberRollNumber"]):
            return jsonify({"message": "Member with this roll number already exists"}), 400

        if group_is_full(group_document):
            return jsonify({"message": "Group is already full"}), 409

        if not push_group_member(group_document, member):
            app.logger.error(
                "Paid join for group %s lost the last seat (payment %s)",
                group_document["_id"],
                member["depositPaymentId"],
            )
            return jsonify({"message": "Group became full. Please contact support for refund."}), 409

        return (
            jsonify(
                {
                    "groupId": str(group_document["_id"]),
                    "member": member,
                    "message": "Joined with deposit",
                }
            ),
            201,
        )

    @app.route("/api/groups/<group_identifier>/template", methods=["PUT"])
    def update_group_template(group_identifier: str):
        group_document = find_group(group_identifier)
        if not group_document:
            return jsonify({"message": "Group not found"}), 404

        # Anonymous callers may refresh the template; a signed-in caller must lead the group.
        if request.headers.get("Authorization"):
            try:
                verify_jwt_in_request()
            except (JWTExtendedException, PyJWTError):
                return jsonify({"message": "Not authorized, token failed"}), 401
            _, leader_error = require_group_leader(
                group_document, "Not authorized to update this group"
            )
            if leader_error:
                return leader_error

        payload = request.get_json(silent=True) or {}
        requested = clean_text(payload.get("gridTemplate")).lower()
        if requested and requested not in SUPPORTED_GRID_TEMPLATES:
            return jsonify({"message": "gridTemplate must be square, hexagonal or circle."}), 400

        current = group_document.get("grid_template") or "square"
        winner = winning_template(group_document.get("votes"), current)
        if winner == current and not requested:
            return jsonify(
                {
                    "id": str(group_document["_id"]),
                    "gridTemplate": current,
                    "message": "Group template is already up to date",
                }
            )

        template = requested or winner
        groups_collection.update_one(
            {"_id": group_document["_id"]},
            {"$set": {"grid_template": template, "updated_at": datetime.utcnow()}},
        )
        return jsonify(
            {
                "id": str(group_document["_id"]),
                "gridTemplate": template,
                "message": "Group template updated successfully",
            }
        )

    @app.route("/api/groups/<group_identifier>", methods=["PUT"])
    @jwt_required()
    def update_group(group_identifier: str):
        group_document = find_group(group_identifier)
        if not group_document:
            return jsonify({"message": "Group not found"}), 404
        _, leader_error = require_group_leader(group_document, "Not authorized to update this group")
        if leader_error:
            return leader_error

        payload = request.get_json(silent=True) or {}
        updates: Dict[str, object] = {}
        if clean_text(payload.get("name")):
            updates["name"] = clean_text(payload.get("name"))
        if clean_text(payload.get("yearOfPassing")):
            updates["year_of_passing"] = clean_text(payload.get("yearOfPassing"))
        if payload.get("totalMembers") is not None:
            total_members = safe_positive_int(payload.get("totalMembers"), 0)
            if total_members < 1:
                return jsonify({"message": "Total members must be a positive number"}), 400
            if total_members < len(group_document.get("members") or []):
                return jsonify({"message": "Total members cannot be below the current member count"}), 400
            updates["total_members"] = total_members
        if clean_text(payload.get("gridTemplate")):
            grid_template = clean_text(payload.get("gridTemplate")).lower()
            if grid_template not in SUPPORTED_GRID_TEMPLATES:
                return jsonify({"message": "gridTemplate must be square, hexagonal or circle."}), 400
            updates["grid_template"] = grid_template

        updates["updated_at"] = datetime.utcnow()
        updated = groups_collection.find_one_and_update(
            {"_id": group_document["_id"]},
            {"$set": updates},
            return_document=ReturnDocument.AFTER,
        )
        return jsonify(
            {
                "id": str(updated["_id"]),
                "name": updated.get("name"),
                "yearOfPassing": updated.get("year_of_passing"),
                "totalMembers": updated.get("total_members"),
                "gridTemplate": updated.get("grid_template"),
                "message": "Group updated successfully",
            }
        )

    @app.route("/api/groups/<group_identifier>", methods=["DELETE"])
    @jwt_required()
    def delete_group(group_identifier: str):
        group_document = find_group(group_identifier)
        if not group_document:
            return jsonify({"message": "Group not found"}), 404
        _, leader_error = require_group_leader(group_document, "Not authorized to delete this group")
        if leader_error:
            return leader_error

        db.users.update_many(
            {"group_id": group_document["_id"]},
            {"$set": {"group_id": None, "is_leader": False}},
        )
        groups_collection.delete_one({"_id": group_document["_id"]})
        app.logger.info("Group %s removed", group_document["_id"])
        return jsonify({"message": "Group removed successfully"})

    # Payments

    def join_amount_paise() -> int:
        pricing = calculate_pricing(
            1,
            tshirt_price=app.config["TSHIRT_PRICE"],
            print_price=app.config["PRINT_PRICE"],
            gst_rate=app.config["GST_RATE"],
        )
        return int(round(pricing["per_item_total"] * 100))

    def format_paise(amount) -> str:
        if isinstance(amount, bool) or not isinstance(amount, (int, float)):
            return "N/A"
        return f"₹{amount / 100:.2f}"

    def razorpay_signature_valid(order_id: str, payment_id: str, signature: str) -> bool:
        secret = app.config["RAZORPAY_KEY_SECRET"]
        expected = hmac.new(
            secret.encode("utf-8"),
            f"{order_id}|{payment_id}".encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()
        return hmac.compare_digest(expected, str(signature))

    def check_payment_signature(payment: Dict) -> Optional[Tuple[str, int]]:
        order_id = clean_text(payment.get("razorpay_order_id"))
        payment_id = clean_text(payment.get("razorpay_payment_id"))
        signature = clean_text(payment.get("razorpay_signature"))
        if not order_id or not payment_id or not signature:
            return "Missing payment verification fields", 400
        if not app.config["RAZORPAY_KEY_SECRET"]:
            return "Razorpay secret not configured", 500
        if not razorpay_signature_valid(order_id, payment_id, signature):
            return "Invalid payment signature", 400
        return None

    def build_paid_member(member_payload: Dict, payment: Dict, require_email: bool = True):
        name = clean_text(member_payload.get("name"))
        email = normalize_email(member_payload.get("email"))
        roll_number = clean_text(member_payload.get("memberRollNumber"))
        photo = clean_text(member_payload.get("photo"))
        vote = clean_text(member_payload.get("vote")).lower()
        size = clean_text(member_payload.get("size")).lower() or "m"
        if not name or not roll_number or not photo or not vote:
            return None, "Incomplete member details provided"
        if require_email and not email:
            return None, "Incomplete member details provided"
        if vote not in MEMBER_VOTES or size not in MEMBER_SIZES:
            return None, "Incomplete member details provided"

        now = datetime.utcnow()
        zoom_level = member_payload.get("zoomLevel")
        if isinstance(zoom_level, bool) or not isinstance(zoom_level, (int, float)):
            zoom_level = 0.4
        member = {
            "id": str(ObjectId()),
            "name": name,
            "email": email or None,
            "memberRollNumber": roll_number,
            "photo": photo,
            "vote": vote,
            "size": size,
            "zoomLevel": zoom_level,
            "paidDeposit": True,
            "depositAmountPaise": join_amount_paise(),
            "depositOrderId": clean_text(payment.get("razorpay_order_id")),
            "depositPaymentId": clean_text(payment.get("razorpay_payment_id")),
            "depositPaidAt": isoformat(now),
            "joinedAt": isoformat(now),
        }
        phone = clean_text(member_payload.get("phone"))
        if phone:
            member["phone"] = standardize_phone_number(phone)
        return member, None

    def create_razorpay_order(amount_paise: int, currency: str, receipt: str, notes: Dict):
        try:
            response = requests.post(
                f"{app.config['RAZORPAY_API_BASE']}/orders",
                json={
                    "amount": amount_paise,
                    "currency": currency,
                    "receipt": receipt,
                    "notes": notes,
                },
                auth=(app.config["RAZORPAY_KEY_ID"], app.config["RAZORPAY_KEY_SECRET"]),
                timeout=payment_timeout_seconds,
            )
        except requests.RequestException as exc:
            app.logger.error("Razorpay order request failed: %s", exc)
            return None
        if not response.ok:
            app.logger.error("Razorpay order failed: %s %s", response.status_code, response.text)
            return None
        try:
            return response.json()
        except ValueError:
            app.logger.error("Razorpay order response was not JSON: %s", response.text)
            return None

    def send_payment_confirmation_email(recipient: str, name: str, order_id: str, payment_id: str, amount):
        html_body = render_template(
            "emails/payment_confirmation.html",
            name=name or "Customer",
            order_id=order_id,
            payment_id=payment_id,
            amount=format_paise(amount),
            paid_on=datetime.utcnow().strftime("%d/%m/%Y"),
            year=datetime.utcnow().year,
        )
        payload: Dict[str, object] = {
            "from": f"Signature Day <{app.config['AMBASSADOR_EMAIL_SENDER']}>",
            "to": [recipient],
            "subject": "Payment Confirmation - Signature Day",
            "html": html_body,
        }
        return send_email_via_resend(payload, app.config["RESEND_API_KEY"])

    def send_group_registration_email(group_document, member: Dict):
        html_body = render_template(
            "emails/group_registration.html",
            name=member["name"],
            group_name=group_document.get("name") or "",
            year_of_passing=group_document.get("year_of_passing") or "",
            order_id=member["depositOrderId"],
            payment_id=member["depositPaymentId"],
            roll_number=member["memberRollNumber"],
            amount=format_paise(member["depositAmountPaise"]),
            year=datetime.utcnow().year,
        )
        payload: Dict[str, object] = {
            "from": f"Signature Day <{app.config['AMBASSADOR_EMAIL_SENDER']}>",
            "to": [member["email"]],
            "subject": f"Confirmation of Registration - {group_document.get('name') or ''}",
            "html": html_body,
        }
        return send_email_via_resend(payload, app.config["RESEND_API_KEY"])

    @app.route("/api/payments/key", methods=["GET"])
    def get_payment_key():
        key_id = app.config["RAZORPAY_KEY_ID"]
        if not key_id:
            return jsonify({"message": "Razorpay key not configured"}), 500
        return jsonify({"keyId": key_id})

    @app.route("/api/payments/join-amount", methods=["GET"])
    def get_join_amount():
        pricing = calculate_pricing(
            1,
            tshirt_price=app.config["TSHIRT_PRICE"],
            print_price=app.config["PRINT_PRICE"],
            gst_rate=app.config["GST_RATE"],
        )
        return jsonify(
            {
                "amount": pricing["per_item_total"],
                "amountPaise": join_amount_paise(),
                "currency": "INR",
                "pricing": pricing,
            }
        )

    def create_payment_order():
        payload = request.get_json(silent=True) or {}
        amount = payload.get("amount")
        if isinstance(amount, bool) or not isinstance(amount, (int, float)) or amount <= 0:
            return jsonify({"message": "Amount (in paise) is required"}), 400
        if not app.config["RAZORPAY_KEY_ID"] or not app.config["RAZORPAY_KEY_SECRET"]:
            app.logger.error("Razorpay keys are not configured.")
            return jsonify({"message": "Failed to create payment order"}), 500

        notes = payload.get("notes") if isinstance(payload.get("notes"), dict) else {}
        receipt = clean_text(payload.get("receipt")) or f"rcpt_{int(time.time() * 1000)}"
        order = create_razorpay_order(
            int(round(amount)),
            clean_text(payload.get("currency")).upper() or "INR",
            receipt,
            notes,
        )
        if not order:
            return jsonify({"message": "Failed to create payment order"}), 500
        return (
            jsonify(
                {
                    "id": order.get("id"),
                    "amount": order.get("amount"),
                    "currency": order.get("currency"),
                    "receipt": order.get("receipt"),
                    "status": order.get("status"),
                }
            ),
            201,
        )

    @app.route("/api/payments/order", methods=["POST"])
    @jwt_required()
    def create_checkout_payment_order():
        return create_payment_order()

    @app.route("/api/payments/join/order", methods=["POST"])
    def create_join_payment_order():
        return create_payment_order()

    @app.route("/api/payments/verify", methods=["POST"])
    @jwt_required()
    def verify_payment():
        payload = request.get_json(silent=True) or {}
        order_id = clean_text(payload.get("razorpay_order_id"))
        payment_id = clean_text(payload.get("razorpay_payment_id"))
        signature = clean_text(payload.get("razorpay_signature"))
        if not order_id or not payment_id or not signature:
            return jsonify({"message": "Missing payment verification fields"}), 400
        if not app.config["RAZORPAY_KEY_SECRET"]:
            return jsonify({"message": "Razorpay secret not configured"}), 500
        if not razorpay_signature_valid(order_id, payment_id, signature):
            return jsonify({"valid": False, "message": "Invalid signature"}), 400

        order_reference = clean_text(payload.get("clientOrderId") or payload.get("orderId"))
        recipient = normalize_email(payload.get("email"))
        name = clean_text(payload.get("name"))
        if not recipient and order_reference:
            order_document = orders_collection.find_one({"client_order_id": order_reference})
            shipping = (order_document or {}).get("shipping") or {}
            if shipping.get("email"):
                recipient = normalize_email(shipping.get("email"))
                name = clean_text(shipping.get("name"))
        if not recipient:
            current_user = current_user_document()
            if current_user:
                recipient = normalize_email(current_user.get("email"))
                name = clean_text(current_user.get("name"))

        emailed = False
        if recipient:
            emailed, email_error = send_payment_confirmation_email(
                recipient,
                name,
                order_reference or order_id,
                payment_id,
                payload.get("amount"),
            )
            if email_error:
                app.logger.error("Failed to send payment confirmation email: %s", email_error)

        return jsonify({"valid": True, "emailed": emailed})

    @app.route("/api/payments/join/verify", methods=["POST"])
    def verify_payment_and_join():
        payload = request.get_json(silent=True) or {}
        for field in ("razorpay_order_id", "razorpay_payment_id", "razorpay_signature"):
            if not clean_text(payload.get(field)):
                return jsonify({"success": False, "message": "Missing payment verification fields"}), 400

        member_payload = payload.get("member")
        group_identifier = clean_text(payload.get("groupId"))
        if not group_identifier or not isinstance(member_payload, dict):
            return jsonify({"success": False, "message": "Missing group or member data"}), 400

        member, member_error = build_paid_member(member_payload, payload)
        if member_error:
            return jsonify({"success": False, "message": member_error}), 400

        signature_error = check_payment_signature(payload)
        if signature_error:
            return jsonify({"success": False, "message": signature_error[0]}), signature_error[1]

        group_document = find_group(group_identifier)
        if not group_document:
            return jsonify({"success": False, "message": "Group not found"}), 404
        if group_is_full(group_document):
            return jsonify({"success": False, "message": "Group is already full"}), 409
        if has_roll_number(group_document, member["memberRollNumber"]):
            return (
                jsonify({"success": False, "message": "Member with this roll number already exists"}),
                400,
            )

        if not push_group_member(group_document, member):
            return jsonify({"success": False, "message": "Group is already full"}), 409

        app.logger.info(
            "Payment %s verified, member %s added to group %s",
            member["depositPaymentId"],
            member["id"],
            group_document["_id"],
        )
        _, email_error = send_group_registration_email(group_document, member)
        if email_error:
            app.logger.error("Failed to send join confirmation email: %s", email_error)

        return jsonify(
            {
                "success": True,
                "groupId": str(group_document["_id"]),
                "member": member,
                "message": "Payment verified and member added",
            }
        )

    # Render

    @app.route("/api/render/order/<order_identifier>", methods=["GET"])
    def get_render_order(order_identifier: str):
        access_error = require_render_access()
        if access_error:
            return access_error

        order_document = find_order(order_identifier)
        if not order_document:
            return jsonify({"message": "Order not found."}), 404
        return jsonify(serialize_order(order_document))

    @app.route("/api/render/ensure/<order_identifier>", methods=["POST"])
    def ensure_render(order_identifier: str):
        access_error = require_render_access()
        if access_error:
            return access_error
        return jsonify({"message": "OK"})

    @app.route("/api/render/status/<order_identifier>", methods=["GET"])
    def get_render_status(order_identifier: str):
        access_error = require_render_access()
        if access_error:
            return access_error

        order_document = find_order(order_identifier)
        if not order_document:
            return jsonify({"message": "Order not found."}), 404

        images = order_document.get("center_variant_images") or []
        photographed = sum(
            1 for member in order_document.get("members") or [] if member_has_photo(member)
        )
        return jsonify(
            {
                "orderId": public_order_id(order_document),
                "done": len(images),
                "total": photographed if photographed >= 2 else 0,
                "variants": images,
            }
        )

    def load_order_in_process(order_identifier: str, token: Optional[str] = None) -> Dict:
        access_error = require_render_access()
        if access_error:
            response, status_code = access_error
            message = (response.get_json(silent=True) or {}).get("message", "")
            raise RenderFlowError(f"Order fetch failed: {status_code} - {message}")

        order_document = find_order(order_identifier)
        if not order_document:
            raise RenderFlowError("Order fetch failed: 404 - Order not found.")
        return serialize_order(order_document)

    def render_order_loader():
        # Without a separate API host the pages read the order in-process, so a
        # single-worker server never waits on itself.
        if app.config.get("RENDER_API_BASE"):
            return None
        return load_order_in_process

    @app.route("/render/bootstrap/<order_identifier>", methods=["GET"])
    def render_bootstrap_page(order_identifier: str):
        bootstrap = RenderBootstrap(
            render_api_base(),
            session=app.config.get("RENDER_HTTP_SESSION"),
            fetch_timeout_ms=app.config["RENDER_FETCH_TIMEOUT_MS"],
            order_loader=render_order_loader(),
        )
        result = bootstrap.run(
            order_identifier,
            token=request.args.get("token"),
            cookies=dict(request.cookies),
        )
        variants_json = json.dumps(
            [variant.to_dict() for variant in result.variants], indent=2
        )
        return render_template(
            "render/bootstrap.html", result=result, variants_json=variants_json
        )

    @app.route("/render/canvas/<order_identifier>/<variant_id>", methods=["GET"])
    def render_canvas_page(order_identifier: str, variant_id: str):
        canvas = RenderCanvas(
            render_api_base(),
            session=app.config.get("RENDER_HTTP_SESSION"),
            fetch_timeout_ms=app.config["RENDER_FETCH_TIMEOUT_MS"],
            render_timeout_ms=app.config["RENDER_TIMEOUT_MS"],
            order_loader=render_order_loader(),
        )
        state = canvas.run(
            order_identifier,
            variant_id,
            token=request.args.get("token"),
            cookies=dict(request.cookies),
        )
        if state.error:
            app.logger.error(
                "Render of %s/%s failed: %s", order_identifier, variant_id, state.error
            )
        return render_template("render/canvas.html", state=state)

    return app
