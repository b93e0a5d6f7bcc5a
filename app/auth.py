from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import os
import secrets
import time
from datetime import datetime, timezone
from threading import Lock as ThreadLock
from typing import Optional, Dict, Any, Tuple
from uuid import uuid4

from fastapi import APIRouter, HTTPException, Request, Depends
from pydantic import BaseModel

from app import db
from app.access import can_admin, can_edit, get_user_access
from app.email_utils import send_email


router = APIRouter()

PROJECT_ROOT = os.path.dirname(os.path.dirname(__file__))
DATA_DIR = os.path.join(PROJECT_ROOT, "data")
USERS_PATH = os.getenv("REFTRACK_USERS_PATH", os.path.join(DATA_DIR, "users.json")).strip()

ADMIN_EMAIL = os.getenv("REFTRACK_ADMIN_EMAIL", "").strip().lower()
ADMIN_PASSWORD = os.getenv("REFTRACK_ADMIN_PASSWORD", "")
APP_BASE_URL = os.getenv("REFTRACK_APP_BASE_URL", "http://localhost:5173").strip().rstrip("/")

logger = logging.getLogger("referraltracker.auth")

USERS_LOCK = ThreadLock()
SESSIONS_LOCK = ThreadLock()
SESSIONS: Dict[str, Dict[str, Any]] = {}
SESSION_TTL_SECONDS = 60 * 60 * 24 * 14  # 14 days
PASSWORD_TOKEN_TTL_SECONDS = 60 * 60 * 24 * 7


class LoginPayload(BaseModel):
    email: str
    password: str


class SetPasswordPayload(BaseModel):
    token: str
    password: str


class ChangePasswordPayload(BaseModel):
    current_password: str
    new_password: str


class ResetPasswordPayload(BaseModel):
    email: str


class AuthUser(BaseModel):
    user_id: str
    email: str
    display_name: str = ""
    role: str = "guest"
    location: Optional[str] = None
    status: str = "active"


class AuthResponse(BaseModel):
    token: str
    user: AuthUser


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def _validate_email(email: str) -> None:
    e = normalize_email(email)
    if "@" not in e or "." not in e.split("@")[-1]:
        raise HTTPException(status_code=400, detail="Enter a valid email address.")


def _validate_password(password: str) -> None:
    if not password or len(password) < 8:
        raise HTTPException(status_code=400, detail="Password must be at least 8 characters.")


def _load_users() -> Dict[str, Any]:
    if not os.path.exists(USERS_PATH):
        return {"version": 1, "users": {}}
    try:
        with open(USERS_PATH, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError):
        logger.warning("users.json unreadable; starting empty")
        return {"version": 1, "users": {}}
    if not isinstance(data, dict):
        return {"version": 1, "users": {}}
    data.setdefault("version", 1)
    if not isinstance(data.get("users"), dict):
        data["users"] = {}
    return data


def _save_users(data: Dict[str, Any]) -> None:
    parent = os.path.dirname(USERS_PATH)
    if parent:
        os.makedirs(parent, exist_ok=True)
    tmp_path = USERS_PATH + ".tmp"
    with open(tmp_path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, sort_keys=True)
    os.replace(tmp_path, USERS_PATH)


def _hash_password(password: str, salt: bytes) -> str:
    dk = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, 200_000)
    return base64.b64encode(dk).decode("ascii")


def _verify_password(password: str, salt_b64: str, hash_b64: str) -> bool:
    if not salt_b64 or not hash_b64:
        return False
    try:
        salt = base64.b64decode(salt_b64.encode("ascii"))
    except ValueError:
        return False
    calc = _hash_password(password, salt)
    return hmac.compare_digest(calc, hash_b64)


def _set_password(rec: Dict[str, Any], password: str) -> None:
    salt = secrets.token_bytes(16)
    rec["password_hash"] = _hash_password(password, salt)
    rec["salt"] = base64.b64encode(salt).decode("ascii")
    rec["updated_at_utc"] = _utc_now_iso()
    rec.pop("password_token", None)
    rec.pop("password_token_expires_at", None)


def _new_user_record(display_name: str = "") -> Dict[str, Any]:
    return {
        "id": uuid4().hex,
        "display_name": (display_name or "").strip(),
        "password_hash": "",
        "salt": "",
        "created_at_utc": _utc_now_iso(),
        "updated_at_utc": _utc_now_iso(),
    }


def _issue_token(rec: Dict[str, Any]) -> str:
    token = secrets.token_urlsafe(32)
    rec["password_token"] = token
    rec["password_token_expires_at"] = int(time.time()) + PASSWORD_TOKEN_TTL_SECONDS
    return token


def get_user_record(email: str) -> Optional[Dict[str, Any]]:
    with USERS_LOCK:
        return _load_users()["users"].get(normalize_email(email))


def create_invited_user(email: str, display_name: str = "") -> Tuple[str, str]:
    """Create (or reuse) the credential stub for `email`; returns (user_id, set-password token)."""
    _validate_email(email)
    key = normalize_email(email)
    with USERS_LOCK:
        data = _load_users()
        users = data["users"]
        rec = users.get(key)
        if rec is None:
            rec = _new_user_record(display_name)
            users[key] = rec
        elif display_name and not rec.get("display_name"):
            rec["display_name"] = display_name.strip()
        token = _issue_token(rec)
        _save_users(data)
    return rec["id"], token


def issue_password_token(email: str) -> Optional[str]:
    key = normalize_email(email)
    with USERS_LOCK:
        data = _load_users()
        rec = data["users"].get(key)
        if not rec:
            return None
        token = _issue_token(rec)
        _save_users(data)
    return token


def send_password_link(email: str, token: str, invited: bool = False) -> Tuple[bool, str]:
    link = f"{APP_BASE_URL}/set-password?token={token}"
    if invited:
        subject = "You have been invited to Referral Tracker"
        intro = "An account has been created for you on Referral Tracker."
    else:
        subject = "Reset your Referral Tracker password"
        intro = "A password reset was requested for your Referral Tracker account."
    body = "\n".join([
        intro,
        "",
        "Set your password using the link below:",
        link,
        "",
        "If you did not expect this email you can ignore it.",
    ])
    return send_email(normalize_email(email), subject, body)


def ensure_bootstrap_admin() -> None:
    """Seed an admin account from REFTRACK_ADMIN_EMAIL / REFTRACK_ADMIN_PASSWORD when both are set."""
    if not ADMIN_EMAIL or not ADMIN_PASSWORD:
        return
    with USERS_LOCK:
        data = _load_users()
        rec = data["users"].get(ADMIN_EMAIL)
        if rec is None:
            rec = _new_user_record("Administrator")
            _set_password(rec, ADMIN_PASSWORD)
            data["users"][ADMIN_EMAIL] = rec
            _save_users(data)
            logger.info("auth.bootstrap_admin created user_id=%s", rec["id"])
    if get_user_access(rec["id"]) is None:
        db.upsert("user_access", {
            "user_id": rec["id"],
            "email": ADMIN_EMAIL,
            "display_name": rec.get("display_name") or None,
            "role": "admin",
            "location": None,
            "status": "active",
        }, "user_id")


def _create_session(email: str) -> str:
    token = secrets.token_urlsafe(32)
    now = int(time.time())
    with SESSIONS_LOCK:
        SESSIONS[token] = {
            "email": email,
            "created_at": now,
            "expires_at": now + SESSION_TTL_SECONDS,
        }
    return token


def _get_session(token: str) -> Optional[str]:
    if not token:
        return None
    now = int(time.time())
    with SESSIONS_LOCK:
        sess = SESSIONS.get(token)
        if not sess:
            return None
        if sess.get("expires_at", 0) < now:
            SESSIONS.pop(token, None)
            return None
        return sess.get("email")


def _revoke_session(token: str) -> None:
    if token:
        with SESSIONS_LOCK:
            SESSIONS.pop(token, None)


def _extract_token(request: Request) -> str:
    auth = request.headers.get("Authorization", "")
    if auth.lower().startswith("bearer "):
        return auth.split(None, 1)[1].strip()
    return request.headers.get("X-Auth-Token", "").strip()


def _access_denied(reason: str) -> HTTPException:
    message = "Your account has been disabled." if reason == "disabled" else "You do not have access to this app."
    return HTTPException(status_code=403, detail={"reason": reason, "message": message})


def _public_user(email: str, rec: Dict[str, Any], token: str = "") -> AuthUser:
    """Resolve the access row for a user; revokes the session when access is missing or disabled."""
    access = get_user_access(rec.get("id", ""))
    if access is None:
        _revoke_session(token)
        raise _access_denied("no_access")
    if access["status"] == "disabled":
        _revoke_session(token)
        raise _access_denied("disabled")
    return AuthUser(
        user_id=rec["id"],
        email=email,
        display_name=rec.get("display_name") or access.get("display_name") or "",
        role=access["role"],
        location=access["location"],
        status=access["status"],
    )


def require_user(request: Request) -> AuthUser:
    token = _extract_token(request)
    email = _get_session(token)
    if not email:
        raise HTTPException(status_code=401, detail="Not authenticated.")
    rec = get_user_record(email)
    if not rec:
        raise HTTPException(status_code=401, detail="User not found.")
    return _public_user(email, rec, token)


def require_editor(user: AuthUser = Depends(require_user)) -> AuthUser:
    if not can_edit(user.role):
        raise HTTPException(status_code=403, detail="Editor access required.")
    return user


def require_admin(user: AuthUser = Depends(require_user)) -> AuthUser:
    if not can_admin(user.role):
        raise HTTPException(status_code=403, detail="Admin access required.")
    return user


@router.post("/auth/login", response_model=AuthResponse)
def login(payload: LoginPayload):
    email = normalize_email(payload.email)
    if not email or not payload.password:
        raise HTTPException(status_code=401, detail="Invalid email or password.")

    rec = get_user_record(email)
    if not rec or not _verify_password(payload.password, rec.get("salt", ""), rec.get("password_hash", "")):
        raise HTTPException(status_code=401, detail="Invalid email or password.")

    token = _create_session(email)
    user = _public_user(email, rec, token)
    logger.info("auth.login user_id=%s role=%s", user.user_id, user.role)
    return {"token": token, "user": user}


@router.get("/auth/me")
def me(user: AuthUser = Depends(require_user)):
    return {"user": user}


@router.post("/auth/logout")
def logout(request: Request):
    _revoke_session(_extract_token(request))
    return {"ok": True}


@router.post("/auth/set_password")
def set_password(payload: SetPasswordPayload):
    _validate_password(payload.password)
    token = (payload.token or "").strip()
    if not token:
        raise HTTPException(status_code=400, detail="Missing token.")
    now = int(time.time())
    with USERS_LOCK:
        data = _load_users()
        match = None
        for email, rec in data["users"].items():
            stored = rec.get("password_token") or ""
            if stored and hmac.compare_digest(stored, token):
                match = (email, rec)
                break
        if match is None or int(match[1].get("password_token_expires_at", 0)) < now:
            raise HTTPException(status_code=400, detail="This link is invalid or has expired.")
        _set_password(match[1], payload.password)
        _save_users(data)
    logger.info("auth.password_set user_id=%s", match[1].get("id"))
    return {"ok": True}


@router.post("/auth/change_password")
def change_password(payload: ChangePasswordPayload, user: AuthUser = Depends(require_user)):
    _validate_password(payload.new_password)
    with USERS_LOCK:
        data = _load_users()
        rec = data["users"].get(user.email)
        if not rec or not _verify_password(payload.current_password, rec.get("salt", ""), rec.get("password_hash", "")):
            raise HTTPException(status_code=400, detail="Current password is incorrect.")
        _set_password(rec, payload.new_password)
        _save_users(data)
    return {"ok": True}


@router.post("/auth/reset_password")
def reset_password(payload: ResetPasswordPayload):
    email = normalize_email(payload.email)
    token = issue_password_token(email) if email else None
    if token:
        ok, err = send_password_link(email, token)
        if not ok:
            logger.warning("auth.reset_email_failed error=%s", err)
    # Same answer whether or not the account exists.
    return {"ok": True}
