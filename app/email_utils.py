from __future__ import annotations

import base64
import json
import logging
import os
import smtplib
import ssl
import urllib.error
import urllib.parse
import urllib.request
from email.message import EmailMessage
from typing import Any, Dict, Optional, Tuple

logger = logging.getLogger("referraltracker.email")

PROJECT_ROOT = os.path.dirname(os.path.dirname(__file__))
DATA_DIR = os.path.join(PROJECT_ROOT, "data")
SMTP_CONFIG_PATH = os.getenv(
    "REFTRACK_SMTP_CONFIG_PATH",
    os.path.join(DATA_DIR, "smtp.json"),
).strip()
EMAIL_REQUIRED = os.getenv("REFTRACK_EMAIL_REQUIRED", "0").strip().lower() in {"1", "true", "yes"}

DEFAULT_MAILGUN_FROM = "noreply@convergencehealth.com"

EMAIL_NOT_CONFIGURED = "EMAIL_NOT_CONFIGURED"
EMAIL_SEND_FAILED = "EMAIL_SEND_FAILED"
MISSING_FIELDS = "MISSING_FIELDS"


def _env_first(*keys: str) -> str:
    for key in keys:
        val = os.getenv(key, "")
        if val is not None:
            val = val.strip()
            if val:
                return val
    return ""


def _truthy(value: str) -> bool:
    return (value or "").strip().lower() in {"1", "true", "yes"}


def _positive_int(value: Any) -> Optional[int]:
    try:
        n = int(value)
    except (TypeError, ValueError):
        return None
    return n if n > 0 else None


def format_from_header(name: str, email: str, fallback_email: str = "") -> str:
    addr = (email or "").strip() or (fallback_email or "").strip()
    if not addr:
        return ""
    display = (name or "").replace('"', "").strip()
    if display:
        return f"{display} <{addr}>"
    return addr


def parse_from_header(raw: str) -> Dict[str, str]:
    raw = (raw or "").strip()
    if not raw:
        return {"name": "", "email": ""}
    if "<" in raw and ">" in raw:
        name = raw.split("<", 1)[0].strip().strip('"')
        email = raw.split("<", 1)[1].split(">", 1)[0].strip()
        return {"name": name, "email": email}
    return {"name": "", "email": raw}


def _read_config_file() -> Dict[str, Any]:
    if not SMTP_CONFIG_PATH or not os.path.exists(SMTP_CONFIG_PATH):
        return {}
    try:
        with open(SMTP_CONFIG_PATH, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        logger.warning("email.config_unreadable path=%s: %s", SMTP_CONFIG_PATH, e)
        return {}
    return data if isinstance(data, dict) else {}


def load_email_config() -> Dict[str, Any]:
    """
    Resolve outbound email settings. Environment variables win; the JSON file at
    REFTRACK_SMTP_CONFIG_PATH is read only when no email env var is set.
    """
    env = {
        "transport": _env_first("REFTRACK_EMAIL_TRANSPORT"),
        "host": _env_first("REFTRACK_SMTP_HOST", "SMTP_HOST"),
        "user": _env_first("REFTRACK_SMTP_USER", "SMTP_USER"),
        "pass": _env_first("REFTRACK_SMTP_PASS", "SMTP_PASS"),
        "port": _env_first("REFTRACK_SMTP_PORT", "SMTP_PORT"),
        "tls": _env_first("REFTRACK_SMTP_TLS", "SMTP_TLS"),
        "ssl": _env_first("REFTRACK_SMTP_SSL", "SMTP_SSL"),
        "from": _env_first("REFTRACK_SMTP_FROM", "SMTP_FROM"),
        "from_name": _env_first("REFTRACK_SMTP_FROM_NAME", "SMTP_FROM_NAME"),
        "from_email": _env_first("REFTRACK_SMTP_FROM_EMAIL", "SMTP_FROM_EMAIL"),
        "timeout": _env_first("REFTRACK_SMTP_TIMEOUT", "SMTP_TIMEOUT"),
        "mailgun_api_key": _env_first("REFTRACK_MAILGUN_API_KEY", "MAILGUN_API_KEY"),
        "mailgun_domain": _env_first("REFTRACK_MAILGUN_DOMAIN", "MAILGUN_DOMAIN"),
        "mailgun_region": _env_first("REFTRACK_MAILGUN_REGION", "MAILGUN_REGION"),
        "mailgun_from": _env_first("REFTRACK_MAILGUN_FROM", "MAILGUN_FROM"),
    }
    env_any = any(env.values())
    data: Dict[str, Any] = {} if env_any else _read_config_file()

    def pick(key: str, default: Any = "") -> Any:
        if env_any:
            return env[key] or default
        v = data.get(key)
        if v is None or (isinstance(v, str) and not v.strip()):
            return default
        return v.strip() if isinstance(v, str) else v

    invalid = []
    port = _positive_int(pick("port", 587))
    if port is None:
        invalid.append("port")
    timeout = _positive_int(pick("timeout", 10))
    if timeout is None:
        invalid.append("timeout")

    tls_raw = pick("tls", "true")
    ssl_raw = pick("ssl", "false")
    config: Dict[str, Any] = {
        "source": "env" if env_any else ("file" if data else "none"),
        "transport": str(pick("transport", "")).lower(),
        "host": str(pick("host")),
        "port": port or 587,
        "user": str(pick("user")),
        "pass": str(pick("pass")),
        "tls": tls_raw if isinstance(tls_raw, bool) else _truthy(str(tls_raw)),
        "ssl": ssl_raw if isinstance(ssl_raw, bool) else _truthy(str(ssl_raw)),
        "from_raw": str(pick("from")),
        "from_name": str(pick("from_name")),
        "from_email": str(pick("from_email")),
        "timeout": timeout or 10,
        "mailgun_api_key": str(pick("mailgun_api_key")),
        "mailgun_domain": str(pick("mailgun_domain")),
        "mailgun_region": str(pick("mailgun_region", "US")).upper(),
        "mailgun_from": str(pick("mailgun_from", DEFAULT_MAILGUN_FROM)),
    }
    if not config["transport"]:
        config["transport"] = "mailgun" if config["mailgun_api_key"] else "smtp"

    if config["from_raw"]:
        parsed = parse_from_header(config["from_raw"])
        config["from_name"] = config["from_name"] or parsed["name"]
        config["from_email"] = config["from_email"] or parsed["email"]
    config["from_header"] = format_from_header(config["from_name"], config["from_email"], config["user"])

    missing = []
    if config["transport"] == "mailgun":
        if not config["mailgun_api_key"]:
            missing.append("mailgun_api_key")
        if not config["mailgun_domain"]:
            missing.append("mailgun_domain")
    else:
        for key in ("host", "user", "pass", "port"):
            if not config.get(key):
                missing.append(key)
    config["missing"] = missing
    config["invalid"] = invalid
    config["configured"] = not missing and not invalid
    return config


def get_email_status() -> Dict[str, Any]:
    config = load_email_config()
    return {
        "configured": bool(config["configured"]),
        "transport": config["transport"],
        "source": config["source"],
        "missing": config["missing"],
        "invalid": config["invalid"],
        "tls": bool(config["tls"]),
        "ssl": bool(config["ssl"]),
        "from_set": bool(config["from_header"] or config["transport"] == "mailgun"),
        "mailgun_region": config["mailgun_region"] if config["transport"] == "mailgun" else "",
    }


def validate_email_config(required: Optional[bool] = None) -> Dict[str, Any]:
    config = load_email_config()
    required_flag = EMAIL_REQUIRED if required is None else bool(required)
    if required_flag and not config["configured"]:
        raise RuntimeError(
            f"Email required but not configured. Missing: {config['missing']} Invalid: {config['invalid']}"
        )
    if not config["configured"]:
        logger.warning("Email not configured. Missing: %s Invalid: %s", config["missing"], config["invalid"])
    return config


def _send_smtp(config: Dict[str, Any], to: str, subject: str, body: str) -> None:
    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = (config["from_header"] or config["user"]).strip()
    msg["To"] = to
    msg.set_content(body)

    host, port, timeout = config["host"], int(config["port"]), int(config["timeout"])
    if config["ssl"]:
        context = ssl.create_default_context()
        with smtplib.SMTP_SSL(host, port, context=context, timeout=timeout) as server:
            if config["user"] and config["pass"]:
                server.login(config["user"], config["pass"])
            server.send_message(msg)
    else:
        with smtplib.SMTP(host, port, timeout=timeout) as server:
            if config["tls"]:
                server.starttls(context=ssl.create_default_context())
            if config["user"] and config["pass"]:
                server.login(config["user"], config["pass"])
            server.send_message(msg)


def _mailgun_base(region: str) -> str:
    return "https://api.eu.mailgun.net" if region == "EU" else "https://api.mailgun.net"


def _send_mailgun(config: Dict[str, Any], to: str, subject: str, body: str) -> None:
    url = f"{_mailgun_base(config['mailgun_region'])}/v3/{urllib.parse.quote(config['mailgun_domain'])}/messages"
    form = urllib.parse.urlencode({
        "from": config["mailgun_from"],
        "to": to,
        "subject": subject,
        "text": body,
    }).encode("utf-8")
    auth = base64.b64encode(f"api:{config['mailgun_api_key']}".encode("utf-8")).decode("ascii")
    req = urllib.request.Request(
        url,
        data=form,
        method="POST",
        headers={
            "Authorization": f"Basic {auth}",
            "Content-Type": "application/x-www-form-urlencoded",
        },
    )
    with urllib.request.urlopen(req, timeout=int(config["timeout"])) as resp:
        resp.read()


def send_email(to: str, subject: str, body: str) -> Tuple[bool, str]:
    """Send a plain-text email. Returns (ok, error_code); transport errors are logged, not raised."""
    to = (to or "").strip()
    subject = (subject or "").strip()
    body = (body or "").strip()
    if not to or not subject or not body:
        return False, MISSING_FIELDS

    config = load_email_config()
    if not config["configured"]:
        logger.warning(
            "email.skipped transport=%s missing=%s invalid=%s",
            config["transport"], config["missing"], config["invalid"],
        )
        return False, EMAIL_NOT_CONFIGURED

    try:
        if config["transport"] == "mailgun":
            _send_mailgun(config, to, subject, body)
        else:
            _send_smtp(config, to, subject, body)
    except (smtplib.SMTPException, urllib.error.URLError, OSError) as e:
        logger.warning("email.failed transport=%s %s: %s", config["transport"], e.__class__.__name__, e)
        return False, EMAIL_SEND_FAILED
    logger.info("email.sent transport=%s", config["transport"])
    return True, ""
