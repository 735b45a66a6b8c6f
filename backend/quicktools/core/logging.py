import json
import logging
import sys
from datetime import datetime, timezone

# extra_data 内でマスクするキー (メール・トークン・Stripe署名)
REDACTED_KEYS = {"email", "customer_email", "token", "stripe_signature", "authorization"}


def mask_email(email: str) -> str:
    """user@example.com → u***@example.com"""
    if not email or "@" not in email:
        return "***"
    local, domain = email.rsplit("@", 1)
    return f"{local[:1]}***@{domain}"


def _redact(value):
    if isinstance(value, dict):
        out = {}
        for key, item in value.items():
            if key in REDACTED_KEYS and isinstance(item, str):
                out[key] = mask_email(item) if "email" in key else "***"
            else:
                out[key] = _redact(item)
        return out
    if isinstance(value, (list, tuple)):
        return [_redact(v) for v in value]
    return value


class JSONFormatter(logging.Formatter):
    """構造化JSONログ (1行1イベント)

    deploy_env を全行に付与し、preview/production のログを区別できるようにする。
    """

    def __init__(self, deploy_env: str = ""):
        super().__init__()
        self.deploy_env = deploy_env

    def format(self, record):
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if self.deploy_env:
            log_entry["deploy_env"] = self.deploy_env
        if hasattr(record, "extra_data"):
            log_entry["data"] = _redact(record.extra_data)
        if record.exc_info and record.exc_info[0]:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry, ensure_ascii=False, default=str)


def setup_logging(debug: bool = False, deploy_env: str = ""):
    level = logging.DEBUG if debug else logging.INFO

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter(deploy_env=deploy_env))

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()
    root.addHandler(handler)

    # Stripe SDKはリクエストヘッダーを含むログを出すためWARNING以上のみ
    for name, lib_level in (
        ("sqlalchemy.engine", logging.WARNING),
        ("stripe", logging.WARNING),
        ("uvicorn.access", logging.INFO),
    ):
        logging.getLogger(name).setLevel(lib_level)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
