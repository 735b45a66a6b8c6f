import hashlib
import hmac
import json
import os
import time
from datetime import timedelta

# 1. settings はimport時に確定するため、quicktools を読み込む前に環境変数を設定する
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["AES_KEY"] = "11" * 32
os.environ["AUTH_SECRET"] = "test-auth-secret"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_dummy"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["STRIPE_PRICE_ID_PRO_TEST"] = "price_test_pro"
os.environ["STRIPE_PRICE_ID_PRO_LIVE"] = "price_live_pro"
os.environ["SITE_URL"] = "https://quicktools.example"
os.environ["DEBUG"] = "false"
os.environ.pop("STRIPE_MODE", None)
os.environ.pop("DEPLOY_ENV", None)
os.environ.pop("BILLING_ENABLED", None)

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from quicktools.core.clock import utcnow  # noqa: E402
from quicktools.core.database import Base, get_db  # noqa: E402
from quicktools.core.rate_limit import limiter  # noqa: E402
from quicktools.core.redis import get_redis  # noqa: E402
from quicktools.main import app  # noqa: E402
from quicktools.models import StripeCustomer, StripeSubscription, User  # noqa: E402

WEBHOOK_SECRET = "whsec_test_secret"

limiter.enabled = False


class FakeRedis:
    """セッション保存に使う最小限の非同期Redis"""

    def __init__(self):
        self.store: dict[str, dict] = {}

    async def hset(self, key, field=None, value=None, mapping=None):
        entry = self.store.setdefault(key, {})
        if mapping:
            entry.update(mapping)
        if field is not None:
            entry[field] = value

    async def hgetall(self, key):
        return dict(self.store.get(key, {}))

    async def expire(self, key, ttl):
        return key in self.store

    async def ping(self):
        return True


@pytest.fixture
def db_session():
    """
    Creates a new in-memory database session for a test.
    """
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def client(db_session, fake_redis):
    def _get_db():
        yield db_session

    async def _get_redis():
        return fake_redis

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_redis] = _get_redis
    with TestClient(app) as c:
        yield c
    app.dependency_overrides = {}


@pytest.fixture
def login(client, fake_redis):
    """ログイン済みCookieをclientにセットする"""

    def _login(user):
        session_id = f"sess-{user.id}"
        fake_redis.store[f"session:{session_id}"] = {"user_id": str(user.id), "email": user.email}
        client.cookies.set("qt_session", session_id)
        return session_id

    return _login


# =========================================================
# データ作成ヘルパー
# =========================================================

def make_user(db, email="user@example.com", **kwargs) -> User:
    user = User(email=email, plan=kwargs.pop("plan", "free"), is_pro=kwargs.pop("is_pro", False), **kwargs)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def make_customer(db, user, stripe_customer_id="cus_123", mode="test") -> StripeCustomer:
    customer = StripeCustomer(user_id=user.id, stripe_customer_id=stripe_customer_id, mode=mode)
    db.add(customer)
    db.commit()
    return customer


def make_subscription(db, user, status="active", mode="test", period_end=None, **kwargs) -> StripeSubscription:
    sub = StripeSubscription(
        user_id=user.id,
        stripe_subscription_id=kwargs.pop("stripe_subscription_id", "sub_123"),
        stripe_customer_id=kwargs.pop("stripe_customer_id", "cus_123"),
        status=status,
        mode=mode,
        current_period_end=period_end if period_end is not None else utcnow() + timedelta(days=20),
        cancel_at_period_end=False,
        **kwargs,
    )
    db.add(sub)
    db.commit()
    return sub


# =========================================================
# Webhook ヘルパー
# =========================================================

def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """Stripe-Signature ヘッダーを生成 (t=...,v1=HMAC-SHA256)"""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def make_event(event_id, event_type, obj, livemode=False) -> bytes:
    return json.dumps({
        "id": event_id,
        "object": "event",
        "type": event_type,
        "livemode": livemode,
        "data": {"object": obj},
    }).encode("utf-8")


def subscription_object(
    status="active",
    customer="cus_123",
    sub_id="sub_123",
    period_end=None,
    **extra,
) -> dict:
    now = int(time.time())
    obj = {
        "id": sub_id,
        "object": "subscription",
        "customer": customer,
        "status": status,
        "cancel_at_period_end": False,
        "current_period_start": now - 86400,
        "current_period_end": period_end if period_end is not None else now + 30 * 86400,
        "items": {"data": [{"price": {"id": "price_test_pro", "product": "prod_pro"}}]},
    }
    obj.update(extra)
    return obj
