"""課金設定の解決: Stripeモード判定、Price ID、キー整合性チェック"""
from quicktools.core.config import settings
from quicktools.core.exceptions import BillingConfigError, BillingDisabledError
from quicktools.core.logging import get_logger

logger = get_logger(__name__)

STRIPE_MODES = ("test", "live")


def _mode_from_key(secret_key: str) -> str | None:
    if secret_key.startswith(("sk_live_", "rk_live_")):
        return "live"
    if secret_key.startswith(("sk_test_", "rk_test_")):
        return "test"
    return None


def is_billing_enabled() -> bool:
    return settings.BILLING_ENABLED


def require_billing_enabled() -> None:
    if not is_billing_enabled():
        raise BillingDisabledError("Billing is disabled")


def get_stripe_mode() -> str:
    """現在のStripeモード: STRIPE_MODE 明示 → キーのprefix → test"""
    explicit = (settings.STRIPE_MODE or "").strip().lower()
    if explicit in STRIPE_MODES:
        return explicit
    # ローカル開発の安全側デフォルト
    return _mode_from_key(settings.STRIPE_SECRET_KEY) or "test"


def get_stripe_secret_key() -> str:
    if not settings.STRIPE_SECRET_KEY:
        raise BillingConfigError("STRIPE_SECRET_KEY is not set")
    return settings.STRIPE_SECRET_KEY


def get_stripe_webhook_secret() -> str:
    if not settings.STRIPE_WEBHOOK_SECRET:
        raise BillingConfigError("STRIPE_WEBHOOK_SECRET is not set")
    return settings.STRIPE_WEBHOOK_SECRET


def get_pro_price_id(mode: str) -> str:
    """モード別のPro Price ID"""
    price_id = settings.STRIPE_PRICE_ID_PRO_LIVE if mode == "live" else settings.STRIPE_PRICE_ID_PRO_TEST
    if not price_id:
        raise BillingConfigError(f"Stripe price ID for Pro is not set for mode={mode}")
    return price_id


def assert_stripe_key_consistency(mode: str) -> None:
    """環境・キー・モードの整合性チェック (Stripe呼び出し前に必ず実行)

    - preview環境にliveキーが入っていたら拒否
    - モードとキーのprefixが食い違っていたら拒否
    """
    key_mode = _mode_from_key(get_stripe_secret_key())

    if settings.DEPLOY_ENV == "preview" and key_mode == "live":
        logger.error("preview環境にStripe liveキーが設定されています")
        raise BillingConfigError(
            "live secret key configured in preview deployment",
            public_message="Preview環境ではStripeのテストキー（sk_test_...）を設定してください。",
        )

    if key_mode and key_mode != mode:
        logger.error(f"Stripeモード不整合: mode={mode}, key_mode={key_mode}")
        raise BillingConfigError(f"Stripe mode/key mismatch: mode={mode}, key={key_mode}")
