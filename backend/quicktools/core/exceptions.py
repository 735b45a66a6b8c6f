"""課金ドメインの例外

ルーター側で HTTPException / リダイレクトに変換する。
"""


class BillingError(Exception):
    """課金処理の基底例外"""


class BillingConfigError(BillingError):
    """設定不備 (キー未設定、モードとキーの不整合など)。Stripe呼び出し前に送出する"""

    def __init__(self, message: str, public_message: str | None = None):
        super().__init__(message)
        # 画面に出してよい文言 (運用者向けの設定ミス案内など)
        self.public_message = public_message


class BillingDisabledError(BillingError):
    """課金機能が無効"""


class InvalidEmailError(BillingError):
    """メールアドレス形式不正"""


class StripeModeMismatchError(BillingError):
    """保存済みレコードと現在のStripeモード (test/live) が一致しない"""


class StripeCustomerNotFoundError(BillingError):
    """Stripe Customer 未作成"""


class CheckoutSessionError(BillingError):
    """Stripe API 呼び出し失敗 (Checkout / Billing Portal)"""


class WebhookSignatureError(BillingError):
    """Webhook 署名検証失敗"""
