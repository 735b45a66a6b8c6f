"""メールアドレス関連ユーティリティ"""
from email_validator import EmailNotValidError, validate_email

MAX_EMAIL_LENGTH = 254


def normalize_email(email: str) -> str:
    """前後空白除去 + 小文字化"""
    if not email:
        return ""
    return email.strip().lower()


def is_valid_email(email: str) -> bool:
    """正規化済みメールアドレスの形式チェック (DNSの到達性は確認しない)"""
    if not email or len(email) > MAX_EMAIL_LENGTH:
        return False
    try:
        validate_email(email, check_deliverability=False)
    except EmailNotValidError:
        return False
    return True
