"""日時ユーティリティ (DBにはUTCのnaive datetimeで保存する)"""
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def from_stripe_ts(value) -> Optional[datetime]:
    """Stripeのunix秒 → UTC naive datetime。数値以外はNone"""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc).replace(tzinfo=None)
