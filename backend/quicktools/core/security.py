import os
import base64
import hashlib
import hmac
import secrets
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from quicktools.core.config import settings


def _get_key() -> bytes:
    """AESキーをバイト列で取得"""
    key_hex = settings.AES_KEY
    if not key_hex:
        raise ValueError("AES_KEY が設定されていません")
    return bytes.fromhex(key_hex)


def encrypt(plaintext: str) -> str:
    """AES-256-GCM暗号化 → base64エンコード文字列"""
    key = _get_key()
    aesgcm = AESGCM(key)
    nonce = os.urandom(12)
    ciphertext = aesgcm.encrypt(nonce, plaintext.encode("utf-8"), None)
    # nonce + ciphertext を結合してbase64
    return base64.b64encode(nonce + ciphertext).decode("utf-8")


def decrypt(encrypted: str) -> str:
    """base64文字列 → AES-256-GCM復号"""
    key = _get_key()
    aesgcm = AESGCM(key)
    data = base64.b64decode(encrypted)
    nonce = data[:12]
    ciphertext = data[12:]
    plaintext = aesgcm.decrypt(nonce, ciphertext, None)
    return plaintext.decode("utf-8")


def generate_token(nbytes: int = 32) -> str:
    """URL/Cookieに載せられるランダムトークン"""
    return secrets.token_urlsafe(nbytes)


def hash_value(value: str) -> str:
    """ペッパー付きSHA-256 (検索・照合用の一方向ハッシュ)

    AUTH_SECRET はデプロイ間で固定すること。変えると既存ハッシュと照合できなくなる。
    """
    pepper = settings.AUTH_SECRET
    if not pepper:
        raise ValueError("AUTH_SECRET が設定されていません")
    return hashlib.sha256(f"{pepper}:{value}".encode("utf-8")).hexdigest()


def verify_hash(value: str, expected_hash: str) -> bool:
    """定数時間比較でハッシュ照合"""
    return hmac.compare_digest(hash_value(value), expected_hash)
