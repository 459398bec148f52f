import hashlib
import hmac

DEFAULT_SECRET = "sms-webhook-default-secret"

HMAC_SHA256 = "hmac-sha256"
LEGACY = "legacy"
SCHEMES = (HMAC_SHA256, LEGACY)


def sign(body: str, sender: str, timestamp: int, secret: str | None = None, scheme: str = HMAC_SHA256) -> str:
    """Signature sent in X-SMS-Signature and in the payload.

    Deterministic: the same inputs always give the same string. When no
    secret is configured DEFAULT_SECRET is used, so receivers can still
    verify payload integrity.
    """
    key = secret or DEFAULT_SECRET
    if scheme == HMAC_SHA256:
        return hmac_signature(body, sender, timestamp, key)
    if scheme == LEGACY:
        return legacy_signature(body, sender, timestamp, key)
    raise ValueError(f"Unknown signature scheme: {scheme!r}")


def hmac_signature(body: str, sender: str, timestamp: int, secret: str) -> str:
    """Hex HMAC-SHA256 of body + sender + timestamp, keyed by the secret."""
    data = f"{body}{sender}{timestamp}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), data, hashlib.sha256).hexdigest()


def legacy_signature(body: str, sender: str, timestamp: int, secret: str) -> str:
    """The 32-bit rolling hash used by the first Android releases.

    Not a MAC: anyone can forge it. Only for receivers that still verify
    the old format. Hashes UTF-16 code units with int32 overflow and
    returns the hex of the absolute value, matching the JVM output.
    """
    raw = f"{body}{sender}{timestamp}{secret}".encode("utf-16-be")
    h = 0
    for i in range(0, len(raw), 2):
        h = (h * 31 + ((raw[i] << 8) | raw[i + 1])) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return format(abs(h), "x")


def verify(signature: str, body: str, sender: str, timestamp: int, secret: str | None = None, scheme: str = HMAC_SHA256) -> bool:
    """Constant-time check of a received signature."""
    expected = sign(body, sender, timestamp, secret, scheme)
    return hmac.compare_digest(expected, signature or "")
