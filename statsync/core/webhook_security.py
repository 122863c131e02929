"""
Webhook signature utilities.

Outbound deliveries are signed with HMAC-SHA256 over the exact request body
when the subscription has a secret:

    X-Signature-256: sha256=<hex digest>

``verify_signature`` is the receiving side of the same scheme, for
subscribers written in Python against this service.
"""
import hashlib
import hmac
import logging

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Signature-256"
SIGNATURE_PREFIX = "sha256="


def sign_payload(payload: bytes, secret: str, algorithm: str = "sha256") -> str:
    """Return the signature header value for ``payload``."""
    hash_func = getattr(hashlib, algorithm, hashlib.sha256)
    digest = hmac.new(secret.encode(), payload, hash_func).hexdigest()
    return f"{algorithm}={digest}"


def verify_signature(
    payload: bytes,
    signature: str,
    secret: str,
    algorithm: str = "sha256",
    signature_prefix: str = SIGNATURE_PREFIX,
) -> bool:
    """
    Check a delivery's HMAC signature on the subscriber side.

    Args:
        payload: Raw request body bytes
        signature: ``X-Signature-256`` header value
        secret: The subscription secret
        algorithm: Hash algorithm (sha256, sha1)
        signature_prefix: Expected prefix before the hash

    Returns:
        True if the signature matches, False if missing, malformed or wrong

    Raises:
        ValueError: If no secret is given
    """
    if not secret:
        raise ValueError("Webhook secret not configured")

    if not signature:
        logger.warning("Webhook missing signature header")
        return False

    if not signature.startswith(signature_prefix):
        logger.warning(f"Webhook signature has invalid format (expected prefix: {signature_prefix})")
        return False

    _, received_hash = signature.split("=", 1)
    expected_hash = sign_payload(payload, secret, algorithm).split("=", 1)[1]

    # Constant-time comparison
    if not hmac.compare_digest(expected_hash, received_hash):
        logger.warning("Webhook signature verification failed")
        return False
    return True
