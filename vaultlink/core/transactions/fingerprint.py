from ..canonical import sha256_hex
from .models import TransactionIntent


def fingerprint_intent(intent: TransactionIntent) -> str:
    """Content-derived id of an intent; identical intents share a fingerprint."""
    return sha256_hex(intent.payload())
