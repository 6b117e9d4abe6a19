"""
Identifiers sent to the payment gateway.

Every charge/refund attempt gets a fresh conversation id which doubles as the
gateway idempotency key, so a retried HTTP request can never move money twice.
"""
import uuid

CONVERSATION_ID_PREFIX = "conv"


def generate_conversation_id(kind: str = "charge") -> str:
    return f"{CONVERSATION_ID_PREFIX}_{kind}_{uuid.uuid4().hex}"
