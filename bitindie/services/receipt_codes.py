"""
Guest Receipt Codes - human-typable secrets for unclaimed purchases.

Codes use the Crockford base32 alphabet (no I, L, O, U) so they survive being
read aloud or copied by hand. 15 symbols x 5 bits = 75 bits of entropy.
"""

import re
import secrets

from bitindie.exceptions import InvalidReceiptCodeError

CROCKFORD_ALPHABET = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"

GROUP_SIZE = 5
GROUP_COUNT = 3

_RECEIPT_CODE_RE = re.compile(r"^[A-Z0-9-]{6,128}$")


def generate_guest_receipt_code() -> str:
    """Generate a new code in XXXXX-XXXXX-XXXXX form."""
    symbols = [secrets.choice(CROCKFORD_ALPHABET) for _ in range(GROUP_SIZE * GROUP_COUNT)]
    groups = [
        "".join(symbols[i : i + GROUP_SIZE]) for i in range(0, len(symbols), GROUP_SIZE)
    ]
    return "-".join(groups)


def normalize_receipt_code(code: str) -> str:
    """
    Canonicalize a receipt code for lookup.

    Trims surrounding whitespace and uppercases, matching how codes are stored.

    Raises:
        InvalidReceiptCodeError: code is not 6-128 alphanumerics and hyphens
    """
    if not isinstance(code, str):
        raise InvalidReceiptCodeError("receiptCode must be a string")

    normalized = code.strip().upper()
    if not _RECEIPT_CODE_RE.match(normalized):
        raise InvalidReceiptCodeError("receiptCode must be 6-128 letters, digits or hyphens")
    return normalized
