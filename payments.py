# payments.py
# Manual UPI deposits: deposit ids, UPI deep links, UTR / amount validation,
# and the random codes used for referrals and gift codes.

import re
import secrets
import string
import time
import uuid
from typing import Optional
from urllib.parse import quote

from config import (
    UPI_ID,
    UPI_NAME,
    PAYMENT_NOTE_PREFIX,
    MIN_UTR_LENGTH,
    MIN_DEPOSIT_AMOUNT,
)

CODE_ALPHABET = string.ascii_uppercase + string.digits


def random_code(length: int = 8) -> str:
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))


def new_deposit_id(now: Optional[float] = None) -> str:
    now = time.time() if now is None else now
    return f"DEP{int(now * 1000)}{uuid.uuid4().hex[:5]}".upper()


def payment_note(deposit_id: str) -> str:
    note = f"{PAYMENT_NOTE_PREFIX}{deposit_id}"
    return re.sub(r"[^A-Za-z0-9x_.]", "", note).replace(".", "_")


def upi_link(amount: int, note: str, upi_id: str = UPI_ID, upi_name: str = UPI_NAME) -> str:
    return f"upi://pay?pa={upi_id}&pn={quote(upi_name)}&am={amount}&cu=INR&tn={note}"


def is_valid_utr(utr: str) -> bool:
    utr = str(utr or "").strip()
    return len(utr) >= MIN_UTR_LENGTH and utr.isdigit()


def parse_deposit_amount(text: str) -> Optional[int]:
    """Whole rupees, at least MIN_DEPOSIT_AMOUNT. None when the text is not acceptable."""
    try:
        value = float(str(text or "").strip())
    except ValueError:
        return None
    if value != int(value) or value < MIN_DEPOSIT_AMOUNT:
        return None
    return int(value)
