# firex_api.py
# API layer for FirexOTP (sms-activate style handler_api)
# - getNumber / getStatus / setStatus: TEXT responses "CODE" or "CODE:ARG:ARG"
# - every public call returns a closed result; raw vendor strings stay in this file

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import requests

from config import FIREX_API_KEY, FIREX_BASE_URL, VENDOR_TIMEOUT_SECONDS, PHONE_COUNTRY_PREFIX

logger = logging.getLogger(__name__)

# setStatus values
STATUS_RETRY = 3
STATUS_CANCEL = 8


class FirexError(Exception):
    def __init__(self, kind: str, message: str = ""):
        super().__init__(message or kind)
        self.kind = kind


class RentError(str, Enum):
    NO_NUMBERS = "NO_NUMBERS"
    NO_BALANCE = "NO_BALANCE"
    BAD_SERVICE = "BAD_SERVICE"
    BAD_KEY = "BAD_KEY"
    BAD_NUMBER = "BAD_NUMBER"
    TIMEOUT = "TIMEOUT"
    UNAVAILABLE = "UNAVAILABLE"
    UNKNOWN = "UNKNOWN"

    @property
    def transient(self) -> bool:
        return self in (RentError.TIMEOUT, RentError.UNAVAILABLE, RentError.UNKNOWN)


class PollStatus(str, Enum):
    WAITING = "WAITING"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"
    NOT_FOUND = "NOT_FOUND"
    ERROR = "ERROR"


@dataclass(frozen=True)
class RentResult:
    success: bool
    phone: str = ""
    activation_id: str = ""
    error: Optional[RentError] = None
    raw: str = ""


@dataclass(frozen=True)
class PollResult:
    status: PollStatus
    code: Optional[str] = None
    raw: str = ""


_RENT_ERRORS = {
    "NO_NUMBERS": RentError.NO_NUMBERS,
    "NO_BALANCE": RentError.NO_BALANCE,
    "BAD_SERVICE": RentError.BAD_SERVICE,
    "BAD_KEY": RentError.BAD_KEY,
}


def _looks_like_html(text: str) -> bool:
    t = (text or "").lstrip().lower()
    return t.startswith("<!doctype") or t.startswith("<html")


# =========================
# Parsers (TEXT -> result)
# =========================
def parse_rent_response(text: str) -> RentResult:
    """
    Expected success:
      ACCESS_NUMBER:ID:NUMBER
    Expected errors:
      NO_NUMBERS, NO_BALANCE, BAD_SERVICE, BAD_KEY, ERROR_*
    """
    resp = (text or "").strip()

    if resp.startswith("ACCESS_"):
        parts = resp.split(":")
        if len(parts) >= 3 and parts[1] and parts[2]:
            return RentResult(success=True, activation_id=parts[1], phone=parts[2], raw=resp)
        return RentResult(success=False, error=RentError.UNKNOWN, raw=resp)

    if resp in _RENT_ERRORS:
        return RentResult(success=False, error=_RENT_ERRORS[resp], raw=resp)

    return RentResult(success=False, error=RentError.UNKNOWN, raw=resp)


def parse_status_response(text: str) -> PollResult:
    """
    WAIT:      STATUS_WAIT_CODE (also STATUS_WAIT_RETRY / STATUS_WAIT_RESEND)
    OK:        STATUS_OK:12345
    CANCEL:    STATUS_CANCEL
    MISSING:   NO_ACTIVATION
    anything else maps to ERROR so the poll loop never breaks on it
    """
    resp = (text or "").strip()

    if resp.startswith("STATUS_WAIT"):
        return PollResult(PollStatus.WAITING, raw=resp)

    if resp.startswith("STATUS_OK"):
        code = resp.split(":", 1)[1].strip() if ":" in resp else ""
        if code:
            return PollResult(PollStatus.DELIVERED, code=code, raw=resp)
        return PollResult(PollStatus.ERROR, raw=resp)

    if resp.startswith("STATUS_CANCEL"):
        return PollResult(PollStatus.CANCELLED, raw=resp)

    if resp == "NO_ACTIVATION":
        return PollResult(PollStatus.NOT_FOUND, raw=resp)

    return PollResult(PollStatus.ERROR, raw=resp)


def parse_cancel_response(text: str) -> bool:
    resp = (text or "").strip()
    if "NO_ACTIVATION" in resp:
        return False
    return resp in ("ACCESS_CANCEL", "ACCESS_READY") or "CANCEL" in resp


def parse_retry_response(text: str) -> bool:
    return (text or "").strip() == "ACCESS_RETRY_GET"


def normalize_phone(number: str, prefix: str = PHONE_COUNTRY_PREFIX) -> str:
    """Strip '+91' or a bare '91' country prefix into the local 10-digit form."""
    n = (number or "").strip().replace(" ", "")
    if n.startswith("+" + prefix):
        return n[len(prefix) + 1:]
    if n.startswith(prefix) and len(n) == len(prefix) + 10:
        return n[len(prefix):]
    return n


# =========================
# Gateway
# =========================
class FirexGateway:
    def __init__(self, api_key: str = FIREX_API_KEY, base_url: str = FIREX_BASE_URL,
                 timeout: int = VENDOR_TIMEOUT_SECONDS, session: Optional[requests.Session] = None):
        self.api_key = api_key
        self.base_url = base_url
        self.timeout = timeout
        self.session = session or requests.Session()

    def _get_text(self, params: dict) -> str:
        query = {"api_key": self.api_key}
        query.update(params)
        try:
            r = self.session.get(self.base_url, params=query, timeout=self.timeout)
        except requests.Timeout as e:
            raise FirexError("TIMEOUT", f"Request timeout: {e}")
        except requests.RequestException as e:
            raise FirexError("UNAVAILABLE", f"Network error: {e}")

        if r.status_code == 401:
            raise FirexError("BAD_KEY", "Invalid API key")
        if r.status_code >= 500:
            raise FirexError("UNAVAILABLE", f"HTTP {r.status_code}")

        text = (r.text or "").strip()
        if not text:
            raise FirexError("UNAVAILABLE", "Empty response from provider")
        if _looks_like_html(text):
            raise FirexError("UNAVAILABLE", "API endpoint returned HTML (wrong path or redirect)")

        logger.debug("firex %s -> %s", params.get("action"), text)
        return text

    def rent_number(self, service_code: str, country_code: str) -> RentResult:
        try:
            resp = self._get_text({"action": "getNumber", "service": service_code, "country": country_code})
        except FirexError as e:
            logger.warning("getNumber failed: %s", e)
            try:
                kind = RentError(e.kind)
            except ValueError:
                kind = RentError.UNAVAILABLE
            return RentResult(success=False, error=kind, raw=str(e))

        result = parse_rent_response(resp)
        if not result.success:
            logger.warning("getNumber rejected: %s", resp)
        return result

    def poll(self, activation_id: str) -> PollResult:
        try:
            resp = self._get_text({"action": "getStatus", "id": activation_id})
        except FirexError as e:
            logger.warning("getStatus %s failed: %s", activation_id, e)
            return PollResult(PollStatus.ERROR, raw=str(e))

        result = parse_status_response(resp)
        if result.status == PollStatus.ERROR:
            logger.info("Unknown status response for %s: %s", activation_id, resp)
        return result

    def cancel(self, activation_id: str) -> bool:
        try:
            resp = self._get_text({"action": "setStatus", "id": activation_id, "status": str(STATUS_CANCEL)})
        except FirexError as e:
            logger.warning("cancel %s failed: %s", activation_id, e)
            return False
        return parse_cancel_response(resp)

    def request_new(self, activation_id: str) -> bool:
        try:
            resp = self._get_text({"action": "setStatus", "id": activation_id, "status": str(STATUS_RETRY)})
        except FirexError as e:
            logger.warning("retry %s failed: %s", activation_id, e)
            return False
        return parse_retry_response(resp)
