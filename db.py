# db.py
# SQLite ledger: users + balance, orders (audit trail), active_orders (mirror of live jobs),
# monthly_deposits (feeds discount tiers), topup_requests (UPI deposits awaiting approval),
# referrals + referral_earnings, gift_codes + gift_code_uses, balance_transfers
# NOTE: a single init_db creates every table

import sqlite3
import threading
import time
from contextlib import contextmanager
from typing import Optional, List, Dict, Any

from config import (
    DB_PATH,
    REFERRAL_ENABLED,
    REFERRAL_COMMISSION_PERCENT,
    MIN_DEPOSIT_FOR_COMMISSION,
)

_db_lock = threading.RLock()

ORDER_ACTIVE = "active"
ORDER_COMPLETED = "completed"
ORDER_CANCELLED = "cancelled"

TOPUP_PENDING = "pending"
TOPUP_APPROVED = "approved"
TOPUP_REJECTED = "rejected"

GIFT_INVALID = "invalid"
GIFT_EXPIRED = "expired"
GIFT_EXHAUSTED = "exhausted"
GIFT_ALREADY_USED = "already_used"
GIFT_MIN_DEPOSIT = "min_deposit"


class UserNotFound(Exception):
    pass


class InsufficientFunds(Exception):
    pass


class DuplicateUTR(Exception):
    pass


class DuplicateTransfer(Exception):
    pass


class RequestNotPending(Exception):
    """Top-up request is unknown or was already approved / rejected."""


class GiftCodeError(Exception):
    def __init__(self, reason: str, required: float = 0.0, current: float = 0.0):
        super().__init__(reason)
        self.reason = reason
        self.required = required
        self.current = current


@contextmanager
def _connect():
    conn = sqlite3.connect(DB_PATH, timeout=30, check_same_thread=False)
    try:
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA foreign_keys=ON;")
        yield conn
        conn.commit()
    finally:
        conn.close()


def _month_key(ts: Optional[float] = None) -> str:
    return time.strftime("%Y-%m", time.localtime(ts if ts is not None else time.time()))


def _ensure_users_schema(conn: sqlite3.Connection) -> None:
    cols = {c["name"] for c in conn.execute("PRAGMA table_info(users)").fetchall()}
    if cols and "referral_code" not in cols:
        conn.execute("ALTER TABLE users ADD COLUMN referral_code TEXT")


def init_db() -> None:
    with _db_lock, _connect() as conn:
        conn.execute("""
        CREATE TABLE IF NOT EXISTS users (
            user_id INTEGER PRIMARY KEY,
            balance REAL NOT NULL DEFAULT 0,
            channel_joined INTEGER NOT NULL DEFAULT 0,
            terms_accepted INTEGER NOT NULL DEFAULT 0,
            total_orders INTEGER NOT NULL DEFAULT 0,
            first_name TEXT,
            username TEXT,
            joined_at INTEGER NOT NULL,
            referral_code TEXT
        )
        """)
        _ensure_users_schema(conn)
        conn.execute("CREATE UNIQUE INDEX IF NOT EXISTS idx_users_referral_code ON users(referral_code)")

        conn.execute("""
        CREATE TABLE IF NOT EXISTS orders (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            order_id TEXT UNIQUE NOT NULL,
            activation_id TEXT,
            user_id INTEGER NOT NULL REFERENCES users(user_id),
            service TEXT NOT NULL,
            phone TEXT NOT NULL,
            price REAL NOT NULL,
            server_used TEXT NOT NULL DEFAULT '',
            original_price REAL NOT NULL DEFAULT 0,
            discount_applied REAL NOT NULL DEFAULT 0,
            status TEXT NOT NULL,                  -- active/completed/cancelled
            otp_code TEXT,
            order_time INTEGER NOT NULL
        )
        """)

        conn.execute("""
        CREATE TABLE IF NOT EXISTS active_orders (
            order_id TEXT PRIMARY KEY,
            activation_id TEXT,
            user_id INTEGER NOT NULL REFERENCES users(user_id),
            phone TEXT NOT NULL,
            product TEXT NOT NULL,
            expires_at INTEGER NOT NULL,
            created_at INTEGER NOT NULL,
            server_used TEXT NOT NULL DEFAULT ''
        )
        """)

        conn.execute("""
        CREATE TABLE IF NOT EXISTS monthly_deposits (
            user_id INTEGER NOT NULL,
            month_year TEXT NOT NULL,
            total_deposit REAL NOT NULL DEFAULT 0,
            PRIMARY KEY (user_id, month_year)
        )
        """)

        conn.execute("""
        CREATE TABLE IF NOT EXISTS topup_requests (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            deposit_id TEXT NOT NULL,
            user_id INTEGER NOT NULL REFERENCES users(user_id),
            amount REAL NOT NULL,
            utr TEXT UNIQUE NOT NULL,
            status TEXT NOT NULL DEFAULT 'pending',   -- pending/approved/rejected
            request_time INTEGER NOT NULL,
            decided_at INTEGER
        )
        """)

        conn.execute("""
        CREATE TABLE IF NOT EXISTS referrals (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            referrer_id INTEGER NOT NULL REFERENCES users(user_id),
            referred_id INTEGER UNIQUE NOT NULL REFERENCES users(user_id),
            referral_code TEXT NOT NULL,
            joined_at INTEGER NOT NULL
        )
        """)

        conn.execute("""
        CREATE TABLE IF NOT EXISTS referral_earnings (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            referrer_id INTEGER NOT NULL,
            referred_id INTEGER NOT NULL,
            topup_id INTEGER REFERENCES topup_requests(id),
            deposit_amount REAL NOT NULL,
            commission_amount REAL NOT NULL,
            commission_percent REAL NOT NULL,
            earned_at INTEGER NOT NULL
        )
        """)

        conn.execute("""
        CREATE TABLE IF NOT EXISTS gift_codes (
            code TEXT PRIMARY KEY,
            amount REAL NOT NULL,
            created_by INTEGER NOT NULL,
            created_at INTEGER NOT NULL,
            max_uses INTEGER NOT NULL DEFAULT 1,      -- 0 = unlimited
            used_count INTEGER NOT NULL DEFAULT 0,
            min_deposit REAL NOT NULL DEFAULT 0,
            expires_at INTEGER
        )
        """)

        conn.execute("""
        CREATE TABLE IF NOT EXISTS gift_code_uses (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            code TEXT NOT NULL REFERENCES gift_codes(code) ON DELETE CASCADE,
            user_id INTEGER NOT NULL,
            used_at INTEGER NOT NULL,
            UNIQUE (code, user_id)
        )
        """)

        conn.execute("""
        CREATE TABLE IF NOT EXISTS balance_transfers (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            from_user_id INTEGER NOT NULL,
            to_user_id INTEGER NOT NULL,
            amount REAL NOT NULL,
            note TEXT NOT NULL DEFAULT '',
            ref TEXT UNIQUE,                          -- confirmation message, one transfer each
            transfer_time INTEGER NOT NULL
        )
        """)


# =========================
# Users / Balance
# =========================

def register_user(user_id: int, first_name: str = "", username: str = "") -> None:
    now = int(time.time())
    with _db_lock, _connect() as conn:
        conn.execute(
            "INSERT OR IGNORE INTO users (user_id, balance, first_name, username, joined_at) VALUES (?, 0, ?, ?, ?)",
            (int(user_id), str(first_name or ""), str(username or ""), now),
        )
        if first_name or username:
            conn.execute(
                "UPDATE users SET first_name=?, username=? WHERE user_id=?",
                (str(first_name or ""), str(username or ""), int(user_id)),
            )


def get_user(user_id: int) -> Optional[Dict[str, Any]]:
    with _db_lock, _connect() as conn:
        row = conn.execute("SELECT * FROM users WHERE user_id=?", (int(user_id),)).fetchone()
        return dict(row) if row else None


def get_balance(user_id: int) -> float:
    with _db_lock, _connect() as conn:
        row = conn.execute("SELECT balance FROM users WHERE user_id=?", (int(user_id),)).fetchone()
        return float(row["balance"]) if row else 0.0


def adjust_balance(user_id: int, delta: float, floor: Optional[float] = None) -> float:
    """
    Atomic balance change. Raises UserNotFound for an unknown user and
    InsufficientFunds when `floor` is given and the result would go below it.
    Returns the new balance.
    """
    with _db_lock, _connect() as conn:
        return _adjust_balance(conn, user_id, delta, floor)


def _adjust_balance(conn: sqlite3.Connection, user_id: int, delta: float, floor: Optional[float] = None) -> float:
    row = conn.execute("SELECT balance FROM users WHERE user_id=?", (int(user_id),)).fetchone()
    if not row:
        raise UserNotFound(user_id)

    new_balance = round(float(row["balance"]) + float(delta), 2)
    if floor is not None and new_balance < floor:
        raise InsufficientFunds(f"balance {row['balance']} < {-float(delta)}")

    conn.execute("UPDATE users SET balance=? WHERE user_id=?", (new_balance, int(user_id)))
    return new_balance


def set_channel_joined(user_id: int, joined: bool = True) -> None:
    with _db_lock, _connect() as conn:
        conn.execute("UPDATE users SET channel_joined=? WHERE user_id=?", (1 if joined else 0, int(user_id)))


def set_terms_accepted(user_id: int) -> None:
    with _db_lock, _connect() as conn:
        conn.execute("UPDATE users SET terms_accepted=1 WHERE user_id=?", (int(user_id),))


# =========================
# Deposits (discount tiers)
# =========================

def _add_monthly_deposit(conn: sqlite3.Connection, user_id: int, amount: float) -> float:
    key = _month_key()
    conn.execute("""
        INSERT INTO monthly_deposits (user_id, month_year, total_deposit) VALUES (?, ?, ?)
        ON CONFLICT(user_id, month_year) DO UPDATE SET total_deposit = total_deposit + excluded.total_deposit
    """, (int(user_id), key, float(amount)))
    row = conn.execute(
        "SELECT total_deposit FROM monthly_deposits WHERE user_id=? AND month_year=?",
        (int(user_id), key),
    ).fetchone()
    return float(row["total_deposit"]) if row else 0.0


def add_monthly_deposit(user_id: int, amount: float) -> float:
    with _db_lock, _connect() as conn:
        return _add_monthly_deposit(conn, user_id, amount)


def get_monthly_deposit(user_id: int) -> float:
    with _db_lock, _connect() as conn:
        row = conn.execute(
            "SELECT total_deposit FROM monthly_deposits WHERE user_id=? AND month_year=?",
            (int(user_id), _month_key()),
        ).fetchone()
        return float(row["total_deposit"]) if row else 0.0


# =========================
# Orders
# =========================

def add_order(order: Dict[str, Any]) -> str:
    with _db_lock, _connect() as conn:
        conn.execute("""
            INSERT INTO orders (order_id, activation_id, user_id, service, phone, price,
                                server_used, original_price, discount_applied, status, order_time)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            str(order["order_id"]),
            str(order.get("activation_id") or ""),
            int(order["user_id"]),
            str(order["service"]),
            str(order["phone"]),
            float(order["price"]),
            str(order.get("server_used") or ""),
            float(order.get("original_price") or order["price"]),
            float(order.get("discount_applied") or 0),
            str(order.get("status") or ORDER_ACTIVE),
            int(order.get("order_time") or time.time()),
        ))
        conn.execute("UPDATE users SET total_orders = total_orders + 1 WHERE user_id=?", (int(order["user_id"]),))
    return str(order["order_id"])


def get_order(order_id: str) -> Optional[Dict[str, Any]]:
    with _db_lock, _connect() as conn:
        row = conn.execute("SELECT * FROM orders WHERE order_id=?", (str(order_id),)).fetchone()
        return dict(row) if row else None


def get_user_orders(user_id: int, limit: int = 10) -> List[Dict[str, Any]]:
    with _db_lock, _connect() as conn:
        rows = conn.execute("""
            SELECT order_id, service, phone, price, status, order_time, otp_code, server_used,
                   original_price, discount_applied
            FROM orders WHERE user_id=?
            ORDER BY order_time DESC, id DESC
            LIMIT ?
        """, (int(user_id), int(limit))).fetchall()
        return [dict(r) for r in rows]


def mark_order_otp(order_id: str, otp_code: str) -> None:
    with _db_lock, _connect() as conn:
        conn.execute(
            "UPDATE orders SET otp_code=?, status=? WHERE order_id=?",
            (str(otp_code), ORDER_COMPLETED, str(order_id)),
        )


def set_order_status(order_id: str, status: str) -> None:
    with _db_lock, _connect() as conn:
        conn.execute("UPDATE orders SET status=? WHERE order_id=?", (str(status), str(order_id)))


def update_order_number(order_id: str, activation_id: str, phone: str) -> None:
    """New rental on the same order. Only the number changes; status and OTP stay."""
    with _db_lock, _connect() as conn:
        conn.execute(
            "UPDATE orders SET activation_id=?, phone=? WHERE order_id=?",
            (str(activation_id), str(phone), str(order_id)),
        )


# =========================
# Active orders (mirror of in-flight jobs)
# =========================

def upsert_active_order(record: Dict[str, Any]) -> None:
    with _db_lock, _connect() as conn:
        conn.execute("""
            INSERT INTO active_orders (order_id, activation_id, user_id, phone, product, expires_at, created_at, server_used)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(order_id) DO UPDATE SET
                activation_id=excluded.activation_id,
                phone=excluded.phone,
                expires_at=excluded.expires_at,
                server_used=excluded.server_used
        """, (
            str(record["order_id"]),
            str(record.get("activation_id") or ""),
            int(record["user_id"]),
            str(record["phone"]),
            str(record["product"]),
            int(record["expires_at"]),
            int(record.get("created_at") or time.time()),
            str(record.get("server_used") or ""),
        ))


def delete_active_order(order_id: str) -> None:
    with _db_lock, _connect() as conn:
        conn.execute("DELETE FROM active_orders WHERE order_id=?", (str(order_id),))


def get_active_orders(user_id: Optional[int] = None) -> List[Dict[str, Any]]:
    with _db_lock, _connect() as conn:
        if user_id is None:
            rows = conn.execute("SELECT * FROM active_orders ORDER BY created_at").fetchall()
        else:
            rows = conn.execute(
                "SELECT * FROM active_orders WHERE user_id=? ORDER BY created_at",
                (int(user_id),),
            ).fetchall()
        return [dict(r) for r in rows]


# =========================
# Referrals
# =========================

def ensure_referral_code(user_id: int, make_code) -> str:
    """Returns the user's referral code, creating one with make_code() on first use."""
    with _db_lock, _connect() as conn:
        row = conn.execute("SELECT referral_code FROM users WHERE user_id=?", (int(user_id),)).fetchone()
        if not row:
            raise UserNotFound(user_id)
        if row["referral_code"]:
            return row["referral_code"]

        while True:
            code = str(make_code()).upper()
            taken = conn.execute("SELECT 1 FROM users WHERE referral_code=?", (code,)).fetchone()
            if not taken:
                conn.execute("UPDATE users SET referral_code=? WHERE user_id=?", (code, int(user_id)))
                return code


def get_user_by_referral_code(code: str) -> Optional[Dict[str, Any]]:
    with _db_lock, _connect() as conn:
        row = conn.execute(
            "SELECT * FROM users WHERE referral_code=?", (str(code or "").strip().upper(),)
        ).fetchone()
        return dict(row) if row else None


def add_referral(referrer_id: int, referred_id: int, code: str) -> bool:
    """A user gets one referrer, ever. Self-referral is refused."""
    if int(referrer_id) == int(referred_id):
        return False
    with _db_lock, _connect() as conn:
        cur = conn.execute(
            "INSERT OR IGNORE INTO referrals (referrer_id, referred_id, referral_code, joined_at) VALUES (?, ?, ?, ?)",
            (int(referrer_id), int(referred_id), str(code).upper(), int(time.time())),
        )
        return cur.rowcount == 1


def get_referrer(referred_id: int) -> Optional[int]:
    with _db_lock, _connect() as conn:
        row = conn.execute("SELECT referrer_id FROM referrals WHERE referred_id=?", (int(referred_id),)).fetchone()
        return int(row["referrer_id"]) if row else None


def get_referrals(user_id: int, limit: int = 10) -> List[Dict[str, Any]]:
    with _db_lock, _connect() as conn:
        rows = conn.execute("""
            SELECT r.referred_id, r.joined_at, u.first_name, u.username,
                   COALESCE((SELECT SUM(e.commission_amount) FROM referral_earnings e
                             WHERE e.referrer_id = r.referrer_id AND e.referred_id = r.referred_id), 0) AS earned
            FROM referrals r
            LEFT JOIN users u ON u.user_id = r.referred_id
            WHERE r.referrer_id=?
            ORDER BY r.joined_at DESC, r.id DESC
            LIMIT ?
        """, (int(user_id), int(limit))).fetchall()
        return [dict(r) for r in rows]


def get_referral_earnings(user_id: int, limit: int = 10) -> List[Dict[str, Any]]:
    with _db_lock, _connect() as conn:
        rows = conn.execute("""
            SELECT e.*, u.first_name, u.username
            FROM referral_earnings e
            LEFT JOIN users u ON u.user_id = e.referred_id
            WHERE e.referrer_id=?
            ORDER BY e.earned_at DESC, e.id DESC
            LIMIT ?
        """, (int(user_id), int(limit))).fetchall()
        return [dict(r) for r in rows]


def get_referral_stats(user_id: int) -> Dict[str, Any]:
    with _db_lock, _connect() as conn:
        total = conn.execute(
            "SELECT COUNT(*) AS n FROM referrals WHERE referrer_id=?", (int(user_id),)
        ).fetchone()["n"]
        row = conn.execute("""
            SELECT COUNT(DISTINCT referred_id) AS earning, COALESCE(SUM(commission_amount), 0) AS earnings
            FROM referral_earnings WHERE referrer_id=?
        """, (int(user_id),)).fetchone()
        return {
            "total_referrals": int(total),
            "earning_referrals": int(row["earning"]),
            "total_earnings": round(float(row["earnings"]), 2),
        }


def _pay_referral_commission(conn: sqlite3.Connection, referred_id: int, amount: float,
                             topup_id: Optional[int], now: int) -> Optional[Dict[str, Any]]:
    if not REFERRAL_ENABLED or float(amount) < MIN_DEPOSIT_FOR_COMMISSION:
        return None
    row = conn.execute("SELECT referrer_id FROM referrals WHERE referred_id=?", (int(referred_id),)).fetchone()
    if not row:
        return None

    referrer_id = int(row["referrer_id"])
    commission = round(float(amount) * REFERRAL_COMMISSION_PERCENT / 100, 2)
    if commission <= 0:
        return None
    try:
        referrer_balance = _adjust_balance(conn, referrer_id, commission)
    except UserNotFound:
        return None

    conn.execute("""
        INSERT INTO referral_earnings (referrer_id, referred_id, topup_id, deposit_amount,
                                       commission_amount, commission_percent, earned_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
    """, (referrer_id, int(referred_id), topup_id, float(amount), commission,
          float(REFERRAL_COMMISSION_PERCENT), now))
    return {"referrer_id": referrer_id, "commission": commission, "referrer_balance": referrer_balance}


# =========================
# Top-up requests (UPI + UTR)
# =========================

def utr_exists(utr: str) -> bool:
    with _db_lock, _connect() as conn:
        return conn.execute("SELECT 1 FROM topup_requests WHERE utr=?", (str(utr),)).fetchone() is not None


def create_topup_request(user_id: int, amount: float, utr: str, deposit_id: str) -> int:
    """Stores a pending request. A UTR can only ever be submitted once."""
    try:
        with _db_lock, _connect() as conn:
            cur = conn.execute("""
                INSERT INTO topup_requests (deposit_id, user_id, amount, utr, status, request_time)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (str(deposit_id), int(user_id), float(amount), str(utr), TOPUP_PENDING, int(time.time())))
            return int(cur.lastrowid)
    except sqlite3.IntegrityError as e:
        if "utr" in str(e).lower():
            raise DuplicateUTR(utr) from e
        raise


def get_topup_request(request_id: int) -> Optional[Dict[str, Any]]:
    with _db_lock, _connect() as conn:
        row = conn.execute("SELECT * FROM topup_requests WHERE id=?", (int(request_id),)).fetchone()
        return dict(row) if row else None


def get_user_deposits(user_id: int, limit: int = 10) -> List[Dict[str, Any]]:
    with _db_lock, _connect() as conn:
        rows = conn.execute("""
            SELECT * FROM topup_requests WHERE user_id=?
            ORDER BY request_time DESC, id DESC
            LIMIT ?
        """, (int(user_id), int(limit))).fetchall()
        return [dict(r) for r in rows]


def _take_pending_topup(conn: sqlite3.Connection, request_id: int, status: str, now: int) -> Dict[str, Any]:
    cur = conn.execute(
        "UPDATE topup_requests SET status=?, decided_at=? WHERE id=? AND status=?",
        (status, now, int(request_id), TOPUP_PENDING),
    )
    if cur.rowcount != 1:
        raise RequestNotPending(request_id)
    return dict(conn.execute("SELECT * FROM topup_requests WHERE id=?", (int(request_id),)).fetchone())


def approve_topup(request_id: int) -> Dict[str, Any]:
    """
    pending -> approved, in one transaction with the credit, the monthly deposit
    and the referrer's commission. Raises RequestNotPending if it was already decided.
    """
    now = int(time.time())
    with _db_lock, _connect() as conn:
        req = _take_pending_topup(conn, request_id, TOPUP_APPROVED, now)
        req["new_balance"] = _adjust_balance(conn, req["user_id"], req["amount"])
        req["monthly_deposit"] = _add_monthly_deposit(conn, req["user_id"], req["amount"])
        req["referral"] = _pay_referral_commission(conn, req["user_id"], req["amount"], req["id"], now)
        return req


def reject_topup(request_id: int) -> Dict[str, Any]:
    with _db_lock, _connect() as conn:
        return _take_pending_topup(conn, request_id, TOPUP_REJECTED, int(time.time()))


# =========================
# Gift codes
# =========================

def create_gift_code(code: str, amount: float, created_by: int, max_uses: int = 1,
                     min_deposit: float = 0, expires_at: Optional[int] = None) -> bool:
    """False if the code already exists."""
    with _db_lock, _connect() as conn:
        cur = conn.execute("""
            INSERT OR IGNORE INTO gift_codes (code, amount, created_by, created_at, max_uses, min_deposit, expires_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
        """, (str(code).strip().upper(), float(amount), int(created_by), int(time.time()),
              int(max_uses), float(min_deposit), expires_at))
        return cur.rowcount == 1


def get_gift_code(code: str) -> Optional[Dict[str, Any]]:
    with _db_lock, _connect() as conn:
        row = conn.execute("SELECT * FROM gift_codes WHERE code=?", (str(code or "").strip().upper(),)).fetchone()
        return dict(row) if row else None


def list_gift_codes(limit: int = 20) -> List[Dict[str, Any]]:
    with _db_lock, _connect() as conn:
        rows = conn.execute(
            "SELECT * FROM gift_codes ORDER BY created_at DESC LIMIT ?", (int(limit),)
        ).fetchall()
        return [dict(r) for r in rows]


def delete_gift_code(code: str) -> bool:
    with _db_lock, _connect() as conn:
        cur = conn.execute("DELETE FROM gift_codes WHERE code=?", (str(code or "").strip().upper(),))
        return cur.rowcount == 1


def redeem_gift_code(code: str, user_id: int, now: Optional[float] = None) -> Dict[str, Any]:
    """
    Checks, in order: code exists, monthly deposit >= min_deposit, not expired,
    uses left, not used by this user. Credits the balance on success.
    Raises GiftCodeError with the failing reason.
    """
    code = str(code or "").strip().upper()
    now = int(now if now is not None else time.time())
    with _db_lock, _connect() as conn:
        gift = conn.execute("SELECT * FROM gift_codes WHERE code=?", (code,)).fetchone()
        if not gift:
            raise GiftCodeError(GIFT_INVALID)

        if float(gift["min_deposit"]) > 0:
            row = conn.execute(
                "SELECT total_deposit FROM monthly_deposits WHERE user_id=? AND month_year=?",
                (int(user_id), _month_key(now)),
            ).fetchone()
            current = float(row["total_deposit"]) if row else 0.0
            if current < float(gift["min_deposit"]):
                raise GiftCodeError(GIFT_MIN_DEPOSIT, required=float(gift["min_deposit"]), current=current)

        if gift["expires_at"] is not None and now > int(gift["expires_at"]):
            raise GiftCodeError(GIFT_EXPIRED)
        if int(gift["max_uses"]) > 0 and int(gift["used_count"]) >= int(gift["max_uses"]):
            raise GiftCodeError(GIFT_EXHAUSTED)

        cur = conn.execute(
            "INSERT OR IGNORE INTO gift_code_uses (code, user_id, used_at) VALUES (?, ?, ?)",
            (code, int(user_id), now),
        )
        if cur.rowcount != 1:
            raise GiftCodeError(GIFT_ALREADY_USED)

        conn.execute("UPDATE gift_codes SET used_count = used_count + 1 WHERE code=?", (code,))
        new_balance = _adjust_balance(conn, user_id, float(gift["amount"]))
        return {"code": code, "amount": float(gift["amount"]), "new_balance": new_balance}


# =========================
# Balance transfers
# =========================

def transfer_balance(from_user_id: int, to_user_id: int, amount: float, note: str = "",
                     ref: Optional[str] = None) -> Dict[str, Any]:
    """
    Atomic debit + credit + log row. The sender cannot go below zero.
    A given ref is accepted once; a repeat raises DuplicateTransfer.
    """
    amount = round(float(amount), 2)
    if amount <= 0:
        raise ValueError("amount must be positive")
    if int(from_user_id) == int(to_user_id):
        raise ValueError("cannot transfer to yourself")

    with _db_lock, _connect() as conn:
        if not conn.execute("SELECT 1 FROM users WHERE user_id=?", (int(to_user_id),)).fetchone():
            raise UserNotFound(to_user_id)
        if ref is not None and conn.execute("SELECT 1 FROM balance_transfers WHERE ref=?", (str(ref),)).fetchone():
            raise DuplicateTransfer(ref)
        from_balance = _adjust_balance(conn, from_user_id, -amount, floor=0)
        to_balance = _adjust_balance(conn, to_user_id, amount)
        cur = conn.execute("""
            INSERT INTO balance_transfers (from_user_id, to_user_id, amount, note, ref, transfer_time)
            VALUES (?, ?, ?, ?, ?, ?)
        """, (int(from_user_id), int(to_user_id), amount, str(note or ""),
              str(ref) if ref is not None else None, int(time.time())))
        return {
            "id": int(cur.lastrowid),
            "amount": amount,
            "from_balance": from_balance,
            "to_balance": to_balance,
        }


def get_balance_transfers(user_id: int, limit: int = 10) -> List[Dict[str, Any]]:
    with _db_lock, _connect() as conn:
        rows = conn.execute("""
            SELECT * FROM balance_transfers
            WHERE from_user_id=? OR to_user_id=?
            ORDER BY transfer_time DESC, id DESC
            LIMIT ?
        """, (int(user_id), int(user_id), int(limit))).fetchall()
        return [dict(r) for r in rows]
