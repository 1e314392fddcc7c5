from types import SimpleNamespace

import pytest

import db
import handlers_deposit
import handlers_gift
import handlers_referral
import handlers_users
from handlers_balance import otp_history_text, parse_transfer, register_balance_handlers
from handlers_deposit import parse_decision, register_deposit_handlers, submit_deposit
from handlers_gift import redeem_error_text, register_gift_handlers
from handlers_referral import apply_referral_code
from handlers_users import register_users_handlers

from conftest import OTHER_USER_ID, USER_ID

ADMIN_ID = 9


class RecordingBot:
    """Keeps the registered handlers and records everything the bot would send."""

    def __init__(self):
        self.message_handlers = []
        self.callback_handlers = []
        self.sent = []
        self.answers = []
        self.edits = []
        self.next_steps = []
        self._message_id = 0

    # ---- registration ----
    def message_handler(self, commands=None, func=None, **kwargs):
        def deco(fn):
            self.message_handlers.append((commands, func, fn))
            return fn
        return deco

    def callback_query_handler(self, func=None, **kwargs):
        def deco(fn):
            self.callback_handlers.append((func, fn))
            return fn
        return deco

    def register_next_step_handler(self, message, callback, *args):
        self.next_steps.append((callback, args))

    def clear_step_handler_by_chat_id(self, chat_id):
        self.next_steps = []

    # ---- telegram calls ----
    def send_message(self, chat_id, text, **kwargs):
        self._message_id += 1
        self.sent.append((chat_id, text))
        return SimpleNamespace(message_id=self._message_id, chat=SimpleNamespace(id=chat_id))

    def reply_to(self, message, text, **kwargs):
        return self.send_message(message.chat.id, text, **kwargs)

    def answer_callback_query(self, callback_query_id, text=None, show_alert=None):
        self.answers.append(text)

    def edit_message_text(self, text, chat_id=None, message_id=None, **kwargs):
        self.edits.append((chat_id, message_id, text))

    def edit_message_reply_markup(self, chat_id=None, message_id=None, reply_markup=None):
        pass

    def get_me(self):
        return SimpleNamespace(username="fire_otp_bot")

    def get_chat_member(self, chat_id, user_id):
        return SimpleNamespace(status="member")

    # ---- driving ----
    def texts_to(self, chat_id):
        return [t for c, t in self.sent if c == chat_id]

    def message(self, text, user_id, first_name="Tester", username="tester"):
        m = SimpleNamespace(
            text=text,
            chat=SimpleNamespace(id=user_id),
            from_user=SimpleNamespace(id=user_id, first_name=first_name, username=username),
        )
        for commands, func, fn in self.message_handlers:
            if commands and text.startswith("/"):
                if text[1:].split()[0].split("@")[0] in commands:
                    return fn(m)
            elif func is not None and func(m):
                return fn(m)
        raise AssertionError(f"no handler for {text!r}")

    def step(self, text, user_id):
        callback, args = self.next_steps.pop()
        m = SimpleNamespace(
            text=text,
            chat=SimpleNamespace(id=user_id),
            from_user=SimpleNamespace(id=user_id, first_name="Tester", username="tester"),
        )
        return callback(m, *args)

    def callback(self, data, user_id, message_id=1, text=""):
        c = SimpleNamespace(
            id="cb",
            data=data,
            from_user=SimpleNamespace(id=user_id),
            message=SimpleNamespace(chat=SimpleNamespace(id=user_id), message_id=message_id, text=text),
        )
        for func, fn in self.callback_handlers:
            if func(c):
                return fn(c)
        raise AssertionError(f"no handler for {data!r}")


class EventLog:
    def __init__(self):
        self.events = []

    def __getattr__(self, name):
        if name.startswith("_"):
            raise AttributeError(name)
        return lambda *args, **kwargs: self.events.append((name,) + args)

    def kinds(self):
        return [e[0] for e in self.events]


@pytest.fixture
def bot():
    return RecordingBot()


@pytest.fixture
def events():
    return EventLog()


@pytest.fixture
def admin(monkeypatch):
    monkeypatch.setattr(handlers_deposit, "ADMIN_USER_ID", ADMIN_ID)
    monkeypatch.setattr(handlers_gift, "ADMIN_USER_ID", ADMIN_ID)
    return ADMIN_ID


# -------- callback parsing --------

def test_parse_decision():
    assert parse_decision("topup_approve_12") == (True, 12)
    assert parse_decision("topup_reject_3") == (False, 3)
    assert parse_decision("topup_approve_x") is None
    assert parse_decision("deposit_100") is None


def test_parse_transfer():
    assert parse_transfer("transfer_ok_2002_30.5") == (2002, 30.5)
    assert parse_transfer("transfer_ok_2002") is None
    assert parse_transfer("transfer_ok_abc_1") is None
    assert parse_transfer("transfer_no") is None


# -------- deposits --------

def _submit(bot, user_id=OTHER_USER_ID, amount=200, utr="123456789012"):
    bot.callback(f"deposit_{amount}", user_id)
    bot.step(utr, user_id)


def test_deposit_request_reaches_admin(store, bot, events, admin):
    register_deposit_handlers(bot, events)
    bot.message("/deposit", OTHER_USER_ID)
    _submit(bot)

    [request] = db.get_user_deposits(OTHER_USER_ID)
    assert request["status"] == db.TOPUP_PENDING
    assert request["amount"] == 200
    assert request["deposit_id"].startswith("DEP")
    assert any("New Deposit Request" in t for t in bot.texts_to(ADMIN_ID))
    assert events.kinds() == ["deposit_requested"]


def test_deposit_bad_utr_asks_again_and_duplicate_is_refused(store, bot, events, admin):
    register_deposit_handlers(bot, events)
    bot.callback("deposit_100", OTHER_USER_ID)
    bot.step("12345", OTHER_USER_ID)
    assert "Invalid UTR" in bot.texts_to(OTHER_USER_ID)[-1]
    bot.step("123456789012", OTHER_USER_ID)

    _submit(bot, user_id=USER_ID)
    assert "already been submitted" in bot.texts_to(USER_ID)[-1]
    assert db.get_user_deposits(USER_ID) == []


def test_deposit_below_minimum_is_refused(store, bot, events):
    register_deposit_handlers(bot, events)
    bot.callback("deposit_50", OTHER_USER_ID)
    assert bot.next_steps == []
    assert "Minimum deposit" in bot.answers[-1]


def test_admin_approval_credits_once(store, bot, events, admin):
    register_deposit_handlers(bot, events)
    _submit(bot)
    [request] = db.get_user_deposits(OTHER_USER_ID)
    data = f"topup_approve_{request['id']}"

    bot.callback(data, OTHER_USER_ID)
    assert bot.answers[-1] == "❌ Unauthorized"
    assert db.get_balance(OTHER_USER_ID) == 0

    bot.callback(data, ADMIN_ID, message_id=50, text="New Deposit Request")
    bot.callback(data, ADMIN_ID, message_id=50, text="New Deposit Request")

    assert db.get_balance(OTHER_USER_ID) == 200
    assert db.get_monthly_deposit(OTHER_USER_ID) == 200
    assert "APPROVED" in bot.edits[0][2]
    assert "already processed" in bot.edits[1][2]
    assert any("Deposit Approved" in t for t in bot.texts_to(OTHER_USER_ID))
    assert events.kinds().count("deposit_approved") == 1


def test_admin_approval_pays_the_referrer(store, bot, events, admin):
    db.ensure_referral_code(USER_ID, lambda: "FRIEND01")
    db.add_referral(USER_ID, OTHER_USER_ID, "FRIEND01")
    register_deposit_handlers(bot, events)
    _submit(bot, amount=1000)
    [request] = db.get_user_deposits(OTHER_USER_ID)

    bot.callback(f"topup_approve_{request['id']}", ADMIN_ID)

    assert db.get_balance(USER_ID) == 150
    assert any("Referral Commission" in t for t in bot.texts_to(USER_ID))


def test_admin_rejection(store, bot, events, admin):
    register_deposit_handlers(bot, events)
    _submit(bot)
    [request] = db.get_user_deposits(OTHER_USER_ID)

    bot.callback(f"topup_reject_{request['id']}", ADMIN_ID)

    assert db.get_balance(OTHER_USER_ID) == 0
    assert db.get_topup_request(request["id"])["status"] == db.TOPUP_REJECTED
    assert any("Deposit Rejected" in t for t in bot.texts_to(OTHER_USER_ID))
    assert events.kinds()[-1] == "deposit_rejected"


def test_submit_deposit_validates_utr(store):
    with pytest.raises(ValueError):
        submit_deposit(USER_ID, 100, "DEP1", "abc")
    request = submit_deposit(USER_ID, 100, "DEP1", " 111122223333 ")
    assert request["utr"] == "111122223333"
    with pytest.raises(db.DuplicateUTR):
        submit_deposit(OTHER_USER_ID, 100, "DEP2", "111122223333")


# -------- referrals --------

def test_apply_referral_code(store):
    db.ensure_referral_code(USER_ID, lambda: "FRIEND01")

    assert apply_referral_code(OTHER_USER_ID, "nope")[0] == handlers_referral.REF_INVALID
    assert apply_referral_code(USER_ID, "FRIEND01")[0] == handlers_referral.REF_SELF
    outcome, referrer = apply_referral_code(OTHER_USER_ID, "friend01")
    assert outcome == handlers_referral.REF_APPLIED
    assert referrer["user_id"] == USER_ID
    assert apply_referral_code(OTHER_USER_ID, "FRIEND01")[0] == handlers_referral.REF_ALREADY


def test_start_with_referral_code(store, bot, events, monkeypatch):
    monkeypatch.setattr(handlers_users, "CHANNEL_ID", "")
    db.ensure_referral_code(USER_ID, lambda: "FRIEND01")
    register_users_handlers(bot, lambda is_admin: None, events)

    bot.message("/start FRIEND01", 3003, first_name="New")

    assert db.get_referrer(3003) == USER_ID
    assert any("Referral Applied" in t for t in bot.texts_to(3003))
    assert any("New Referral Joined" in t for t in bot.texts_to(USER_ID))
    assert events.kinds() == ["user_registered"]

    bot.message("/start FRIEND01", USER_ID)
    assert any("Self-Referral" in t for t in bot.texts_to(USER_ID))
    assert db.get_referrer(USER_ID) is None
    assert events.kinds() == ["user_registered"]


def test_referral_dashboard_shows_link(store, bot):
    handlers_referral.register_referral_handlers(bot)
    bot.message("/referral", USER_ID)
    text = bot.texts_to(USER_ID)[-1]
    code = db.get_user(USER_ID)["referral_code"]
    assert len(code) == 8
    assert f"https://t.me/fire_otp_bot?start={code}" in text


# -------- gift codes --------

def test_redeem_gift_code(store, bot, events):
    db.create_gift_code("GIFT0001", 15, ADMIN_ID)
    register_gift_handlers(bot, events)

    bot.message("/redeem gift0001", OTHER_USER_ID)
    assert db.get_balance(OTHER_USER_ID) == 15
    assert "Gift Code Redeemed" in bot.texts_to(OTHER_USER_ID)[-1]

    bot.message("🎟️ Redeem Gift", OTHER_USER_ID)
    bot.step("GIFT0001", OTHER_USER_ID)
    assert db.get_balance(OTHER_USER_ID) == 15
    assert "maximum uses" in bot.texts_to(OTHER_USER_ID)[-1]
    assert events.kinds() == ["gift_code_redeemed"]


def test_admin_creates_gift_code(store, bot, events, admin):
    db.register_user(ADMIN_ID)
    register_gift_handlers(bot, events)

    bot.message("/giftcode", USER_ID)
    assert bot.next_steps == []

    bot.message("/giftcode", ADMIN_ID)
    bot.step("25", ADMIN_ID)
    bot.step("0", ADMIN_ID)
    bot.step("500", ADMIN_ID)

    [gift] = db.list_gift_codes()
    assert gift["amount"] == 25
    assert gift["max_uses"] == 0
    assert gift["min_deposit"] == 500
    assert gift["code"] in bot.texts_to(ADMIN_ID)[-1]


def test_redeem_error_texts():
    assert "Required Monthly Deposit: ₹1000" in redeem_error_text(
        db.GiftCodeError(db.GIFT_MIN_DEPOSIT, required=1000, current=200))
    assert redeem_error_text(db.GiftCodeError(db.GIFT_INVALID)) == "❌ Invalid gift code"
    assert "expired" in redeem_error_text(db.GiftCodeError(db.GIFT_EXPIRED))


# -------- transfers / history --------

def test_transfer_flow_confirms_once(store, bot, events):
    register_balance_handlers(bot, events)

    bot.message("/transfer", USER_ID)
    bot.step(str(OTHER_USER_ID), USER_ID)
    bot.step("30", USER_ID)
    assert "Confirm Transfer" in bot.texts_to(USER_ID)[-1]

    data = f"transfer_ok_{OTHER_USER_ID}_30.0"
    bot.callback(data, USER_ID, message_id=77)
    bot.callback(data, USER_ID, message_id=77)

    assert db.get_balance(USER_ID) == 70
    assert db.get_balance(OTHER_USER_ID) == 30
    assert bot.answers[-1] == "Already transferred"
    assert any("Balance Received" in t for t in bot.texts_to(OTHER_USER_ID))
    assert events.kinds() == ["balance_transferred"]


def test_transfer_to_self_or_unknown_is_refused(store, bot, events):
    register_balance_handlers(bot, events)

    bot.message("/transfer", USER_ID)
    bot.step(str(USER_ID), USER_ID)
    assert "yourself" in bot.texts_to(USER_ID)[-1]

    bot.message("/transfer", USER_ID)
    bot.step("424242", USER_ID)
    assert "not started" in bot.texts_to(USER_ID)[-1]

    bot.message("/transfer", USER_ID)
    bot.step(str(OTHER_USER_ID), USER_ID)
    bot.step("500", USER_ID)
    assert "Insufficient" in bot.texts_to(USER_ID)[-1]
    assert db.get_balance(USER_ID) == 100


def test_otp_history_lists_codes(store):
    db.add_order({
        "order_id": "ORD1", "activation_id": "A1", "user_id": USER_ID, "service": "Whatsapp",
        "phone": "9876543210", "price": 20, "order_time": 1_700_000_000,
    })
    db.mark_order_otp("ORD1", "4321")
    text = otp_history_text(USER_ID)
    assert "Whatsapp" in text
    assert "<code>4321</code>" in text
    assert otp_history_text(OTHER_USER_ID).endswith("No orders found.")
