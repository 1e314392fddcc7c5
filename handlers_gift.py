# handlers_gift.py
# Gift codes:
# - users: /redeem [CODE] or the menu button, then type the code
# - admin: /giftcode (amount -> max uses -> min monthly deposit), /giftcodes, /delgift CODE

import html
import logging

from telebot.types import Message
from telebot.util import extract_arguments

import db
import payments
from pricing import format_currency
from config import ADMIN_USER_ID, GIFT_CODE_LENGTH

logger = logging.getLogger(__name__)

BTN_REDEEM = "🎟️ Redeem Gift"
_CANCEL_WORDS = ("cancel", "/cancel")


def redeem_error_text(err: db.GiftCodeError) -> str:
    if err.reason == db.GIFT_MIN_DEPOSIT:
        return (
            "❌ <b>Gift Code Requirement Not Met</b>\n\n"
            f"💰 Required Monthly Deposit: ₹{format_currency(err.required)}\n"
            f"💳 Your Monthly Deposit: ₹{format_currency(err.current)}\n\n"
            "Please deposit more to redeem this gift code."
        )
    return {
        db.GIFT_EXPIRED: "❌ This gift code has expired.",
        db.GIFT_EXHAUSTED: "❌ This gift code has reached its maximum uses.",
        db.GIFT_ALREADY_USED: "❌ You have already redeemed this gift code.",
    }.get(err.reason, "❌ Invalid gift code")


def new_gift_code(amount: float, created_by: int, max_uses: int = 1, min_deposit: float = 0) -> str:
    while True:
        code = payments.random_code(GIFT_CODE_LENGTH)
        if db.create_gift_code(code, amount, created_by, max_uses=max_uses, min_deposit=min_deposit):
            return code


def _uses_text(max_uses: int) -> str:
    return "Unlimited" if int(max_uses) == 0 else str(max_uses)


def register_gift_handlers(bot, notifier):

    def _redeem(m: Message, code: str):
        user_id = m.from_user.id
        db.register_user(user_id)
        try:
            result = db.redeem_gift_code(code, user_id)
        except db.GiftCodeError as e:
            bot.reply_to(m, redeem_error_text(e), parse_mode="HTML")
            return

        logger.info("User %s redeemed gift code %s (%s)", user_id, result["code"], result["amount"])
        bot.reply_to(
            m,
            "🎉 <b>Gift Code Redeemed!</b>\n\n"
            f"💰 <b>Amount:</b> ₹{format_currency(result['amount'])}\n"
            f"🔤 <b>Code:</b> <code>{html.escape(result['code'])}</code>\n"
            f"💳 <b>New Balance:</b> ₹{format_currency(result['new_balance'])}",
            parse_mode="HTML",
        )
        notifier.gift_code_redeemed(user_id, result["code"], result["amount"], result["new_balance"])

    def _ask_code(m: Message):
        msg = bot.reply_to(
            m,
            f"🎟️ <b>Redeem Gift Code</b>\n\nPlease enter your gift code ({GIFT_CODE_LENGTH} characters):",
            parse_mode="HTML",
        )
        bot.register_next_step_handler(msg, _step_code)

    def _step_code(m: Message):
        text = (m.text or "").strip()
        if text.lower() in _CANCEL_WORDS:
            bot.reply_to(m, "Cancelled.")
            return
        _redeem(m, text)

    @bot.message_handler(commands=["redeem"])
    def redeem_cmd(m: Message):
        code = extract_arguments(m.text or "")
        if code:
            _redeem(m, code)
        else:
            _ask_code(m)

    @bot.message_handler(func=lambda m: (m.text or "").strip() == BTN_REDEEM)
    def redeem_btn(m: Message):
        _ask_code(m)

    # ---------- admin ----------
    @bot.message_handler(commands=["giftcode"])
    def giftcode_cmd(m: Message):
        if m.from_user.id != ADMIN_USER_ID:
            bot.reply_to(m, "You are not allowed to create gift codes.")
            return
        msg = bot.reply_to(m, "🎟️ Create Gift Code\n\nEnter the amount:")
        bot.register_next_step_handler(msg, _step_gift_amount)

    def _step_gift_amount(m: Message):
        if (m.text or "").strip().lower() in _CANCEL_WORDS:
            bot.reply_to(m, "Cancelled.")
            return
        try:
            amount = float(str(m.text).strip())
            if amount <= 0:
                raise ValueError()
        except ValueError:
            msg = bot.reply_to(m, "❌ Please enter a valid amount:")
            bot.register_next_step_handler(msg, _step_gift_amount)
            return

        msg = bot.reply_to(m, f"✅ Amount: ₹{format_currency(amount)}\n\n"
                              "How many times can this code be used? (0 for unlimited)")
        bot.register_next_step_handler(msg, _step_gift_uses, amount)

    def _step_gift_uses(m: Message, amount: float):
        if (m.text or "").strip().lower() in _CANCEL_WORDS:
            bot.reply_to(m, "Cancelled.")
            return
        try:
            max_uses = int(str(m.text).strip())
            if max_uses < 0:
                raise ValueError()
        except ValueError:
            msg = bot.reply_to(m, "❌ Please enter a valid number of uses (0 or more):")
            bot.register_next_step_handler(msg, _step_gift_uses, amount)
            return

        msg = bot.reply_to(m, f"🔄 Max uses: {_uses_text(max_uses)}\n\n"
                              "Minimum monthly deposit to redeem? (0 for no condition)")
        bot.register_next_step_handler(msg, _step_gift_min_deposit, amount, max_uses)

    def _step_gift_min_deposit(m: Message, amount: float, max_uses: int):
        if (m.text or "").strip().lower() in _CANCEL_WORDS:
            bot.reply_to(m, "Cancelled.")
            return
        try:
            min_deposit = float(str(m.text).strip())
            if min_deposit < 0:
                raise ValueError()
        except ValueError:
            msg = bot.reply_to(m, "❌ Please enter a valid minimum deposit (0 or more):")
            bot.register_next_step_handler(msg, _step_gift_min_deposit, amount, max_uses)
            return

        code = new_gift_code(amount, m.from_user.id, max_uses=max_uses, min_deposit=min_deposit)
        logger.info("Admin %s created gift code %s (%s x %s)", m.from_user.id, code, amount, max_uses)
        bot.reply_to(
            m,
            "✅ <b>Gift Code Created!</b>\n\n"
            f"🏷️ <b>Code:</b> <code>{code}</code>\n"
            f"💳 <b>Amount:</b> ₹{format_currency(amount)}\n"
            f"🔄 <b>Max Uses:</b> {_uses_text(max_uses)}\n"
            f"📋 <b>Min Deposit:</b> ₹{format_currency(min_deposit)}",
            parse_mode="HTML",
        )

    @bot.message_handler(commands=["giftcodes"])
    def giftcodes_cmd(m: Message):
        if m.from_user.id != ADMIN_USER_ID:
            return
        codes = db.list_gift_codes()
        if not codes:
            bot.reply_to(m, "No gift codes yet.")
            return
        lines = ["🎟️ <b>Gift Codes</b>\n"]
        for g in codes:
            lines.append(
                f"<code>{g['code']}</code> · ₹{format_currency(g['amount'])} · "
                f"used {g['used_count']}/{_uses_text(g['max_uses'])} · min ₹{format_currency(g['min_deposit'])}"
            )
        bot.reply_to(m, "\n".join(lines), parse_mode="HTML")

    @bot.message_handler(commands=["delgift"])
    def delgift_cmd(m: Message):
        if m.from_user.id != ADMIN_USER_ID:
            return
        code = (extract_arguments(m.text or "") or "").strip()
        if not code:
            bot.reply_to(m, "Usage: /delgift CODE")
            return
        if db.delete_gift_code(code):
            bot.reply_to(m, f"🗑️ Gift code {code.upper()} deleted.")
        else:
            bot.reply_to(m, "❌ No such gift code.")
