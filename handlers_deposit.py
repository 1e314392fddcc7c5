# handlers_deposit.py
# Add funds via UPI:
#   amount (preset or custom) -> payment details + UPI link -> user sends UTR
#   -> pending request goes to the admin -> approve (credit + commission) / reject
# Plus /deposits: the user's last deposit requests.

import html
import logging
import time
from typing import Optional, Tuple

from telebot import types
from telebot.types import Message, CallbackQuery

import db
import payments
import pricing
from config import (
    ADMIN_USER_ID,
    DEPOSIT_AMOUNTS,
    MIN_DEPOSIT_AMOUNT,
    MIN_UTR_LENGTH,
    UPI_ID,
    UPI_NAME,
)

logger = logging.getLogger(__name__)

BTN_DEPOSIT = "💵 Deposit"

CB_DEPOSIT = "deposit_"
CB_DEPOSIT_CUSTOM = "deposit_custom"
CB_DEPOSIT_CANCEL = "deposit_cancel"
CB_TOPUP_APPROVE = "topup_approve_"
CB_TOPUP_REJECT = "topup_reject_"

_CANCEL_WORDS = ("cancel", "/cancel")

_STATUS_ICONS = {
    db.TOPUP_PENDING: "⏳",
    db.TOPUP_APPROVED: "✅",
    db.TOPUP_REJECTED: "❌",
}


def parse_decision(data: str) -> Optional[Tuple[bool, int]]:
    """topup_approve_<id> / topup_reject_<id> -> (approve, request_id)."""
    for prefix, approve in ((CB_TOPUP_APPROVE, True), (CB_TOPUP_REJECT, False)):
        if data.startswith(prefix):
            rest = data[len(prefix):]
            return (approve, int(rest)) if rest.isdigit() else None
    return None


def submit_deposit(user_id: int, amount: int, deposit_id: str, utr: str) -> dict:
    """
    Stores a pending top-up request for the admin.
    Raises ValueError for a malformed UTR and db.DuplicateUTR for one already used.
    """
    utr = str(utr or "").strip()
    if not payments.is_valid_utr(utr):
        raise ValueError(utr)
    if db.utr_exists(utr):
        raise db.DuplicateUTR(utr)
    request_id = db.create_topup_request(user_id, amount, utr, deposit_id)
    return db.get_topup_request(request_id)


def invoice_text(amount: int, deposit_id: str) -> str:
    note = payments.payment_note(deposit_id)
    link = payments.upi_link(amount, note)
    return (
        "💰 <b>Payment Request</b>\n\n"
        f"📱 <b>UPI ID:</b> <code>{html.escape(UPI_ID)}</code>\n"
        f"👤 <b>UPI Name:</b> {html.escape(UPI_NAME)}\n"
        f"💳 <b>Amount:</b> ₹{amount}\n"
        f"🆔 <b>Deposit ID:</b> <code>{deposit_id}</code>\n"
        f"📝 <b>Note:</b> <code>{note}</code>\n\n"
        f"<b>UPI Link:</b> <code>{html.escape(link)}</code>\n\n"
        f"<b>After payment, send your {MIN_UTR_LENGTH}-digit UTR number here.</b>"
    )


def deposit_history_text(user_id: int, limit: int = 10) -> str:
    rows = db.get_user_deposits(user_id, limit=limit)
    if not rows:
        return "💵 <b>Deposit History</b>\n\nNo deposits yet."
    lines = ["💵 <b>Deposit History</b>\n"]
    for r in rows:
        when = time.strftime("%d %b %Y %H:%M", time.localtime(int(r["request_time"])))
        icon = _STATUS_ICONS.get(r["status"], "•")
        lines.append(
            f"{icon} ₹{pricing.format_currency(r['amount'])} · {r['status']} · "
            f"UTR <code>{html.escape(str(r['utr']))}</code> · {when}"
        )
    return "\n".join(lines)


def _amounts_markup():
    kb = types.InlineKeyboardMarkup(row_width=3)
    kb.add(*[types.InlineKeyboardButton(f"₹{a}", callback_data=f"{CB_DEPOSIT}{a}") for a in DEPOSIT_AMOUNTS])
    kb.add(types.InlineKeyboardButton("Custom", callback_data=CB_DEPOSIT_CUSTOM))
    return kb


def _cancel_markup():
    kb = types.InlineKeyboardMarkup()
    kb.add(types.InlineKeyboardButton("❌ Cancel", callback_data=CB_DEPOSIT_CANCEL))
    return kb


def _decision_markup(request_id: int):
    kb = types.InlineKeyboardMarkup()
    kb.row(
        types.InlineKeyboardButton("✅ Approve", callback_data=f"{CB_TOPUP_APPROVE}{request_id}"),
        types.InlineKeyboardButton("❌ Reject", callback_data=f"{CB_TOPUP_REJECT}{request_id}"),
    )
    return kb


def register_deposit_handlers(bot, notifier):

    def _show_menu(m: Message):
        user_id = m.from_user.id
        db.register_user(user_id)
        monthly = db.get_monthly_deposit(user_id)
        current, nxt = pricing.discount_info(monthly)

        text = (
            "💵 <b>Deposit Funds</b>\n\n"
            f"💳 Current balance: ₹{pricing.format_currency(db.get_balance(user_id))}\n"
            f"📅 Deposited this month: ₹{pricing.format_currency(monthly)}\n"
        )
        if current > 0:
            text += f"🎁 <b>Active Discount:</b> {current}%\n"
        if nxt:
            text += f"\n🎯 Deposit ₹{pricing.format_currency(nxt[0])} more for {nxt[1]}% discount!\n"
        text += "\n<b>Select deposit amount:</b>"
        bot.send_message(m.chat.id, text, parse_mode="HTML", reply_markup=_amounts_markup())

    @bot.message_handler(commands=["deposit"])
    def deposit_cmd(m: Message):
        _show_menu(m)

    @bot.message_handler(func=lambda m: (m.text or "").strip() == BTN_DEPOSIT)
    def deposit_btn(m: Message):
        _show_menu(m)

    @bot.message_handler(commands=["deposits"])
    def deposits_cmd(m: Message):
        bot.send_message(m.chat.id, deposit_history_text(m.from_user.id), parse_mode="HTML")

    # ---------- amount ----------
    @bot.callback_query_handler(func=lambda c: c.data == CB_DEPOSIT_CANCEL)
    def deposit_cancel(c: CallbackQuery):
        bot.answer_callback_query(c.id, "Deposit cancelled")
        bot.clear_step_handler_by_chat_id(c.message.chat.id)
        try:
            bot.edit_message_reply_markup(c.message.chat.id, c.message.message_id, reply_markup=None)
        except Exception as e:
            logger.debug("Could not clear deposit keyboard: %s", e)

    @bot.callback_query_handler(func=lambda c: c.data == CB_DEPOSIT_CUSTOM)
    def deposit_custom(c: CallbackQuery):
        bot.answer_callback_query(c.id)
        msg = bot.send_message(
            c.message.chat.id,
            f"💵 <b>Custom Amount</b>\n\nEnter the amount you want to deposit (minimum ₹{MIN_DEPOSIT_AMOUNT}):",
            parse_mode="HTML",
            reply_markup=_cancel_markup(),
        )
        bot.register_next_step_handler(msg, _step_custom_amount)

    @bot.callback_query_handler(func=lambda c: (c.data or "").startswith(CB_DEPOSIT))
    def deposit_amount(c: CallbackQuery):
        amount = payments.parse_deposit_amount(c.data[len(CB_DEPOSIT):])
        if amount is None:
            bot.answer_callback_query(c.id, f"❌ Minimum deposit is ₹{MIN_DEPOSIT_AMOUNT}", show_alert=True)
            return
        bot.answer_callback_query(c.id)
        _send_invoice(c.message.chat.id, amount)

    def _step_custom_amount(m: Message):
        if (m.text or "").strip().lower() in _CANCEL_WORDS:
            bot.reply_to(m, "Cancelled.")
            return

        amount = payments.parse_deposit_amount(m.text)
        if amount is None:
            msg = bot.reply_to(
                m, f"❌ Invalid amount. Enter a whole number of at least ₹{MIN_DEPOSIT_AMOUNT}:",
                reply_markup=_cancel_markup(),
            )
            bot.register_next_step_handler(msg, _step_custom_amount)
            return
        _send_invoice(m.chat.id, amount)

    def _send_invoice(chat_id: int, amount: int):
        deposit_id = payments.new_deposit_id()
        msg = bot.send_message(chat_id, invoice_text(amount, deposit_id), parse_mode="HTML",
                               reply_markup=_cancel_markup())
        bot.register_next_step_handler(msg, _step_utr, amount, deposit_id)

    # ---------- UTR ----------
    def _step_utr(m: Message, amount: int, deposit_id: str):
        text = (m.text or "").strip()
        if text.lower() in _CANCEL_WORDS:
            bot.reply_to(m, "Cancelled.")
            return

        user_id = m.from_user.id
        try:
            request = submit_deposit(user_id, amount, deposit_id, text)
        except ValueError:
            msg = bot.reply_to(
                m, f"❌ Invalid UTR. Send the {MIN_UTR_LENGTH}+ digit UTR (numbers only):",
                reply_markup=_cancel_markup(),
            )
            bot.register_next_step_handler(msg, _step_utr, amount, deposit_id)
            return
        except db.DuplicateUTR:
            bot.reply_to(m, "❌ This UTR has already been submitted.")
            return

        logger.info("Deposit %s: user=%s amount=%s utr=%s", request["id"], user_id, amount, text)
        bot.reply_to(
            m,
            "✅ <b>Deposit request submitted</b>\n\n"
            f"💰 Amount: ₹{amount}\n"
            f"🔢 UTR: <code>{html.escape(text)}</code>\n"
            f"🏷️ Deposit ID: <code>{deposit_id}</code>\n\n"
            "Your balance will be updated once the payment is verified.",
            parse_mode="HTML",
        )
        _send_to_admin(m, request)
        notifier.deposit_requested(request)

    def _send_to_admin(m: Message, request: dict):
        if not ADMIN_USER_ID:
            logger.warning("No ADMIN_USER_ID set; deposit %s waits without a reviewer", request["id"])
            return
        u = m.from_user
        try:
            bot.send_message(
                ADMIN_USER_ID,
                "💵 <b>New Deposit Request</b>\n\n"
                f"👤 User: {html.escape(u.first_name or '')} (@{html.escape(u.username or 'N/A')})\n"
                f"🆔 User ID: <code>{u.id}</code>\n"
                f"💰 Amount: ₹{request['amount']}\n"
                f"🔢 UTR: <code>{html.escape(str(request['utr']))}</code>\n"
                f"🏷️ Deposit ID: <code>{request['deposit_id']}</code>",
                parse_mode="HTML",
                reply_markup=_decision_markup(request["id"]),
            )
        except Exception as e:
            logger.error("Could not send deposit %s to the admin: %s", request["id"], e)

    # ---------- admin decision ----------
    @bot.callback_query_handler(func=lambda c: parse_decision(c.data or "") is not None)
    def topup_decision(c: CallbackQuery):
        if c.from_user.id != ADMIN_USER_ID:
            bot.answer_callback_query(c.id, "❌ Unauthorized")
            return

        approve, request_id = parse_decision(c.data)
        try:
            request = db.approve_topup(request_id) if approve else db.reject_topup(request_id)
        except db.RequestNotPending:
            bot.answer_callback_query(c.id)
            bot.edit_message_text("❌ Request not found or already processed",
                                  c.message.chat.id, c.message.message_id)
            return

        bot.answer_callback_query(c.id, "✅ Approved" if approve else "❌ Rejected")
        verdict = "✅ APPROVED" if approve else "❌ REJECTED"
        bot.edit_message_text(
            f"{html.escape(c.message.text or 'Deposit request')}\n\n<b>{verdict}</b>",
            c.message.chat.id, c.message.message_id, parse_mode="HTML",
        )
        logger.info("Deposit %s %s by admin", request_id, request["status"])

        if approve:
            _tell_user(request["user_id"],
                       "✅ <b>Deposit Approved!</b>\n\n"
                       f"💰 Amount: ₹{pricing.format_currency(request['amount'])}\n"
                       f"💳 New Balance: ₹{pricing.format_currency(request['new_balance'])}")
            referral = request.get("referral")
            if referral:
                _tell_user(referral["referrer_id"],
                           "💰 <b>Referral Commission Earned!</b>\n\n"
                           f"You earned ₹{pricing.format_currency(referral['commission'])} from a referral's deposit.\n"
                           f"💳 New Balance: ₹{pricing.format_currency(referral['referrer_balance'])}")
            notifier.deposit_approved(request)
        else:
            _tell_user(request["user_id"],
                       "❌ <b>Deposit Rejected</b>\n\n"
                       f"💰 Amount: ₹{pricing.format_currency(request['amount'])}\n"
                       f"🔢 UTR: <code>{html.escape(str(request['utr']))}</code>\n\n"
                       "Contact support if you believe this is a mistake.")
            notifier.deposit_rejected(request)

    def _tell_user(user_id: int, text: str):
        try:
            bot.send_message(user_id, text, parse_mode="HTML")
        except Exception as e:
            logger.warning("Could not message %s: %s", user_id, e)
