# handlers_balance.py
# Balance: /balance for everyone, admin credit flow (/addbalance) for the admin.
# Admin credits count as deposits, so they feed the monthly discount tiers.
# Profile (/profile) with OTP, deposit and transfer history; user-to-user /transfer.

import html
import logging
import time
from typing import Optional, Tuple

from telebot import types
from telebot.types import Message, CallbackQuery

import db
import pricing
from config import ADMIN_USER_ID
from handlers_deposit import deposit_history_text

logger = logging.getLogger(__name__)

BTN_BALANCE = "💰 Balance"
BTN_ADD_BALANCE = "➕ Add Balance"
BTN_PROFILE = "👤 Profile"
BTN_TRANSFER = "🔄 Transfer"
_CANCEL_WORDS = ("cancel", "/cancel")

CB_HISTORY_OTP = "history_otp"
CB_HISTORY_DEPOSITS = "history_deposits"
CB_HISTORY_TRANSFERS = "history_transfers"
CB_PROFILE_TRANSFER = "profile_transfer"
CB_TRANSFER_OK = "transfer_ok_"
CB_TRANSFER_NO = "transfer_no"

_ORDER_ICONS = {
    db.ORDER_COMPLETED: "✅",
    db.ORDER_CANCELLED: "❌",
}


def _when(ts) -> str:
    return time.strftime("%d %b %Y %H:%M", time.localtime(int(ts or 0)))


def otp_history_text(user_id: int, limit: int = 10) -> str:
    orders = db.get_user_orders(user_id, limit=limit)
    if not orders:
        return "📋 <b>OTP History</b>\n\nNo orders found."
    lines = ["📋 <b>OTP History</b>\n"]
    for o in orders:
        lines.append(f"{_ORDER_ICONS.get(o['status'], '🟡')} <b>{html.escape(o['service'])}</b>")
        lines.append(f"📱 {o['phone']} | 💰 ₹{pricing.format_currency(o['price'])}")
        if o.get("otp_code"):
            lines.append(f"🔐 OTP: <code>{html.escape(str(o['otp_code']))}</code>")
        lines.append(f"🕒 {_when(o['order_time'])}\n")
    return "\n".join(lines).rstrip()


def transfer_history_text(user_id: int, limit: int = 10) -> str:
    rows = db.get_balance_transfers(user_id, limit=limit)
    if not rows:
        return "🔄 <b>Transfers</b>\n\nNo transfers yet."
    lines = ["🔄 <b>Transfers</b>\n"]
    for t in rows:
        if int(t["from_user_id"]) == int(user_id):
            lines.append(f"➖ ₹{pricing.format_currency(t['amount'])} to <code>{t['to_user_id']}</code> · {_when(t['transfer_time'])}")
        else:
            lines.append(f"➕ ₹{pricing.format_currency(t['amount'])} from <code>{t['from_user_id']}</code> · {_when(t['transfer_time'])}")
    return "\n".join(lines)


def parse_transfer(data: str) -> Optional[Tuple[int, float]]:
    """transfer_ok_<to>_<amount> -> (to_user_id, amount)."""
    if not data.startswith(CB_TRANSFER_OK):
        return None
    parts = data[len(CB_TRANSFER_OK):].split("_")
    if len(parts) != 2:
        return None
    try:
        return int(parts[0]), float(parts[1])
    except ValueError:
        return None


def _profile_markup():
    kb = types.InlineKeyboardMarkup()
    kb.add(types.InlineKeyboardButton("📋 OTP History", callback_data=CB_HISTORY_OTP))
    kb.add(types.InlineKeyboardButton("💰 Deposit History", callback_data=CB_HISTORY_DEPOSITS))
    kb.add(types.InlineKeyboardButton("🔄 Transfer History", callback_data=CB_HISTORY_TRANSFERS))
    kb.add(types.InlineKeyboardButton("💸 Transfer Balance", callback_data=CB_PROFILE_TRANSFER))
    return kb


def register_balance_handlers(bot, notifier):

    @bot.message_handler(commands=["balance"])
    def balance_cmd(m: Message):
        _show_balance(m)

    @bot.message_handler(func=lambda m: (m.text or "").strip() == BTN_BALANCE)
    def balance_btn(m: Message):
        _show_balance(m)

    def _show_balance(m: Message):
        user_id = m.from_user.id
        db.register_user(user_id)
        bal = db.get_balance(user_id)
        monthly = db.get_monthly_deposit(user_id)
        current, nxt = pricing.discount_info(monthly)

        text = f"💳 Your balance: ₹{pricing.format_currency(bal)}"
        text += f"\n📅 Deposited this month: ₹{pricing.format_currency(monthly)}"
        if current > 0:
            text += f"\n🎁 Active discount: {current}%"
        if nxt:
            text += f"\n🎯 Deposit ₹{pricing.format_currency(nxt[0])} more for {nxt[1]}% off"
        bot.reply_to(m, text)

    # ---------- admin credit ----------
    @bot.message_handler(func=lambda m: (m.text or "").strip() in ("/addbalance", BTN_ADD_BALANCE))
    def _add_balance(m: Message):
        if m.from_user.id != ADMIN_USER_ID:
            bot.reply_to(m, "You are not allowed to add balance.")
            return

        msg = bot.reply_to(m, "Enter the User ID to credit:")
        bot.register_next_step_handler(msg, _step_recipient)

    def _step_recipient(m: Message):
        if (m.text or "").strip().lower() in _CANCEL_WORDS:
            bot.reply_to(m, "Cancelled.")
            return

        try:
            recipient_id = int(str(m.text).strip())
        except ValueError:
            msg = bot.reply_to(m, "Invalid User ID. Digits only:")
            bot.register_next_step_handler(msg, _step_recipient)
            return

        if db.get_user(recipient_id) is None:
            bot.reply_to(m, "This user has not started the bot yet.")
            return

        msg = bot.reply_to(m, "Enter the amount:")
        bot.register_next_step_handler(msg, _step_amount, recipient_id)

    def _step_amount(m: Message, recipient_id: int):
        if (m.text or "").strip().lower() in _CANCEL_WORDS:
            bot.reply_to(m, "Cancelled.")
            return

        try:
            amount = float(str(m.text).strip())
            if amount <= 0:
                raise ValueError()
        except ValueError:
            msg = bot.reply_to(m, "Invalid amount. Enter a number greater than 0:")
            bot.register_next_step_handler(msg, _step_amount, recipient_id)
            return

        try:
            new_balance = db.adjust_balance(recipient_id, amount)
        except db.UserNotFound:
            bot.reply_to(m, "This user has not started the bot yet.")
            return
        db.add_monthly_deposit(recipient_id, amount)
        logger.info("Admin %s credited %s to %s", m.from_user.id, amount, recipient_id)

        bot.reply_to(m, f"Credited ₹{pricing.format_currency(amount)} to {recipient_id}. "
                        f"New balance: ₹{pricing.format_currency(new_balance)}")
        try:
            bot.send_message(recipient_id, f"✅ ₹{pricing.format_currency(amount)} added to your balance.")
        except Exception as e:
            logger.warning("Could not tell %s about the credit: %s", recipient_id, e)

    # ---------- profile / history ----------
    def _show_profile(chat_id: int, user_id: int):
        db.register_user(user_id)
        user = db.get_user(user_id) or {}
        username = user.get("username")
        text = (
            "👤 <b>User Profile</b>\n\n"
            f"🆔 <b>User ID:</b> <code>{user_id}</code>\n"
            f"👤 <b>Name:</b> {html.escape(user.get('first_name') or 'Not set')}\n"
            f"📱 <b>Username:</b> {('@' + html.escape(username)) if username else 'Not set'}\n"
            f"💳 <b>Balance:</b> ₹{pricing.format_currency(user.get('balance', 0))}\n"
            f"💰 <b>Monthly Deposit:</b> ₹{pricing.format_currency(db.get_monthly_deposit(user_id))}\n"
            f"📦 <b>Total Orders:</b> {user.get('total_orders', 0)}\n"
            f"📅 <b>Joined:</b> {_when(user.get('joined_at'))}"
        )
        bot.send_message(chat_id, text, parse_mode="HTML", reply_markup=_profile_markup())

    @bot.message_handler(commands=["profile"])
    def profile_cmd(m: Message):
        _show_profile(m.chat.id, m.from_user.id)

    @bot.message_handler(func=lambda m: (m.text or "").strip() == BTN_PROFILE)
    def profile_btn(m: Message):
        _show_profile(m.chat.id, m.from_user.id)

    @bot.message_handler(commands=["history"])
    def history_cmd(m: Message):
        bot.send_message(m.chat.id, otp_history_text(m.from_user.id), parse_mode="HTML")

    @bot.callback_query_handler(func=lambda c: c.data in (CB_HISTORY_OTP, CB_HISTORY_DEPOSITS, CB_HISTORY_TRANSFERS))
    def history_cb(c: CallbackQuery):
        bot.answer_callback_query(c.id)
        user_id = c.from_user.id
        if c.data == CB_HISTORY_OTP:
            text = otp_history_text(user_id)
        elif c.data == CB_HISTORY_DEPOSITS:
            text = deposit_history_text(user_id)
        else:
            text = transfer_history_text(user_id)
        bot.send_message(c.message.chat.id, text, parse_mode="HTML")

    # ---------- transfer ----------
    def _start_transfer(chat_id: int, user_id: int):
        db.register_user(user_id)
        bal = db.get_balance(user_id)
        if bal <= 0:
            bot.send_message(chat_id, "❌ You have no balance to transfer.")
            return
        msg = bot.send_message(
            chat_id,
            f"🔄 <b>Transfer Balance</b>\n\n💳 Available: ₹{pricing.format_currency(bal)}\n\n"
            "Enter the recipient's User ID:",
            parse_mode="HTML",
        )
        bot.register_next_step_handler(msg, _step_transfer_recipient)

    @bot.message_handler(commands=["transfer"])
    def transfer_cmd(m: Message):
        _start_transfer(m.chat.id, m.from_user.id)

    @bot.message_handler(func=lambda m: (m.text or "").strip() == BTN_TRANSFER)
    def transfer_btn(m: Message):
        _start_transfer(m.chat.id, m.from_user.id)

    @bot.callback_query_handler(func=lambda c: c.data == CB_PROFILE_TRANSFER)
    def transfer_from_profile(c: CallbackQuery):
        bot.answer_callback_query(c.id)
        _start_transfer(c.message.chat.id, c.from_user.id)

    def _step_transfer_recipient(m: Message):
        if (m.text or "").strip().lower() in _CANCEL_WORDS:
            bot.reply_to(m, "Cancelled.")
            return
        try:
            to_user_id = int(str(m.text).strip())
        except ValueError:
            msg = bot.reply_to(m, "❌ Invalid User ID. Digits only:")
            bot.register_next_step_handler(msg, _step_transfer_recipient)
            return

        if to_user_id == m.from_user.id:
            bot.reply_to(m, "❌ You cannot transfer to yourself.")
            return
        if db.get_user(to_user_id) is None:
            bot.reply_to(m, "❌ This user has not started the bot yet.")
            return

        msg = bot.reply_to(m, "Enter the amount to transfer:")
        bot.register_next_step_handler(msg, _step_transfer_amount, to_user_id)

    def _step_transfer_amount(m: Message, to_user_id: int):
        if (m.text or "").strip().lower() in _CANCEL_WORDS:
            bot.reply_to(m, "Cancelled.")
            return
        try:
            amount = round(float(str(m.text).strip()), 2)
            if amount <= 0:
                raise ValueError()
        except ValueError:
            msg = bot.reply_to(m, "❌ Invalid amount. Enter a number greater than 0:")
            bot.register_next_step_handler(msg, _step_transfer_amount, to_user_id)
            return

        bal = db.get_balance(m.from_user.id)
        if amount > bal:
            bot.reply_to(m, f"❌ Insufficient balance. Available: ₹{pricing.format_currency(bal)}")
            return

        kb = types.InlineKeyboardMarkup()
        kb.row(
            types.InlineKeyboardButton("✅ Confirm", callback_data=f"{CB_TRANSFER_OK}{to_user_id}_{amount}"),
            types.InlineKeyboardButton("❌ Cancel", callback_data=CB_TRANSFER_NO),
        )
        bot.reply_to(
            m,
            "🔄 <b>Confirm Transfer</b>\n\n"
            f"👤 To: <code>{to_user_id}</code>\n"
            f"💰 Amount: ₹{pricing.format_currency(amount)}",
            parse_mode="HTML",
            reply_markup=kb,
        )

    @bot.callback_query_handler(func=lambda c: c.data == CB_TRANSFER_NO)
    def transfer_no(c: CallbackQuery):
        bot.answer_callback_query(c.id, "Transfer cancelled")
        bot.edit_message_text("❌ Transfer cancelled.", c.message.chat.id, c.message.message_id)

    @bot.callback_query_handler(func=lambda c: parse_transfer(c.data or "") is not None)
    def transfer_ok(c: CallbackQuery):
        to_user_id, amount = parse_transfer(c.data)
        from_user_id = c.from_user.id
        try:
            result = db.transfer_balance(from_user_id, to_user_id, amount,
                                         ref=f"{c.message.chat.id}:{c.message.message_id}")
        except db.DuplicateTransfer:
            bot.answer_callback_query(c.id, "Already transferred")
            return
        except db.InsufficientFunds:
            bot.answer_callback_query(c.id, "❌ Insufficient balance", show_alert=True)
            return
        except (db.UserNotFound, ValueError):
            bot.answer_callback_query(c.id, "❌ Transfer not possible", show_alert=True)
            return

        bot.answer_callback_query(c.id, "✅ Transfer complete")
        bot.edit_message_text(
            "✅ <b>Transfer Successful</b>\n\n"
            f"👤 To: <code>{to_user_id}</code>\n"
            f"💰 Amount: ₹{pricing.format_currency(result['amount'])}\n"
            f"💳 Your Balance: ₹{pricing.format_currency(result['from_balance'])}",
            c.message.chat.id, c.message.message_id, parse_mode="HTML",
        )
        logger.info("Transfer %s: %s -> %s, %s", result["id"], from_user_id, to_user_id, result["amount"])
        try:
            bot.send_message(
                to_user_id,
                "💰 <b>Balance Received</b>\n\n"
                f"👤 From: <code>{from_user_id}</code>\n"
                f"💰 Amount: ₹{pricing.format_currency(result['amount'])}\n"
                f"💳 New Balance: ₹{pricing.format_currency(result['to_balance'])}",
                parse_mode="HTML",
            )
        except Exception as e:
            logger.warning("Could not tell %s about transfer %s: %s", to_user_id, result["id"], e)
        notifier.balance_transferred(from_user_id, to_user_id, result["amount"])
