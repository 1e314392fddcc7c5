# presenter.py
# Renders order state into Telegram messages + inline keyboards.
# Every call is best-effort: Telegram errors are logged and reported as False.

import html
import logging
from typing import Optional

from telebot import types
from telebot.apihelper import ApiTelegramException

from firex_api import RentError
from pricing import format_currency
from state import Outcome

logger = logging.getLogger(__name__)

CB_CHECK = "check_"
CB_CANCEL = "cancel_"
CB_CANCEL_LOCKED = "cancel_locked"
CB_NEW_NUMBER = "new_number_"
CB_BUY = "buy_"
CB_WAITING = "waiting_next_otp_"
CB_ALL_SERVICES = "all_services_"
CB_MAIN_MENU = "main_menu"

_RENT_ERROR_TEXT = {
    RentError.NO_NUMBERS: "❌ No numbers available for this service",
    RentError.NO_BALANCE: "❌ Service temporarily out of stock",
    RentError.BAD_SERVICE: "❌ Service is not active",
    RentError.BAD_KEY: "❌ Service temporarily unavailable",
    RentError.BAD_NUMBER: "❌ Provider returned an invalid number",
    RentError.TIMEOUT: "❌ Request timeout, please try again",
    RentError.UNAVAILABLE: "❌ Service temporarily unavailable, please try again",
    RentError.UNKNOWN: "❌ Unknown provider response, please try again",
}


def mmss(seconds: float) -> str:
    seconds = max(0, int(seconds))
    return f"{seconds // 60:02d}:{seconds % 60:02d}"


def describe_error(err) -> str:
    kind = getattr(err, "error_kind", None)
    if kind is not None:
        return _RENT_ERROR_TEXT.get(kind, _RENT_ERROR_TEXT[RentError.UNKNOWN])
    if getattr(err, "reason", "") == "new_number_rejected":
        return "❌ Failed to get new number"
    return "❌ Purchase failed"


def _buy_again_row(job):
    return [types.InlineKeyboardButton(f"🔄 Buy {job.service_name} Again",
                                       callback_data=f"{CB_BUY}{job.service_id}_{job.server_index}")]


def order_keyboard(job, lock_remaining: Optional[float], otp_received: bool = False) -> types.InlineKeyboardMarkup:
    kb = types.InlineKeyboardMarkup()
    kb.row(types.InlineKeyboardButton("🔄 Check SMS", callback_data=f"{CB_CHECK}{job.order_id}"))

    if not otp_received and lock_remaining is not None:
        if lock_remaining > 0:
            kb.row(types.InlineKeyboardButton(f"🔒 Cancel ({mmss(lock_remaining)})", callback_data=CB_CANCEL_LOCKED))
        else:
            kb.row(types.InlineKeyboardButton("❌ Cancel Order", callback_data=f"{CB_CANCEL}{job.order_id}"))
        kb.row(types.InlineKeyboardButton("📲 Change Number", callback_data=f"{CB_NEW_NUMBER}{job.order_id}"))

    kb.row(*_buy_again_row(job))
    kb.row(types.InlineKeyboardButton("🛒 Browse Services", callback_data=f"{CB_ALL_SERVICES}0"))
    return kb


def _after_keyboard(job) -> types.InlineKeyboardMarkup:
    kb = types.InlineKeyboardMarkup()
    kb.row(*_buy_again_row(job))
    kb.row(types.InlineKeyboardButton("🛒 Browse Services", callback_data=f"{CB_ALL_SERVICES}0"))
    return kb


class TelegramPresenter:
    def __init__(self, bot):
        self.bot = bot

    # ---------- low level ----------
    def _send(self, chat_id: int, text: str, markup=None) -> Optional[int]:
        try:
            msg = self.bot.send_message(chat_id, text, parse_mode="HTML", reply_markup=markup)
            return msg.message_id
        except Exception as e:
            logger.warning("send_message to %s failed: %s", chat_id, e)
            return None

    def _edit(self, chat_id: int, message_id: Optional[int], text: str, markup=None) -> bool:
        if message_id is None:
            return self._send(chat_id, text, markup) is not None
        try:
            self.bot.edit_message_text(text, chat_id=chat_id, message_id=message_id,
                                       parse_mode="HTML", reply_markup=markup)
            return True
        except ApiTelegramException as e:
            if "message is not modified" in str(e):
                return True
            logger.warning("edit_message_text %s/%s failed: %s", chat_id, message_id, e)
            return False
        except Exception as e:
            logger.warning("edit_message_text %s/%s failed: %s", chat_id, message_id, e)
            return False

    def _edit_job(self, job, text: str, markup=None) -> bool:
        if job.message_id is None:
            job.message_id = self._send(job.chat_id, text, markup)
            return job.message_id is not None
        return self._edit(job.chat_id, job.message_id, text, markup)

    # ---------- purchase ----------
    def render_purchase_progress(self, chat_id: int, service_name: str, quote) -> Optional[int]:
        text = (
            "🔄 <b>Processing Order...</b>\n\n"
            f"📱 Service: {html.escape(service_name)}\n"
            f"💰 Price: ₹{format_currency(quote.final_price)}"
        )
        if quote.discount > 0:
            text += f" ({quote.discount_percent}% OFF)"
        return self._send(chat_id, text)

    def render_purchase_failed(self, chat_id: int, message_id: Optional[int], err, refunded: float) -> bool:
        text = f"{describe_error(err)}\n\n💰 Refunded: ₹{format_currency(refunded)}"
        return self._edit(chat_id, message_id, text)

    # ---------- live order ----------
    def render_order_active(self, job, keyboard) -> bool:
        text = (
            "✅ <b>Number Purchased!</b>\n\n"
            f"📱 <b>Number:</b> <code>{html.escape(job.phone)}</code>\n"
            f"🛍️ <b>Service:</b> {html.escape(job.service_name)}\n"
            f"💰 <b>Price:</b> ₹{format_currency(job.price)}\n"
            f"🆔 <b>Order ID:</b> {job.order_id}\n\n"
            "⏰ <b>Time Limit:</b> 15 minutes\n"
            "📩 <b>Waiting for SMS...</b>"
        )
        return self._edit_job(job, text, order_keyboard(job, keyboard.lock_remaining))

    def render_otp_delivered(self, job, code: str, remaining: float) -> bool:
        text = (
            "🎉 <b>OTP Received!</b>\n\n"
            f"🔐 <b>OTP:</b> <code>{html.escape(code or '')}</code>\n"
            f"🛍️ <b>Service:</b> {html.escape(job.service_name)}\n"
            f"📱 <b>Number:</b> <code>{html.escape(job.phone)}</code>\n"
            f"⏳ Waiting for more OTPs... ({mmss(remaining)})\n\n"
            "💡 <i>Still checking for more OTPs...</i>"
        )
        kb = types.InlineKeyboardMarkup()
        kb.row(types.InlineKeyboardButton(f"⏳ Waiting ({mmss(remaining)})", callback_data=f"{CB_WAITING}{job.order_id}"))
        kb.row(*_buy_again_row(job))
        return self._edit_job(job, text, kb)

    def render_extra_otp(self, job, code: str) -> bool:
        text = (
            "🆕 <b>Another OTP Received!</b>\n\n"
            f"🔐 <b>OTP Code:</b> <code>{html.escape(code)}</code>\n"
            f"📱 <b>Service:</b> {html.escape(job.service_name)}\n"
            f"📱 <b>Number:</b> <code>{html.escape(job.phone)}</code>\n"
            f"🆔 <b>Order ID:</b> {job.order_id}\n"
            f"📊 <b>Total OTPs:</b> {job.otp_count}"
        )
        return self._send(job.chat_id, text) is not None

    # ---------- terminal ----------
    def render_terminal(self, job, outcome: Outcome) -> bool:
        if outcome == Outcome.SETTLED:
            text = (
                "⏰ <b>Session Completed</b>\n\n"
                f"🆔 Order ID: {job.order_id}\n"
                f"✅ {job.otp_count} OTPs Received\n"
                "⏳ 15-minute session completed."
            )
        elif outcome == Outcome.EXPIRED_REFUNDED:
            text = (
                "❌ <b>Order Expired & Auto Cancelled</b>\n\n"
                f"🆔 Order ID: {job.order_id}\n"
                f"💰 Refunded: ₹{format_currency(job.price)}\n"
                "⏰ No OTP received within 15 minutes."
            )
        elif outcome == Outcome.CANCELLED_REFUNDED:
            text = (
                "✅ <b>Order Cancelled & Refunded</b>\n\n"
                f"📱 <b>Number:</b> <code>{html.escape(job.phone)}</code>\n"
                f"💰 <b>Refunded:</b> ₹{format_currency(job.price)}"
            )
        else:
            text = (
                "❌ <b>Order cancelled by system.</b>\n\n"
                f"🆔 Order ID: {job.order_id}\n"
                f"💰 Refunded: ₹{format_currency(job.price)}"
            )
        return self._edit_job(job, text, _after_keyboard(job))

    def render_cancel_error(self, chat_id: int, message_id: Optional[int]) -> bool:
        return self._edit(
            chat_id, message_id,
            "❌ <b>Cancellation Error</b>\n\n"
            "Technical error occurred, refund was attempted.\n"
            "Please contact support if issue persists.",
        )
