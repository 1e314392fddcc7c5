# notifier.py
# Admin-chat notifications through a second bot. Fire-and-forget:
# every send runs on a daemon thread and failures are only logged.

import html
import logging
import threading
import time

import telebot

from config import NOTIFICATION_BOT_TOKEN, NOTIFICATION_CHAT_ID

logger = logging.getLogger(__name__)


def _now_text() -> str:
    return time.strftime("%Y-%m-%d %H:%M:%S")


class Notifier:
    def __init__(self, token: str = NOTIFICATION_BOT_TOKEN, chat_id=NOTIFICATION_CHAT_ID, bot=None):
        self.chat_id = chat_id
        self.bot = bot
        if self.bot is None and token:
            self.bot = telebot.TeleBot(token, threaded=False)

    @property
    def enabled(self) -> bool:
        return self.bot is not None and bool(self.chat_id)

    def send(self, text: str) -> None:
        if not self.enabled:
            return
        threading.Thread(target=self._send_now, args=(text,), daemon=True).start()

    def _send_now(self, text: str) -> None:
        try:
            self.bot.send_message(self.chat_id, text, parse_mode="HTML")
        except Exception as e:
            logger.warning("Notification send error: %s", e)

    # ---------- events ----------
    def order_placed(self, job, original_price=None, discount: float = 0.0) -> None:
        text = (
            "🛒 <b>New Order Placed</b>\n\n"
            f"🆔 User ID: <code>{job.user_id}</code>\n"
            f"🛍️ Service: {html.escape(job.service_name)}\n"
            f"📱 Number: <code>{html.escape(job.phone)}</code>\n"
            f"💰 Price: ₹{job.price}\n"
            f"🆔 Order ID: {job.order_id}"
        )
        if discount > 0:
            text += f"\n🎁 Discount: ₹{discount} (Original: ₹{original_price})"
        text += f"\n⏰ Time: {_now_text()}"
        self.send(text)

    def otp_received(self, job, code: str) -> None:
        self.send(
            "✅ <b>OTP Received</b>\n\n"
            f"🆔 User ID: <code>{job.user_id}</code>\n"
            f"🛍️ Service: {html.escape(job.service_name)}\n"
            f"📱 Number: <code>{html.escape(job.phone)}</code>\n"
            f"🔐 OTP: <code>{html.escape(code)}</code>\n"
            f"🆔 Order ID: {job.order_id}\n"
            f"⏰ Time: {_now_text()}"
        )

    def order_cancelled(self, job, reason: str) -> None:
        self.send(
            "❌ <b>Order Cancelled</b>\n\n"
            f"🆔 User ID: <code>{job.user_id}</code>\n"
            f"🛍️ Service: {html.escape(job.service_name)}\n"
            f"📱 Number: <code>{html.escape(job.phone)}</code>\n"
            f"💰 Amount: ₹{job.price}\n"
            f"🆔 Order ID: {job.order_id}\n"
            f"📝 Reason: {html.escape(reason)}\n"
            f"⏰ Time: {_now_text()}"
        )

    def new_number_requested(self, job) -> None:
        self.send(
            "🆕 <b>New Number Requested</b>\n\n"
            f"🆔 User ID: <code>{job.user_id}</code>\n"
            f"🛍️ Service: {html.escape(job.service_name)}\n"
            f"📱 New Number: <code>{html.escape(job.phone)}</code>\n"
            f"🆔 Order ID: {job.order_id}\n"
            f"⏰ Time: {_now_text()}"
        )

    def user_registered(self, user_id: int, first_name: str = "", username: str = "") -> None:
        self.send(
            "👤 <b>New User Registered</b>\n\n"
            f"🆔 User ID: <code>{user_id}</code>\n"
            f"👤 Name: {html.escape(first_name or '')}\n"
            f"📱 Username: @{html.escape(username or 'N/A')}\n"
            f"⏰ Time: {_now_text()}"
        )

    def deposit_requested(self, request: dict) -> None:
        self.send(
            "💵 <b>Deposit Requested</b>\n\n"
            f"🆔 User ID: <code>{request['user_id']}</code>\n"
            f"💰 Amount: ₹{request['amount']}\n"
            f"🔢 UTR: {html.escape(str(request['utr']))}\n"
            f"🏷️ Deposit ID: {html.escape(str(request['deposit_id']))}\n"
            f"⏰ Time: {_now_text()}"
        )

    def deposit_approved(self, request: dict) -> None:
        self.send(
            "✅ <b>Deposit Approved</b>\n\n"
            f"🆔 User ID: <code>{request['user_id']}</code>\n"
            f"💰 Amount: ₹{request['amount']}\n"
            f"🔢 UTR: {html.escape(str(request['utr']))}\n"
            f"💳 New Balance: ₹{request.get('new_balance')}\n"
            f"⏰ Time: {_now_text()}"
        )

    def deposit_rejected(self, request: dict, reason: str = "Rejected by admin") -> None:
        self.send(
            "❌ <b>Deposit Rejected</b>\n\n"
            f"🆔 User ID: <code>{request['user_id']}</code>\n"
            f"💰 Amount: ₹{request['amount']}\n"
            f"🔢 UTR: {html.escape(str(request['utr']))}\n"
            f"📝 Reason: {html.escape(reason)}\n"
            f"⏰ Time: {_now_text()}"
        )

    def gift_code_redeemed(self, user_id: int, code: str, amount: float, new_balance: float) -> None:
        self.send(
            "🎟️ <b>Gift Code Redeemed</b>\n\n"
            f"🆔 User ID: <code>{user_id}</code>\n"
            f"🔤 Code: {html.escape(code)}\n"
            f"💰 Amount: ₹{amount}\n"
            f"💳 New Balance: ₹{new_balance}\n"
            f"⏰ Time: {_now_text()}"
        )

    def balance_transferred(self, from_user_id: int, to_user_id: int, amount: float, note: str = "") -> None:
        self.send(
            "🔄 <b>Balance Transfer</b>\n\n"
            f"👤 From: <code>{from_user_id}</code>\n"
            f"👤 To: <code>{to_user_id}</code>\n"
            f"💰 Amount: ₹{amount}\n"
            f"📝 Note: {html.escape(note or 'N/A')}\n"
            f"⏰ Time: {_now_text()}"
        )
