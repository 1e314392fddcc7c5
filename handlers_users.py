# handlers_users.py
# /start + access gate:
# - channel join check (when CHANNEL_ID is set)
# - terms accept / decline
# make_access_check() is what the order engine calls before every purchase.

import logging

from telebot import types
from telebot.types import Message, CallbackQuery
from telebot.util import extract_arguments

import db
from handlers_referral import process_start_referral
from pricing import format_currency
from config import ADMIN_USER_ID, CHANNEL_ID, CHANNEL_LINK, TERMS_URL

logger = logging.getLogger(__name__)

CB_CHECK_JOIN = "check_join"
CB_ACCEPT_TERMS = "accept_terms"
CB_DECLINE_TERMS = "decline_terms"

_MEMBER_STATUSES = ("member", "administrator", "creator")


def is_channel_member(bot, user_id: int) -> bool:
    if not CHANNEL_ID:
        return True
    try:
        member = bot.get_chat_member(CHANNEL_ID, user_id)
    except Exception as e:
        logger.warning("get_chat_member(%s) failed: %s", user_id, e)
        return False
    return getattr(member, "status", "") in _MEMBER_STATUSES


def make_access_check(bot):
    def access_check(user_id: int) -> bool:
        user = db.get_user(user_id)
        if not user:
            return False
        if not is_channel_member(bot, user_id):
            if user.get("channel_joined"):
                db.set_channel_joined(user_id, False)
            return False
        return bool(user.get("terms_accepted"))
    return access_check


def _join_markup():
    kb = types.InlineKeyboardMarkup()
    if CHANNEL_LINK:
        kb.add(types.InlineKeyboardButton("📢 Join Channel", url=CHANNEL_LINK))
    kb.add(types.InlineKeyboardButton("✅ I Have Joined", callback_data=CB_CHECK_JOIN))
    return kb


def _terms_markup():
    kb = types.InlineKeyboardMarkup()
    kb.add(types.InlineKeyboardButton("Read full Terms and Conditions", url=TERMS_URL))
    kb.add(types.InlineKeyboardButton("✅ Accept Terms", callback_data=CB_ACCEPT_TERMS))
    kb.add(types.InlineKeyboardButton("❌ Decline", callback_data=CB_DECLINE_TERMS))
    return kb


def register_users_handlers(bot, build_main_keyboard, notifier=None):

    def _main_menu(chat_id: int, user_id: int):
        bal = db.get_balance(user_id)
        bot.send_message(
            chat_id,
            f"🔥 Fire OTP Bot\n\n💳 Balance: ₹{format_currency(bal)}\n\n🛒 Select an option below:",
            reply_markup=build_main_keyboard(user_id == ADMIN_USER_ID),
        )

    def send_gate_or_menu(chat_id: int, user_id: int):
        """Walks the user through whatever access step is missing, else shows the menu."""
        user = db.get_user(user_id) or {}

        if not is_channel_member(bot, user_id):
            db.set_channel_joined(user_id, False)
            bot.send_message(
                chat_id,
                "🔒 <b>Channel Join Required</b>\n\n"
                "To use this bot, you must join our official channel first.\n"
                "Then click \"I Have Joined ✅\" below.",
                parse_mode="HTML",
                reply_markup=_join_markup(),
            )
            return

        if not user.get("channel_joined"):
            db.set_channel_joined(user_id, True)

        if not user.get("terms_accepted"):
            bot.send_message(
                chat_id,
                "📝 <b>Terms & Conditions</b>\n\n"
                "<b>Please read the Terms and Conditions carefully. We may be unable to provide "
                "support for issues resulting from not following these terms.</b>",
                parse_mode="HTML",
                reply_markup=_terms_markup(),
            )
            return

        _main_menu(chat_id, user_id)

    @bot.message_handler(commands=["start"])
    def start_handler(m: Message):
        u = m.from_user
        is_new = db.get_user(u.id) is None
        db.register_user(
            u.id,
            first_name=getattr(u, "first_name", "") or "",
            username=getattr(u, "username", "") or "",
        )
        if is_new and notifier is not None:
            notifier.user_registered(u.id, u.first_name or "", u.username or "")

        code = extract_arguments(m.text or "")
        if code:
            try:
                process_start_referral(bot, m, code)
            except Exception as e:
                logger.warning("Referral code %r for %s failed: %s", code, u.id, e)
        send_gate_or_menu(m.chat.id, u.id)

    @bot.callback_query_handler(func=lambda c: c.data == CB_CHECK_JOIN)
    def check_join(c: CallbackQuery):
        if not is_channel_member(bot, c.from_user.id):
            bot.answer_callback_query(c.id, "❌ You haven't joined the channel yet.", show_alert=True)
            return
        bot.answer_callback_query(c.id)
        db.register_user(c.from_user.id)
        send_gate_or_menu(c.message.chat.id, c.from_user.id)

    @bot.callback_query_handler(func=lambda c: c.data == CB_ACCEPT_TERMS)
    def accept_terms(c: CallbackQuery):
        bot.answer_callback_query(c.id, "✅ Terms accepted")
        db.register_user(c.from_user.id)
        db.set_terms_accepted(c.from_user.id)
        send_gate_or_menu(c.message.chat.id, c.from_user.id)

    @bot.callback_query_handler(func=lambda c: c.data == CB_DECLINE_TERMS)
    def decline_terms(c: CallbackQuery):
        bot.answer_callback_query(c.id)
        bot.send_message(
            c.message.chat.id,
            "❌ You must accept the Terms & Conditions to use this bot.\nSend /start when you are ready.",
        )

    return send_gate_or_menu
