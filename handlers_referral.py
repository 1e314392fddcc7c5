# handlers_referral.py
# Refer & Earn:
# - /start <CODE> links a new user to the owner of CODE (once, never to yourself)
# - dashboard with the user's code, link, referrals and earnings
# Commission itself is paid inside db.approve_topup.

import html
import logging
import time
from typing import Optional, Tuple
from urllib.parse import quote

from telebot import types
from telebot.types import Message, CallbackQuery

import db
import payments
from pricing import format_currency
from config import REFERRAL_ENABLED, REFERRAL_COMMISSION_PERCENT, REFERRAL_CODE_LENGTH

logger = logging.getLogger(__name__)

BTN_REFERRAL = "👥 Refer & Earn"

CB_REF_LIST = "ref_list"
CB_REF_EARNINGS = "ref_earnings"
CB_REF_BACK = "ref_back"

REF_APPLIED = "applied"
REF_SELF = "self"
REF_INVALID = "invalid"
REF_ALREADY = "already"
REF_DISABLED = "disabled"


def apply_referral_code(user_id: int, code: str) -> Tuple[str, Optional[dict]]:
    """Returns (outcome, referrer row). The referrer row is only set for REF_APPLIED / REF_SELF."""
    code = str(code or "").strip().upper()
    if not REFERRAL_ENABLED:
        return REF_DISABLED, None
    if not code:
        return REF_INVALID, None

    referrer = db.get_user_by_referral_code(code)
    if referrer is None:
        return REF_INVALID, None
    if int(referrer["user_id"]) == int(user_id):
        return REF_SELF, referrer
    if db.get_referrer(user_id) is not None:
        return REF_ALREADY, None
    if not db.add_referral(referrer["user_id"], user_id, code):
        return REF_ALREADY, None
    return REF_APPLIED, referrer


def referral_link(bot_username: str, code: str) -> str:
    return f"https://t.me/{bot_username}?start={code}"


def _when(ts) -> str:
    return time.strftime("%d %b %Y", time.localtime(int(ts or 0)))


def process_start_referral(bot, m: Message, code: str) -> str:
    """Called from /start when the deep link carries a code."""
    user = m.from_user
    outcome, referrer = apply_referral_code(user.id, code)

    if outcome == REF_APPLIED:
        logger.info("User %s joined with referral code %s (referrer %s)", user.id, code, referrer["user_id"])
        bot.send_message(
            m.chat.id,
            "🎉 <b>Referral Applied Successfully!</b>\n\n"
            f"You joined using referral code: <code>{html.escape(code.upper())}</code>",
            parse_mode="HTML",
        )
        try:
            bot.send_message(
                referrer["user_id"],
                "🎊 <b>New Referral Joined!</b>\n\n"
                f"👤 New User: {html.escape(user.first_name or '')} (@{html.escape(user.username or 'N/A')})\n"
                f"🆔 User ID: <code>{user.id}</code>\n"
                f"You'll earn {REFERRAL_COMMISSION_PERCENT}% commission on their deposits! 💰",
                parse_mode="HTML",
            )
        except Exception as e:
            logger.warning("Could not tell referrer %s about %s: %s", referrer["user_id"], user.id, e)
    elif outcome == REF_SELF:
        bot.send_message(m.chat.id, "❌ <b>Self-Referral Not Allowed</b>\n\nYou cannot use your own referral code.",
                         parse_mode="HTML")
    return outcome


def register_referral_handlers(bot):
    cache = {}

    def _bot_username() -> str:
        if "username" not in cache:
            cache["username"] = bot.get_me().username
        return cache["username"]

    def _dashboard(user_id: int):
        code = db.ensure_referral_code(user_id, lambda: payments.random_code(REFERRAL_CODE_LENGTH))
        stats = db.get_referral_stats(user_id)
        link = referral_link(_bot_username(), code)

        text = (
            "👥 <b>Referral Program</b>\n\n"
            "🟢 <b>Your Stats:</b>\n"
            f"• Total Referrals: <b>{stats['total_referrals']}</b>\n"
            f"• Active Referrals: <b>{stats['earning_referrals']}</b>\n"
            f"• Total Earnings: <b>₹{format_currency(stats['total_earnings'])}</b>\n\n"
            f"🔗 <b>Your Referral Link:</b>\n<code>{link}</code>\n\n"
            f"📋 <b>Your Referral Code:</b>\n<code>{code}</code>\n\n"
            f"💰 <b>Commission Rate:</b> {REFERRAL_COMMISSION_PERCENT}% on every approved deposit"
        )
        kb = types.InlineKeyboardMarkup()
        kb.add(types.InlineKeyboardButton(
            "📤 Share Link", url=f"https://t.me/share/url?url={quote(link)}&text={quote('Get instant OTPs for all popular apps!')}"))
        kb.row(
            types.InlineKeyboardButton("My Referrals", callback_data=CB_REF_LIST),
            types.InlineKeyboardButton("Earnings", callback_data=CB_REF_EARNINGS),
        )
        return text, kb

    def _show(m: Message):
        if not REFERRAL_ENABLED:
            bot.reply_to(m, "Referral program is currently disabled.")
            return
        db.register_user(m.from_user.id)
        text, kb = _dashboard(m.from_user.id)
        bot.send_message(m.chat.id, text, parse_mode="HTML", reply_markup=kb, disable_web_page_preview=True)

    @bot.message_handler(commands=["referral", "refer"])
    def referral_cmd(m: Message):
        _show(m)

    @bot.message_handler(func=lambda m: (m.text or "").strip() == BTN_REFERRAL)
    def referral_btn(m: Message):
        _show(m)

    def _back_markup():
        kb = types.InlineKeyboardMarkup()
        kb.add(types.InlineKeyboardButton("⬅️ Back", callback_data=CB_REF_BACK))
        return kb

    @bot.callback_query_handler(func=lambda c: c.data == CB_REF_LIST)
    def referral_list(c: CallbackQuery):
        bot.answer_callback_query(c.id)
        rows = db.get_referrals(c.from_user.id)
        if not rows:
            text = "👥 <b>My Referrals</b>\n\nNo referrals yet. Share your link to start earning!"
        else:
            lines = ["👥 <b>My Referrals</b>\n"]
            for i, r in enumerate(rows, 1):
                name = html.escape(r.get("first_name") or str(r["referred_id"]))
                lines.append(f"{i}. {name} · joined {_when(r['joined_at'])} · earned ₹{format_currency(r['earned'])}")
            text = "\n".join(lines)
        bot.edit_message_text(text, c.message.chat.id, c.message.message_id,
                              parse_mode="HTML", reply_markup=_back_markup())

    @bot.callback_query_handler(func=lambda c: c.data == CB_REF_EARNINGS)
    def referral_earnings(c: CallbackQuery):
        bot.answer_callback_query(c.id)
        rows = db.get_referral_earnings(c.from_user.id)
        if not rows:
            text = "💰 <b>Referral Earnings</b>\n\nNo commission earned yet."
        else:
            lines = ["💰 <b>Referral Earnings</b>\n"]
            for r in rows:
                name = html.escape(r.get("first_name") or str(r["referred_id"]))
                lines.append(
                    f"• ₹{format_currency(r['commission_amount'])} from {name}'s "
                    f"₹{format_currency(r['deposit_amount'])} deposit ({_when(r['earned_at'])})"
                )
            text = "\n".join(lines)
        bot.edit_message_text(text, c.message.chat.id, c.message.message_id,
                              parse_mode="HTML", reply_markup=_back_markup())

    @bot.callback_query_handler(func=lambda c: c.data == CB_REF_BACK)
    def referral_back(c: CallbackQuery):
        bot.answer_callback_query(c.id)
        text, kb = _dashboard(c.from_user.id)
        bot.edit_message_text(text, c.message.chat.id, c.message.message_id, parse_mode="HTML",
                              reply_markup=kb, disable_web_page_preview=True)
