# handlers_numbers.py
# Number ordering UI:
# - /services (paged), /search <term>, /find_<SERVICE> with server buttons
# - inline callbacks: buy / check SMS / cancel / change number
# - /orders: live orders + last 10 orders
# All order state changes go through the OrderEngine.

import html
import logging

from telebot.types import Message, CallbackQuery, InlineKeyboardMarkup, InlineKeyboardButton

import db
import pricing
import services_catalog
from firex_api import PollStatus
from orders import (
    OrderError,
    PreconditionFailed,
    InsufficientBalance,
    VendorFailure,
    ACCESS_DENIED,
    CANCEL_LOCKED,
    OTP_RECEIVED,
)
from presenter import (
    CB_BUY,
    CB_CHECK,
    CB_CANCEL,
    CB_CANCEL_LOCKED,
    CB_NEW_NUMBER,
    CB_WAITING,
    CB_ALL_SERVICES,
    describe_error,
    mmss,
)

logger = logging.getLogger(__name__)

BTN_SERVICES = "🛒 Services"
BTN_SEARCH = "🔍 Search"
BTN_ORDERS = "📦 My Orders"

_NOT_FOUND_TEXT = "❌ Order not found or already completed"


def _parse_buy(data: str):
    """buy_<SERVICE>_<index> -> (service_id, index) or None."""
    body = data[len(CB_BUY):]
    if body.startswith("new_"):
        body = body[len("new_"):]
    sid, sep, idx = body.rpartition("_")
    if not sep or not sid:
        return None
    try:
        return sid, int(idx)
    except ValueError:
        return None


def _services_page_markup(page: int, total_pages: int) -> InlineKeyboardMarkup:
    kb = InlineKeyboardMarkup()
    nav = []
    if page > 0:
        nav.append(InlineKeyboardButton("⬅️ Previous", callback_data=f"{CB_ALL_SERVICES}{page - 1}"))
    if page < total_pages - 1:
        nav.append(InlineKeyboardButton("Next ➡️", callback_data=f"{CB_ALL_SERVICES}{page + 1}"))
    if nav:
        kb.row(*nav)
    return kb


def register_numbers_handlers(bot, engine, presenter, send_gate_or_menu=None):

    # =========================
    # Catalog
    # =========================
    def show_all_services(chat_id: int, page: int = 0):
        items, page, total_pages = services_catalog.list_services(page)
        lines = [f"📋 <b>All Available Services</b> (Page {page + 1}/{total_pages})\n"]
        start = page * services_catalog.SERVICES_PER_PAGE
        for i, s in enumerate(items):
            lines.append(f"{start + i + 1}. {html.escape(s.name)} ➤ {s.command}")
        bot.send_message(chat_id, "\n".join(lines), parse_mode="HTML",
                         reply_markup=_services_page_markup(page, total_pages))

    def show_search_results(chat_id: int, term: str):
        results = services_catalog.search_services(term)
        if not results:
            kb = InlineKeyboardMarkup()
            kb.add(InlineKeyboardButton("🔙 Back to All Services", callback_data=f"{CB_ALL_SERVICES}0"))
            bot.send_message(
                chat_id,
                f"❌ <b>No Services Found</b>\n\nNo services found for: <code>{html.escape(term)}</code>",
                parse_mode="HTML",
                reply_markup=kb,
            )
            return

        lines = [f"🔍 <b>Search Results for \"{html.escape(term)}\"</b>\n"]
        for i, s in enumerate(results):
            lines.append(f"{i + 1}. {html.escape(s.name)} ➤ {s.command}")
        bot.send_message(chat_id, "\n".join(lines), parse_mode="HTML")

    def show_service_details(chat_id: int, user_id: int, service_id: str):
        service = services_catalog.get_service(service_id)
        if service is None:
            bot.send_message(chat_id, "Service is not active...")
            return

        monthly = db.get_monthly_deposit(user_id)
        current, nxt = pricing.discount_info(monthly)
        balance = db.get_balance(user_id)

        text = (
            f"🛍️ <b>{html.escape(service.name)} Service</b>\n\n"
            f"📊 <b>Service Details:</b>\n"
            f"• Product: {html.escape(service.name)}\n"
        )
        if current > 0:
            text += f"• 🏷️ Discount: {current}% (Monthly)\n"
        text += f"\n💰 <b>Your Balance:</b> ₹{pricing.format_currency(balance)}"
        if nxt:
            text += f"\n🎯 <b>Next Tier:</b> Deposit ₹{pricing.format_currency(nxt[0])} more for {nxt[1]}% discount"
        text += "\n\n⚡ <b>Available Servers:</b>"

        kb = InlineKeyboardMarkup()
        for server in services_catalog.get_servers(service.id):
            quote = pricing.calculate_discounted_price(server.price, monthly)
            label = f"{server.name} - ₹{pricing.format_currency(quote.final_price)}"
            label += f" ({quote.discount_percent}% OFF)" if quote.discount > 0 else f" ({server.success})"
            kb.add(InlineKeyboardButton(label, callback_data=f"{CB_BUY}{service.id}_{server.index}"))
        bot.send_message(chat_id, text, parse_mode="HTML", reply_markup=kb)

    @bot.message_handler(commands=["services"])
    def services_cmd(m: Message):
        show_all_services(m.chat.id, 0)

    @bot.message_handler(func=lambda m: (m.text or "").strip() == BTN_SERVICES)
    def services_btn(m: Message):
        show_all_services(m.chat.id, 0)

    @bot.callback_query_handler(func=lambda c: (c.data or "").startswith(CB_ALL_SERVICES))
    def services_page(c: CallbackQuery):
        bot.answer_callback_query(c.id)
        try:
            page = int(c.data[len(CB_ALL_SERVICES):])
        except ValueError:
            page = 0
        show_all_services(c.message.chat.id, page)

    @bot.message_handler(commands=["search"])
    def search_cmd(m: Message):
        parts = (m.text or "").split(maxsplit=1)
        if len(parts) > 1 and parts[1].strip():
            show_search_results(m.chat.id, parts[1].strip())
            return
        ask_search(m)

    @bot.message_handler(func=lambda m: (m.text or "").strip() == BTN_SEARCH)
    def ask_search(m: Message):
        msg = bot.send_message(
            m.chat.id,
            "🔍 <b>Search Services</b>\n\nPlease enter the service name you want to search for:\n\n"
            "Example: <code>shein</code>, <code>amazon</code>, <code>facebook</code>",
            parse_mode="HTML",
        )
        bot.register_next_step_handler(msg, _search_step)

    def _search_step(m: Message):
        term = (m.text or "").strip()
        if not term or term.startswith("/"):
            bot.send_message(m.chat.id, "Search cancelled.")
            return
        show_search_results(m.chat.id, term)

    @bot.message_handler(func=lambda m: (m.text or "").startswith("/find_"))
    def find_service(m: Message):
        service_id = (m.text or "").split()[0][len("/find_"):].split("@")[0]
        show_service_details(m.chat.id, m.from_user.id, service_id)

    # =========================
    # Orders (engine actions)
    # =========================
    @bot.callback_query_handler(func=lambda c: (c.data or "").startswith(CB_BUY))
    def on_buy(c: CallbackQuery):
        parsed = _parse_buy(c.data)
        user_id = c.from_user.id
        chat_id = c.message.chat.id
        if parsed is None:
            bot.answer_callback_query(c.id, "Service is not active...")
            return

        service_id, server_index = parsed
        try:
            engine.purchase(user_id, service_id, server_index, chat_id=chat_id)
        except PreconditionFailed as e:
            if e.reason == ACCESS_DENIED:
                bot.answer_callback_query(c.id, "🔒 Please complete the join / terms steps first.", show_alert=True)
                if send_gate_or_menu is not None:
                    send_gate_or_menu(chat_id, user_id)
            else:
                bot.answer_callback_query(c.id, "Service is not active...")
            return
        except InsufficientBalance as e:
            bot.answer_callback_query(c.id)
            bot.send_message(
                chat_id,
                "❌ <b>Insufficient Balance</b>\n\n"
                f"💰 Required: ₹{pricing.format_currency(e.required)}\n"
                f"💳 Your Balance: ₹{pricing.format_currency(e.balance)}\n\n"
                "Please deposit money to continue.",
                parse_mode="HTML",
            )
            return
        except OrderError as e:
            # failure + refund already rendered by the engine
            logger.info("Purchase by %s failed: %s", user_id, e.reason)
            bot.answer_callback_query(c.id)
            return
        bot.answer_callback_query(c.id)

    @bot.callback_query_handler(func=lambda c: (c.data or "").startswith(CB_CHECK))
    def on_check(c: CallbackQuery):
        order_id = c.data[len(CB_CHECK):]
        try:
            result = engine.check_now(order_id, user_id=c.from_user.id)
        except PreconditionFailed:
            bot.answer_callback_query(c.id, _NOT_FOUND_TEXT)
            return
        except OrderError:
            bot.answer_callback_query(c.id, "⚠️ Could not check right now, try again.")
            return

        if result.status == PollStatus.DELIVERED:
            text = f"✅ OTP: {result.code}"
        elif result.status == PollStatus.WAITING:
            text = "⏳ Still waiting for SMS..."
        else:
            text = "🔍 Checking for OTP..."
        bot.answer_callback_query(c.id, text)

    @bot.callback_query_handler(func=lambda c: c.data == CB_CANCEL_LOCKED)
    def on_cancel_locked(c: CallbackQuery):
        bot.answer_callback_query(c.id, "⏳ Cancel option will unlock after 2 minutes.")

    @bot.callback_query_handler(func=lambda c: (c.data or "").startswith(CB_CANCEL) and c.data != CB_CANCEL_LOCKED)
    def on_cancel(c: CallbackQuery):
        order_id = c.data[len(CB_CANCEL):]
        try:
            engine.cancel(order_id, user_id=c.from_user.id)
        except PreconditionFailed as e:
            if e.reason == CANCEL_LOCKED:
                bot.answer_callback_query(c.id, f"❌ Cancel option unlocks in {mmss(e.remaining)}", show_alert=True)
            elif e.reason == OTP_RECEIVED:
                bot.answer_callback_query(c.id, "❌ Cannot cancel - OTP already received", show_alert=True)
            else:
                bot.answer_callback_query(c.id, _NOT_FOUND_TEXT)
            return
        except OrderError:
            bot.answer_callback_query(c.id)
            presenter.render_cancel_error(c.message.chat.id, c.message.message_id)
            return
        bot.answer_callback_query(c.id, "✅ Order cancelled & refunded")

    @bot.callback_query_handler(func=lambda c: (c.data or "").startswith(CB_NEW_NUMBER))
    def on_new_number(c: CallbackQuery):
        order_id = c.data[len(CB_NEW_NUMBER):]
        try:
            engine.request_new_number(order_id, user_id=c.from_user.id)
        except PreconditionFailed as e:
            if e.reason == OTP_RECEIVED:
                bot.answer_callback_query(c.id, "❌ OTP already received - number cannot be changed", show_alert=True)
            else:
                bot.answer_callback_query(c.id, _NOT_FOUND_TEXT)
            return
        except VendorFailure as e:
            bot.answer_callback_query(c.id, f"{describe_error(e)}\nYour original order is still active.", show_alert=True)
            return
        except OrderError:
            bot.answer_callback_query(c.id, "❌ Failed to get new number", show_alert=True)
            return
        bot.answer_callback_query(c.id, "🔄 New number assigned")

    @bot.callback_query_handler(func=lambda c: (c.data or "").startswith(CB_WAITING))
    def on_waiting(c: CallbackQuery):
        bot.answer_callback_query(c.id, "⏳ Still waiting for your next SMS...", show_alert=True)

    # =========================
    # My orders
    # =========================
    def show_orders(chat_id: int, user_id: int):
        active = db.get_active_orders(user_id)
        recent = db.get_user_orders(user_id, limit=10)

        lines = ["📦 <b>Active Orders</b>"]
        if not active:
            lines.append("No active orders.")
        for a in active:
            left = max(0, int(a["expires_at"] - engine.clock()))
            lines.append(
                f"• {html.escape(a['product'])} — <code>{html.escape(a['phone'])}</code> "
                f"(⏳ {mmss(left)}) ID: {a['order_id']}"
            )

        lines.append("\n📜 <b>Last Orders</b>")
        if not recent:
            lines.append("No orders yet.")
        for o in recent:
            otp = f" 🔐 <code>{html.escape(o['otp_code'])}</code>" if o.get("otp_code") else ""
            lines.append(
                f"• {html.escape(o['service'])} ₹{pricing.format_currency(o['price'])} — {o['status']}{otp}"
            )
        bot.send_message(chat_id, "\n".join(lines), parse_mode="HTML")

    @bot.message_handler(commands=["orders"])
    def orders_cmd(m: Message):
        show_orders(m.chat.id, m.from_user.id)

    @bot.message_handler(func=lambda m: (m.text or "").strip() == BTN_ORDERS)
    def orders_btn(m: Message):
        show_orders(m.chat.id, m.from_user.id)
