# main.py
# Webhook entry point (Flask receives Telegram updates) + order engine wiring.
# On SIGINT/SIGTERM every order timer is stopped; live orders stay in active_orders.

import atexit
import logging
import os
import signal
import sys

import telebot
from telebot import types
from flask import Flask, request

import db
from config import BOT_TOKEN, LOG_LEVEL
from firex_api import FirexGateway
from handlers_balance import (
    register_balance_handlers,
    BTN_BALANCE,
    BTN_ADD_BALANCE,
    BTN_PROFILE,
    BTN_TRANSFER,
)
from handlers_deposit import register_deposit_handlers, BTN_DEPOSIT
from handlers_gift import register_gift_handlers, BTN_REDEEM
from handlers_numbers import register_numbers_handlers, BTN_SERVICES, BTN_SEARCH, BTN_ORDERS
from handlers_referral import register_referral_handlers, BTN_REFERRAL
from handlers_users import register_users_handlers, make_access_check
from notifier import Notifier
from orders import OrderEngine
from presenter import TelegramPresenter
from scheduler import Scheduler

logging.basicConfig(
    level=getattr(logging, str(LOG_LEVEL).upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# ================== Server + Bot ==================

app = Flask(__name__)
bot = telebot.TeleBot(BOT_TOKEN)

presenter = TelegramPresenter(bot)
notifier = Notifier()
engine = OrderEngine(
    store=db,
    vendor=FirexGateway(),
    presenter=presenter,
    notifier=notifier,
    scheduler=Scheduler(),
    access_check=make_access_check(bot),
)

# ================== Keyboards ==================

def build_main_keyboard(is_admin: bool):
    kb = types.ReplyKeyboardMarkup(row_width=2, resize_keyboard=True)
    kb.add(types.KeyboardButton(BTN_SERVICES), types.KeyboardButton(BTN_SEARCH))
    kb.add(types.KeyboardButton(BTN_BALANCE), types.KeyboardButton(BTN_ORDERS))
    kb.add(types.KeyboardButton(BTN_DEPOSIT), types.KeyboardButton(BTN_PROFILE))
    kb.add(types.KeyboardButton(BTN_REFERRAL), types.KeyboardButton(BTN_REDEEM))
    kb.add(types.KeyboardButton(BTN_TRANSFER))
    if is_admin:
        kb.add(types.KeyboardButton(BTN_ADD_BALANCE))
    return kb


# ================== Webhook Routes ==================

@app.route("/" + BOT_TOKEN, methods=["POST"])
def get_message():
    if request.headers.get("content-type") == "application/json":
        json_string = request.get_data().decode("utf-8")
        update = telebot.types.Update.de_json(json_string)
        bot.process_new_updates([update])
        return "!", 200
    return "Forbidden", 403


@app.route("/")
def webhook():
    bot.remove_webhook()

    domain = os.getenv("RAILWAY_STATIC_URL") or os.getenv("WEBHOOK_DOMAIN")
    if domain:
        bot.set_webhook(url=f"https://{domain}/{BOT_TOKEN}")
        return f"Webhook set successfully to: https://{domain}/{BOT_TOKEN}", 200
    return "Error: RAILWAY_STATIC_URL not found. Please check Railway settings.", 500


# ================== Handlers ==================

send_gate_or_menu = register_users_handlers(bot, build_main_keyboard, notifier)
register_balance_handlers(bot, notifier)
register_deposit_handlers(bot, notifier)
register_referral_handlers(bot)
register_gift_handlers(bot, notifier)
register_numbers_handlers(bot, engine, presenter, send_gate_or_menu)


# ================== Shutdown ==================

def _shutdown(*_args):
    logger.info("Shutting down bot gracefully...")
    engine.shutdown()


def _on_signal(signum, _frame):
    _shutdown()
    sys.exit(0)


atexit.register(_shutdown)


# ================== Main Execution ==================

if __name__ == "__main__":
    db.init_db()

    signal.signal(signal.SIGINT, _on_signal)
    signal.signal(signal.SIGTERM, _on_signal)

    port = int(os.environ.get("PORT", 8080))
    app.run(host="0.0.0.0", port=port)
