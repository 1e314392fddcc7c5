# config.py
# Bot settings. Secrets come from the environment, everything else is fixed here.
# Vendor: FirexOTP (sms-activate compatible handler_api)

import os

# ========= Telegram =========
BOT_TOKEN = os.getenv("BOT_TOKEN", "")
ADMIN_USER_ID = int(os.getenv("ADMIN_USER_ID", "0") or 0)

# admin notification bot (separate token, posts to one chat)
NOTIFICATION_BOT_TOKEN = os.getenv("NOTIFICATION_BOT_TOKEN", "")
NOTIFICATION_CHAT_ID = os.getenv("NOTIFICATION_CHAT_ID", "")

# ========= Channel / Terms =========
CHANNEL_ID = os.getenv("CHANNEL_ID", "")
CHANNEL_LINK = os.getenv("CHANNEL_LINK", "")
TERMS_URL = os.getenv("TERMS_URL", "https://telegra.ph/Fast-OTP--Terms--Conditions-09-22-2")

# ========= FirexOTP API =========
FIREX_API_KEY = os.getenv("FIREX_API_KEY", "")
FIREX_BASE_URL = os.getenv("FIREX_BASE_URL", "https://firexotp.com/stubs/handler_api.php")
VENDOR_TIMEOUT_SECONDS = 15

DEFAULT_COUNTRY = "22"
PHONE_COUNTRY_PREFIX = "91"

# ========= Storage / Logs =========
DB_PATH = os.getenv("DB_PATH", "bot.db")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# ========= Order lifecycle =========
POLL_INTERVAL_SECONDS = 5          # vendor getStatus cadence
COUNTDOWN_INTERVAL_SECONDS = 2     # keyboard redraw cadence
CANCEL_LOCK_SECONDS = 2 * 60       # no user cancel before this
ORDER_TIMEOUT_SECONDS = 15 * 60    # hard expiry from purchase (and OTP window from first code)

# ========= Discounts (monthly deposit -> percent) =========
DISCOUNT_ENABLED = True
DISCOUNT_TIERS = [
    (5000, 2),
    (10000, 5),
    (20000, 10),
]
MIN_FINAL_PRICE = 1

# ========= Deposits (manual UPI + UTR, approved by the admin) =========
UPI_ID = os.getenv("UPI_ID", "")
UPI_NAME = os.getenv("UPI_NAME", "")
PAYMENT_NOTE_PREFIX = os.getenv("FIRE_OTP_NOTE_PREFIX", "FIRE")
MIN_UTR_LENGTH = int(os.getenv("MIN_UTR_LENGTH", "10") or 10)
MIN_DEPOSIT_AMOUNT = int(os.getenv("MIN_DEPOSIT_AMOUNT", "100") or 100)
DEPOSIT_AMOUNTS = [100, 200, 500, 1000, 2000]

# ========= Referrals =========
REFERRAL_ENABLED = True
REFERRAL_COMMISSION_PERCENT = 5
MIN_DEPOSIT_FOR_COMMISSION = 1
REFERRAL_CODE_LENGTH = 8

# ========= Gift codes =========
GIFT_CODE_LENGTH = 8

# ========= Catalog =========
SERVICES = {
    "SHEIN": {"name": "SHEIN", "price": 8.44},
    "FACEBOOK": {"name": "Facebook", "price": 18},
    "WHATSAPP": {"name": "Whatsapp", "price": 20},
    "TELEGRAM": {"name": "Telegram", "price": 22},
    "INSTAGRAM": {"name": "Instagram", "price": 16},
    "SPOTIFY": {"name": "Spotify", "price": 12},
    "MYNTRA": {"name": "MYNTRA", "price": 17},
    "AMAZON": {"name": "Amazon", "price": 25},
    "GOOGLE": {"name": "Google", "price": 20},
    "NETFLIX": {"name": "Netflix", "price": 30},
    "PAYTM": {"name": "Paytm", "price": 15},
    "PHONEPE": {"name": "PhonePe", "price": 15},
    "SWIGGY": {"name": "Swiggy", "price": 12},
    "ZOMATO": {"name": "Zomato", "price": 12},
    "FLIPKART": {"name": "Flipkart", "price": 20},
    "DISCORD": {"name": "Discord", "price": 18},
    "SNAPCHAT": {"name": "Snapchat", "price": 16},
    "MICROSOFT": {"name": "Microsoft", "price": 22},
}

SERVICE_SERVERS = {
    "SHEIN": [
        {"name": "Server 1", "success": "98%", "price": 8.44, "time": "10-15 sec", "country": DEFAULT_COUNTRY, "service": "shein"},
        {"name": "Server 2", "success": "95%", "price": 9, "time": "15-20 sec", "country": DEFAULT_COUNTRY, "service": "shein"},
    ],
    "FACEBOOK": [
        {"name": "SERVER 1", "success": "99%", "price": 18, "time": "5-10 sec", "country": DEFAULT_COUNTRY, "service": "fb"},
    ],
    "WHATSAPP": [
        {"name": "SERVER 1", "success": "99%", "price": 20, "time": "5-10 sec", "country": DEFAULT_COUNTRY, "service": "wa"},
    ],
    "TELEGRAM": [
        {"name": "SERVER 1", "success": "97%", "price": 22, "time": "5-10 sec", "country": DEFAULT_COUNTRY, "service": "tg"},
    ],
    "DEFAULT": [
        {"name": "SERVER DEFAULT", "success": "95%", "price": 15, "time": "10-15 sec", "country": DEFAULT_COUNTRY, "service": "any"},
    ],
}

SERVICES_PER_PAGE = 30
