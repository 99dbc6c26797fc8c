import os
from decimal import Decimal

DATABASE_URL = os.getenv("BOOKING_DB")

if not DATABASE_URL:
    raise RuntimeError("BOOKING_DB environment variable is not set")

RABBIT_URL = os.getenv("RABBIT_URL")  # optional in dev, required if you want events

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
SQL_ECHO = os.getenv("SQL_ECHO", "false").lower() == "true"

PLATFORM_ACCOUNT_ID = os.getenv("PLATFORM_ACCOUNT_ID", "platform")
DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "VND")

# pricing
PLATFORM_FEE_PERCENT = Decimal(os.getenv("PLATFORM_FEE_PERCENT", "2"))

# booking schedule bounds
MIN_ADVANCE_HOURS = float(os.getenv("MIN_ADVANCE_HOURS", "2"))
MAX_ADVANCE_DAYS = float(os.getenv("MAX_ADVANCE_DAYS", "30"))
MIN_DURATION_HOURS = float(os.getenv("MIN_DURATION_HOURS", "1"))
MAX_DURATION_HOURS = float(os.getenv("MAX_DURATION_HOURS", "24"))

# cancellation
CANCELLATION_FREE_HOURS = float(os.getenv("CANCELLATION_FREE_HOURS", "24"))
CANCELLATION_PENALTY_PERCENT = Decimal(os.getenv("CANCELLATION_PENALTY_PERCENT", "20"))
PENALTY_PLATFORM_SHARE_PERCENT = Decimal(os.getenv("PENALTY_PLATFORM_SHARE_PERCENT", "0"))

# escrow
ESCROW_MAX_HOLD_DAYS = int(os.getenv("ESCROW_MAX_HOLD_DAYS", "30"))
DISPUTE_WINDOW_HOURS = float(os.getenv("DISPUTE_WINDOW_HOURS", "48"))

# wallet
MIN_DEPOSIT = Decimal(os.getenv("MIN_DEPOSIT", "100"))
MAX_DEPOSIT = Decimal(os.getenv("MAX_DEPOSIT", "50000000"))
MIN_WITHDRAW = Decimal(os.getenv("MIN_WITHDRAW", "10000"))
MAX_WITHDRAW = Decimal(os.getenv("MAX_WITHDRAW", "50000000"))
DEFAULT_GATEWAY = os.getenv("DEFAULT_GATEWAY", "vnpay")

# 0 disables the background sweeper (past-due bookings, lapsed escrow holds)
BOOKING_EXPIRY_SWEEP_SECONDS = float(os.getenv("BOOKING_EXPIRY_SWEEP_SECONDS", "0"))
