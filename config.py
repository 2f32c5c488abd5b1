"""
Runtime configuration for the order engine.

Everything is read from the environment once at import time.
"""
import os
from decimal import Decimal

# ----- Database -----
DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

# ----- Server -----
PORT = int(os.getenv("PORT", 8000))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# ----- Pricing (whole currency units) -----
TAX_RATE = Decimal(os.getenv("TAX_RATE", "0.18"))
FREE_SHIPPING_THRESHOLD = int(os.getenv("FREE_SHIPPING_THRESHOLD", 1500))
SHIPPING_FEE = int(os.getenv("SHIPPING_FEE", 99))
COD_CHARGE = int(os.getenv("COD_CHARGE", 49))

# ----- Orders -----
ORDER_ID_ATTEMPTS = int(os.getenv("ORDER_ID_ATTEMPTS", 5))
CARRIERS = ["BlueDart Express", "DTDC Express", "Delhivery", "FedEx"]
DELIVERY_DAYS_MIN = 3
DELIVERY_DAYS_MAX = 5

# ----- Tracking simulation -----
ADMIN_HOLD_MINUTES = int(os.getenv("ADMIN_HOLD_MINUTES", 5))
SORTING_HUB = os.getenv("SORTING_HUB", "Mumbai")
