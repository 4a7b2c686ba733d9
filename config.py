"""
Runtime settings for the license store API.

Values come from the environment (a local .env file is loaded first when
present). Money settings are kept as Decimal so totals never go through
float arithmetic.
"""

import os
from decimal import Decimal

from dotenv import load_dotenv

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

SECRET_KEY = os.getenv("SECRET_KEY", "supersecret")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 24))

REDIS_URL = os.getenv("REDIS_URL")
CACHE_TTL_SECONDS = int(os.getenv("CACHE_TTL_SECONDS", 300))

TAX_RATE = Decimal(os.getenv("TAX_RATE", "0.21"))

WALLET_STARTING_BALANCE = Decimal(os.getenv("WALLET_STARTING_BALANCE", "10000.00"))
WALLET_CREDIT_LIMIT = Decimal(os.getenv("WALLET_CREDIT_LIMIT", "0.00"))

TENANTS = ("eur", "km")


def parse_tenant(value: str) -> str:
    tenant = value.strip().lower()
    if tenant not in TENANTS:
        raise ValueError(f"Unknown tenant '{value}', expected one of: {', '.join(TENANTS)}")
    return tenant


DEFAULT_TENANT = parse_tenant(os.getenv("DEFAULT_TENANT", "eur"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
APP_VERSION = os.getenv("APP_VERSION", "1.0.0")
PORT = int(os.getenv("PORT", 8000))
