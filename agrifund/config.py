import os
import logging
from decimal import Decimal
from dotenv import load_dotenv

load_dotenv()

# ---------------------------
# Storage
# ---------------------------
DB_URL = os.getenv("DATABASE_URL", "sqlite:///./agrifund.db")

# ---------------------------
# Ledger / algod
# ---------------------------
ALGOD_URL = os.getenv("ALGOD_URL", "https://testnet-api.algonode.cloud")
ALGOD_TOKEN = os.getenv("ALGOD_TOKEN", "")
NETWORK = os.getenv("NETWORK", "testnet")

# Server-side signer for deploy / set_active. Unset = offline, deployments are recorded as failed.
OPERATOR_MNEMONIC = os.getenv("OPERATOR_MNEMONIC")

CHAIN_TIMEOUT_SECONDS = float(os.getenv("CHAIN_TIMEOUT_SECONDS", "10"))
# writes wait for confirmation rounds, so they get a wider bound
CHAIN_WRITE_TIMEOUT_SECONDS = float(os.getenv("CHAIN_WRITE_TIMEOUT_SECONDS", "90"))
CONFIRMATION_ROUNDS = int(os.getenv("CONFIRMATION_ROUNDS", "12"))
APP_MIN_BALANCE_MICROALGOS = int(os.getenv("APP_MIN_BALANCE_MICROALGOS", "200000"))

# ---------------------------
# Platform policy
# ---------------------------
MIN_FUNDING_GOAL = Decimal(os.getenv("MIN_FUNDING_GOAL", "5"))
DEFAULT_TIMELINE_DAYS = int(os.getenv("DEFAULT_TIMELINE_DAYS", "30"))

LOCAL_CURRENCY = os.getenv("LOCAL_CURRENCY", "RWF")
LOCAL_CURRENCY_RATE = Decimal(os.getenv("LOCAL_CURRENCY_RATE", "250"))
# taken from the local-currency amount when a withdrawal is processed
WITHDRAWAL_FEE_RATE = Decimal(os.getenv("WITHDRAWAL_FEE_RATE", "0.01"))

USER_CACHE_TTL_SECONDS = float(os.getenv("USER_CACHE_TTL_SECONDS", "300"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str = None) -> None:
    """Install one stream handler on the root logger. Safe to call more than once."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, (level or LOG_LEVEL).upper(), logging.INFO))
    if any(getattr(h, "_agrifund", False) for h in root.handlers):
        return
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler._agrifund = True
    root.addHandler(handler)
