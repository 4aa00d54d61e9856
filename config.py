"""Configuration management for the ChatWallet payments backend"""

import os
import logging
from decimal import Decimal
from typing import List

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower().strip() in ("1", "true", "yes", "on")


def _env_decimal(name: str, default: str) -> Decimal:
    raw = os.getenv(name, default)
    try:
        return Decimal(str(raw).replace(",", ""))
    except Exception:
        logger.warning(f"⚠️ Invalid decimal for {name}={raw!r}, using default {default}")
        return Decimal(default)


class Config:
    """Application configuration"""

    # Environment detection: ENVIRONMENT takes absolute priority
    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"
    CURRENT_ENVIRONMENT = "production" if IS_PRODUCTION else "development"

    PORT = int(os.getenv("PORT", "5000"))
    PLATFORM_NAME = os.getenv("PLATFORM_NAME", "ChatWallet")
    SUPPORT_CONTACT = os.getenv("SUPPORT_CONTACT", "support@chatwallet.ng")

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///chatwallet.db")
    DATABASE_SOURCE = "PostgreSQL" if DATABASE_URL.startswith("postgres") else "SQLite (local)"

    # Short-TTL store (unset = in-process store)
    REDIS_URL = os.getenv("REDIS_URL")

    # Rubies BaaS provider (virtual accounts, NIP transfers)
    RUBIES_API_KEY = os.getenv("RUBIES_API_KEY")
    RUBIES_BASE_URL = os.getenv("RUBIES_BASE_URL", "https://api-sme-dev.rubies.ng/dev")
    RUBIES_WEBHOOK_SECRET = os.getenv("RUBIES_WEBHOOK_SECRET")
    BANK_LIST_CACHE_SECONDS = int(os.getenv("BANK_LIST_CACHE_SECONDS", "3600"))

    # Bilal data/airtime reseller
    BILAL_BASE_URL = os.getenv("BILAL_BASE_URL", "https://legitdataway.com/api")
    BILAL_USERNAME = os.getenv("BILAL_USERNAME")
    BILAL_PASSWORD = os.getenv("BILAL_PASSWORD")

    # WhatsApp Cloud API
    WHATSAPP_ACCESS_TOKEN = os.getenv("WHATSAPP_ACCESS_TOKEN")
    WHATSAPP_PHONE_NUMBER_ID = os.getenv("WHATSAPP_PHONE_NUMBER_ID")
    WHATSAPP_API_VERSION = os.getenv("WHATSAPP_API_VERSION", "v21.0")
    WHATSAPP_VERIFY_TOKEN = os.getenv("WHATSAPP_VERIFY_TOKEN")
    WHATSAPP_APP_SECRET = os.getenv("WHATSAPP_APP_SECRET")
    WHATSAPP_FLOW_PRIVATE_KEY = os.getenv("WHATSAPP_FLOW_PRIVATE_KEY")
    WHATSAPP_FLOW_PASSPHRASE = os.getenv("WHATSAPP_FLOW_PASSPHRASE")
    WHATSAPP_ONBOARDING_FLOW_ID = os.getenv("WHATSAPP_ONBOARDING_FLOW_ID")
    WHATSAPP_DATA_PURCHASE_FLOW_ID = os.getenv("WHATSAPP_DATA_PURCHASE_FLOW_ID")
    WHATSAPP_TRANSFER_PIN_FLOW_ID = os.getenv("WHATSAPP_TRANSFER_PIN_FLOW_ID")

    # Flow tokens
    FLOW_SECRET_KEY = os.getenv("FLOW_SECRET_KEY", "development-flow-secret")
    FLOW_TOKEN_TTL_HOURS = int(os.getenv("FLOW_TOKEN_TTL_HOURS", "24"))

    # Receipt renderer (optional; text receipts are sent when unset)
    RECEIPT_RENDERER_URL = os.getenv("RECEIPT_RENDERER_URL")

    # Admin surface
    ADMIN_API_KEY = os.getenv("ADMIN_API_KEY")

    # Fees
    TRANSFER_FEE_STRATEGY = os.getenv("TRANSFER_FEE_STRATEGY", "flat").lower().strip()
    BANK_TRANSFER_FLAT_FEE = _env_decimal("BANK_TRANSFER_FLAT_FEE", "15")
    PLATFORM_FEE_AMOUNT = _env_decimal("PLATFORM_FEE_AMOUNT", "5")
    PLATFORM_FEE_ACCOUNT_NUMBER = os.getenv("PLATFORM_FEE_ACCOUNT_NUMBER", "0000000000")
    PLATFORM_FEE_BANK_CODE = os.getenv("PLATFORM_FEE_BANK_CODE", "090175")
    PLATFORM_FEE_ACCOUNT_NAME = os.getenv("PLATFORM_FEE_ACCOUNT_NAME", "ChatWallet Fees")
    INCOMING_TRANSFER_FEE_ENABLED = _env_bool("INCOMING_TRANSFER_FEE_ENABLED")
    MAINTENANCE_FEE_AMOUNT = _env_decimal("MAINTENANCE_FEE_AMOUNT", "100")
    AIRTIME_MARGIN_PER_PURCHASE = _env_decimal("AIRTIME_MARGIN_PER_PURCHASE", "2")

    # Transfer limits (NGN)
    TRANSFER_MIN_AMOUNT = _env_decimal("TRANSFER_MIN_AMOUNT", "100")
    TRANSFER_MAX_AMOUNT = _env_decimal("TRANSFER_MAX_AMOUNT", "1000000")
    TRANSFER_DAILY_LIMIT = _env_decimal("TRANSFER_DAILY_LIMIT", "5000000")
    TRANSFER_MONTHLY_LIMIT = _env_decimal("TRANSFER_MONTHLY_LIMIT", "50000000")
    # Provider balance is consulted for debits at or above this amount
    BALANCE_SYNC_THRESHOLD = _env_decimal("BALANCE_SYNC_THRESHOLD", "0")

    # Background workers
    STUCK_TRANSACTION_MINUTES = int(os.getenv("STUCK_TRANSACTION_MINUTES", "30"))
    SWEEPER_INTERVAL_MINUTES = int(os.getenv("SWEEPER_INTERVAL_MINUTES", "5"))
    TSQ_MIN_AGE_MINUTES = int(os.getenv("TSQ_MIN_AGE_MINUTES", "2"))
    MAINTENANCE_FEE_DAY = int(os.getenv("MAINTENANCE_FEE_DAY", "1"))
    MAINTENANCE_FEE_HOUR = int(os.getenv("MAINTENANCE_FEE_HOUR", "3"))
    SCHEDULER_TIMEZONE = os.getenv("SCHEDULER_TIMEZONE", "Africa/Lagos")
    ENABLE_SCHEDULER = _env_bool("ENABLE_SCHEDULER", "true")

    # Provider resilience
    PROVIDER_MAX_RPS = int(os.getenv("PROVIDER_MAX_RPS", "5"))
    PROVIDER_MIN_INTERVAL_MS = int(os.getenv("PROVIDER_MIN_INTERVAL_MS", "200"))
    PROVIDER_TIMEOUT_SECONDS = int(os.getenv("PROVIDER_TIMEOUT_SECONDS", "30"))
    PROVIDER_MAX_RETRIES = int(os.getenv("PROVIDER_MAX_RETRIES", "2"))
    CIRCUIT_BREAKER_FAILURE_THRESHOLD = int(os.getenv("CIRCUIT_BREAKER_FAILURE_THRESHOLD", "3"))
    CIRCUIT_BREAKER_RECOVERY_SECONDS = int(os.getenv("CIRCUIT_BREAKER_RECOVERY_SECONDS", "300"))

    # Short-TTL store lifetimes (seconds)
    FLOW_SESSION_TTL = 300
    PROCESSING_KEY_TTL = 300
    CHAT_SESSION_TTL = 1800
    OTP_TTL = 300

    @staticmethod
    def validate() -> List[str]:
        """Return the production settings that are missing; never raises"""
        required = {
            "RUBIES_API_KEY": Config.RUBIES_API_KEY,
            "RUBIES_WEBHOOK_SECRET": Config.RUBIES_WEBHOOK_SECRET,
            "WHATSAPP_ACCESS_TOKEN": Config.WHATSAPP_ACCESS_TOKEN,
            "WHATSAPP_PHONE_NUMBER_ID": Config.WHATSAPP_PHONE_NUMBER_ID,
            "WHATSAPP_FLOW_PRIVATE_KEY": Config.WHATSAPP_FLOW_PRIVATE_KEY,
            "ADMIN_API_KEY": Config.ADMIN_API_KEY,
        }
        missing = [name for name, value in required.items() if not value]
        if Config.FLOW_SECRET_KEY == "development-flow-secret":
            missing.append("FLOW_SECRET_KEY")
        if Config.TRANSFER_FEE_STRATEGY not in ("flat", "tiered"):
            logger.warning(
                f"⚠️ Unknown TRANSFER_FEE_STRATEGY={Config.TRANSFER_FEE_STRATEGY!r}, flat fee applies"
            )
        return missing

    @staticmethod
    def log_environment_config():
        """Log current environment configuration for debugging"""
        logger.info(f"🔧 {Config.PLATFORM_NAME} Environment Configuration:")
        logger.info(f"   Environment: {Config.CURRENT_ENVIRONMENT.upper()}")
        logger.info(f"   Database: {Config.DATABASE_SOURCE}")
        logger.info(f"   Short-TTL store: {'Redis' if Config.REDIS_URL else 'in-process'}")
        logger.info(f"   Transfer fee strategy: {Config.TRANSFER_FEE_STRATEGY}")
        logger.info(f"   Incoming transfer fee: {'ON' if Config.INCOMING_TRANSFER_FEE_ENABLED else 'OFF'}")

        missing = Config.validate()
        if missing:
            log = logger.error if Config.IS_PRODUCTION else logger.warning
            log(f"⚠️ Missing configuration: {', '.join(missing)}")
