"""Configuration management for the launch orchestration engine"""

import os
import logging
from typing import List, Tuple

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)


class Config:
    """Application configuration"""

    # Environment detection
    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"
    CURRENT_ENVIRONMENT = "production" if IS_PRODUCTION else "development"

    # Database configuration
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///launch_engine.db")
    DATABASE_ECHO = os.getenv("DATABASE_ECHO", "false").lower() == "true"

    # Key custody master secret (never logged)
    ENCRYPTION_SECRET = os.getenv("ENCRYPTION_SECRET")
    # Fixed KDF salt shared with every previously encrypted key
    ENCRYPTION_KDF_SALT = os.getenv("ENCRYPTION_KDF_SALT", "salt").encode("utf-8")

    # Blockchain RPC
    SOLANA_RPC_URL = os.getenv("SOLANA_RPC_URL", "https://api.mainnet-beta.solana.com")
    RPC_TIMEOUT_SECONDS = int(os.getenv("RPC_TIMEOUT_SECONDS", "15"))
    RPC_COMMITMENT = os.getenv("RPC_COMMITMENT", "confirmed")
    LAMPORTS_PER_SOL = 1_000_000_000
    TOKEN_DECIMALS = 6

    # Market data feed (display only)
    PRICE_FEED_URL = os.getenv("PRICE_FEED_URL", "https://api.dexscreener.com/latest/dex/tokens")
    PRICE_FEED_TIMEOUT_SECONDS = int(os.getenv("PRICE_FEED_TIMEOUT_SECONDS", "10"))

    # Address pool
    POOL_ALLOCATE_CANDIDATES = int(os.getenv("POOL_ALLOCATE_CANDIDATES", "3"))

    # Launch pipeline
    MAX_LAUNCH_ATTEMPTS = int(os.getenv("MAX_LAUNCH_ATTEMPTS", "3"))
    MAX_WALLETS = int(os.getenv("MAX_WALLETS", "73"))
    MAX_DEV_WALLETS = int(os.getenv("MAX_DEV_WALLETS", "5"))
    MAX_BUYER_WALLETS = int(os.getenv("MAX_BUYER_WALLETS", "10"))

    # Pre-launch balance expectations (SOL)
    WALLET_FEE_RESERVE_SOL = float(os.getenv("WALLET_FEE_RESERVE_SOL", "0.05"))
    DEV_CREATION_FEE_SOL = float(os.getenv("DEV_CREATION_FEE_SOL", "0.01"))
    DEV_FEE_RESERVE_SOL = float(os.getenv("DEV_FEE_RESERVE_SOL", "0.05"))

    # Buy distribution tiers: (first position, last position, min SOL, max SOL)
    # Empirically tuned to look natural on-chain; kept as data.
    BUY_TIERS: List[Tuple[int, int, float, float]] = [
        (1, 15, 0.15, 0.85),
        (16, 25, 0.85, 1.45),
        (26, 39, 1.45, 1.95),
        (40, 58, 2.0, 3.2),
        (59, 73, 2.8, 4.5),
    ]
    LARGE_BUY_THRESHOLD = float(os.getenv("LARGE_BUY_THRESHOLD", "2.0"))
    LARGE_BUY_START_POSITION = int(os.getenv("LARGE_BUY_START_POSITION", "40"))
    DISTRIBUTION_TOLERANCE = 0.001

    @staticmethod
    def log_environment_config():
        """Log current environment configuration for debugging"""
        logger.info("🔧 Launch Engine Configuration:")
        logger.info(f"   Environment: {Config.CURRENT_ENVIRONMENT.upper()}")
        logger.info(f"   Database: {Config.DATABASE_URL.split('@')[-1]}")
        logger.info(f"   RPC: {Config.SOLANA_RPC_URL} (timeout {Config.RPC_TIMEOUT_SECONDS}s)")
        logger.info(f"   Max wallets: {Config.MAX_WALLETS}")
        logger.info(f"   Max launch attempts: {Config.MAX_LAUNCH_ATTEMPTS}")
        logger.info(
            f"   Large buys: >= {Config.LARGE_BUY_THRESHOLD} SOL from position {Config.LARGE_BUY_START_POSITION}"
        )
        if Config.ENCRYPTION_SECRET:
            logger.info("   ENCRYPTION_SECRET: ✅ Configured")
        elif Config.IS_PRODUCTION:
            logger.critical("🚨 ENCRYPTION_SECRET not configured in production!")
        else:
            logger.warning("⚠️ ENCRYPTION_SECRET not configured - key custody unavailable")

    @staticmethod
    def validate_distribution_configuration():
        """Validate the buy tier table"""
        previous_end = 0
        for start, end, low, high in Config.BUY_TIERS:
            if start != previous_end + 1 or end < start:
                raise ValueError(f"Buy tier positions must be contiguous, got {start}-{end}")
            if low <= 0 or high < low:
                raise ValueError(f"Invalid buy tier range {low}-{high} for positions {start}-{end}")
            if start < Config.LARGE_BUY_START_POSITION and high >= Config.LARGE_BUY_THRESHOLD:
                raise ValueError(
                    f"Tier {start}-{end} allows large buys before position {Config.LARGE_BUY_START_POSITION}"
                )
            previous_end = end
        return True
