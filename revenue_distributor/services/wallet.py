"""
Signing keypair loading.
"""

import json
from pathlib import Path

import base58
from solders.keypair import Keypair
import structlog

from revenue_distributor.core.config import Settings
from revenue_distributor.core.exceptions import ConfigurationError


logger = structlog.get_logger(__name__)


def keypair_from_secret(secret: str) -> Keypair:
    """Accept a JSON byte array (solana-keygen format) or a base58 string."""
    secret = secret.strip()
    if secret.startswith("["):
        return Keypair.from_bytes(bytes(json.loads(secret)))
    return Keypair.from_bytes(base58.b58decode(secret))


def load_keypair(config: Settings) -> Keypair:
    """Load the funding/authority keypair from WALLET_FILE or WALLET_PRIVATE_KEY."""
    try:
        if config.wallet_file:
            keypair = keypair_from_secret(Path(config.wallet_file).read_text(encoding="utf-8"))
        elif config.wallet_private_key:
            keypair = keypair_from_secret(config.wallet_private_key)
        else:
            raise ConfigurationError("Neither WALLET_FILE nor WALLET_PRIVATE_KEY is set")
    except ConfigurationError:
        raise
    except (OSError, ValueError, TypeError) as e:
        logger.error("Failed to load wallet keypair", error=str(e))
        raise ConfigurationError(f"Failed to load wallet keypair: {e}") from e

    logger.info("Wallet keypair loaded", pubkey=str(keypair.pubkey()))
    return keypair
