"""Helper utilities for the DealPact Escrow Bot"""

import re
import secrets
import logging
from decimal import Decimal, InvalidOperation
from typing import Optional
from config import Config

logger = logging.getLogger(__name__)

# No 0/O, 1/I so codes survive being read aloud or retyped
DEAL_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
DEAL_CODE_LENGTH = 4

WALLET_ADDRESS_PATTERN = re.compile(r"0x[a-fA-F0-9]{40}")
DEAL_CODE_PATTERN = re.compile(r"^DP-[A-Z0-9]{4}$", re.IGNORECASE)


def generate_deal_code() -> str:
    """Random DP-XXXX code; uniqueness is enforced by the store"""
    suffix = "".join(secrets.choice(DEAL_CODE_ALPHABET) for _ in range(DEAL_CODE_LENGTH))
    return f"{Config.DEAL_ID_PREFIX}-{suffix}"


def normalize_deal_code(code: Optional[str]) -> str:
    """Deal codes are looked up case-insensitively and stored upper-case"""
    return (code or "").strip().upper()


def is_deal_code(text: Optional[str]) -> bool:
    return bool(text) and DEAL_CODE_PATTERN.match(text.strip()) is not None


def normalize_handle(username: Optional[str]) -> str:
    """Strip a leading @ and lower-case for comparisons"""
    return (username or "").strip().lstrip("@").lower()


def validate_username(username: str) -> bool:
    """Validate Telegram username format"""
    if not username:
        return False

    username = username.lstrip("@")

    # Telegram usernames: start with a letter, 5-32 chars of letters, digits, underscores
    pattern = r"^[a-zA-Z][a-zA-Z0-9_]{4,31}$"

    if username.isdigit():
        return False

    return re.match(pattern, username) is not None


def extract_wallet_address(text: Optional[str]) -> Optional[str]:
    """Find an EVM address in free text; returned lower-cased"""
    if not text:
        return None
    match = WALLET_ADDRESS_PATTERN.search(text)
    return match.group(0).lower() if match else None


def parse_amount(raw: Optional[str]) -> Optional[Decimal]:
    """Parse a user-typed amount such as '50', '12.5' or '$20'"""
    if not raw:
        return None
    try:
        amount = Decimal(raw.strip().lstrip("$").replace(",", ""))
    except InvalidOperation:
        return None
    if not amount.is_finite():
        return None
    return amount


def truncate_text(text: str, max_length: int = 100) -> str:
    """Truncate text with ellipsis"""
    if len(text) <= max_length:
        return text
    return text[: max_length - 3] + "..."


def deposit_link(deal_id: str, action: Optional[str] = None) -> str:
    """Frontend link where the buyer deposits (or releases) through their own wallet"""
    link = f"{Config.FRONTEND_URL}?deal={deal_id}"
    if action:
        link += f"&action={action}"
    return link


def explorer_tx_link(tx_hash: Optional[str]) -> str:
    if not tx_hash:
        return ""
    return f"{Config.EXPLORER_TX_URL}{tx_hash}"
