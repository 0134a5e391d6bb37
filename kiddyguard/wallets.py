"""Demo wallet balances topped up from the dashboard."""
from __future__ import annotations

import logging
from enum import Enum

from sqlalchemy import select
from sqlalchemy.orm import Session

from kiddyguard.errors import NotFoundError, ValidationError, operation
from kiddyguard.models import Wallet
from kiddyguard.schemas import WalletOut

log = logging.getLogger(__name__)


class Asset(str, Enum):
    USDC = "USDC"
    SOL = "SOL"


BALANCE_FIELDS = {
    Asset.USDC: "usdc_balance",
    Asset.SOL: "sol_balance",
}


def _get_wallet(session: Session, user_id: str) -> Wallet:
    wallet = session.execute(select(Wallet).where(Wallet.user_id == user_id)).scalars().first()
    if wallet is None:
        raise NotFoundError(f"Wallet for user {user_id} not found")
    return wallet


@operation
def get_wallet(session: Session, user_id: str) -> WalletOut:
    return WalletOut.model_validate(_get_wallet(session, (user_id or "").strip()))


@operation
def top_up_wallet(session: Session, user_id: str, amount: float, asset: str) -> WalletOut:
    """Add *amount* of *asset* to the user's wallet, creating the wallet if needed.

    Only the balance of *asset* changes; a new wallet starts with every other
    balance at zero.
    """
    user_id = (user_id or "").strip()
    if not user_id:
        raise ValidationError("User ID is required")
    if isinstance(amount, bool) or not isinstance(amount, (int, float)) or amount <= 0:
        raise ValidationError("Amount must be greater than 0")
    try:
        asset_key = Asset(str(asset).strip().upper())
    except ValueError as exc:
        raise ValidationError("Invalid asset. Must be USDC or SOL") from exc
    field = BALANCE_FIELDS[asset_key]

    try:
        wallet = _get_wallet(session, user_id)
    except NotFoundError:
        wallet = Wallet(user_id=user_id, usdc_balance=0.0, sol_balance=0.0, zenzec_balance=0.0)
        session.add(wallet)
        log.info("Created wallet for user %s", user_id)
    setattr(wallet, field, (getattr(wallet, field) or 0.0) + float(amount))
    session.commit()
    return WalletOut.model_validate(wallet)
