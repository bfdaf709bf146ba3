from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

from ..models import PREMIUM, REGULAR, TokenBalance

logger = logging.getLogger(__name__)


class TokenLedger(Protocol):
    def get_balance(self, player_id: str) -> TokenBalance:
        """Return the player's current balance."""

    def debit(self, player_id: str, token_type: str, amount: int, reason: str, conn=None) -> TokenBalance:
        """Remove tokens atomically; raise ``InsufficientBalance`` instead of going negative."""

    def credit(
        self,
        player_id: str,
        token_type: str,
        amount: int,
        reason: str,
        earned: bool = True,
        conn=None,
    ) -> TokenBalance:
        """Add tokens atomically."""


@dataclass(frozen=True)
class EscrowHold:
    """Tokens taken from a player and held for a challenge."""

    player_id: str
    regular: int = 0
    premium: int = 0

    @property
    def empty(self) -> bool:
        return self.regular == 0 and self.premium == 0


class TokenEscrowLedger:
    """Hold, refund and release challenge stakes on top of a ``TokenLedger``.

    ``conn`` is passed through to the ledger so several movements can share
    the caller's transaction. A hold that fails half way refunds the part
    already taken before raising.
    """

    def __init__(self, ledger: TokenLedger):
        self.ledger = ledger

    def balance(self, player_id: str) -> TokenBalance:
        return self.ledger.get_balance(player_id)

    def hold(
        self,
        player_id: str,
        regular: int = 0,
        premium: int = 0,
        reason: str = "challenge_stakes",
        conn=None,
    ) -> EscrowHold:
        """Debit a stake into escrow and return the hold.

        Funds are checked by the ledger's conditional debit, never against a
        cached balance.
        """
        if regular:
            self.ledger.debit(player_id, REGULAR, regular, reason, conn=conn)
        if premium:
            try:
                self.ledger.debit(player_id, PREMIUM, premium, reason, conn=conn)
            except Exception:
                if regular:
                    self.ledger.credit(
                        player_id, REGULAR, regular, "challenge_refund", earned=False, conn=conn
                    )
                raise
        hold = EscrowHold(player_id, regular, premium)
        if not hold.empty:
            logger.info("Held %s regular / %s premium tokens from %s", regular, premium, player_id)
        return hold

    def refund(self, hold: EscrowHold, reason: str = "challenge_refund", conn=None) -> EscrowHold:
        """Return exactly the held amounts to their owner."""
        if hold.regular:
            self.ledger.credit(hold.player_id, REGULAR, hold.regular, reason, earned=False, conn=conn)
        if hold.premium:
            self.ledger.credit(hold.player_id, PREMIUM, hold.premium, reason, earned=False, conn=conn)
        if not hold.empty:
            logger.info(
                "Refunded %s regular / %s premium tokens to %s (%s)",
                hold.regular,
                hold.premium,
                hold.player_id,
                reason,
            )
        return hold

    def release(
        self,
        player_id: str,
        regular: int = 0,
        premium: int = 0,
        reason: str = "challenge_payout",
        conn=None,
    ) -> None:
        """Pay tokens out of escrow to a player as winnings."""
        if regular:
            self.ledger.credit(player_id, REGULAR, regular, reason, conn=conn)
        if premium:
            self.ledger.credit(player_id, PREMIUM, premium, reason, conn=conn)


__all__ = ["TokenLedger", "EscrowHold", "TokenEscrowLedger"]
