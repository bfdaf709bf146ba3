"""Challenge invitation lifecycle and stake settlement.

Stakes are escrowed on both sides: the inviter's stake is held when the
invitation is created and the invitee's when it is accepted. Declining,
canceling or expiring a pending invitation returns the inviter's hold;
settling an accepted one pays the pool out to the winner.

Every status change is a compare-and-set on the stored status, so only one
caller can win a race to accept, decline or cancel the same invitation.
Declining, canceling, expiring and settling write the status and the token
movements in one transaction when the engine is given one. Transitions are
additionally serialized per invitation id inside this process.
"""

from __future__ import annotations

import datetime
import logging
import threading
import weakref
from contextlib import nullcontext
from typing import Callable, ContextManager, Iterable, Protocol

from .. import economics as econ
from ..analyzer import analyze_match, completed_sets
from ..clock import Clock, SystemClock
from ..config import get_invitation_ttl_hours
from ..models import (
    ACCEPTED,
    CANCELED,
    DECLINED,
    EXPIRED,
    INVITATION_CATEGORIES,
    MATCH,
    PENDING,
    SOCIAL_PLAY,
    Invitation,
    SettlementResult,
)
from ..notifications import NotificationBus, NullNotificationBus
from ..rewards import calculate_session_rewards
from .exceptions import (
    EscrowFailure,
    InvalidStateTransition,
    InvitationNotFound,
    ServiceError,
    StakeNotAllowed,
)
from .ledger import EscrowHold, TokenEscrowLedger, TokenLedger

logger = logging.getLogger(__name__)


class InvitationStore(Protocol):
    def get(self, invitation_id: str) -> Invitation | None:
        """Return the stored invitation or ``None``."""

    def add(self, invitation: Invitation) -> str:
        """Persist a new invitation and return its id."""

    def compare_and_set_status(
        self,
        invitation_id: str,
        expected: str,
        new: str,
        extra: dict[str, object] | None = None,
        conn=None,
    ) -> bool:
        """Change the status only if it still equals ``expected``."""

    def claim_settlement(
        self, invitation_id: str, winner_id: str, settled_at: datetime.datetime, conn=None
    ) -> bool:
        """Mark an accepted invitation settled exactly once."""

    def list_for_player(self, player_id: str, status: str | None = None) -> list[Invitation]:
        """Return invitations sent or received by the player."""


class SessionFactory(Protocol):
    def create_session(
        self,
        kind: str,
        participants: Iterable[str],
        metadata: dict[str, object] | None = None,
    ) -> str:
        """Create the play session behind an accepted invitation."""

    def discard_session(self, session_id: str) -> None:
        """Remove a session whose invitation lost an accept race."""


class InvitationSettlement:
    """Runs invitations through pending, accepted and settled.

    ``transaction`` is a context manager factory yielding a connection that
    the store and ledger write through. A status change and the escrow
    movements it implies commit together or not at all. Without one each
    write commits on its own.
    """

    def __init__(
        self,
        ledger: TokenLedger,
        store: InvitationStore,
        sessions: SessionFactory,
        bus: NotificationBus | None = None,
        clock: Clock | None = None,
        invitation_ttl: datetime.timedelta | None = None,
        transaction: Callable[[], ContextManager] | None = None,
    ):
        self.escrow = TokenEscrowLedger(ledger)
        self.store = store
        self.sessions = sessions
        self.bus = bus or NullNotificationBus()
        self.clock = clock or SystemClock()
        self.invitation_ttl = invitation_ttl or datetime.timedelta(hours=get_invitation_ttl_hours())
        self._transaction = transaction or nullcontext
        # entries vanish once no caller holds the lock
        self._locks: weakref.WeakValueDictionary = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    # --- helpers ---

    def _lock(self, invitation_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(invitation_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[invitation_id] = lock
            return lock

    def _load(self, invitation_id: str) -> Invitation:
        invitation = self.store.get(invitation_id)
        if invitation is None:
            raise InvitationNotFound(invitation_id)
        return invitation

    def _reload(self, invitation: Invitation) -> Invitation:
        return self.store.get(invitation.id) or invitation

    def _publish(self, event_type: str, invitation: Invitation, **data) -> None:
        event = {
            "type": event_type,
            "invitation_id": invitation.id,
            "status": invitation.status,
            "inviter_id": invitation.inviter_id,
            "invitee_id": invitation.invitee_id,
            "at": self.clock.now().isoformat(),
        }
        event.update(data)
        try:
            self.bus.publish(event)
        except Exception:
            logger.warning("Dropping %s notification for %s", event_type, invitation.id, exc_info=True)

    def _inviter_hold(self, invitation: Invitation) -> EscrowHold:
        return EscrowHold(
            invitation.inviter_id,
            invitation.inviter_escrow,
            invitation.inviter_premium_escrow,
        )

    def _compensate(self, hold: EscrowHold, reason: str) -> bool:
        """Refund a hold after a failed step; ``False`` if the refund failed too."""
        if hold.empty:
            return True
        logger.warning(
            "Rolling back escrow of %s regular / %s premium tokens for %s",
            hold.regular,
            hold.premium,
            hold.player_id,
        )
        try:
            self.escrow.refund(hold, reason)
        except Exception:
            logger.exception("Refund to %s failed; tokens remain in escrow", hold.player_id)
            return False
        return True

    def _require_pending(self, invitation: Invitation, action: str) -> None:
        """Fail unless the invitation can still change; expire it if overdue."""
        if invitation.status != PENDING:
            raise InvalidStateTransition(invitation.id, invitation.status, action)
        if invitation.is_expired(self.clock.now()):
            self._expire(invitation)
            raise InvalidStateTransition(invitation.id, EXPIRED, action)

    def _release_pending(self, invitation: Invitation, status: str, reason: str) -> bool:
        """Close a pending invitation and refund the inviter in one transaction.

        Returns ``False`` when another caller changed the status first. If
        the refund fails the status change is rolled back with it.
        """
        now = self.clock.now()
        try:
            with self._transaction() as conn:
                changed = self.store.compare_and_set_status(
                    invitation.id, PENDING, status, {"responded_at": now}, conn=conn
                )
                if changed:
                    self.escrow.refund(self._inviter_hold(invitation), reason, conn=conn)
        except ServiceError:
            raise
        except Exception as exc:
            logger.exception("Could not move invitation %s to %s", invitation.id, status)
            raise EscrowFailure(f"Failed to refund stake for {status} invitation") from exc
        if changed:
            invitation.status = status
            invitation.responded_at = now
        return changed

    def _expire(self, invitation: Invitation) -> bool:
        """Move an overdue pending invitation to ``expired`` and refund the inviter."""
        if not self._release_pending(invitation, EXPIRED, "challenge_expired_refund"):
            return False
        logger.info("Invitation %s expired", invitation.id)
        self._publish("invitation.expired", invitation)
        return True

    @staticmethod
    def session_type_for(invitation: Invitation) -> str:
        """Return the reward session type an invitation plays as.

        A ``sessionType`` in the invitation's session data wins over the
        category when it names a known session type.
        """
        requested = invitation.session_data.get("sessionType")
        if isinstance(requested, str):
            try:
                return econ.normalize_session_type(requested)
            except ValueError:
                logger.debug("Ignoring unknown session type %r", requested)
        if invitation.category == SOCIAL_PLAY:
            return econ.SOCIAL
        return "match"

    # --- operations ---

    def create_invitation(
        self,
        inviter_id: str,
        invitee_id: str | None,
        category: str = MATCH,
        invitation_type: str = "singles",
        stakes_tokens: int = 0,
        stakes_premium_tokens: int = 0,
        is_challenge: bool = False,
        session_data: dict[str, object] | None = None,
        message: str | None = None,
        invitee_name: str | None = None,
        expires_in: datetime.timedelta | None = None,
        inviter_level: int | None = None,
        invitee_level: int | None = None,
    ) -> Invitation:
        """Create a pending invitation, escrowing the inviter's stake.

        When both player levels are known the stake is level-adjusted first,
        and refused outright for players too far apart to stake.
        """
        if category not in INVITATION_CATEGORIES:
            raise ServiceError(f"Unknown invitation category '{category}'", 400)
        if invitee_id is not None and invitee_id == inviter_id:
            raise ServiceError("Cannot invite yourself", 400)
        if stakes_tokens < 0 or stakes_premium_tokens < 0:
            raise ServiceError("Stakes cannot be negative", 400)
        if (stakes_tokens or stakes_premium_tokens) and not is_challenge:
            raise ServiceError("Only challenges can carry stakes", 400)

        if is_challenge and inviter_level is not None and invitee_level is not None:
            if not econ.can_players_stake(inviter_level, invitee_level):
                raise StakeNotAllowed()
            stakes_tokens = econ.calculate_adjusted_stake(stakes_tokens, inviter_level, invitee_level)
            stakes_premium_tokens = econ.calculate_adjusted_stake(
                stakes_premium_tokens, inviter_level, invitee_level
            )

        now = self.clock.now()
        invitation = Invitation(
            inviter_id=inviter_id,
            invitee_id=invitee_id,
            category=category,
            invitee_name=invitee_name,
            invitation_type=invitation_type,
            message=message,
            stakes_tokens=stakes_tokens,
            stakes_premium_tokens=stakes_premium_tokens,
            is_challenge=is_challenge,
            session_data=dict(session_data or {}),
            created_at=now,
            expires_at=now + (expires_in or self.invitation_ttl),
        )

        hold = EscrowHold(inviter_id)
        if invitation.has_stakes:
            hold = self.escrow.hold(inviter_id, stakes_tokens, stakes_premium_tokens)
        invitation.inviter_escrow = hold.regular
        invitation.inviter_premium_escrow = hold.premium

        try:
            self.store.add(invitation)
        except Exception as exc:
            if hold.empty:
                raise
            self._compensate(hold, "challenge_refund")
            raise EscrowFailure("Failed to create challenge invitation") from exc

        logger.info("Invitation %s created by %s for %s", invitation.id, inviter_id, invitee_id)
        self._publish("invitation.created", invitation)
        return invitation

    def get_invitation(self, invitation_id: str) -> Invitation:
        """Return an invitation, applying expiry if it is overdue."""
        invitation = self._load(invitation_id)
        if invitation.effective_status(self.clock.now()) == EXPIRED and invitation.status == PENDING:
            with self._lock(invitation_id):
                invitation = self._load(invitation_id)
                if invitation.status == PENDING and invitation.is_expired(self.clock.now()):
                    self._expire(invitation)
                invitation = self._load(invitation_id)
        return invitation

    def accept(self, invitation_id: str, invitee_id: str) -> Invitation:
        """Accept as the invitee: escrow their stake and start the session.

        If the session cannot be created, or another caller changed the
        invitation first, the invitee's hold is refunded before raising.
        """
        with self._lock(invitation_id):
            invitation = self._load(invitation_id)
            if invitation.invitee_id != invitee_id:
                raise ServiceError("Only the invitee can accept this invitation", 403)
            self._require_pending(invitation, "accept")

            hold = EscrowHold(invitee_id)
            if invitation.has_stakes:
                hold = self.escrow.hold(
                    invitee_id, invitation.stakes_tokens, invitation.stakes_premium_tokens
                )

            metadata = {
                "invitation_id": invitation.id,
                "invitation_type": invitation.invitation_type,
                "is_doubles": invitation.invitation_type == "doubles",
                "is_challenge": invitation.is_challenge,
                "stakes_tokens": invitation.stakes_tokens,
                "stakes_premium_tokens": invitation.stakes_premium_tokens,
                "session_data": invitation.session_data,
            }
            try:
                session_id = self.sessions.create_session(
                    invitation.category, [invitation.inviter_id, invitee_id], metadata
                )
            except Exception as exc:
                self._compensate(hold, "challenge_refund")
                raise EscrowFailure("Failed to start session for accepted invitation") from exc

            now = self.clock.now()
            extra = {
                "responded_at": now,
                "session_id": session_id,
                "invitee_escrow": hold.regular,
                "invitee_premium_escrow": hold.premium,
            }
            try:
                accepted = self.store.compare_and_set_status(invitation.id, PENDING, ACCEPTED, extra)
            except Exception as exc:
                self._compensate(hold, "challenge_refund")
                self.sessions.discard_session(session_id)
                raise EscrowFailure("Failed to record invitation acceptance") from exc

            if not accepted:
                refunded = self._compensate(hold, "challenge_refund")
                self.sessions.discard_session(session_id)
                if not refunded:
                    raise EscrowFailure("Failed to refund stake after a concurrent change")
                current = self._reload(invitation)
                raise InvalidStateTransition(invitation.id, current.status, "accept")

            invitation = self._reload(invitation)
            logger.info("Invitation %s accepted by %s, session %s", invitation.id, invitee_id, session_id)
            self._publish("invitation.accepted", invitation, session_id=session_id)
            return invitation

    def _close(self, invitation: Invitation, status: str, action: str) -> Invitation:
        self._require_pending(invitation, action)
        if not self._release_pending(invitation, status, f"challenge_{action}_refund"):
            current = self._reload(invitation)
            raise InvalidStateTransition(invitation.id, current.status, action)
        invitation = self._reload(invitation)
        logger.info("Invitation %s %s", invitation.id, status)
        self._publish(f"invitation.{status}", invitation)
        return invitation

    def decline(self, invitation_id: str, invitee_id: str) -> Invitation:
        """Decline as the invitee; the inviter gets their escrow back."""
        with self._lock(invitation_id):
            invitation = self._load(invitation_id)
            if invitation.invitee_id != invitee_id:
                raise ServiceError("Only the invitee can decline this invitation", 403)
            return self._close(invitation, DECLINED, "decline")

    def cancel(self, invitation_id: str, inviter_id: str) -> Invitation:
        """Withdraw as the inviter and recover the escrowed stake."""
        with self._lock(invitation_id):
            invitation = self._load(invitation_id)
            if invitation.inviter_id != inviter_id:
                raise ServiceError("Only the inviter can cancel this invitation", 403)
            return self._close(invitation, CANCELED, "cancel")

    def expire(self, invitation_id: str) -> Invitation:
        """Expire an overdue pending invitation."""
        with self._lock(invitation_id):
            invitation = self._load(invitation_id)
            if invitation.status != PENDING:
                raise InvalidStateTransition(invitation.id, invitation.status, "expire")
            if not invitation.is_expired(self.clock.now()):
                raise InvalidStateTransition(invitation.id, PENDING, "expire")
            if not self._expire(invitation):
                current = self._reload(invitation)
                raise InvalidStateTransition(invitation.id, current.status, "expire")
            return self._reload(invitation)

    def resync(self, player_id: str) -> list[Invitation]:
        """Re-read a player's invitations, expiring overdue pending ones."""
        now = self.clock.now()
        for invitation in self.store.list_for_player(player_id, PENDING):
            if invitation.is_expired(now):
                with self._lock(invitation.id):
                    current = self.store.get(invitation.id)
                    if current and current.status == PENDING and current.is_expired(now):
                        self._expire(current)
        return self.store.list_for_player(player_id)

    def settle(
        self,
        invitation_id: str,
        winner_id: str,
        sets: Iterable = (),
        winner_level: int = 1,
        loser_level: int = 1,
        session_duration: int | None = 60,
        winner_skill: str | None = None,
        loser_skill: str | None = None,
    ) -> SettlementResult:
        """Pay out an accepted invitation once its match is over.

        ``sets`` are scored from the winner's side. The winner gets their
        own escrow back plus the winning share of the loser's stake; the
        rake is kept; any stake above the social cap goes back to the loser,
        who also receives participation tokens.
        """
        with self._lock(invitation_id):
            invitation = self._load(invitation_id)
            if invitation.status != ACCEPTED:
                raise InvalidStateTransition(invitation.id, invitation.status, "settle")
            if invitation.settled_at is not None:
                raise InvalidStateTransition(invitation.id, "settled", "settle")
            players = (invitation.inviter_id, invitation.invitee_id)
            if winner_id not in players:
                raise ServiceError("Winner must be a participant of the invitation", 400)
            loser_id = players[1] if winner_id == players[0] else players[0]

            if winner_id == invitation.inviter_id:
                winner_hold = self._inviter_hold(invitation)
                loser_hold = EscrowHold(
                    loser_id, invitation.invitee_escrow, invitation.invitee_premium_escrow
                )
            else:
                winner_hold = EscrowHold(
                    winner_id, invitation.invitee_escrow, invitation.invitee_premium_escrow
                )
                loser_hold = EscrowHold(
                    loser_id, invitation.inviter_escrow, invitation.inviter_premium_escrow
                )

            session_type = self.session_type_for(invitation)
            is_doubles = invitation.invitation_type == "doubles"
            winner_sets = completed_sets(sets)
            loser_sets = [s.flipped() for s in winner_sets]
            # social play and training carry no HP impact
            suppress_hp = session_type in (econ.SOCIAL, econ.TRAINING)
            winner_rewards = calculate_session_rewards(
                session_type,
                winner_level,
                loser_level,
                is_winner=True,
                stakes_amount=loser_hold.regular,
                session_duration=session_duration,
                player_skill=winner_skill,
                opponent_skill=loser_skill,
                analysis=analyze_match(winner_sets, is_doubles=is_doubles),
                suppress_hp=suppress_hp,
            )
            loser_rewards = calculate_session_rewards(
                session_type,
                loser_level,
                winner_level,
                is_winner=False,
                stakes_amount=loser_hold.regular,
                session_duration=session_duration,
                player_skill=loser_skill,
                opponent_skill=winner_skill,
                analysis=analyze_match(loser_sets, is_doubles=is_doubles),
                suppress_hp=suppress_hp,
            )

            # the claim and every payout commit together; a failed credit
            # leaves the invitation unsettled so settle can be retried
            try:
                with self._transaction() as conn:
                    if not self.store.claim_settlement(
                        invitation.id, winner_id, self.clock.now(), conn=conn
                    ):
                        raise InvalidStateTransition(invitation.id, "settled", "settle")
                    result = self._pay_out(
                        invitation,
                        session_type,
                        winner_hold,
                        loser_hold,
                        winner_rewards,
                        loser_rewards,
                        conn=conn,
                    )
            except ServiceError:
                raise
            except Exception as exc:
                logger.exception("Payout for invitation %s failed; settlement rolled back", invitation.id)
                raise EscrowFailure("Failed to pay out settlement") from exc
            logger.info(
                "Invitation %s settled: %s wins %s tokens, rake %s",
                invitation.id,
                winner_id,
                result.winner_payout,
                result.rake_tokens,
            )
            self._publish(
                "invitation.settled",
                self._reload(invitation),
                winner_id=winner_id,
                winner_payout=result.winner_payout,
                loser_payout=result.loser_payout,
            )
            return result

    def _pay_out(
        self,
        invitation: Invitation,
        session_type: str,
        winner_hold: EscrowHold,
        loser_hold: EscrowHold,
        winner_rewards,
        loser_rewards,
        conn=None,
    ) -> SettlementResult:
        winner_id = winner_hold.player_id
        loser_id = loser_hold.player_id

        # staked pools are split from the escrow; payouts never exceed the holds
        if loser_hold.regular and session_type == econ.SOCIAL:
            win_share, rake, at_risk = econ.calculate_social_tokens(loser_hold.regular)
        elif loser_hold.regular:
            win_share, rake = econ.calculate_competitive_tokens(loser_hold.regular, True)
            at_risk = loser_hold.regular
        else:
            win_share, rake, at_risk = winner_rewards.win_tokens, 0, 0
        remainder = loser_hold.regular - at_risk
        premium_share, premium_rake = econ.calculate_competitive_tokens(loser_hold.premium, True)

        self.escrow.refund(winner_hold, "challenge_stake_return", conn=conn)
        self.escrow.release(winner_id, win_share, premium_share, conn=conn)
        self.escrow.refund(EscrowHold(loser_id, remainder), "challenge_stake_return", conn=conn)
        if loser_rewards.lose_tokens:
            self.escrow.release(
                loser_id, loser_rewards.lose_tokens, reason="challenge_participation", conn=conn
            )

        return SettlementResult(
            invitation_id=invitation.id,
            winner_id=winner_id,
            loser_id=loser_id,
            winner_rewards=winner_rewards,
            loser_rewards=loser_rewards,
            winner_payout=winner_hold.regular + win_share,
            loser_payout=remainder + loser_rewards.lose_tokens,
            winner_premium_payout=winner_hold.premium + premium_share,
            loser_premium_payout=0,
            rake_tokens=rake,
            premium_rake_tokens=premium_rake,
        )


__all__ = ["InvitationStore", "SessionFactory", "InvitationSettlement"]
