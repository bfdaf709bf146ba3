class ServiceError(Exception):
    """Error raised by service functions with an HTTP status code."""

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class InsufficientBalance(ServiceError):
    def __init__(self, player_id: str, needed: int, available: int, token_type: str = "regular"):
        super().__init__(
            f"Insufficient {token_type} tokens. You need {needed} tokens but only have {available}",
            400,
        )
        self.player_id = player_id
        self.needed = needed
        self.available = available
        self.token_type = token_type


class InvitationNotFound(ServiceError):
    def __init__(self, invitation_id: str):
        super().__init__("Invitation not found", 404)
        self.invitation_id = invitation_id


class InvalidStateTransition(ServiceError):
    def __init__(self, invitation_id: str, status: str, action: str):
        super().__init__(f"Cannot {action} invitation in status '{status}'", 409)
        self.invitation_id = invitation_id
        self.status = status
        self.action = action


class EscrowFailure(ServiceError):
    """A stake movement failed; its writes were rolled back or refunded."""

    def __init__(self, message: str = "Failed to complete challenge escrow"):
        super().__init__(message, 500)


class StakeNotAllowed(ServiceError):
    def __init__(self, message: str = "Players are too far apart in level to stake"):
        super().__init__(message, 400)


class CalculationFallback(ServiceError):
    """Reward computation could not run; never leaves the reward engine."""

    def __init__(self, message: str):
        super().__init__(message, 500)


__all__ = [
    "ServiceError",
    "InsufficientBalance",
    "InvitationNotFound",
    "InvalidStateTransition",
    "EscrowFailure",
    "StakeNotAllowed",
    "CalculationFallback",
]
