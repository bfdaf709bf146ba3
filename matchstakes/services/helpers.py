from .exceptions import ServiceError
from ..models import SetScore


def parse_sets(raw_sets) -> list[SetScore]:
    """Convert request payload sets into ``SetScore`` values."""
    sets = []
    for raw in raw_sets or ():
        try:
            sets.append(SetScore.from_value(raw))
        except (TypeError, ValueError, KeyError):
            raise ServiceError(f"Invalid set score {raw!r}", 400)
    return sets


def require_non_negative(name: str, value: int) -> int:
    if value < 0:
        raise ServiceError(f"{name} cannot be negative", 400)
    return value
