from __future__ import annotations
import threading
from .. import storage
from ..notifications import NotificationBus, default_bus
from .invitations import InvitationSettlement

# reset caches when state module is reloaded (test setup)
storage.invalidate_cache()

# The storage-backed engine is built lazily so tests can point ``storage`` at
# a temporary database before the first request.
_settlement: InvitationSettlement | None = None
_bus: NotificationBus | None = None
_guard = threading.Lock()


def get_bus() -> NotificationBus:
    global _bus
    with _guard:
        if _bus is None:
            _bus = default_bus()
        return _bus


def get_settlement() -> InvitationSettlement:
    """Return the process-wide settlement engine over the storage layer."""
    global _settlement
    bus = get_bus()
    with _guard:
        if _settlement is None:
            _settlement = InvitationSettlement(
                storage.StorageTokenLedger(),
                storage.StorageInvitationStore(),
                storage.StorageSessionFactory(),
                bus=bus,
                transaction=storage.transaction,
            )
        return _settlement


def reset() -> None:
    """Drop the cached engine and bus."""
    global _settlement, _bus
    with _guard:
        _settlement = None
        _bus = None
    storage.invalidate_cache()


__all__ = ["get_bus", "get_settlement", "reset"]
