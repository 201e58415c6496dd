from .hub import LocalRealtimeHub, LocalSubscription

__all__ = ["LocalRealtimeHub", "LocalSubscription"]
