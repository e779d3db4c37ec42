"""
mealmatch.notifications: Best-effort partner notification on match creation.

Usage::

    from mealmatch.notifications import NotificationDispatcher, build_gateway_from_settings
    dispatcher = NotificationDispatcher(build_gateway_from_settings())
    await dispatcher.dispatch(group, outcome)
"""

from mealmatch.notifications.dispatcher import NotificationDispatcher
from mealmatch.notifications.gateway import (
    ExpoPushGateway,
    NullPushGateway,
    PushGateway,
    build_gateway_from_settings,
)

__all__ = [
    "ExpoPushGateway",
    "NotificationDispatcher",
    "NullPushGateway",
    "PushGateway",
    "build_gateway_from_settings",
]
