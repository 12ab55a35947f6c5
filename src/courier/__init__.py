"""courier - real-time delivery core for direct messaging.

Usage:
    from courier import Courier, CourierSettings, set_courier

    courier = Courier.from_settings(CourierSettings.load())
    set_courier(courier)

    conversation, _ = await courier.directory.open_conversation("alice", "bob")
    message = await courier.coordinator.submit(conversation["id"], "alice", "hi")

The FastAPI application lives in courier.api:app.
"""

from courier._version import __version__
from courier.config import CourierConfigError, CourierSettings
from courier.errors import AccessDenied, CourierError, NotFound, TransientError, ValidationFailed
from courier.service import Courier, get_courier, reset_courier, set_courier

__all__ = [
    "__version__",
    "Courier",
    "CourierSettings",
    "CourierConfigError",
    "CourierError",
    "NotFound",
    "AccessDenied",
    "ValidationFailed",
    "TransientError",
    "get_courier",
    "set_courier",
    "reset_courier",
]
