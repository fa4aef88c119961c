"""pydelivery - Async delivery tracking core with live push notifications."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("pydelivery")
except PackageNotFoundError:
    __version__ = "0+local"
from pydelivery.channels import ObserverChannel
from pydelivery.config import TrackerConfig
from pydelivery.exceptions import (
    ConfigError,
    DeliveryError,
    InvalidTransitionError,
    NotFoundError,
    OracleError,
    RejectedError,
    StoreError,
    SubscriptionLostError,
    TransitionFailedError,
)
from pydelivery.models import (
    Admin,
    ContactInfo,
    Customer,
    Delivery,
    DeliveryStatus,
    DeliveryView,
    Driver,
    EntityKind,
    Notification,
    Position,
    PositionAck,
    Subscription,
    SubscriptionTarget,
    TargetKind,
)
from pydelivery.oracles import Route
from pydelivery.simulation import DriverSimulator
from pydelivery.tracker import DeliveryTracker

__all__ = [
    "__version__",
    "Admin",
    "ConfigError",
    "ContactInfo",
    "Customer",
    "Delivery",
    "DeliveryError",
    "DeliveryStatus",
    "DeliveryTracker",
    "DeliveryView",
    "Driver",
    "DriverSimulator",
    "EntityKind",
    "InvalidTransitionError",
    "NotFoundError",
    "Notification",
    "ObserverChannel",
    "OracleError",
    "Position",
    "PositionAck",
    "RejectedError",
    "Route",
    "StoreError",
    "Subscription",
    "SubscriptionLostError",
    "SubscriptionTarget",
    "TargetKind",
    "TrackerConfig",
    "TransitionFailedError",
]
