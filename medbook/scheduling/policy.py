from dataclasses import dataclass
from datetime import timedelta
from enum import Enum

from medbook.core import config


class NotificationMode(str, Enum):
    IMMEDIATE = 'immediate'
    DEFERRED = 'deferred'


@dataclass(frozen=True)
class BookingPolicy:
    booking_horizon_days: int = 30
    expiry_timeout: timedelta = timedelta(hours=24)
    default_slot_capacity: int = 1
    require_verified_practitioner: bool = False
    notification_mode: NotificationMode = NotificationMode.IMMEDIATE

    @classmethod
    def from_config(cls) -> 'BookingPolicy':
        return cls(
            booking_horizon_days=config.BOOKING_HORIZON_DAYS,
            expiry_timeout=timedelta(hours=config.APPOINTMENT_EXPIRY_HOURS),
            default_slot_capacity=config.DEFAULT_SLOT_CAPACITY,
            require_verified_practitioner=config.REQUIRE_VERIFIED_PRACTITIONER,
            notification_mode=NotificationMode(config.NOTIFICATION_MODE),
        )
