"""
Notification collaborator.

``Notifier`` is what the services call at each major transition (offer
created, offer accepted, status changed, completed, cancelled).  It is
fire-and-forget: a failing sender is logged and never blocks or undoes the
transition that triggered it.

``StoreNotificationSender`` writes in-app notifications to the
``notifications`` collection and doubles as the user's inbox.  Push/SMS
delivery is somebody else's job; it can subscribe to that collection.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

from ridedispatch.domain.clock import Clock, utc_now
from ridedispatch.domain.entities import RideOrder, RideRequest, dump_dt
from ridedispatch.domain.enums import NotificationType, RideStatus, UserType
from ridedispatch.domain.exceptions import NotFound, RecordMissing
from ridedispatch.infrastructure.repositories import NOTIFICATIONS
from ridedispatch.infrastructure.store import (
    OrderBy,
    RecordStore,
    new_id,
    update_op,
    where,
)

logger = logging.getLogger(__name__)


class NotificationSender(ABC):
    @abstractmethod
    async def send(
        self,
        user_id: str,
        user_type: UserType,
        kind: NotificationType,
        title: str,
        message: str,
        data: Optional[dict[str, Any]] = None,
    ) -> Optional[str]: ...


class StoreNotificationSender(NotificationSender):
    def __init__(self, store: RecordStore, clock: Clock = utc_now):
        self.store = store
        self.clock = clock

    async def send(
        self,
        user_id: str,
        user_type: UserType,
        kind: NotificationType,
        title: str,
        message: str,
        data: Optional[dict[str, Any]] = None,
    ) -> Optional[str]:
        record = {
            "user_id": user_id,
            "user_type": UserType(user_type).value,
            "type": NotificationType(kind).value,
            "title": title,
            "message": message,
            "data": data or {},
            "read": False,
            "created_at": dump_dt(self.clock()),
        }
        return await self.store.create(NOTIFICATIONS, record, new_id())

    # ── Inbox ─────────────────────────────────────────────────────────

    async def list_for_user(self, user_id: str, limit: int = 50) -> list[dict]:
        return await self.store.query(
            NOTIFICATIONS,
            [where("user_id", "==", user_id)],
            order=OrderBy("created_at", descending=True),
            limit=limit,
        )

    async def unread_count(self, user_id: str) -> int:
        unread = await self.store.query(
            NOTIFICATIONS,
            [where("user_id", "==", user_id), where("read", "==", False)],
        )
        return len(unread)

    async def mark_read(self, notification_id: str) -> None:
        try:
            await self.store.update(
                NOTIFICATIONS,
                notification_id,
                {"read": True, "read_at": dump_dt(self.clock())},
            )
        except RecordMissing as exc:
            raise NotFound(f"Notification {notification_id} not found") from exc

    async def mark_all_read(self, user_id: str) -> int:
        unread = await self.store.query(
            NOTIFICATIONS,
            [where("user_id", "==", user_id), where("read", "==", False)],
        )
        stamp = dump_dt(self.clock())
        await self.store.atomic_batch(
            [
                update_op(NOTIFICATIONS, n["id"], {"read": True, "read_at": stamp})
                for n in unread
            ]
        )
        return len(unread)


class Notifier:
    """Maps ride transitions to user-facing notifications."""

    def __init__(self, sender: NotificationSender, currency: str = "JOD"):
        self.sender = sender
        self.currency = currency

    async def _send(self, user_id, user_type, kind, title, message, data) -> None:
        try:
            await self.sender.send(user_id, user_type, kind, title, message, data)
        except Exception:
            logger.exception("Failed to send %s notification to %s", kind.value, user_id)

    async def ride_request(self, driver_id: str, request: RideRequest) -> None:
        pickup = request.pickup.address
        destination = request.destination.address
        await self._send(
            driver_id,
            UserType.DRIVER,
            NotificationType.RIDE_REQUEST,
            "New Ride Request",
            f"Pickup: {pickup}\nDestination: {destination}",
            {"ride_id": request.id, "pickup": pickup, "destination": destination},
        )

    async def ride_accepted(self, order: RideOrder, estimated_arrival: int) -> None:
        driver_name = order.driver.name if order.driver else "Your driver"
        await self._send(
            order.customer_id,
            UserType.CUSTOMER,
            NotificationType.RIDE_ACCEPTED,
            "Ride Accepted!",
            f"{driver_name} is on the way. Estimated arrival: {estimated_arrival} minutes",
            {
                "ride_id": order.id,
                "driver_name": driver_name,
                "estimated_arrival": estimated_arrival,
            },
        )

    async def no_drivers(self, request: RideRequest) -> None:
        await self._send(
            request.customer_id,
            UserType.CUSTOMER,
            NotificationType.RIDE_CANCELLED,
            "No Drivers Available",
            "No drivers accepted your request. Please try again.",
            {"ride_id": request.id},
        )

    async def request_cancelled(self, driver_id: str, request: RideRequest) -> None:
        await self._send(
            driver_id,
            UserType.DRIVER,
            NotificationType.RIDE_CANCELLED,
            "Ride Cancelled",
            "Ride request cancelled.",
            {"ride_id": request.id},
        )

    async def status_changed(self, order: RideOrder, notes: Optional[str] = None) -> None:
        driver_name = order.driver.name if order.driver else "Your driver"
        status = order.status

        if status == RideStatus.DRIVER_ARRIVING:
            await self._send(
                order.customer_id,
                UserType.CUSTOMER,
                NotificationType.DRIVER_ARRIVING,
                "Driver Arriving",
                f"{driver_name} is almost at your pickup location",
                {"ride_id": order.id, "driver_name": driver_name},
            )
        elif status == RideStatus.DRIVER_ARRIVED:
            await self._send(
                order.customer_id,
                UserType.CUSTOMER,
                NotificationType.DRIVER_ARRIVED,
                "Driver Arrived",
                f"{driver_name} has arrived at your pickup location",
                {"ride_id": order.id, "driver_name": driver_name},
            )
        elif status in (RideStatus.PICKED_UP, RideStatus.IN_PROGRESS):
            destination = order.destination.address or "your destination"
            await self._send(
                order.customer_id,
                UserType.CUSTOMER,
                NotificationType.RIDE_STARTED,
                "Ride Started",
                f"Your ride to {destination} has started",
                {"ride_id": order.id, "destination": destination},
            )
        elif status == RideStatus.COMPLETED:
            total = order.pricing.total
            await self._send(
                order.customer_id,
                UserType.CUSTOMER,
                NotificationType.RIDE_COMPLETED,
                "Ride Completed",
                f"Your ride has been completed. Total: {total} {self.currency}",
                {"ride_id": order.id, "total_amount": total},
            )
            if order.driver_id:
                await self._send(
                    order.driver_id,
                    UserType.DRIVER,
                    NotificationType.RIDE_COMPLETED,
                    "Ride Completed",
                    "Ride completed successfully",
                    {"ride_id": order.id},
                )
        elif status == RideStatus.CANCELLED:
            message = (
                f"Your ride has been cancelled. Reason: {notes}"
                if notes
                else "Your ride has been cancelled"
            )
            recipients = [(order.customer_id, UserType.CUSTOMER)]
            if order.driver_id:
                recipients.append((order.driver_id, UserType.DRIVER))
            for user_id, user_type in recipients:
                await self._send(
                    user_id,
                    user_type,
                    NotificationType.RIDE_CANCELLED,
                    "Ride Cancelled",
                    message,
                    {"ride_id": order.id, "reason": notes},
                )
