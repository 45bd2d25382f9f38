"""
Overstay notifications

NotificationService is the delivery seam (email in production). The dispatcher maps
workflow events to recipients and templates. Delivery failures are logged and never
undo the financial transition that triggered them; successful sends are recorded in
the overstay history.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import httpx
from sqlalchemy.orm import Session

from ...config import OPS_ALERT_EMAILS, OPS_ALERT_WEBHOOK_URL
from ...email_service import send_template_email
from ...models import User
from ...models_overstay import OverstayRecord
from ...shared.clock import utcnow
from .calculator import breakdown_for_record, format_cents, tax_inclusive_total
from .state_machine import record_history

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Recipient:
    email: str
    name: str
    role: str
    user_id: Optional[int] = None

    @classmethod
    def from_user(cls, user: User) -> "Recipient":
        return cls(
            email=user.email,
            name=user.full_name or user.email,
            role=user.role,
            user_id=user.id,
        )


class NotificationService(ABC):
    @abstractmethod
    async def send(self, recipient: Recipient, template_id: str, data: dict) -> None:
        """Deliver one notification; raise on failure"""


class EmailNotificationService(NotificationService):
    """MJML templates delivered through Resend"""

    async def send(self, recipient: Recipient, template_id: str, data: dict) -> None:
        await send_template_email(
            to=recipient.email, template_id=template_id, recipient_name=recipient.name, **data
        )


class OverstayNotificationDispatcher:
    def __init__(
        self,
        db: Session,
        notifier: NotificationService,
        ops_emails: Optional[list[str]] = None,
        webhook_url: Optional[str] = None,
    ):
        self.db = db
        self.notifier = notifier
        self.ops_emails = OPS_ALERT_EMAILS if ops_emails is None else ops_emails
        self.webhook_url = OPS_ALERT_WEBHOOK_URL if webhook_url is None else webhook_url

    # ------------------------------------------------------------------
    # Recipients
    # ------------------------------------------------------------------

    @staticmethod
    def _chef(record: OverstayRecord) -> Optional[User]:
        return record.storage_booking.chef

    @staticmethod
    def _location(record: OverstayRecord):
        return record.storage_booking.storage_listing.kitchen.location

    def _manager(self, record: OverstayRecord) -> Optional[User]:
        location = self._location(record)
        return location.manager if location else None

    def _ops_recipients(self) -> list[Recipient]:
        admins = self.db.query(User).filter(User.role == "admin").all()
        recipients = {admin.email: Recipient.from_user(admin) for admin in admins}
        for email in self.ops_emails:
            recipients.setdefault(email, Recipient(email=email, name="Operations", role="ops"))
        return list(recipients.values())

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    async def _deliver(
        self, record: OverstayRecord, recipient: Recipient, template_id: str, data: dict
    ) -> bool:
        try:
            logger.info(f"📧 Sending {template_id} for overstay {record.id} to {recipient.email}")
            await self.notifier.send(recipient, template_id, data)
        except Exception as e:
            logger.error(
                f"❌ Failed to send {template_id} for overstay {record.id} to {recipient.email}: {e}"
            )
            return False

        try:
            now = utcnow()
            if recipient.role == "chef":
                record.chef_notified_at = now
            elif recipient.role == "manager":
                record.manager_notified_at = now
            record_history(
                self.db,
                record,
                record.status,
                record.status,
                event_type="notification_sent",
                event_source="system",
                description=f"Sent {template_id} to {recipient.role}",
                details={"templateId": template_id, "recipient": recipient.email},
            )
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(f"❌ Failed to record notification for overstay {record.id}: {e}")
        return True

    async def _deliver_to_user(
        self, record: OverstayRecord, user: Optional[User], template_id: str, data: dict
    ) -> bool:
        if user is None or not user.email:
            logger.debug(f"⚠️ No recipient for {template_id} on overstay {record.id}")
            return False
        return await self._deliver(record, Recipient.from_user(user), template_id, data)

    def _base(self, record: OverstayRecord) -> dict:
        return {"storage_name": record.storage_booking.storage_listing.name}

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def overstay_detected(self, record: OverstayRecord) -> None:
        location = self._location(record)
        data = {
            **self._base(record),
            "kitchen_name": record.storage_booking.storage_listing.kitchen.name,
            "booking_end_date": record.booking_end_date.isoformat(),
            "grace_period_ends_at": record.grace_period_ends_at.isoformat(),
            "daily_penalty": format_cents(breakdown_for_record(record).daily_penalty_cents),
            "policy_text": location.overstay_policy_text if location else None,
        }
        await self._deliver_to_user(record, self._chef(record), "overstay_detected", data)

    async def pending_review(self, record: OverstayRecord) -> None:
        chef = self._chef(record)
        data = {
            **self._base(record),
            "chef_name": (chef.full_name or chef.email) if chef else "Unknown chef",
            "kitchen_name": record.storage_booking.storage_listing.kitchen.name,
            "days_overdue": record.days_overdue,
            "calculated_penalty": format_cents(record.calculated_penalty_cents),
            "overstay_id": record.id,
        }
        await self._deliver_to_user(record, self._manager(record), "overstay_pending_review", data)

    async def penalty_charged(self, record: OverstayRecord, amount_cents: int) -> None:
        data = {
            **self._base(record),
            "amount": format_cents(amount_cents),
            "reference": record.charge_reference,
        }
        await self._deliver_to_user(record, self._chef(record), "penalty_charged", data)
        await self._deliver_to_user(record, self._manager(record), "penalty_charged", data)

    async def charge_failed(self, record: OverstayRecord, amount_cents: int, reason: str) -> None:
        chef = self._chef(record)
        data = {
            **self._base(record),
            "chef_name": (chef.full_name or chef.email) if chef else "Unknown chef",
            "amount": format_cents(amount_cents),
            "reason": reason,
            "attempt_count": record.charge_attempt_count,
            "overstay_id": record.id,
        }
        await self._deliver_to_user(record, self._manager(record), "charge_failed", data)

    async def escalated(self, record: OverstayRecord) -> None:
        """Chef gets the manual payment link; operations get an alert"""
        chef = self._chef(record)
        amount = format_cents(
            tax_inclusive_total(record.final_penalty_cents or 0, record.kitchen_tax_rate_percent)
        )

        if record.payment_link_url:
            await self._deliver_to_user(
                record,
                chef,
                "penalty_payment_link",
                {**self._base(record), "amount": amount, "payment_link_url": record.payment_link_url},
            )

        location = self._location(record)
        ops_data = {
            **self._base(record),
            "chef_name": (chef.full_name or chef.email) if chef else "Unknown chef",
            "chef_email": chef.email if chef else "",
            "location_name": location.name if location else "",
            "amount": amount,
            "reason": record.last_charge_failure_reason or "",
            "attempt_count": record.charge_attempt_count,
            "overstay_id": record.id,
        }
        for recipient in self._ops_recipients():
            await self._deliver(record, recipient, "penalty_escalated_ops", ops_data)

        await self._post_ops_webhook(record, ops_data)

    async def unreconciled_charge(self, record: OverstayRecord, amount_cents: int, reference: str) -> None:
        """Operations: a payment landed after the case moved on and needs a manual look"""
        chef = self._chef(record)
        location = self._location(record)
        data = {
            **self._base(record),
            "chef_name": (chef.full_name or chef.email) if chef else "Unknown chef",
            "chef_email": chef.email if chef else "",
            "location_name": location.name if location else "",
            "amount": format_cents(amount_cents),
            "reference": reference,
            "status": record.status.value,
            "reason": f"Payment {reference} collected while {record.status.value}",
            "overstay_id": record.id,
        }
        for recipient in self._ops_recipients():
            await self._deliver(record, recipient, "charge_unreconciled_ops", data)

        await self._post_ops_webhook(record, data, event="overstay.charge_unreconciled")

    async def closed(self, record: OverstayRecord, outcome: str, notes: Optional[str] = None) -> None:
        data = {**self._base(record), "outcome": outcome, "notes": notes}
        await self._deliver_to_user(record, self._chef(record), "overstay_closed", data)

    async def _post_ops_webhook(
        self, record: OverstayRecord, data: dict, event: str = "overstay.escalated"
    ) -> None:
        if not self.webhook_url:
            return
        payload = {
            "event": event,
            "overstayId": record.id,
            "bookingId": record.storage_booking_id,
            "chefEmail": data["chef_email"],
            "location": data["location_name"],
            "amount": data["amount"],
            "reason": data["reason"],
            "chargeAttemptCount": record.charge_attempt_count,
            "paymentLinkUrl": record.payment_link_url,
        }
        try:
            async with httpx.AsyncClient(timeout=10.0) as client:
                response = await client.post(self.webhook_url, json=payload)
                response.raise_for_status()
            logger.info(f"✅ Ops webhook {event} delivered for overstay {record.id}")
        except httpx.HTTPError as e:
            logger.error(f"❌ Ops webhook {event} failed for overstay {record.id}: {e}")
