"""
Notification Module

Turns lifecycle events into in-app notifications, emails and SMS. Admins
hear about new applications; borrowers hear about decisions, disbursement
and refunds. Every delivery is best effort: a failing channel is logged and
the next one still runs.
"""

from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from enum import Enum
import uuid

import requests

from .errors import NotFound
from .events import EventDispatcher, EventPayload, LoanEvent
from .logging_config import get_logger
from .money import format_amount, to_amount
from .storage import StorageInterface, StorageRecord
from .users import UserManager


class NotificationType(Enum):
    LOAN_APPLICATION = "loan_application"
    LOAN_APPROVED = "loan_approved"
    LOAN_REJECTED = "loan_rejected"
    LOAN_DISBURSED = "loan_disbursed"
    LOAN_REFUND = "loan_refund"


@dataclass
class Notification(StorageRecord):
    """In-app notification"""
    recipient_id: str
    notification_type: NotificationType
    title: str
    message: str
    loan_id: Optional[str] = None
    is_read: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)

    enum_fields = {'notification_type': NotificationType}


class EmailChannel:
    """Email channel (log placeholder until an SMTP relay is configured)"""

    def __init__(self):
        self.logger = get_logger("microlending.notifications.email")

    def send(self, to: str, subject: str, body: str) -> bool:
        self.logger.info(f"EMAIL to {to}: {subject}")
        return True


class SmsChannel:
    """SMS channel (log placeholder until an SMS gateway is configured)"""

    def __init__(self):
        self.logger = get_logger("microlending.notifications.sms")

    def send(self, to: str, body: str) -> bool:
        self.logger.info(f"SMS to {to}: {body[:160]}")
        return True


class WebhookChannel:
    """Posts every event to an external endpoint"""

    def __init__(self, url: str, timeout: int = 10):
        self.url = url
        self.timeout = timeout
        self.logger = get_logger("microlending.notifications.webhook")

    def send(self, event: EventPayload) -> bool:
        try:
            response = requests.post(
                self.url,
                json=event.to_dict(),
                timeout=self.timeout,
                headers={"Content-Type": "application/json"}
            )
            return response.status_code < 300
        except requests.RequestException as e:
            self.logger.error(f"Webhook send failed: {e}")
            return False


class NotificationService:
    """
    Subscribes to lifecycle events and fans them out to channels
    """

    def __init__(self, storage: StorageInterface, users: UserManager,
                 email: Optional[EmailChannel] = None, sms: Optional[SmsChannel] = None,
                 webhook: Optional[WebhookChannel] = None, currency: str = "KES"):
        self.storage = storage
        self.users = users
        self.email = email or EmailChannel()
        self.sms = sms or SmsChannel()
        self.webhook = webhook
        self.currency = currency
        self.table_name = "notifications"
        self.logger = get_logger("microlending.notifications")

    def register(self, dispatcher: EventDispatcher) -> None:
        """Subscribe the handlers to ``dispatcher``"""
        dispatcher.subscribe(LoanEvent.APPLICATION_SUBMITTED, self.on_application_submitted)
        for event_type in (LoanEvent.APPROVED, LoanEvent.AUTO_APPROVED, LoanEvent.SPECIALLY_APPROVED):
            dispatcher.subscribe(event_type, self.on_approved)
        dispatcher.subscribe(LoanEvent.REJECTED, self.on_rejected)
        dispatcher.subscribe(LoanEvent.DISBURSED, self.on_disbursed)
        dispatcher.subscribe(LoanEvent.REFUND_PROCESSED, self.on_refund)
        dispatcher.subscribe(LoanEvent.REFUND_FAILED, self.on_refund)
        if self.webhook is not None:
            dispatcher.subscribe_all(self.webhook.send)

    def _amount(self, event: EventPayload) -> str:
        amount = event.data.get("amount")
        return format_amount(to_amount(amount), self.currency) if amount is not None else ""

    def notify(self, recipient_id: str, notification_type: NotificationType, title: str,
               message: str, loan_id: Optional[str] = None) -> Notification:
        """Store an in-app notification"""
        now = datetime.now(timezone.utc)
        notification = Notification(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            recipient_id=recipient_id,
            notification_type=notification_type,
            title=title,
            message=message,
            loan_id=loan_id
        )
        self.storage.save(self.table_name, notification.id, notification.to_dict())
        return notification

    def _notify_borrower(self, event: EventPayload, notification_type: NotificationType,
                         title: str, message: str) -> None:
        self.notify(event.user_id, notification_type, title, message, loan_id=event.loan_id)

        user = self.users.find_user(event.user_id)
        if user is None:
            self.logger.warning(f"Borrower {event.user_id} not found for {event.event_type.value}")
            return
        try:
            self.email.send(user.email, title, message)
        except Exception as e:
            self.logger.error(f"Email failed for {event.event_type.value} to {user.id}: {e}")
        if user.phone_number:
            try:
                self.sms.send(user.phone_number, message)
            except Exception as e:
                self.logger.error(f"SMS failed for {event.event_type.value} to {user.id}: {e}")

    def on_application_submitted(self, event: EventPayload) -> None:
        for admin in self.users.list_admins():
            self.notify(
                admin.id, NotificationType.LOAN_APPLICATION, "New Loan Application",
                f"A new loan application for {self._amount(event)} is awaiting review.",
                loan_id=event.loan_id
            )

    def on_approved(self, event: EventPayload) -> None:
        if event.event_type == LoanEvent.AUTO_APPROVED:
            title = "Loan Auto-Approved"
            message = (f"Your loan of {self._amount(event)} has been automatically approved. "
                       f"Funds will be disbursed shortly.")
        elif event.event_type == LoanEvent.SPECIALLY_APPROVED:
            title = "Loan Specially Approved"
            message = (f"Congratulations! Your loan of {self._amount(event)} has been specially "
                       f"approved by our admin team. Funds will be disbursed shortly.")
        else:
            title = "Loan Approved"
            message = (f"Congratulations! Your loan application for {self._amount(event)} has been "
                       f"approved. Please wait for disbursement.")
        self._notify_borrower(event, NotificationType.LOAN_APPROVED, title, message)

    def on_rejected(self, event: EventPayload) -> None:
        message = f"Your loan application for {self._amount(event)} was rejected."
        reason = event.data.get("reason")
        if reason:
            message += f" Reason: {reason}"
        if event.data.get("refund_status"):
            message += f" Processing fee refund: {event.data['refund_status']}."
        self._notify_borrower(event, NotificationType.LOAN_REJECTED, "Loan Rejected", message)

    def on_disbursed(self, event: EventPayload) -> None:
        self._notify_borrower(
            event, NotificationType.LOAN_DISBURSED, "Loan Disbursed",
            f"Your loan of {self._amount(event)} has been sent to your mobile money account."
        )

    def on_refund(self, event: EventPayload) -> None:
        if event.event_type == LoanEvent.REFUND_PROCESSED:
            title, message = "Fee Refunded", "Your loan processing fee has been refunded."
        else:
            title = "Fee Refund Delayed"
            message = "We could not refund your processing fee automatically. Our team will follow up."
        self._notify_borrower(event, NotificationType.LOAN_REFUND, title, message)

    def list_for_user(self, user_id: str, unread_only: bool = False) -> List[Notification]:
        notifications = [
            Notification.from_dict(data)
            for data in self.storage.find(self.table_name, {"recipient_id": user_id})
        ]
        if unread_only:
            notifications = [n for n in notifications if not n.is_read]
        notifications.sort(key=lambda n: n.created_at, reverse=True)
        return notifications

    def mark_read(self, notification_id: str, user_id: str) -> Notification:
        data = self.storage.load(self.table_name, notification_id)
        if not data or data.get("recipient_id") != user_id:
            raise NotFound(f"Notification {notification_id} not found")
        notification = Notification.from_dict(data)
        notification.is_read = True
        notification.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.table_name, notification.id, notification.to_dict())
        return notification
