"""
Notification Module

Email delivery for banking events plus the in-app notification inbox.

Delivery is best effort: the dispatcher records an in-app notification,
hands the email to a worker pool and returns immediately. A failing
transport is logged and recorded on the notification, never raised to the
caller that triggered it.
"""

import smtplib
import uuid
from abc import ABC, abstractmethod
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from email.message import EmailMessage
from enum import Enum
from typing import Dict, List, Optional

import requests

from .config import BankConfig
from .errors import DependencyError, NotFoundError, ValidationError
from .logging_config import get_logger, log_action
from .rbac import Identity, Role, authorize, require_roles
from .storage import StorageInterface, StorageRecord


logger = get_logger("bank.notifications")


class NotificationStatus(Enum):
    """Delivery status of a notification"""
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    IN_APP = "in_app"  # Recorded without email delivery


@dataclass
class Notification(StorageRecord):
    """In-app notification, optionally mirrored by email"""
    user_id: str
    recipient_address: str
    subject: str
    body: str
    read: bool = False
    status: NotificationStatus = NotificationStatus.PENDING
    sent_at: Optional[datetime] = None
    read_at: Optional[datetime] = None
    failed_reason: Optional[str] = None


class Notifier(ABC):
    """Outbound message transport"""

    @abstractmethod
    def send(self, recipient: str, subject: str, body: str) -> bool:
        """Deliver one message. Returns True if successful."""
        pass


class LogNotifier(Notifier):
    """Logs messages instead of sending them (development)"""

    def send(self, recipient: str, subject: str, body: str) -> bool:
        log_action(
            logger, "info", f"EMAIL to {recipient}: {subject}",
            action="notification_logged", extra={"body": body[:100]}
        )
        return True


class SMTPNotifier(Notifier):
    """SMTP email transport, configured once and reused for every message"""

    def __init__(self, host: str, port: int = 587, username: Optional[str] = None,
                 password: Optional[str] = None, sender: str = "no-reply@bank.local",
                 use_tls: bool = True, timeout: float = 10.0):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.sender = sender
        self.use_tls = use_tls
        self.timeout = timeout

    def build_message(self, recipient: str, subject: str, body: str) -> EmailMessage:
        message = EmailMessage()
        message["From"] = self.sender
        message["To"] = recipient
        message["Subject"] = subject
        message.set_content(body)
        return message

    def send(self, recipient: str, subject: str, body: str) -> bool:
        message = self.build_message(recipient, subject, body)
        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
            if self.use_tls:
                smtp.starttls()
            if self.username:
                smtp.login(self.username, self.password or "")
            smtp.send_message(message)
        return True


class WebhookNotifier(Notifier):
    """Posts messages to an external delivery service"""

    def __init__(self, url: str, timeout: float = 10.0):
        self.url = url
        self.timeout = timeout

    def send(self, recipient: str, subject: str, body: str) -> bool:
        payload = {
            "recipient": recipient,
            "subject": subject,
            "body": body,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        response = requests.post(
            self.url,
            json=payload,
            timeout=self.timeout,
            headers={"Content-Type": "application/json"}
        )
        return 200 <= response.status_code < 300


def create_notifier(config: BankConfig) -> Notifier:
    """Build the configured notifier backend"""
    backend = config.notifier_backend.lower()
    if backend == "log":
        return LogNotifier()
    if backend == "smtp":
        return SMTPNotifier(
            host=config.smtp_host,
            port=config.smtp_port,
            username=config.smtp_user,
            password=config.smtp_password,
            sender=config.smtp_from,
            use_tls=config.smtp_use_tls,
            timeout=config.notification_timeout,
        )
    if backend == "webhook":
        if not config.webhook_url:
            raise ValueError("webhook notifier requires BANK_WEBHOOK_URL")
        return WebhookNotifier(config.webhook_url, timeout=config.notification_timeout)
    raise ValueError(f"Unknown notifier backend: {config.notifier_backend}")


class NotificationDispatcher:
    """
    Records notifications and delivers them on a bounded worker pool
    """

    def __init__(self, storage: StorageInterface, notifier: Notifier, max_workers: int = 4):
        self.storage = storage
        self.notifier = notifier
        self.notifications_table = "notifications"
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="notify"
        )

    def dispatch(self, user_id: str, recipient: str, subject: str, body: str) -> Optional[Future]:
        """
        Fire-and-forget delivery to one user.

        Returns the delivery future, or None if the notification could not
        even be recorded. Never raises.
        """
        try:
            notification = self._record(user_id, recipient, subject, body,
                                        NotificationStatus.PENDING)
            return self._executor.submit(self._deliver, notification)
        except Exception as e:
            log_action(
                logger, "error", "Notification could not be scheduled",
                user_id=user_id, action="notification_failed",
                extra={"subject": subject, "error": str(e)}
            )
            return None

    def create_notification(self, actor: Identity, user_id: str, subject: str, body: str,
                            send_email: bool = True) -> Notification:
        """Post a notification to a user's inbox (ADMIN only)"""
        require_roles(actor, {Role.ADMIN}, resource="notifications")
        if not subject or not subject.strip():
            raise ValidationError("Subject is required", {"field": "subject"})

        user = self.storage.load("users", user_id)
        if not user:
            raise NotFoundError("User not found", {"user_id": user_id})

        status = NotificationStatus.PENDING if send_email else NotificationStatus.IN_APP
        notification = self._record(user_id, user["email"], subject, body, status)
        if send_email:
            self._executor.submit(self._deliver, notification)

        log_action(
            logger, "info", "Notification created",
            user_id=actor.user_id, action="create_notification",
            resource=f"notification:{notification.id}", extra={"recipient_id": user_id}
        )
        return notification

    def list_notifications(self, actor: Identity) -> List[Notification]:
        """Caller's notifications, newest first"""
        notifications_data = self.storage.find(self.notifications_table, {"user_id": actor.user_id})
        return [self._notification_from_dict(data) for data in reversed(notifications_data)]

    def get_notification(self, notification_id: str) -> Optional[Notification]:
        notification_dict = self.storage.load(self.notifications_table, notification_id)
        if not notification_dict:
            return None
        return self._notification_from_dict(notification_dict)

    def mark_as_read(self, notification_id: str, actor: Identity) -> Notification:
        """Mark notification as read"""
        notification = self.get_notification(notification_id)
        if not notification:
            raise NotFoundError("Notification not found", {"notification_id": notification_id})
        authorize(actor, notification.user_id, resource=f"notification:{notification_id}")

        with self.storage.lock_record(self.notifications_table, notification_id):
            notification = self.get_notification(notification_id)
            if not notification.read:
                notification.read = True
                notification.read_at = datetime.now(timezone.utc)
                notification.updated_at = notification.read_at
                self._save(notification)
        return notification

    def get_unread_count(self, actor: Identity) -> int:
        return self.storage.count(self.notifications_table,
                                  {"user_id": actor.user_id, "read": False})

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting work; optionally wait for pending deliveries"""
        self._executor.shutdown(wait=wait)

    # Delivery

    def _record(self, user_id: str, recipient: str, subject: str, body: str,
                status: NotificationStatus) -> Notification:
        now = datetime.now(timezone.utc)
        notification = Notification(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            user_id=user_id,
            recipient_address=recipient,
            subject=subject,
            body=body,
            status=status,
        )
        self._save(notification)
        return notification

    def _deliver(self, notification: Notification) -> Notification:
        """Worker body: send, then record the outcome"""
        sent_at, failed_reason = None, None
        try:
            if not self.notifier.send(notification.recipient_address,
                                      notification.subject, notification.body):
                raise DependencyError("Notifier reported delivery failure")
            sent_at = datetime.now(timezone.utc)
            log_action(
                logger, "info", "Notification sent",
                user_id=notification.user_id, action="notification_sent",
                resource=f"notification:{notification.id}"
            )
        except Exception as e:
            error = e if isinstance(e, DependencyError) else DependencyError(
                f"Notification delivery failed: {e}", {"transport": type(self.notifier).__name__}
            )
            failed_reason = error.message
            log_action(
                logger, "warning", "Notification failed",
                user_id=notification.user_id, action="notification_failed",
                resource=f"notification:{notification.id}",
                extra={"kind": error.kind, "error": error.message, **error.detail}
            )

        try:
            # Re-read so a read flag set meanwhile is kept
            with self.storage.lock_record(self.notifications_table, notification.id):
                current = self.get_notification(notification.id)
                if current is None:
                    return notification  # Deleted with its user
                notification = current
                if failed_reason is None:
                    notification.status = NotificationStatus.SENT
                    notification.sent_at = sent_at
                else:
                    notification.status = NotificationStatus.FAILED
                    notification.failed_reason = failed_reason
                notification.updated_at = datetime.now(timezone.utc)
                self._save(notification)
        except Exception:
            logger.exception("Could not record delivery status for notification %s",
                             notification.id)
        return notification

    # Serialization

    def _save(self, notification: Notification) -> None:
        self.storage.save(self.notifications_table, notification.id,
                          self._notification_to_dict(notification))

    def _notification_to_dict(self, notification: Notification) -> Dict:
        """Convert notification to dictionary"""
        result = notification.to_dict()
        result["status"] = notification.status.value
        return result

    def _notification_from_dict(self, data: Dict) -> Notification:
        """Convert dictionary to notification"""
        data = dict(data)
        data["status"] = NotificationStatus(data["status"])
        data["created_at"] = datetime.fromisoformat(data["created_at"])
        data["updated_at"] = datetime.fromisoformat(data["updated_at"])
        if data.get("sent_at"):
            data["sent_at"] = datetime.fromisoformat(data["sent_at"])
        if data.get("read_at"):
            data["read_at"] = datetime.fromisoformat(data["read_at"])
        return Notification(**data)
