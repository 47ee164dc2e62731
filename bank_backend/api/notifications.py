"""
Notification endpoints
"""

from typing import List

from fastapi import APIRouter, Depends

from .auth import BankingSystem, get_banking_system, get_current_identity
from .schemas import CreateNotificationRequest, NotificationResponse
from ..rbac import Identity


router = APIRouter()


@router.get("", response_model=List[NotificationResponse])
def list_notifications(
    system: BankingSystem = Depends(get_banking_system),
    identity: Identity = Depends(get_current_identity)
):
    """Caller's notifications, newest first"""
    return [
        NotificationResponse.from_notification(n)
        for n in system.dispatcher.list_notifications(identity)
    ]


@router.patch("/{notification_id}/read", response_model=NotificationResponse)
def mark_as_read(
    notification_id: str,
    system: BankingSystem = Depends(get_banking_system),
    identity: Identity = Depends(get_current_identity)
):
    notification = system.dispatcher.mark_as_read(notification_id, identity)
    return NotificationResponse.from_notification(notification)


@router.post("", response_model=NotificationResponse, status_code=201)
def create_notification(
    request: CreateNotificationRequest,
    system: BankingSystem = Depends(get_banking_system),
    identity: Identity = Depends(get_current_identity)
):
    """Send a notification to a user (ADMIN)"""
    notification = system.dispatcher.create_notification(
        identity, request.user_id, request.subject, request.body, send_email=request.send_email
    )
    return NotificationResponse.from_notification(notification)
