"""New-task notification endpoints"""
from typing import Optional

from fastapi import APIRouter, Depends, Response, status

from orgtasks.dependencies import get_current_user, get_notification_poller
from orgtasks.exceptions import NotFound, Unauthenticated
from orgtasks.schemas import NotificationBatchResponse, SubscriptionCreate, SubscriptionResponse
from orgtasks.services.notifications import NotificationPoller, Subscription

router = APIRouter()


def _owned_subscription(poller: NotificationPoller, subscription_id: str, current_user: Optional[str]) -> Subscription:
    if current_user is None:
        raise Unauthenticated()
    subscription = poller.get(subscription_id)
    if subscription.user_id != current_user:
        raise NotFound("Subscription not found")
    return subscription


@router.post("/subscriptions", response_model=SubscriptionResponse, status_code=status.HTTP_201_CREATED)
async def create_subscription(
    subscription_data: SubscriptionCreate,
    current_user: Optional[str] = Depends(get_current_user),
    poller: NotificationPoller = Depends(get_notification_poller),
):
    """Start watching for tasks created from now on."""
    if current_user is None:
        raise Unauthenticated()
    return poller.subscribe(current_user, subscription_data.organization_id, room_id=subscription_data.room_id)


@router.get("/subscriptions/{subscription_id}", response_model=NotificationBatchResponse)
async def poll_subscription(
    subscription_id: str,
    current_user: Optional[str] = Depends(get_current_user),
    poller: NotificationPoller = Depends(get_notification_poller),
):
    """Return tasks created since the previous poll of this subscription."""
    subscription = _owned_subscription(poller, subscription_id, current_user)
    tasks = poller.poll(subscription_id)
    return NotificationBatchResponse(
        subscription_id=subscription.id,
        last_checked=subscription.last_checked,
        tasks=tasks,
    )


@router.delete("/subscriptions/{subscription_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_subscription(
    subscription_id: str,
    current_user: Optional[str] = Depends(get_current_user),
    poller: NotificationPoller = Depends(get_notification_poller),
):
    _owned_subscription(poller, subscription_id, current_user)
    poller.unsubscribe(subscription_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
