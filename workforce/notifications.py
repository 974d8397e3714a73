"""Notification payloads and their delivery.

Events are built by plain functions from the state before and after an
operation and handed to a sink only once the operation has committed.  The
sink lives in ``app.extensions["notification_sink"]``; the default one
stores in-app notifications in the ``notifications`` table.
"""

import logging
from dataclasses import asdict, dataclass, field
from typing import Iterable, List, Optional

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from . import db, store
from .models import SUPERADMIN, Notification

logger = logging.getLogger(__name__)

CENTRAL = "central"


@dataclass
class NotificationEvent:
    type: str
    title: str
    message: str
    recipient_id: Optional[int]
    recipient_farm_id: Optional[str]
    priority: str = "medium"
    created_by: Optional[int] = None
    action_payload: dict = field(default_factory=dict)

    def to_dict(self):
        return asdict(self)


def _payload(worker, required_action, deep_link=None):
    return {
        "workerId": worker.id,
        "workerNationalId": worker.national_id,
        "requiredAction": required_action,
        "deepLink": deep_link or f"/workers?search={worker.national_id}",
    }


def _recipient_farm(user):
    return str(user.farm_id) if user.farm_id is not None else CENTRAL


def _fan_out(recipients, actor_id, **event):
    return [
        NotificationEvent(recipient_id=user.id, recipient_farm_id=_recipient_farm(user), created_by=actor_id, **event)
        for user in recipients
        if user.id != actor_id
    ]


def farm_admin_recipients(farm_id, actor_id=None):
    """Admins of ``farm_id``, never superadmins and never the actor."""

    return [u for u in store.farm_admins(farm_id) if u.role != SUPERADMIN and u.id != actor_id]


def superadmin_recipients(actor_id=None):
    return [u for u in store.superadmins() if u.id != actor_id]


def cross_farm_conflict_events(existing, requesting_farm, recipients, actor_id=None) -> List[NotificationEvent]:
    return _fan_out(
        recipients,
        actor_id,
        type="worker_duplicate",
        title="Active worker registered by another farm",
        message=(
            f"{existing.name} (national ID {existing.national_id}) is active in your farm since "
            f"{existing.entry_date}. {requesting_farm} is trying to register them. "
            "Please check their status and record an exit date if they have left."
        ),
        priority="urgent",
        action_payload=_payload(existing, "record_exit_date"),
    )


def new_worker_events(worker, farm_label, recipients, actor_id=None) -> List[NotificationEvent]:
    return _fan_out(
        recipients,
        actor_id,
        type="worker_created",
        title="New worker added",
        message=(
            f"New worker {worker.name} added to {farm_label} on {worker.entry_date} "
            f"(national ID {worker.national_id})"
        ),
        action_payload=_payload(worker, "review_new_worker", "/workers"),
    )


def exit_recorded_events(worker, farm_label, recipients, actor_id=None) -> List[NotificationEvent]:
    reason = f" - reason: {worker.exit_reason}" if worker.exit_reason else ""
    return _fan_out(
        recipients,
        actor_id,
        type="worker_exit_recorded",
        title="Exit date recorded",
        message=f"Exit date recorded for {worker.name} ({farm_label}): {worker.exit_date}{reason}",
        priority="high",
        action_payload=_payload(worker, "none"),
    )


def entry_date_changed_events(worker, old_entry, farm_label, recipients, actor_id=None) -> List[NotificationEvent]:
    return _fan_out(
        recipients,
        actor_id,
        type="worker_updated",
        title="Entry date changed",
        message=f"Entry date of {worker.name} ({farm_label}) changed from {old_entry} to {worker.entry_date}",
        action_payload=_payload(worker, "none"),
    )


def worker_moved_events(worker, previous_farm_label, new_farm_label, recipients, actor_id=None) -> List[NotificationEvent]:
    return _fan_out(
        recipients,
        actor_id,
        type="worker_moved_from_farm",
        title="Worker moved to another farm",
        message=(
            f"{worker.name} (national ID {worker.national_id}), previously in {previous_farm_label}, "
            f"has been registered in {new_farm_label}. Please check their status and record an exit "
            "date if needed."
        ),
        priority="high",
        action_payload=_payload(worker, "record_exit_date"),
    )


class DatabaseNotificationSink:
    """Stores events as unread in-app notifications."""

    def deliver(self, events: Iterable[NotificationEvent]) -> None:
        for event in events:
            db.session.add(Notification(status="unread", **event.to_dict()))
        try:
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            raise


def deliver(events: List[NotificationEvent]) -> List[str]:
    """Hand committed events to the configured sink; returns warnings."""

    if not events:
        return []
    sink = current_app.extensions.get("notification_sink")
    if sink is None:
        logger.warning("No notification sink configured, dropping %d event(s)", len(events))
        return []
    try:
        sink.deliver(events)
    except Exception as exc:
        logger.error("Delivering %d notification(s) failed: %s", len(events), exc)
        return [f"{len(events)} notification(s) could not be delivered"]
    logger.info("Delivered %d notification(s)", len(events))
    return []
