"""Reminder flag bookkeeping.

Delivery itself is done by an external notifier; these helpers only track
what was scheduled and sent per channel.
"""

from datetime import datetime

from practice_scheduler.schemas.appointments import ReminderChannel, Reminders, ReminderState


def reset_reminders(reminders: Reminders) -> Reminders:
    """Mark every channel as not sent. Used whenever the window changes."""
    return Reminders(
        **{
            channel.value: reminders.get(channel).model_copy(update={"sent": False, "sent_at": None})
            for channel in ReminderChannel
        }
    )


def record_sent(reminders: Reminders, channel: ReminderChannel, sent_at: datetime) -> Reminders:
    """Mark *channel* as delivered at *sent_at*."""
    state = reminders.get(channel).model_copy(update={"sent": True, "sent_at": sent_at})
    return reminders.model_copy(update={channel.value: state})


def schedule(reminders: Reminders, channel: ReminderChannel, scheduled_for: datetime) -> Reminders:
    """Set when the reminder on *channel* should go out."""
    state: ReminderState = reminders.get(channel).model_copy(update={"scheduled_for": scheduled_for})
    return reminders.model_copy(update={channel.value: state})
