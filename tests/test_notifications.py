"""Tests for the lifecycle notification center."""

from __future__ import annotations

import logging

import pytest

from restflow.notifications import NotificationCenter, TaskEvent, TaskNotification


class TestNotificationCenter:
    """Tests for observer registration and delivery."""

    def test_event_values(self) -> None:
        """Event names are namespaced."""
        assert TaskEvent.DID_RESUME.value == "restflow.task.did_resume"
        assert TaskEvent.DID_COMPLETE.value == "restflow.task.did_complete"

    def test_delivery_to_matching_observers(self) -> None:
        """Observers receive only their event; None observers receive all."""
        center = NotificationCenter()
        resumed: list[TaskNotification] = []
        everything: list[TaskNotification] = []
        center.add_observer(TaskEvent.DID_RESUME, resumed.append)
        center.add_observer(None, everything.append)
        sender = object()
        center.post(TaskEvent.DID_RESUME, sender, None)
        center.post(TaskEvent.DID_CANCEL, sender, None)
        assert [n.event for n in resumed] == [TaskEvent.DID_RESUME]
        assert [n.event for n in everything] == [TaskEvent.DID_RESUME, TaskEvent.DID_CANCEL]
        assert resumed[0].sender is sender
        assert resumed[0].task_id is None

    def test_registration_order(self) -> None:
        """Observers run in the order they were added."""
        center = NotificationCenter()
        order: list[int] = []
        center.add_observer(TaskEvent.DID_SUSPEND, lambda n: order.append(1))
        center.add_observer(TaskEvent.DID_SUSPEND, lambda n: order.append(2))
        center.post(TaskEvent.DID_SUSPEND, None, None)
        assert order == [1, 2]

    def test_remove_observer(self) -> None:
        """A removed observer is not called; unknown tokens are ignored."""
        center = NotificationCenter()
        seen: list[TaskNotification] = []
        token = center.add_observer(TaskEvent.DID_RESUME, seen.append)
        center.remove_observer(token)
        center.remove_observer(token)
        center.post(TaskEvent.DID_RESUME, None, None)
        assert seen == []

    def test_raising_observer_does_not_stop_others(self, caplog: pytest.LogCaptureFixture) -> None:
        """A raising observer is logged at WARNING and the rest still run."""
        center = NotificationCenter()
        seen: list[TaskNotification] = []

        def broken(notification: TaskNotification) -> None:
            raise RuntimeError("observer failed")

        center.add_observer(TaskEvent.DID_CANCEL, broken)
        center.add_observer(TaskEvent.DID_CANCEL, seen.append)
        with caplog.at_level(logging.WARNING, logger="restflow.notifications"):
            center.post(TaskEvent.DID_CANCEL, None, None)
        assert len(seen) == 1
        warnings = [r for r in caplog.records if r.name == "restflow.notifications"]
        assert len(warnings) == 1
        assert warnings[0].exc_info is not None
        assert "restflow.task.did_cancel" in warnings[0].getMessage()
