from __future__ import annotations

import datetime

from sqlalchemy import func, select

from board_helpers import BoardTestCase, UTC  # noqa: E402

from assignment import api as assignment  # noqa: E402
from database import AuditLog, ensure_aware  # noqa: E402
from events import EventType, StationStatus, StepStatus  # noqa: E402


class AssignTests(BoardTestCase):
    def test_assign_activates_pending_step_with_default_duration(self) -> None:
        ann = self.add_client("Ann")
        self.events.clear()

        result = assignment.assign(self.context, "BRAIN", 0, "MT", ann)

        self.assertTrue(result.ok, result)
        self.assertEqual(self.station("BRAIN", 0).status, StationStatus.IN_USE.value)
        step = self.step(ann, "BRAIN")
        self.assertEqual(step.status, StepStatus.ACTIVE.value)
        self.assertEqual(step.duration, 15 * 60)
        self.assertEqual(step.station_id, self.station("BRAIN", 0).id)
        self.assertEqual(step.session_type, "MT")
        self.assertEqual(ensure_aware(step.start_at), self.clock())
        self.assert_invariants()

    def test_assign_broadcasts_station_and_plan_snapshots(self) -> None:
        ann = self.add_client("Ann")
        self.events.clear()

        assignment.assign(self.context, "BRAIN", 0, "OP", ann)

        self.assertEqual(self.event_types(), [EventType.STATION_UPDATE, EventType.PLAN_UPDATE])
        station_event, plan_event = self.events.events
        self.assertEqual(station_event.data["category"], "BRAIN")
        self.assertEqual(station_event.data["index"], 0)
        cell = station_event.data["data"]
        self.assertEqual(cell["clientName"], "Ann")
        self.assertEqual(cell["duration"], 25 * 60)
        self.assertEqual(cell["type"], "OP")
        self.assertEqual(cell["left"], 25 * 60)
        self.assertFalse(cell["expired"])
        self.assertEqual(plan_event.data["id"], ann)
        self.assertEqual(plan_event.data["steps"][0]["status"], "ACTIVE")

    def test_explicit_duration_overrides_default(self) -> None:
        ann = self.add_client("Ann")
        result = assignment.assign(self.context, "BRAIN", 1, "MT", ann, duration_seconds=600)
        self.assertTrue(result.ok)
        self.assertEqual(self.step(ann, "BRAIN").duration, 600)

    def test_non_positive_custom_duration_is_rejected(self) -> None:
        ann = self.add_client("Ann")
        self.events.clear()

        for bad in (0, -30):
            result = assignment.assign(self.context, "BRAIN", 0, "MT", ann, duration_seconds=bad)
            self.assertFalse(result.ok)
            self.assertEqual(result.reason, "InvalidRequest")

        self.assertEqual(self.step(ann, "BRAIN").status, StepStatus.PENDING.value)
        self.assertEqual(self.station("BRAIN", 0).status, StationStatus.AVAILABLE.value)
        self.assertEqual(self.events.events, [])

    def test_non_integer_custom_duration_is_rejected(self) -> None:
        ann = self.add_client("Ann")
        result = assignment.assign(self.context, "BRAIN", 0, "MT", ann, duration_seconds=12.5)
        self.assertEqual(result.reason, "InvalidRequest")

    def test_bad_custom_duration_does_not_retime(self) -> None:
        ann = self.add_client("Ann")
        assignment.assign(self.context, "BRAIN", 0, "MT", ann)
        self.clock.advance(60)

        result = assignment.assign(self.context, "BRAIN", 0, "MT", ann, duration_seconds=0)

        self.assertEqual(result.reason, "InvalidRequest")
        step = self.step(ann, "BRAIN")
        self.assertEqual(step.duration, 900)
        self.assertEqual(ensure_aware(step.start_at), self.clock() - datetime.timedelta(seconds=60))

    def test_unknown_station_is_reported(self) -> None:
        ann = self.add_client("Ann")
        result = assignment.assign(self.context, "BRAIN", 9, "MT", ann)
        self.assertFalse(result.ok)
        self.assertEqual(result.reason, "StationNotFound")

    def test_missing_default_without_override_fails(self) -> None:
        ann = self.add_client("Ann", modalities=["CRYO"])
        self.events.clear()

        result = assignment.assign(self.context, "CRYO", 0, "MT", ann)

        self.assertFalse(result.ok)
        self.assertEqual(result.reason, "UnknownModalityOrType")
        self.assertEqual(self.step(ann, "CRYO").status, StepStatus.PENDING.value)
        self.assertEqual(self.station("CRYO", 0).status, StationStatus.AVAILABLE.value)
        self.assertEqual(self.events.events, [])

    def test_unknown_session_type_needs_override(self) -> None:
        ann = self.add_client("Ann")
        self.assertEqual(assignment.assign(self.context, "BRAIN", 0, "XL", ann).reason, "UnknownModalityOrType")
        self.assertTrue(assignment.assign(self.context, "BRAIN", 0, "XL", ann, duration_seconds=120).ok)
        self.assertEqual(self.step(ann, "BRAIN").duration, 120)

    def test_client_cannot_run_two_stations(self) -> None:
        ann = self.add_client("Ann", modalities=["BRAIN", "CELL"])
        self.assertTrue(assignment.assign(self.context, "BRAIN", 0, "MT", ann).ok)

        result = assignment.assign(self.context, "CELL", 0, "MT", ann)

        self.assertFalse(result.ok)
        self.assertEqual(result.reason, "ClientAlreadyActive")
        self.assertEqual(self.step(ann, "CELL").status, StepStatus.PENDING.value)
        self.assertEqual(self.station("CELL", 0).status, StationStatus.AVAILABLE.value)
        self.assert_invariants()

    def test_no_pending_step_for_modality(self) -> None:
        ann = self.add_client("Ann", modalities=["CELL"])
        result = assignment.assign(self.context, "BRAIN", 0, "MT", ann)
        self.assertFalse(result.ok)
        self.assertEqual(result.reason, "NoEligibleStep")

    def test_empty_queue_without_client(self) -> None:
        result = assignment.assign(self.context, "BRAIN", 0, "MT")
        self.assertEqual(result.reason, "NoEligibleStep")

    def test_failed_assign_writes_no_audit_rows(self) -> None:
        ann = self.add_client("Ann", modalities=["CELL"])
        with self.session_factory() as session:
            before = session.scalar(select(func.count()).select_from(AuditLog))
        assignment.assign(self.context, "BRAIN", 0, "MT", ann)
        with self.session_factory() as session:
            after = session.scalar(select(func.count()).select_from(AuditLog))
        self.assertEqual(before, after)


class QueueSelectionTests(BoardTestCase):
    def test_fifo_by_session_creation(self) -> None:
        first = self.add_client("Ann")
        second = self.add_client("Bob")

        self.assertTrue(assignment.assign(self.context, "BRAIN", 0, "MT").ok)
        self.assertEqual(self.step(first, "BRAIN").status, StepStatus.ACTIVE.value)
        self.assertEqual(self.step(second, "BRAIN").status, StepStatus.PENDING.value)

        self.assertTrue(assignment.assign(self.context, "BRAIN", 1, "MT").ok)
        self.assertEqual(self.step(second, "BRAIN").status, StepStatus.ACTIVE.value)
        self.assert_invariants()

    def test_mode_is_a_hard_filter(self) -> None:
        op_client = self.add_client("Ann", mode="OP")
        mt_client = self.add_client("Bob", mode="MT")

        self.assertTrue(assignment.assign(self.context, "BRAIN", 0, "MT").ok)

        self.assertEqual(self.step(op_client, "BRAIN").status, StepStatus.PENDING.value)
        self.assertEqual(self.step(mt_client, "BRAIN").status, StepStatus.ACTIVE.value)

    def test_unspecified_mode_matches_any_type(self) -> None:
        ann = self.add_client("Ann", mode="UNSPEC")
        self.assertTrue(assignment.assign(self.context, "BRAIN", 0, "OP").ok)
        self.assertEqual(self.step(ann, "BRAIN").status, StepStatus.ACTIVE.value)

    def test_explicit_client_skips_the_queue(self) -> None:
        first = self.add_client("Ann")
        second = self.add_client("Bob")

        self.assertTrue(assignment.assign(self.context, "BRAIN", 0, "MT", second).ok)

        self.assertEqual(self.step(first, "BRAIN").status, StepStatus.PENDING.value)
        self.assertEqual(self.step(second, "BRAIN").status, StepStatus.ACTIVE.value)

    def test_explicit_client_with_incompatible_mode(self) -> None:
        ann = self.add_client("Ann", mode="OP")
        result = assignment.assign(self.context, "BRAIN", 0, "MT", ann)
        self.assertEqual(result.reason, "NoEligibleStep")

    def test_yesterdays_plans_are_not_queued(self) -> None:
        ann = self.add_client("Ann")
        self.clock.advance(24 * 60 * 60)
        self.assertEqual(assignment.assign(self.context, "BRAIN", 0, "MT").reason, "NoEligibleStep")
        self.assertEqual(self.step(ann, "BRAIN").status, StepStatus.PENDING.value)

    def test_queue_passes_over_clients_busy_elsewhere(self) -> None:
        busy = self.add_client("Ann", modalities=["CELL", "BRAIN"])
        waiting = self.add_client("Bob")
        self.assertTrue(assignment.assign(self.context, "CELL", 0, "MT", busy).ok)

        self.assertTrue(assignment.assign(self.context, "BRAIN", 0, "MT").ok)

        self.assertEqual(self.step(busy, "BRAIN").status, StepStatus.PENDING.value)
        self.assertEqual(self.step(waiting, "BRAIN").status, StepStatus.ACTIVE.value)
        self.assert_invariants()


class RetimeTests(BoardTestCase):
    def test_assign_on_running_station_restarts_the_clock(self) -> None:
        ann = self.add_client("Ann")
        self.add_client("Bob")
        assignment.assign(self.context, "BRAIN", 0, "MT", ann)
        self.clock.advance(300)
        self.events.clear()

        result = assignment.assign(self.context, "BRAIN", 0, "OP")

        self.assertTrue(result.ok)
        step = self.step(ann, "BRAIN")
        self.assertEqual(step.status, StepStatus.ACTIVE.value)
        self.assertEqual(step.duration, 25 * 60)
        self.assertEqual(ensure_aware(step.start_at), self.clock())
        self.assertEqual(step.session_type, "OP")
        self.assertEqual(self.event_types(), [EventType.STATION_UPDATE, EventType.PLAN_UPDATE])
        self.assertEqual(self.events.events[0].data["data"]["left"], 25 * 60)
        self.assert_invariants()

    def test_same_client_retime_with_override(self) -> None:
        ann = self.add_client("Ann")
        assignment.assign(self.context, "BRAIN", 0, "MT", ann)
        self.clock.advance(60)

        result = assignment.assign(self.context, "BRAIN", 0, "MT", ann, duration_seconds=90)

        self.assertTrue(result.ok)
        step = self.step(ann, "BRAIN")
        self.assertEqual(step.duration, 90)
        self.assertEqual(ensure_aware(step.start_at), self.clock())

    def test_other_client_cannot_take_running_station(self) -> None:
        ann = self.add_client("Ann")
        bob = self.add_client("Bob")
        assignment.assign(self.context, "BRAIN", 0, "MT", ann)
        before = self.step(ann, "BRAIN")

        result = assignment.assign(self.context, "BRAIN", 0, "MT", bob)

        self.assertFalse(result.ok)
        self.assertEqual(result.reason, "StationBusy")
        after = self.step(ann, "BRAIN")
        self.assertEqual(after.start_at, before.start_at)
        self.assertEqual(self.step(bob, "BRAIN").status, StepStatus.PENDING.value)

    def test_retime_keeps_the_queue_untouched(self) -> None:
        ann = self.add_client("Ann")
        bob = self.add_client("Bob")
        assignment.assign(self.context, "BRAIN", 0, "MT")
        assignment.assign(self.context, "BRAIN", 0, "MT")
        self.assertEqual(self.step(ann, "BRAIN").status, StepStatus.ACTIVE.value)
        self.assertEqual(self.step(bob, "BRAIN").status, StepStatus.PENDING.value)


class ReleaseTests(BoardTestCase):
    def test_assign_then_release_frees_station(self) -> None:
        ann = self.add_client("Ann")
        assignment.assign(self.context, "BRAIN", 0, "MT", ann)
        self.clock.advance(120)
        self.events.clear()

        result = assignment.release(self.context, "BRAIN", 0)

        self.assertTrue(result.ok)
        self.assertEqual(self.station("BRAIN", 0).status, StationStatus.AVAILABLE.value)
        step = self.step(ann, "BRAIN")
        self.assertEqual(step.status, StepStatus.DONE.value)
        self.assertEqual(ensure_aware(step.end_at), self.clock())
        self.assertEqual(self.event_types(), [EventType.STATION_UPDATE, EventType.PLAN_UPDATE])
        self.assertIsNone(self.events.events[0].data["data"])
        self.assertEqual(self.events.events[1].data["steps"][0]["status"], "DONE")
        self.assert_invariants()

    def test_release_of_idle_station_is_a_no_op(self) -> None:
        result = assignment.release(self.context, "BRAIN", 1)
        self.assertTrue(result.ok)
        self.assertEqual(self.station("BRAIN", 1).status, StationStatus.AVAILABLE.value)
        self.assertEqual(self.event_types(), [EventType.STATION_UPDATE])

    def test_release_unknown_station(self) -> None:
        self.assertEqual(assignment.release(self.context, "NOPE", 0).reason, "StationNotFound")

    def test_done_steps_are_not_reactivated(self) -> None:
        ann = self.add_client("Ann")
        assignment.assign(self.context, "BRAIN", 0, "MT", ann)
        assignment.release(self.context, "BRAIN", 0)

        result = assignment.assign(self.context, "BRAIN", 0, "MT", ann)

        self.assertEqual(result.reason, "NoEligibleStep")
        self.assertEqual(self.step(ann, "BRAIN").status, StepStatus.DONE.value)

    def test_client_can_move_on_after_release(self) -> None:
        ann = self.add_client("Ann", modalities=["BRAIN", "CELL"])
        assignment.assign(self.context, "BRAIN", 0, "MT", ann)
        assignment.release(self.context, "BRAIN", 0)
        self.assertTrue(assignment.assign(self.context, "CELL", 0, "MT", ann).ok)
        self.assert_invariants()


class TerminationTests(BoardTestCase):
    def test_force_finish_frees_every_station_of_the_client(self) -> None:
        ann = self.add_client("Ann", modalities=["BRAIN", "CELL"])
        assignment.assign(self.context, "BRAIN", 0, "MT", ann)
        self.events.clear()

        result = assignment.force_finish(self.context, ann)

        self.assertTrue(result.ok)
        self.assertEqual(self.step(ann, "BRAIN").status, StepStatus.DONE.value)
        self.assertEqual(self.step(ann, "CELL").status, StepStatus.PENDING.value)
        self.assertEqual(self.station("BRAIN", 0).status, StationStatus.AVAILABLE.value)
        self.assertEqual(self.event_types(), [EventType.STATION_UPDATE, EventType.PLAN_UPDATE])
        self.assert_invariants()

    def test_terminate_removes_plan_and_frees_station(self) -> None:
        ann = self.add_client("Ann", modalities=["BRAIN", "CELL"])
        bob = self.add_client("Bob")
        assignment.assign(self.context, "BRAIN", 0, "MT", ann)
        self.events.clear()

        result = assignment.terminate_plan(self.context, ann)

        self.assertTrue(result.ok)
        self.assertEqual(self.steps_for(ann), [])
        self.assertEqual(len(self.steps_for(bob)), 1)
        self.assertEqual(self.count_sessions(), 1)
        self.assertEqual(self.station("BRAIN", 0).status, StationStatus.AVAILABLE.value)
        self.assertEqual(self.event_types(), [EventType.STATION_UPDATE, EventType.PLAN_REMOVE])
        self.assertEqual(self.events.events[-1].data, {"clientId": ann})
        self.assert_invariants()

    def test_terminate_is_idempotent(self) -> None:
        ann = self.add_client("Ann")
        assignment.assign(self.context, "BRAIN", 0, "MT", ann)

        self.assertTrue(assignment.terminate_plan(self.context, ann).ok)
        second = assignment.terminate_plan(self.context, ann)

        self.assertTrue(second.ok)
        self.assertEqual(self.count_sessions(), 0)
        self.assertEqual(self.count_steps(), 0)
        self.assertEqual(self.events.events[-1].event_type, EventType.PLAN_REMOVE)

    def test_terminated_client_can_plan_again(self) -> None:
        ann = self.add_client("Ann")
        assignment.terminate_plan(self.context, ann)
        self.add_client("Ann", modalities=["CELL"])
        self.assertEqual([step.status for step in self.steps_for(ann)], ["PENDING"])

    def test_terminate_only_touches_today(self) -> None:
        ann = self.add_client("Ann")
        self.clock.current = self.clock.current + datetime.timedelta(days=1)
        assignment.terminate_plan(self.context, ann)
        self.assertEqual(self.count_sessions(), 1)

    def test_assign_uses_fixed_clock_timezone(self) -> None:
        ann = self.add_client("Ann")
        self.clock.current = datetime.datetime(2025, 3, 3, 15, 0, 30, tzinfo=UTC)
        assignment.assign(self.context, "BRAIN", 0, "MT", ann)
        self.assertEqual(ensure_aware(self.step(ann, "BRAIN").start_at).second, 30)
