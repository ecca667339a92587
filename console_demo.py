"""
Offline console demo: walks booking requests through the engine in memory.

Uses the real availability resolver, state machine, audit recorder, bulk
orchestrator and metrics. No database, no calendar provider, no network.

Usage:
    python console_demo.py
    python console_demo.py --scenario bulk
    python console_demo.py --scenario availability
"""

import argparse
from datetime import date, datetime, time, timedelta, timezone
from typing import Callable
from zoneinfo import ZoneInfo

from booking_engine.availability.intervals import Interval
from booking_engine.engine import BookingEngine
from booking_engine.errors import BookingEngineError
from booking_engine.lifecycle.state_machine import ActionPayload
from booking_engine.notifications import RecordingNotificationSink
from booking_engine.schemas.booking_schema import (
    AvailabilityException,
    AvailabilityWindow,
    BookingAction,
    BookingStatus,
    ExceptionKind,
)

BLUE = "\033[94m"
GREEN = "\033[92m"
YELLOW = "\033[93m"
RED = "\033[91m"
DIM = "\033[2m"
RESET = "\033[0m"
BOLD = "\033[1m"

BUSINESS_ID = "demo-studio"
BUSINESS_TZ = ZoneInfo("America/New_York")


def next_monday(today: date, min_days_ahead: int = 2) -> date:
    day = today + timedelta(days=min_days_ahead)
    return day + timedelta(days=(7 - day.weekday()) % 7)


class ConsoleSession:
    """Seeds a demo business and narrates engine operations in the terminal."""

    def __init__(self) -> None:
        self.sink = RecordingNotificationSink()
        self.engine = BookingEngine(notifier=self.sink)
        self.monday = next_monday(datetime.now(timezone.utc).astimezone(BUSINESS_TZ).date())
        self._seed()

    def _seed(self) -> None:
        self.engine.update_settings(
            BUSINESS_ID, timezone=BUSINESS_TZ.key, buffer_minutes=15, min_notice_hours=24
        )
        weekdays = [
            AvailabilityWindow(day_of_week=day, start_time=time(9), end_time=time(17))
            for day in range(1, 6)
        ]
        closed_friday = AvailabilityException(
            date=self.monday + timedelta(days=4),
            kind=ExceptionKind.CLOSED,
            created_at=datetime.now(timezone.utc),
        )
        self.engine.replace_availability(BUSINESS_ID, weekdays, [closed_friday])
        self.haircut = self.engine.upsert_service(BUSINESS_ID, "Haircut", 45)
        self.colour = self.engine.upsert_service(BUSINESS_ID, "Colour treatment", 120)
        self.engine.add_busy_block(
            BUSINESS_ID, self.at(self.monday, 12), self.at(self.monday, 13), reason="Lunch"
        )

    def at(self, day: date, hour: int, minute: int = 0) -> datetime:
        return datetime.combine(day, time(hour, minute), tzinfo=BUSINESS_TZ)

    def say(self, text: str) -> None:
        print(f"{GREEN}{BOLD}[Engine]{RESET} {GREEN}{text}{RESET}")

    def staff(self, text: str) -> None:
        print(f"\n{BLUE}[Staff] {RESET}{text}")

    def system_log(self, text: str) -> None:
        print(f"{DIM}  >> {text}{RESET}")

    def error(self, exc: BookingEngineError) -> None:
        print(f"{RED}  !! {exc.code.value}: {exc.message}{RESET}")

    def show_intervals(self, intervals: list[Interval]) -> None:
        if not intervals:
            self.system_log("no bookable time")
        for interval in intervals:
            start = interval.start.astimezone(BUSINESS_TZ)
            end = interval.end.astimezone(BUSINESS_TZ)
            self.system_log(f"{start:%a %d %b %H:%M} - {end:%H:%M}")

    # ------------------------------------------------------------------ #
    # Scenarios
    # ------------------------------------------------------------------ #

    def scenario_availability(self) -> None:
        end = self.monday + timedelta(days=4)
        self.staff(f"Show bookable time {self.monday} to {end}")
        result = self.engine.list_available_slots(BUSINESS_ID, self.monday, end)
        self.show_intervals(result.intervals)

        self.staff("Which haircut start times fit on Monday?")
        monday = self.engine.list_available_slots(
            BUSINESS_ID, self.monday, self.monday, service_id=self.haircut.id
        )
        starts = monday.slot_starts(self.haircut.duration_minutes, 15)
        self.say(", ".join(f"{s.astimezone(BUSINESS_TZ):%H:%M}" for s in starts[:8]) + " ...")

        self.staff("Is Monday 12:15 - 12:45 free?")
        check = self.engine.validate_candidate_interval(
            BUSINESS_ID, Interval(self.at(self.monday, 12, 15), self.at(self.monday, 12, 45))
        )
        self.say(f"ok={check.ok} reason={check.reason}")

    def scenario_lifecycle(self) -> None:
        self.staff("Customer submits a haircut request for Monday 10:00")
        request = self.engine.submit_request(
            BUSINESS_ID,
            {"name": "Jane Doe", "email": "jane@example.com", "phone": "(555) 123-4567"},
            service_id=self.haircut.id,
            preferred_start=self.at(self.monday, 10),
        )
        self.system_log(f"Request {request.id[:8]} is {request.status.value}")

        self.staff("Approve the preferred time")
        request = self.engine.apply_action(
            request.id, BookingAction.APPROVE, observed_status=request.status
        )
        self.say(
            f"Approved {request.proposed_start.astimezone(BUSINESS_TZ):%H:%M} - "
            f"{request.proposed_end.astimezone(BUSINESS_TZ):%H:%M}"
        )

        self.staff("Second customer also asks for Monday 10:30")
        other = self.engine.submit_request(
            BUSINESS_ID,
            {"name": "John Smith", "email": "john@example.com"},
            service_id=self.haircut.id,
            preferred_start=self.at(self.monday, 10, 30),
        )
        try:
            self.engine.apply_action(other.id, BookingAction.APPROVE, observed_status=other.status)
        except BookingEngineError as exc:
            self.error(exc)

        self.staff("Propose Monday 14:00 - 14:45 instead")
        other = self.engine.apply_action(
            other.id,
            BookingAction.PROPOSE,
            ActionPayload(
                proposed_start=self.at(self.monday, 14),
                proposed_end=self.at(self.monday, 14, 45),
                notes="Offered afternoon slot",
            ),
            observed_status=other.status,
        )
        self.system_log(f"Request {other.id[:8]} is {other.status.value}")

        self.staff("Mark the first appointment complete")
        request = self.engine.apply_action(
            request.id, BookingAction.COMPLETE, observed_status=BookingStatus.APPROVED
        )

        self.staff("Audit trail for the first request")
        for entry in self.engine.get_audit_trail(request.id):
            self.system_log(
                f"{entry.timestamp:%H:%M:%S} {entry.action.value}: "
                f"{entry.from_status.value} -> {entry.to_status.value} ({entry.actor_kind.value})"
            )
        self.system_log(f"Notifications sent: {[e.kind for e in self.sink.events]}")

    def scenario_bulk(self) -> None:
        customers = [
            ("Amy Lee", "amy@example.com"),
            ("Ben Ode", "ben@example.com"),
            ("Cal Ray", "cal@example.com"),
        ]
        requests = [
            self.engine.submit_request(BUSINESS_ID, {"name": name, "email": email})
            for name, email in customers
        ]
        self.engine.apply_action(
            requests[1].id, BookingAction.DECLINE, observed_status=BookingStatus.REQUESTED
        )
        self.engine.apply_action(
            requests[2].id,
            BookingAction.APPROVE,
            ActionPayload(proposed_start=self.at(self.monday, 15)),
            observed_status=BookingStatus.REQUESTED,
        )

        self.staff("Bulk decline all three")
        outcome = self.engine.bulk_apply_action(
            BUSINESS_ID, [r.id for r in requests], BookingAction.DECLINE
        )
        self.say(outcome.summary())

        self.staff("Metrics for the last two weeks")
        summary = self.engine.compute_metrics(BUSINESS_ID, self.monday - timedelta(days=14), self.monday)
        print(self.engine.metrics.format_report(summary))

    SCENARIOS: dict[str, Callable[["ConsoleSession"], None]] = {
        "availability": scenario_availability,
        "lifecycle": scenario_lifecycle,
        "bulk": scenario_bulk,
    }

    def run_scenario(self, scenario: str) -> None:
        """Auto-play a pre-scripted scenario for demo purposes."""
        play = self.SCENARIOS.get(scenario)
        if play is None:
            print(f"{RED}Unknown scenario: {scenario}{RESET}")
            return

        print()
        print(f"{BOLD}{'=' * 60}{RESET}")
        print(f"{BOLD}  BOOKING ENGINE - Scenario: {scenario}{RESET}")
        print(f"{BOLD}  Business: {BUSINESS_ID} ({BUSINESS_TZ.key}){RESET}")
        print(f"{BOLD}{'=' * 60}{RESET}")
        try:
            play(self)
        except BookingEngineError as exc:
            self.error(exc)
        print(f"\n{BOLD}{'=' * 60}{RESET}")
        print(f"{BOLD}  Scenario '{scenario}' complete.{RESET}")
        print(f"{BOLD}{'=' * 60}{RESET}")

    def run(self) -> None:
        print(f"{YELLOW}Scenarios: {', '.join(self.SCENARIOS)}. Type 'quit' to exit.{RESET}")
        while True:
            try:
                choice = input(f"{BLUE}scenario> {RESET}").strip().lower()
            except (EOFError, KeyboardInterrupt):
                print()
                break
            if choice in ("quit", "exit", "q"):
                break
            if choice:
                self.run_scenario(choice)


def main() -> None:
    parser = argparse.ArgumentParser(description="Offline booking engine demo")
    parser.add_argument(
        "--scenario",
        choices=sorted(ConsoleSession.SCENARIOS),
        default=None,
        help="Auto-play a pre-scripted scenario instead of interactive mode",
    )
    args = parser.parse_args()

    session = ConsoleSession()
    if args.scenario:
        session.run_scenario(args.scenario)
    else:
        session.run()


if __name__ == "__main__":
    main()
