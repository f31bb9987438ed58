import threading
from datetime import datetime, timedelta

import pytest
from apscheduler.triggers.interval import IntervalTrigger

from app.extensions import db
from app.models import Customer, ReminderDispatch
from app.scheduler import REMINDER_JOB_ID, ReminderScheduler
from app.services.booking_service import create_booking
from app.services.booking_state import transition_booking
from app.services.notification_channels import (
    ChannelRegistry,
    get_channels,
    to_whatsapp_address,
)
from app.services.reminders import (
    ReminderScanner,
    ScanReport,
    format_service_list,
    idempotency_key,
    render_template,
    send_confirmation,
)

NOW = datetime(2025, 6, 2, 9, 0)


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def scanner(recording_channels, sleeps, app):
    registry = app.extensions["notification_channels"]
    return ReminderScanner(
        registry,
        scan_window_minutes=60,
        max_attempts=3,
        backoff_seconds=1.0,
        sleep=sleeps.append,
    )


@pytest.fixture
def week_out_booking(db_session, booking_settings, sample_customer, sample_services):
    """A booking starting exactly seven days after NOW."""
    return create_booking(
        sample_customer.id,
        [sample_services["haircut"].id, sample_services["nails"].id],
        NOW + timedelta(days=7),
        NOW,
    )


def dispatches(booking_id):
    return (
        db.session.query(ReminderDispatch)
        .filter(ReminderDispatch.booking_id == booking_id)
        .order_by(ReminderDispatch.channel)
        .all()
    )


@pytest.mark.reminders
class TestRendering:
    def test_placeholders_filled(self):
        text = render_template(
            "Hi {{customer_name}}, {{ services }} at {{time}} {{unknown}}",
            {"customer_name": "Ayu", "services": "Haircut", "time": "10:00"},
        )
        assert text == "Hi Ayu, Haircut at 10:00 {{unknown}}"

    def test_service_list(self):
        class Line:
            def __init__(self, name):
                self.name = name

        assert format_service_list([Line("Haircut")]) == "Haircut"
        assert (
            format_service_list([Line("Haircut"), Line("Color")])
            == "Haircut and Color"
        )
        assert (
            format_service_list([Line("Haircut"), Line("Color"), Line("Manicure")])
            == "Haircut, Color, and Manicure"
        )
        assert format_service_list([]) == "your upcoming appointment"

    def test_idempotency_key(self):
        assert idempotency_key(42, 7, "email") == "reminder:42:7:email"

    @pytest.mark.parametrize(
        "phone,expected",
        [
            ("+62 812-3456-7890", "whatsapp:+6281234567890"),
            ("0062 812 3456", "whatsapp:+628123456"),
            ("whatsapp:+15550001111", "whatsapp:+15550001111"),
            ("", None),
            (None, None),
        ],
    )
    def test_whatsapp_address(self, phone, expected):
        assert to_whatsapp_address(phone) == expected


@pytest.mark.reminders
class TestReminderScan:
    def test_week_out_booking_reminded_once_per_channel(
        self, scanner, week_out_booking, recording_channels
    ):
        report = scanner.run_cycle(NOW)

        assert report.offsets == [7, 1]
        assert report.candidates == 1
        assert report.sent == 2
        assert report.failures == []

        email = recording_channels["email"].sent
        whatsapp = recording_channels["whatsapp"].sent
        assert len(email) == 1 and len(whatsapp) == 1
        assert email[0]["recipient"] == "customer@example.com"
        assert email[0]["key"] == f"reminder:{week_out_booking.id}:7:email"
        assert "Haircut and Manicure" in email[0]["params"]["body"]
        assert "Test Customer" in email[0]["params"]["body"]
        assert whatsapp[0]["recipient"] == "whatsapp:+6281234567890"

        markers = dispatches(week_out_booking.id)
        assert [(m.offset_days, m.channel) for m in markers] == [
            (7, "email"),
            (7, "whatsapp"),
        ]

    def test_rerun_sends_no_duplicates(
        self, scanner, week_out_booking, recording_channels
    ):
        scanner.run_cycle(NOW)
        second = scanner.run_cycle(NOW)

        assert second.sent == 0
        assert second.already_sent == 2
        assert len(recording_channels["email"].sent) == 1
        assert len(recording_channels["whatsapp"].sent) == 1

    def test_overlapping_windows_dedupe(
        self, scanner, week_out_booking, recording_channels
    ):
        early = scanner.run_cycle(NOW - timedelta(minutes=30))
        later = scanner.run_cycle(NOW)

        assert early.sent == 2
        assert later.sent == 0
        assert later.already_sent == 2

    def test_booking_outside_windows_ignored(
        self, scanner, db_session, booking_settings, sample_customer, sample_services
    ):
        create_booking(
            sample_customer.id,
            [sample_services["haircut"].id],
            NOW + timedelta(days=3),
            NOW,
        )
        report = scanner.run_cycle(NOW)
        assert report.candidates == 0
        assert report.sent == 0

    def test_each_offset_reminds_separately(
        self, scanner, week_out_booking, recording_channels
    ):
        scanner.run_cycle(NOW)
        report = scanner.run_cycle(NOW + timedelta(days=6))

        assert report.sent == 2
        keys = [s["key"] for s in recording_channels["email"].sent]
        assert keys == [
            f"reminder:{week_out_booking.id}:7:email",
            f"reminder:{week_out_booking.id}:1:email",
        ]

    def test_cancelled_booking_not_reminded(
        self, scanner, week_out_booking, recording_channels
    ):
        transition_booking(week_out_booking.id, "cancelled", NOW)
        report = scanner.run_cycle(NOW)
        assert report.candidates == 0
        assert recording_channels["email"].sent == []

    def test_customer_preferences_respected(
        self, scanner, db_session, week_out_booking, sample_customer, recording_channels
    ):
        customer = db_session.get(Customer, sample_customer.id)
        customer.notify_whatsapp = False
        db_session.commit()

        report = scanner.run_cycle(NOW)

        assert report.sent == 1
        assert recording_channels["whatsapp"].attempts == []

    def test_missing_contact_reported_as_failure(
        self, scanner, db_session, week_out_booking, sample_customer, recording_channels
    ):
        customer = db_session.get(Customer, sample_customer.id)
        customer.phone = None
        db_session.commit()

        report = scanner.run_cycle(NOW)

        assert report.sent == 1
        assert [
            (f.booking_id, f.offset_days, f.channel, f.reason) for f in report.failures
        ] == [(week_out_booking.id, 7, "whatsapp", "missing whatsapp number")]
        assert recording_channels["whatsapp"].attempts == []
        assert [m.channel for m in dispatches(week_out_booking.id)] == ["email"]

    def test_unconfigured_channel_skipped(
        self, app, sleeps, week_out_booking, recording_channels
    ):
        only_email = ChannelRegistry([recording_channels["email"]])
        report = ReminderScanner(only_email, sleep=sleeps.append).run_cycle(NOW)

        assert report.sent == 1
        assert [m.channel for m in dispatches(week_out_booking.id)] == ["email"]

    def test_retries_with_backoff_then_marks(
        self, scanner, sleeps, week_out_booking, recording_channels
    ):
        recording_channels["email"].fail_times = 2

        report = scanner.run_cycle(NOW)

        assert report.sent == 2
        assert sleeps == [1.0, 2.0]
        email_marker = dispatches(week_out_booking.id)[0]
        assert email_marker.channel == "email"
        assert email_marker.attempts == 3

    def test_failure_isolated_and_not_marked(
        self, scanner, sleeps, week_out_booking, recording_channels
    ):
        recording_channels["whatsapp"].always_fail = True

        report = scanner.run_cycle(NOW)

        assert report.sent == 1
        assert len(report.failures) == 1
        failure = report.failures[0]
        assert (failure.booking_id, failure.offset_days, failure.channel) == (
            week_out_booking.id,
            7,
            "whatsapp",
        )
        assert len(recording_channels["whatsapp"].attempts) == 3
        assert [m.channel for m in dispatches(week_out_booking.id)] == ["email"]

        # The failed channel is retried on the next cycle
        recording_channels["whatsapp"].always_fail = False
        retry = scanner.run_cycle(NOW)
        assert retry.sent == 1
        assert retry.already_sent == 1

    def test_channel_exception_counts_as_failure(
        self, scanner, week_out_booking, recording_channels
    ):
        recording_channels["email"].raise_error = ConnectionError("socket closed")

        report = scanner.run_cycle(NOW)

        assert report.sent == 1
        assert report.failures[0].channel == "email"
        assert report.failures[0].reason == "socket closed"
        assert [m.channel for m in dispatches(week_out_booking.id)] == ["whatsapp"]

    def test_lost_marker_race_counts_as_already_sent(
        self, scanner, monkeypatch, db_session, week_out_booking, recording_channels
    ):
        db_session.add(
            ReminderDispatch(
                booking_id=week_out_booking.id,
                offset_days=7,
                channel="email",
                idempotency_key=idempotency_key(week_out_booking.id, 7, "email"),
                attempts=1,
                sent_at=NOW,
            )
        )
        db_session.commit()
        # Simulate a concurrent scan that checked before the marker existed
        monkeypatch.setattr(scanner, "already_sent", lambda *args: False)

        report = scanner.run_cycle(NOW)

        assert report.sent == 1
        assert report.already_sent == 1
        assert len(dispatches(week_out_booking.id)) == 2

    def test_deadline_leaves_work_for_next_tick(
        self, recording_channels, sleeps, week_out_booking, app
    ):
        scanner = ReminderScanner(
            app.extensions["notification_channels"],
            sleep=sleeps.append,
            monotonic=lambda: 100.0,
        )
        report = scanner.run_cycle(NOW, deadline=50.0)

        assert report.deadline_reached is True
        assert report.sent == 0
        assert recording_channels["email"].attempts == []

    def test_report_payload(self, scanner, week_out_booking):
        payload = scanner.run_cycle(NOW).to_dict()
        assert payload["sent"] == 2
        assert payload["alreadySent"] == 0
        assert payload["deadlineReached"] is False


@pytest.mark.reminders
class TestReminderScheduler:
    def test_run_once_now_returns_report(self, app, scanner, week_out_booking):
        scheduler = ReminderScheduler(app, scanner)
        report = scheduler.run_once_now(NOW)
        assert report.sent == 2
        assert not scheduler.running

    def test_overlapping_cycle_skipped(self, app, scanner, week_out_booking):
        scheduler = ReminderScheduler(app, scanner)
        scheduler._cycle_lock.acquire()
        try:
            assert scheduler.run_once_now(NOW) is None
        finally:
            scheduler._cycle_lock.release()

    def test_scan_error_logged_not_raised(self, app, scanner, monkeypatch):
        def boom(now, deadline=None):
            raise RuntimeError("database went away")

        monkeypatch.setattr(scanner, "run_cycle", boom)
        scheduler = ReminderScheduler(app, scanner)
        assert scheduler.run_once_now(NOW) is None
        # The lock is released for the next tick
        assert scheduler._cycle_lock.acquire(blocking=False)
        scheduler._cycle_lock.release()

    def test_start_registers_interval_job_with_startup_run(self, app):
        ran = threading.Event()

        class FakeScanner:
            def run_cycle(self, now, deadline=None):
                ran.set()
                return ScanReport(offsets=[7, 1])

        scheduler = ReminderScheduler(app, FakeScanner(), interval_minutes=24 * 60)
        scheduler.start()
        try:
            assert scheduler.running is True
            job = scheduler._scheduler.get_job(REMINDER_JOB_ID)
            assert isinstance(job.trigger, IntervalTrigger)
            assert job.trigger.interval == timedelta(days=1)
            assert job.max_instances == 1
            assert job.coalesce is True
            assert job.next_run_time is not None

            # The first scan runs at startup rather than one interval later
            assert ran.wait(timeout=5)

            scheduler.start()
            assert len(scheduler._scheduler.get_jobs()) == 1
        finally:
            scheduler.shutdown()
        assert scheduler.running is False

    def test_scheduler_disabled_under_test(self, app):
        assert app.extensions["reminder_scheduler"].running is False


@pytest.mark.reminders
class TestConfirmationNotice:
    def test_sent_on_every_enabled_channel(self, week_out_booking, recording_channels):
        sent = send_confirmation(week_out_booking, get_channels())
        assert sent == ["email", "whatsapp"]
        assert recording_channels["email"].sent[0]["template_id"] == "confirmation"
        assert recording_channels["email"].sent[0]["key"] == (
            f"confirmation:{week_out_booking.id}:email"
        )

    def test_failure_is_swallowed_and_logged(self, week_out_booking, recording_channels):
        recording_channels["email"].always_fail = True
        sent = send_confirmation(week_out_booking, get_channels())
        assert sent == ["whatsapp"]
        assert len(recording_channels["email"].attempts) == 1
