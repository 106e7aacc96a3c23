import csv
import smtplib
import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path
from unittest import mock
from zoneinfo import ZoneInfo

import mail_transport as mt
from notify_dispatch import DispatchPlan, NotificationRequest, SkippedAccount
from settings import ConfigError, Settings

MONDAY = datetime(2026, 10, 19, 8, 0, tzinfo=timezone.utc)
TUESDAY = datetime(2026, 10, 20, 8, 0, tzinfo=timezone.utc)

SETTINGS = Settings(
    target_ou="OU=Staff,DC=corp,DC=example,DC=com",
    ldap_server="dc01",
    ldap_port=636,
    ldap_use_ssl=True,
    ldap_bind_user="svc",
    ldap_bind_password="secret",
    smtp_host="smtp.example.com",
    smtp_port=587,
    smtp_user="alerts@example.com",
    smtp_pass="pw",
    from_email="alerts@example.com",
)


def request(recipient: str, kind: str = "user") -> NotificationRequest:
    return NotificationRequest(
        recipients=(recipient,),
        subject=f"Subject for {recipient}",
        html_body="<p>hi</p>",
        text_body="hi",
        kind=kind,
        account_name=recipient.split("@")[0] if kind == "user" else "",
    )


def read_log(path: Path) -> list[dict]:
    with open(path, "r", newline="", encoding="utf-8") as f:
        return list(csv.DictReader(f))


class TestWeekdayGate(unittest.TestCase):
    def test_empty_or_any_always_sends(self):
        self.assertIs(mt.always_send, mt.make_weekday_gate([]))
        self.assertIs(mt.always_send, mt.make_weekday_gate(["any"]))
        self.assertTrue(mt.make_weekday_gate(["Daily"])(TUESDAY))

    def test_named_days(self):
        gate = mt.make_weekday_gate(["Monday"], timezone.utc)
        self.assertTrue(gate(MONDAY))
        self.assertFalse(gate(TUESDAY))

        gate = mt.make_weekday_gate(["mon", "TUE"], timezone.utc)
        self.assertTrue(gate(MONDAY))
        self.assertTrue(gate(TUESDAY))

    def test_unknown_day(self):
        with self.assertRaises(ConfigError):
            mt.make_weekday_gate(["funday"])

    def test_prefix_names(self):
        gate = mt.make_weekday_gate(["tues", "thur", "wed"], timezone.utc)
        self.assertTrue(gate(TUESDAY))
        self.assertFalse(gate(MONDAY))
        self.assertTrue(mt.make_weekday_gate(["thurs"], timezone.utc)(datetime(2026, 10, 22, 8, 0, tzinfo=timezone.utc)))

    def test_prefix_too_short(self):
        for name in ("t", "mo"):
            with self.subTest(name=name):
                with self.assertRaises(ConfigError):
                    mt.make_weekday_gate([name])

    def test_weekday_read_in_local_zone(self):
        chicago = ZoneInfo("America/Chicago")
        # 01:00 UTC Monday is 20:00 Sunday in Chicago
        early_monday_utc = datetime(2026, 10, 19, 1, 0, tzinfo=timezone.utc)
        monday_gate = mt.make_weekday_gate(["monday"], chicago)
        self.assertFalse(monday_gate(early_monday_utc))
        self.assertTrue(monday_gate(datetime(2026, 10, 19, 15, 0, tzinfo=timezone.utc)))
        self.assertTrue(mt.make_weekday_gate(["sunday"], chicago)(early_monday_utc))


class TestBuildMessage(unittest.TestCase):
    def test_headers_and_parts(self):
        msg = mt.build_email_message(request("jdoe@example.com"), "alerts@example.com")
        self.assertEqual("Subject for jdoe@example.com", msg["Subject"])
        self.assertEqual("alerts@example.com", msg["From"])
        self.assertEqual("jdoe@example.com", msg["To"])
        self.assertEqual("jdoe", msg["X-Account-Name"])
        self.assertEqual(["text/plain", "text/html"], [part.get_content_type() for part in msg.get_payload()])

    def test_digest_addresses_every_admin(self):
        digest = NotificationRequest(("a@example.com", "b@example.com"), "Digest", "<p/>", "", kind="digest")
        msg = mt.build_email_message(digest, "alerts@example.com")
        self.assertEqual("a@example.com, b@example.com", msg["To"])
        self.assertIsNone(msg["X-Account-Name"])


class TestSendEmail(unittest.TestCase):
    def test_dry_run_never_connects(self):
        with mock.patch("mail_transport.smtplib.SMTP") as smtp:
            ok, message_id, error = mt.send_email(request("a@example.com"), SETTINGS, dry_run=True)
        self.assertTrue(ok)
        self.assertEqual("dry-run-no-message-id", message_id)
        self.assertEqual("", error)
        smtp.assert_not_called()

    def test_starttls_login_and_send(self):
        with mock.patch("mail_transport.smtplib.SMTP") as smtp:
            server = smtp.return_value
            server.has_extn.return_value = True
            ok, message_id, error = mt.send_email(request("a@example.com"), SETTINGS, dry_run=False)
        self.assertTrue(ok, error)
        self.assertTrue(message_id)
        server.starttls.assert_called_once()
        server.login.assert_called_once_with("alerts@example.com", "pw")
        server.send_message.assert_called_once()
        server.quit.assert_called_once()

    def test_failure_is_returned_not_raised(self):
        with mock.patch("mail_transport.smtplib.SMTP") as smtp:
            smtp.return_value.send_message.side_effect = smtplib.SMTPRecipientsRefused({"a@example.com": (550, b"no")})
            ok, message_id, error = mt.send_email(request("a@example.com"), SETTINGS, dry_run=False)
        self.assertFalse(ok)
        self.assertEqual("", message_id)
        self.assertIn("a@example.com", error)

    def test_check_mail_host_raises(self):
        with mock.patch("mail_transport.smtplib.SMTP", side_effect=ConnectionRefusedError("refused")):
            with self.assertRaises(mt.MailHostError):
                mt.check_mail_host(SETTINGS)

    def test_check_mail_host_closes_after_login_refused(self):
        with mock.patch("mail_transport.smtplib.SMTP") as smtp:
            server = smtp.return_value
            server.login.side_effect = smtplib.SMTPAuthenticationError(535, b"bad credentials")
            with self.assertRaises(mt.MailHostError):
                mt.check_mail_host(SETTINGS)
        server.close.assert_called_once()
        server.noop.assert_not_called()

    def test_send_closes_after_starttls_failure(self):
        with mock.patch("mail_transport.smtplib.SMTP") as smtp:
            server = smtp.return_value
            server.has_extn.return_value = True
            server.starttls.side_effect = smtplib.SMTPNotSupportedError("STARTTLS refused")
            ok, message_id, error = mt.send_email(request("a@example.com"), SETTINGS, dry_run=False)
        self.assertFalse(ok)
        self.assertEqual("", message_id)
        self.assertIn("STARTTLS refused", error)
        server.close.assert_called_once()
        server.send_message.assert_not_called()

    def test_build_failure_is_returned_not_raised(self):
        with mock.patch("mail_transport.build_email_message", side_effect=ValueError("bad header")):
            ok, message_id, error = mt.send_email(request("a@example.com"), SETTINGS, dry_run=True)
        self.assertFalse(ok)
        self.assertEqual("", message_id)
        self.assertEqual("bad header", error)


class TestDeliver(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.log_path = Path(self.tmp.name) / "email_log.csv"

    def tearDown(self):
        self.tmp.cleanup()

    def test_one_failure_does_not_block_others(self):
        plan = DispatchPlan(
            requests=[request("a@example.com"), request("b@example.com"), request("admin@example.com", kind="digest")]
        )

        def fake_send(req, settings, dry_run):
            if req.recipients == ("a@example.com",):
                return False, "", "mailbox unavailable"
            return True, "<id@example.com>", ""

        with mock.patch("mail_transport.send_email", side_effect=fake_send) as send:
            with self.assertLogs("mail_transport", level="WARNING"):
                summary = mt.deliver(plan, SETTINGS, now=MONDAY, log_path=str(self.log_path))

        self.assertEqual(3, send.call_count)
        self.assertEqual(2, summary.sent)
        self.assertEqual(1, summary.failed)
        rows = read_log(self.log_path)
        self.assertEqual(["failed", "sent", "sent"], [row["status"] for row in rows])
        self.assertEqual("mailbox unavailable", rows[0]["error"])
        self.assertEqual("digest", rows[2]["kind"])

    def test_bad_message_does_not_block_others(self):
        plan = DispatchPlan(requests=[request("a@example.com"), request("b@example.com")])
        real_build = mt.build_email_message

        def fake_build(req, from_email):
            if req.recipients == ("a@example.com",):
                raise ValueError("bad header")
            return real_build(req, from_email)

        with mock.patch("mail_transport.build_email_message", side_effect=fake_build):
            with self.assertLogs("mail_transport", level="WARNING"):
                summary = mt.deliver(plan, SETTINGS, now=MONDAY, dry_run=True, log_path=str(self.log_path))

        self.assertEqual(1, summary.failed)
        self.assertEqual(1, summary.dry_run)
        rows = read_log(self.log_path)
        self.assertEqual(["failed", "dry_run"], [row["status"] for row in rows])
        self.assertEqual("bad header", rows[0]["error"])

    def test_closed_gate_holds_all_mail(self):
        plan = DispatchPlan(requests=[request("a@example.com"), request("admin@example.com", kind="digest")])
        gate = mt.make_weekday_gate(["monday"], timezone.utc)
        with mock.patch("mail_transport.send_email") as send:
            summary = mt.deliver(plan, SETTINGS, should_send_now=gate, now=TUESDAY, log_path=str(self.log_path))
        send.assert_not_called()
        self.assertEqual(2, summary.gated)
        self.assertEqual(["gated", "gated"], [row["status"] for row in read_log(self.log_path)])

    def test_dry_run_and_skipped_rows(self):
        plan = DispatchPlan(
            requests=[request("a@example.com")],
            skipped=[SkippedAccount("nomail", "No Mail", "Warning", "missing_email")],
        )
        summary = mt.deliver(plan, SETTINGS, now=MONDAY, dry_run=True, log_path=str(self.log_path))
        self.assertEqual(1, summary.dry_run)
        self.assertEqual(1, summary.skipped)
        self.assertEqual(0, summary.sent)
        rows = read_log(self.log_path)
        self.assertEqual(["skipped", "dry_run"], [row["status"] for row in rows])
        self.assertEqual("nomail", rows[0]["account_name"])
        self.assertEqual("missing_email", rows[0]["error"])

    def test_no_log_path(self):
        summary = mt.deliver(DispatchPlan(requests=[request("a@example.com")]), SETTINGS, now=MONDAY, dry_run=True)
        self.assertEqual(1, summary.dry_run)
        self.assertFalse(self.log_path.exists())


if __name__ == "__main__":
    unittest.main()
