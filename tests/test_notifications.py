import smtplib

import pytest

from dropship.config import Settings
from dropship.errors import NotificationError
from dropship.notifications import Notifier
from conftest import make_intent

SETTINGS = Settings(smtp_host="smtp.test", smtp_port=587, email_from="orders@test")


@pytest.fixture
def smtp(mocker):
    factory = mocker.MagicMock()
    return factory


def body(message, subtype):
    return message.get_body(preferencelist=(subtype,)).get_content()


def test_success_email_has_receipt_card_and_address(smtp):
    notifier = Notifier(settings=SETTINGS, smtp_factory=smtp)
    intent = make_intent()

    message = notifier.send(
        "success", intent, "buyer@example.com",
        charge=intent["latest_charge"],
        payment_method=intent["payment_method"],
        tracking_number="LP00123456789",
    )

    smtp.assert_called_once_with("smtp.test", 587)
    smtp.return_value.__enter__.return_value.send_message.assert_called_once_with(message)
    assert message["To"] == "buyer@example.com"
    html = body(message, "html")
    assert "20240611123456" in html
    assert "ZenFlow Desktop Fountain" in html
    assert "$110.51" in html
    assert "$3.51" in html
    assert "VISA •••• 4242" in html
    assert "Denver" in html
    assert "LP00123456789" in html
    text = body(message, "plain")
    assert "Total: $110.51" in text


def test_success_email_without_enrichment(smtp):
    notifier = Notifier(settings=SETTINGS, smtp_factory=smtp)
    intent = make_intent(payment_method=None, latest_charge=None)
    intent["metadata"].pop("shipping")
    intent["metadata"].pop("order_number")

    message = notifier.send("success", intent, "buyer@example.com")

    html = body(message, "html")
    assert "pi_happy" in html
    assert "Paid&nbsp;With" not in html
    assert "Shipped&nbsp;To" not in html
    assert "staticmap" not in html


def test_map_only_with_key(smtp):
    settings = Settings(smtp_host="smtp.test", google_maps_key="maps-key")
    message = Notifier(settings=settings, smtp_factory=smtp).send(
        "success", make_intent(), "buyer@example.com"
    )

    assert "staticmap" in body(message, "html")


def test_failure_and_tracking_emails(smtp):
    notifier = Notifier(settings=SETTINGS, smtp_factory=smtp)
    intent = make_intent()

    failure = notifier.send("failure", intent, "buyer@example.com")
    assert "did not go through" in body(failure, "plain")

    tracking = notifier.send("tracking-update", intent, "buyer@example.com", tracking_number="LP42")
    assert "LP42" in body(tracking, "html")
    assert "has shipped" in tracking["Subject"]


def test_login_only_with_credentials(smtp):
    settings = Settings(smtp_host="smtp.test", smtp_user="user", smtp_pass="pass")
    Notifier(settings=settings, smtp_factory=smtp).send("failure", make_intent(), "a@x.com")

    session = smtp.return_value.__enter__.return_value
    session.starttls.assert_called_once()
    session.login.assert_called_once_with("user", "pass")


def test_smtp_errors_become_notification_errors(smtp):
    smtp.return_value.__enter__.return_value.send_message.side_effect = (
        smtplib.SMTPRecipientsRefused({"a@x.com": (550, b"no such user")})
    )

    with pytest.raises(NotificationError):
        Notifier(settings=SETTINGS, smtp_factory=smtp).send("failure", make_intent(), "a@x.com")


def test_unconfigured_smtp(smtp):
    with pytest.raises(NotificationError):
        Notifier(settings=Settings(), smtp_factory=smtp).send("failure", make_intent(), "a@x.com")
    smtp.assert_not_called()


def test_unknown_kind(smtp):
    with pytest.raises(ValueError):
        Notifier(settings=SETTINGS, smtp_factory=smtp).send("refund", make_intent(), "a@x.com")
