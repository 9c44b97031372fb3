from __future__ import annotations

from datetime import datetime, timedelta

from eventgate.utils import (
    extract_email,
    extract_name,
    format_event_date,
    humanize_time,
    is_valid_email,
    slugify,
    text_to_html,
)


def test_slugify_handles_whitespace_and_unicode():
    assert slugify("  Café au Lait  ") == "cafe-au-lait"
    assert slugify("Hello!! World??") == "hello-world"


def test_extract_from_custom_question_keys():
    answers = {"question_name_42": "Jane Doe", "email": "jane@x.com"}
    assert extract_name(answers) == "Jane Doe"
    assert extract_email(answers) == "jane@x.com"


def test_extract_name_prefers_direct_keys_then_first_last():
    assert extract_name({"fullName": "Ada Lovelace", "firstName": "X"}) == "Ada Lovelace"
    assert extract_name({"first_name": "Grace", "last_name": "Hopper"}) == "Grace Hopper"
    assert extract_name({"firstName": "Linus"}) == "Linus"


def test_extract_name_skips_blank_values_and_falls_back():
    assert extract_name({"name": "   ", "nickname": " Ziggy "}) == "Ziggy"
    assert extract_name({"company": "ACME"}) == "Unknown"
    assert extract_name({}) == "Unknown"
    assert extract_name(None) == "Unknown"


def test_extract_name_is_order_preserving():
    answers = {"team_name": "Blue", "pet_name": "Rex"}
    assert extract_name(answers) == "Blue"
    assert extract_name(dict(reversed(list(answers.items())))) == "Rex"


def test_extract_email_search_order():
    assert (
        extract_email({"question_email_7": "a@b.com", "workEmail": "c@d.com"})
        == "a@b.com"
    )
    assert extract_email({"workEmail": " c@d.com "}) == "c@d.com"
    assert extract_email({"userEmail": "u@x.com", "email": ""}) == "u@x.com"
    assert extract_email({"name": "Nobody"}) == "No email"


def test_is_valid_email():
    assert is_valid_email("jane@example.com")
    assert not is_valid_email("not-an-email")
    assert not is_valid_email("")
    assert not is_valid_email(None)


def test_text_to_html_escapes_and_wraps_lines():
    html = text_to_html("Hello <b>there</b>\n\nSecond line")
    assert str(html) == "<p>Hello &lt;b&gt;there&lt;/b&gt;</p><p>Second line</p>"
    assert str(text_to_html(None)) == ""


def test_humanize_time_handles_future_and_past():
    now = datetime(2024, 1, 1, 12, 0, 0)
    assert humanize_time(now + timedelta(days=2, hours=3), now=now) == "in 2 days"
    assert humanize_time(now - timedelta(hours=1), now=now) == "1 hour ago"
    assert humanize_time(now - timedelta(seconds=10), now=now) == "moments ago"
    assert humanize_time(None) == ""


def test_format_event_date():
    assert format_event_date(datetime(2025, 3, 4, 18, 30)) == "March 04, 2025 at 18:30 UTC"
    assert format_event_date(None) == "TBD"
