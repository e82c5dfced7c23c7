from __future__ import annotations

from src.alerting.services.templates import default_description, render_template


def test_placeholders_are_substituted():
    out = render_template("{{device_id}} overload {{power}}W", {"device_id": "dev1", "power": 1200})
    assert out == "dev1 overload 1200W"


def test_whitespace_inside_braces_is_ignored():
    assert render_template("temp={{ temp }}", {"temp": 81.5}) == "temp=81.5"


def test_unknown_placeholders_are_left_verbatim():
    assert render_template("{{power}}W on {{site}}", {"power": 10}) == "10W on {{site}}"


def test_no_template_returns_none():
    assert render_template(None, {"power": 10}) is None
    assert render_template("", {"power": 10}) is None


def test_default_description_names_rule_and_device():
    assert default_description("Energy overload", "dev1") == "Energy overload (device: dev1)"
