import pytest

import conf
from utils import env
from utils.env import EnvVarSpec


def test_parse_uses_default_and_parser(monkeypatch):
    spec = EnvVarSpec(id="TEST_PORT", default="8000", parse=int, type=(int, ...))
    monkeypatch.delenv("TEST_PORT", raising=False)
    assert env.parse(spec) == 8000
    monkeypatch.setenv("TEST_PORT", "9001")
    assert env.parse(spec) == 9001


def test_missing_required_variable(monkeypatch):
    monkeypatch.delenv("TEST_REQUIRED", raising=False)
    with pytest.raises(ValueError):
        env.parse(EnvVarSpec(id="TEST_REQUIRED"))
    assert env.parse(EnvVarSpec(id="TEST_REQUIRED", is_optional=True)) is None


def test_validate_reports_bad_values(monkeypatch):
    good = EnvVarSpec(id="TEST_NAME", default="shop")
    bad = EnvVarSpec(id="TEST_COUNT", parse=int, type=(int, ...))
    monkeypatch.setenv("TEST_COUNT", "many")

    assert env.validate([good]) is True
    with pytest.raises(ValueError):
        env.parse(bad)
    assert env.validate([good, bad]) is False


def test_payment_conf_from_environment(monkeypatch):
    monkeypatch.setenv("PAYMENT_PROVIDER", "ziina")
    monkeypatch.setenv("FRONTEND_URL", "https://shop.example/")
    monkeypatch.setenv("AUCTION_PAYMENT_WINDOW_HOURS", "0")

    payment_conf = conf.get_payment_conf()

    assert payment_conf.frontend_url == "https://shop.example"
    assert payment_conf.auction_payment_window_hours == 1
    assert payment_conf.featured_pricing == {7: 50.0, 10: 70.0, 15: 100.0, 30: 180.0}


def test_sweeper_conf_defaults(monkeypatch):
    monkeypatch.delenv("CRON_API_KEY", raising=False)
    sweeper_conf = conf.get_sweeper_conf()
    assert sweeper_conf.reminder_windows_hours == [24, 12]
    assert sweeper_conf.cron_api_key is None
