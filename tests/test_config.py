import importlib
import os

import pytest
import stripe

from dropship import stripe_service
from dropship.config import get_settings
from dropship.database import make_engine


def test_settings_read_database_url(mocker):
    mocker.patch.dict(os.environ, {"DATABASE_URL": "sqlite:///./other.db"})

    assert get_settings().database_url == "sqlite:///./other.db"


def test_engine_requires_database_url():
    with pytest.raises(RuntimeError):
        make_engine(None)


def test_stripe_key_comes_from_settings(monkeypatch, mocker):
    monkeypatch.setattr(stripe, "api_key", None)
    mocker.patch.dict(os.environ, {"STRIPE_SECRET_KEY": "sk_test_settings"})

    importlib.reload(stripe_service)

    assert stripe.api_key == "sk_test_settings"
