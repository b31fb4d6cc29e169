"""Unit tests for core/config.py -- SECRET_KEY policy and environment handling."""

import pytest
from pydantic import ValidationError

from core.config import Environment, Settings


def test_debug_mode_generates_secret_key():
    settings = Settings(_env_file=None, debug=True, secret_key="")
    assert len(settings.secret_key) >= 32


def test_missing_secret_key_outside_debug_is_fatal():
    with pytest.raises(ValidationError, match="SECRET_KEY is required"):
        Settings(_env_file=None, debug=False, secret_key="")


def test_short_secret_key_is_rejected():
    with pytest.raises(ValidationError, match="at least 32"):
        Settings(_env_file=None, debug=True, secret_key="too-short")


def test_ttl_must_be_positive():
    with pytest.raises(ValidationError):
        Settings(_env_file=None, secret_key="s" * 32, token_ttl_seconds=0)


def test_only_local_serves_insecure_cookies():
    assert Settings(_env_file=None, secret_key="s" * 32, environment="local").secure_cookies is False
    assert Settings(_env_file=None, secret_key="s" * 32, environment="review").secure_cookies is True
    assert Settings(_env_file=None, secret_key="s" * 32, environment=Environment.production).secure_cookies is True
