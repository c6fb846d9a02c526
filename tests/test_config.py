from __future__ import annotations

import importlib.util

import pytest

import bookmarket.config as config_module
from bookmarket.config import Config


def _load_config(monkeypatch, **env):
    """Import a private copy of the config module under the given environment."""
    for name in ("APP_ENV", "PAYSTACK_ALLOW_TEST_WEBHOOKS", "PAYSTACK_VERIFY_PURCHASES", "ADMIN_API_TOKEN"):
        monkeypatch.delenv(name, raising=False)
    for name, value in env.items():
        monkeypatch.setenv(name, value)
    spec = importlib.util.spec_from_file_location("_isolated_config", config_module.__file__)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module.Config


@pytest.mark.parametrize("app_env", ["development", "production"])
def test_secure_defaults_do_not_depend_on_app_env(monkeypatch, app_env):
    config = _load_config(monkeypatch, APP_ENV=app_env)

    assert config.PAYSTACK_VERIFY_PURCHASES is True
    assert config.PAYSTACK_ALLOW_TEST_WEBHOOKS is False
    assert config.ADMIN_API_TOKEN == ""


def test_flags_can_be_overridden(monkeypatch):
    config = _load_config(monkeypatch, PAYSTACK_VERIFY_PURCHASES="false", PAYSTACK_ALLOW_TEST_WEBHOOKS="true")

    assert config.PAYSTACK_VERIFY_PURCHASES is False
    assert config.PAYSTACK_ALLOW_TEST_WEBHOOKS is True


def test_unset_admin_token_locks_admin_routes(app_client, monkeypatch):
    monkeypatch.setattr(Config, "ADMIN_API_TOKEN", "")

    assert app_client.get("/admin/metrics").status_code == 403
    assert app_client.get("/admin/metrics", headers={"X-Admin-Token": ""}).status_code == 403
