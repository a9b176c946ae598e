"""
Test the offline rule and store CLI
"""

import json

import pytest

from capture_relay.cli.rule_manager import RuleManager
from capture_relay.core.config import ApplicationConfig
from capture_relay.core.store import CAPTURE_RULES, REQUESTS


@pytest.fixture
def manager(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("RELAY_DATA_DIRECTORY", str(tmp_path / "db"))
    return RuleManager(ApplicationConfig(config_file=None, ensure_directories=False))


async def test_list_rules(manager, capsys):
    await manager.rules.add("capture", {"host": "api.example.com", "methods": ["get"]})
    await manager.rules.add("intercept", {"host": "shop.test", "modifyBody": "x"})

    assert await manager.list_rules() is True

    output = capsys.readouterr().out
    assert "Capture Rules" in output
    assert "Intercept Rules" in output
    # No response rules were added
    assert "None configured" in output


async def test_list_rules_with_corrupt_store(manager, tmp_path):
    (tmp_path / "db" / f"{CAPTURE_RULES}.json").write_text("{not json")

    assert await manager.list_rules() is False


def test_store_status(manager, capsys):
    assert manager.store_status() is True

    assert REQUESTS in capsys.readouterr().out


async def test_clear_data_requires_confirmation(manager, tmp_path, monkeypatch):
    requests_file = tmp_path / "db" / f"{REQUESTS}.json"
    requests_file.write_text(json.dumps([{"id": "r1", "url": "https://a.test/"}]))

    monkeypatch.setattr("builtins.input", lambda prompt: "no")
    assert await manager.clear_data() is False
    assert len(json.loads(requests_file.read_text())) == 1

    monkeypatch.setattr("builtins.input", lambda prompt: "yes")
    assert await manager.clear_data() is True
    assert json.loads(requests_file.read_text()) == []
