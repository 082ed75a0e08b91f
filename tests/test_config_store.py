from __future__ import annotations

import json

import pytest

from openbio_desktop.config_store import ConfigStore
from openbio_desktop.errors import ConfigStoreError
from openbio_desktop.models import DeploymentConfig, DeploymentMode
from openbio_desktop.paths import get_config_file_path

pytestmark = pytest.mark.core_headless


def test_default_path_is_under_data_dir(isolate_data_dir):
    store = ConfigStore()
    assert store.path == isolate_data_dir / "config.json"
    assert store.path == get_config_file_path()


def test_load_missing_file_returns_unconfigured_default(tmp_path):
    store = ConfigStore(tmp_path / "missing" / "config.json")
    config = store.load()
    assert config.mode == DeploymentMode.UNCONFIGURED
    assert config.lab_name is None
    assert config.api_url is None
    assert config.server_port == 3000
    assert store.exists() is False


@pytest.mark.parametrize("mode", list(DeploymentMode))
def test_save_then_load_round_trip(tmp_path, mode):
    store = ConfigStore(tmp_path / "nested" / "config.json")
    config = DeploymentConfig(
        mode=mode,
        lab_name="Smith Lab",
        api_url="http://10.0.0.5:3000",
        server_port=4321,
    )
    store.save(config)
    assert store.exists()
    assert store.load() == config


def test_file_uses_camel_case_keys(tmp_path):
    store = ConfigStore(tmp_path / "config.json")
    store.save(DeploymentConfig(mode=DeploymentMode.HUB, lab_name="Smith Lab", server_port=3001))
    data = json.loads(store.path.read_text(encoding="utf-8"))
    assert data == {"mode": "hub", "labName": "Smith Lab", "apiUrl": None, "serverPort": 3001}


@pytest.mark.parametrize(
    "content",
    [
        "not json at all",
        '{"mode": "galaxy", "serverPort": 3000}',
        '{"mode": "local", "serverPort": 70000}',
        '{"mode": "local", "serverPort": 0}',
        "",
    ],
)
def test_unreadable_file_resets_to_default(tmp_path, content):
    path = tmp_path / "config.json"
    path.write_text(content, encoding="utf-8")
    config = ConfigStore(path).load()
    assert config == DeploymentConfig()


def test_save_failure_is_raised(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("a file where a directory should be", encoding="utf-8")
    store = ConfigStore(blocker / "config.json")
    with pytest.raises(ConfigStoreError):
        store.save(DeploymentConfig(mode=DeploymentMode.LOCAL))


def test_save_overwrites_previous_config(tmp_path):
    store = ConfigStore(tmp_path / "config.json")
    store.save(DeploymentConfig(mode=DeploymentMode.HUB, lab_name="Old Lab"))
    store.save(DeploymentConfig(mode=DeploymentMode.SPOKE, api_url="http://10.0.0.9:3000"))
    config = store.load()
    assert config.mode == DeploymentMode.SPOKE
    assert config.lab_name is None
    assert config.api_url == "http://10.0.0.9:3000"
