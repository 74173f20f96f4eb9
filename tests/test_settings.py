from datetime import UTC, datetime

import pytest
import yaml

from route_cli.core.exceptions import ConfigFileError
from route_cli.core.settings import (
    DEFAULT_CORE_NAME,
    DEFAULT_MIXED_PORT,
    AppConfig,
    AppPaths,
    RuntimeState,
    load_config,
    save_config,
)


def test_paths_follow_environment_override(app_paths):
    paths = AppPaths.discover()

    assert paths == app_paths
    assert paths.config_file == app_paths.root / "config.yaml"
    assert paths.subscription_cache == app_paths.root / "cache" / "subscription.yaml"
    assert paths.core_config == app_paths.root / "generated" / "sing-box.json"


def test_paths_default_to_home(monkeypatch, tmp_path):
    monkeypatch.delenv("ROUTE_CLI_HOME", raising=False)
    monkeypatch.setenv("HOME", str(tmp_path))

    assert AppPaths.discover().root == tmp_path / ".route-cli"


def test_missing_config_is_created_with_defaults(app_paths):
    cfg = load_config(app_paths)

    assert app_paths.config_file.exists()
    assert cfg.subscription.url is None
    assert cfg.proxy_core.path == DEFAULT_CORE_NAME
    assert cfg.proxy.mixed_port == DEFAULT_MIXED_PORT
    assert "openai.com" in cfg.routing.proxy_domains
    assert cfg.routing.no_proxy == ["localhost", "127.0.0.1"]
    assert cfg.probe.method == "tcp"
    assert cfg.runtime == RuntimeState()


def test_round_trip(app_paths):
    at = datetime(2025, 3, 1, 12, 30, tzinfo=UTC)
    cfg = load_config(app_paths)
    cfg.subscription.url = "https://example.com/sub"
    cfg.proxy.mixed_port = 28000
    cfg.probe.method = "ping"
    save_config(app_paths, cfg.with_runtime(RuntimeState(selected_node="韩国 02", last_selected_at=at)))

    loaded = load_config(app_paths)

    assert loaded.subscription.url == "https://example.com/sub"
    assert loaded.proxy.mixed_port == 28000
    assert loaded.probe.method == "ping"
    assert loaded.runtime == RuntimeState(selected_node="韩国 02", last_selected_at=at)
    assert "韩国 02" in app_paths.config_file.read_text(encoding="utf-8")


def test_partial_document_gets_defaults(app_paths):
    app_paths.root.mkdir(parents=True)
    app_paths.config_file.write_text("subscription:\n  url: https://example.com/sub\nfuture_section: 1\n")

    cfg = load_config(app_paths)

    assert cfg.subscription.url == "https://example.com/sub"
    assert cfg.proxy.mixed_port == DEFAULT_MIXED_PORT
    assert cfg.routing_policy().proxy_domains == frozenset(cfg.routing.proxy_domains)


def test_naive_timestamp_is_treated_as_utc():
    cfg = AppConfig.from_dict({"runtime": {"selected_node": "sg-1", "last_selected_at": "2025-01-02T03:04:05"}})

    assert cfg.runtime.last_selected_at == datetime(2025, 1, 2, 3, 4, 5, tzinfo=UTC)


@pytest.mark.parametrize(
    "data",
    [
        ["not", "a", "mapping"],
        {"proxy": "27890"},
        {"proxy": {"mixed_port": 70000}},
        {"proxy": {"mixed_port": "27890"}},
        {"proxy_core": {"startup_timeout": 0}},
        {"routing": {"proxy_domains": "openai.com"}},
        {"probe": {"method": "carrier-pigeon"}},
        {"runtime": {"selected_node": 5}},
        {"runtime": {"last_selected_at": "yesterday"}},
    ],
)
def test_invalid_documents(data):
    with pytest.raises(ConfigFileError):
        AppConfig.from_dict(data)


def test_malformed_yaml(app_paths):
    app_paths.root.mkdir(parents=True)
    app_paths.config_file.write_text("proxy: [unclosed\n")

    with pytest.raises(ConfigFileError, match="config.yaml"):
        load_config(app_paths)


def test_saved_document_keeps_section_order(app_paths):
    save_config(app_paths, AppConfig())

    data = yaml.safe_load(app_paths.config_file.read_text(encoding="utf-8"))

    assert list(data) == ["subscription", "proxy_core", "proxy", "routing", "probe", "runtime"]
