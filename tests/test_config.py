"""Unit tests for configuration loading in aliyun_ddns.cli.

Tests cover:
- Config file discovery (find_config_files)
- YAML worker loading (load_worker_configs)
- Single-worker environment fallback (worker_config_from_env, load_configs)
- Validation (validate_config)
- One-shot main() teardown
"""

from pathlib import Path
from unittest.mock import MagicMock

import pytest

import aliyun_ddns.cli as cli
from aliyun_ddns.cli import (
    DEFAULT_INTERVAL_MINUTES,
    DEFAULT_IP_URLS,
    find_config_files,
    load_configs,
    load_worker_configs,
    validate_config,
    worker_config_from_env,
)

WORKER_YAML = """\
workers:
  - name: home
    access_key_id: LTAI123
    access_key_secret: s3cret
    domain_name: example.com
    sub_domain_name: home
    interval_minutes: 10
    ip_urls:
      - http://ip1
      - http://ip2
"""

ENV = {
    "ALIYUN_ACCESS_KEY_ID": "LTAI123",
    "ALIYUN_ACCESS_KEY_SECRET": "s3cret",
    "DDNS_DOMAIN_NAME": "example.com",
    "DDNS_SUB_DOMAIN_NAME": "nas",
}

# =============================================================================
# Config Files
# =============================================================================


def test_find_config_files_directory_excludes_template(tmp_path: Path) -> None:
    (tmp_path / "a.yaml").write_text("workers: []\n", encoding="utf-8")
    (tmp_path / "b.yaml.template").write_text("workers: []\n", encoding="utf-8")
    (tmp_path / "c.yaml").write_text("workers: []\n", encoding="utf-8")

    files = find_config_files(str(tmp_path))
    assert [Path(f).name for f in files] == ["a.yaml", "c.yaml"]


def test_find_config_files_missing_path(tmp_path: Path) -> None:
    assert find_config_files(str(tmp_path / "nope.yaml")) == []


def test_load_worker_configs_from_file(tmp_path: Path) -> None:
    config_file = tmp_path / "workers.yaml"
    config_file.write_text(WORKER_YAML, encoding="utf-8")

    configs, errors = load_worker_configs(str(config_file))

    assert errors == []
    assert len(configs) == 1
    conf = configs[0]
    assert conf.name == "home"
    assert conf.access_key_id == "LTAI123"
    assert conf.fqdn == "home.example.com"
    assert conf.interval_minutes == 10
    assert conf.interval_seconds == 600
    assert conf.ip_discovery_urls == ("http://ip1", "http://ip2")


def test_load_worker_configs_defaults(tmp_path: Path) -> None:
    (tmp_path / "workers.yaml").write_text(
        "workers:\n"
        "  - access_key_id: k\n"
        "    access_key_secret: s\n"
        "    domain_name: example.com\n"
        "    sub_domain_name: www\n",
        encoding="utf-8",
    )

    configs, errors = load_worker_configs(str(tmp_path))

    assert errors == []
    assert configs[0].name == "worker-0"
    assert configs[0].interval_minutes == DEFAULT_INTERVAL_MINUTES
    assert configs[0].ip_discovery_urls == DEFAULT_IP_URLS


def test_load_worker_configs_reports_bad_items(tmp_path: Path) -> None:
    (tmp_path / "workers.yaml").write_text(
        WORKER_YAML
        + "  - name: broken\n"
        "    domain_name: example.com\n"
        "  - name: home\n"
        "    access_key_id: k\n"
        "    access_key_secret: s\n"
        "    domain_name: example.org\n"
        "    sub_domain_name: home\n"
        "  - name: zero\n"
        "    access_key_id: k\n"
        "    access_key_secret: s\n"
        "    domain_name: example.org\n"
        "    sub_domain_name: zero\n"
        "    interval_minutes: 0\n"
        "  - name: nourls\n"
        "    access_key_id: k\n"
        "    access_key_secret: s\n"
        "    domain_name: example.org\n"
        "    sub_domain_name: nourls\n"
        "    ip_urls: []\n",
        encoding="utf-8",
    )

    configs, errors = load_worker_configs(str(tmp_path))

    assert [c.name for c in configs] == ["home"]
    assert len(errors) == 4
    assert any("broken" in e and "access_key_id" in e for e in errors)
    assert any("duplicate worker name 'home'" in e for e in errors)


def test_load_worker_configs_invalid_yaml(tmp_path: Path) -> None:
    (tmp_path / "workers.yaml").write_text("workers: [unclosed\n", encoding="utf-8")

    configs, errors = load_worker_configs(str(tmp_path))

    assert configs == []
    assert len(errors) == 1


def test_load_worker_configs_missing_workers_key(tmp_path: Path) -> None:
    (tmp_path / "workers.yaml").write_text("something: else\n", encoding="utf-8")

    assert load_worker_configs(str(tmp_path)) == ([], [])


# =============================================================================
# Environment Fallback
# =============================================================================


def test_worker_config_from_env() -> None:
    conf = worker_config_from_env({**ENV, "DDNS_IP_URLS": "http://a, ,http://b"})

    assert conf is not None
    assert conf.name == "default"
    assert conf.sub_domain_name == "nas"
    assert conf.interval_minutes == DEFAULT_INTERVAL_MINUTES
    assert conf.ip_discovery_urls == ("http://a", "http://b")


def test_worker_config_from_env_unset() -> None:
    assert worker_config_from_env({}) is None


def test_worker_config_from_env_incomplete() -> None:
    with pytest.raises(ValueError):
        worker_config_from_env({"DDNS_DOMAIN_NAME": "example.com"})


def test_worker_config_from_env_bad_interval() -> None:
    with pytest.raises(ValueError):
        worker_config_from_env({**ENV, "DDNS_INTERVAL_MINUTES": "soon"})


def test_load_configs_prefers_file(tmp_path: Path) -> None:
    (tmp_path / "workers.yaml").write_text(WORKER_YAML, encoding="utf-8")

    configs, _ = load_configs(str(tmp_path), ENV)

    assert [c.sub_domain_name for c in configs] == ["home"]


def test_load_configs_falls_back_to_env(tmp_path: Path) -> None:
    configs, errors = load_configs(str(tmp_path / "missing.yaml"), ENV)

    assert errors == []
    assert [c.sub_domain_name for c in configs] == ["nas"]


# =============================================================================
# Validation
# =============================================================================


def test_validate_config_requires_a_worker() -> None:
    assert validate_config([], []) is False


def test_validate_config_accepts_partial_errors(tmp_path: Path) -> None:
    (tmp_path / "workers.yaml").write_text(WORKER_YAML, encoding="utf-8")
    configs, _ = load_worker_configs(str(tmp_path))

    assert validate_config(configs, ["worker 'x' missing domain_name"]) is True


@pytest.mark.parametrize("interval", [".inf", "-.inf", ".nan", "1e300"])
def test_load_worker_configs_rejects_unusable_interval(tmp_path: Path, interval: str) -> None:
    """Intervals the timer cannot wait on are rejected at load time."""
    (tmp_path / "workers.yaml").write_text(
        "workers:\n"
        "  - name: home\n"
        "    access_key_id: k\n"
        "    access_key_secret: s\n"
        "    domain_name: example.com\n"
        "    sub_domain_name: home\n"
        f"    interval_minutes: {interval}\n",
        encoding="utf-8",
    )

    configs, errors = load_worker_configs(str(tmp_path))

    assert configs == []
    assert len(errors) == 1
    assert "interval_minutes" in errors[0]


@pytest.mark.parametrize("interval", ["inf", "nan"])
def test_worker_config_from_env_rejects_non_finite_interval(interval: str) -> None:
    with pytest.raises(ValueError):
        worker_config_from_env({**ENV, "DDNS_INTERVAL_MINUTES": interval})


# =============================================================================
# Main
# =============================================================================


def test_main_once_reconciles_and_releases_everything(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    """One-shot mode reconciles each worker, then disposes it and closes its clients."""
    (tmp_path / "workers.yaml").write_text(WORKER_YAML, encoding="utf-8")
    monkeypatch.setattr(cli, "DDNS_CONFIG_PATH", str(tmp_path))
    monkeypatch.setattr(cli, "SYNC_MODE", "once")

    monkeypatch.setattr(cli.signal, "signal", MagicMock())

    worker = MagicMock()

    def create_worker(conf):
        worker.config = conf
        worker.name = conf.name
        return worker

    monkeypatch.setattr(cli, "create_worker", create_worker)

    cli.main()

    worker.reconcile.assert_called_once_with()
    worker.run.assert_not_called()
    worker.dispose.assert_called_once_with()
    worker.ip_client.close.assert_called_once_with()
    worker.dns_provider.close.assert_called_once_with()
