#!/usr/bin/env python3
"""aliyun-ddns - Dynamic DNS for Alibaba Cloud DNS

Keeps one or more A records at Alibaba Cloud DNS pointed at the public IPv4
address of the host this process runs on. Each configured worker polls on
its own schedule, discovers the current address from a list of "what is my
IP" endpoints, and adds or updates its record when needed.

Environment variables:

    Workers:
        DDNS_CONFIG_PATH       Path to a YAML file, or a directory of *.yaml files,
                               listing workers (default: /config/workers.yaml)
                               Example config file:
                                 workers:
                                   - name: "home"
                                     access_key_id: "LTAI..."
                                     access_key_secret: "..."
                                     domain_name: "example.com"
                                     sub_domain_name: "home"
                                     interval_minutes: 5
                                     ip_urls:
                                       - "https://api.ipify.org"
                                       - "https://ifconfig.me/ip"

        Single-worker mode (used if no config file yields a worker):
            ALIYUN_ACCESS_KEY_ID       AccessKey ID
            ALIYUN_ACCESS_KEY_SECRET   AccessKey secret
            DDNS_DOMAIN_NAME           Domain, e.g. example.com
            DDNS_SUB_DOMAIN_NAME       Record host, e.g. home
            DDNS_INTERVAL_MINUTES      Poll interval in minutes (default: 5)
            DDNS_IP_URLS               Comma-separated discovery URLs
                                       (default: built-in list)
            DDNS_WORKER_NAME           Worker name for logs (default: default)

    Runtime:
        SYNC_MODE              "once" or "watch" (scheduled workers) (default: watch)
        HTTP_TIMEOUT_SECONDS   Timeout for discovery and DNS API calls (default: 10)
        LOG_LEVEL              DEBUG, INFO, WARNING, ERROR (default: INFO)
"""

from __future__ import annotations

import logging
import os
import signal
import sys
import threading
from pathlib import Path
from typing import Any, List, Mapping, Optional, Set, Tuple

import yaml

from aliyun_ddns.providers import AliyunDNSProvider, HttpIpDiscoveryClient
from aliyun_ddns.worker import ReconciliationWorker, WorkerConfig

# =============================================================================
# Configuration
# =============================================================================

DEFAULT_IP_URLS: Tuple[str, ...] = (
    "https://api.ipify.org",
    "https://ifconfig.me/ip",
    "https://ipinfo.io/ip",
    "http://ip.3322.net",
)
DEFAULT_INTERVAL_MINUTES = 5.0

DDNS_CONFIG_PATH = os.getenv("DDNS_CONFIG_PATH", "/config/workers.yaml")

SYNC_MODE = os.getenv("SYNC_MODE", "watch").lower().strip()
HTTP_TIMEOUT_SECONDS = float(os.getenv("HTTP_TIMEOUT_SECONDS", "10"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# =============================================================================
# Logging Setup
# =============================================================================

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

# =============================================================================
# Config Loading
# =============================================================================


def find_config_files(config_path: str) -> List[str]:
    """Find all .yaml config files in directory or return single file.

    Args:
        config_path: Path to config file or directory

    Returns:
        List of config file paths (excluding .template files)
    """
    path = Path(config_path)

    if path.is_file():
        return [str(path)]

    if path.is_dir():
        yaml_files = sorted(path.glob("*.yaml"))
        return [str(f) for f in yaml_files if not f.name.endswith(".template")]

    return []


def _parse_url_list(value: Any) -> Tuple[str, ...]:
    """Accept a YAML list or a comma-separated string; blanks are dropped."""
    if value is None:
        return ()
    items = value.split(",") if isinstance(value, str) else value
    if not isinstance(items, (list, tuple)):
        raise ValueError(f"expected a list of URLs, got {type(items).__name__}")
    return tuple(u for u in (str(i).strip() for i in items) if u)


def _build_worker_config(item: Mapping[str, Any], default_name: str) -> WorkerConfig:
    """Build a WorkerConfig from a mapping. Raises ValueError if unusable."""
    name = str(item.get("name") or default_name).strip()

    missing = [
        key
        for key in ("access_key_id", "access_key_secret", "domain_name", "sub_domain_name")
        if not str(item.get(key) or "").strip()
    ]
    if missing:
        raise ValueError(f"worker '{name}' missing {', '.join(missing)}")

    raw_interval = item.get("interval_minutes")
    try:
        interval = float(raw_interval) if raw_interval not in (None, "") else DEFAULT_INTERVAL_MINUTES
    except (TypeError, ValueError):
        raise ValueError(f"worker '{name}' has invalid interval_minutes: {raw_interval!r}")

    urls = _parse_url_list(item.get("ip_urls"))
    if item.get("ip_urls") is None:
        urls = DEFAULT_IP_URLS

    return WorkerConfig(
        name=name,
        access_key_id=str(item["access_key_id"]).strip(),
        access_key_secret=str(item["access_key_secret"]).strip(),
        domain_name=str(item["domain_name"]).strip(),
        sub_domain_name=str(item["sub_domain_name"]).strip(),
        interval_minutes=interval,
        ip_discovery_urls=urls,
    )


def load_worker_configs(config_path: str) -> Tuple[List[WorkerConfig], List[str]]:
    """Load workers from the YAML file(s) at config_path.

    Returns (configs, errors). Unusable items are reported in errors and
    skipped; the remaining workers are still returned.
    """
    configs: List[WorkerConfig] = []
    errors: List[str] = []
    seen_names: Set[str] = set()

    for config_file in find_config_files(config_path):
        try:
            with open(config_file, "r") as f:
                config_data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            errors.append(f"Failed to read config file {config_file}: {e}")
            continue

        if not isinstance(config_data, dict) or "workers" not in config_data:
            logger.warning(f"Config file {config_file} missing 'workers' key")
            continue

        workers = config_data["workers"] or []
        if not isinstance(workers, list):
            errors.append(f"Config file {config_file}: 'workers' must be a list")
            continue

        for index, item in enumerate(workers):
            if not isinstance(item, dict):
                errors.append(f"Config file {config_file}: worker #{index} is not a mapping")
                continue
            try:
                conf = _build_worker_config(item, default_name=f"worker-{index}")
            except ValueError as e:
                errors.append(f"Config file {config_file}: {e}")
                continue
            if conf.name in seen_names:
                errors.append(f"Config file {config_file}: duplicate worker name '{conf.name}'")
                continue
            seen_names.add(conf.name)
            configs.append(conf)

    return configs, errors


def worker_config_from_env(env: Mapping[str, str]) -> Optional[WorkerConfig]:
    """Build the single-worker config from environment variables.

    Returns None when none of the worker variables are set. Raises ValueError
    when they are set but incomplete or invalid.
    """
    keys = (
        "ALIYUN_ACCESS_KEY_ID",
        "ALIYUN_ACCESS_KEY_SECRET",
        "DDNS_DOMAIN_NAME",
        "DDNS_SUB_DOMAIN_NAME",
    )
    if not any(env.get(k, "").strip() for k in keys):
        return None

    item = {
        "name": env.get("DDNS_WORKER_NAME", "default"),
        "access_key_id": env.get("ALIYUN_ACCESS_KEY_ID", ""),
        "access_key_secret": env.get("ALIYUN_ACCESS_KEY_SECRET", ""),
        "domain_name": env.get("DDNS_DOMAIN_NAME", ""),
        "sub_domain_name": env.get("DDNS_SUB_DOMAIN_NAME", ""),
        "interval_minutes": env.get("DDNS_INTERVAL_MINUTES"),
        "ip_urls": env.get("DDNS_IP_URLS") or None,
    }
    return _build_worker_config(item, default_name="default")


def load_configs(
    config_path: str, env: Mapping[str, str]
) -> Tuple[List[WorkerConfig], List[str]]:
    """Workers from config_path, falling back to the single-worker env vars."""
    configs, errors = load_worker_configs(config_path)
    if configs:
        return configs, errors

    try:
        conf = worker_config_from_env(env)
    except ValueError as e:
        errors.append(f"Environment: {e}")
        return configs, errors
    if conf is not None:
        configs.append(conf)
    return configs, errors


# =============================================================================
# Main
# =============================================================================


def validate_config(configs: List[WorkerConfig], errors: List[str]) -> bool:
    """Log configuration problems. False if there is nothing to run."""
    for error in errors:
        logger.error(error)

    if not configs:
        logger.error(
            f"No usable worker configured (set up {DDNS_CONFIG_PATH} "
            "or ALIYUN_ACCESS_KEY_ID/ALIYUN_ACCESS_KEY_SECRET/DDNS_DOMAIN_NAME/DDNS_SUB_DOMAIN_NAME)"
        )
        return False

    if SYNC_MODE not in ("once", "watch"):
        logger.error(f"Invalid SYNC_MODE: {SYNC_MODE}. Use 'once' or 'watch'")
        return False

    return True


def create_worker(conf: WorkerConfig) -> ReconciliationWorker:
    """Wire a worker to the HTTP discovery client and the Aliyun provider."""
    return ReconciliationWorker(
        conf,
        ip_client=HttpIpDiscoveryClient(timeout_seconds=HTTP_TIMEOUT_SECONDS),
        dns_provider=AliyunDNSProvider(
            conf.access_key_id,
            conf.access_key_secret,
            timeout_seconds=HTTP_TIMEOUT_SECONDS,
        ),
    )


def main():
    """Main entry point."""
    configs, errors = load_configs(DDNS_CONFIG_PATH, os.environ)
    if not validate_config(configs, errors):
        logger.error("Configuration validation failed")
        sys.exit(1)

    workers = [create_worker(conf) for conf in configs]
    for w in workers:
        logger.info(
            f"Worker '{w.name}': {w.config.fqdn} every {w.config.interval_minutes:g} min "
            f"({len(w.config.ip_discovery_urls)} discovery url(s))"
        )
    logger.info(f"Sync mode: {SYNC_MODE}")

    shutdown = threading.Event()
    signal.signal(signal.SIGTERM, lambda *_: shutdown.set())

    try:
        if SYNC_MODE == "once":
            for w in workers:
                w.reconcile()
            return

        for w in workers:
            w.run()
        while not shutdown.wait(1.0):
            pass
        logger.info("Received SIGTERM")

    except KeyboardInterrupt:
        logger.info("Shutting down gracefully...")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)
    finally:
        for w in workers:
            w.stop()
            w.dispose()
            w.ip_client.close()
            w.dns_provider.close()


if __name__ == "__main__":
    main()
