from typing import Dict, List

import yaml

from observatory.errors import ConfigError

VALIDATOR_ADDR_LENGTH = 20

DEFAULTS = {
    "log_format": "text",
    "log_level": "INFO",
    "rpc_timeout": 3,
    "history_size": 100,
}

ALERTING_DEFAULTS = {
    "interval": 120,
    "missed_blocks_threshold": 50,
    "recovered_after_threshold": 5,
}

DATADOG_DEFAULTS = {
    "site": "datadoghq.com",
    "tags": {},
}

METRICS_DEFAULTS = {
    "job": "observatory",
}

TOP_LEVEL_KEYS = set(DEFAULTS) | {"alerting", "datadog", "metrics", "chains"}
CHAIN_KEYS = {"validator_addr", "rpc_urls"}


# Config loader with normalization
def load_config(path):
    try:
        with open(path, "r") as f:
            raw_config = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(f"unable to read config {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid YAML in {path}: {e}") from e
    return normalize_config(raw_config)


def normalize_config(config):
    """
    Validate a raw config mapping and fill in defaults.

    Expected format:
      log_format: text
      alerting:
        missed_blocks_threshold: 50
      datadog:
        api_key: abc123
      chains:
        cosmoshub-4:
          validator_addr: 95E060D07713070FE9822F6C50BD76BCCBF9F17A
          rpc_urls:
            - https://rpc1.com
            - https://rpc2.com

    Unknown keys are rejected rather than ignored so that typos don't silently
    disable monitoring.
    """
    if not isinstance(config, dict):
        raise ConfigError("config must be a mapping")
    _reject_unknown_keys(config, TOP_LEVEL_KEYS, "config")

    normalized = {}
    for key, default in DEFAULTS.items():
        normalized[key] = config.get(key, default)

    if normalized["log_format"] not in ("text", "json"):
        raise ConfigError(f"log_format must be 'text' or 'json', got {normalized['log_format']!r}")
    if not isinstance(normalized["log_level"], str):
        raise ConfigError("log_level must be a string")
    normalized["rpc_timeout"] = _positive_number(normalized["rpc_timeout"], "rpc_timeout")
    normalized["history_size"] = _positive_int(normalized["history_size"], "history_size")

    normalized["alerting"] = _normalize_alerting(config.get("alerting") or {})
    normalized["datadog"] = _normalize_datadog(config.get("datadog"))
    normalized["metrics"] = _normalize_metrics(config.get("metrics"))

    chains = config.get("chains")
    if not chains:
        raise ConfigError("no chains configured")
    if not isinstance(chains, dict):
        raise ConfigError("chains must be a mapping of chain ID to chain config")

    normalized["chains"] = {}
    for chain_id, chain_config in chains.items():
        normalized["chains"][str(chain_id)] = _normalize_chain(str(chain_id), chain_config)

    return normalized


def _normalize_alerting(alerting: dict) -> dict:
    if not isinstance(alerting, dict):
        raise ConfigError("alerting must be a mapping")
    _reject_unknown_keys(alerting, set(ALERTING_DEFAULTS), "alerting")

    result = dict(ALERTING_DEFAULTS)
    result.update(alerting)
    result["interval"] = _positive_number(result["interval"], "alerting.interval")
    for key in ("missed_blocks_threshold", "recovered_after_threshold"):
        result[key] = _positive_int(result[key], f"alerting.{key}")
    return result


def _normalize_datadog(datadog):
    if datadog is None:
        return None
    if not isinstance(datadog, dict):
        raise ConfigError("datadog must be a mapping")
    _reject_unknown_keys(datadog, set(DATADOG_DEFAULTS) | {"api_key"}, "datadog")

    result = dict(DATADOG_DEFAULTS)
    result.update(datadog)
    if not isinstance(result.get("api_key"), str) or not result["api_key"]:
        raise ConfigError("datadog.api_key is required when datadog is configured")
    if not isinstance(result["tags"], dict):
        raise ConfigError("datadog.tags must be a mapping")
    result["tags"] = {str(k): str(v) for k, v in result["tags"].items()}
    return result


def _normalize_metrics(metrics):
    if metrics is None:
        return None
    if not isinstance(metrics, dict):
        raise ConfigError("metrics must be a mapping")
    _reject_unknown_keys(metrics, set(METRICS_DEFAULTS) | {"pushgateway"}, "metrics")

    result = dict(METRICS_DEFAULTS)
    result.update(metrics)
    if not isinstance(result.get("pushgateway"), str) or not result["pushgateway"]:
        raise ConfigError("metrics.pushgateway is required when metrics is configured")
    return result


def _normalize_chain(chain_id: str, chain_config) -> dict:
    if not isinstance(chain_config, dict):
        raise ConfigError(f"chain {chain_id} must be a mapping")
    _reject_unknown_keys(chain_config, CHAIN_KEYS, f"chains.{chain_id}")

    return {
        "validator_addr": parse_validator_addr(chain_config.get("validator_addr"), chain_id),
        "rpc_urls": _normalize_urls(chain_config.get("rpc_urls"), chain_id),
    }


def parse_validator_addr(value, chain_id: str = "") -> bytes:
    """Parse a hex encoded consensus address into its raw bytes."""
    if not isinstance(value, str):
        raise ConfigError(f"chain {chain_id}: validator_addr must be a hex string")
    try:
        addr = bytes.fromhex(value)
    except ValueError as e:
        raise ConfigError(f"chain {chain_id}: invalid validator_addr {value!r}: {e}") from e
    if len(addr) != VALIDATOR_ADDR_LENGTH:
        raise ConfigError(
            f"chain {chain_id}: validator_addr must be {VALIDATOR_ADDR_LENGTH} bytes, got {len(addr)}"
        )
    return addr


def _normalize_urls(urls, chain_id: str) -> List[str]:
    if not isinstance(urls, list) or not urls:
        raise ConfigError(f"chain {chain_id}: rpc_urls must be a non-empty list")

    result = []
    for url in urls:
        if not isinstance(url, str) or not url.startswith(("http://", "https://")):
            raise ConfigError(f"chain {chain_id}: invalid RPC URL {url!r}")
        url = url.rstrip("/")
        if url not in result:
            result.append(url)
    return result


def _reject_unknown_keys(section: Dict, allowed: set, where: str):
    unknown = sorted(str(key) for key in set(section) - allowed)
    if unknown:
        raise ConfigError(f"unknown field(s) in {where}: {', '.join(unknown)}")


def _positive_int(value, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ConfigError(f"{name} must be a positive integer, got {value!r}")
    return value


def _positive_number(value, name: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ConfigError(f"{name} must be a positive number, got {value!r}")
    return float(value)
