import copy

import pytest

from observatory.config import load_config, normalize_config, parse_validator_addr
from observatory.errors import ConfigError

VALID = {
    "chains": {
        "cosmoshub-4": {
            "validator_addr": "95E060D07713070FE9822F6C50BD76BCCBF9F17A",
            "rpc_urls": ["https://cosmos-rpc.polkachu.com/", "https://cosmoshub.validator.network"],
        },
    },
}


def _with(**overrides):
    config = copy.deepcopy(VALID)
    config.update(overrides)
    return config


def test_defaults_are_filled_in() -> None:
    config = normalize_config(copy.deepcopy(VALID))

    assert config["log_format"] == "text"
    assert config["log_level"] == "INFO"
    assert config["rpc_timeout"] == 3.0
    assert config["history_size"] == 100
    assert config["alerting"] == {
        "interval": 120.0,
        "missed_blocks_threshold": 50,
        "recovered_after_threshold": 5,
    }
    assert config["datadog"] is None
    assert config["metrics"] is None


def test_chain_entries_are_parsed() -> None:
    chain = normalize_config(copy.deepcopy(VALID))["chains"]["cosmoshub-4"]

    assert chain["validator_addr"] == bytes.fromhex("95E060D07713070FE9822F6C50BD76BCCBF9F17A")
    assert chain["rpc_urls"] == ["https://cosmos-rpc.polkachu.com", "https://cosmoshub.validator.network"]


def test_duplicate_rpc_urls_are_collapsed_silently(caplog) -> None:
    config = copy.deepcopy(VALID)
    config["chains"]["cosmoshub-4"]["rpc_urls"] = [
        "https://cosmoshub.validator.network",
        "https://cosmoshub.validator.network/",
        "https://cosmos-rpc.polkachu.com",
        "https://cosmoshub.validator.network",
    ]

    chain = normalize_config(config)["chains"]["cosmoshub-4"]

    assert chain["rpc_urls"] == ["https://cosmoshub.validator.network", "https://cosmos-rpc.polkachu.com"]
    assert caplog.records == []


def test_optional_sections() -> None:
    config = normalize_config(
        _with(
            alerting={"missed_blocks_threshold": 10},
            datadog={"api_key": "secret", "tags": {"env": "prod"}},
            metrics={"pushgateway": "localhost:9091"},
        )
    )

    assert config["alerting"]["missed_blocks_threshold"] == 10
    assert config["alerting"]["recovered_after_threshold"] == 5
    assert config["datadog"] == {"api_key": "secret", "site": "datadoghq.com", "tags": {"env": "prod"}}
    assert config["metrics"] == {"pushgateway": "localhost:9091", "job": "observatory"}


@pytest.mark.parametrize(
    "config",
    [
        _with(chains={}),
        {"log_level": "INFO"},
        _with(chains=["cosmoshub-4"]),
        _with(interval=15),
        _with(alerting={"threshold": 3}),
        _with(datadog={"site": "datadoghq.com"}),
        _with(log_format="xml"),
        _with(history_size=0),
        _with(rpc_timeout="3s"),
        _with(chains={"x-1": {"validator_addr": "AB" * 20, "rpc_urls": ["https://a"], "cname": "x"}}),
        _with(chains={"x-1": {"validator_addr": "AB" * 20, "rpc_urls": []}}),
        _with(chains={"x-1": {"validator_addr": "AB" * 20, "rpc_urls": ["ftp://a"]}}),
        _with(chains={"x-1": {"validator_addr": "AB" * 19, "rpc_urls": ["https://a"]}}),
        _with(chains={"x-1": {"validator_addr": "not-hex", "rpc_urls": ["https://a"]}}),
        None,
    ],
)
def test_invalid_configs_are_rejected(config) -> None:
    with pytest.raises(ConfigError):
        normalize_config(config)


def test_parse_validator_addr_accepts_lowercase() -> None:
    assert parse_validator_addr("ab" * 20) == b"\xab" * 20


def test_load_config_reads_yaml(tmp_path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text(
        "log_format: json\n"
        "chains:\n"
        "  osmosis-1:\n"
        "    validator_addr: 20EFE186DA91A00AC7F042CD6CB6A1E882C583C7\n"
        "    rpc_urls:\n"
        "      - https://osmosis-rpc.polkachu.com\n"
    )

    config = load_config(path)

    assert config["log_format"] == "json"
    assert list(config["chains"]) == ["osmosis-1"]


def test_load_config_reports_missing_file(tmp_path) -> None:
    with pytest.raises(ConfigError):
        load_config(tmp_path / "missing.yaml")


def test_load_config_reports_invalid_yaml(tmp_path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text("chains: [unclosed\n")

    with pytest.raises(ConfigError):
        load_config(path)
