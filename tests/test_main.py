import logging

import pytest

from observatory import main as main_module
from observatory.config import normalize_config
from observatory.errors import ChainIdMismatch
from observatory.main import main, setup_logging


@pytest.fixture(autouse=True)
def restore_root_logger():
    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level
    yield root
    root.handlers[:] = saved_handlers
    root.setLevel(saved_level)


def test_main_exits_non_zero_on_missing_config(tmp_path) -> None:
    assert main(["--config", str(tmp_path / "missing.yaml")]) == 1


def test_main_exits_non_zero_on_empty_chain_list(tmp_path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text("log_level: INFO\nchains: {}\n")

    assert main(["--config", str(path)]) == 1


def test_setup_logging_installs_a_single_handler(restore_root_logger) -> None:
    setup_logging("json", "debug")
    setup_logging("json", "debug")

    assert len(restore_root_logger.handlers) == 1
    assert restore_root_logger.level == logging.DEBUG


def test_supervisor_reports_fatal_monitor_error(monkeypatch) -> None:
    def mismatched_monitor(chain_id, *args):
        raise ChainIdMismatch(chain_id, "other-1")

    monkeypatch.setattr(main_module, "run_monitor", mismatched_monitor)
    config = normalize_config(
        {
            "chains": {
                "test-1": {
                    "validator_addr": "95E060D07713070FE9822F6C50BD76BCCBF9F17A",
                    "rpc_urls": ["https://rpc.example"],
                }
            }
        }
    )

    supervisor = main_module.Supervisor(config)
    try:
        supervisor.start()
        name, error = supervisor.wait()
    finally:
        supervisor.stop()

    assert name == "monitor-test-1"
    assert isinstance(error, ChainIdMismatch)
    assert error.actual == "other-1"


def test_supervisor_bounds_pager_channel_by_chain_count() -> None:
    config = normalize_config(
        {
            "chains": {
                chain_id: {
                    "validator_addr": "95E060D07713070FE9822F6C50BD76BCCBF9F17A",
                    "rpc_urls": [f"https://rpc.{chain_id}.example"],
                }
                for chain_id in ("test-1", "test-2")
            }
        }
    )

    supervisor = main_module.Supervisor(config)

    assert supervisor.pager.queue.maxsize == 4
