import argparse
import functools
import logging
import queue
import sys
import threading

from pythonjsonlogger.json import JsonFormatter

from observatory.chain_monitor import run_monitor
from observatory.client_manager import ClientManager
from observatory.config import load_config
from observatory.errors import ConfigError
from observatory.pager import (
    PagerClient,
    PagerService,
    monitor_pager_service,
    report_alarm,
)

logger = logging.getLogger("observatory")

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def setup_logging(log_format="text", log_level="INFO"):
    level = getattr(logging, log_level.upper(), logging.INFO)
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    handler = logging.StreamHandler(sys.stdout)
    if log_format == "json":
        handler.setFormatter(JsonFormatter(LOG_FORMAT))
    else:
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
    # Remove all handlers associated with the root logger object.
    for h in root_logger.handlers[:]:
        root_logger.removeHandler(h)
    root_logger.addHandler(handler)
    # urllib3 logs every connection at DEBUG, which drowns out the monitors
    logging.getLogger("urllib3").setLevel(max(level, logging.INFO))


class Supervisor:
    """Runs the monitor and alerting threads and collects their fatal errors."""

    def __init__(self, config: dict):
        self.config = config
        self.stop_event = threading.Event()
        self.fatal_errors: "queue.Queue" = queue.Queue()
        self.threads = []
        self.client_managers = []

        alerting = config["alerting"]
        self.pager = PagerClient(
            PagerService(
                alerting["missed_blocks_threshold"],
                alerting["recovered_after_threshold"],
            ),
            bound=2 * len(config["chains"]),
        )

    def start(self):
        self.pager.start()

        reporter = functools.partial(report_alarm, datadog_config=self.config["datadog"])
        self._spawn(
            "pager-sweep",
            monitor_pager_service,
            self.pager,
            self.config["alerting"]["interval"],
            self.stop_event,
            reporter,
            self.config["metrics"],
        )

        for chain_id, chain_config in self.config["chains"].items():
            client_manager = ClientManager(
                chain_config["rpc_urls"], chain_id, self.config["rpc_timeout"]
            )
            self.client_managers.append(client_manager)
            self._spawn(
                f"monitor-{chain_id}",
                run_monitor,
                chain_id,
                chain_config["validator_addr"],
                client_manager,
                self.pager,
                self.config["history_size"],
                self.stop_event,
            )

        logger.info(f"Started monitors for {len(self.config['chains'])} chains")

    def wait(self):
        """Block until a thread fails, returning its name and exception."""
        return self.fatal_errors.get()

    def stop(self):
        self.stop_event.set()
        self.pager.close()
        for thread in self.threads:
            thread.join(timeout=5)
        for client_manager in self.client_managers:
            client_manager.close()

    def _spawn(self, name, target, *args):
        def run():
            try:
                target(*args)
            except Exception as e:
                if self.stop_event.is_set():
                    logger.info(f"{name} stopped: {e}")
                    return
                logger.exception(f"{name} failed: {e}")
                self.fatal_errors.put((name, e))
            else:
                if not self.stop_event.is_set():
                    self.fatal_errors.put((name, RuntimeError(f"{name} exited unexpectedly")))

        thread = threading.Thread(target=run, name=name, daemon=True)
        thread.start()
        self.threads.append(thread)


def main(argv=None):
    parser = argparse.ArgumentParser(description="CometBFT validator signing monitor")
    parser.add_argument("--config", default="config.yaml")
    parser.add_argument("--log-level", help="override the configured log level")
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
    except ConfigError as e:
        setup_logging()
        logger.error(f"Invalid configuration: {e}")
        return 1

    # Logging config
    setup_logging(config["log_format"], args.log_level or config["log_level"])
    logger.info(f"Loaded config for chains: {', '.join(config['chains'])}")

    supervisor = Supervisor(config)
    try:
        supervisor.start()
        name, error = supervisor.wait()
        logger.error(f"Shutting down after fatal error in {name}: {error}")
        return 1
    except KeyboardInterrupt:
        logger.info("Shutting down...")
        return 0
    finally:
        supervisor.stop()


if __name__ == "__main__":
    sys.exit(main())
