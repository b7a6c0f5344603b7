import argparse
import logging
import shutil
import signal
import sys
import threading
import time
import tomllib
from pathlib import Path
from typing import Any, Callable, Protocol

from index_mirror.config import (
    DEFAULT_CONFIG_PATH,
    Config,
    ConfigError,
    LogConfig,
    config_from_dict,
    load_config,
    write_sample_config,
)
from index_mirror.git_sync import (
    PullResult,
    StartupError,
    SyncOutcome,
    ensure_mirror,
    run_cycle,
)

EXIT_OK = 0
EXIT_ENV = 1
EXIT_GIT = 2
EXIT_SERVER = 3
EXIT_CONFIG = 5
SHUTDOWN_TIMEOUT_SECONDS = 30


class Server(Protocol):
    should_exit: bool

    def run(self) -> None: ...


def _setup_logging(log: LogConfig) -> None:
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log.path is not None:
        log.path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log.path, encoding="utf-8"))
    logging.basicConfig(
        level=log.level,
        format="%(asctime)s %(levelname)s %(message)s",
        handlers=handlers,
        force=True,
    )


class SyncRunner:
    def __init__(
        self,
        config: Config,
        stop_event: threading.Event | None = None,
        cycle: Callable[[Config], PullResult] = run_cycle,
    ):
        self.config = config
        self.cycle = cycle
        self.last_result: PullResult | None = None
        self._stop_event = stop_event or threading.Event()

    def run_forever(self) -> None:
        interval = self.config.repo.update_interval
        next_tick = time.monotonic()
        while not self._stop_event.is_set():
            self._tick()
            next_tick += interval
            now = time.monotonic()
            if next_tick < now:
                logging.warning("Pull overran the %ss update interval", interval)
                next_tick = now
            self._sleep_with_stop(next_tick - now)

    def _tick(self) -> None:
        try:
            self.last_result = self.cycle(self.config)
        except Exception:
            logging.exception("[%s] Unexpected error in sync cycle", self.config.repo.git_url)

    def stop(self) -> None:
        self._stop_event.set()

    def _sleep_with_stop(self, seconds: float) -> None:
        self._stop_event.wait(max(0.0, seconds))


class Lifecycle:
    def __init__(
        self,
        config: Config,
        server: Server,
        runner: SyncRunner,
        shutdown_timeout: float = SHUTDOWN_TIMEOUT_SECONDS,
    ):
        self.config = config
        self.server = server
        self.runner = runner
        self.shutdown_timeout = shutdown_timeout
        self._done = threading.Event()
        self._interrupted = False
        self._server_error: str | None = None

    def handle_interrupt(self, signum: int, frame: Any) -> None:
        self._interrupted = True
        self._done.set()

    def _serve(self) -> None:
        try:
            self.server.run()
        except SystemExit as exc:
            # uvicorn calls sys.exit(1) when it cannot bind
            self._server_error = f"server exited with status {exc.code}"
        except Exception as exc:
            logging.exception("Web server crashed")
            self._server_error = str(exc)
        finally:
            self._done.set()

    def run(self) -> int:
        previous_handler = None
        if threading.current_thread() is threading.main_thread():
            previous_handler = signal.signal(signal.SIGINT, self.handle_interrupt)

        runner_thread = threading.Thread(
            target=self.runner.run_forever, name="sync-runner", daemon=True
        )
        server_thread = threading.Thread(target=self._serve, name="web-server", daemon=True)
        try:
            runner_thread.start()
            logging.info(
                "Starting web server on %s:%s serving %s",
                self.config.web.address,
                self.config.web.port,
                self.config.repo.path,
            )
            server_thread.start()
            while not self._done.wait(0.5):
                pass

            if self._interrupted:
                logging.info("Received interrupt signal, shutting down web server...")
                exit_code = EXIT_OK
            elif self._server_error is not None:
                logging.error("Web server stopped abnormally: %s", self._server_error)
                exit_code = EXIT_SERVER
            else:
                logging.info("Web server stopped normally")
                exit_code = EXIT_OK

            self._shutdown(server_thread, runner_thread)
        finally:
            if previous_handler is not None:
                signal.signal(signal.SIGINT, previous_handler)
        logging.info("Graceful shutdown complete")
        return exit_code

    def _shutdown(self, server_thread: threading.Thread, runner_thread: threading.Thread) -> None:
        self.server.should_exit = True
        self.runner.stop()
        server_thread.join(timeout=self.shutdown_timeout)
        if server_thread.is_alive():
            logging.warning(
                "Web server did not stop within %ss", self.shutdown_timeout
            )
        runner_thread.join(timeout=self.shutdown_timeout)
        if runner_thread.is_alive():
            logging.warning(
                "Sync cycle still running after %ss, leaving it to finish on its own",
                self.shutdown_timeout,
            )


def serve(config: Config) -> int:
    from index_mirror.webapp import build_server

    runner = SyncRunner(config)
    server = build_server(config)
    return Lifecycle(config, server, runner).run()


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Mirror a git repository and serve it over HTTP"
    )
    parser.add_argument(
        "--config", default=DEFAULT_CONFIG_PATH, help="Path to config TOML"
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Clone if needed, pull once and exit without serving",
    )
    args = parser.parse_args()

    config_path = Path(args.config)
    try:
        config = config_from_dict(load_config(config_path))
    except FileNotFoundError:
        write_sample_config(config_path)
        print(f"ERROR code={EXIT_ENV} config created at: {config_path}")
        print("Please edit the config and restart the service.")
        sys.exit(EXIT_ENV)
    except tomllib.TOMLDecodeError as exc:
        print(f"ERROR code={EXIT_CONFIG} config TOML invalid: {exc}")
        sys.exit(EXIT_CONFIG)
    except ConfigError as exc:
        print(f"ERROR code={EXIT_CONFIG} config validation failed: {exc}")
        sys.exit(EXIT_CONFIG)
    except OSError as exc:
        print(f"ERROR code={EXIT_CONFIG} config load failed: {exc}")
        sys.exit(EXIT_CONFIG)

    if shutil.which("git") is None:
        print(f"ERROR code={EXIT_ENV} git not found in PATH")
        sys.exit(EXIT_ENV)

    _setup_logging(config.log)
    try:
        ensure_mirror(config.repo)
    except StartupError as exc:
        logging.error("ERROR code=%s %s", EXIT_GIT, exc)
        sys.exit(EXIT_GIT)

    if args.once:
        result = run_cycle(config)
        sys.exit(EXIT_GIT if result.outcome is SyncOutcome.FAILED else EXIT_OK)

    sys.exit(serve(config))


if __name__ == "__main__":
    main()
