from __future__ import annotations

import argparse
import json
import logging
import os
import re
import signal
import threading
from collections.abc import Sequence

from controller.src.config import ControllerConfig, load_config
from controller.src.controller import ApplicationController, build_controller
from controller.src.health import start_health_server
from controller.src.kube import build_clients, load_api_client
from controller.src.metrics import METRICS

RUNTIME_VERSION = "0.1.0"
_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key)\b\s*[:=]\s*)"
            r"([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"(?i)([?&](?:token|access_token|api_key|password)=)([^&\s]+)"),
        r"\1[REDACTED]",
    ),
)

LOGGER = logging.getLogger(__name__)


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging() -> None:
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.addHandler(log_handler)
    logging.root.setLevel(getattr(logging, log_level, logging.INFO))


def _positive_int(raw: str) -> int:
    try:
        value = int(raw)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"must be an integer, got: {raw!r}") from exc
    if value < 1:
        raise argparse.ArgumentTypeError(f"must be >= 1, got: {value}")
    return value


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="application-controller",
        description="Reconcile Application resources into Deployments.",
    )
    parser.add_argument(
        "--kubeconfig",
        default=None,
        help="Path to a kubeconfig for the workload API. Only required if out-of-cluster.",
    )
    parser.add_argument(
        "--master",
        default=None,
        help="Address of the Kubernetes API server. Overrides any value in kubeconfig.",
    )
    parser.add_argument(
        "--application-kubeconfig",
        default=None,
        help="Path to a kubeconfig for the Application API (defaults to the workload API).",
    )
    parser.add_argument(
        "--workers",
        type=_positive_int,
        default=None,
        help="Number of reconcile workers (overrides WORKERS).",
    )
    return parser.parse_args(argv)


def _run_with_leader_election(
    controller: ApplicationController,
    settings: ControllerConfig,
    coordination_api: object,
    workers: int,
    shutdown_event: threading.Event,
    leader_ready: threading.Event,
) -> bool:
    """Run the controller only while this replica holds the lease. Returns False on a crash."""
    from controller.src.leader import LeaseLeaderElector

    elector = LeaseLeaderElector(
        coordination_api=coordination_api,  # type: ignore[arg-type]
        settings=settings.leader_election,
    )
    stop_timeout = settings.leader_election.stop_timeout_seconds
    controller_thread: threading.Thread | None = None
    controller_stop = threading.Event()
    state_lock = threading.Lock()
    crashed = threading.Event()

    def on_started_leading() -> None:
        nonlocal controller_thread, controller_stop
        with state_lock:
            if shutdown_event.is_set():
                return
            if controller_thread is not None and controller_thread.is_alive():
                LOGGER.error(
                    "Refusing to start the controller while the previous run is still stopping"
                )
                shutdown_event.set()
                return

            controller_stop = threading.Event()
            run_stop = controller_stop
            leader_ready.set()

            def _run_controller() -> None:
                try:
                    controller.run(
                        workers=workers,
                        shutdown_event=run_stop,
                        cache_sync_timeout_seconds=settings.cache_sync_timeout_seconds,
                    )
                except Exception:
                    LOGGER.exception("Controller crashed")
                    crashed.set()
                    shutdown_event.set()
                    return
                if not run_stop.is_set():
                    LOGGER.error("Controller exited while still leading; shutting down")
                    shutdown_event.set()

            controller_thread = threading.Thread(
                target=_run_controller, name="application-controller", daemon=True
            )
            controller_thread.start()

    def on_stopped_leading() -> None:
        nonlocal controller_thread
        with state_lock:
            leader_ready.clear()
            controller_stop.set()
            controller.request_stop()
            if controller_thread is None:
                return

            controller_thread.join(timeout=stop_timeout)
            if controller_thread.is_alive():
                LOGGER.error(
                    "Controller did not stop within %ss after losing leadership; "
                    "forcing process shutdown",
                    stop_timeout,
                )
                shutdown_event.set()
                return
            controller_thread = None

    elector.run(
        on_started_leading=on_started_leading,
        on_stopped_leading=on_stopped_leading,
        stop_event=shutdown_event,
    )
    on_stopped_leading()
    return not crashed.is_set()


def main(argv: Sequence[str] | None = None) -> None:
    """Controller entrypoint: configure logging, build clients, and reconcile until signalled."""
    configure_logging()
    args = parse_args(argv)
    settings = load_config()
    workers = args.workers or settings.workers
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    workload_client = load_api_client(kubeconfig=args.kubeconfig, master=args.master)
    application_client = (
        load_api_client(kubeconfig=args.application_kubeconfig, master=args.master)
        if args.application_kubeconfig
        else None
    )
    clients = build_clients(workload_client, application_client)
    controller = build_controller(
        apps_api=clients.apps,
        core_api=clients.core,
        custom_api=clients.custom_objects,
        config=settings,
    )

    leader_ready = threading.Event() if settings.leader_election.enabled else None
    health_server = start_health_server(
        synced=controller.ready,
        port=settings.health_port,
        leader=leader_ready,
    )

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        LOGGER.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    try:
        if leader_ready is not None:
            healthy = _run_with_leader_election(
                controller=controller,
                settings=settings,
                coordination_api=clients.coordination,
                workers=workers,
                shutdown_event=shutdown_event,
                leader_ready=leader_ready,
            )
            if not healthy:
                raise SystemExit(1)
        else:
            controller.run(
                workers=workers,
                shutdown_event=shutdown_event,
                cache_sync_timeout_seconds=settings.cache_sync_timeout_seconds,
            )
    finally:
        health_server.shutdown()
    LOGGER.info("Controller stopped")


if __name__ == "__main__":
    main()
