from __future__ import annotations

import logging
import os
import signal
import threading

from unitoperator.src.agent import AgentClient
from unitoperator.src.config import OperatorConfig, load_config
from unitoperator.src.context import ReconcileContext
from unitoperator.src.events import EventRecorder
from unitoperator.src.health import start_health_server
from unitoperator.src.kube import POD, UNIT, UNITSET, ResourceStore, load_kube_configuration
from unitoperator.src.logs import configure_logging
from unitoperator.src.metrics import METRICS
from unitoperator.src.runner import ControllerRunner, WatchSource, unit_of, unitset_of
from unitoperator.src.unit_controller import UnitReconciler
from unitoperator.src.unitset_controller import UnitSetReconciler

RUNTIME_VERSION = "0.1.0"


def build_runners(ctx: ReconcileContext, cfg: OperatorConfig) -> list[ControllerRunner]:
    """Wire both reconcilers to their watch sources.

    Units are reconciled on their own changes and on changes of their pod;
    fleets on their own changes and on changes of their units.
    """
    unit_runner = ControllerRunner(
        UnitReconciler(ctx),
        ctx.store,
        [WatchSource(UNIT), WatchSource(POD, keys=unit_of)],
        namespace=cfg.watch_namespace,
        workers=cfg.unit_workers,
        requeue_seconds=cfg.unit_requeue_seconds,
        logger=logging.getLogger("unitoperator.unit"),
    )
    unitset_runner = ControllerRunner(
        UnitSetReconciler(ctx),
        ctx.store,
        [WatchSource(UNITSET), WatchSource(UNIT, keys=unitset_of)],
        namespace=cfg.watch_namespace,
        workers=cfg.unitset_workers,
        requeue_seconds=cfg.unitset_requeue_seconds,
        logger=logging.getLogger("unitoperator.unitset"),
    )
    return [unit_runner, unitset_runner]


def main() -> None:
    """Operator entrypoint: configure logging, wire both controllers and run them until a signal arrives."""
    cfg = load_config()
    configure_logging(cfg.log_level)
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )
    logger = logging.getLogger(__name__)

    load_kube_configuration()
    store = ResourceStore.from_default_clients()
    shutdown_event = threading.Event()
    ctx = ReconcileContext(
        store=store,
        config=cfg,
        events=EventRecorder(store),
        agent=AgentClient(
            host_type=cfg.agent_host_type,
            port=cfg.agent_port,
            timeout_seconds=cfg.agent_timeout_seconds,
        ),
        logger=logging.getLogger("unitoperator"),
        stop_event=shutdown_event,
    )
    runners = build_runners(ctx, cfg)
    health_server = start_health_server([runner.ready for runner in runners], cfg.health_port)

    def _handle_signal(signum: int, frame: object) -> None:
        logger.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    def _run(runner: ControllerRunner) -> None:
        try:
            runner.run_forever(shutdown_event=shutdown_event)
        except Exception:
            logger.exception("%s controller crashed", runner.name)
        if not shutdown_event.is_set():
            logger.error("%s controller exited without a stop signal; terminating process", runner.name)
            shutdown_event.set()

    threads = [
        threading.Thread(target=_run, args=(runner,), name=f"{runner.name}-controller", daemon=True)
        for runner in runners
    ]
    for thread in threads:
        thread.start()

    shutdown_event.wait()
    for runner in runners:
        runner.request_stop()
    for thread in threads:
        thread.join(timeout=30)

    health_server.shutdown()
    logger.info("Operator stopped")


if __name__ == "__main__":
    main()
