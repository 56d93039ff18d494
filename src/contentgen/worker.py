from __future__ import annotations

import argparse
import logging
import os
import signal
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import replace
from typing import Callable

from .channels import NotificationChannel, build_channel
from .config import QUEUE_STRATEGIES, Config, ConfigError, load_runtime_config
from .errors import PayloadError
from .llm import LLMClient
from .models import JOB_TYPES, BatchStatus, GeneratePayload, Job, JobPayload, decode_payload
from .pipelines.generate_content import batch_error_message, handle_generate, store_retry_policy
from .storage import (
    claim_job,
    claim_next_job,
    complete_job,
    fail_job,
    finish_batch,
    get_job,
    init_db,
    list_pending_job_ids,
    reclaim_stale_jobs,
    run_store_write,
)
from .utils import configure_logging, log_event

WORKER_JOB_TYPES = list(JOB_TYPES)

JobHandler = Callable[..., dict]

JOB_HANDLERS: dict[str, JobHandler] = {
    GeneratePayload.job_type: handle_generate,
}


def _setup_logging() -> logging.Logger:
    return configure_logging("contentgen.worker")


def _load_state(config_path: str | None = None) -> tuple[object, Config]:
    conn = init_db()
    try:
        return conn, load_runtime_config(conn, config_path)
    except Exception:
        conn.close()
        raise


def run_claimed_job(
    conn,
    config: Config,
    job: Job,
    logger: logging.Logger,
    llm: LLMClient | None = None,
) -> dict[str, object]:
    _log_job_claimed(job, logger)
    payload: JobPayload = decode_payload(job.job_type, job.payload)
    handler = JOB_HANDLERS.get(job.job_type)
    if handler is None:
        raise PayloadError(f"no handler for job type {job.job_type}")
    return handler(conn, config, payload, logger, llm=llm, job_id=job.id)


def _process_claimed_job(
    conn,
    config: Config,
    job: Job,
    logger: logging.Logger,
    llm: LLMClient | None = None,
) -> int:
    policy = store_retry_policy(config)
    try:
        result = run_claimed_job(conn, config, job, logger, llm)
    except Exception as exc:  # noqa: BLE001
        _rollback(conn, logger)
        try:
            run_store_write(
                conn,
                policy,
                lambda: fail_job(conn, job.id, str(exc)),
                logger=logger,
                name="job_fail",
            )
        except Exception as write_exc:  # noqa: BLE001
            log_event(logger, logging.ERROR, "job_fail_write_failed", job_id=job.id, error=str(write_exc))
        log_event(
            logger,
            logging.ERROR,
            "job_failed",
            job_id=job.id,
            job_type=job.job_type,
            attempts=job.attempts,
            error=str(exc),
        )
        _fail_batch_for_job(conn, config, job, batch_error_message(exc), logger)
        return 1

    try:
        completed = run_store_write(
            conn,
            policy,
            lambda: complete_job(conn, job.id, result=result),
            logger=logger,
            name="job_complete",
        )
    except Exception as exc:  # noqa: BLE001
        log_event(logger, logging.ERROR, "job_complete_failed", job_id=job.id, error=str(exc))
        return 1
    if completed:
        log_event(logger, logging.INFO, "job_succeeded", job_id=job.id, job_type=job.job_type)
    else:
        log_event(logger, logging.WARNING, "job_complete_skipped", job_id=job.id, reason="not_processing")
    return 0


def process_job_signal(
    conn,
    config: Config,
    job_id: str,
    worker_id: str,
    logger: logging.Logger,
    llm: LLMClient | None = None,
) -> int:
    """Handle one wake signal. The id is a hint; the job row decides."""
    job = get_job(conn, job_id)
    if job is None:
        log_event(logger, logging.INFO, "signal_dropped", job_id=job_id, reason="missing")
        return 0
    if job.status != "pending":
        log_event(logger, logging.INFO, "signal_dropped", job_id=job_id, reason=job.status)
        return 0
    claimed = run_store_write(
        conn,
        store_retry_policy(config),
        lambda: claim_job(conn, job_id, worker_id),
        logger=logger,
        name="job_claim",
    )
    if claimed is None:
        log_event(logger, logging.INFO, "signal_dropped", job_id=job_id, reason="claimed_elsewhere")
        return 0
    return _process_claimed_job(conn, config, claimed, logger, llm)


def sweep_jobs(conn, config: Config, worker_id: str, logger: logging.Logger) -> tuple[list[str], list[Job]]:
    """Find work the channel missed.

    Returns ids of pending jobs older than ``jobs.sweep_min_age_seconds`` and
    stale processing jobs this worker has just re-claimed.
    """
    reclaimed, exhausted = reclaim_stale_jobs(
        conn,
        worker_id,
        lock_timeout_seconds=config.jobs.lock_timeout_seconds,
        max_attempts=config.jobs.max_attempts,
    )
    for job in reclaimed:
        log_event(logger, logging.WARNING, "job_reclaimed", job_id=job.id, attempts=job.attempts)
    for job in exhausted:
        log_event(logger, logging.ERROR, "job_failed", job_id=job.id, error="max_attempts_exceeded")
        _fail_batch_for_job(conn, config, job, "max_attempts_exceeded", logger)
    pending = list_pending_job_ids(
        conn,
        min_age_seconds=config.jobs.sweep_min_age_seconds,
        allowed_types=WORKER_JOB_TYPES,
    )
    if pending or reclaimed:
        log_event(logger, logging.INFO, "sweep_found", pending=len(pending), reclaimed=len(reclaimed))
    return pending, reclaimed


def _fail_batch_for_job(conn, config: Config, job: Job, error: str, logger: logging.Logger) -> None:
    """Close the batch of a job that ended without closing it itself."""
    try:
        payload = decode_payload(job.job_type, job.payload)
    except PayloadError:
        return
    if not isinstance(payload, GeneratePayload):
        return
    try:
        changed = run_store_write(
            conn,
            store_retry_policy(config),
            lambda: finish_batch(conn, payload.batch_id, BatchStatus.FAILED.value, error=error),
            logger=logger,
            name="batch_fail",
        )
    except Exception as exc:  # noqa: BLE001
        log_event(logger, logging.ERROR, "batch_fail_write_failed", batch_id=payload.batch_id, error=str(exc))
        return
    if changed:
        log_event(logger, logging.WARNING, "generation_failed", batch_id=payload.batch_id, error=error)


def _rollback(conn, logger: logging.Logger) -> None:
    try:
        conn.rollback()
    except Exception as exc:  # noqa: BLE001
        log_event(logger, logging.WARNING, "rollback_failed", error=str(exc))


def run_once(worker_id: str, config_path: str | None = None) -> int:
    logger = _setup_logging()
    try:
        conn, config = _load_state(config_path)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1

    try:
        _, reclaimed = sweep_jobs(conn, config, worker_id, logger)
        status = 0
        for job in reclaimed:
            status = max(status, _process_claimed_job(conn, config, job, logger))
        job = claim_next_job(conn, worker_id, allowed_types=WORKER_JOB_TYPES)
        if job:
            status = max(status, _process_claimed_job(conn, config, job, logger))
        return status
    finally:
        conn.close()


def _process_signal_thread(worker_id: str, job_id: str, config: Config) -> int:
    logger = _setup_logging()
    conn = init_db()
    try:
        return process_job_signal(conn, config, job_id, worker_id, logger)
    finally:
        conn.close()


def _process_claimed_thread(job: Job, config: Config) -> int:
    logger = _setup_logging()
    conn = init_db()
    try:
        return _process_claimed_job(conn, config, job, logger)
    finally:
        conn.close()


def run_loop(
    worker_id: str,
    concurrency: int | None = None,
    config_path: str | None = None,
    *,
    channel: NotificationChannel | None = None,
    stop_event: threading.Event | None = None,
    strategy: str | None = None,
) -> int:
    logger = _setup_logging()
    try:
        conn, config = _load_state(config_path)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    try:
        if strategy:
            config = replace(config, queue=replace(config.queue, strategy=strategy))
        channel = channel or build_channel(config, logger)
    except ConfigError as exc:
        conn.close()
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    except Exception:
        conn.close()
        raise

    stop = stop_event or threading.Event()
    previous_handlers = _install_signal_handlers(stop, logger)
    max_workers = max(1, concurrency or config.worker.concurrency)
    in_flight: dict[str, Future] = {}
    lock = threading.Lock()

    def _finished(job_id: str, future: Future) -> None:
        with lock:
            in_flight.pop(job_id, None)
        channel.ack(job_id)
        exc = future.exception()
        if exc is not None:
            log_event(logger, logging.ERROR, "job_thread_error", job_id=job_id, error=str(exc))

    def _submit(job_id: str, fn, *args) -> None:
        with lock:
            if job_id in in_flight:
                duplicate = True
            else:
                duplicate = False
                future = executor.submit(fn, *args)
                in_flight[job_id] = future
        if duplicate:
            log_event(logger, logging.DEBUG, "signal_dropped", job_id=job_id, reason="in_flight")
            channel.ack(job_id)
            return
        future.add_done_callback(lambda done, jid=job_id: _finished(jid, done))

    def _sweep() -> None:
        try:
            pending, reclaimed = sweep_jobs(conn, config, worker_id, logger)
        except Exception as exc:  # noqa: BLE001
            conn.rollback()
            log_event(logger, logging.ERROR, "sweep_failed", error=str(exc))
            return
        for job in reclaimed:
            _submit(job.id, _process_claimed_thread, job, config)
        for job_id in pending:
            _submit(job_id, _process_signal_thread, worker_id, job_id, config)

    log_event(
        logger,
        logging.INFO,
        "worker_started",
        app=config.app.name,
        worker_id=worker_id,
        strategy=channel.strategy,
        concurrency=max_workers,
    )
    executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="contentgen-job")
    try:
        _sweep()
        last_sweep = time.monotonic()
        while not stop.is_set():
            with lock:
                busy = len(in_flight) >= max_workers
            if busy:
                stop.wait(0.2)
                continue
            try:
                job_ids = channel.listen(config.queue.listen_timeout_seconds)
            except Exception as exc:  # noqa: BLE001
                log_event(logger, logging.WARNING, "channel_listen_failed", error=str(exc))
                stop.wait(min(5, config.queue.listen_timeout_seconds))
                job_ids = []
            for job_id in job_ids:
                _submit(job_id, _process_signal_thread, worker_id, job_id, config)
            if time.monotonic() - last_sweep >= config.jobs.sweep_interval_seconds:
                _sweep()
                last_sweep = time.monotonic()
    finally:
        log_event(logger, logging.INFO, "worker_draining", in_flight=len(in_flight))
        executor.shutdown(wait=True)
        channel.close()
        conn.close()
        for signum, handler in previous_handlers.items():
            signal.signal(signum, handler)
        log_event(logger, logging.INFO, "worker_stopped", worker_id=worker_id)
    return 0


def _install_signal_handlers(stop: threading.Event, logger: logging.Logger) -> dict:
    if threading.current_thread() is not threading.main_thread():
        return {}

    def _handle(signum, _frame) -> None:
        log_event(logger, logging.INFO, "worker_stop_requested", signal=signum)
        stop.set()

    previous = {}
    for signum in (signal.SIGINT, signal.SIGTERM):
        previous[signum] = signal.getsignal(signum)
        signal.signal(signum, _handle)
    return previous


def _log_job_claimed(job: Job, logger: logging.Logger) -> None:
    log_event(
        logger,
        logging.INFO,
        "job_claimed",
        job_id=job.id,
        job_type=job.job_type,
        attempts=job.attempts,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="contentgen-worker")
    parser.add_argument("--once", action="store_true", help="Run a single sweep and exit")
    parser.add_argument("--worker-id", default=os.environ.get("HOSTNAME", "worker"))
    parser.add_argument("--concurrency", type=int, default=None)
    parser.add_argument("--strategy", choices=sorted(QUEUE_STRATEGIES), default=None)
    parser.add_argument("--config", default=None, help="Path to a YAML config file")
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.once:
        return run_once(args.worker_id, args.config)
    return run_loop(
        args.worker_id,
        args.concurrency,
        args.config,
        strategy=args.strategy,
    )


if __name__ == "__main__":
    raise SystemExit(main())
