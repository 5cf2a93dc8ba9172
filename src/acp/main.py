from __future__ import annotations

import argparse
import logging
import os
import signal
import threading

from dotenv import find_dotenv, load_dotenv

from .config import AppConfig, load_config
from .errors import ConfigError
from .scheduler import PollScheduler, build_schedulers


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="acp", description="Appointment Change Poller (change-feed relay)")
    p.add_argument("--config", default=None, help="Path to optional JSON config file")
    p.add_argument("--env-file", default=None, help="Path to .env file. Defaults to ./.env when present")
    p.add_argument(
        "--log-level",
        default=None,
        help="Log level (DEBUG/INFO/WARNING/ERROR). Defaults to env ACP_LOG_LEVEL or INFO",
    )
    p.add_argument(
        "--status-interval",
        type=int,
        default=None,
        help="Daemon heartbeat interval seconds. Defaults to env ACP_STATUS_INTERVAL_SECONDS or 60. Set 0 to disable.",
    )

    mode = p.add_mutually_exclusive_group(required=False)
    mode.add_argument("--once", action="store_true", help="Bootstrap and run one poll cycle per practice, then exit")
    mode.add_argument("--daemon", action="store_true", help="Run forever with poll interval (default)")
    return p


def _resolve_log_level(value: str | None) -> int:
    v = (value or "").strip().upper()
    if not v:
        return logging.INFO
    level = logging.getLevelNamesMapping().get(v)
    if isinstance(level, int):
        return level
    return logging.INFO


def _resolve_status_interval(value: int | None) -> int:
    if value is None:
        try:
            value = int(os.environ.get("ACP_STATUS_INTERVAL_SECONDS") or 60)
        except ValueError:
            value = 60
    return max(0, int(value))


def _log_config(logger: logging.Logger, config: AppConfig, schedulers: tuple[PollScheduler, ...]) -> None:
    logger.info(
        "config: practices=%s poll_interval_ms=%d api_base=%s sqlite_path=%s timezone=%s",
        ",".join(s.practice_id for s in schedulers),
        int(schedulers[0].poll_interval_seconds * 1000) if schedulers else config.poll_interval_ms,
        config.athena.api_base,
        config.sqlite_path or "<memory>",
        config.timezone or "<local>",
    )
    logger.info(
        "config: client_id=%s client_secret=%s sink=%s",
        config.resolve_env(config.athena.client_id_env) or "<unset>",
        "*" * 8,
        schedulers[0].forwarder.target() if schedulers else "<unset>",
    )


def _run_once(logger: logging.Logger, schedulers: tuple[PollScheduler, ...]) -> int:
    exit_code = 0
    for scheduler in schedulers:
        try:
            scheduler.bootstrap()
        except Exception:  # noqa: BLE001
            logger.exception("bootstrap failed: practice=%s", scheduler.practice_id)
            exit_code = 1
            continue
        result = scheduler.run_cycle()
        logger.info(
            "once done: practice=%s duration_ms=%d seen=%d forwarded=%d cursor=%r advanced=%s error=%s",
            scheduler.practice_id,
            result.duration_ms,
            result.events_seen,
            result.events_forwarded,
            result.cursor_after,
            result.cursor_advanced,
            result.error or "-",
        )
    return exit_code


def _run_daemon(logger: logging.Logger, schedulers: tuple[PollScheduler, ...], status_interval: int) -> int:
    stop_requested = threading.Event()

    def _handle_signal(signum, _frame) -> None:  # noqa: ANN001
        logger.info("signal received: %s, stopping", signal.Signals(signum).name)
        stop_requested.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    started: list[PollScheduler] = []
    try:
        for scheduler in schedulers:
            scheduler.start()
            started.append(scheduler)
    except Exception:  # noqa: BLE001
        logger.error("startup aborted: practice=%s", scheduler.practice_id)
        for s in started:
            s.stop()
        return 1

    wait_seconds = status_interval if status_interval > 0 else None
    while not stop_requested.wait(wait_seconds):
        for scheduler in started:
            stats = scheduler.stats()
            logger.info(
                "daemon alive: practice=%s state=%s polls=%d last_poll_at=%s processed=%d failed=%d consecutive_failures=%d skipped_ticks=%d cursor=%r",
                stats.practice_id,
                stats.state.value,
                stats.poll_count,
                stats.last_poll_at.isoformat() if stats.last_poll_at else "-",
                stats.total_events_processed,
                stats.cycles_failed,
                stats.consecutive_failures,
                stats.ticks_skipped,
                stats.cursor,
            )

    for scheduler in started:
        scheduler.stop()
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_arg_parser().parse_args(argv)
    load_dotenv(args.env_file or find_dotenv(usecwd=True))

    log_level = _resolve_log_level(args.log_level or os.environ.get("ACP_LOG_LEVEL"))
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    logger = logging.getLogger("acp")

    try:
        config = load_config(args.config)
        schedulers = build_schedulers(config)
    except ConfigError as e:
        logger.error("configuration error: %s", e)
        return 2

    mode = "once" if args.once else "daemon"
    logger.info("acp start: mode=%s config=%s", mode, args.config or "<env only>")
    _log_config(logger, config, schedulers)

    if args.once:
        return _run_once(logger, schedulers)
    return _run_daemon(logger, schedulers, _resolve_status_interval(args.status_interval))


if __name__ == "__main__":
    raise SystemExit(main())
