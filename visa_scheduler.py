import argparse
import base64
import binascii
import json
import logging
import os
import signal
import sys
from typing import List, Optional

from ais_client import BASE_URL, AisClient
from app_config import AppConfig, load_job_file
from browser_session import pick_profile
from browser_transport import BrowserPool, BrowserTransport
from config_wizard import run_cli_setup_wizard
from http_transport import HttpTransport
from job_manager import JobManager
from job_store import RemoteJobStore, SqlJobStore
from logging_utils import configure_logging
from models import JobConfig, JobState
from notification_utils import EmailNotifier
from page_parsers import PageSelectors
from retry_utils import RetryPolicy
from scheduler_engine import ClientFactory, SchedulerInstance
from selector_registry import apply_selector_overrides
from web_ui import create_app

# Keep webdriver-manager quiet unless user overrides
os.environ.setdefault("WDM_LOG_LEVEL", "0")


def build_client_factory(app_cfg: AppConfig, pool: Optional[BrowserPool] = None) -> ClientFactory:
    def factory(cfg: JobConfig, sleep) -> AisClient:
        retry_policy = RetryPolicy(cfg.max_retries)
        profile = pick_profile()
        if app_cfg.transport == "browser":
            if pool is None:
                raise RuntimeError("Browser transport selected but no browser pool is available")
            transport = BrowserTransport(
                pool,
                origin_url=f"{BASE_URL}/{cfg.country}/niv/users/sign_in",
                timeout_seconds=cfg.request_timeout_seconds,
                retry_policy=retry_policy,
                profile=profile,
                sleep=sleep,
            )
        else:
            transport = HttpTransport(
                timeout_seconds=cfg.request_timeout_seconds,
                retry_policy=retry_policy,
                profile=profile,
                sleep=sleep,
            )
        logging.debug("Job %s using %s transport (%s)", cfg.job_id, app_cfg.transport, profile.platform)
        return AisClient(cfg, transport)

    return factory


def _browser_pool(app_cfg: AppConfig) -> Optional[BrowserPool]:
    if app_cfg.transport != "browser":
        return None
    return BrowserPool(size=app_cfg.browser_pool_size, headless=app_cfg.headless)


def _notifier(app_cfg: AppConfig) -> Optional[EmailNotifier]:
    return EmailNotifier(app_cfg) if app_cfg.is_smtp_configured() else None


def cmd_import_job(args: argparse.Namespace, app_cfg: AppConfig) -> int:
    cfg = load_job_file(args.file)
    store = SqlJobStore(app_cfg.database_url)
    job_id = store.create_job(cfg)
    print(job_id)
    return 0


def cmd_run(args: argparse.Namespace, app_cfg: AppConfig) -> int:
    store = SqlJobStore(app_cfg.database_url)
    pool = _browser_pool(app_cfg)
    instance = SchedulerInstance(
        args.job_id,
        store,
        build_client_factory(app_cfg, pool),
        notifier=_notifier(app_cfg),
    )
    print(f"🚀 Running job {args.job_id} (Ctrl+C to stop)")
    instance.start()
    try:
        while instance.running:
            instance.wait(1.0)
        instance.wait()
    except KeyboardInterrupt:
        print("\n🛑 Stopping job (KeyboardInterrupt)")
        instance.stop()
    finally:
        if pool is not None:
            pool.close_all()
    print(f"Job {args.job_id} finished in state: {instance.state.value}")
    return 1 if instance.state is JobState.ERROR else 0


def cmd_serve(args: argparse.Namespace, app_cfg: AppConfig) -> int:
    store = SqlJobStore(app_cfg.database_url)
    pool = _browser_pool(app_cfg)
    manager = JobManager(
        store,
        build_client_factory(app_cfg, pool),
        notifier=_notifier(app_cfg),
        log_retention_days=app_cfg.log_retention_days,
    )
    manager.init()
    app = create_app(manager, store, app_cfg.callback_secret)
    logging.info("Serving job API on http://%s:%s", app_cfg.host, app_cfg.port)
    try:
        app.run(host=app_cfg.host, port=app_cfg.port, debug=False, use_reloader=False)
    finally:
        manager.shutdown()
        if pool is not None:
            pool.close_all()
    return 0


def _decode_job_config(job_id: str, encoded: str) -> JobConfig:
    try:
        data = json.loads(base64.b64decode(encoded).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ValueError("Invalid configuration: JOB_CONFIG_B64 is not base64-encoded JSON") from exc
    data["job_id"] = job_id
    return JobConfig.from_dict(data)


def cmd_agent(args: argparse.Namespace, app_cfg: AppConfig) -> int:
    job_id = os.getenv("JOB_ID", "")
    callback_url = os.getenv("CALLBACK_URL") or app_cfg.callback_url
    callback_secret = os.getenv("CALLBACK_SECRET") or app_cfg.callback_secret
    encoded = os.getenv("JOB_CONFIG_B64", "")
    missing = [
        name
        for name, value in (
            ("JOB_ID", job_id),
            ("CALLBACK_URL", callback_url),
            ("CALLBACK_SECRET", callback_secret),
            ("JOB_CONFIG_B64", encoded),
        )
        if not value
    ]
    if missing:
        logging.error("Agent missing required environment variables: %s", ", ".join(missing))
        return 1

    cfg = _decode_job_config(job_id, encoded)
    store = RemoteJobStore(cfg, callback_url=callback_url, callback_secret=callback_secret)
    pool = _browser_pool(app_cfg)
    instance = SchedulerInstance(job_id, store, build_client_factory(app_cfg, pool), notifier=_notifier(app_cfg))
    signal.signal(signal.SIGTERM, lambda *_: instance.stop())

    logging.info("Agent starting for job %s -> %s", job_id, callback_url)
    try:
        state = instance.run()
    except KeyboardInterrupt:
        instance.stop()
        state = instance.state
    finally:
        if pool is not None:
            pool.close_all()
    logging.info("Agent for job %s finished in state %s", job_id, state.value)
    return 0 if state in (JobState.STOPPED, JobState.BOOKED) else 1


def cmd_wizard(args: argparse.Namespace, app_cfg: AppConfig) -> int:
    run_cli_setup_wizard(args.output)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="US Visa Appointment Scheduler")
    parser.add_argument("--config", default="config.ini", help="Service configuration file (default: config.ini)")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument("--json-logs", action="store_true", help="Emit JSON-lines logs")
    sub = parser.add_subparsers(dest="command", required=True)

    import_job = sub.add_parser("import-job", help="Store a job defined in an INI file and print its id")
    import_job.add_argument("file", help="Job definition file")
    import_job.set_defaults(handler=cmd_import_job)

    run = sub.add_parser("run", help="Run one stored job in the foreground")
    run.add_argument("job_id")
    run.set_defaults(handler=cmd_run)

    serve = sub.add_parser("serve", help="Run the job API and callback endpoints")
    serve.set_defaults(handler=cmd_serve)

    agent = sub.add_parser("agent", help="Run a job on a remote worker, reporting back over callbacks")
    agent.set_defaults(handler=cmd_agent)

    wizard = sub.add_parser("wizard", help="Interactively create a job definition file")
    wizard.add_argument("--output", default="job.ini", help="Where to write the job file (default: job.ini)")
    wizard.set_defaults(handler=cmd_wizard)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        app_cfg = AppConfig.load(args.config)
    except ValueError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 1

    configure_logging(debug=args.debug or app_cfg.debug, json_logs=args.json_logs or app_cfg.json_logs)
    logging.info("Configuration summary: %s", app_cfg.masked_summary())
    apply_selector_overrides(PageSelectors, app_cfg.selectors_path)

    try:
        return args.handler(args, app_cfg)
    except (FileNotFoundError, KeyError, ValueError) as exc:
        logging.error("Configuration error: %s", exc)
        return 1


if __name__ == "__main__":
    sys.exit(main())
