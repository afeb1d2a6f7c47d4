#!/usr/bin/env python3
"""
KnowledgeDistiller v1.0.0 — command line entry point.

    distill SOURCE [SOURCE ...]   extract, distill and print/write results
    test-provider                 round-trip check against the configured AI provider
    diagnose                      tool versions, stored keys, provider status
    set-key PROVIDER              store an API key in the Keychain
    delete-key PROVIDER           remove a stored API key
"""

import sys
import json
import shutil
import getpass
import logging
import argparse
import threading
import traceback
from pathlib import Path
from datetime import datetime

# ── Determine project root ────────────────────────────────────────────
PROJECT_ROOT = Path(__file__).resolve().parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from distiller.core.constants import (  # noqa: E402
    APP_NAME, APP_DISPLAY_NAME, APP_VERSION, APP_LOG_DIR,
    SourceKind, JobStatus, ONLINE_PROVIDERS,
)
from distiller.core.config import AppConfig  # noqa: E402
from distiller.core.db_sqlite import Database  # noqa: E402
from distiller.core.diagnostics import get_diagnostics  # noqa: E402
from distiller.core.error_codes import ConfigurationError  # noqa: E402
from distiller.core.extractors import default_extractors  # noqa: E402
from distiller.core.extract_youtube import is_youtube_url  # noqa: E402
from distiller.core.job_queue import ProcessingQueue  # noqa: E402
from distiller.core.provider_base import validate_api_key_format  # noqa: E402
from distiller.core.provider_registry import ProviderRegistry  # noqa: E402
from distiller.core.security_utils import (  # noqa: E402
    keychain_set_api_key, keychain_delete_api_key, sanitize_filename, mask_secret,
)

LOG_FILE = APP_LOG_DIR / "app.log"
logger = logging.getLogger(APP_NAME)


def setup_logging(verbose: bool = False):
    """File log under the app log directory, plus stderr for the CLI."""
    APP_LOG_DIR.mkdir(parents=True, exist_ok=True)
    stderr = logging.StreamHandler()
    stderr.setLevel(logging.DEBUG if verbose else logging.WARNING)
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[
            logging.FileHandler(LOG_FILE, encoding="utf-8"),
            stderr,
        ],
    )


def infer_source_kind(source: str) -> str:
    if is_youtube_url(source):
        return SourceKind.YOUTUBE
    if source.startswith(("http://", "https://")):
        return SourceKind.URL
    return SourceKind.FILE


def stage_upload(source: str, upload_root: Path) -> str:
    """Copy a local file into the upload root; returns the stored name."""
    path = Path(source).expanduser()
    if not path.is_file():
        # Already a name inside the upload root
        return source
    name = sanitize_filename(path.name)
    upload_root.mkdir(parents=True, exist_ok=True)
    target = upload_root / name
    if path.resolve() != target.resolve():
        shutil.copy2(path, target)
    return name


def build_registry(config: AppConfig, verify: bool) -> ProviderRegistry:
    registry = ProviderRegistry()
    provider_config = config.provider_config()
    logger.info("Configuring provider %s (model %s, key %s)",
                provider_config.provider, provider_config.model,
                mask_secret(provider_config.api_key))
    registry.configure(provider_config, verify=verify)
    return registry


# ── Commands ──────────────────────────────────────────────────────────

def cmd_distill(args, config: AppConfig) -> int:
    registry = build_registry(config, verify=not args.no_verify)
    extractors = default_extractors(upload_root=config.upload_root,
                                    cookies_path=config.cookies_path)
    storage = None if args.no_store else Database()
    queue = ProcessingQueue(
        registry, storage=storage, extractors=extractors,
        concurrency_limit=args.concurrency or config.concurrent_processing,
        max_pending=config.max_pending_jobs,
        summary_options={'focus': args.focus} if args.focus else None,
    )

    print_lock = threading.Lock()
    last_status: dict[str, str] = {}

    def on_job_updated(job):
        with print_lock:
            if last_status.get(job.id) != job.status:
                last_status[job.id] = job.status
                print(f"[{job.id[:8]}] {job.status}: {job.processing_step or ''}",
                      file=sys.stderr)

    queue.on_job_updated = on_job_updated

    if args.resume:
        queue.restore_from_storage()

    job_ids = []
    for source in args.sources:
        kind = args.kind or infer_source_kind(source)
        ref = stage_upload(source, config.upload_root) if kind == SourceKind.FILE else source
        job_ids.append(queue.submit(kind, ref))

    try:
        try:
            queue.wait_until_idle()
        except KeyboardInterrupt:
            print("Stopping...", file=sys.stderr)
            queue.shutdown(timeout=30)
        return _report_results(queue, job_ids, args.output_dir)
    finally:
        if storage is not None:
            storage.close()


def _report_results(queue: ProcessingQueue, job_ids: list[str], output_dir: str | None) -> int:
    """Print or write each finished distillation; returns the exit code."""
    output_dir = Path(output_dir).expanduser() if output_dir else None
    failures = 0
    for job_id in job_ids:
        job = queue.get_job(job_id)
        if job.status != JobStatus.COMPLETED:
            failures += 1
            reason = f"[{job.error.kind}] {job.error.message}" if job.error else job.status
            print(f"{job.source_ref}: {reason}", file=sys.stderr)
            continue
        if output_dir:
            output_dir.mkdir(parents=True, exist_ok=True)
            out = output_dir / f"{job.id[:8]}.md"
            out.write_text(f"# {job.source_ref}\n\n{job.result_content}\n", encoding="utf-8")
            print(f"{job.source_ref}: written to {out}")
        else:
            print(f"# {job.source_ref}\n\n{job.result_content}\n")
    return 1 if failures else 0


def cmd_test_provider(args, config: AppConfig) -> int:
    registry = build_registry(config, verify=False)
    result = registry.test_connection()
    print(json.dumps(result, indent=2))
    return 0 if result.get('success') else 1


def cmd_diagnose(args, config: AppConfig) -> int:
    registry = None
    try:
        registry = build_registry(config, verify=False)
    except ConfigurationError as e:
        print(f"Provider configuration: {e}", file=sys.stderr)
    info = get_diagnostics(registry, cookies_path=config.cookies_path,
                           test_provider=args.test)
    info['config'] = config.as_dict()
    print(json.dumps(info, indent=2))
    return 0


def cmd_set_key(args, config: AppConfig) -> int:
    api_key = getpass.getpass(f"{args.provider} API key: ").strip()
    ok, error = validate_api_key_format(args.provider, api_key)
    if not ok:
        print(error, file=sys.stderr)
        return 1
    if not keychain_set_api_key(args.provider, api_key):
        print("Failed to store the key in the Keychain", file=sys.stderr)
        return 1
    print(f"Stored {args.provider} key {mask_secret(api_key)}")
    return 0


def cmd_delete_key(args, config: AppConfig) -> int:
    if not keychain_delete_api_key(args.provider):
        print(f"No {args.provider} key found in the Keychain", file=sys.stderr)
        return 1
    print(f"Deleted {args.provider} key")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="distiller",
        description=f"{APP_DISPLAY_NAME}: distill web pages, videos and documents.")
    parser.add_argument("-v", "--verbose", action="store_true")
    parser.add_argument("--config", help="Path to config.json")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("distill", help="Distill one or more sources")
    p.add_argument("sources", nargs="+")
    p.add_argument("--kind", choices=[SourceKind.URL, SourceKind.YOUTUBE, SourceKind.FILE])
    p.add_argument("--concurrency", type=int)
    p.add_argument("--focus", help="Topic to emphasise in the distillation")
    p.add_argument("--output-dir")
    p.add_argument("--no-verify", action="store_true",
                   help="Skip the provider check before starting")
    p.add_argument("--no-store", action="store_true", help="Do not write jobs to the database")
    p.add_argument("--resume", action="store_true",
                   help="Also run jobs left queued by a previous run")
    p.set_defaults(func=cmd_distill)

    p = sub.add_parser("test-provider", help="Check the configured AI provider")
    p.set_defaults(func=cmd_test_provider)

    p = sub.add_parser("diagnose", help="Show diagnostic information")
    p.add_argument("--test", action="store_true", help="Also test the provider connection")
    p.set_defaults(func=cmd_diagnose)

    p = sub.add_parser("set-key", help="Store a provider API key in the Keychain")
    p.add_argument("provider", choices=ONLINE_PROVIDERS)
    p.set_defaults(func=cmd_set_key)

    p = sub.add_parser("delete-key", help="Remove a provider API key from the Keychain")
    p.add_argument("provider", choices=ONLINE_PROVIDERS)
    p.set_defaults(func=cmd_delete_key)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)

    logger.info("=" * 60)
    logger.info("%s v%s starting at %s", APP_NAME, APP_VERSION, datetime.now().isoformat())
    logger.info("Python: %s", sys.executable)
    logger.info("Command: %s", args.command)
    logger.info("=" * 60)

    try:
        config = AppConfig(Path(args.config).expanduser() if args.config else None)
        return args.func(args, config)
    except ConfigurationError as e:
        logger.error("Configuration error: %s", e)
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2
    except Exception as e:
        error_msg = f"{type(e).__name__}: {e}"
        logger.critical("Fatal error: %s\n%s", error_msg, traceback.format_exc())
        print(f"Error: {error_msg} (see {LOG_FILE})", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
