"""
responsekit CLI entry point.

Operator commands for the schema, templates, vector index sync and one-off
requests.
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

from responsekit import __version__
from responsekit.api.client import ResponsesApiClient
from responsekit.api.errors import ApiError
from responsekit.config.logging import get_logger, setup_logging
from responsekit.config.settings import Settings, load_settings
from responsekit.guard.guard import DeduplicationGuard
from responsekit.guard.liveness import AdvisoryLockChecker, build_liveness_checker
from responsekit.llm.models import (
    RequestBuilder,
    ResponseFormat,
    UnsupportedAttachmentError,
    upload_attachment,
)
from responsekit.llm.orchestrator import RequestOrchestrator
from responsekit.store.base import TemplateNotFoundError
from responsekit.store.models import Template, TemplateFile
from responsekit.store.sql import SqlRecordStore
from responsekit.sync.sources import DocumentFetcher
from responsekit.sync.synchronizer import SyncReport, VectorStoreSynchronizer
from responsekit.tools.mcp_executor import McpToolExecutor


def create_parser() -> argparse.ArgumentParser:
    """Create and configure argument parser."""
    parser = argparse.ArgumentParser(
        prog="responsekit",
        description="Deduplicated LLM requests, tool-call loops and vector index sync",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"responsekit {__version__}",
    )

    parser.add_argument(
        "--env-file",
        type=Path,
        default=None,
        help="Path to .env file (default: .env in current directory)",
    )

    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=None,
        help="Override logging level from config",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("config", help="Show current configuration")
    subparsers.add_parser("init-db", help="Create database tables")
    subparsers.add_parser("prune-locks", help="Remove lock files left by crashed workers")

    template_parser = subparsers.add_parser("add-template", help="Create a request template")
    template_parser.add_argument("name", help="Unique template name")
    template_parser.add_argument("--instructions", default=None, help="System instructions")
    template_parser.add_argument("--model", default=None, help="Model for this template")
    template_parser.add_argument("--temperature", type=float, default=None)
    template_parser.add_argument(
        "--response-format",
        choices=[f.value for f in ResponseFormat],
        default=None,
    )

    file_parser = subparsers.add_parser("add-file", help="Add a source document to a template")
    file_parser.add_argument("template", help="Template id or name")
    file_parser.add_argument("url", help="http(s) URL, Google Docs URL or local path")
    file_parser.add_argument("--name", default=None, help="Display name")
    file_parser.add_argument(
        "--type",
        dest="file_type",
        default="txt",
        help="File type used for export and upload (default: txt)",
    )

    sync_parser = subparsers.add_parser("sync", help="Sync one template's vector index")
    sync_parser.add_argument("template", help="Template id or name")

    subparsers.add_parser("sync-all", help="Sync every template that has files")

    ask_parser = subparsers.add_parser("ask", help="Send one deduplicated request")
    ask_parser.add_argument("correlation_key", help="Idempotency key for this request")
    ask_parser.add_argument("message", help="User message")
    ask_parser.add_argument("--model", default=None, help="Override the model")
    ask_parser.add_argument("--instructions", default=None, help="System instructions")
    ask_parser.add_argument(
        "--user",
        default=None,
        help="Continue this user's remote conversation (conversation mode)",
    )
    ask_parser.add_argument("--template", default=None, help="Template id or name to apply")
    ask_parser.add_argument(
        "--attach",
        type=Path,
        action="append",
        default=[],
        help="Attach a PDF or image (repeatable)",
    )
    ask_parser.add_argument(
        "--json",
        action="store_true",
        help="Request a JSON object and print the decoded output",
    )

    return parser


def cmd_config(settings: Settings) -> int:
    """Show current configuration."""
    logger = get_logger(__name__)

    logger.info("\n=== responsekit Configuration ===\n")
    logger.info(f"Environment: {settings.environment}")
    logger.info(f"Log Level: {settings.log_level}")
    logger.info(f"Log File: {settings.log_file or 'None (console only)'}")
    logger.info(f"\nAPI Base URL: {settings.api.base_url}")
    logger.info(f"API Key: {'Set' if settings.api.api_key else 'Not set'}")
    logger.info(f"API Timeout: {settings.api.timeout}s (uploads {settings.api.upload_timeout}s)")
    logger.info(f"\nDatabase: {settings.store.database_url}")
    logger.info(f"\nGuard Strategy: {settings.guard.strategy}")
    logger.info(f"Lock Directory: {settings.guard.lock_dir}")
    logger.info(f"\nDefault Model: {settings.llm.default_model}")
    logger.info(f"Max Tool Rounds: {settings.llm.max_tool_rounds}")
    logger.info(f"Max Context Retries: {settings.llm.max_context_retries}")
    logger.info(f"\nSync Temp Dir: {settings.sync.temp_dir}")
    logger.info(f"\nMCP Tool Server: {settings.tools.mcp_server_command or 'None'}")

    return 0


def cmd_prune_locks(settings: Settings) -> int:
    """Remove unlocked lock files from the guard lock directory."""
    removed = AdvisoryLockChecker(settings.guard.lock_dir).prune()
    print(f"Removed {removed} stale lock file(s) from {settings.guard.lock_dir}")
    return 0


def _open_store(settings: Settings) -> SqlRecordStore:
    return SqlRecordStore(settings.store.database_url, echo=settings.store.echo)


def _ensure_sqlite_dir(database_url: str) -> None:
    prefix = "sqlite+aiosqlite:///"
    if database_url.startswith(prefix):
        Path(database_url[len(prefix):]).parent.mkdir(parents=True, exist_ok=True)


async def cmd_init_db(settings: Settings) -> int:
    """Create all database tables."""
    logger = get_logger(__name__)

    _ensure_sqlite_dir(settings.store.database_url)
    try:
        async with _open_store(settings) as store:
            await store.create_all()
    except Exception as e:
        logger.error(f"Schema creation failed: {e}", exc_info=True)
        return 1
    return 0


async def cmd_add_template(args, settings: Settings) -> int:
    logger = get_logger(__name__)

    async with _open_store(settings) as store:
        if await store.find_template(args.name) is not None:
            logger.error(f"Template already exists: {args.name}")
            return 1
        template = await store.create_template(
            Template(
                name=args.name,
                instructions=args.instructions,
                model=args.model,
                temperature=args.temperature,
                response_format=args.response_format,
            )
        )
    print(f"Created template #{template.id} ({template.name})")
    return 0


async def cmd_add_file(args, settings: Settings) -> int:
    logger = get_logger(__name__)

    async with _open_store(settings) as store:
        try:
            template = await store.get_template(args.template)
        except TemplateNotFoundError as e:
            logger.error(str(e))
            return 1
        template_file = await store.create_template_file(
            TemplateFile(
                template_id=template.id,
                file_url=args.url,
                file_name=args.name,
                file_type=args.file_type,
            )
        )
    print(f"Added file #{template_file.id} to template '{template.name}'")
    return 0


def _print_report(name: str, report: SyncReport) -> None:
    status = "OK" if not report.has_failures else "WITH FAILURES"
    print(f"\n=== Sync {name}: {status} ===")
    print(f"Index: {report.index_id or '-'}")
    print(
        f"Uploaded {report.uploaded}, attached {report.attached}, skipped {report.skipped}, "
        f"failed {report.failed}, replaced {report.replaced}, deleted {report.deleted}"
    )
    for error in report.errors:
        print(f"  ! {error}")


def _synchronizer(client: ResponsesApiClient, store: SqlRecordStore, settings: Settings):
    return VectorStoreSynchronizer(
        client,
        store,
        fetcher=DocumentFetcher(timeout=settings.sync.download_timeout),
        temp_dir=settings.sync.temp_dir,
    )


async def cmd_sync(args, settings: Settings) -> int:
    """Sync one template's files with its vector index."""
    logger = get_logger(__name__)

    async with _open_store(settings) as store, ResponsesApiClient(settings.api) as client:
        try:
            template = await store.get_template(args.template)
        except TemplateNotFoundError as e:
            logger.error(str(e))
            return 1

        report = await _synchronizer(client, store, settings).reconcile_with_report(template)

    _print_report(template.name, report)
    return 0 if report.completed else 1


async def cmd_sync_all(settings: Settings) -> int:
    """Sync every template that has files."""
    async with _open_store(settings) as store, ResponsesApiClient(settings.api) as client:
        reports = await _synchronizer(client, store, settings).reconcile_all()

    if not reports:
        print("No templates with files.")
        return 0
    for report in reports:
        _print_report(f"template #{report.template_id}", report)
    return 0 if all(report.completed for report in reports) else 1


async def cmd_ask(args, settings: Settings) -> int:
    """Send one request through the guard and the tool-call loop."""
    logger = get_logger(__name__)

    if not settings.api.api_key:
        logger.error("API key not set. Add OPENAI_API_KEY=<your-key> to your .env file.")
        return 1

    tool_executor = None
    if settings.tools.mcp_server_command:
        tool_executor = McpToolExecutor.from_settings(settings.tools)

    async with _open_store(settings) as store, ResponsesApiClient(settings.api) as client:
        builder = RequestBuilder(args.correlation_key).message(args.message)

        if args.template:
            try:
                builder.use_template(await store.get_template(args.template))
            except TemplateNotFoundError as e:
                logger.error(str(e))
                return 1
        if args.instructions:
            builder.instructions(args.instructions)
        if args.model:
            builder.model(args.model)
        if args.user:
            builder.conversation(args.user)
        if args.json:
            builder.response_format(ResponseFormat.JSON_OBJECT)

        for path in args.attach:
            try:
                builder.attach(await upload_attachment(client, path))
            except UnsupportedAttachmentError as e:
                print(f"{e}\n{e.hint}", file=sys.stderr)
                return 1
            except ApiError as e:
                logger.error(f"Attachment upload failed: {e}")
                return 1

        guard = DeduplicationGuard(
            store, build_liveness_checker(settings.guard.strategy, settings.guard.lock_dir)
        )

        if tool_executor is not None:
            await tool_executor.initialize()
        try:
            orchestrator = RequestOrchestrator(
                client, store, guard, settings=settings.llm, tool_executor=tool_executor
            )
            result = await orchestrator.execute(builder.build())
        finally:
            if tool_executor is not None:
                await tool_executor.shutdown()

    if result.in_progress:
        print(f"Request '{args.correlation_key}' is already in progress; skipped.")
        return 0

    if result.failed:
        print(f"Request failed ({result.kind.value}): {result.error}", file=sys.stderr)
        if result.hint:
            print(result.hint, file=sys.stderr)
        return 1

    if args.json:
        print(json.dumps(result.json(), indent=2, ensure_ascii=False))
    else:
        print(result.text() or "")

    for call in result.tool_calls:
        print(f"  {call.function_name} → {call.status.value}")
    if result.usage:
        print(f"\nTokens: {result.usage.get('total_tokens', '?')} ({result.model})")
    return 0


def main() -> int:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args()

    try:
        settings = load_settings(env_file=args.env_file)
    except Exception as e:
        print(f"Error loading settings: {e}", file=sys.stderr)
        return 1

    if args.log_level:
        settings.log_level = args.log_level

    setup_logging(settings)

    if args.command == "config":
        return cmd_config(settings)
    elif args.command == "init-db":
        return asyncio.run(cmd_init_db(settings))
    elif args.command == "prune-locks":
        return cmd_prune_locks(settings)
    elif args.command == "add-template":
        return asyncio.run(cmd_add_template(args, settings))
    elif args.command == "add-file":
        return asyncio.run(cmd_add_file(args, settings))
    elif args.command == "sync":
        return asyncio.run(cmd_sync(args, settings))
    elif args.command == "sync-all":
        return asyncio.run(cmd_sync_all(settings))
    elif args.command == "ask":
        return asyncio.run(cmd_ask(args, settings))
    else:
        parser.print_help()
        return 0


if __name__ == "__main__":
    sys.exit(main())
