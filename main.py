#!/usr/bin/env python3
"""
Video generation orchestrator - Main Entry Point

Usage:
    # List models and their group limits
    python main.py models

    # Generate videos
    python main.py generate --model Kling-2.1 --prompt "A cat surfing at sunset" --count 2

    # Resume tasks left PROCESSING (e.g. after a crash)
    python main.py recover --chat-id 7f1c...
"""

import argparse
import asyncio
import logging
import sys
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Optional

import asyncpg

from core.admission import GroupAdmission
from core.catalog import ModelCatalog
from core.config import Config, get_config
from services.auth import SupabaseSessionProvider
from services.storage import SupabaseStorage
from services.video_generation import (
    GenerationOrchestrator,
    GenerationRequest,
    MediaRelocator,
    OutputConfig,
    RecoverySweep,
    StatusUpdate,
    StreamSummary,
    TaskLedger,
    TaskScope,
    VodAigcClient,
)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("videogen")


@dataclass
class Services:
    """Everything a command needs, wired together."""
    orchestrator: GenerationOrchestrator
    sweep: RecoverySweep
    ledger: TaskLedger
    sessions: SupabaseSessionProvider


def build_orchestrator(
    config: Config,
    db_pool: asyncpg.Pool,
    catalog: Optional[ModelCatalog] = None,
) -> Services:
    """Composition root: construct the services with their collaborators."""
    catalog = catalog or ModelCatalog.load(config.models_path)
    ledger = TaskLedger(db_pool, table=config.database.video_tasks_table)
    storage = SupabaseStorage(
        config.supabase,
        bucket=config.storage.bucket,
        timeout=config.storage.download_timeout,
    )
    relocator = MediaRelocator(storage, config.storage)
    sessions = SupabaseSessionProvider(config.supabase)

    orchestrator = GenerationOrchestrator(
        client=VodAigcClient(config.vod),
        ledger=ledger,
        relocator=relocator,
        sessions=sessions,
        catalog=catalog,
        admission=GroupAdmission(poll_interval_ms=config.orchestrator.admission_poll_interval_ms),
        default_count=config.orchestrator.default_count,
    )
    sweep = RecoverySweep(orchestrator, ledger, relocator)
    return Services(orchestrator=orchestrator, sweep=sweep, ledger=ledger, sessions=sessions)


@asynccontextmanager
async def open_services(config: Config) -> AsyncIterator[Services]:
    """Open the database pool, build the services, and close everything afterwards."""
    db_pool = await asyncpg.create_pool(
        config.database.url,
        min_size=config.database.pool_min_size,
        max_size=config.database.pool_max_size,
    )
    services = build_orchestrator(config, db_pool)
    try:
        yield services
    finally:
        await services.orchestrator.client.close()
        await services.orchestrator.relocator.close()
        await services.orchestrator.relocator.storage.close()
        await services.sessions.close()
        await db_pool.close()


def print_update(update: StatusUpdate, index: int = 0, total: int = 1):
    prefix = f"[{index + 1}/{total}] " if total > 1 else ""
    print(f"{prefix}{update.to_cli_line()}")


def check_config(config: Config) -> bool:
    issues = config.validate()
    for issue in issues:
        logger.error(f"Config: {issue}")
    return not issues


async def generate_videos(args: argparse.Namespace) -> bool:
    config = get_config()
    if not check_config(config):
        return False

    request = GenerationRequest(
        prompt=args.prompt,
        count=args.count,
        image_urls=args.image or [],
        last_frame_url=args.last_frame,
        output_config=OutputConfig(
            resolution=args.resolution,
            aspect_ratio=args.aspect_ratio,
        ),
        chat_id=args.chat_id,
    )

    async with open_services(config) as services:
        def on_complete(summary: StreamSummary):
            print(summary.message)

        def on_error(error: Exception):
            print(f"❌ {error}")

        summary = await services.orchestrator.generate_stream(
            args.model,
            request,
            count=args.count,
            on_progress=print_update,
            on_complete=on_complete,
            on_error=on_error,
        )

    for result in summary.results:
        if result.success:
            print(f"{result.task_id}: {result.media_url}")
    return summary.success


async def recover_tasks(args: argparse.Namespace) -> bool:
    config = get_config()
    if not check_config(config):
        return False

    async with open_services(config) as services:
        session = await services.sessions.get_current_session()
        if session is None:
            logger.error("Not signed in: set SUPABASE_ACCESS_TOKEN")
            return False

        scope = TaskScope(user_id=session.user_id, chat_id=args.chat_id)
        pending = await services.ledger.count_processing(session.user_id)
        logger.info(f"{pending} task(s) PROCESSING for {session.email or session.user_id}")

        results = await services.sweep.run(scope, on_progress=print_update)
        if args.relocate:
            await services.sweep.relocate_finished(scope)

    failed = [r for r in results if not r.success]
    print(f"Recovered {len(results)} task(s), {len(failed)} failed")
    return not failed


def list_models():
    config = get_config()
    catalog = ModelCatalog.load(config.models_path)

    for group in catalog.groups:
        policy = catalog.get_policy(group)
        print(
            f"{group.value}: max {policy.max_concurrent} concurrent, "
            f"cooldown {policy.cooldown_ms}ms, poll every {policy.poll_interval_ms}ms "
            f"(timeout {policy.poll_timeout_ms / 1000:.0f}s)"
        )
        for model in catalog.models_in_group(group):
            modes = "/".join(
                mode for mode, on in (("t2v", model.support_t2v), ("i2v", model.support_i2v)) if on
            )
            last_frame = ", last frame" if model.support_last_frame else ""
            print(f"  - {model.id} ({modes}{last_frame})")


def main():
    parser = argparse.ArgumentParser(
        description="AIGC video generation orchestrator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    python main.py models
    python main.py generate --model Hailuo-2.3 --prompt "Ocean waves at dawn"
    python main.py generate --model Kling-2.1 --prompt "Zoom in" --image https://.../first.png
    python main.py recover --relocate
        """,
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # Generate command
    gen_parser = subparsers.add_parser("generate", help="Generate videos")
    gen_parser.add_argument("--model", "-m", required=True, help="Model id, e.g. Kling-2.1")
    gen_parser.add_argument("--prompt", "-p", required=True, help="Text prompt")
    gen_parser.add_argument("--count", "-n", type=int, default=1, help="Number of videos")
    gen_parser.add_argument("--image", "-i", action="append", help="Reference image URL")
    gen_parser.add_argument("--last-frame", help="Last frame image URL")
    gen_parser.add_argument("--resolution", default="1080P", help="Output resolution")
    gen_parser.add_argument("--aspect-ratio", help="Output aspect ratio, e.g. 16:9")
    gen_parser.add_argument("--chat-id", help="Chat the videos belong to")

    # Recover command
    rec_parser = subparsers.add_parser("recover", help="Resume tasks left PROCESSING")
    rec_parser.add_argument("--chat-id", help="Only this chat")
    rec_parser.add_argument(
        "--relocate",
        action="store_true",
        help="Also retry relocation for finished tasks still on provider URLs",
    )

    # Models command
    subparsers.add_parser("models", help="List models and group limits")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    if args.command == "generate":
        ok = asyncio.run(generate_videos(args))
        sys.exit(0 if ok else 1)

    elif args.command == "recover":
        ok = asyncio.run(recover_tasks(args))
        sys.exit(0 if ok else 1)

    elif args.command == "models":
        list_models()


if __name__ == "__main__":
    main()
