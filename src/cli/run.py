import argparse
import asyncio
import logging
import signal
import time
from datetime import date
from pathlib import Path
from typing import List, Optional

from ingestion.registry import create_default_registry
from processing.evaluator import OllamaAIFunction
from services.config import load_config
from services.database import SqliteStore
from services.llm import OllamaClient
from services.logging import setup_logging
from workflows.pipeline import ContentPipeline


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Content curation pipeline")
    parser.add_argument("--config", help="Path to config.yml")
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run one fetch tick, score everything RAW, build today's digest and exit",
    )
    parser.add_argument(
        "--digest-date",
        type=date.fromisoformat,
        metavar="YYYY-MM-DD",
        help="Build (or rebuild) the digest for one day and exit",
    )
    return parser.parse_args(argv)


async def main(argv: Optional[List[str]] = None) -> None:
    start_time = time.perf_counter()
    args = parse_args(argv)

    config = load_config(args.config)
    setup_logging(config.LOG_LEVEL)
    logger = logging.getLogger(__name__)

    # ----------------------------
    # Initialize shared services
    # ----------------------------
    Path(config.DATABASE_PATH).parent.mkdir(parents=True, exist_ok=True)
    store = SqliteStore(config.DATABASE_PATH)
    await store.init_tables()

    llm = OllamaClient(
        base_url=config.OLLAMA_BASE_URL,
        model=config.OLLAMA_MODEL,
    )
    if await llm.health_check():
        logger.info(f"Ollama reachable at {config.OLLAMA_BASE_URL} (model={config.OLLAMA_MODEL})")
    else:
        logger.warning("Ollama not reachable, AI tasks will fail and fall back to baseline scoring")

    ai_function = OllamaAIFunction(llm)
    pipeline = ContentPipeline(
        store=store,
        registry=create_default_registry(ai_function),
        ai_function=ai_function,
        tunables=config.tunables,
    )

    if args.digest_date:
        digest = await pipeline.build_digest(args.digest_date)
        logger.info(f"Digest {digest.date.isoformat()}: {digest.total_items} items")

    elif args.once:
        summary = await pipeline.run_once()
        logger.info(
            f"Run complete: {summary.tick.total_new_items} new items, "
            f"{summary.processed} scored, {len(summary.digests)} digests built"
        )

    else:
        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop_event.set)
            except NotImplementedError:
                # Windows event loops have no signal handlers; Ctrl+C still interrupts
                pass
        await pipeline.run(stop_event)

    logger.info(f"Total time: {time.perf_counter() - start_time:.2f}s")


def cli() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    cli()
