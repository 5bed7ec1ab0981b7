"""Lorekeeper worker entry point."""

import asyncio
import logging
import signal
import sys
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

from lorekeeper.config import ConfigLoader, SystemConfig
from lorekeeper.db import VectorStore, create_db_engine, create_session_factory, init_db
from lorekeeper.db.migrations import ensure_database_ready
from lorekeeper.services.config_cascade import ConfigCascadeResolver, YamlPrecedenceStore
from lorekeeper.services.conversation_core import ConversationCore
from lorekeeper.services.embedding_service import create_embedder
from lorekeeper.services.memory_writeback import MemoryWritebackPipeline
from lorekeeper.services.writeback_workers import WritebackWorkerPool

RETENTION_INTERVAL_SECONDS = 24 * 60 * 60


def setup_logging(debug: bool = False, log_dir: Path = Path("data/debug_logs")):
    """Configure logging."""
    handlers = [logging.StreamHandler(sys.stdout)]
    
    log_file = None
    if debug:
        log_dir.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        log_file = log_dir / f"worker_{timestamp}.log"
        file_handler = logging.FileHandler(log_file, encoding='utf-8')
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s'))
        handlers.append(file_handler)
    
    # Root stays at INFO so library debug output stays out of the logs
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers,
        force=True
    )
    logging.getLogger('lorekeeper').setLevel(logging.DEBUG if debug else logging.INFO)
    
    for noisy in ('chromadb', 'httpx', 'httpcore', 'sentence_transformers', 'urllib3'):
        logging.getLogger(noisy).setLevel(logging.WARNING)
    
    if log_file:
        logging.getLogger(__name__).info(f"[STARTUP] Debug log file: {log_file}")
    return log_file


@dataclass
class Runtime:
    """Wired components for one process."""
    config: SystemConfig
    core: ConversationCore
    pipeline: MemoryWritebackPipeline
    pool: WritebackWorkerPool


def build_runtime(config: SystemConfig, loader: Optional[ConfigLoader] = None) -> Runtime:
    """Create the database, vector index, embedder and services from configuration."""
    config.paths.data.mkdir(parents=True, exist_ok=True)
    ensure_database_ready(config.database_url)
    
    engine = create_db_engine(
        config.database_url,
        busy_timeout_seconds=config.database.busy_timeout_seconds,
        echo=config.database.echo
    )
    init_db(engine)
    session_factory = create_session_factory(engine)
    
    vector_store = VectorStore(config.vector_store_path)
    embedder = create_embedder(config.embedding)
    
    resolver = ConfigCascadeResolver(
        YamlPrecedenceStore(config, loader),
        cache_enabled=config.resolver_cache.enabled,
        cache_ttl_seconds=config.resolver_cache.ttl_seconds
    )
    
    pipeline = MemoryWritebackPipeline.from_config(config.writeback, session_factory, vector_store, embedder)
    pool = WritebackWorkerPool(
        pipeline,
        workers=config.writeback.workers,
        poll_interval_seconds=config.writeback.poll_interval_seconds
    )
    core = ConversationCore.from_config(
        config, session_factory, vector_store, embedder, resolver, on_enqueued=pool.notify
    )
    return Runtime(config=config, core=core, pipeline=pipeline, pool=pool)


async def _retention_loop(runtime: Runtime, stop: asyncio.Event):
    logger = logging.getLogger(__name__)
    days = runtime.config.context.retention_days
    while not stop.is_set():
        try:
            removed = await asyncio.to_thread(runtime.core.purge_turns_older_than, days)
            if removed:
                logger.info(f"Retention cleanup removed {removed} turn(s)")
        except Exception as e:
            logger.error(f"Retention cleanup failed: {e}", exc_info=True)
        try:
            await asyncio.wait_for(stop.wait(), timeout=RETENTION_INTERVAL_SECONDS)
        except asyncio.TimeoutError:
            pass


async def run_worker(runtime: Runtime):
    """Run the writeback pool until SIGINT/SIGTERM."""
    logger = logging.getLogger(__name__)
    stop = asyncio.Event()
    
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops do not support signal handlers
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(stop.set))
    
    await runtime.pool.start()
    retention_task = None
    if runtime.config.context.retention_days:
        retention_task = asyncio.create_task(_retention_loop(runtime, stop))
    
    logger.info("Lorekeeper worker running; press Ctrl+C to stop")
    await stop.wait()
    
    logger.info("Shutting down...")
    await runtime.pool.stop()
    if retention_task:
        await retention_task


def main():
    """Run the memory writeback worker."""
    loader = ConfigLoader()
    try:
        system_config = loader.load_system_config()
    except Exception as e:
        logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
        logging.getLogger(__name__).error(f"[STARTUP] Could not load system config: {e}")
        sys.exit(1)
    
    setup_logging(debug=system_config.debug, log_dir=system_config.paths.data / "debug_logs")
    logger = logging.getLogger(__name__)
    logger.info(f"Starting Lorekeeper worker (debug mode: {system_config.debug})...")
    
    runtime = build_runtime(system_config, loader)
    asyncio.run(run_worker(runtime))


if __name__ == "__main__":
    main()
