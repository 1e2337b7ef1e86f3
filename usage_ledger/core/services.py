"""
Service composition.

Builds one set of collaborating instances from a configuration; nothing in
the ledger relies on module-level singletons.
"""

from dataclasses import dataclass

from usage_ledger.config.loader import LedgerConfig
from usage_ledger.storage.repository import UsageRepository
from .access import LocalDirectoryBroker
from .cache import FileCache
from .hybrid import HybridUsageService
from .ingestion import IngestionCoordinator
from .parser import StreamingParser
from .pipeline import IngestionPipeline
from .scheduler import SyncScheduler


@dataclass
class LedgerServices:
    """Wired instances sharing one repository and one parser."""
    config: LedgerConfig
    repository: UsageRepository
    broker: LocalDirectoryBroker
    cache: FileCache
    pipeline: IngestionPipeline
    hybrid: HybridUsageService
    scheduler: SyncScheduler


def build_services(config: LedgerConfig) -> LedgerServices:
    """Compose the ledger from a configuration.

    The read fallback parses through the file cache; ingestion runs always
    read the files themselves so that per-file line counters are exact.
    """
    ingestion = config.ingestion
    repository = UsageRepository(config.storage.db_path)
    broker = LocalDirectoryBroker(ingestion.projects_dir)
    parser = StreamingParser(chunk_size=ingestion.chunk_size, batch_size=ingestion.batch_size)
    cache = FileCache(expiry_seconds=ingestion.cache_expiry_seconds)

    pipeline = IngestionPipeline(
        repository=repository,
        coordinator=IngestionCoordinator(parser, None, ingestion.max_concurrent_files),
        broker=broker,
        batch_size=ingestion.batch_size,
    )
    hybrid = HybridUsageService(
        repository=repository,
        coordinator=IngestionCoordinator(parser, cache, ingestion.max_concurrent_files),
        broker=broker,
    )
    scheduler = SyncScheduler(pipeline, config.sync)

    return LedgerServices(
        config=config,
        repository=repository,
        broker=broker,
        cache=cache,
        pipeline=pipeline,
        hybrid=hybrid,
        scheduler=scheduler,
    )
