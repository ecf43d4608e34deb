"""Sync façade exposed to the route layer and the CLI.

``SyncService`` wires the repository and chain client into the reconciler,
bet ingestion, resolution sync, and APY refresh, builds the scheduler's
job list, and offers the manual triggers. Client-level failures raised by
a manual trigger are translated into ``InternalError``.
"""

import logging
from dataclasses import dataclass, replace

from market_ledger.chain.client import ChainClient
from market_ledger.chain.exceptions import ChainError
from market_ledger.core.config import ChainSettings
from market_ledger.core.errors import BadRequestError, InternalError
from market_ledger.db.repository import LedgerRepository
from market_ledger.engine.ingestion import BetIngestor, IngestReport
from market_ledger.engine.reconciler import ChainReconciler, ReconcileReport, VerifyReport
from market_ledger.engine.resolution import ResolutionSync
from market_ledger.engine.scheduler import Job
from market_ledger.engine.yields import refresh_protocol_apys

logger = logging.getLogger(__name__)

JOB_PROTOCOL_APY = "protocol_apy"
JOB_BLOCKCHAIN_SYNC = "blockchain_sync"
JOB_INDEXER_BETS = "indexer_bets"
JOB_RESOLUTION_SYNC = "resolution_sync"


@dataclass(frozen=True)
class JobStatus:
    """Checkpoint of one background job."""

    name: str
    runs: int
    last_success_at: int | None
    last_failure_at: int | None
    last_error: str | None


@dataclass(frozen=True)
class SyncStatus:
    """Snapshot of ledger contents and background job health.

    Args:
        markets: Total markets.
        linked_markets: Markets holding a chain id.
        bets: Total bets.
        protocols: Total yield protocols.
        last_sync_time: Latest successful job run, epoch seconds, or
            ``None`` if no job has ever succeeded.
        jobs: Per-job checkpoints.

    """

    markets: int
    linked_markets: int
    bets: int
    protocols: int
    last_sync_time: int | None
    jobs: tuple[JobStatus, ...]


@dataclass(frozen=True)
class FullSyncReport:
    """Result of a manual full sync."""

    protocols_updated: int
    reconcile: ReconcileReport
    pushed: ReconcileReport | None
    bets: IngestReport
    resolved: int


class SyncService:
    """Coordinate the background engines.

    Args:
        repository: Ledger database repository.
        chain_settings: Settings used to build chain clients.
        chain: Pre-built chain client; built lazily from ``chain_settings``
            when omitted.
        create_missing_markets: Whether blockchain sync also creates
            on-chain markets for unlinked rows.

    """

    def __init__(
        self,
        repository: LedgerRepository,
        chain_settings: ChainSettings,
        *,
        chain: ChainClient | None = None,
        create_missing_markets: bool = False,
    ) -> None:
        """Initialize the sync service.

        Args:
            repository: Ledger database repository.
            chain_settings: Settings used to build chain clients.
            chain: Pre-built chain client.
            create_missing_markets: Whether blockchain sync also creates
                on-chain markets for unlinked rows.

        """
        self._repo = repository
        self._chain_settings = chain_settings
        self._chain = chain
        self._create_missing = create_missing_markets

    @property
    def chain(self) -> ChainClient:
        """Return the chain client, building it on first use."""
        if self._chain is None:
            self._chain = ChainClient(self._chain_settings)
        return self._chain

    def build_jobs(self) -> list[Job]:
        """Return the scheduler jobs in their fixed execution order."""
        return [
            Job(JOB_PROTOCOL_APY, self.refresh_protocols),
            Job(JOB_BLOCKCHAIN_SYNC, self.sync_blockchain),
            Job(JOB_INDEXER_BETS, self.ingest_bets),
            Job(JOB_RESOLUTION_SYNC, self.sync_resolutions),
        ]

    async def refresh_protocols(self) -> int:
        """Refresh protocol APYs from the chain."""
        return await refresh_protocol_apys(self._repo, self.chain)

    async def sync_blockchain(self) -> tuple[ReconcileReport, ReconcileReport | None]:
        """Reconcile chain ids, then optionally push unlinked markets."""
        reconciler = ChainReconciler(self._repo, self.chain)
        report = await reconciler.reconcile()
        pushed = await reconciler.push_unlinked_markets() if self._create_missing else None
        return report, pushed

    async def ingest_bets(self) -> IngestReport:
        """Mirror pending indexer bet events into bets."""
        return await BetIngestor(self._repo).ingest_pending()

    async def sync_resolutions(self) -> int:
        """Mirror on-chain resolutions into the database."""
        return await ResolutionSync(self._repo, self.chain).sync_resolutions()

    async def get_sync_status(self) -> SyncStatus:
        """Return ledger counts and per-job checkpoints.

        Returns:
            Current sync status.

        """
        checkpoints = await self._repo.get_checkpoints()
        jobs = tuple(
            JobStatus(
                name=cp.job_name,
                runs=cp.runs or 0,
                last_success_at=cp.last_success_at,
                last_failure_at=cp.last_failure_at,
                last_error=cp.last_error,
            )
            for cp in checkpoints
        )
        successes = [job.last_success_at for job in jobs if job.last_success_at is not None]
        return SyncStatus(
            markets=await self._repo.count_markets(),
            linked_markets=await self._repo.count_markets(linked_only=True),
            bets=await self._repo.count_bets(),
            protocols=await self._repo.count_protocols(),
            last_sync_time=max(successes) if successes else None,
            jobs=jobs,
        )

    async def trigger_full_sync(self) -> FullSyncReport:
        """Run every background job once, in scheduler order.

        Unlike the scheduler, a chain failure here aborts the sync and is
        reported to the caller.

        Returns:
            Combined results of the jobs.

        Raises:
            InternalError: When a chain call fails.

        """
        logger.info("Starting manual full sync")
        try:
            protocols = await self.refresh_protocols()
            reconcile, pushed = await self.sync_blockchain()
            bets = await self.ingest_bets()
            resolved = await self.sync_resolutions()
        except ChainError as exc:
            logger.exception("Manual full sync failed")
            raise InternalError(f"Full sync failed: {exc.msg}", tx_hash=exc.tx_hash) from exc
        for job in (JOB_PROTOCOL_APY, JOB_BLOCKCHAIN_SYNC, JOB_INDEXER_BETS, JOB_RESOLUTION_SYNC):
            await self._repo.record_job_result(job)
        return FullSyncReport(
            protocols_updated=protocols,
            reconcile=reconcile,
            pushed=pushed,
            bets=bets,
            resolved=resolved,
        )

    async def trigger_blockchain_sync(
        self, contract_address: str, rpc_url: str
    ) -> tuple[ReconcileReport, VerifyReport]:
        """Reconcile against an explicitly named contract and RPC endpoint.

        Args:
            contract_address: Settlement contract address.
            rpc_url: JSON-RPC endpoint URL.

        Returns:
            The reconciliation and verification reports.

        Raises:
            BadRequestError: If either argument is empty.
            InternalError: When a chain call fails.

        """
        if not contract_address or not rpc_url:
            raise BadRequestError("contract address and rpc url are required")
        settings = replace(
            self._chain_settings, contract_address=contract_address, rpc_url=rpc_url
        )
        try:
            client = ChainClient(settings)
        except ChainError as exc:
            raise BadRequestError(f"Invalid contract address: {contract_address}") from exc
        reconciler = ChainReconciler(self._repo, client)
        try:
            reconcile = await reconciler.reconcile()
            verify = await reconciler.verify_links()
        except ChainError as exc:
            logger.exception("Blockchain sync against %s failed", contract_address)
            raise InternalError(f"Blockchain sync failed: {exc.msg}") from exc
        await self._repo.record_job_result(JOB_BLOCKCHAIN_SYNC)
        return reconcile, verify
