"""ChunkFerry application: moves a file tree between two removable volumes
that can never be connected at the same time, one bounded chunk at a time."""

from __future__ import annotations

import logging
from pathlib import Path

from chunkferry.config import ConfigManager, DEFAULT_WORK_DIR

logger = logging.getLogger(__name__)

__version__ = "1.0.0"


class Ferry:
    """Wires configuration, ledger and collaborators together and routes a run.

    Route: optional reset (``--noresume``), then plan-and-transfer, then the
    optional verification pass once every chunk is done.
    """

    def __init__(
        self,
        work_dir: Path | None = None,
        noresume: bool = False,
        verify: bool = False,
        verbose: bool = False,
        quiet: bool = False,
        volumes=None,
        engine=None,
    ) -> None:
        """Initialise from the config in *work_dir*.

        *volumes* and *engine* default to the udisks volume service and the
        configured transfer engine.
        """
        from chunkferry.ledger import ProgressLedger
        from chunkferry.planner import ChunkPlanner

        self._config = ConfigManager(base_dir=work_dir or DEFAULT_WORK_DIR)
        self._noresume = noresume
        self._verify = verify
        self._verbose = verbose
        self._quiet = quiet
        self.ledger = ProgressLedger(self._config.base_dir)
        self.planner = ChunkPlanner(self.ledger)
        self._volumes = volumes if volumes is not None else self._default_volumes()
        self._engine = engine if engine is not None else self._default_engine()

    @property
    def config(self) -> ConfigManager:
        return self._config

    def _default_volumes(self):
        from chunkferry.volumes import UdisksVolumeService, VolumeWaiter

        waiter = VolumeWaiter(
            self._config.media_root(),
            poll_interval=self._config.get_float("mount_poll_interval"),
        )
        return UdisksVolumeService(
            waiter,
            eject_settle_delay=self._config.get_float("eject_settle_delay"),
            unplug_settle_delay=self._config.get_float("unplug_settle_delay"),
        )

    def _default_engine(self):
        from chunkferry.transfer import default_engine

        return default_engine(self._config.transfer_engine())

    def build_orchestrator(self):
        """Return a :class:`TransferOrchestrator` configured for this run."""
        from chunkferry.orchestrator import OrchestratorSettings, TransferOrchestrator
        from chunkferry.transfer import CopyOptions

        settings = OrchestratorSettings(
            budget_bytes=self._config.budget_bytes(),
            max_retries=self._config.get_int("max_retries"),
            retry_delay=self._config.get_float("retry_delay"),
            mount_timeout=self._config.get_float("mount_timeout"),
            source_label=str(self._config.get("source_label")),
            dest_label=str(self._config.get("dest_label")),
            copy_options=CopyOptions(
                preserve_attributes=True,
                show_progress=not self._quiet,
                verbose=self._verbose,
            ),
        )
        return TransferOrchestrator(self.ledger, self.planner, self._volumes, self._engine, settings)

    def run(self):
        """Run the whole operation; returns ``(RunReport, VerifyReport | None)``.

        Raises:
            FerryError: on any fatal abort.
        """
        if self._noresume:
            logger.warning(
                "'--noresume' specified: removing chunk records, done markers "
                "and staging area in %s",
                self._config.base_dir,
            )
            self.ledger.reset()

        report = self.build_orchestrator().run()

        verify_report = None
        if self._verify:
            if report.complete:
                verify_report = self._run_verify()
            else:
                logger.warning("Skipping verification: not every chunk has been transferred")
        return report, verify_report

    def _run_verify(self):
        from chunkferry.verify import Verifier

        verifier = Verifier(
            self._volumes,
            source_label=str(self._config.get("source_label")),
            dest_label=str(self._config.get("dest_label")),
            mount_timeout=self._config.get_float("mount_timeout"),
        )
        return verifier.run()
