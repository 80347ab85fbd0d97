"""
Mount orchestration for captures.

A capture is exposed at ``<mount_base>/<dataset>``. For recursive datasets,
each descendant capture is mounted beneath that root at its relative path.

Every mount is recorded in the ``mount_bindings`` ledger before the mount
command runs and removed after the unmount succeeds, so the set of active
working trees can always be read back after a crash.
"""

import os
import logging
from typing import Callable, List, Optional

from snapvault import db
from snapvault.models import MountBinding
from .commands import CommandRunner, CommandError, CommandTimeout
from .snapshots import SnapshotManager, CaptureError, capture_name

logger = logging.getLogger(__name__)


class MountError(Exception):
    """Raised when a capture cannot be mounted or unmounted."""
    pass


class MountOrchestrator:
    """
    Binds captures to working directories and tears them down in reverse order.
    """

    def __init__(
        self,
        runner: CommandRunner,
        snapshots: SnapshotManager,
        base_dir: str,
        timeout: Optional[float] = None,
        is_mounted: Callable[[str], bool] = os.path.ismount
    ):
        """
        Initialize mount orchestrator.

        Args:
            runner: CommandRunner used for mount/umount
            snapshots: SnapshotManager used to discover descendant captures
            base_dir: Directory under which working roots are created
            timeout: Per-call timeout in seconds
            is_mounted: Predicate telling whether a path is currently a mount point
        """
        self.runner = runner
        self.snapshots = snapshots
        self.base_dir = base_dir
        self.timeout = timeout
        self.is_mounted = is_mounted

    def working_root(self, dataset: str) -> str:
        """Working root for a dataset, namespaced by the dataset name."""
        return os.path.join(self.base_dir, dataset)

    def active_bindings(self, dataset: str = None) -> List[MountBinding]:
        """Ledger entries in creation order, optionally for one dataset."""
        query = MountBinding.query
        if dataset is not None:
            query = query.filter_by(dataset=dataset)
        return query.order_by(MountBinding.id.asc()).all()

    def bind(self, dataset: str, label: str, recursive: bool = False) -> str:
        """
        Mount a capture (and its descendants if recursive).

        Mounts that succeed before a failure stay mounted and recorded in the
        ledger; ``tidy`` releases them.

        Args:
            dataset: Dataset name
            label: Capture label
            recursive: Also mount descendant captures sharing the label

        Returns:
            Path of the working root

        Raises:
            MountError: If any mount fails or stale bindings exist for the dataset
        """
        stale = self.active_bindings(dataset)
        if stale:
            raise MountError(
                f"{len(stale)} binding(s) for {dataset} still active from an earlier run "
                f"(first: {stale[0].path}); run tidy first"
            )

        root = self.working_root(dataset)
        self._mount(dataset, label, '', capture_name(dataset, label), root)

        if recursive:
            try:
                children = self.snapshots.descendants(dataset, label)
            except CaptureError as e:
                raise MountError(f"Failed to discover descendant captures of {dataset}@{label}: {e}") from e

            for child in children:
                suffix = child[len(dataset) + 1:]
                path = os.path.join(root, suffix)
                self._mount(dataset, label, suffix, capture_name(child, label), path)

        return root

    def unbind(self, dataset: str, label: str) -> int:
        """
        Unmount all bindings of a capture, last created first.

        Stops at the first failure, since a parent cannot be released while a
        child is still mounted beneath it.

        Returns:
            Number of bindings released

        Raises:
            MountError: If an unmount fails
        """
        bindings = MountBinding.query.filter_by(dataset=dataset, label=label) \
            .order_by(MountBinding.id.desc()).all()

        for binding in bindings:
            self._release(binding)

        return len(bindings)

    def unbind_all(self) -> int:
        """
        Unmount every binding recorded in the ledger, last created first.

        Returns:
            Number of bindings released

        Raises:
            MountError: If an unmount fails
        """
        bindings = MountBinding.query.order_by(MountBinding.id.desc()).all()

        for binding in bindings:
            self._release(binding)

        return len(bindings)

    def _mount(self, dataset: str, label: str, suffix: str, capture: str, path: str):
        """Record a binding, then mount the capture at path."""
        try:
            os.makedirs(path, exist_ok=True)
        except OSError as e:
            raise MountError(f"Cannot create mount point {path} for {capture}: {e}") from e

        binding = MountBinding(dataset=dataset, label=label, suffix=suffix, capture=capture, path=path)
        db.session.add(binding)
        db.session.commit()

        try:
            self.runner.run(['mount', '-t', 'zfs', capture, path], timeout=self.timeout)
        except CommandTimeout as e:
            # Mount state unknown; leave the ledger entry for tidy
            raise MountError(f"Timed out mounting {capture} at {path}: {e}") from e
        except CommandError as e:
            db.session.delete(binding)
            db.session.commit()
            raise MountError(f"Failed to mount {capture} at {path}: {e}") from e

        logger.info(f"Mounted {capture} at {path}")

    def _release(self, binding: MountBinding):
        """Unmount a binding and drop it from the ledger."""
        if self.is_mounted(binding.path):
            try:
                self.runner.run(['umount', binding.path], timeout=self.timeout)
            except CommandError as e:
                raise MountError(f"Failed to unmount {binding.capture} at {binding.path}: {e}") from e
            logger.info(f"Unmounted {binding.capture} from {binding.path}")
        else:
            logger.info(f"{binding.path} is not mounted, clearing ledger entry for {binding.capture}")

        db.session.delete(binding)
        db.session.commit()
