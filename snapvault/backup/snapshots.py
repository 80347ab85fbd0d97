"""
ZFS capture management.

A capture is the snapshot ``<dataset>@<label>``. Recursive captures apply the
same label to every descendant dataset in one atomic ``zfs snapshot -r``.
"""

import logging
from datetime import date
from typing import List, Optional, Tuple

from .commands import CommandRunner, CommandError
from .policy import Tier, label_date

logger = logging.getLogger(__name__)


class CaptureError(Exception):
    """Raised when a capture cannot be created, destroyed or listed."""
    pass


class CaptureCollisionError(CaptureError):
    """Raised when a capture with the requested label already exists."""
    pass


def capture_name(dataset: str, label: str) -> str:
    return f"{dataset}@{label}"


class SnapshotManager:
    """
    Creates, destroys and lists ZFS captures.
    """

    def __init__(self, runner: CommandRunner, timeout: Optional[float] = None, zfs_command: str = 'zfs'):
        """
        Initialize snapshot manager.

        Args:
            runner: CommandRunner used for zfs calls
            timeout: Per-call timeout in seconds (None uses the runner default)
            zfs_command: zfs executable
        """
        self.runner = runner
        self.timeout = timeout
        self.zfs_command = zfs_command

    def create(self, dataset: str, label: str, recursive: bool = False) -> str:
        """
        Create a capture.

        Args:
            dataset: Dataset name (e.g. pool/data)
            label: Capture label
            recursive: Apply the label to all descendant datasets as well

        Returns:
            Name of the created capture

        Raises:
            CaptureCollisionError: If the capture already exists
            CaptureError: If zfs fails
        """
        name = capture_name(dataset, label)
        args = [self.zfs_command, 'snapshot']
        if recursive:
            args.append('-r')
        args.append(name)

        try:
            self.runner.run(args, timeout=self.timeout)
        except CommandError as e:
            if 'already exists' in e.stderr:
                raise CaptureCollisionError(f"Capture already exists: {name}") from e
            raise CaptureError(f"Failed to create capture {name}: {e}") from e

        logger.info(f"Created capture {name}{' (recursive)' if recursive else ''}")
        return name

    def destroy(self, dataset: str, label: str, recursive: bool = False):
        """
        Destroy a capture (and its descendants' captures if recursive).

        Raises:
            CaptureError: If zfs fails
        """
        name = capture_name(dataset, label)
        args = [self.zfs_command, 'destroy']
        if recursive:
            args.append('-r')
        args.append(name)

        try:
            self.runner.run(args, timeout=self.timeout)
        except CommandError as e:
            raise CaptureError(f"Failed to destroy capture {name}: {e}") from e

        logger.info(f"Destroyed capture {name}{' (recursive)' if recursive else ''}")

    def exists(self, dataset: str, label: str) -> bool:
        """
        Check whether a capture exists.

        Raises:
            CaptureError: If zfs fails for any reason other than a missing capture
        """
        name = capture_name(dataset, label)
        args = [self.zfs_command, 'list', '-H', '-t', 'snapshot', '-o', 'name', name]

        try:
            self.runner.run(args, timeout=self.timeout)
        except CommandError as e:
            if 'does not exist' in e.stderr:
                return False
            raise CaptureError(f"Failed to look up capture {name}: {e}") from e

        return True

    def list_captures(self, dataset: str) -> List[Tuple[str, int]]:
        """
        List the dataset's own captures (descendants excluded).

        Returns:
            List of (label, creation timestamp) tuples in zfs order

        Raises:
            CaptureError: If zfs fails
        """
        args = [
            self.zfs_command, 'list', '-H', '-p', '-t', 'snapshot',
            '-o', 'name,creation', '-s', 'creation', '-d', '1', dataset
        ]

        try:
            result = self.runner.run(args, timeout=self.timeout)
        except CommandError as e:
            raise CaptureError(f"Failed to list captures of {dataset}: {e}") from e

        captures = []
        for line in result.stdout.splitlines():
            if not line.strip():
                continue
            name, _, creation = line.partition('\t')
            snap_dataset, _, label = name.partition('@')
            if snap_dataset != dataset or not label:
                continue
            try:
                created = int(creation)
            except ValueError:
                created = 0
            captures.append((label, created))

        return captures

    def find_all(self, dataset: str, tier: Tier) -> List[str]:
        """
        All labels of a tier for the dataset, newest first.

        Labels outside the rotation scheme (e.g. explicit ``snap`` labels)
        are ignored.
        """
        prefix = f"{tier.value}-"
        entries = [
            (label, created) for label, created in self.list_captures(dataset)
            if label.startswith(prefix) and label_date(label) is not None
        ]
        entries.sort(reverse=True)
        return [label for label, _ in entries]

    def find_latest(self, dataset: str, tier: Tier) -> Optional[str]:
        """Most recent label of a tier for the dataset, or None."""
        labels = self.find_all(dataset, tier)
        return labels[0] if labels else None

    def descendants(self, dataset: str, label: str) -> List[str]:
        """
        Descendant datasets that carry a capture with ``label``.

        Returns:
            Dataset names sorted so that every parent precedes its children

        Raises:
            CaptureError: If zfs fails
        """
        args = [self.zfs_command, 'list', '-H', '-t', 'snapshot', '-o', 'name', '-r', dataset]

        try:
            result = self.runner.run(args, timeout=self.timeout)
        except CommandError as e:
            raise CaptureError(f"Failed to list descendant captures of {dataset}: {e}") from e

        children = []
        for line in result.stdout.splitlines():
            name = line.strip()
            snap_dataset, _, snap_label = name.partition('@')
            if snap_label != label or snap_dataset == dataset:
                continue
            if snap_dataset.startswith(dataset + '/'):
                children.append(snap_dataset)

        return sorted(children)

    def history(self, dataset: str, before: Optional[date] = None) -> 'DatasetHistory':
        """Tier history view for the rotation policy."""
        return DatasetHistory(self, dataset, before=before)


class DatasetHistory:
    """
    Per-dataset view answering ``latest(tier)`` for the rotation policy.

    With ``before`` set, captures dated on or after that day are hidden. Tidy
    uses this to recompute the label a cycle would have produced without
    being influenced by the capture the cycle itself created.
    """

    def __init__(self, snapshots: SnapshotManager, dataset: str, before: Optional[date] = None):
        self.snapshots = snapshots
        self.dataset = dataset
        self.before = before

    def latest(self, tier: Tier) -> Optional[str]:
        for label in self.snapshots.find_all(self.dataset, tier):
            if self.before is None or label_date(label) < self.before:
                return label
        return None
