"""
Tidy: compensating rollback of the current backup cycle.

The pipeline has no atomic commit across capture, archives and pruning, so a
failed or interrupted run can leave mounts, a capture and some archives
behind. Tidy undoes all of them for today's cycle:

    IDLE -> UNMOUNTING_ALL -> per dataset
        RECOMPUTE_LABEL -> DESTROY_CAPTURE -> DELETE_ARCHIVES -> IDLE

Active mounts are read from the persisted ledger, not from process memory,
so tidy works after a crash. Every step is a no-op when there is nothing to
undo, which makes running tidy twice the same as running it once.
"""

import enum
import logging
from datetime import date, datetime
from typing import Any, Dict

from .context import BackupContext
from .mounts import MountError
from .policy import decide
from .repository import ArchiveError
from .snapshots import CaptureError

logger = logging.getLogger(__name__)


class TidyState(enum.Enum):
    IDLE = 'idle'
    UNMOUNTING_ALL = 'unmounting_all'
    RECOMPUTE_LABEL = 'recompute_label'
    DESTROY_CAPTURE = 'destroy_capture'
    DELETE_ARCHIVES = 'delete_archives'


class TidyController:
    """
    Reverses the effects of today's cycle for every configured dataset.
    """

    def __init__(self, context: BackupContext, today: date = None):
        """
        Initialize tidy controller.

        Args:
            context: BackupContext with the components to use
            today: Cycle date to undo (defaults to today)
        """
        self.context = context
        self.today = today or date.today()
        self.state = TidyState.IDLE
        self.logs = []
        self._shells = {}

    def run(self) -> Dict[str, Any]:
        """
        Undo today's cycle.

        Returns:
            Dict with summary of the rollback:
            {
                'unmounted': int,
                'captures_destroyed': List[str],
                'archives_deleted': List[dict],
                'errors': List[str],
                'logs': List[str]
            }
        """
        summary = {
            'unmounted': 0,
            'captures_destroyed': [],
            'archives_deleted': [],
            'errors': []
        }

        self._log(f"Starting tidy for {self.today.isoformat()}")

        self.state = TidyState.UNMOUNTING_ALL
        try:
            summary['unmounted'] = self.context.mounts.unbind_all()
            self._log(f"Released {summary['unmounted']} mount(s)")
        except MountError as e:
            self._error(summary, f"Failed to release mounts: {e}")

        try:
            for dataset in self.context.settings.datasets:
                self._tidy_dataset(dataset, summary)
        finally:
            self._close_shells()

        self.state = TidyState.IDLE
        self._log(
            f"Tidy complete. "
            f"Unmounted: {summary['unmounted']}, "
            f"Captures destroyed: {len(summary['captures_destroyed'])}, "
            f"Archives deleted: {len(summary['archives_deleted'])}, "
            f"Errors: {len(summary['errors'])}"
        )

        summary['logs'] = self.logs
        return summary

    def _tidy_dataset(self, dataset, summary: Dict[str, Any]):
        snapshots = self.context.snapshots
        name = dataset.name

        self.state = TidyState.RECOMPUTE_LABEL
        try:
            # Captures dated today are hidden so the label is the one this
            # cycle selected before it created anything.
            _, label = decide(self.today, snapshots.history(name, before=self.today))
        except CaptureError as e:
            self._error(summary, f"[{name}] Cannot recompute today's label: {e}")
            return
        self._log(f"[{name}] Today's label is {label}")

        self.state = TidyState.DESTROY_CAPTURE
        try:
            if snapshots.exists(name, label):
                snapshots.destroy(name, label, recursive=dataset.recursive)
                summary['captures_destroyed'].append(f"{name}@{label}")
                self._log(f"[{name}] Destroyed capture {name}@{label}")
            else:
                self._log(f"[{name}] No capture {name}@{label}")
        except CaptureError as e:
            self._error(summary, f"[{name}] {e}")

        self.state = TidyState.DELETE_ARCHIVES
        for repository in self.context.repositories(name):
            try:
                if repository.has_archive(label, shell=self._shell_for(repository)):
                    repository.delete_archive(label)
                    summary['archives_deleted'].append({
                        'dataset': name,
                        'target': repository.target_name,
                        'label': label
                    })
                    self._log(f"[{name}] Deleted archive {label} from {repository.target_name}")
                else:
                    self._log(f"[{name}] No archive {label} on {repository.target_name}")
            except ArchiveError as e:
                self._error(summary, f"[{name}] {e}")

    def _shell_for(self, repository):
        """One RemoteShell per remote target, shared by every dataset in this tidy."""
        if not repository.is_remote:
            return None
        target = repository.target
        if target not in self._shells:
            self._shells[target] = target.open_shell()
        return self._shells[target]

    def _close_shells(self):
        for shell in self._shells.values():
            shell.close()
        self._shells = {}

    def _error(self, summary: Dict[str, Any], message: str):
        summary['errors'].append(message)
        self._log(message, level=logging.ERROR)

    def _log(self, message: str, level: int = logging.INFO):
        timestamp = datetime.utcnow().strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.log(level, message)
