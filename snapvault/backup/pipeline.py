"""
Per-dataset backup pipeline.

Workflow (one dataset):
1. Run the pre hook
2. Decide tier and label (or take an explicit label)
3. Create the capture
4. Mount the capture as a working tree
5. Archive the tree into each target (bootstrapping targets as needed)
6. Run the post hook
7. Unmount the working tree
8. Prune captures and archives

Failure policy: capture and mount errors abort the remaining steps for that
dataset only; per-target archive, prune and hook errors are logged and the
pipeline continues. Datasets are processed one after another and a failed
dataset never stops the next one.
"""

import re
import enum
import json
import logging
from datetime import date, datetime
from typing import List, Optional

from snapvault import db
from snapvault.models import BackupRun
from .context import BackupContext
from .hooks import run_hook, HookError
from .mounts import MountError
from .policy import TIERS, decide, parse_label
from .repository import ArchiveError
from .snapshots import CaptureError

logger = logging.getLogger(__name__)

LABEL_RE = re.compile(r'^[A-Za-z0-9][A-Za-z0-9_.:+-]*$')


class PipelineState(enum.Enum):
    PENDING = 'pending'
    PRE_HOOK = 'pre_hook'
    CAPTURING = 'capturing'
    MOUNTING = 'mounting'
    ARCHIVING = 'archiving'
    POST_HOOK = 'post_hook'
    UNMOUNTING = 'unmounting'
    PRUNING = 'pruning'
    DONE = 'done'
    FAILED = 'failed'


def validate_label(label: str) -> str:
    """
    Check that an explicit label is usable as capture and archive name.

    Raises:
        ValueError: If the label is empty or contains unsupported characters
    """
    if not label or not LABEL_RE.match(label):
        raise ValueError(
            f"Invalid label {label!r}: use letters, digits and . _ : + - (not starting with a symbol)"
        )
    return label


class DatasetPipeline:
    """
    Runs the backup workflow for one dataset and records it as a BackupRun.
    """

    def __init__(self, context: BackupContext, dataset, label: str = None, prune: bool = True, today: date = None):
        """
        Initialize pipeline.

        Args:
            context: BackupContext with the components to use
            dataset: DatasetSpec to back up
            label: Explicit label; bypasses the rotation policy when given
            prune: Enforce retention after archiving
            today: Cycle date (defaults to today)
        """
        self.context = context
        self.dataset = dataset
        self.explicit_label = label
        self.prune = prune
        self.today = today or date.today()

        self.state = PipelineState.PENDING
        self.tier = None
        self.label = None
        self.target_results = []
        self.warnings = 0
        self.run_record = None
        self.logs = []

    def execute(self) -> BackupRun:
        """
        Execute the pipeline.

        Returns:
            BackupRun record with the outcome
        """
        self.run_record = BackupRun(
            dataset=self.dataset.name,
            mode='snap' if self.explicit_label else 'run',
            status='running',
            state=self.state.value,
            started_at=datetime.utcnow()
        )
        db.session.add(self.run_record)
        db.session.commit()

        self._log(f"Starting backup of {self.dataset.name}")

        try:
            self._execute_steps()

            self.run_record.status = 'partial' if self.warnings else 'success'
            self._log(
                f"Backup of {self.dataset.name} completed"
                + (f" with {self.warnings} warning(s)" if self.warnings else "")
            )

        except (CaptureError, MountError) as e:
            self._fail(e)

        except Exception as e:
            logger.exception(f"[{self.dataset.name}] Unexpected error during {self.state.value}")
            self._fail(e)

        finally:
            if self.run_record.status == 'running':
                self.run_record.status = 'interrupted'
                self._log(f"Backup of {self.dataset.name} interrupted during {self.state.value}; run tidy")
            self.run_record.completed_at = datetime.utcnow()
            self.run_record.logs = '\n'.join(self.logs)
            db.session.commit()

        return self.run_record

    def _execute_steps(self):
        ctx = self.context
        settings = ctx.settings
        name = self.dataset.name
        recursive = self.dataset.recursive

        self._transition(PipelineState.PRE_HOOK)
        self._run_hook(settings.pre_hook, 'pre')

        self._select_label()

        self._transition(PipelineState.CAPTURING)
        ctx.snapshots.create(name, self.label, recursive=recursive)
        self._log(f"Created capture {name}@{self.label}")

        self._transition(PipelineState.MOUNTING)
        working_root = ctx.mounts.bind(name, self.label, recursive=recursive)
        self._log(f"Mounted {name}@{self.label} at {working_root}")

        self._transition(PipelineState.ARCHIVING)
        repositories = ctx.repositories(name)
        if repositories:
            self.target_results = ctx.executor.execute(working_root, self.label, repositories)
        else:
            self._log("No backup targets configured, skipping archive")
        for result in self.target_results:
            if result.ok:
                self._log(f"Archived {self.label} to {result.target} ({result.location})")
            else:
                self.warnings += 1
                self._log(f"Archive to {result.target} failed at {result.stage}: {result.error}")
        self.run_record.target_results = json.dumps([r.to_dict() for r in self.target_results])

        self._transition(PipelineState.POST_HOOK)
        self._run_hook(settings.post_hook, 'post')

        self._transition(PipelineState.UNMOUNTING)
        released = ctx.mounts.unbind(name, self.label)
        self._log(f"Released {released} mount(s)")

        if self.prune:
            self._transition(PipelineState.PRUNING)
            self._enforce_retention(repositories)

        self._transition(PipelineState.DONE)

    def _select_label(self):
        if self.explicit_label:
            self.label = validate_label(self.explicit_label)
            try:
                self.tier = parse_label(self.label)[0]
            except ValueError:
                self.tier = None
            self._log(f"Using explicit label {self.label}")
        else:
            history = self.context.snapshots.history(self.dataset.name)
            self.tier, self.label = decide(self.today, history)
            self._log(f"Selected tier {self.tier} (label {self.label})")

        self.run_record.label = self.label
        self.run_record.tier = self.tier.value if self.tier else None

    def _enforce_retention(self, repositories):
        ctx = self.context
        retention = ctx.settings.retention
        name = self.dataset.name

        for tier in TIERS:
            keep = getattr(retention, tier.value)
            try:
                removed = ctx.retention.prune_captures(name, tier, keep, recursive=self.dataset.recursive)
            except CaptureError as e:
                self.warnings += 1
                self._log(f"Pruning {tier} captures failed: {e}")
                continue
            if removed:
                self._log(f"Pruned {removed} {tier} capture(s)")

        succeeded = {r.location for r in self.target_results if r.ok}
        for repository in repositories:
            if repository.location not in succeeded:
                self._log(f"Skipping archive pruning on {repository.target_name}: archive step did not succeed")
                continue
            try:
                ctx.retention.prune_archives(
                    repository,
                    keep_daily=retention.daily,
                    keep_weekly=retention.weekly,
                    keep_monthly=retention.monthly
                )
                self._log(f"Pruned archives on {repository.target_name}")
            except ArchiveError as e:
                self.warnings += 1
                self._log(f"Pruning archives on {repository.target_name} failed: {e}")

    def _run_hook(self, hook: Optional[str], kind: str):
        try:
            if run_hook(self.context.runner, hook, self.dataset.name, timeout=self.context.settings.command_timeout):
                self._log(f"Ran {kind} hook {hook}")
        except HookError as e:
            self._log(f"Warning: {e}")

    def _transition(self, state: PipelineState):
        self.state = state
        self.run_record.state = state.value
        self.run_record.logs = '\n'.join(self.logs)
        db.session.commit()

    def _fail(self, error: Exception):
        self.run_record.status = 'failed'
        self.run_record.error_message = str(error)
        self._log(f"Backup of {self.dataset.name} failed during {self.state.value}: {error}")
        if self.state in (PipelineState.MOUNTING, PipelineState.UNMOUNTING):
            self._log("Mounts or captures may be left behind; run tidy to clean up")
        self.state = PipelineState.FAILED

    def _log(self, message: str):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
        """
        timestamp = datetime.utcnow().strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.info(f"[{self.dataset.name}] {message}")


def run_cycle(context: BackupContext, today: date = None) -> List[BackupRun]:
    """
    Run the full backup cycle for every configured dataset, in order.

    Returns:
        One BackupRun per dataset
    """
    runs = []
    for dataset in context.settings.datasets:
        pipeline = DatasetPipeline(context, dataset, today=today)
        runs.append(pipeline.execute())
    return runs


def run_snap(context: BackupContext, label: str) -> List[BackupRun]:
    """
    Capture and archive every dataset under an explicit label, without pruning.

    Raises:
        ValueError: If the label is invalid (checked before any dataset runs)
    """
    validate_label(label)

    runs = []
    for dataset in context.settings.datasets:
        pipeline = DatasetPipeline(context, dataset, label=label, prune=False)
        runs.append(pipeline.execute())
    return runs
