import json
from datetime import datetime
from snapvault import db


class MountBinding(db.Model):
    """Active mount of a capture, written before mount and removed after unmount"""
    __tablename__ = 'mount_bindings'

    id = db.Column(db.Integer, primary_key=True)  # creation order
    dataset = db.Column(db.String(255), nullable=False, index=True)
    label = db.Column(db.String(64), nullable=False)
    suffix = db.Column(db.String(255), nullable=False, default='')  # '' for the dataset root
    capture = db.Column(db.String(512), nullable=False)  # dataset@label being mounted
    path = db.Column(db.String(1024), nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    def to_dict(self):
        return {
            'id': self.id,
            'dataset': self.dataset,
            'label': self.label,
            'suffix': self.suffix,
            'capture': self.capture,
            'path': self.path,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f'<MountBinding {self.capture} at {self.path}>'


class BackupRun(db.Model):
    """Execution record of one dataset's pipeline"""
    __tablename__ = 'backup_runs'

    id = db.Column(db.Integer, primary_key=True)
    dataset = db.Column(db.String(255), nullable=False, index=True)
    label = db.Column(db.String(64))
    tier = db.Column(db.String(20))  # monthly, weekly, daily; null for explicit snap labels
    mode = db.Column(db.String(20), nullable=False, default='run')  # run or snap
    status = db.Column(db.String(20), nullable=False)  # running, success, partial, failed, interrupted
    state = db.Column(db.String(20))  # last pipeline state reached
    started_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    completed_at = db.Column(db.DateTime)
    target_results = db.Column(db.Text)  # JSON list of per-target results
    error_message = db.Column(db.Text)
    logs = db.Column(db.Text)

    @property
    def results(self):
        if not self.target_results:
            return []
        return json.loads(self.target_results)

    def to_dict(self):
        return {
            'id': self.id,
            'dataset': self.dataset,
            'label': self.label,
            'tier': self.tier,
            'mode': self.mode,
            'status': self.status,
            'state': self.state,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
            'targets': self.results,
            'error_message': self.error_message,
        }

    def __repr__(self):
        return f'<BackupRun {self.dataset} label={self.label} status={self.status}>'
