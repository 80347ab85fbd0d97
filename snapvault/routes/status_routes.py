"""
Status routes - read-only view of run history and active mounts.
"""

from flask import Blueprint, current_app, jsonify, request

from snapvault.models import BackupRun, MountBinding


bp = Blueprint('status', __name__)

RUN_STATUSES = ['running', 'success', 'partial', 'failed', 'interrupted']


@bp.route('/health')
def health():
    return {'status': 'healthy'}, 200


@bp.route('/api/runs', methods=['GET'])
def list_runs():
    """
    Get backup run history, newest first.

    Query params:
        - dataset: Filter by dataset name
        - status: Filter by status (running/success/partial/failed/interrupted)
        - limit: Max number of records (default: 50, capped by RUNS_PAGE_LIMIT)

    Returns:
        JSON with run records and count
    """
    dataset_filter = request.args.get('dataset')
    status_filter = request.args.get('status')
    limit = request.args.get('limit', 50, type=int)

    max_limit = current_app.config.get('RUNS_PAGE_LIMIT', 200)
    if limit > max_limit:
        limit = max_limit
    if limit < 1:
        limit = 1

    query = BackupRun.query

    if status_filter:
        if status_filter not in RUN_STATUSES:
            return jsonify({'error': 'Invalid status filter'}), 400
        query = query.filter(BackupRun.status == status_filter)

    if dataset_filter:
        query = query.filter(BackupRun.dataset == dataset_filter)

    runs = query.order_by(BackupRun.started_at.desc(), BackupRun.id.desc()).limit(limit).all()

    return jsonify({
        'runs': [run.to_dict() for run in runs],
        'count': len(runs)
    })


@bp.route('/api/runs/<int:run_id>', methods=['GET'])
def get_run(run_id):
    """
    Get a single run including its logs.

    Args:
        run_id: BackupRun ID
    """
    run = BackupRun.query.get_or_404(run_id)
    data = run.to_dict()
    data['logs'] = run.logs
    return jsonify(data)


@bp.route('/api/mounts', methods=['GET'])
def list_mounts():
    """
    Get the mount ledger in creation order.

    A non-empty ledger outside of a running backup means a run was
    interrupted and ``snapvault tidy`` should be run.
    """
    bindings = MountBinding.query.order_by(MountBinding.id.asc()).all()
    return jsonify({
        'mounts': [binding.to_dict() for binding in bindings],
        'count': len(bindings)
    })
