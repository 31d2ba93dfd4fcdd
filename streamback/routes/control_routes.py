"""
Control routes - status, logs and manual trigger endpoints.
"""

import time

from flask import Blueprint, current_app, jsonify

from streamback.backup.executor import BackupBusyError
from streamback.scheduler import is_scheduler_running


bp = Blueprint('control', __name__, url_prefix='/api')


def _executor():
    return current_app.extensions['backup_executor']


@bp.route('/stats', methods=['GET'])
def get_stats():
    """
    Get the current backup status.

    Returns:
        JSON with status, uptime, last/next backup times, current activity,
        files processed in the current or last run and a config summary
    """
    snapshot = _executor().run_state.snapshot()

    return jsonify({
        'status': snapshot['status'],
        'uptime': round(time.monotonic() - current_app.extensions['started_at'], 1),
        'lastBackup': snapshot['last_backup'],
        'nextBackup': snapshot['next_backup'],
        'currentActivity': snapshot['current_file'],
        'fileCount': snapshot['file_count'],
        'lastOutcome': snapshot['last_outcome'],
        'lastError': snapshot['failure_reason'],
        'archiveName': snapshot['archive_name'],
        'schedulerRunning': is_scheduler_running(),
        'configSummary': {
            'host': current_app.config.get('SFTP_HOST'),
            'interval': current_app.config.get('BACKUP_INTERVAL_MINUTES'),
            'folders': current_app.config.get('TARGET_FOLDERS'),
        }
    })


@bp.route('/logs', methods=['GET'])
def get_logs():
    """Rolling log buffer, newest entry first."""
    return jsonify(current_app.extensions['log_buffer'].entries())


@bp.route('/trigger', methods=['POST'])
def trigger_backup():
    """
    Start a backup in the background.

    Returns:
        {"message": "Started"}, or 400 {"error": "Busy"} if a run is active
    """
    try:
        _executor().trigger_in_background(reason="Manual trigger received")
    except BackupBusyError:
        return jsonify({'error': 'Busy'}), 400

    return jsonify({'message': 'Started'})
