import io
import socket
import sys
import traceback
from functools import wraps
from threading import Lock
import os

from dotenv import load_dotenv
from flask import Flask, jsonify, request, send_file
from werkzeug.utils import secure_filename

from config import MigrationSettings, load_settings
from database import LocalStore, init_db
from data_paths import ensure_data_root
from services.backup import BackupError, create_backup_artifact
from services.dataset import read_dataset
from services.errors import MigrationInProgressError, MigrationStepError
from services.migration import MigrationWizard
from services.remote import HttpRemoteWriter
from services.rollback import import_from_artifact
from services.state import exclusive_operation

# Load environment variables from .env file
load_dotenv()

# --- App Initialization ---
app = Flask(__name__)
app.config['JSON_SORT_KEYS'] = False
app.config.setdefault('DATABASE_FILE', None)
app.config.setdefault('MIGRATION_SETTINGS', None)

_db_bootstrapped = False
_wizard = None
_wizard_lock = Lock()


@app.before_request
def _ensure_database_initialized():
    """Guarantee the local store schema exists before serving any request."""
    global _db_bootstrapped
    if _db_bootstrapped:
        return
    try:
        init_db(app.config.get('DATABASE_FILE'))
        _db_bootstrapped = True
    except Exception as exc:  # pragma: no cover - defensive logging
        app.logger.exception("Failed to initialize database before request: %s", exc)

ensure_data_root()


def get_settings() -> MigrationSettings:
    configured = app.config.get('MIGRATION_SETTINGS')
    if isinstance(configured, MigrationSettings):
        return configured
    return load_settings()


def get_store() -> LocalStore:
    return LocalStore(app.config.get('DATABASE_FILE'))


def create_remote_writer(settings: MigrationSettings):
    return HttpRemoteWriter.from_settings(settings)


def get_wizard() -> MigrationWizard:
    """Return the wizard for the configured store, creating it on first use."""
    global _wizard
    with _wizard_lock:
        store = get_store()
        if _wizard is None or _wizard.store.identity != store.identity:
            settings = get_settings()
            _wizard = MigrationWizard(store, create_remote_writer(settings), settings=settings)
        return _wizard


def reset_wizard() -> None:
    global _wizard, _db_bootstrapped
    with _wizard_lock:
        _wizard = None
    _db_bootstrapped = False


def _snapshot_response(wizard: MigrationWizard, status_code: int = 200, **extra):
    payload = {"status": "success"}
    payload.update(extra)
    payload.update(wizard.snapshot())
    return jsonify(payload), status_code


def wizard_endpoint(view):
    """Translate wizard errors into JSON responses."""

    @wraps(view)
    def wrapper(*args, **kwargs):
        try:
            return view(*args, **kwargs)
        except MigrationStepError as exc:
            app.logger.warning("Rejected wizard action: %s", exc)
            return jsonify({"status": "error", "message": str(exc)}), 409
        except MigrationInProgressError as exc:
            app.logger.warning("Migration already running: %s", exc)
            return jsonify({"status": "error", "message": str(exc)}), 409
        except Exception as exc:  # pragma: no cover - defensive logging
            app.logger.error(f"Migration wizard error: {exc}")
            app.logger.error(traceback.format_exc())
            return jsonify({"status": "error", "message": "An unexpected error occurred."}), 500

    return wrapper


def _artifact_response(artifact):
    return send_file(
        io.BytesIO(artifact.to_bytes()),
        mimetype='application/json',
        as_attachment=True,
        download_name=artifact.filename,
    )


@app.route('/api/migration/status', methods=['GET'])
@wizard_endpoint
def migration_status():
    return _snapshot_response(get_wizard())


@app.route('/api/migration/start', methods=['POST'])
@wizard_endpoint
def migration_start():
    wizard = get_wizard()
    needed = wizard.start()
    return _snapshot_response(wizard, migrationNeeded=needed)


@app.route('/api/migration/confirm', methods=['POST'])
@wizard_endpoint
def migration_confirm():
    wizard = get_wizard()
    wizard.confirm_review()
    return _snapshot_response(wizard)


@app.route('/api/migration/backup', methods=['POST'])
@wizard_endpoint
def migration_backup():
    wizard = get_wizard()
    artifact = wizard.create_backup()
    if artifact is None:
        return jsonify({"status": "error", "message": wizard.last_error}), 500
    return _artifact_response(artifact)


@app.route('/api/migration/skip-backup', methods=['POST'])
@wizard_endpoint
def migration_skip_backup():
    wizard = get_wizard()
    wizard.skip_backup()
    return _snapshot_response(wizard)


@app.route('/api/migration/run', methods=['POST'])
@wizard_endpoint
def migration_run():
    wizard = get_wizard()
    result = wizard.migrate()
    payload = {"status": "success" if result.success else "error", "message": result.message}
    payload.update(wizard.snapshot())
    return jsonify(payload), 200


@app.route('/api/migration/cancel', methods=['POST'])
@wizard_endpoint
def migration_cancel():
    wizard = get_wizard()
    cancelled = wizard.cancel()
    return _snapshot_response(wizard, cancelled=cancelled)


@app.route('/api/migration/retry', methods=['POST'])
@wizard_endpoint
def migration_retry():
    wizard = get_wizard()
    needed = wizard.retry()
    return _snapshot_response(wizard, migrationNeeded=needed)


@app.route('/api/migration/rollback', methods=['POST'])
@wizard_endpoint
def migration_rollback():
    wizard = get_wizard()
    source = None
    upload = request.files.get('file')
    if upload is not None and upload.filename:
        source = upload.read()
    if not wizard.rollback(source):
        return jsonify({"status": "error", "message": wizard.last_error}), 400
    return _snapshot_response(wizard, message="Local data restored.")


@app.route('/api/migration/restore-point', methods=['GET'])
def restore_point_info():
    return jsonify({"status": "success", "restorePoint": get_wizard().restore_point_info.to_dict()}), 200


@app.route('/api/export-data', methods=['GET'])
def export_data():
    """Download a JSON backup of the local dataset."""
    try:
        artifact = create_backup_artifact(read_dataset(get_store()))
    except BackupError as exc:
        app.logger.error("Backup failed: %s", exc)
        return jsonify({"status": "error", "message": str(exc)}), 500
    except Exception as exc:  # pragma: no cover - defensive logging
        app.logger.error(f"Error creating data backup: {exc}")
        app.logger.error(traceback.format_exc())
        return jsonify({"status": "error", "message": "Failed to create backup."}), 500
    return _artifact_response(artifact)


@app.route('/api/import-data', methods=['POST'])
def import_data():
    """Load a JSON backup into the local store."""
    if 'file' not in request.files:
        return jsonify({"status": "error", "message": "No file part"}), 400

    file = request.files['file']
    filename = secure_filename(file.filename or '')
    if not filename or not filename.lower().endswith('.json'):
        return jsonify({"status": "error", "message": "Invalid file. Please upload a .json backup file."}), 400

    store = get_store()
    try:
        with exclusive_operation(store, "import", stale_after=get_settings().lock_timeout_seconds):
            outcome = import_from_artifact(store, file.read())
    except MigrationInProgressError as exc:
        app.logger.warning("Import refused: %s", exc)
        return jsonify({"status": "error", "message": str(exc)}), 409
    if not outcome.success:
        app.logger.error("Import of %s rejected: %s", filename, outcome.message)
        return jsonify({"status": "error", "message": outcome.message}), 400

    reset_wizard()
    return jsonify({"status": "success", "message": outcome.message, "stats": outcome.stats.to_dict()}), 200


def is_port_in_use(port):
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        return s.connect_ex(('127.0.0.1', port)) == 0


def main():
    PORT = int(os.environ.get('AUTOCONTROL_PORT', 5002))
    if is_port_in_use(PORT):
        print(f"Port {PORT} is already in use.")
        sys.exit(1)
    print(f"Port {PORT} is free. Starting new server.")
    app.run(host='127.0.0.1', port=PORT, debug=False)

if __name__ == '__main__':
    init_db()
    main()
