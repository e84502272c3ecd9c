"""Flask web application for the student discipline clustering dashboard."""

import os
import asyncio
import logging
from dataclasses import asdict
from datetime import date
from functools import wraps
from typing import Optional

from flask import Flask, jsonify, request, session
from werkzeug.utils import secure_filename

from src.accounts import AccountService, needs_profile_completion
from src.clustering_workflow import ClusteringWorkflow
from src.config import config
from src.database import db
from src.errors import (
    AccountExistsError,
    AuthError,
    ClusteringServiceError,
    ConfigurationError,
    DashboardError,
    InvalidCredentialsError,
    NoValidRowsError,
    NotAdminError,
    NotificationDeliveryError,
    PolicyDeniedError,
    RateLimitedError,
    RecordNotFoundError,
    RegistrationHaltedError,
    ServiceUnreachableError,
    ValidationError,
)
from src.models import ClusteringRow, StudentRecord, WorkflowMessage
from src.observability import instrument_app
from src.services.clustering_client import ClusteringClient
from src.services.identity_client import IdentityGateway
from src.services.whatsapp_client import WhatsAppClient
from src.session_guard import UserContext
from src.telemetry import initialize_telemetry

logger = logging.getLogger(__name__)

# Initialize Flask app
app = Flask(__name__)
app.secret_key = config.flask_secret_key or os.urandom(32).hex()
app.config['MAX_CONTENT_LENGTH'] = 16 * 1024 * 1024  # 16MB max file size


def session_cookie_settings(environ=os.environ) -> dict:
    """Cookie flags for the signed session, which carries the auth tokens."""
    return {
        'SESSION_COOKIE_HTTPONLY': True,
        'SESSION_COOKIE_SAMESITE': 'Lax',
        # Plain-HTTP local runs set SESSION_COOKIE_SECURE=false
        'SESSION_COOKIE_SECURE': environ.get('SESSION_COOKIE_SECURE', 'true').lower() != 'false',
    }


app.config.update(session_cookie_settings())

# Initialize telemetry FIRST so the TracerProvider is set before instrumentors run.
initialize_telemetry(service_name=os.getenv("OTEL_SERVICE_NAME", "clustering-dashboard"),
                     service_version=config.app_version)
instrument_app(app)

# Services used across views; tests replace these module attributes
account_service = AccountService(db)
workflow = ClusteringWorkflow(db, ClusteringClient.from_config(), WhatsAppClient.from_config())


def make_gateway() -> IdentityGateway:
    return IdentityGateway.from_config()


# Most specific classes first
ERROR_STATUS = (
    (ValidationError, 400),
    (NoValidRowsError, 400),
    (InvalidCredentialsError, 401),
    (AccountExistsError, 409),
    (RateLimitedError, 429),
    (PolicyDeniedError, 403),
    (AuthError, 401),
    (NotAdminError, 403),
    (RegistrationHaltedError, 403),
    (RecordNotFoundError, 404),
    (ConfigurationError, 503),
    (ServiceUnreachableError, 503),
    (ClusteringServiceError, 502),
    (NotificationDeliveryError, 502),
)


@app.errorhandler(DashboardError)
def handle_dashboard_error(error):
    status = next((code for error_cls, code in ERROR_STATUS if isinstance(error, error_cls)), 500)
    if status >= 500:
        logger.error(f"Request failed: {error}")
    return jsonify(WorkflowMessage('error', str(error)).to_dict()), status


# ---------------------------------------------------------------------------
# Session helpers
# ---------------------------------------------------------------------------

def current_context() -> Optional[UserContext]:
    """Rebuild the signed-in user's context from the Flask session."""
    data = session.get('auth')
    if not data:
        return None
    context = UserContext.from_dict(make_gateway(), data)
    return context if context.is_authenticated else None


def remember(context: Optional[UserContext]) -> None:
    if context is None or not context.is_authenticated:
        session.pop('auth', None)
    else:
        session['auth'] = context.to_dict()


def login_required(view):
    @wraps(view)
    def wrapper(*args, **kwargs):
        context = current_context()
        if context is None:
            return jsonify(WorkflowMessage('error', 'Silakan login terlebih dahulu').to_dict()), 401
        response = view(context, *args, **kwargs)
        remember(context)
        return response
    return wrapper


def admin_required(view):
    @wraps(view)
    def wrapper(*args, **kwargs):
        context = current_context()
        if context is None:
            return jsonify(WorkflowMessage('error', 'Silakan login terlebih dahulu').to_dict()), 401
        if not context.is_admin:
            return jsonify(WorkflowMessage('error', 'Akses hanya untuk admin').to_dict()), 403
        response = view(context, *args, **kwargs)
        remember(context)
        return response
    return wrapper


def _json_body() -> dict:
    return request.get_json(silent=True) or {}


def _uploaded_file():
    upload = request.files.get('file')
    if upload is None or not upload.filename:
        raise ValidationError("Pilih file terlebih dahulu", field="file")
    sheet_name = request.form.get('sheet_name', '')
    return upload.read(), secure_filename(upload.filename) or upload.filename, sheet_name


def _user_payload(context: UserContext) -> dict:
    profile = context.profile
    return {
        'profile': profile.to_dict(),
        'is_admin': profile.is_admin,
        'needs_profile_completion': needs_profile_completion(profile),
    }


# ---------------------------------------------------------------------------
# Health and auth
# ---------------------------------------------------------------------------

@app.route('/healthz')
def healthz():
    """Health check endpoint for load balancer probes."""
    return jsonify({"status": "ok", "version": config.app_version}), 200


@app.route('/api/login', methods=['POST'])
def login():
    body = _json_body()
    context = account_service.login(make_gateway(), body.get('id_number') or body.get('nim'), body.get('password'))
    remember(context)
    return jsonify(_user_payload(context)), 200


@app.route('/api/logout', methods=['POST'])
def logout():
    account_service.logout(current_context())
    session.pop('auth', None)
    return jsonify(WorkflowMessage('success', 'Berhasil logout').to_dict()), 200


@app.route('/api/me')
def me():
    context = account_service.check_auth(current_context())
    remember(context)
    if context is None:
        return jsonify(WorkflowMessage('error', 'Silakan login terlebih dahulu').to_dict()), 401
    return jsonify(_user_payload(context)), 200


@app.route('/api/password', methods=['POST'])
@login_required
def change_password(context):
    body = _json_body()
    account_service.change_password(context, body.get('new_password', ''), body.get('confirm_password', ''))
    return jsonify(WorkflowMessage('success', 'Password berhasil diubah!').to_dict()), 200


@app.route('/api/profile', methods=['POST'])
@login_required
def complete_profile(context):
    body = _json_body()
    account_service.complete_profile(
        context,
        body.get('guardian_name', ''),
        body.get('guardian_contact', ''),
        body.get('advisor_name', ''),
        body.get('advisor_contact', ''),
    )
    message = WorkflowMessage('success', 'Data berhasil disimpan!', details=_user_payload(context))
    return jsonify(message.to_dict()), 200


@app.route('/api/my-results')
@login_required
def my_results(context):
    return jsonify(workflow.my_results(context)), 200


# ---------------------------------------------------------------------------
# Admin: dashboard, periods, batches
# ---------------------------------------------------------------------------

@app.route('/api/dashboard')
@admin_required
def dashboard(context):
    return jsonify(workflow.dashboard(context)), 200


@app.route('/api/periods', methods=['GET', 'POST'])
@admin_required
def periods(context):
    if request.method == 'POST':
        body = _json_body()
        period = workflow.create_period(
            context, body.get('name', ''), body.get('academic_year'), body.get('semester')
        )
        return jsonify(asdict(period)), 201
    return jsonify([asdict(p) for p in workflow.list_periods(context)]), 200


@app.route('/api/periods/<period_id>', methods=['PUT'])
@admin_required
def update_period(context, period_id):
    body = _json_body()
    fields = {key: body[key] for key in ('name', 'academic_year', 'semester') if key in body}
    period = workflow.update_period(context, period_id, **fields)
    return jsonify(asdict(period)), 200


def _batch_json(batch) -> dict:
    data = {'id': batch.id, 'name': batch.name, 'date': batch.date, 'period_id': batch.period_id}
    data['period'] = asdict(batch.period) if batch.period else None
    return data


@app.route('/api/batches', methods=['GET', 'POST'])
@admin_required
def batches(context):
    if request.method == 'POST':
        body = _json_body()
        try:
            batch_date = date.fromisoformat(body['date']) if body.get('date') else None
        except ValueError as exc:
            raise ValidationError("Format tanggal batch harus YYYY-MM-DD", field="date") from exc
        batch = workflow.create_batch(context, body.get('name', ''), body.get('period_id', ''), batch_date)
        return jsonify(_batch_json(batch)), 201
    period_id = request.args.get('period_id') or None
    return jsonify([_batch_json(b) for b in workflow.list_batches(context, period_id)]), 200


# ---------------------------------------------------------------------------
# Admin: students
# ---------------------------------------------------------------------------

@app.route('/api/students/preview', methods=['POST'])
@admin_required
def preview_students(context):
    content, filename, sheet_name = _uploaded_file()
    return jsonify(workflow.preview_students(context, content, filename, sheet_name)), 200


@app.route('/api/students/register', methods=['POST'])
@admin_required
def register_students(context):
    body = _json_body()
    records = [StudentRecord.from_dict(item) for item in body.get('students') or []]
    message = asyncio.run(
        workflow.register_students(context, records, retry_rate_limited=bool(body.get('retry_rate_limited')))
    )
    return jsonify(message.to_dict()), 200


@app.route('/api/students/<account_id>', methods=['PUT', 'DELETE'])
@admin_required
def manage_student(context, account_id):
    if request.method == 'DELETE':
        account_service.delete_student(context, account_id)
        return jsonify(WorkflowMessage('success', 'Data mahasiswa berhasil dihapus').to_dict()), 200
    profile = account_service.update_student(context, account_id, _json_body())
    return jsonify(profile.to_dict()), 200


# ---------------------------------------------------------------------------
# Admin: clustering, results, notifications
# ---------------------------------------------------------------------------

@app.route('/api/clustering/run', methods=['POST'])
@admin_required
def run_clustering(context):
    content, filename, sheet_name = _uploaded_file()
    rows, message = workflow.run_clustering(context, content, filename, sheet_name)
    payload = message.to_dict()
    payload['rows'] = [row.raw for row in rows]
    return jsonify(payload), 200


@app.route('/api/clustering/save', methods=['POST'])
@admin_required
def save_clustering(context):
    body = _json_body()
    rows = [ClusteringRow.from_api(item) for item in body.get('rows') or [] if isinstance(item, dict)]
    message = workflow.save_results(context, rows, body.get('batch_id', ''))
    return jsonify(message.to_dict()), 200 if message.type == 'success' else 400


@app.route('/api/batches/<batch_id>/results')
@admin_required
def batch_results(context, batch_id):
    return jsonify([r.to_dict() for r in workflow.batch_results(context, batch_id)]), 200


@app.route('/api/batches/<batch_id>/notify', methods=['POST'])
@admin_required
def notify_batch(context, batch_id):
    message = asyncio.run(workflow.notify_batch(context, batch_id))
    return jsonify(message.to_dict()), 200


@app.route('/api/batches/<batch_id>/report')
@admin_required
def batch_report(context, batch_id):
    report = workflow.batch_report(context, batch_id)
    if report is None:
        return jsonify(WorkflowMessage('info', 'Belum ada hasil clustering untuk batch ini').to_dict()), 404
    return jsonify(report.to_dict()), 200


@app.route('/api/batches/<batch_id>/report/send', methods=['POST'])
@admin_required
def send_batch_report(context, batch_id):
    message = asyncio.run(workflow.send_batch_report(context, batch_id))
    return jsonify(message.to_dict()), 200


@app.route('/api/config/status')
@admin_required
def config_status(context):
    return jsonify({
        'clustering_configured': config.is_clustering_configured(),
        'notification_configured': config.is_notification_configured(),
        'identity_configured': config.is_identity_configured(),
        'privileged_account_creation': bool(config.supabase_service_role_key),
        'registration_mode': config.registration_mode,
        'missing': config.get_missing_config(),
    }), 200


if __name__ == '__main__':
    # Only use debug mode for local development
    debug_mode = os.getenv('FLASK_ENV') != 'production'
    port = int(os.getenv('PORT', 5002))
    print(f" * Starting Flask on port {port}")
    app.run(debug=debug_mode, host='0.0.0.0', port=port)
