from __future__ import annotations

import dataclasses
import enum
import threading
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

import structlog
from flask import Flask, jsonify, request, session

from adapters.base import DirectoryAdapter
from adapters.demo_adapter import DemoAdapter
from adapters.exchange_adapter import ExchangeAdapter
from config import MODE_DEMO, Settings, configure_logging, load_settings
from directory.audit import AuditLog
from directory.cache import SessionCaches
from directory.models import ActionStatus, BatchReport, DirectoryObjectRef
from directory.session import ConsoleSession

#python app.py
#start chrome --app=http://127.0.0.1:5000

settings = load_settings()
configure_logging(settings.log_level)
logger = structlog.get_logger(__name__)

app = Flask(__name__)
app.secret_key = settings.secret_key
app.permanent_session_lifetime = timedelta(minutes=settings.session_minutes)

_adapter: Optional[DirectoryAdapter] = None
_audit: Optional[AuditLog] = None
_caches: Optional[SessionCaches] = None
_console_sessions: Dict[str, ConsoleSession] = {}
_sessions_lock = threading.Lock()


def build_adapter(config: Settings) -> DirectoryAdapter:
    if config.mode == MODE_DEMO:
        if not config.demo_mongo_uri:
            raise RuntimeError("DEFAULT_MODE is set to 'demo' but DEMO_MONGO_URI is missing in the environment.")
        return DemoAdapter(mongo_uri=config.demo_mongo_uri, db_name=config.demo_mongo_db)
    return ExchangeAdapter(
        organization=config.exo_organization,
        app_id=config.exo_app_id,
        certificate_thumbprint=config.exo_certificate_thumbprint,
        user_principal_name=config.exo_user_principal_name,
        executable=config.powershell_exe,
    )


def get_console_session() -> ConsoleSession:
    """Session of the logged-in operator; the connection, audit file and caches are shared."""
    global _adapter, _audit, _caches
    user = session.get("user", "anonymous")
    with _sessions_lock:
        console = _console_sessions.get(user)
        if console is not None:
            return console
        if _adapter is None:
            _adapter = build_adapter(settings)
            logger.info("directory_adapter_created", mode=settings.mode)
        if _audit is None:
            _audit = AuditLog(settings.audit_log_file)
        if _caches is None:
            _caches = SessionCaches()
        console = ConsoleSession(
            _adapter,
            _audit.bind(user),
            min_search_length=settings.search_min_length,
            search_result_cap=settings.search_result_cap,
            caches=_caches,
        )
        _console_sessions[user] = console
        logger.info("console_session_created", user=user)
        return console


def serialize(value: Any) -> Any:
    if isinstance(value, DirectoryObjectRef):
        return value.to_dict()
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        payload = {field.name: serialize(getattr(value, field.name)) for field in dataclasses.fields(value)}
        kind = getattr(value, "kind", None)
        if isinstance(kind, enum.Enum):
            payload["kind"] = kind.value
        return payload
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, (list, tuple, set)):
        return [serialize(item) for item in value]
    if isinstance(value, dict):
        return {key: serialize(item) for key, item in value.items()}
    return value


def respond(status: ActionStatus, error_code: int = 400) -> Tuple[Any, int]:
    body = {"ok": status.ok, "message": status.message, "data": serialize(status.payload)}
    # Partially failed batches are a normal outcome; the report says what failed.
    if status.ok or isinstance(status.payload, BatchReport):
        return jsonify(body), 200
    return jsonify(body), error_code


def _body() -> Dict[str, Any]:
    return request.get_json(force=True, silent=True) or {}


def _object_ref(body: Dict[str, Any]) -> DirectoryObjectRef:
    return DirectoryObjectRef.from_dict(body.get("object") or {})


def _string_list(value: Any) -> List[str]:
    if not value:
        return []
    if isinstance(value, str):
        return [value]
    return [str(item) for item in value]


@app.before_request
def require_login():
    session.permanent = True
    if 'user' in session:
        return

    if request.endpoint in ('login', 'api_me', 'api_logout', 'static'):
        return

    return jsonify({"error": "auth_required"}), 401


@app.errorhandler(ValueError)
def handle_bad_request(exc: ValueError):
    return jsonify({"ok": False, "message": str(exc)}), 400


@app.route('/login', methods=['POST'])
def login():
    payload = request.get_json(silent=True) or request.form
    username = payload.get('username')
    password = payload.get('password')
    if username in settings.users and settings.users[username] == password:
        session['user'] = username
        return jsonify({"ok": True, "user": username})
    return jsonify({"ok": False, "error": "Invalid username or password"}), 401


@app.route('/logout', methods=['POST'])
@app.route('/api/logout', methods=['POST'])
def api_logout():
    session.pop('user', None)
    return jsonify({"ok": True})


@app.route('/api/me')
def api_me():
    user = session.get('user')
    if not user:
        return jsonify({"authenticated": False}), 401
    return jsonify({"authenticated": True, "user": user, "mode": settings.mode})


@app.route('/api/logs')
def get_log_file():
    return get_console_session().audit.read(), 200


@app.route('/api/search')
def api_search():
    console = get_console_session()
    status = console.search(request.args.get("q"))
    # A short query is an input problem, not a failed request.
    return respond(status, error_code=200 if status.payload == [] else 502)


@app.route('/api/details', methods=['POST'])
def api_details():
    console = get_console_session()
    return respond(console.select(_object_ref(_body())), error_code=502)


@app.route('/api/details/reload', methods=['POST'])
def api_details_reload():
    console = get_console_session()
    return respond(console.reload_details(_object_ref(_body())), error_code=502)


@app.route('/api/group/members/add', methods=['POST'])
def api_group_add():
    body = _body()
    console = get_console_session()
    return respond(console.add_members(_object_ref(body), body.get("identities") or ""))


@app.route('/api/group/members/remove', methods=['POST'])
def api_group_remove():
    body = _body()
    console = get_console_session()
    status = console.remove_members(
        _object_ref(body),
        body.get("identities") or "",
        selected=_string_list(body.get("selected")),
    )
    return respond(status)


@app.route('/api/mailbox/rights/grant', methods=['POST'])
def api_grant_rights():
    body = _body()
    console = get_console_session()
    status = console.grant_rights(
        _object_ref(body),
        body.get("identities") or "",
        full_access=bool(body.get("fullAccess")),
        send_as=bool(body.get("sendAs")),
    )
    return respond(status)


@app.route('/api/mailbox/rights/revoke', methods=['POST'])
def api_revoke_rights():
    body = _body()
    console = get_console_session()
    status = console.revoke_rights(
        _object_ref(body),
        body.get("identities") or "",
        full_access=bool(body.get("fullAccess")),
        send_as=bool(body.get("sendAs")),
        selected_target_ids=_string_list(body.get("selected")),
    )
    return respond(status)


@app.route('/api/cache/clear', methods=['POST'])
def api_clear_caches():
    return respond(get_console_session().clear_caches())


if __name__ == '__main__':
    app.run(debug=True)
