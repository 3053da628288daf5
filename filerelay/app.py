import atexit
import os
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence

from flask import Blueprint, Flask, Response, current_app, g, jsonify, request
from werkzeug.datastructures import FileStorage
from werkzeug.exceptions import HTTPException

from .config import BYTES_PER_MB, load_config, max_upload_bytes
from .logs import configure_logging, lifecycle_logger, sanitize_log_value
from .orchestrator import ALL_FAILED, SIZE_LIMIT, UploadOrchestrator, relay_upload
from .providers import ProviderAdapter, build_provider_chain
from .registry import FileRegistry, RecordNotFoundError, UploadRecord, isoformat_utc
from .sweeper import ExpirySweeper

DEFAULT_PORT = 3000
# Multipart framing around the file part; the orchestrator enforces the real limit.
MULTIPART_OVERHEAD_BYTES = 1 * BYTES_PER_MB
DEFAULT_MIME_TYPE = "application/octet-stream"


@dataclass
class RelayState:
    """Everything one app instance owns; created once in :func:`create_app`."""

    config: Dict[str, Any]
    registry: FileRegistry
    providers: List[ProviderAdapter]
    orchestrator: UploadOrchestrator
    sweeper: ExpirySweeper

    def provider_named(self, name: str) -> Optional[ProviderAdapter]:
        return next((provider for provider in self.providers if provider.name == name), None)


api = Blueprint("api", __name__, url_prefix="/api")


def get_state() -> RelayState:
    return current_app.extensions["filerelay"]


def _not_found(file_id: str):
    lifecycle_logger.info("file_not_found file_id=%s", sanitize_log_value(file_id))
    return jsonify({"success": False, "error": "File not found"}), 404


def _close_stream_safely(stream: Any, context: str) -> None:
    """Close an upload/input stream while logging failures."""

    if stream is None or not hasattr(stream, "close"):
        return

    try:
        stream.close()
    except OSError as error:
        lifecycle_logger.warning(
            "stream_close_failed context=%s error=%s",
            context,
            sanitize_log_value(str(error)),
        )


@contextmanager
def upload_stream_handler(file_storage: FileStorage) -> Iterator[FileStorage]:
    """Ensure uploaded file streams are always closed."""

    try:
        yield file_storage
    finally:
        _close_stream_safely(
            getattr(file_storage, "stream", None),
            f"upload_stream_handler filename={sanitize_log_value(file_storage.filename or 'unknown')}",
        )


def _query_int(name: str, default: int) -> int:
    value = request.args.get(name, default, type=int)
    return value if value is not None and value >= 1 else default


@api.before_app_request
def add_request_id() -> None:
    """Assign a request identifier for downstream logging."""

    g.request_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)


@api.after_app_request
def log_request_completion(response: Response):
    """Emit lifecycle logs for every completed request."""

    lifecycle_logger.info(
        "request_completed method=%s path=%s status=%d",
        request.method,
        sanitize_log_value(request.path),
        response.status_code,
    )
    return response


@api.after_app_request
def add_cors_headers(response: Response):
    response.headers["Access-Control-Allow-Origin"] = get_state().config["cors_allow_origin"]
    response.headers["Access-Control-Allow-Methods"] = "GET, POST, DELETE, OPTIONS"
    response.headers["Access-Control-Allow-Headers"] = "Content-Type, X-Request-ID"
    if hasattr(g, "request_id"):
        response.headers["X-Request-ID"] = g.request_id
    return response


@api.route("/upload", methods=["POST"])
def upload_file():
    state = get_state()
    upload = request.files.get("file")
    if not isinstance(upload, FileStorage) or not upload.filename:
        lifecycle_logger.warning("upload_failed reason=no_file")
        return jsonify({"success": False, "error": "No file uploaded"}), 400

    with upload_stream_handler(upload) as stream:
        payload = stream.read()

    file_name = upload.filename
    mime_type = upload.mimetype or DEFAULT_MIME_TYPE
    lifecycle_logger.info(
        "upload_received filename=%s size=%d mime_type=%s",
        sanitize_log_value(file_name),
        len(payload),
        sanitize_log_value(mime_type),
    )

    result = relay_upload(state.orchestrator, state.registry, payload, file_name, mime_type)

    if result.reason == SIZE_LIMIT:
        return jsonify(_too_large_payload(state)), 400

    if result.reason == ALL_FAILED or result.record is None:
        return (
            jsonify(
                {
                    "success": False,
                    "error": "All storage services are currently unavailable. Please try again later.",
                    "details": [error.to_payload() for error in result.errors],
                }
            ),
            500,
        )

    record = result.record
    lifecycle_logger.info(
        "upload_completed file_id=%s service=%s size=%d",
        record.id,
        record.service,
        record.size,
    )
    return jsonify(
        {
            "success": True,
            "url": record.url,
            "directUrl": record.direct_url,
            "fileId": record.id,
            "service": record.service,
            "fileName": record.original_name,
            "fileSize": record.size,
            "message": f"File uploaded successfully using {record.service}",
        }
    )


def _too_large_payload(state: RelayState) -> Dict[str, Any]:
    limit_mb = state.config["max_upload_size_mb"]
    return {
        "success": False,
        "error": f"File is too large. Maximum size is {limit_mb:g}MB",
    }


@api.route("/files", methods=["GET"])
def list_files():
    state = get_state()
    default_limit = int(state.config["default_page_limit"])
    page = _query_int("page", 1)
    limit = min(_query_int("limit", default_limit), int(state.config["max_page_limit"]))
    search = request.args.get("search", "")

    file_page = state.registry.list(page=page, limit=limit, search=search)
    return jsonify(
        {
            "success": True,
            "files": [record.to_summary() for record in file_page.records],
            "total": file_page.total,
            "page": file_page.page,
            "totalPages": file_page.total_pages,
            "limit": file_page.limit,
        }
    )


@api.route("/files/<file_id>", methods=["GET"])
def file_info(file_id: str):
    record = get_state().registry.get(file_id)
    if record is None:
        return _not_found(file_id)
    return jsonify({"success": True, "file": record.to_detail()})


@api.route("/files/<file_id>", methods=["DELETE"])
def delete_file(file_id: str):
    state = get_state()
    try:
        record = state.registry.delete(file_id)
    except RecordNotFoundError:
        return _not_found(file_id)

    remote_deleted = _delete_remote_copy(state, record)
    return jsonify(
        {
            "success": True,
            "message": "File removed from the registry",
            "file": {"id": record.id, "name": record.original_name},
            "remoteDeleted": remote_deleted,
        }
    )


def _delete_remote_copy(state: RelayState, record: UploadRecord) -> bool:
    """Best effort: the registry entry is already gone whatever happens here."""

    provider = state.provider_named(record.service)
    if provider is None:
        return False
    try:
        deleted = provider.delete_remote(record)
    except Exception as error:
        lifecycle_logger.warning(
            "remote_delete_failed file_id=%s provider=%s error=%s",
            record.id,
            record.service,
            sanitize_log_value(str(error)),
        )
        return False
    if deleted:
        lifecycle_logger.info("remote_deleted file_id=%s provider=%s", record.id, record.service)
    return deleted


@api.route("/files/<file_id>/download", methods=["POST"])
def track_download(file_id: str):
    try:
        downloads = get_state().registry.increment_download(file_id)
    except RecordNotFoundError:
        return _not_found(file_id)
    return jsonify({"success": True, "downloads": downloads})


@api.route("/stats", methods=["GET"])
def stats():
    return jsonify({"success": True, "stats": get_state().registry.stats().to_payload()})


@api.route("/health", methods=["GET"])
def health_check():
    state = get_state()
    checks: Dict[str, Any] = {
        "providers": [provider.name for provider in state.providers if provider.enabled],
    }
    try:
        next_run = state.sweeper.next_run_time
        checks["sweeper"] = "scheduled" if state.sweeper.running else "stopped"
        checks["sweeper_next_run"] = next_run.isoformat() if next_run else None
    except Exception as error:
        checks["sweeper"] = f"error: {str(error)[:100]}"

    return jsonify(
        {
            "status": "OK",
            "timestamp": isoformat_utc(time.time()),
            "files": len(state.registry),
            "checks": checks,
        }
    )


@api.route("/test", methods=["GET"])
def api_test():
    return jsonify(
        {
            "success": True,
            "message": "API is running",
            "timestamp": isoformat_utc(time.time()),
        }
    )


def _register_error_handlers(app: Flask) -> None:
    @app.errorhandler(404)
    def not_found(error):
        return jsonify({"success": False, "error": "API endpoint not found"}), 404

    @app.errorhandler(413)
    def handle_file_too_large(error):
        return jsonify(_too_large_payload(get_state())), 400

    @app.errorhandler(Exception)
    def handle_unexpected_error(error):
        if isinstance(error, HTTPException):
            return jsonify({"success": False, "error": error.description}), error.code
        lifecycle_logger.exception(
            "request_failed method=%s path=%s",
            request.method,
            sanitize_log_value(request.path),
        )
        return jsonify({"success": False, "error": "Internal server error"}), 500


def create_app(
    config: Optional[Mapping[str, Any]] = None,
    *,
    registry: Optional[FileRegistry] = None,
    providers: Optional[Sequence[ProviderAdapter]] = None,
    start_sweeper: bool = True,
) -> Flask:
    """Build a relay app with its own registry, provider chain and sweeper."""

    configure_logging()
    settings = load_config(config)

    if registry is None:
        registry = FileRegistry(
            capacity=int(settings["registry_capacity"]),
            search_min_length=int(settings["search_min_length"]),
        )
    chain = list(providers) if providers is not None else build_provider_chain(settings)
    limit_bytes = max_upload_bytes(settings)

    state = RelayState(
        config=settings,
        registry=registry,
        providers=chain,
        orchestrator=UploadOrchestrator(chain, limit_bytes),
        sweeper=ExpirySweeper(registry, interval_seconds=int(settings["sweep_interval_seconds"])),
    )

    app = Flask(__name__)
    app.config["MAX_CONTENT_LENGTH"] = limit_bytes + MULTIPART_OVERHEAD_BYTES
    app.extensions["filerelay"] = state
    app.register_blueprint(api)
    _register_error_handlers(app)

    if start_sweeper:
        state.sweeper.start()
        atexit.register(lambda: state.sweeper.shutdown(wait=False))

    lifecycle_logger.info(
        "app_created providers=%s max_upload_mb=%g capacity=%d",
        ",".join(provider.name for provider in chain) or "-",
        settings["max_upload_size_mb"],
        registry.capacity,
    )
    return app


def main() -> None:
    app = create_app()
    app.run(host="0.0.0.0", port=int(os.environ.get("PORT", str(DEFAULT_PORT))), debug=False)


if __name__ == "__main__":
    main()
