import hmac
import logging

from flask import Flask, jsonify, request

from job_manager import JobManager
from job_store import LOG_LEVELS, SqlJobStore
from scheduler_errors import JobAlreadyRunningError, JobNotFoundError


def create_app(manager: JobManager, store: SqlJobStore, callback_secret: str = "") -> Flask:
    app = Flask(__name__)

    def _secret_ok() -> bool:
        supplied = request.headers.get("X-Callback-Secret", "")
        return bool(callback_secret) and hmac.compare_digest(supplied.encode(), callback_secret.encode())

    def _callback_payload():
        if not _secret_ok():
            return None, (jsonify({"error": "Unauthorized"}), 401)
        payload = request.get_json(silent=True) or {}
        job_id = payload.get("job_id")
        if not job_id:
            return None, (jsonify({"error": "job_id is required"}), 400)
        if store.get_job(job_id) is None:
            return None, (jsonify({"error": "Job not found"}), 404)
        return payload, None

    @app.route("/api/callback/log", methods=["POST"])
    def callback_log():
        payload, error = _callback_payload()
        if error:
            return error
        level = str(payload.get("level") or "info")
        if level not in LOG_LEVELS:
            level = "info"
        store.append_log(payload["job_id"], level, str(payload.get("message") or ""))
        return jsonify({"ok": True})

    @app.route("/api/callback/status", methods=["POST"])
    def callback_status():
        payload, error = _callback_payload()
        if error:
            return error
        fields = {key: value for key, value in payload.items() if key != "job_id"}
        store.update_health_and_status(payload["job_id"], fields)
        return jsonify({"ok": True})

    @app.route("/api/jobs", methods=["GET"])
    def list_jobs():
        return jsonify(manager.list_jobs())

    @app.route("/api/jobs/<job_id>", methods=["GET"])
    def job_status(job_id: str):
        return jsonify(manager.get_status(job_id))

    @app.route("/api/jobs/<job_id>/start", methods=["POST"])
    def start_job(job_id: str):
        return jsonify(manager.start_job(job_id))

    @app.route("/api/jobs/<job_id>/stop", methods=["POST"])
    def stop_job(job_id: str):
        return jsonify(manager.stop_job(job_id))

    @app.route("/api/jobs/<job_id>/reset", methods=["POST"])
    def reset_job(job_id: str):
        return jsonify(manager.reset_booking(job_id))

    @app.route("/api/jobs/<job_id>/logs", methods=["GET"])
    def job_logs(job_id: str):
        if store.get_job(job_id) is None:
            raise JobNotFoundError(job_id)
        limit = request.args.get("limit", default=200, type=int)
        level = request.args.get("level") or None
        return jsonify(store.get_logs(job_id, limit=max(1, min(limit, 1000)), level=level))

    @app.route("/api/jobs/<job_id>/locations", methods=["GET"])
    def job_locations(job_id: str):
        if store.get_job(job_id) is None:
            raise JobNotFoundError(job_id)
        return jsonify([{"id": item.id, "name": item.name} for item in store.read_cached_facilities(job_id)])

    @app.errorhandler(JobNotFoundError)
    def handle_not_found(exc):
        return jsonify({"error": str(exc)}), 404

    @app.errorhandler(JobAlreadyRunningError)
    def handle_conflict(exc):
        return jsonify({"error": str(exc)}), 409

    @app.errorhandler(ValueError)
    def handle_bad_request(exc):
        return jsonify({"error": str(exc)}), 400

    if not callback_secret:
        logging.warning("CALLBACK_SECRET is not set; remote worker callbacks will be rejected.")

    return app
