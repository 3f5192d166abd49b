"""Flask app exposing the log read endpoints."""

import logging

from flask import Flask, Response, jsonify, request
from werkzeug.exceptions import HTTPException

from src.config import load_config
from src.facade import build_facade
from src.read_api import LogReader, RequestError

logger = logging.getLogger(__name__)


def error_response(status: int, message: str, action: str = "", error_type: str = "") -> dict:
    """ServerErrorResponse body for the current request."""
    return {
        "status": status,
        "notification": message,
        "message": message,
        "action": action,
        "type": error_type,
        "url": request.path,
        "params": dict(request.view_args or {}),
        "query": request.query_string.decode("utf-8", errors="replace"),
        "header": {"Content-Type": request.headers.get("Content-Type", "")},
        "body": request.get_data(as_text=True) or "",
    }


def _bool_arg(name: str) -> bool:
    return request.args.get(name, "").strip().lower() in ("true", "1", "yes")


def create_app(facade=None) -> Flask:
    """Flask application factory."""
    app = Flask(__name__)
    if facade is None:
        facade = build_facade(load_config())
    reader = LogReader(facade)
    app.config["facade"] = facade
    app.config["reader"] = reader

    @app.errorhandler(RequestError)
    def handle_request_error(err):
        return jsonify(error_response(err.status, err.message, err.action, "RequestError")), err.status

    @app.errorhandler(HTTPException)
    def handle_http_error(err):
        return jsonify(error_response(err.code, err.description, "", err.name)), err.code

    @app.errorhandler(Exception)
    def handle_unexpected(err):
        logger.exception("Unhandled error serving %s", request.path)
        return jsonify(error_response(500, "internal error", "retry later", type(err).__name__)), 500

    @app.route("/health")
    def health():
        return jsonify({
            "status": "healthy",
            "local_store": facade.local_store is not None,
            "archive": facade.uploader is not None,
            "sink_failures": facade.failures.count,
        })

    @app.route("/api/logs/entry")
    async def fetch_entry():
        return jsonify(await reader.fetch_by_key(request.args.get("key", "")))

    @app.route("/api/logs/default")
    async def default_view():
        return jsonify(await reader.default_view())

    @app.route("/api/logs/search")
    async def search():
        return jsonify(await reader.search_page(
            request.args.get("category", ""),
            term=request.args.get("term", ""),
            start=request.args.get("start", type=int),
            end=request.args.get("end", type=int),
            cursor=request.args.get("cursor"),
            limit=request.args.get("limit", type=int),
            merge=_bool_arg("merge"),
        ))

    @app.route("/api/logs/<category>/reset", methods=["POST"])
    async def reset(category):
        return jsonify(await reader.reset(category, request.args.get("retain", "0")))

    @app.route("/api/logs/<category>/download")
    def download(category):
        records = reader.stream(category)
        filename = reader.download_name(category)
        return Response(
            records,
            mimetype="text/plain",
            headers={"Content-Disposition": f"attachment; filename={filename}"},
        )

    return app
