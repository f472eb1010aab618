"""
Flask application and delta endpoints.

Endpoints:
    GET /ping                               Health check
    GET /api/v3/delta?src=&dest=[&wait=]    Delta image (name in JSON body)
    GET /api/v2/delta?src=&dest=[&wait=]    Patch file (redirect to download)
    GET /api/v2/delta/download?delta=<key>  Patch file bytes
"""

import logging
from flask import Blueprint, Flask, Response, current_app, jsonify, redirect, request, send_file, url_for
from werkzeug.exceptions import HTTPException

from .context import DeltaContext
from .errors import DeltaError, ValidationError
from .validation import validate_delta_key

logger = logging.getLogger(__name__)

EXTENSION_NAME = "deltaserver"
TRUE_VALUES = ("1", "true", "yes")

api = Blueprint("delta", __name__)


def create_app(context: DeltaContext) -> Flask:
    """Create the Flask app serving the given application context."""
    app = Flask(__name__)
    app.extensions[EXTENSION_NAME] = context
    app.register_blueprint(api)
    return app


def _context() -> DeltaContext:
    return current_app.extensions[EXTENSION_NAME]


def _authorize(context: DeltaContext) -> None:
    context.auth.verify(request.headers.get("Authorization"))


def _delta_params() -> tuple[str, str, bool]:
    src = request.args.get("src", "")
    dest = request.args.get("dest", "")
    if not src or not dest:
        logger.warning(f"Delta request without src/dest: {request.query_string!r}")
        raise ValidationError("src and dest url params must be provided")
    wait = request.args.get("wait", "").lower() in TRUE_VALUES
    return src, dest, wait


def _download_url(context: DeltaContext, key: str) -> str:
    path = url_for("delta.download", delta=key)
    if context.config.BASE_DOMAIN:
        return f"https://delta.{context.config.BASE_DOMAIN}{path}"
    return path


# -------------------------------
# Delta Endpoints
# -------------------------------


@api.route("/ping")
def ping():
    """Health check used by the load balancer."""
    return Response("OK", status=200, mimetype="text/plain")


@api.route("/api/v3/delta")
def delta_image():
    """
    Get the delta image between two images.

    Query Parameters:
        src: Image the device runs, <registry>/v<N>/<id>[@sha256:<digest>]
        dest: Image the device updates to
        wait: Optional. "true" blocks until the build finishes

    Returns:
        200 {"success": true, "name": "<registry>/v<N>/<dest id>:delta-<src id>"}

    Raises:
        400: Invalid references or failed build
        401: Missing or invalid token
        504: Build in progress (retry later)
    """
    context = _context()
    src, dest, wait = _delta_params()
    _authorize(context)

    delta = context.images.request(src, dest, wait=wait)

    logger.info(f"Delta image sent: {delta.path}")
    return jsonify(success=True, name=delta.path)


@api.route("/api/v2/delta")
def delta_patch():
    """
    Get the patch file between two images.

    Same parameters and errors as /api/v3/delta; on success redirects to the
    download endpoint so that the patch is fetched by a separate request.

    Returns:
        302 with Location: /api/v2/delta/download?delta=<key>
    """
    context = _context()
    src, dest, wait = _delta_params()
    _authorize(context)

    delta = context.patches.request(src, dest, wait=wait)

    location = _download_url(context, delta.key)
    logger.info(f"Delta patch ready: {delta.key}, redirecting to {location}")
    return redirect(location, code=302)


@api.route("/api/v2/delta/download")
def download():
    """
    Stream a stored patch file.

    Query Parameters:
        delta: Delta key, <dest id>:delta-<src id>

    Response Headers:
        Content-Type: application/octet-stream
        Content-Length: Size of the patch in bytes

    Raises:
        400: Malformed key
        401: Missing or invalid token
        404: No patch stored under the key
    """
    context = _context()
    key = request.args.get("delta", "")
    _authorize(context)
    validate_delta_key(key)

    path, size = context.patch_store.fetch(key)

    resp = send_file(
        path,
        mimetype="application/octet-stream",
        as_attachment=True,
        download_name=f"{key.replace(':', '-')}.delta",
        conditional=False,
    )
    resp.headers["Content-Length"] = str(size)
    logger.info(f"Delta patch sent: {key} ({size} bytes)")
    return resp


# -------------------------------
# Error Handlers
# -------------------------------


@api.app_errorhandler(DeltaError)
def handle_delta_error(error: DeltaError):
    details = " ".join(f"{k}={v}" for k, v in error.context.items())
    logger.warning(
        f"{request.path} failed with {error.status_code}: {error.message} "
        f"src={request.args.get('src')} dest={request.args.get('dest')} {details}".rstrip()
    )
    return jsonify(error.to_dict()), error.status_code


@api.app_errorhandler(Exception)
def handle_unexpected_error(error: Exception):
    if isinstance(error, HTTPException):
        return error
    logger.error(f"Unhandled error on {request.path}", exc_info=error)
    return jsonify(success=False, message="Internal server error"), 500
