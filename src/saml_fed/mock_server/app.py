"""Flask application exposing this entity's metadata and SLO endpoint.

Endpoints:
    /health   - JSON status
    /metadata - this entity's generated metadata
    /slo      - single logout (GET redirect, POST form, POST SOAP)
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from flask import Flask, Response, jsonify, request

from ..saml.bindings import render_redirect_page
from ..saml.logout_service import LogoutResult, LogoutService

logger = logging.getLogger("saml_fed.mock_server")

SOAP_CONTENT_TYPE = "text/xml; charset=utf-8"
NO_CACHE_HEADERS = {"Cache-Control": "no-cache, no-store", "Pragma": "no-cache"}


def _result_response(result: LogoutResult) -> Response:
    if not result.accepted:
        return Response(result.text, status=400, mimetype="text/plain", headers=NO_CACHE_HEADERS)

    reply = result.reply
    if reply is None:
        return Response(result.text, status=200, mimetype="text/plain", headers=NO_CACHE_HEADERS)
    if reply.redirect_url is not None:
        return Response(
            render_redirect_page(reply.redirect_url),
            status=200,
            mimetype="text/html",
            headers=NO_CACHE_HEADERS,
        )
    return Response(reply.form_html, status=200, mimetype="text/html", headers=NO_CACHE_HEADERS)


def create_app(service: LogoutService, metadata_xml: Optional[str] = None) -> Flask:
    """Create the mock endpoint application.

    Args:
        service: LogoutService handling /slo
        metadata_xml: Document served at /metadata (404 when None)

    Example:
        >>> app = create_app(federation.logout_service(), federation.generate_metadata("sp"))
        >>> app.run(port=8080)
    """
    app = Flask(__name__)
    started_at = datetime.now(timezone.utc)
    counters = {"requests": 0}

    @app.before_request
    def log_request() -> None:
        counters["requests"] += 1
        logger.info(
            f"Request #{counters['requests']}: {request.method} {request.path} "
            f"(Content-Length: {request.content_length or 0})"
        )

    @app.route("/health", methods=["GET"])
    def health_check():
        uptime_seconds = int((datetime.now(timezone.utc) - started_at).total_seconds())
        return (
            jsonify(
                {
                    "status": "healthy",
                    "entity_id": service.entity_id,
                    "endpoints": ["/health", "/metadata", "/slo"],
                    "uptime_seconds": uptime_seconds,
                    "request_count": counters["requests"],
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                }
            ),
            200,
        )

    @app.route("/metadata", methods=["GET"])
    def metadata():
        if metadata_xml is None:
            return Response("Metadata not configured", status=404, mimetype="text/plain")
        return Response(metadata_xml, status=200, mimetype="application/samlmetadata+xml")

    @app.route("/slo", methods=["GET"])
    def slo_redirect():
        raw_query = request.query_string.decode("utf-8")
        return _result_response(service.handle_redirect(raw_query))

    @app.route("/slo", methods=["POST"])
    def slo_post():
        if request.mimetype in ("text/xml", "application/soap+xml"):
            envelope = request.get_data(as_text=True)
            reply = service.handle_soap(envelope)
            return Response(reply, status=200, content_type=SOAP_CONTENT_TYPE, headers=NO_CACHE_HEADERS)
        return _result_response(service.handle_post(request.form))

    return app


def run_server(app: Flask, host: str = "127.0.0.1", port: int = 8080, debug: bool = False) -> None:
    """Run the mock endpoint with the Flask development server."""
    logger.info(f"Starting SAML mock endpoint on http://{host}:{port}")
    logger.info(f"Health check available at: http://{host}:{port}/health")
    app.run(host=host, port=port, debug=debug, use_reloader=False)
