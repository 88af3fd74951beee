"""
Flask application serving the Edge Gateway.

Every path under the mount goes to the gateway; the catch-all route plays
the router and hands over the path segments. /edge/health is answered
locally for liveness probes.

Local development:
    edge-gateway                      (or: python -m edge_gateway.app)

Production:
    gunicorn --threads 8 'edge_gateway.app:create_app()'
"""

from __future__ import annotations

import logging
import os
import time
from typing import Callable, Optional

import requests
from flask import Flask, Response, current_app, jsonify, request
from werkzeug.datastructures import Headers

from edge_gateway import __version__
from edge_gateway.config import GatewayConfig
from edge_gateway.proxy import EdgeGateway, EdgeRequest, EdgeResponse
from edge_gateway.store import RateLimitStore

logger = logging.getLogger(__name__)

PROXY_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


def configure_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format='{"ts":"%(asctime)s","level":"%(levelname)s","msg":"%(message)s"}',
        datefmt='%Y-%m-%dT%H:%M:%SZ'
    )


# =============================================================================
# Flask <-> gateway conversion
# =============================================================================

def to_edge_request(path: str) -> EdgeRequest:
    """Snapshot the current Flask request."""
    return EdgeRequest(
        method=request.method,
        path_segments=tuple(path.split("/")) if path else (),
        query_string=request.query_string,
        headers=Headers(request.headers),
        body=request.get_data(cache=False),
    )


def to_flask_response(edge: EdgeResponse, method: str = "GET") -> Response:
    response = Response(edge.body, status=edge.status)
    # Replace Flask's defaults so upstream headers go out exactly as received
    response.headers = Headers(edge.headers)
    if "Content-Length" in response.headers:
        return response

    if method == "HEAD":
        # The body length of the GET is unknown; don't claim zero
        response.automatically_set_content_length = False
    else:
        response.headers["Content-Length"] = str(len(edge.body))
    return response


# =============================================================================
# Routes
# =============================================================================

def health():
    """Liveness probe."""
    gateway: EdgeGateway = current_app.extensions["edge_gateway"]
    config = gateway.config
    return jsonify({
        "status": "healthy",
        "service": "edge-gateway",
        "version": __version__,
        "rate_limiting": {
            "enabled": config.rate_limit.enabled,
            "limit": config.rate_limit.max_requests,
            "window_seconds": config.rate_limit.window_seconds,
            "strategy": config.rate_limit.strategy,
        },
    })


def proxy(path: str = ""):
    gateway: EdgeGateway = current_app.extensions["edge_gateway"]
    return to_flask_response(gateway.handle(to_edge_request(path)), request.method)


def create_app(
    config: Optional[GatewayConfig] = None,
    store: Optional[RateLimitStore] = None,
    session: Optional[requests.Session] = None,
    clock: Callable[[], float] = time.time,
) -> Flask:
    """Build the Flask app around a gateway wired from config.

    Configuration comes from the environment unless passed in.
    """
    config = config or GatewayConfig.from_env()

    app = Flask(__name__)
    app.extensions["edge_gateway"] = EdgeGateway.from_config(
        config, store=store, session=session, clock=clock
    )

    app.add_url_rule("/edge/health", "health", health, methods=["GET"])
    app.add_url_rule("/", "proxy_root", proxy, methods=PROXY_METHODS)
    app.add_url_rule("/<path:path>", "proxy", proxy, methods=PROXY_METHODS)
    return app


# =============================================================================
# Main (for local development only - production uses gunicorn)
# =============================================================================

def main() -> None:
    configure_logging()
    config = GatewayConfig.from_env()
    app = create_app(config)

    port = int(os.environ.get("PORT", 8081))
    logger.info(f"Edge gateway starting on port {port}")
    logger.info(f"Upstream: {config.upstream_origin}")
    logger.info(
        f"Denylists: ips={len(config.blocked_ips)} regions={len(config.blocked_regions)}"
    )
    if config.rate_limit.enabled:
        logger.info(
            f"Rate limit: {config.rate_limit.max_requests} req/"
            f"{config.rate_limit.window_seconds}s ({config.rate_limit.strategy}, "
            f"{'redis' if config.redis_url else 'memory'})"
        )
    else:
        logger.info("Rate limit: disabled")
    app.run(host="0.0.0.0", port=port, threaded=True)


if __name__ == "__main__":
    main()
