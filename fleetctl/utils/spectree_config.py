"""SpecTree configuration for the operator API."""

from typing import Any

from flask import Flask, redirect
from spectree import SpecTree

# Global Spectree instance imported by API modules.
# Initialized by configure_spectree() before the API modules are imported.
api: SpecTree = None  # type: ignore


def configure_spectree(app: Flask) -> SpecTree:
    """Create the SpecTree instance and register its documentation routes.

    Returns:
        SpecTree: Configured Spectree instance
    """
    global api

    if api is None:
        api = SpecTree(
            backend_name="flask",
            title="Fleet Control API",
            version="1.0.0",
            description="Device provisioning, shadow and firmware rollout control plane",
            path="api/docs",  # OpenAPI docs available at /api/docs
            validation_error_status=400,
        )

    api.register(app)

    @app.route("/api/docs")
    @app.route("/api/docs/")
    def docs_redirect() -> Any:
        return redirect("/api/docs/swagger/", code=302)

    return api
