"""HTTP API for the Keel runtime."""

from keel.interfaces.api.server import AppState, build_state, create_app, run_server

__all__ = ["AppState", "build_state", "create_app", "run_server"]
