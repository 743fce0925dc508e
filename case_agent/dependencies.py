from __future__ import annotations

from .functions_client import FunctionsClient, build_functions_client
from .providers import BaseProvider, build_provider


def get_provider() -> BaseProvider:
    """
    Dependency returning the active model provider.

    Tests rely on this function name to override the provider with scripted
    providers via FastAPI's dependency_overrides.
    """

    return build_provider()


def get_functions_client() -> FunctionsClient:
    """Dependency returning the client for the POA/OCR functions."""

    return build_functions_client()
