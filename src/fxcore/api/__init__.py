"""Ops HTTP API -- health, manual monitor trigger and fee quotes."""

from fxcore.api.app import create_app

__all__ = ["create_app"]
