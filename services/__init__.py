"""
Job lifecycle, point ledger and collaboration services.

Engines are built from the current app's config so routes, the scheduler and
tests share the same policy values.
"""

from flask import current_app

from services.state_machine import Actor, SYSTEM_ACTOR
from services.escrow import EscrowEngine
from services.collaboration import CollaborationSplitter


def get_escrow_engine(config=None):
    return EscrowEngine.from_config(config if config is not None else current_app.config)


def get_collaboration_splitter(config=None):
    return CollaborationSplitter(get_escrow_engine(config))


__all__ = [
    "Actor",
    "SYSTEM_ACTOR",
    "EscrowEngine",
    "CollaborationSplitter",
    "get_escrow_engine",
    "get_collaboration_splitter",
]
