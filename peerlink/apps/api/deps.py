from __future__ import annotations

from fastapi import Request

from peerlink.core.config import Settings
from peerlink.persistence.db import Database
from peerlink.services.identity import IdentityResolver
from peerlink.services.ledger import MessageLedger


# Service handles are built once in create_app() and shared through app.state.
def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_database(request: Request) -> Database:
    return request.app.state.db


def get_resolver(request: Request) -> IdentityResolver:
    return request.app.state.resolver


def get_ledger(request: Request) -> MessageLedger:
    return request.app.state.ledger
