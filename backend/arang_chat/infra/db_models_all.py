"""
Import all ORM model modules so ``Base.metadata`` carries every table.
Used by the SQL gateway, alembic and the test fixtures.
"""

from __future__ import annotations

import importlib

_DOMAINS: tuple[str, ...] = (
    "orders",
    "profiles",
    "support_chat",
)


def import_all_db_models() -> None:
    for domain in _DOMAINS:
        importlib.import_module(f"arang_chat.domain.{domain}.db_models")


import_all_db_models()
