"""Shared application context for reusable dependencies."""
from __future__ import annotations

from typing import Any, Callable, Optional

_get_conn: Optional[Callable[[], Any]] = None
_repository: Optional[Any] = None


def configure(
    *,
    get_conn: Optional[Callable[[], Any]] = None,
    repository: Optional[Any] = None,
) -> None:
    """Register the database connection factory or a ready-made billing repository.

    A registered ``repository`` takes precedence over the PostgreSQL one built
    from ``get_conn``.
    """

    global _get_conn
    global _repository

    _get_conn = get_conn
    _repository = repository


def _require(value: Optional[Any], name: str) -> Any:
    if value is None:
        raise RuntimeError(f"Application context has not been configured yet: {name}")
    return value


def get_conn() -> Any:
    conn_factory = _require(_get_conn, "get_conn")
    return conn_factory()


def get_repository() -> Optional[Any]:
    return _repository


def reset() -> None:
    global _get_conn
    global _repository

    _get_conn = None
    _repository = None
