"""Thin wrapper over the Supabase client for row-level CRUD."""
from __future__ import annotations

import logging
import os
from typing import Any, Dict, List, Mapping, Optional, Sequence

import httpx
from postgrest.exceptions import APIError
from supabase import Client, create_client

logger = logging.getLogger(__name__)

Row = Dict[str, Any]


class StoreError(RuntimeError):
    """Raised when a configured store rejects or fails a request."""


class StoreClient:
    """Issue row-level CRUD calls through a Supabase client.

    The client is considered *configured* only when both the URL and the
    anonymous key are present. Callers are expected to check
    :attr:`configured` before issuing requests.
    """

    def __init__(self, url: Optional[str], api_key: Optional[str], client: Optional[Client] = None) -> None:
        self.url = (url or "").rstrip("/")
        self.api_key = api_key or ""
        self._client = client

    @classmethod
    def from_env(cls) -> "StoreClient":
        """Build a client from ``SUPABASE_URL`` and ``SUPABASE_ANON_KEY``."""

        client = cls(os.environ.get("SUPABASE_URL"), os.environ.get("SUPABASE_ANON_KEY"))
        if not client.configured:
            logger.warning(
                "Store credentials missing (SUPABASE_URL / SUPABASE_ANON_KEY); data will not be persisted."
            )
        return client

    @property
    def configured(self) -> bool:
        return bool(self.url and self.api_key)

    def _get_client(self) -> Client:
        if not self.configured:
            raise EnvironmentError("Store is not configured.")
        if self._client is None:
            self._client = create_client(self.url, self.api_key)
        return self._client

    @staticmethod
    def _execute(query: Any, action: str, table: str) -> List[Row]:
        try:
            response = query.execute()
        except APIError as exc:
            raise StoreError(f"{action} {table} rejected: {exc.message}") from exc
        except httpx.HTTPError as exc:
            raise StoreError(f"{action} {table} failed") from exc
        return response.data or []

    @staticmethod
    def _filtered(query: Any, filters: Mapping[str, Any]) -> Any:
        for column, value in filters.items():
            query = query.eq(column, value)
        return query

    def select(
        self,
        table: str,
        filters: Optional[Mapping[str, Any]] = None,
        order: Optional[str] = None,
        descending: bool = False,
    ) -> List[Row]:
        query = self._filtered(self._get_client().table(table).select("*"), filters or {})
        if order:
            query = query.order(order, desc=descending)
        logger.debug("Selecting from %s (filters=%s, order=%s)", table, filters, order)
        return self._execute(query, "select", table)

    def insert(self, table: str, rows: Sequence[Row] | Row) -> List[Row]:
        """Insert one or more rows and return the stored representation."""
        return self._execute(self._get_client().table(table).insert(rows), "insert", table)

    def upsert(self, table: str, rows: Sequence[Row] | Row) -> List[Row]:
        return self._execute(self._get_client().table(table).upsert(rows), "upsert", table)

    def update(self, table: str, values: Row, filters: Mapping[str, Any]) -> None:
        if not filters:
            raise ValueError("Refusing to update without filters.")
        query = self._filtered(self._get_client().table(table).update(values), filters)
        self._execute(query, "update", table)

    def delete(self, table: str, filters: Mapping[str, Any]) -> None:
        if not filters:
            raise ValueError("Refusing to delete without filters.")
        query = self._filtered(self._get_client().table(table).delete(), filters)
        self._execute(query, "delete", table)
