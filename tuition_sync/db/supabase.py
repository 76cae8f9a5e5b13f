"""
tuition_sync/db/supabase.py
Supabase client and the table helpers the Ledger Service persists through
"""
from supabase import create_client, Client
from tuition_sync.core.config import settings
from enum import Enum
from functools import lru_cache
from typing import Optional, Dict, List, Any, Tuple
import logging

logger = logging.getLogger(__name__)

# Postgres SQLSTATE carried on postgrest APIError.code
UNIQUE_VIOLATION = "23505"


class StorageError(Exception):
    """Raised when a ledger table operation fails at the database"""

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.code = code

    @property
    def unique_violation(self) -> bool:
        return self.code == UNIQUE_VIOLATION


@lru_cache()
def get_supabase_client() -> Client:
    """
    Build the Supabase client once per process

    Raises:
        StorageError: If SUPABASE_URL / SUPABASE_KEY are unusable
    """
    try:
        client = create_client(
            supabase_url=settings.SUPABASE_URL,
            supabase_key=settings.SUPABASE_KEY
        )
    except Exception as e:
        logger.error(f"Failed to create Supabase client: {e}")
        raise StorageError(f"Supabase connection failed: {e}") from e
    logger.info("Supabase client created")
    return client


def _column_value(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


class SupabaseQueries:
    """
    Async wrappers over the Supabase table API for the ledger tables
    (students, fee_payments, categories, courses, staff)

    Filters with a None value are skipped, so optional query parameters can
    be passed straight through. Enum filter values are written by value.
    """

    def __init__(self, client: Client = None):
        self.client = client or get_supabase_client()

    def _filtered(self, query, filters: Optional[Dict[str, Any]]):
        for key, value in (filters or {}).items():
            if value is not None:
                query = query.eq(key, _column_value(value))
        return query

    def _execute(self, action: str, table: str, query):
        try:
            return query.execute()
        except Exception as e:
            logger.error(f"Error during {action} on {table}: {e}")
            raise StorageError(f"Failed to {action} {table}: {e}", code=getattr(e, "code", None)) from e

    @staticmethod
    def _first(response) -> Optional[Dict[str, Any]]:
        return response.data[0] if response.data else None

    async def insert_one(self, table: str, data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        row = self._first(self._execute("insert into", table, self.client.table(table).insert(data)))
        if row is None:
            logger.warning(f"Insert into {table} returned no data")
        return row

    async def select_all(
        self,
        table: str,
        filters: Optional[Dict[str, Any]] = None,
        order_by: Optional[str] = None,
        ascending: bool = True,
        between: Optional[Dict[str, Tuple[Any, Any]]] = None
    ) -> List[Dict[str, Any]]:
        """
        Rows matching every equality filter

        between maps a column to (low, high): low inclusive, high exclusive,
        either side None for an open bound.

        Example:
            >>> payments = await db.select_all(
            ...     "fee_payments",
            ...     filters={"student_id": "stu-1", "period_month": 3},
            ...     order_by="recorded_at",
            ...     ascending=False
            ... )
        """
        query = self._filtered(self.client.table(table).select("*"), filters)
        for column, (low, high) in (between or {}).items():
            if low is not None:
                query = query.gte(column, low)
            if high is not None:
                query = query.lt(column, high)
        if order_by:
            query = query.order(order_by, desc=not ascending)
        rows = self._execute("select from", table, query).data
        logger.debug(f"Selected {len(rows)} rows from {table}")
        return rows

    async def select_by_id(self, table: str, id_column: str, id_value: Any) -> Optional[Dict[str, Any]]:
        query = self.client.table(table).select("*").eq(id_column, id_value)
        return self._first(self._execute("select from", table, query))

    async def select_one(self, table: str, filters: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """First row matching every filter, None if there is none"""
        query = self._filtered(self.client.table(table).select("*"), filters).limit(1)
        return self._first(self._execute("select from", table, query))

    async def count(self, table: str, filters: Optional[Dict[str, Any]] = None) -> int:
        query = self._filtered(self.client.table(table).select("*", count="exact"), filters).limit(0)
        return self._execute("count", table, query).count or 0

    async def update_by_id(
        self,
        table: str,
        id_column: str,
        id_value: Any,
        data: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        query = self.client.table(table).update(data).eq(id_column, id_value)
        row = self._first(self._execute("update", table, query))
        if row is None:
            logger.warning(f"Update in {table} matched no row with {id_column}={id_value}")
        else:
            logger.info(f"Updated {table} row {id_column}={id_value}")
        return row


__all__ = [
    'get_supabase_client',
    'StorageError',
    'SupabaseQueries',
]
