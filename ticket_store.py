from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Any, Iterable, Optional, Protocol

import requests
from sqlalchemy import (
    DDL,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    event,
    false,
    func,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import NoSuchTableError, SQLAlchemyError
from sqlalchemy.orm import declarative_base

logger = logging.getLogger(__name__)

Row = dict[str, Any]


class StoreError(RuntimeError):
    """Raised when the ticket datastore rejects or fails a request."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class TicketStore(Protocol):
    def insert(self, table: str, row: Row) -> Row: ...

    def select(
        self,
        table: str,
        filters: Optional[dict[str, Any]] = None,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[Row]: ...

    def update(self, table: str, values: Row, filters: dict[str, Any]) -> list[Row]: ...


# --------------------------------------------------------------------------------------
# Hosted store (PostgREST)
# --------------------------------------------------------------------------------------


def _filter_value(value: Any) -> str:
    if value is None:
        return "is.null"
    if isinstance(value, bool):
        return f"eq.{'true' if value else 'false'}"
    return f"eq.{value}"


def _error_message(response: requests.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        for key in ("message", "msg", "error_description", "error", "hint"):
            if body.get(key):
                return str(body[key])
    text = (response.text or "").strip()
    return text[:200] or f"Store request failed with status {response.status_code}."


class SupabaseStore:
    """Table access through a Supabase/PostgREST ``/rest/v1`` endpoint."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 10,
        http: requests.Session | None = None,
    ):
        self.rest_url = f"{base_url.rstrip('/')}/rest/v1"
        self.api_key = api_key
        self.timeout = timeout
        self.http = http or requests.Session()

    def _headers(self, prefer: str | None = None) -> dict[str, str]:
        headers = {
            "apikey": self.api_key,
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        if prefer:
            headers["Prefer"] = prefer
        return headers

    def _request(
        self,
        method: str,
        table: str,
        *,
        params: Iterable[tuple[str, str]] | None = None,
        payload: Row | None = None,
        prefer: str | None = None,
    ) -> list[Row]:
        url = f"{self.rest_url}/{table}"
        try:
            response = self.http.request(
                method,
                url,
                params=list(params or []),
                json=payload,
                headers=self._headers(prefer),
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            logger.warning("%s %s request failed: %s", method, table, exc)
            raise StoreError("Store request failed.") from exc

        if response.status_code >= 400:
            message = _error_message(response)
            logger.warning("%s %s returned %s: %s", method, table, response.status_code, message)
            raise StoreError(message, status_code=response.status_code)

        if not response.content:
            return []
        try:
            data = response.json()
        except ValueError as exc:  # JSONDecodeError inherits from ValueError
            raise StoreError("Store response was not valid JSON.") from exc
        if isinstance(data, dict):
            return [data]
        if not isinstance(data, list):
            raise StoreError("Store response was not a list of rows.")
        return data

    def insert(self, table: str, row: Row) -> Row:
        rows = self._request(
            "POST",
            table,
            params=[("select", "*")],
            payload=row,
            prefer="return=representation",
        )
        if not rows:
            raise StoreError("Insert returned no rows.")
        return rows[0]

    def select(
        self,
        table: str,
        filters: Optional[dict[str, Any]] = None,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[Row]:
        params = [("select", "*")]
        params.extend((name, _filter_value(value)) for name, value in (filters or {}).items())
        if order_by:
            params.append(("order", f"{order_by}.{'desc' if descending else 'asc'}"))
        if limit is not None:
            params.append(("limit", str(limit)))
        return self._request("GET", table, params=params)

    def update(self, table: str, values: Row, filters: dict[str, Any]) -> list[Row]:
        if not filters:
            raise StoreError("Refusing to update without filters.")
        params = [("select", "*")]
        params.extend((name, _filter_value(value)) for name, value in filters.items())
        return self._request(
            "PATCH",
            table,
            params=params,
            payload=values,
            prefer="return=representation",
        )


# --------------------------------------------------------------------------------------
# Local SQL store
# --------------------------------------------------------------------------------------

Base = declarative_base()


class Ticket(Base):
    __tablename__ = "tickets"
    __table_args__ = (
        CheckConstraint(
            "priority IS NULL OR priority IN ('low','medium','high','urgent')",
            name="ck_tickets_priority",
        ),
    )

    id = Column(Integer, primary_key=True)
    ticket_number = Column(String, unique=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=False)
    category = Column(String)
    priority = Column(String)
    status = Column(String, nullable=False, server_default="open")
    customer_name = Column(String)
    customer_email = Column(String, index=True)
    policy_number = Column(String, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())


class Profile(Base):
    __tablename__ = "profiles"

    id = Column(String(36), primary_key=True)
    email = Column(String)
    first_name = Column(String)
    last_name = Column(String)
    role = Column(String, nullable=False, server_default="Customer")
    is_active = Column(Boolean, nullable=False, server_default=false())
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())


# Hosted tickets get their reference from a database trigger; mirror that locally.
event.listen(
    Ticket.__table__,
    "after_create",
    DDL(
        """
        CREATE TRIGGER IF NOT EXISTS tickets_assign_number
        AFTER INSERT ON tickets
        FOR EACH ROW WHEN NEW.ticket_number IS NULL
        BEGIN
            UPDATE tickets
            SET ticket_number = 'INS-' || substr('000000' || NEW.id, -6, 6)
            WHERE id = NEW.id;
        END
        """
    ).execute_if(dialect="sqlite"),
)


def create_local_schema(engine: Engine) -> None:
    Base.metadata.create_all(engine)


def _plain(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def _sql_error_message(exc: SQLAlchemyError) -> str:
    orig = getattr(exc, "orig", None)
    return str(orig) if orig is not None else str(exc)


class SqlStore:
    """The same table interface over a SQLAlchemy engine.

    Tables are reflected from the live database, so writes naming a column
    the database does not have fail the way the hosted store does.
    """

    def __init__(self, engine: Engine):
        self.engine = engine
        self._tables: dict[str, Table] = {}

    def _table(self, name: str) -> Table:
        table = self._tables.get(name)
        if table is not None:
            return table
        try:
            table = Table(name, MetaData(), autoload_with=self.engine)
        except NoSuchTableError as exc:
            raise StoreError(f'relation "{name}" does not exist') from exc
        except SQLAlchemyError as exc:
            raise StoreError(_sql_error_message(exc)) from exc
        self._tables[name] = table
        return table

    @staticmethod
    def _column(table: Table, name: str):
        if name not in table.c:
            raise StoreError(f"column {table.name}.{name} does not exist")
        return table.c[name]

    @staticmethod
    def _coerce(column, value: Any) -> Any:
        if isinstance(value, str) and isinstance(column.type, Integer):
            try:
                return int(value)
            except ValueError as exc:
                raise StoreError(f'invalid input syntax for type integer: "{value}"') from exc
        return value

    def _conditions(self, table: Table, filters: dict[str, Any]) -> list:
        conditions = []
        for name, value in filters.items():
            column = self._column(table, name)
            if value is None:
                conditions.append(column.is_(None))
            else:
                conditions.append(column == self._coerce(column, value))
        return conditions

    def insert(self, table: str, row: Row) -> Row:
        tbl = self._table(table)
        for name in row:
            if name not in tbl.c:
                raise StoreError(f"Could not find the '{name}' column of '{table}'")
        try:
            with self.engine.begin() as conn:
                result = conn.execute(insert(tbl).values(**row))
                key_columns = list(tbl.primary_key.columns)
                key = result.inserted_primary_key
                if not key_columns or key is None:
                    return dict(row)
                created = conn.execute(
                    select(tbl).where(*[col == value for col, value in zip(key_columns, key)])
                ).mappings().first()
        except SQLAlchemyError as exc:
            raise StoreError(_sql_error_message(exc)) from exc
        if created is None:
            return dict(row)
        return {name: _plain(value) for name, value in created.items()}

    def select(
        self,
        table: str,
        filters: Optional[dict[str, Any]] = None,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[Row]:
        tbl = self._table(table)
        stmt = select(tbl).where(*self._conditions(tbl, filters or {}))
        if order_by:
            column = self._column(tbl, order_by)
            stmt = stmt.order_by(column.desc() if descending else column.asc())
            for key_column in tbl.primary_key.columns:
                stmt = stmt.order_by(key_column.desc() if descending else key_column.asc())
        if limit is not None:
            stmt = stmt.limit(limit)
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(stmt).mappings().all()
        except SQLAlchemyError as exc:
            raise StoreError(_sql_error_message(exc)) from exc
        return [{name: _plain(value) for name, value in row.items()} for row in rows]

    def update(self, table: str, values: Row, filters: dict[str, Any]) -> list[Row]:
        if not filters:
            raise StoreError("Refusing to update without filters.")
        tbl = self._table(table)
        for name in values:
            self._column(tbl, name)
        conditions = self._conditions(tbl, filters)
        try:
            with self.engine.begin() as conn:
                result = conn.execute(update(tbl).where(*conditions).values(**values))
                if not result.rowcount:
                    return []
                rows = conn.execute(select(tbl).where(*conditions)).mappings().all()
        except SQLAlchemyError as exc:
            raise StoreError(_sql_error_message(exc)) from exc
        return [{name: _plain(value) for name, value in row.items()} for row in rows]
