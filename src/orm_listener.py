"""
Database query and model change logging through SQLAlchemy events.

Every executed statement (writes by default, reads on request) becomes an
orm_log entry deferred into the current logging context. Write statements
are held on their connection until the transaction ends, so that a mapper
event for the same row can merge its before/after values into the entry.
"""

import re
import time
import uuid
from typing import Any, Callable, Dict, List, Mapping, NamedTuple, Optional, Sequence

import structlog
from sqlalchemy import event, inspect
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.orm import Mapper
from sqlalchemy.orm import registry as orm_registry

from config import LoggerSettings, get_settings
from lifecycle import LoggingContext, current_context
from log_objects import OrmLogObject
from utils import dumps_line, truncate

logger = structlog.get_logger()

_QUERY_TYPE = re.compile(r"^\s*(SELECT|INSERT|UPDATE|DELETE|CREATE|DROP|ALTER|TRUNCATE|REPLACE)\s+", re.IGNORECASE)
_TABLE = re.compile(r"""(?:from|into|update|table)\s+[`"\[]?(\w+)[`"\]]?""", re.IGNORECASE)
_WHERE = re.compile(r"\bwhere\b", re.IGNORECASE)
_ID_CONDITION = re.compile(r"""[`"]?\bid[`"]?\s*=\s*(\?|%s|%\((\w+)\)s|:(\w+))""", re.IGNORECASE)

_ACTIONS = {"SELECT": "read", "INSERT": "create", "UPDATE": "update", "DELETE": "delete"}
_WRITE_TYPES = ("INSERT", "UPDATE", "DELETE")

_START_TIMES_KEY = "query_logger_start_times"
_TRANSACTION_KEY = "query_logger_transaction"
_PENDING_KEY = "query_logger_pending"

# Seconds a write statement waits for its mapper event before it is logged alone.
MAX_PENDING_AGE = 5.0

_MODEL_EVENTS = (
    ("after_insert", "INSERT", "model_created"),
    ("after_update", "UPDATE", "model_updated"),
    ("after_delete", "DELETE", "model_deleted"),
)


class PendingQuery(NamedTuple):
    log_object: OrmLogObject
    context: LoggingContext
    parked_at: float


def extract_query_type(sql: str) -> Optional[str]:
    match = _QUERY_TYPE.match(sql)
    return match.group(1).upper() if match else None


def extract_table(sql: str) -> Optional[str]:
    match = _TABLE.search(sql)
    return match.group(1).lower() if match else None


def query_action(query_type: Optional[str]) -> str:
    return _ACTIONS.get(query_type or "", (query_type or "unknown").lower())


def extract_model_id(sql: str, query_type: Optional[str], parameters: Any) -> Optional[str]:
    """Value bound to an `id = ?` condition of the WHERE clause, if any."""
    if query_type not in ("SELECT", "UPDATE", "DELETE"):
        return None

    where = _WHERE.search(sql)
    if not where:
        return None

    match = _ID_CONDITION.search(sql, where.end())
    if not match:
        return None

    name = match.group(2) or match.group(3)
    if name:
        value = parameters.get(name) if isinstance(parameters, Mapping) else None
    else:
        position = sql[:match.start(1)].count(match.group(1))
        if isinstance(parameters, Sequence) and not isinstance(parameters, (str, bytes)) and position < len(parameters):
            value = parameters[position]
        else:
            value = None

    if value is None or isinstance(value, (list, tuple, dict)):
        return None
    return str(value)


def format_bindings(parameters: Any, max_size: int) -> Optional[str]:
    if not parameters:
        return None
    return truncate(dumps_line(parameters).decode("utf-8"), max_size)



def model_values(state, previous: bool = False) -> Dict[str, Any]:
    """
    Loaded column values of a mapped instance.

    With previous=True, attributes changed in the current flush report the
    value they had before the change. Unloaded attributes are left out
    instead of being fetched.
    """
    values = {}
    for attr in state.mapper.column_attrs:
        if attr.key not in state.dict:
            continue
        value = state.dict[attr.key]
        if previous:
            deleted = state.attrs[attr.key].history.deleted
            if deleted:
                value = deleted[0]
        values[attr.key] = value
    return values


def model_identity(mapper: Mapper, state) -> Optional[str]:
    ident = [state.dict.get(mapper.get_property_by_column(column).key) for column in mapper.primary_key]
    if all(value is None for value in ident):
        return None
    return ",".join("" if value is None else str(value) for value in ident)


class QueryLogger:
    """Turns SQLAlchemy cursor executions and mapper events into OrmLogObject entries."""

    def __init__(
        self,
        settings: Optional[LoggerSettings] = None,
        registry: Optional[orm_registry] = None,
        context_provider: Callable[[], Optional[LoggingContext]] = current_context,
    ):
        self.settings = settings or get_settings()
        self.registry = registry
        self.context_provider = context_provider
        self._watched: List[Mapper] = []

    def attach(self, engine: Engine) -> "QueryLogger":
        event.listen(engine, "before_cursor_execute", self.before_cursor_execute)
        event.listen(engine, "after_cursor_execute", self.after_cursor_execute)
        event.listen(engine, "commit", self.transaction_ended)
        event.listen(engine, "rollback", self.transaction_ended)
        return self

    def detach(self, engine: Engine) -> None:
        event.remove(engine, "before_cursor_execute", self.before_cursor_execute)
        event.remove(engine, "after_cursor_execute", self.after_cursor_execute)
        event.remove(engine, "commit", self.transaction_ended)
        event.remove(engine, "rollback", self.transaction_ended)

    def watch_models(self) -> "QueryLogger":
        """Log inserts, updates and deletes of every class mapped in the registry."""
        if self.registry is None:
            raise ValueError("watch_models requires a registry")

        for mapper in self.registry.mappers:
            if mapper in self._watched:
                continue
            for identifier, _, _ in _MODEL_EVENTS:
                event.listen(mapper, identifier, getattr(self, identifier))
            self._watched.append(mapper)
        return self

    def unwatch_models(self) -> None:
        for mapper in self._watched:
            for identifier, _, _ in _MODEL_EVENTS:
                event.remove(mapper, identifier, getattr(self, identifier))
        self._watched = []

    def before_cursor_execute(self, conn: Connection, cursor, statement, parameters, context, executemany) -> None:
        conn.info.setdefault(_START_TIMES_KEY, []).append(time.perf_counter())

    def after_cursor_execute(self, conn: Connection, cursor, statement, parameters, context, executemany) -> None:
        started = conn.info.get(_START_TIMES_KEY)
        if not started:
            return
        duration_ms = (time.perf_counter() - started.pop()) * 1000

        try:
            logging_context = self.context_provider()
            if logging_context is None:
                return

            log_object = self.build_query_log(
                statement,
                None if executemany else parameters,
                duration_ms,
                connection=conn.engine.name,
                transaction_id=self._transaction_id(conn),
            )
            if log_object is None:
                return

            if log_object.query_type in _WRITE_TYPES:
                self._park(conn, PendingQuery(log_object, logging_context, time.monotonic()))
            else:
                logging_context.log.orm(log_object)
        except Exception as e:
            # A logging failure must never fail the query.
            logger.warning("orm_query_log_failed", error=str(e))

    def transaction_ended(self, conn: Connection) -> None:
        """Log write statements no mapper event claimed."""
        try:
            self._release(conn.info.pop(_PENDING_KEY, None) or [])
        except Exception as e:
            logger.warning("orm_query_log_failed", error=str(e))

    def after_insert(self, mapper: Mapper, connection: Connection, target) -> None:
        state = inspect(target)
        self.log_model_event(mapper, connection, state, "INSERT", None, model_values(state))

    def after_update(self, mapper: Mapper, connection: Connection, target) -> None:
        state = inspect(target)
        self.log_model_event(mapper, connection, state, "UPDATE", model_values(state, previous=True), model_values(state))

    def after_delete(self, mapper: Mapper, connection: Connection, target) -> None:
        state = inspect(target)
        self.log_model_event(mapper, connection, state, "DELETE", model_values(state), None)

    def log_model_event(
        self,
        mapper: Mapper,
        connection: Connection,
        state,
        query_type: str,
        previous_value: Optional[Dict[str, Any]],
        after_value: Optional[Dict[str, Any]],
    ) -> Optional[OrmLogObject]:
        """
        Log one model change, merged with the statement that made it when
        that statement is still pending on the connection.

        Returns:
            The deferred log object, or None when nothing was logged
        """
        if not self.settings.orm.enabled:
            return None

        model = mapper.class_.__name__
        try:
            table = mapper.local_table.name
            model_id = model_identity(mapper, state)
            changes = {
                "message": next(message for _, kind, message in _MODEL_EVENTS if kind == query_type),
                "model": model,
                "model_id": model_id,
                "action": query_action(query_type),
                "previous_value": previous_value,
                "after_value": after_value,
            }

            pending = self._claim(connection, table.lower(), query_type, model_id)
            if pending is not None:
                log_object = pending.log_object.model_copy(update=changes)
                logging_context = pending.context
            else:
                logging_context = self.context_provider()
                if logging_context is None:
                    return None
                log_object = OrmLogObject(
                    query_type=query_type,
                    connection=connection.engine.name,
                    table=table,
                    transaction_id=self._transaction_id(connection),
                    **changes,
                )

            logging_context.log.orm(log_object)
            return log_object
        except Exception as e:
            logger.warning("orm_model_log_failed", model=model, error=str(e))
            return None

    def _park(self, conn: Connection, pending: PendingQuery) -> None:
        queue = conn.info.setdefault(_PENDING_KEY, [])
        expired = [entry for entry in queue if pending.parked_at - entry.parked_at > MAX_PENDING_AGE]
        if expired:
            queue[:] = [entry for entry in queue if pending.parked_at - entry.parked_at <= MAX_PENDING_AGE]
            self._release(expired)
        queue.append(pending)

    def _release(self, entries: Sequence[PendingQuery]) -> None:
        for entry in entries:
            entry.context.log.orm(entry.log_object)

    def _claim(self, conn: Connection, table: str, query_type: str, model_id: Optional[str]) -> Optional[PendingQuery]:
        queue = conn.info.get(_PENDING_KEY)
        if not queue:
            return None

        candidates = [
            index for index, entry in enumerate(queue)
            if entry.log_object.table == table and entry.log_object.query_type == query_type
        ]

        # Exact id match first; inserts only know their id after the statement ran.
        if model_id is not None and query_type != "INSERT":
            for index in reversed(candidates):
                if queue[index].log_object.model_id == model_id:
                    return queue.pop(index)

        for index in reversed(candidates):
            candidate_id = queue[index].log_object.model_id
            if query_type == "INSERT" or model_id is None or candidate_id is None or candidate_id == model_id:
                return queue.pop(index)
        return None

    def _transaction_id(self, conn: Connection) -> Optional[str]:
        transaction = conn.get_transaction()
        if transaction is None:
            conn.info.pop(_TRANSACTION_KEY, None)
            return None

        current = conn.info.get(_TRANSACTION_KEY)
        if current is None or current[0] is not transaction:
            current = (transaction, f"txn-{uuid.uuid4()}")
            conn.info[_TRANSACTION_KEY] = current
        return current[1]

    def _model_for(self, table: Optional[str]) -> Optional[str]:
        if table is None or self.registry is None:
            return None
        for mapper in self.registry.mappers:
            local_table = getattr(mapper, "local_table", None)
            if local_table is not None and getattr(local_table, "name", "").lower() == table:
                return mapper.class_.__name__
        return None

    def should_ignore(self, sql: str) -> bool:
        lowered = sql.lower()
        return any(pattern.lower() in lowered for pattern in self.settings.orm.ignore_patterns)

    def build_query_log(
        self,
        sql: str,
        parameters: Any,
        duration_ms: float,
        connection: Optional[str] = None,
        transaction_id: Optional[str] = None,
    ) -> Optional[OrmLogObject]:
        orm = self.settings.orm
        if not orm.enabled or self.should_ignore(sql):
            return None

        query_type = extract_query_type(sql)
        if query_type == "SELECT" and not orm.log_read_operations:
            return None

        table = extract_table(sql)
        duration = int(round(duration_ms))
        is_slow = duration >= orm.slow_query_threshold_ms

        return OrmLogObject(
            message="database_query",
            level="warning" if is_slow else "info",
            model=self._model_for(table),
            model_id=extract_model_id(sql, query_type, parameters),
            action=query_action(query_type),
            query=sql,
            query_type=query_type,
            is_slow_query=is_slow,
            duration_ms=duration,
            bindings=format_bindings(parameters, self.settings.limits.max_bindings_size),
            connection=connection,
            table=table,
            transaction_id=transaction_id,
        )

    def log_query(
        self,
        sql: str,
        parameters: Any,
        duration_ms: float,
        connection: Optional[str] = None,
        transaction_id: Optional[str] = None,
    ) -> Optional[OrmLogObject]:
        """
        Log one executed statement right away.

        Returns:
            The deferred log object, or None when the query was skipped
        """
        context = self.context_provider()
        if context is None:
            return None

        log_object = self.build_query_log(sql, parameters, duration_ms, connection=connection, transaction_id=transaction_id)
        if log_object is not None:
            context.log.orm(log_object)
        return log_object
