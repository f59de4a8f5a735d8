"""
SQL dialects supported by sqlpersist.

Each dialect is an immutable value describing how one SQL engine spells the
handful of idioms the command and script builders need: identifier quoting,
parameter markers, boolean literals, column types, upserts, insert-if-absent,
locking reads, batched deletes and idempotent DDL. Dialects also apply
session-level command timeouts to raw DBAPI connections.

The set of dialects is closed: MsSqlServer, MySql, Oracle and PostgreSql.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, ClassVar

from sqlpersist.exceptions import ConfigurationError

if TYPE_CHECKING:
    from sqlalchemy.engine import Engine
    from sqlalchemy.exc import IntegrityError


@dataclass(frozen=True)
class ColumnDefinition:
    """Column definition used by the DDL builders."""

    name: str
    type: str
    nullable: bool = False
    default: str | None = None


@dataclass(frozen=True)
class IndexDefinition:
    """Index definition used by the DDL builders. ``where`` is ignored where unsupported."""

    name: str
    columns: tuple[str, ...]
    unique: bool = False
    where: str | None = None


@dataclass(frozen=True)
class SqlDialect(ABC):
    """
    Base class for SQL dialects.

    Subclasses only emit strings; they never touch a connection.
    """

    name: ClassVar[str]
    engine_names: ClassVar[tuple[str, ...]]
    max_identifier_length: ClassVar[int]
    default_schema: ClassVar[str | None] = None
    json_type: ClassVar[str]
    boolean_type: ClassVar[str]
    datetime_type: ClassVar[str]
    integer_type: ClassVar[str] = "int"

    # ------------------------------------------------------------------
    # Identifiers, markers and literals
    # ------------------------------------------------------------------

    @abstractmethod
    def quote(self, identifier: str) -> str:
        """Quote a single identifier."""
        ...

    def parameter(self, name: str) -> str:
        """Return the bind marker for a named parameter."""
        return f"@{name}"

    def boolean(self, value: bool) -> str:
        """Return the SQL literal for a boolean value."""
        return "1" if value else "0"

    @abstractmethod
    def string_type(self, length: int) -> str: ...

    def abbreviate(self, logical_name: str, abbreviation: str) -> str:
        """Pick the logical table name, or its abbreviation where identifiers are short."""
        return logical_name

    def table_name(self, table_prefix: str, logical_name: str, schema: str | None = None) -> str:
        """
        Build a fully quoted table name.

        Args:
            table_prefix: Prefix applied to every table (usually the endpoint name)
            logical_name: Table name without prefix
            schema: Schema name; falls back to the dialect default, omitted when None

        Returns:
            ``quote(schema).quote(prefix + logical_name)`` or just the quoted table
        """
        schema = schema if schema is not None else self.default_schema
        table = self.quote(f"{table_prefix}{logical_name}")
        if schema:
            return f"{self.quote(schema)}.{table}"
        return table

    def columns(self, names: Sequence[str]) -> str:
        return ", ".join(self.quote(name) for name in names)

    def parameters(self, names: Sequence[str]) -> str:
        return ", ".join(self.parameter(name) for name in names)

    def assignments(self, names: Sequence[str]) -> str:
        return ", ".join(f"{self.quote(name)} = {self.parameter(name)}" for name in names)

    def predicate(self, names: Sequence[str], prefix: str = "") -> str:
        return " and ".join(
            f"{prefix}{self.quote(name)} = {self.parameter(name)}" for name in names
        )

    # ------------------------------------------------------------------
    # DML idioms
    # ------------------------------------------------------------------

    @abstractmethod
    def upsert(
        self, table: str, key_columns: Sequence[str], value_columns: Sequence[str]
    ) -> str:
        """
        Insert a row or, when the key already exists, overwrite its value columns.

        Parameters are named after the columns.
        """
        ...

    @abstractmethod
    def insert_if_absent(self, table: str, key_column: str, columns: Sequence[str]) -> str:
        """
        Insert a row unless its key already exists.

        A duplicate key affects zero rows instead of raising.
        """
        ...

    def is_duplicate_key(self, error: IntegrityError) -> bool:
        """
        Whether ``error`` is a concurrent insert_if_absent losing on the key.

        Only dialects whose insert_if_absent can raise instead of affecting
        zero rows recognize the error; the statement's transaction stays usable.
        """
        return False

    def lock_for_update(self, table: str, columns: Sequence[str], key_column: str) -> str:
        """Read a row while taking an update lock held until the transaction ends."""
        return (
            f"select {self.columns(columns)}\n"
            f"from {table}\n"
            f"where {self.predicate([key_column])}\n"
            f"for update"
        )

    @abstractmethod
    def delete_batch(self, table: str, key_column: str, where: str) -> str:
        """Delete at most ``@BatchSize`` rows matching ``where``."""
        ...

    # ------------------------------------------------------------------
    # Session settings
    # ------------------------------------------------------------------

    @abstractmethod
    def apply_command_timeout(self, dbapi_connection: Any, seconds: int) -> None:
        """Limit how long each statement on a new DBAPI connection may run."""
        ...

    def _set_session(self, dbapi_connection: Any, *statements: str) -> None:
        cursor = dbapi_connection.cursor()
        try:
            for statement in statements:
                cursor.execute(statement)
        finally:
            cursor.close()

    # ------------------------------------------------------------------
    # DDL idioms
    # ------------------------------------------------------------------

    def column_definition(self, column: ColumnDefinition) -> str:
        parts = [self.quote(column.name), column.type]
        if column.default is not None:
            parts.append(f"default {column.default}")
        parts.append("null" if column.nullable else "not null")
        return " ".join(parts)

    def table_body(
        self,
        columns: Sequence[ColumnDefinition],
        primary_key: Sequence[str],
        extra: Sequence[str] = (),
    ) -> str:
        lines = [self.column_definition(column) for column in columns]
        lines.append(f"primary key ({self.columns(primary_key)})")
        lines.extend(extra)
        return "(\n    " + ",\n    ".join(lines) + "\n)"

    @abstractmethod
    def create_table(
        self,
        table: str,
        columns: Sequence[ColumnDefinition],
        primary_key: Sequence[str],
        indexes: Sequence[IndexDefinition] = (),
    ) -> list[str]:
        """Return idempotent statements creating the table and its indexes."""
        ...

    @abstractmethod
    def drop_table(self, table: str) -> list[str]:
        """Return idempotent statements dropping the table."""
        ...


@dataclass(frozen=True)
class MsSqlServer(SqlDialect):
    """Microsoft SQL Server."""

    name: ClassVar[str] = "MsSqlServer"
    engine_names: ClassVar[tuple[str, ...]] = ("mssql",)
    max_identifier_length: ClassVar[int] = 128
    default_schema: ClassVar[str | None] = "dbo"
    json_type: ClassVar[str] = "nvarchar(max)"
    boolean_type: ClassVar[str] = "bit"
    datetime_type: ClassVar[str] = "datetime2"

    def quote(self, identifier: str) -> str:
        return "[" + identifier.replace("]", "]]") + "]"

    def string_type(self, length: int) -> str:
        return f"nvarchar({length})"

    def _source(self, columns: Sequence[str]) -> str:
        return ", ".join(f"{self.parameter(name)} as {self.quote(name)}" for name in columns)

    def upsert(
        self, table: str, key_columns: Sequence[str], value_columns: Sequence[str]
    ) -> str:
        # holdlock keeps the range locked between the match and the insert
        columns = [*key_columns, *value_columns]
        on = " and\n   ".join(
            f"target.{self.quote(name)} = source.{self.quote(name)}" for name in key_columns
        )
        return (
            f"merge {table} with (holdlock) as target\n"
            f"using (select {self._source(key_columns)}) as source\n"
            f"on {on}\n"
            f"when matched then\n"
            f"    update set {self.assignments(value_columns)}\n"
            f"when not matched then\n"
            f"    insert ({self.columns(columns)})\n"
            f"    values ({self.parameters(columns)});"
        )

    def insert_if_absent(self, table: str, key_column: str, columns: Sequence[str]) -> str:
        key = self.quote(key_column)
        return (
            f"merge {table} with (holdlock) as target\n"
            f"using (select {self._source([key_column])}) as source\n"
            f"on target.{key} = source.{key}\n"
            f"when not matched then\n"
            f"    insert ({self.columns(columns)})\n"
            f"    values ({self.parameters(columns)});"
        )

    def lock_for_update(self, table: str, columns: Sequence[str], key_column: str) -> str:
        return (
            f"select {self.columns(columns)}\n"
            f"from {table} with (updlock, rowlock)\n"
            f"where {self.predicate([key_column])}"
        )

    def apply_command_timeout(self, dbapi_connection: Any, seconds: int) -> None:
        # pyodbc applies Connection.timeout to every statement it executes
        dbapi_connection.timeout = seconds

    def delete_batch(self, table: str, key_column: str, where: str) -> str:
        return f"delete top ({self.parameter('BatchSize')}) from {table}\nwhere {where}"

    def _literal(self, table: str) -> str:
        return "N'" + table.replace("'", "''") + "'"

    def create_table(
        self,
        table: str,
        columns: Sequence[ColumnDefinition],
        primary_key: Sequence[str],
        indexes: Sequence[IndexDefinition] = (),
    ) -> list[str]:
        statements = [
            f"if object_id({self._literal(table)}, 'U') is null\n"
            f"create table {table} {self.table_body(columns, primary_key)}"
        ]
        for index in indexes:
            unique = "unique " if index.unique else ""
            where = f"\nwhere {index.where}" if index.where else ""
            statements.append(
                f"if not exists (\n"
                f"    select * from sys.indexes\n"
                f"    where name = {self._literal(index.name)}\n"
                f"      and object_id = object_id({self._literal(table)})\n"
                f")\n"
                f"create {unique}index {self.quote(index.name)}\n"
                f"on {table} ({self.columns(index.columns)}){where}"
            )
        return statements

    def drop_table(self, table: str) -> list[str]:
        return [f"if object_id({self._literal(table)}, 'U') is not null\ndrop table {table}"]


@dataclass(frozen=True)
class MySql(SqlDialect):
    """MySQL (and MariaDB)."""

    name: ClassVar[str] = "MySql"
    engine_names: ClassVar[tuple[str, ...]] = ("mysql", "mariadb")
    max_identifier_length: ClassVar[int] = 64
    json_type: ClassVar[str] = "json"
    boolean_type: ClassVar[str] = "tinyint(1)"
    datetime_type: ClassVar[str] = "datetime(6)"

    def quote(self, identifier: str) -> str:
        return "`" + identifier.replace("`", "``") + "`"

    def string_type(self, length: int) -> str:
        return f"varchar({length})"

    def upsert(
        self, table: str, key_columns: Sequence[str], value_columns: Sequence[str]
    ) -> str:
        columns = [*key_columns, *value_columns]
        return (
            f"insert into {table}\n"
            f"    ({self.columns(columns)})\n"
            f"values\n"
            f"    ({self.parameters(columns)})\n"
            f"on duplicate key update\n"
            f"    {self.assignments(value_columns)}"
        )

    def insert_if_absent(self, table: str, key_column: str, columns: Sequence[str]) -> str:
        return (
            f"insert ignore into {table}\n"
            f"    ({self.columns(columns)})\n"
            f"values\n"
            f"    ({self.parameters(columns)})"
        )

    def apply_command_timeout(self, dbapi_connection: Any, seconds: int) -> None:
        # max_execution_time only bounds selects; lock waits bound the writes
        self._set_session(
            dbapi_connection,
            f"set session max_execution_time = {seconds * 1000}",
            f"set session innodb_lock_wait_timeout = {seconds}",
        )

    def delete_batch(self, table: str, key_column: str, where: str) -> str:
        return f"delete from {table}\nwhere {where}\nlimit {self.parameter('BatchSize')}"

    def create_table(
        self,
        table: str,
        columns: Sequence[ColumnDefinition],
        primary_key: Sequence[str],
        indexes: Sequence[IndexDefinition] = (),
    ) -> list[str]:
        # MySQL has no "create index if not exists", so indexes live in the table body
        inline = [
            f"{'unique ' if index.unique else ''}index {self.quote(index.name)} "
            f"({self.columns(index.columns)})"
            for index in indexes
        ]
        return [
            f"create table if not exists {table} "
            f"{self.table_body(columns, primary_key, inline)} default charset=utf8mb4"
        ]

    def drop_table(self, table: str) -> list[str]:
        return [f"drop table if exists {table}"]


@dataclass(frozen=True)
class Oracle(SqlDialect):
    """
    Oracle Database.

    Identifiers are upper-cased before quoting so they resolve exactly like
    unquoted identifiers, and are limited to 30 characters. Parameters use
    the named ``:Name`` form everywhere.
    """

    name: ClassVar[str] = "Oracle"
    engine_names: ClassVar[tuple[str, ...]] = ("oracle",)
    max_identifier_length: ClassVar[int] = 30
    max_table_prefix_length: ClassVar[int] = 25
    json_type: ClassVar[str] = "clob"
    boolean_type: ClassVar[str] = "number(1)"
    datetime_type: ClassVar[str] = "timestamp"
    integer_type: ClassVar[str] = "number(10)"

    def quote(self, identifier: str) -> str:
        return '"' + identifier.upper().replace('"', '""') + '"'

    def parameter(self, name: str) -> str:
        return f":{name}"

    def string_type(self, length: int) -> str:
        return f"nvarchar2({length})"

    def abbreviate(self, logical_name: str, abbreviation: str) -> str:
        return abbreviation

    def upsert(
        self, table: str, key_columns: Sequence[str], value_columns: Sequence[str]
    ) -> str:
        columns = [*key_columns, *value_columns]
        return (
            f"begin\n"
            f"    insert into {table}\n"
            f"        ({self.columns(columns)})\n"
            f"    values\n"
            f"        ({self.parameters(columns)});\n"
            f"exception\n"
            f"    when DUP_VAL_ON_INDEX then\n"
            f"        update {table}\n"
            f"        set {self.assignments(value_columns)}\n"
            f"        where {self.predicate(key_columns)};\n"
            f"end;"
        )

    def insert_if_absent(self, table: str, key_column: str, columns: Sequence[str]) -> str:
        key = self.quote(key_column)
        return (
            f"merge into {table} target\n"
            f"using (select {self.parameter(key_column)} as {key} from dual) source\n"
            f"on (target.{key} = source.{key})\n"
            f"when not matched then\n"
            f"    insert ({self.columns(columns)})\n"
            f"    values ({self.parameters(columns)})"
        )

    def is_duplicate_key(self, error: IntegrityError) -> bool:
        # A MERGE that saw no committed row still fails on the unique index
        # once a concurrent insert of the same key commits
        return "ORA-00001" in str(error.orig)

    def delete_batch(self, table: str, key_column: str, where: str) -> str:
        return (
            f"delete from {table}\n"
            f"where {where}\n"
            f"  and rownum <= {self.parameter('BatchSize')}"
        )

    def apply_command_timeout(self, dbapi_connection: Any, seconds: int) -> None:
        dbapi_connection.call_timeout = seconds * 1000

    def _guarded(self, statement: str, error_code: int, name: str) -> str:
        escaped = statement.replace("'", "''")
        return (
            f"declare\n"
            f"    {name} exception;\n"
            f"    pragma exception_init({name}, {error_code});\n"
            f"begin\n"
            f"    execute immediate '{escaped}';\n"
            f"exception\n"
            f"    when {name} then null;\n"
            f"end;"
        )

    def create_table(
        self,
        table: str,
        columns: Sequence[ColumnDefinition],
        primary_key: Sequence[str],
        indexes: Sequence[IndexDefinition] = (),
    ) -> list[str]:
        statements = [
            self._guarded(
                f"create table {table} {self.table_body(columns, primary_key)}",
                -955,
                "name_in_use",
            )
        ]
        for index in indexes:
            unique = "unique " if index.unique else ""
            statements.append(
                self._guarded(
                    f"create {unique}index {self.quote(index.name)} "
                    f"on {table} ({self.columns(index.columns)})",
                    -955,
                    "name_in_use",
                )
            )
        return statements

    def drop_table(self, table: str) -> list[str]:
        return [self._guarded(f"drop table {table}", -942, "missing_table")]


@dataclass(frozen=True)
class PostgreSql(SqlDialect):
    """
    PostgreSQL.

    Saga and outbox payloads are stored as ``jsonb``; text parameters bound to
    those columns are cast by the server.
    """

    name: ClassVar[str] = "PostgreSql"
    engine_names: ClassVar[tuple[str, ...]] = ("postgresql",)
    max_identifier_length: ClassVar[int] = 63
    json_type: ClassVar[str] = "jsonb"
    boolean_type: ClassVar[str] = "boolean"
    datetime_type: ClassVar[str] = "timestamp"
    integer_type: ClassVar[str] = "integer"

    def quote(self, identifier: str) -> str:
        return '"' + identifier.replace('"', '""') + '"'

    def boolean(self, value: bool) -> str:
        return "true" if value else "false"

    def string_type(self, length: int) -> str:
        return f"character varying({length})"

    def upsert(
        self, table: str, key_columns: Sequence[str], value_columns: Sequence[str]
    ) -> str:
        columns = [*key_columns, *value_columns]
        return (
            f"insert into {table}\n"
            f"    ({self.columns(columns)})\n"
            f"values\n"
            f"    ({self.parameters(columns)})\n"
            f"on conflict ({self.columns(key_columns)}) do update\n"
            f"    set {self.assignments(value_columns)}"
        )

    def insert_if_absent(self, table: str, key_column: str, columns: Sequence[str]) -> str:
        return (
            f"insert into {table}\n"
            f"    ({self.columns(columns)})\n"
            f"values\n"
            f"    ({self.parameters(columns)})\n"
            f"on conflict ({self.quote(key_column)}) do nothing"
        )

    def apply_command_timeout(self, dbapi_connection: Any, seconds: int) -> None:
        # Outside a transaction so the setting survives the first rollback
        autocommit = dbapi_connection.autocommit
        dbapi_connection.autocommit = True
        try:
            self._set_session(dbapi_connection, f"set statement_timeout = {seconds * 1000}")
        finally:
            dbapi_connection.autocommit = autocommit

    def delete_batch(self, table: str, key_column: str, where: str) -> str:
        key = self.quote(key_column)
        return (
            f"delete from {table}\n"
            f"where {key} in (\n"
            f"    select {key} from {table}\n"
            f"    where {where}\n"
            f"    limit {self.parameter('BatchSize')}\n"
            f")"
        )

    def create_table(
        self,
        table: str,
        columns: Sequence[ColumnDefinition],
        primary_key: Sequence[str],
        indexes: Sequence[IndexDefinition] = (),
    ) -> list[str]:
        statements = [f"create table if not exists {table} {self.table_body(columns, primary_key)}"]
        for index in indexes:
            unique = "unique " if index.unique else ""
            where = f"\nwhere {index.where}" if index.where else ""
            statements.append(
                f"create {unique}index if not exists {self.quote(index.name)}\n"
                f"on {table} ({self.columns(index.columns)}){where}"
            )
        return statements

    def drop_table(self, table: str) -> list[str]:
        return [f"drop table if exists {table}"]


DIALECTS: tuple[type[SqlDialect], ...] = (MsSqlServer, MySql, Oracle, PostgreSql)


def dialect_from_name(name: str) -> SqlDialect:
    """
    Resolve a dialect from its name.

    Accepts the dialect names (``"PostgreSql"``) case-insensitively as well as
    SQLAlchemy engine names (``"postgresql"``, ``"mssql"``, ...).

    Raises:
        ConfigurationError: If the name matches no supported dialect
    """
    key = name.strip().lower()
    for dialect_type in DIALECTS:
        if key == dialect_type.name.lower() or key in dialect_type.engine_names:
            return dialect_type()
    supported = ", ".join(dialect_type.name for dialect_type in DIALECTS)
    raise ConfigurationError(f"Unknown SQL dialect: {name!r}. Supported dialects: {supported}")


def detect_dialect(engine: Engine) -> SqlDialect:
    """Resolve the dialect matching a SQLAlchemy engine."""
    return dialect_from_name(engine.dialect.name)


def build_in_clause(
    dialect: SqlDialect, count: int, parameter_prefix: str = "type"
) -> tuple[str, list[str]]:
    """
    Build the parenthesized value list of an ``in`` predicate.

    Args:
        dialect: Dialect providing the parameter markers
        count: Number of values the caller will bind
        parameter_prefix: Prefix for generated parameter names

    Returns:
        Tuple of (fragment, parameter names). ``count=0`` yields ``(null)``,
        which matches no rows, and no parameters.

    Example:
        >>> build_in_clause(PostgreSql(), 2)
        ('(@type0, @type1)', ['type0', 'type1'])
    """
    if count < 0:
        raise ValueError(f"count must be >= 0, got {count}")
    if count == 0:
        return "(null)", []
    names = [f"{parameter_prefix}{i}" for i in range(count)]
    return f"({dialect.parameters(names)})", names

