"""
Ready-to-execute SQL command templates.

A template couples dialect-native SQL text with the ordered list of
parameter names the caller must bind. Templates are built once by the pure
builders in this package and executed many times through SQLAlchemy.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from sqlalchemy import bindparam, text
from sqlalchemy.types import TypeEngine

from sqlpersist.dialects import SqlDialect

if TYPE_CHECKING:
    from sqlalchemy.engine import Connection, CursorResult
    from sqlalchemy.sql.elements import TextClause

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CommandTemplate:
    """
    SQL text plus the parameters it expects.

    Attributes:
        text: SQL using the dialect's own parameter markers (``@Name`` / ``:Name``)
        parameters: Parameter names in the order the caller binds them
        dialect: Dialect the text was generated for
        types: Optional SQLAlchemy bind types, keyed by parameter name
    """

    text: str
    parameters: tuple[str, ...]
    dialect: SqlDialect
    types: Mapping[str, TypeEngine[Any]] = field(default_factory=dict)

    def bind(self, **values: Any) -> dict[str, Any]:
        """
        Order and validate parameter values.

        Raises:
            KeyError: If a declared parameter has no value
            TypeError: If a value is supplied for an undeclared parameter
        """
        unknown = set(values) - set(self.parameters)
        if unknown:
            raise TypeError(f"Unexpected parameters: {', '.join(sorted(unknown))}")
        missing = [name for name in self.parameters if name not in values]
        if missing:
            raise KeyError(f"Missing parameters: {', '.join(missing)}")
        return {name: values[name] for name in self.parameters}

    def to_clause(self) -> TextClause:
        """
        Convert the template into a SQLAlchemy ``TextClause``.

        Dialect markers of the declared parameters are rewritten to
        SQLAlchemy's ``:name`` bind syntax; SQLAlchemy then renders them in
        the DBAPI driver's paramstyle.
        """
        sql = self.text
        # Longest first so "type1" never eats the prefix of "type10"
        for name in sorted(self.parameters, key=len, reverse=True):
            marker = re.escape(self.dialect.parameter(name))
            sql = re.sub(marker + r"(?!\w)", f":{name}", sql)
        clause = text(sql)
        typed = [bindparam(name, type_=type_) for name, type_ in self.types.items()]
        if typed:
            clause = clause.bindparams(*typed)
        return clause

    def execute(self, connection: Connection, **values: Any) -> CursorResult[Any]:
        """Bind ``values`` and execute the command on ``connection``."""
        params = self.bind(**values)
        logger.debug(f"Executing {self.dialect.name} command with parameters {list(params)}")
        return connection.execute(self.to_clause(), params)
