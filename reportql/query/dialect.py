"""Identifier quoting and literal rendering for the active SQL dialect."""

from typing import Optional

from sqlalchemy.dialects import registry


class SqlDialect:
    """
    Thin wrapper over a SQLAlchemy dialect's identifier preparer.

    One dialect is active per deployment; every identifier the compiler emits
    goes through ``quote``.
    """

    def __init__(self, name: str = "postgresql"):
        self.name = name
        self._dialect = registry.load(name)()
        self._preparer = self._dialect.identifier_preparer

    def quote(self, identifier: str) -> str:
        """Always-quoted identifier with embedded quote characters escaped."""
        return self._preparer.quote_identifier(identifier)

    def table(self, table_name: str, schema: Optional[str] = None) -> str:
        if schema:
            return f"{self.quote(schema)}.{self.quote(table_name)}"
        return self.quote(table_name)

    def column(self, alias: str, column_name: str) -> str:
        return f"{alias}.{self.quote(column_name)}"

    @staticmethod
    def string_literal(value: str) -> str:
        return "'" + value.replace("'", "''") + "'"

    def __repr__(self) -> str:
        return f"SqlDialect({self.name!r})"
