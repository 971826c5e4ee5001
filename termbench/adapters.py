"""Database adapters for different database types."""

import re
from abc import ABC, abstractmethod
from decimal import Decimal

from .engine.models import RelationMetadata

_SIMPLE_LOWER = re.compile(r"^[a-z_][a-z0-9_]*$")
_SIMPLE_UPPER = re.compile(r"^[A-Z_][A-Z0-9_]*$")
_SIMPLE_ANY = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def strip_statement(sql):
    """Strip whitespace and trailing semicolons from a statement."""
    sql_stripped = sql.strip()
    while sql_stripped.endswith(';'):
        sql_stripped = sql_stripped[:-1].strip()
    return sql_stripped


def has_limit_clause(sql):
    """Check if SQL already has a row limit clause."""
    sql_upper = sql.upper()
    return any(kw in sql_upper for kw in
               ["FETCH FIRST", "FETCH NEXT", "LIMIT ", "OFFSET "])


def returns_rows(sql):
    """Check if a statement is a query that can be paginated."""
    words = strip_statement(sql).split(None, 1)
    return bool(words) and words[0].upper() in ("SELECT", "WITH", "VALUES")


class DBAdapter(ABC):
    """Base class for database adapters."""

    db_type = "base"
    display_name = "Base"
    default_port = None
    requires_database = False
    required_module = None  # Module name to import for this adapter
    install_hint = None  # pip install hint for missing dependency
    placeholder = "?"
    identifier_quote = '"'
    # Case the server folds unquoted identifiers to (None: case-insensitive)
    identifier_fold = "lower"

    @classmethod
    def is_available(cls):
        """Check if the required module for this adapter is installed."""
        if cls.required_module is None:
            return True
        try:
            __import__(cls.required_module)
            return True
        except ImportError:
            return False

    @abstractmethod
    def connect(self, host, user, password, port=None, database=None):
        """Connect to the database and return a connection object."""
        pass

    @abstractmethod
    def get_relation_metadata(self, conn, schema, table):
        """Return RelationMetadata (columns, primary key, unique constraints)."""
        pass

    def add_pagination(self, sql, limit, offset=0):
        """Add pagination to a SQL statement. Default uses LIMIT/OFFSET."""
        sql_stripped = strip_statement(sql)
        if offset > 0:
            return f"{sql_stripped} LIMIT {limit} OFFSET {offset}"
        return f"{sql_stripped} LIMIT {limit}"

    def get_page_sql(self, sql, limit, offset=0):
        """Re-issue a query for rows [offset, offset + limit).

        Statements that carry their own limit clause are wrapped as a
        subquery so the page is taken from their result.
        """
        sql_stripped = strip_statement(sql)
        if has_limit_clause(sql_stripped):
            sql_stripped = f"SELECT * FROM ({sql_stripped}) AS page_query"
        return self.add_pagination(sql_stripped, limit, offset)

    def quote_identifier(self, name):
        """Quote an identifier unless the server would read it unchanged."""
        cleaned = name.strip(self.identifier_quote)
        if self.identifier_fold == "lower":
            simple = _SIMPLE_LOWER.match(cleaned)
        elif self.identifier_fold == "upper":
            simple = _SIMPLE_UPPER.match(cleaned)
        else:
            simple = _SIMPLE_ANY.match(cleaned)
        if simple:
            return cleaned
        q = self.identifier_quote
        return f"{q}{cleaned.replace(q, q + q)}{q}"

    def qualify(self, schema, table):
        if schema:
            return f"{self.quote_identifier(schema)}.{self.quote_identifier(table)}"
        return self.quote_identifier(table)

    def normalize_identifier(self, name):
        """Name as stored in the catalog for an unquoted identifier."""
        if name.startswith(self.identifier_quote):
            return name.strip(self.identifier_quote)
        if self.identifier_fold == "lower":
            return name.lower()
        if self.identifier_fold == "upper":
            return name.upper()
        return name

    def describe_type(self, type_code):
        """Declared type name for a cursor.description type_code."""
        if isinstance(type_code, type):
            if issubclass(type_code, bool):
                return "boolean"
            if issubclass(type_code, int):
                return "integer"
            if issubclass(type_code, (float, Decimal)):
                return "numeric"
            if issubclass(type_code, (bytes, bytearray)):
                return "binary"
        if isinstance(type_code, str):
            return type_code.lower()
        return ""

    def cancel(self, conn, cursor=None, conn_info=None):
        """Ask the server to abandon the statement running on conn.

        Returns False if the adapter cannot cancel.
        """
        return False

    def is_disconnect(self, exc, conn):
        """Check if a driver error means the connection is gone."""
        return type(exc).__name__ == "InterfaceError"

    def is_cancellation(self, exc):
        """Check if a driver error is the acknowledgement of a cancel."""
        return False


class SQLiteAdapter(DBAdapter):
    """Adapter for SQLite database files."""

    db_type = "sqlite"
    display_name = "SQLite"
    requires_database = True
    identifier_fold = None

    def connect(self, host, user, password, port=None, database=None):
        import sqlite3
        # The session runs every call on one worker thread; interrupt()
        # is issued from another.
        return sqlite3.connect(database or host or ":memory:", check_same_thread=False)

    def get_relation_metadata(self, conn, schema, table):
        prefix = f"{self.quote_identifier(schema)}." if schema else ""
        quoted = self.quote_identifier(table)
        cursor = conn.cursor()
        try:
            cursor.execute(f"PRAGMA {prefix}table_info({quoted})")
            info = cursor.fetchall()
            columns = {}
            pk = []
            for _cid, name, col_type, notnull, _default, pk_pos in info:
                columns[name] = (col_type or "", not notnull and not pk_pos)
                if pk_pos:
                    pk.append((pk_pos, name))

            unique = []
            cursor.execute(f"PRAGMA {prefix}index_list({quoted})")
            for index in cursor.fetchall():
                # (seq, name, unique, origin, partial)
                name, is_unique, origin = index[1], index[2], index[3]
                partial = index[4] if len(index) > 4 else 0
                if not is_unique or origin == "pk" or partial:
                    continue
                cursor.execute(f"PRAGMA {prefix}index_info({self.quote_identifier(name)})")
                cols = tuple(r[2] for r in sorted(cursor.fetchall()))
                if cols and all(c is not None for c in cols):
                    unique.append(cols)
        finally:
            cursor.close()

        return RelationMetadata(
            schema=schema,
            table=table,
            columns=columns,
            primary_key=tuple(name for _pos, name in sorted(pk)),
            unique_constraints=tuple(unique),
        )

    def cancel(self, conn, cursor=None, conn_info=None):
        conn.interrupt()
        return True

    def is_disconnect(self, exc, conn):
        return (type(exc).__name__ == "ProgrammingError"
                and "closed" in str(exc).lower())

    def is_cancellation(self, exc):
        return "interrupted" in str(exc).lower()


class _InformationSchemaAdapter(DBAdapter):
    """Metadata lookup through INFORMATION_SCHEMA."""

    current_schema_sql = "current_schema()"

    def get_relation_metadata(self, conn, schema, table):
        p = self.placeholder
        if schema:
            schema_cond = f"table_schema = {p}"
            params = [schema, table]
        else:
            schema_cond = f"table_schema = {self.current_schema_sql}"
            params = [table]

        cursor = conn.cursor()
        try:
            cursor.execute(f"""
                SELECT column_name, data_type, is_nullable
                FROM information_schema.columns
                WHERE {schema_cond} AND table_name = {p}
                ORDER BY ordinal_position
            """, params)
            columns = {
                row[0]: (row[1] or "", str(row[2]).upper() == "YES")
                for row in cursor.fetchall()
            }

            cursor.execute(f"""
                SELECT tc.constraint_name, tc.constraint_type, ku.column_name
                FROM information_schema.table_constraints tc
                JOIN information_schema.key_column_usage ku
                    ON tc.constraint_name = ku.constraint_name
                    AND tc.table_schema = ku.table_schema
                    AND tc.table_name = ku.table_name
                WHERE tc.{schema_cond} AND tc.table_name = {p}
                  AND tc.constraint_type IN ('PRIMARY KEY', 'UNIQUE')
                ORDER BY tc.constraint_name, ku.ordinal_position
            """, params)
            constraints = {}
            for name, kind, column in cursor.fetchall():
                constraints.setdefault((kind, name), []).append(column)
        finally:
            cursor.close()

        pk = ()
        unique = []
        for (kind, _name), cols in constraints.items():
            if kind == "PRIMARY KEY":
                pk = tuple(cols)
            else:
                unique.append(tuple(cols))

        return RelationMetadata(schema=schema, table=table, columns=columns,
                                primary_key=pk, unique_constraints=tuple(unique))


class PostgreSQLAdapter(_InformationSchemaAdapter):
    """Adapter for PostgreSQL."""

    db_type = "postgresql"
    display_name = "PostgreSQL"
    default_port = 5432
    requires_database = True
    required_module = "psycopg2"
    install_hint = "pip install termbench[postgresql]"
    placeholder = "%s"

    # Common type OIDs reported in cursor.description
    _TYPE_OIDS = {
        16: "boolean", 17: "bytea", 20: "bigint", 21: "smallint", 23: "integer",
        25: "text", 26: "oid", 114: "json", 700: "real", 701: "double precision",
        790: "money", 1043: "character varying", 1082: "date", 1114: "timestamp",
        1184: "timestamptz", 1700: "numeric", 2950: "uuid", 3802: "jsonb",
    }

    def connect(self, host, user, password, port=None, database=None):
        import psycopg2
        return psycopg2.connect(
            host=host,
            user=user,
            password=password,
            dbname=database or 'postgres',
            port=port or 5432
        )

    def describe_type(self, type_code):
        if isinstance(type_code, int):
            return self._TYPE_OIDS.get(type_code, "")
        return super().describe_type(type_code)

    def cancel(self, conn, cursor=None, conn_info=None):
        conn.cancel()
        return True

    def is_disconnect(self, exc, conn):
        return bool(getattr(conn, "closed", 0)) or super().is_disconnect(exc, conn)

    def is_cancellation(self, exc):
        return getattr(exc, "pgcode", None) == "57014"


class MySQLAdapter(_InformationSchemaAdapter):
    """Adapter for MySQL."""

    db_type = "mysql"
    display_name = "MySQL"
    default_port = 3306
    requires_database = True
    required_module = "mysql.connector"
    install_hint = "pip install termbench[mysql]"
    placeholder = "%s"
    identifier_quote = "`"
    identifier_fold = None
    current_schema_sql = "DATABASE()"

    def connect(self, host, user, password, port=None, database=None):
        import mysql.connector
        config = {
            'host': host,
            'user': user,
            'password': password,
            'database': database or '',
        }
        if port:
            config['port'] = int(port)
        return mysql.connector.connect(**config)

    def describe_type(self, type_code):
        if isinstance(type_code, int):
            try:
                from mysql.connector import FieldType
                return FieldType.get_info(type_code).lower()
            except (ImportError, AttributeError, KeyError):
                return ""
        return super().describe_type(type_code)

    def cancel(self, conn, cursor=None, conn_info=None):
        # KILL QUERY has to come from a second connection.
        if not conn_info:
            return False
        side = connect_from_info(self, conn_info)
        try:
            side_cursor = side.cursor()
            side_cursor.execute(f"KILL QUERY {int(conn.connection_id)}")
            side_cursor.close()
        finally:
            side.close()
        return True

    def is_disconnect(self, exc, conn):
        try:
            return not conn.is_connected()
        except Exception:
            return super().is_disconnect(exc, conn)

    def is_cancellation(self, exc):
        return getattr(exc, "errno", None) == 1317


class IBMiAdapter(DBAdapter):
    """Adapter for IBM i (AS/400) via ODBC."""

    db_type = "ibmi"
    display_name = "IBM i"
    default_port = None  # ODBC handles this
    requires_database = False
    required_module = "pyodbc"
    install_hint = "pip install termbench[ibmi]"
    identifier_fold = "upper"

    def connect(self, host, user, password, port=None, database=None):
        import pyodbc
        conn_str = (
            f"DRIVER={{IBM i Access ODBC Driver}};"
            f"SYSTEM={host};"
            f"UID={user};"
            f"PWD={password};"
        )
        return pyodbc.connect(conn_str)

    def add_pagination(self, sql, limit, offset=0):
        """IBM i uses OFFSET/FETCH syntax."""
        sql_stripped = strip_statement(sql)
        if offset > 0:
            return f"{sql_stripped} OFFSET {offset} ROWS FETCH FIRST {limit} ROWS ONLY"
        return f"{sql_stripped} FETCH FIRST {limit} ROWS ONLY"

    def get_relation_metadata(self, conn, schema, table):
        schema_cond = "TABLE_SCHEMA = ?" if schema else "TABLE_SCHEMA = CURRENT SCHEMA"
        params = [schema, table] if schema else [table]
        cursor = conn.cursor()
        try:
            cursor.execute(f"""
                SELECT COLUMN_NAME, DATA_TYPE, IS_NULLABLE
                FROM QSYS2.SYSCOLUMNS
                WHERE {schema_cond} AND TABLE_NAME = ?
                ORDER BY ORDINAL_POSITION
            """, params)
            columns = {
                row[0].strip(): (row[1].strip(), str(row[2]).strip().upper() == "Y")
                for row in cursor.fetchall()
            }
            cursor.execute(f"""
                SELECT C.CONSTRAINT_NAME, C.CONSTRAINT_TYPE, K.COLUMN_NAME
                FROM QSYS2.SYSCST C
                JOIN QSYS2.SYSKEYCST K
                    ON C.CONSTRAINT_SCHEMA = K.CONSTRAINT_SCHEMA
                    AND C.CONSTRAINT_NAME = K.CONSTRAINT_NAME
                WHERE C.{schema_cond} AND C.TABLE_NAME = ?
                  AND C.CONSTRAINT_TYPE IN ('PRIMARY KEY', 'UNIQUE')
                ORDER BY C.CONSTRAINT_NAME, K.ORDINAL_POSITION
            """, params)
            constraints = {}
            for name, kind, column in cursor.fetchall():
                constraints.setdefault((kind.strip(), name), []).append(column.strip())
        finally:
            cursor.close()

        pk = ()
        unique = []
        for (kind, _name), cols in constraints.items():
            if kind == "PRIMARY KEY":
                pk = tuple(cols)
            else:
                unique.append(tuple(cols))
        return RelationMetadata(schema=schema, table=table, columns=columns,
                                primary_key=pk, unique_constraints=tuple(unique))

    def cancel(self, conn, cursor=None, conn_info=None):
        if cursor is None:
            return False
        cursor.cancel()
        return True

    def is_disconnect(self, exc, conn):
        state = str(exc.args[0]) if getattr(exc, "args", None) else ""
        return state.startswith("08") or super().is_disconnect(exc, conn)

    def is_cancellation(self, exc):
        state = str(exc.args[0]) if getattr(exc, "args", None) else ""
        return state == "HY008"


# Registry of available adapters
ADAPTERS = {
    'sqlite': SQLiteAdapter,
    'ibmi': IBMiAdapter,
    'mysql': MySQLAdapter,
    'postgresql': PostgreSQLAdapter,
}


def get_adapter(db_type):
    """Get an adapter instance by type."""
    adapter_class = ADAPTERS.get(db_type)
    if adapter_class:
        return adapter_class()
    raise ValueError(f"Unknown database type: {db_type}")


def connect_from_info(adapter, conn_info):
    """Open a connection from a saved connection profile dict."""
    return adapter.connect(
        conn_info.get("host"),
        conn_info.get("user"),
        conn_info.get("password"),
        port=conn_info.get("port"),
        database=conn_info.get("database"),
    )


def get_adapter_choices(include_unavailable=False):
    """Get list of (db_type, display_name).

    Args:
        include_unavailable: If True, include all adapters. If False, only include
                           adapters whose required modules are installed.
    """
    if include_unavailable:
        return [(key, cls.display_name) for key, cls in ADAPTERS.items()]
    return [(key, cls.display_name) for key, cls in ADAPTERS.items() if cls.is_available()]


def get_unavailable_adapters():
    """Get list of adapters that are not available due to missing dependencies.

    Returns list of (db_type, display_name, install_hint).
    """
    return [
        (key, cls.display_name, cls.install_hint)
        for key, cls in ADAPTERS.items()
        if not cls.is_available()
    ]
