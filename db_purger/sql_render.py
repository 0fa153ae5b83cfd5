import logging

import psycopg2
from psycopg2.extensions import cursor as BaseCursor

from .utils import _normalize_casts, _shorten


def _render_sql_with_params(cur, query, vars) -> str:
    """
    Render SQL + params into a final string:
    - For any psycopg2.sql object (SQL/Composed/Identifier), use as_string.
    - Bind params via mogrify; on failure, fall back to raw SQL text.
    """
    try:
        qtxt = query.as_string(cur.connection) if hasattr(query, "as_string") else str(query)
    except Exception:
        qtxt = str(query)
    final = qtxt
    if vars is not None:
        try:
            final = cur.mogrify(qtxt, vars).decode()
        except Exception:
            final = qtxt
    return _normalize_casts(final)


class ErrorLoggingCursorParam(BaseCursor):
    """
    Cursor that logs the full SQL (with params bound) only when psycopg2.Error occurs.
    """

    def execute(self, query, vars=None):
        try:
            return super().execute(query, vars)
        except psycopg2.Error:
            logging.error(f"[SQL-ERROR] {_shorten(_render_sql_with_params(self, query, vars))}")
            raise
