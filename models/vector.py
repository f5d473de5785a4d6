"""L2 distance between two vector columns, portable across PostgreSQL and SQLite."""

from sqlalchemy import Float
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.sql.functions import FunctionElement


class l2_distance(FunctionElement):
    type = Float()
    name = "l2_distance"
    inherit_cache = True


@compiles(l2_distance)
def _compile_pgvector(element, compiler, **kw):
    # pgvector: smaller is closer
    left, right = list(element.clauses)
    return f"({compiler.process(left, **kw)} <-> {compiler.process(right, **kw)})"


@compiles(l2_distance, "sqlite")
def _compile_sqlite(element, compiler, **kw):
    # function registered by core.database.install_sqlite_functions
    return f"l2_distance({compiler.process(element.clauses, **kw)})"
