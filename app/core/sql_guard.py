"""SQL validation and security guards"""
import re
from dataclasses import dataclass
from typing import Optional

import sqlglot
from sqlglot.errors import ParseError, TokenError


ONLY_SELECT_ERROR = "Only SELECT queries are allowed."
FORBIDDEN_ERROR = "Query contains forbidden operations. Only read-only queries are allowed."
MULTI_STATEMENT_ERROR = "Multiple statements are not allowed."

LINE_COMMENT_RE = re.compile(r"--.*$", re.MULTILINE)
BLOCK_COMMENT_RE = re.compile(r"/\*.*?\*/", re.DOTALL)
READ_ONLY_LEAD_RE = re.compile(r"^\s*(SELECT|WITH)\b", re.IGNORECASE)

# Forbidden SQL keywords (DML/DDL/privilege). pg_ catches catalog functions
# like pg_sleep or pg_read_file.
FORBIDDEN_RE = re.compile(
    r"\b(INSERT|UPDATE|DELETE|DROP|ALTER|CREATE|TRUNCATE|GRANT|REVOKE|EXECUTE|EXEC|COPY|pg_\w*|SET\s+ROLE)\b",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class ValidationOutcome:
    valid: bool
    error: Optional[str] = None


def strip_comments(sql: str) -> str:
    """Remove ``--`` and ``/* */`` comments so they cannot hide keywords."""
    return BLOCK_COMMENT_RE.sub("", LINE_COMMENT_RE.sub("", sql)).strip()


def _count_statements(clean_sql: str) -> Optional[int]:
    try:
        statements = sqlglot.parse(clean_sql, read="postgres")
    except (ParseError, TokenError):
        # Dialect constructs sqlglot can't read are left to the keyword layer
        return None
    return sum(1 for stmt in statements if stmt is not None)


def validate_sql(sql: str) -> ValidationOutcome:
    """Classify ``sql`` as executable-safe or rejected.

    Leading-keyword whitelist plus body blacklist; not a full parser.
    """
    clean_sql = strip_comments(sql or "")

    if not READ_ONLY_LEAD_RE.match(clean_sql):
        return ValidationOutcome(valid=False, error=ONLY_SELECT_ERROR)

    if FORBIDDEN_RE.search(clean_sql):
        return ValidationOutcome(valid=False, error=FORBIDDEN_ERROR)

    count = _count_statements(clean_sql)
    if count is not None and count > 1:
        return ValidationOutcome(valid=False, error=MULTI_STATEMENT_ERROR)

    return ValidationOutcome(valid=True)

