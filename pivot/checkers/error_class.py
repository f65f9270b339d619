"""Ordered error-class rules: first matching rule wins."""

import re
from typing import Mapping, Optional

SQL_ERROR = "SQL_ERROR"
TEMPLATE_ERROR = "TEMPLATE_ERROR"
WAF_BLOCK = "WAF_BLOCK"
RATE_LIMIT = "RATE_LIMIT"
AUTH_FAILURE = "AUTH_FAILURE"
REDIRECT = "REDIRECT"
TIMEOUT = "TIMEOUT"
CONNECTION_ERROR = "CONNECTION_ERROR"


class ErrorClassifier:
    """
    Maps (status, body) to an error class tag.

    Order:
      1) SQL error signatures
      2) template engine error signatures
      3) WAF block (403 + blocked/denied wording)
      4) 429 rate limit
      5) 5xx -> SERVER_ERROR_<code>
      6) 4xx -> CLIENT_ERROR_<code>
      7) 401/403 -> AUTH_FAILURE
      8) 3xx -> REDIRECT
    """

    def __init__(self):
        # driver and ORM error banners, not bare keywords a reflected payload could carry
        self._sql_rx = [
            # MySQL / MariaDB
            r"SQL syntax.*MySQL",
            r"You have an error in your SQL syntax",
            r"Warning.*mysql_",
            r"mysql_fetch",
            r"Unknown column.*in.*field list",
            # PostgreSQL
            r"PostgreSQL.*ERROR",
            r"syntax error at or near",
            r"pg_query",
            # MSSQL
            r"Unclosed quotation mark after the character string",
            r"Incorrect syntax near",
            r"ODBC SQL Server Driver",
            # Oracle
            r"ORA-\d{5}",
            # SQLite
            r"SQLite.*error",
            r"sqlite_",
            # ORM / generic
            r"PDOException",
            r"SQLSTATE\[\w+\]",
        ]
        self._template_rx = [
            r"TemplateSyntaxError",
            r"jinja2\.exceptions",
            r"UndefinedError",
            r"Smarty Error",
            r"Twig_Error",
            r"Twig\\Error",
            r"freemarker\.core\.",
            r"org\.apache\.velocity",
            r"Liquid error",
        ]
        self._waf_rx = [r"blocked", r"denied", r"forbidden", r"waf", r"firewall"]

        self._sql = [re.compile(p, re.I) for p in self._sql_rx]
        self._template = [re.compile(p, re.I) for p in self._template_rx]
        self._waf = [re.compile(p, re.I) for p in self._waf_rx]

    def classify(self, status: int, body: str,
                 headers: Optional[Mapping[str, str]] = None) -> Optional[str]:
        body = body or ""

        if any(rx.search(body) for rx in self._sql):
            return SQL_ERROR
        if any(rx.search(body) for rx in self._template):
            return TEMPLATE_ERROR
        if status == 403 and any(rx.search(body) for rx in self._waf):
            return WAF_BLOCK
        if status == 429:
            return RATE_LIMIT
        if status >= 500:
            return f"SERVER_ERROR_{status}"
        if status >= 400:
            return f"CLIENT_ERROR_{status}"
        # unreachable while the 4xx rule sits above it; kept for rule order
        if status in (401, 403):
            return AUTH_FAILURE
        if 300 <= status < 400:
            return REDIRECT
        return None
