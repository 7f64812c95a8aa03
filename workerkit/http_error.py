"""Uniform error responses for the REST server."""

from __future__ import annotations

from http import HTTPStatus


class HTTPError(Exception):
    """An error carrying an HTTP status code."""

    def __init__(self, code, message=""):
        super().__init__(code, message)
        self.code = code
        self.message = message

    def __str__(self):
        return f"code={self.code}, message={self.message}"


def custom_http_error_handler(error, method, path):
    """Map an error raised while serving ``method path`` to ``(status_code, message)``."""
    code = HTTPStatus.INTERNAL_SERVER_ERROR.value
    message = str(error) if error is not None else ""
    if isinstance(error, HTTPError):
        code = error.code
        if code == HTTPStatus.NOT_FOUND:
            message = f'Resource "{method} {path}" not found'
    return code, message