"""Pluggable token extractors.

An extractor pulls a token (session token, CSRF token) out of an
incoming request and returns ``None`` when the request carries none.
Extractors are async so that form bodies can be read.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING


if TYPE_CHECKING:
    from starlette.requests import Request


TokenExtractor = Callable[["Request"], Awaitable["str | None"]]


def from_cookie(name: str) -> TokenExtractor:
    """Extract a token from the cookie *name*."""

    async def extract(request: Request) -> str | None:
        return request.cookies.get(name) or None

    return extract


def from_header(name: str) -> TokenExtractor:
    """Extract a token from the request header *name*."""

    async def extract(request: Request) -> str | None:
        return request.headers.get(name) or None

    return extract


def from_query(name: str) -> TokenExtractor:
    """Extract a token from the query parameter *name*."""

    async def extract(request: Request) -> str | None:
        return request.query_params.get(name) or None

    return extract


def from_form(name: str) -> TokenExtractor:
    """Extract a token from the form field *name*.

    Only urlencoded and multipart bodies are inspected; other content
    types yield ``None`` without consuming the body.
    """

    async def extract(request: Request) -> str | None:
        content_type = request.headers.get("content-type", "")
        if not content_type.startswith(("application/x-www-form-urlencoded", "multipart/form-data")):
            return None
        form = await request.form()
        value = form.get(name)
        return value if isinstance(value, str) and value else None

    return extract


def chain(*extractors: TokenExtractor) -> TokenExtractor:
    """Try each extractor in order and return the first token found."""

    async def extract(request: Request) -> str | None:
        for extractor in extractors:
            token = await extractor(request)
            if token:
                return token
        return None

    return extract
