"""Credential files: session CSV and token lists.

Sessions file (``-s/--sessions``)::

    # uid, client id
    123456, 0123456789abcdef0123456789abcdef01234567

Tokens file (``--tokens``)::

    # one opaque token per line
    a1b2c3...

In both formats ``#`` starts a comment, blank lines and surrounding
whitespace are ignored, and a repeated uid/token is a fatal error.
Everything here runs before any network activity, so a bad file stops
the program before it connects.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Union

from pydantic import BaseModel, Field, ValidationError, field_validator

from luogu_painter.configs.loader import ConfigError
from luogu_painter.model import Actor, AuthMode
from luogu_painter.utils.fs import read_text

logger = logging.getLogger(__name__)


class CredentialFileError(ConfigError):
    """A credential file is missing, malformed or has duplicates."""

    pass


class SessionRow(BaseModel):
    """One ``uid, client_id`` row of a sessions file."""

    uid: str = Field(..., pattern=r"^[0-9]+$", description="Numeric user id")
    client_id: str = Field(
        ..., pattern=r"^[0-9a-f]{40}$", description="40 lowercase hex chars",
    )

    @field_validator("uid", "client_id", mode="before")
    @classmethod
    def strip(cls, v):
        return v.strip() if isinstance(v, str) else v


def _content_lines(path: Path) -> list[tuple[int, str]]:
    """``(line_number, text)`` pairs with comments and blanks removed."""
    try:
        text = read_text(path)
    except FileNotFoundError as exc:
        raise CredentialFileError(f"Credential file not found: {path}") from exc
    except (OSError, UnicodeDecodeError) as exc:
        raise CredentialFileError(f"Cannot read credential file {path}: {exc}") from exc

    lines = []
    for lineno, raw in enumerate(text.splitlines(), 1):
        line = raw.split("#", 1)[0].strip()
        if line:
            lines.append((lineno, line))
    return lines


def read_sessions(path: Union[str, Path]) -> list[Actor]:
    """Parse a sessions CSV into cookie-authenticated actors.

    Raises
    ------
    CredentialFileError
        On a malformed row or a duplicate uid.
    """
    path = Path(path)
    actors: list[Actor] = []
    seen: dict[str, int] = {}
    for lineno, line in _content_lines(path):
        fields = line.split(",")
        if len(fields) != 2:
            raise CredentialFileError(
                f"{path}:{lineno}: expected 'uid, client_id', got {len(fields)} field(s)"
            )
        try:
            row = SessionRow(uid=fields[0], client_id=fields[1])
        except ValidationError as exc:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
                for err in exc.errors()
            )
            raise CredentialFileError(f"{path}:{lineno}: {problems}") from exc
        if row.uid in seen:
            raise CredentialFileError(
                f"{path}:{lineno}: duplicate uid {row.uid} (first on line {seen[row.uid]})"
            )
        seen[row.uid] = lineno
        actors.append(Actor(id=row.uid, credential=row.client_id, auth=AuthMode.COOKIE))

    logger.info("Loaded %d session(s) from %s", len(actors), path)
    return actors


def read_tokens(path: Union[str, Path]) -> list[Actor]:
    """Parse a token list into token-authenticated actors.

    Actor ids are the token's first eight characters followed by ``…`` so
    logs never carry a full secret.

    Raises
    ------
    CredentialFileError
        On a token containing whitespace or a duplicate token.
    """
    path = Path(path)
    actors: list[Actor] = []
    seen: dict[str, int] = {}
    for lineno, token in _content_lines(path):
        if any(ch.isspace() for ch in token):
            raise CredentialFileError(f"{path}:{lineno}: token contains whitespace")
        if token in seen:
            raise CredentialFileError(
                f"{path}:{lineno}: duplicate token (first on line {seen[token]})"
            )
        seen[token] = lineno
        actors.append(Actor(id=_token_id(token), credential=token, auth=AuthMode.TOKEN))

    logger.info("Loaded %d token(s) from %s", len(actors), path)
    return actors


def _token_id(token: str) -> str:
    return token if len(token) <= 8 else token[:8] + "…"
